"""Tests for the in-process telemetry bus."""

from __future__ import annotations

from typing import Any

from taskforge.services.telemetry import (
    InMemoryTelemetrySink,
    TelemetryEvent,
    attach_sink,
    emit,
    register_event_listener,
    summarize_events,
    unregister_event_listener,
)


def test_sink_receives_events_until_detached() -> None:
    sink = InMemoryTelemetrySink()
    detach = attach_sink(sink)

    emit("run.started", {"run_id": "r1"})
    emit("run.finished")
    detach()
    emit("run.started", {"run_id": "r2"})

    assert sink.names() == ["run.started", "run.finished"]
    first = sink.tail()[0]
    assert first.payload == {"run_id": "r1"}
    assert first.timestamp > 0


def test_named_subscription_filters_events() -> None:
    sink = InMemoryTelemetrySink()
    detach = attach_sink(sink, ["tool.call_rejected"])
    try:
        emit("run.started")
        emit("tool.call_rejected", {"tool": "write_file"})
    finally:
        detach()

    assert sink.names() == ["tool.call_rejected"]


def test_listener_registration_is_idempotent() -> None:
    received: list[dict[str, Any]] = []
    register_event_listener("fanout.started", received.append)
    register_event_listener("fanout.started", received.append)
    try:
        emit("fanout.started", {"n": 3})
    finally:
        unregister_event_listener("fanout.started", received.append)

    assert received == [{"event": "fanout.started", "n": 3}]


def test_failing_listener_does_not_break_emit() -> None:
    sink = InMemoryTelemetrySink()

    def _boom(payload: dict[str, Any]) -> None:
        raise RuntimeError("listener broke")

    register_event_listener("run.retry_scheduled", _boom)
    detach = attach_sink(sink)
    try:
        emit("run.retry_scheduled", {"attempt": 1})
    finally:
        detach()
        unregister_event_listener("run.retry_scheduled", _boom)

    assert sink.names() == ["run.retry_scheduled"]


def test_empty_names_are_ignored() -> None:
    sink = InMemoryTelemetrySink()
    detach = attach_sink(sink)
    try:
        emit("")
    finally:
        detach()

    assert len(sink) == 0


def test_ring_buffer_capacity() -> None:
    sink = InMemoryTelemetrySink(capacity=1)
    for index in range(15):
        sink.record(TelemetryEvent(name=f"e{index}"))

    assert sink.capacity == 10
    assert len(sink) == 10
    assert [event.name for event in sink.tail(2)] == ["e13", "e14"]


def test_summarize_events() -> None:
    events = [TelemetryEvent("a"), TelemetryEvent("b"), TelemetryEvent("a")]

    assert summarize_events(events) == {"a": 2, "b": 1}
