"""In-process telemetry bus for run, tool and fan-out events."""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Iterable, Mapping, Protocol

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
_WILDCARD = "*"


@dataclass(slots=True, frozen=True)
class TelemetryEvent:
    """One emitted event as captured by a sink."""

    name: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: TelemetryEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TelemetryEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[TelemetryEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def names(self) -> list[str]:
        return [event.name for event in self.tail()]

    def __call__(self, payload: dict[str, Any]) -> None:
        name = str(payload.get("event", ""))
        body = {key: value for key, value in payload.items() if key != "event"}
        self.record(TelemetryEvent(name=name, payload=body))

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*.

    ``"*"`` subscribes to every event.
    """

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def attach_sink(sink: InMemoryTelemetrySink, event_names: Iterable[str] = (_WILDCARD,)) -> Callable[[], None]:
    """Route events into ``sink``; returns a callable that detaches it."""

    names = list(event_names)
    for name in names:
        register_event_listener(name, sink)

    def detach() -> None:
        for name in names:
            unregister_event_listener(name, sink)

    return detach


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ())) + list(_EVENT_LISTENERS.get(_WILDCARD, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


def summarize_events(events: Iterable[TelemetryEvent]) -> dict[str, int]:
    """Count events per name."""

    return dict(Counter(event.name for event in events))


__all__ = [
    "TelemetryEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "attach_sink",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
    "summarize_events",
]
