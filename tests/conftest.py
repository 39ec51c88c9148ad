"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Iterator

import pytest

from taskforge.ai.orchestration.cancellation import CancellationToken
from taskforge.ai.orchestration.types import AgentState
from taskforge.services import telemetry
from taskforge.services.workspace import InMemoryWorkspace


@pytest.fixture
def workspace() -> InMemoryWorkspace:
    return InMemoryWorkspace({"/notes.txt": "alpha beta gamma"})


@pytest.fixture
def agent_state() -> AgentState:
    return AgentState(agent_type="base", steps_remaining=5)


@pytest.fixture
def cancellation() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def telemetry_sink() -> Iterator[telemetry.InMemoryTelemetrySink]:
    sink = telemetry.InMemoryTelemetrySink()
    detach = telemetry.attach_sink(sink)
    try:
        yield sink
    finally:
        detach()
