"""Service layer helpers (telemetry, workspaces, settings)."""

from .telemetry import InMemoryTelemetrySink, TelemetryEvent, attach_sink, emit
from .workspace import InMemoryWorkspace, LocalWorkspace, WorkspaceError

__all__ = [
    "InMemoryTelemetrySink",
    "TelemetryEvent",
    "attach_sink",
    "emit",
    "InMemoryWorkspace",
    "LocalWorkspace",
    "WorkspaceError",
]
