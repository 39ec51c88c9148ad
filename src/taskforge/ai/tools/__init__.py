"""Built-in agent tools and the tables that hold them."""

from .control_tools import (
    AddMessageHandler,
    AddSubgoalHandler,
    EndTurnHandler,
    SetMessagesHandler,
    SetOutputHandler,
    TaskCompletedHandler,
    UpdateSubgoalHandler,
)
from .file_tools import ReadFilesHandler, StrReplaceHandler, WriteFileHandler
from .registry import CustomToolRegistry, ToolProvider, ToolRegistry
from .spawn_tools import SpawnAgentsHandler
from .types import HandlerOutcome, StateDelta, ToolContext, ToolHandler, ToolName, ToolSpec
from .validation import RawToolCall, ToolCallError, ToolCallValidator


def default_tool_registry() -> ToolRegistry:
    """Return a registry holding a handler for every :class:`ToolName`."""

    return ToolRegistry(
        [
            WriteFileHandler(),
            StrReplaceHandler(),
            ReadFilesHandler(),
            SetOutputHandler(),
            SetMessagesHandler(),
            AddMessageHandler(),
            SpawnAgentsHandler(),
            AddSubgoalHandler(),
            UpdateSubgoalHandler(),
            EndTurnHandler(),
            TaskCompletedHandler(),
        ]
    )


__all__ = [
    "default_tool_registry",
    "ToolRegistry",
    "CustomToolRegistry",
    "ToolProvider",
    "ToolCallValidator",
    "RawToolCall",
    "ToolCallError",
    "ToolName",
    "ToolSpec",
    "ToolHandler",
    "ToolContext",
    "HandlerOutcome",
    "StateDelta",
]
