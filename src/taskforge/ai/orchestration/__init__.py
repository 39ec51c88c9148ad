"""Agent execution core: tag extraction, tool dispatch, the agent loop and the run controller."""

from .cancellation import CancellationToken
from .errors import ErrorCode, TaskforgeError, classify_exception, sanitize_error_message
from .types import AgentOutput, AgentState, Message, RunState, SessionState, ToolCall, ToolResult

__all__ = [
    "CancellationToken",
    "ErrorCode",
    "TaskforgeError",
    "classify_exception",
    "sanitize_error_message",
    "AgentOutput",
    "AgentState",
    "Message",
    "RunState",
    "SessionState",
    "ToolCall",
    "ToolResult",
]
