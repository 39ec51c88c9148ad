"""Core data model for agent runs.

Messages, tool calls and tool results are immutable values that flow through
the step pipeline. :class:`AgentState` is the one mutable record; it is only
ever changed by its owning loop (see :mod:`.tool_dispatcher`), never by tool
handlers directly. Every type here round-trips through plain JSON so a
:class:`RunState` can be persisted and fed back in as a continuation.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Sequence

__all__ = [
    "MessageRole",
    "Message",
    "SubgoalStatus",
    "Subgoal",
    "ToolCall",
    "ToolResult",
    "OutputType",
    "AgentOutput",
    "AgentState",
    "SessionState",
    "RunState",
    "new_call_id",
    "new_run_id",
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def new_call_id() -> str:
    """Return a fresh identifier for a tool call; never reused."""
    return f"call_{uuid.uuid4().hex[:16]}"


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex}"


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable transcript entry.

    Attributes:
        role: The role of the message sender.
        content: Text content of the message.
        name: Tool name for ``tool`` messages.
        tool_call_id: ID linking a tool result to its call.
        metadata: Additional metadata (not sent to the model).
    """

    role: MessageRole
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(cls, content: str, **metadata: Any) -> Message:
        return cls(role="assistant", content=content, metadata=metadata)

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None, **metadata: Any) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name, metadata=metadata)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        return cls(
            role=payload.get("role", "user"),  # type: ignore[arg-type]
            content=str(payload.get("content", "")),
            name=payload.get("name"),
            tool_call_id=payload.get("tool_call_id"),
            metadata=dict(payload.get("metadata") or {}),
        )


# -----------------------------------------------------------------------------
# Sub-goals
# -----------------------------------------------------------------------------


class SubgoalStatus:
    """Allowed values for :attr:`Subgoal.status`."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    ABORTED = "ABORTED"

    ALL = (NOT_STARTED, IN_PROGRESS, COMPLETE, ABORTED)


@dataclass(slots=True, frozen=True)
class Subgoal:
    objective: str
    status: str = SubgoalStatus.NOT_STARTED
    plan: str | None = None
    logs: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"objective": self.objective, "status": self.status, "logs": list(self.logs)}
        if self.plan is not None:
            payload["plan"] = self.plan
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Subgoal:
        return cls(
            objective=str(payload.get("objective", "")),
            status=str(payload.get("status", SubgoalStatus.NOT_STARTED)),
            plan=payload.get("plan"),
            logs=tuple(str(item) for item in payload.get("logs") or ()),
        )


# -----------------------------------------------------------------------------
# Tool calls and results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A validated tool invocation.

    Attributes:
        tool_name: Registered tool name (``provider/tool`` for provider tools).
        call_id: Unique call identifier.
        input: Validated input with control markers removed.
        ends_agent_step: Whether the step ends once this call completes.
        include_in_history: Whether the call and its result enter the transcript.
    """

    tool_name: str
    call_id: str
    input: Mapping[str, Any] = field(default_factory=dict)
    ends_agent_step: bool = False
    include_in_history: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "call_id": self.call_id,
            "input": dict(self.input),
            "ends_agent_step": self.ends_agent_step,
        }


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Outcome of exactly one :class:`ToolCall`, paired by ``call_id``."""

    tool_name: str
    call_id: str
    content: Any = None
    is_error: bool = False

    @classmethod
    def error(cls, tool_name: str, call_id: str, message: str, **details: Any) -> ToolResult:
        payload: dict[str, Any] = {"error_message": message}
        payload.update(details)
        return cls(tool_name=tool_name, call_id=call_id, content=payload, is_error=True)

    @property
    def error_message(self) -> str | None:
        if self.is_error and isinstance(self.content, Mapping):
            message = self.content.get("error_message")
            return str(message) if message is not None else None
        return None

    def render(self) -> str:
        """Return the content formatted for the transcript."""
        if isinstance(self.content, str):
            return self.content
        try:
            return json.dumps(self.content, indent=2, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.content)

    def to_message(self) -> Message:
        return Message.tool(self.render(), tool_call_id=self.call_id, name=self.tool_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "call_id": self.call_id,
            "content": self.content,
            "is_error": self.is_error,
        }


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------

OutputType = Literal["structured_output", "last_message", "all_messages", "error"]


@dataclass(slots=True, frozen=True)
class AgentOutput:
    """Tagged union describing how a run ended."""

    type: OutputType
    value: Any = None
    message: str | None = None
    error_code: str | None = None

    @classmethod
    def structured(cls, value: Any) -> AgentOutput:
        return cls(type="structured_output", value=value)

    @classmethod
    def last_message(cls, value: Any) -> AgentOutput:
        return cls(type="last_message", value=value)

    @classmethod
    def all_messages(cls, messages: Sequence[Message]) -> AgentOutput:
        return cls(type="all_messages", value=[message.to_dict() for message in messages])

    @classmethod
    def error(cls, message: str, error_code: str | None = None) -> AgentOutput:
        return cls(type="error", message=message, error_code=error_code)

    @property
    def is_error(self) -> bool:
        return self.type == "error"

    def to_dict(self) -> dict[str, Any]:
        if self.type == "error":
            payload: dict[str, Any] = {"type": "error", "message": self.message or ""}
            if self.error_code:
                payload["error_code"] = self.error_code
            return payload
        return {"type": self.type, "value": self.value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AgentOutput:
        output_type = payload.get("type", "last_message")
        if output_type == "error":
            return cls.error(str(payload.get("message", "")), payload.get("error_code"))
        return cls(type=output_type, value=payload.get("value"))  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# Agent state
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class AgentState:
    """Mutable execution record of one agent.

    Mutated only by the loop that owns it. Subagents are owned by their parent
    and live in :attr:`subagents` once spawned.
    """

    agent_type: str
    agent_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    run_id: str = field(default_factory=new_run_id)
    parent_id: str | None = None
    ancestor_run_ids: list[str] = field(default_factory=list)
    steps_remaining: int = 20
    credits_used: float = 0.0
    direct_credits_used: float = 0.0
    message_history: list[Message] = field(default_factory=list)
    agent_context: dict[str, Subgoal] = field(default_factory=dict)
    subagents: list[AgentState] = field(default_factory=list)
    child_run_ids: list[str] = field(default_factory=list)
    output: AgentOutput | None = None
    created_at: datetime = field(default_factory=_utcnow)

    def spawn_child(self, agent_type: str, *, steps_remaining: int | None = None) -> AgentState:
        """Create a subagent state whose ancestry points at this agent."""

        child = AgentState(
            agent_type=agent_type,
            parent_id=self.agent_id,
            ancestor_run_ids=[*self.ancestor_run_ids, self.run_id],
            steps_remaining=self.steps_remaining if steps_remaining is None else steps_remaining,
        )
        return child

    def for_continuation(self) -> AgentState:
        """Return a copy that starts a new run from this state's transcript."""

        return AgentState(
            agent_type=self.agent_type,
            agent_id=self.agent_id,
            parent_id=self.parent_id,
            ancestor_run_ids=list(self.ancestor_run_ids),
            steps_remaining=self.steps_remaining,
            credits_used=self.credits_used,
            direct_credits_used=self.direct_credits_used,
            message_history=list(self.message_history),
            agent_context=dict(self.agent_context),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "agent_id": self.agent_id,
            "run_id": self.run_id,
            "parent_id": self.parent_id,
            "ancestor_run_ids": list(self.ancestor_run_ids),
            "steps_remaining": self.steps_remaining,
            "credits_used": self.credits_used,
            "direct_credits_used": self.direct_credits_used,
            "message_history": [message.to_dict() for message in self.message_history],
            "agent_context": {key: goal.to_dict() for key, goal in self.agent_context.items()},
            "subagents": [child.to_dict() for child in self.subagents],
            "child_run_ids": list(self.child_run_ids),
            "output": self.output.to_dict() if self.output is not None else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AgentState:
        output_payload = payload.get("output")
        created_raw = payload.get("created_at")
        return cls(
            agent_type=str(payload.get("agent_type", "")),
            agent_id=str(payload.get("agent_id") or uuid.uuid4().hex),
            run_id=str(payload.get("run_id") or new_run_id()),
            parent_id=payload.get("parent_id"),
            ancestor_run_ids=[str(item) for item in payload.get("ancestor_run_ids") or ()],
            steps_remaining=int(payload.get("steps_remaining", 20)),
            credits_used=float(payload.get("credits_used", 0.0)),
            direct_credits_used=float(payload.get("direct_credits_used", 0.0)),
            message_history=[Message.from_dict(item) for item in payload.get("message_history") or ()],
            agent_context={
                str(key): Subgoal.from_dict(value)
                for key, value in (payload.get("agent_context") or {}).items()
            },
            subagents=[cls.from_dict(child) for child in payload.get("subagents") or ()],
            child_run_ids=[str(item) for item in payload.get("child_run_ids") or ()],
            output=AgentOutput.from_dict(output_payload) if output_payload else None,
            created_at=datetime.fromisoformat(created_raw) if created_raw else _utcnow(),
        )


# -----------------------------------------------------------------------------
# Session and run state
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class SessionState:
    """Persisted conversation snapshot; ``file_context`` is carried verbatim."""

    main_agent_state: AgentState
    file_context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"file_context": self.file_context, "main_agent_state": self.main_agent_state.to_dict()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SessionState:
        return cls(
            main_agent_state=AgentState.from_dict(payload.get("main_agent_state") or {}),
            file_context=dict(payload.get("file_context") or {}),
        )


@dataclass(slots=True)
class RunState:
    """Externally visible result of one run."""

    session_state: SessionState
    output: AgentOutput

    def to_dict(self) -> dict[str, Any]:
        return {"session_state": self.session_state.to_dict(), "output": self.output.to_dict()}

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RunState:
        return cls(
            session_state=SessionState.from_dict(payload.get("session_state") or {}),
            output=AgentOutput.from_dict(payload.get("output") or {"type": "error", "message": "missing output"}),
        )

    @classmethod
    def from_json(cls, text: str) -> RunState:
        return cls.from_dict(json.loads(text))
