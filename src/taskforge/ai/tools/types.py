"""Tool system types.

Built-in tools are identified by :class:`ToolName` and implemented by handler
objects satisfying :class:`ToolHandler`. Handlers never mutate agent state;
they return a :class:`HandlerOutcome` whose :class:`StateDelta` is applied by
the dispatcher's single state owner.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from ..orchestration.cancellation import CancellationToken
from ..orchestration.types import AgentOutput, AgentState, Message, Subgoal, ToolCall

if TYPE_CHECKING:
    from ..agents.templates import AgentTemplate

__all__ = [
    "ToolName",
    "ToolCategory",
    "ENDS_AGENT_STEP_PARAM",
    "ToolSpec",
    "SubgoalUpdate",
    "StateDelta",
    "HandlerOutcome",
    "ResourceHandle",
    "ResourceStore",
    "AgentSpawner",
    "SpawnResult",
    "ToolContext",
    "ToolHandler",
    "BaseToolHandler",
    "CustomToolHandler",
]

# Control field accepted by every tool; removed before handlers see the input.
ENDS_AGENT_STEP_PARAM = "ends_agent_step"


class ToolName(str, Enum):
    """Closed set of built-in tools."""

    WRITE_FILE = "write_file"
    STR_REPLACE = "str_replace"
    READ_FILES = "read_files"
    SET_OUTPUT = "set_output"
    SET_MESSAGES = "set_messages"
    ADD_MESSAGE = "add_message"
    SPAWN_AGENTS = "spawn_agents"
    ADD_SUBGOAL = "add_subgoal"
    UPDATE_SUBGOAL = "update_subgoal"
    END_TURN = "end_turn"
    TASK_COMPLETED = "task_completed"

    @classmethod
    def parse(cls, name: str) -> "ToolName | None":
        try:
            return cls(name)
        except ValueError:
            return None


class ToolCategory:
    """Standard tool categories for organization."""

    READ = "read"
    WRITE = "write"
    CONTROL = "control"
    AGENTS = "agents"
    CUSTOM = "custom"


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool's input.
        category: Tool category for organization.
        ends_agent_step: Whether calling the tool always ends the current step.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.CONTROL
    ends_agent_step: bool = False

    def schema(self) -> dict[str, Any]:
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}}

    def to_prompt(self) -> str:
        """Render the tool for the system prompt's tool list."""
        return (
            f"### {self.name}\n{self.description}\n"
            f"Parameters (JSON Schema):\n{json.dumps(self.schema(), indent=2, sort_keys=True)}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.schema(),
            "category": self.category,
            "ends_agent_step": self.ends_agent_step,
        }


# -----------------------------------------------------------------------------
# Outcomes
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SubgoalUpdate:
    """Change to an existing sub-goal, resolved against the state it is committed to.

    ``None`` leaves a field unchanged; a non-empty ``log`` is appended.
    """

    status: str | None = None
    plan: str | None = None
    log: str | None = None

    def apply_to(self, goal: Subgoal) -> Subgoal:
        return Subgoal(
            objective=goal.objective,
            status=goal.status if self.status is None else self.status,
            plan=goal.plan if self.plan is None else self.plan,
            logs=(*goal.logs, self.log) if self.log else goal.logs,
        )


@dataclass(slots=True, frozen=True)
class StateDelta:
    """Immutable description of changes a tool call makes to agent state.

    Attributes:
        credits: Credits charged directly by the call.
        append_messages: Messages added to the transcript after the call's result.
        replace_messages: Replacement transcript, applied before ``append_messages``.
        output: Output set by the call.
        subgoals: Sub-goals to create or replace, keyed by id.
        subgoal_updates: Changes to sub-goals that must exist when the delta is
            committed, applied after ``subgoals``.
        subagents: Finished child states to attach to the parent.
        child_credits: Credits consumed by children, added to the total only.
        end_turn: Whether the call ends the agent's turn.
    """

    credits: float = 0.0
    append_messages: tuple[Message, ...] = ()
    replace_messages: tuple[Message, ...] | None = None
    output: AgentOutput | None = None
    subgoals: Mapping[str, Subgoal] = field(default_factory=dict)
    subgoal_updates: Mapping[str, SubgoalUpdate] = field(default_factory=dict)
    subagents: tuple[AgentState, ...] = ()
    child_credits: float = 0.0
    end_turn: bool = False

    @property
    def is_empty(self) -> bool:
        return self == StateDelta()


@dataclass(slots=True, frozen=True)
class HandlerOutcome:
    """What a handler hands back to the dispatcher.

    ``credits`` may be a number known immediately or an awaitable that
    resolves once background work settles.
    """

    content: Any = None
    delta: StateDelta = field(default_factory=StateDelta)
    credits: Any = None
    is_error: bool = False

    @classmethod
    def error(cls, message: str, **details: Any) -> "HandlerOutcome":
        payload: dict[str, Any] = {"error_message": message}
        payload.update(details)
        return cls(content=payload, is_error=True)


# -----------------------------------------------------------------------------
# Collaborator protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ResourceStore(Protocol):
    """External resource boundary: read current state, apply a mutation."""

    async def read(self, key: str) -> str | None:
        ...

    async def write(self, key: str, content: str) -> None:
        ...


class ResourceHandle(Protocol):
    """Access to one resource, granted while the caller holds its queue turn."""

    key: str

    async def read(self) -> str | None:
        ...

    async def write(self, content: str) -> None:
        ...


@dataclass(slots=True, frozen=True)
class SpawnResult:
    """Outcome of one subagent spawn; ``state`` is ``None`` when the child never started."""

    agent_type: str
    label: str
    output: AgentOutput
    state: AgentState | None = None

    @property
    def ok(self) -> bool:
        return not self.output.is_error

    @property
    def credits_used(self) -> float:
        return self.state.credits_used if self.state is not None else 0.0


class AgentSpawner(Protocol):
    async def spawn(
        self,
        agent_type: str,
        prompt: str | None,
        params: Mapping[str, Any] | None,
        *,
        parent: AgentState,
        cancellation: CancellationToken,
        label: str | None = None,
    ) -> SpawnResult:
        ...


@dataclass(slots=True)
class ToolContext:
    """Per-call execution context handed to handlers.

    Attributes:
        agent_state: The owning agent's state. Read-only for handlers.
        template: Template of the owning agent, when known.
        cancellation: Run-wide cancellation token.
        from_script: Whether the call was issued by a scripted step.
        resource_store: External resource boundary.
        spawner: Subagent spawn boundary.
        resource_turn: Opens the caller's turn on a resource key's queue.
    """

    agent_state: AgentState
    cancellation: CancellationToken
    template: "AgentTemplate | None" = None
    from_script: bool = False
    resource_store: ResourceStore | None = None
    spawner: AgentSpawner | None = None
    resource_turn: Callable[[str], AbstractAsyncContextManager[ResourceHandle]] | None = None


# -----------------------------------------------------------------------------
# Handler interface
# -----------------------------------------------------------------------------


@runtime_checkable
class ToolHandler(Protocol):
    """Capability interface every built-in tool implements."""

    @property
    def spec(self) -> ToolSpec:
        ...

    def resource_key(self, tool_input: Mapping[str, Any]) -> str | None:
        """Key serialising calls that touch the same resource, or ``None``."""
        ...

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        ...


class BaseToolHandler:
    """Convenience base providing the unkeyed default."""

    spec: ToolSpec

    @property
    def name(self) -> str:
        return self.spec.name

    def resource_key(self, tool_input: Mapping[str, Any]) -> str | None:
        return None

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:  # pragma: no cover - abstract
        raise NotImplementedError


# Handler signature for caller-defined tools.
CustomToolFunction = Callable[[Mapping[str, Any]], Any]


@dataclass
class CustomToolHandler(BaseToolHandler):
    """Caller-defined tool wrapping a sync or async callable.

    Example:
        handler = CustomToolHandler(
            spec=ToolSpec(name="lookup", description="Look up a ticket", parameters=schema),
            function=lambda args: {"status": "open"},
        )
    """

    spec: ToolSpec
    function: CustomToolFunction
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = asyncio.iscoroutinefunction(self.function)

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        result = self.function(call.input)
        if self._is_async or inspect.isawaitable(result):
            result = await result
        if isinstance(result, HandlerOutcome):
            return result
        return HandlerOutcome(content=result)


def messages_tuple(messages: Sequence[Message | Mapping[str, Any]]) -> tuple[Message, ...]:
    """Normalise message payloads from tool input into :class:`Message` values."""
    return tuple(item if isinstance(item, Message) else Message.from_dict(item) for item in messages)
