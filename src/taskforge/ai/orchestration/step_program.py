"""Scripted step programs.

An agent template may carry a :class:`StepProgram` that runs before (and
interleaved with) model steps. A program is a sequence of instructions
executed by an explicit program counter. It is either a static list or a
function that picks the next instruction from a :class:`ProgramContext`,
which carries the result of the previous instruction.

Instructions that need the model (:class:`Step`, :class:`StepAll`) suspend
the program; the agent loop runs the model and then resumes it with the
step's outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Sequence, Union

from .types import AgentOutput, AgentState, Message, ToolResult

if TYPE_CHECKING:
    from .agent_step import StepOutcome
    from .tool_dispatcher import AgentStateOwner

__all__ = [
    "CallTool",
    "SetMessages",
    "SetOutput",
    "Step",
    "StepAll",
    "EndTurn",
    "Instruction",
    "ProgramContext",
    "ProgramSignal",
    "StepProgram",
    "ProgramRunner",
    "ProgramError",
]

LOGGER = logging.getLogger(__name__)


class ProgramError(ValueError):
    """Raised for malformed program definitions."""


# -----------------------------------------------------------------------------
# Instructions
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CallTool:
    """Invoke a tool directly, bypassing the model.

    Scripted calls always end the current step and skip the agent's tool
    allow-list.
    """

    name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    include_in_history: bool = True


@dataclass(slots=True, frozen=True)
class SetMessages:
    messages: tuple[Message, ...] = ()


@dataclass(slots=True, frozen=True)
class SetOutput:
    value: Any = None


@dataclass(slots=True, frozen=True)
class Step:
    """Run exactly one model step."""


@dataclass(slots=True, frozen=True)
class StepAll:
    """Run model steps until the turn ends."""


@dataclass(slots=True, frozen=True)
class EndTurn:
    pass


Instruction = Union[CallTool, SetMessages, SetOutput, Step, StepAll, EndTurn]


@dataclass(slots=True)
class ProgramContext:
    """What a dynamic program sees when choosing its next instruction.

    Attributes:
        pc: Index of the instruction about to run.
        agent_state: The running agent's state (read only).
        prompt: The prompt the agent was started with.
        params: The params the agent was started with.
        last_result: Result of the previous :class:`CallTool`, if any.
        last_step: Outcome of the previous :class:`Step` or :class:`StepAll`.
    """

    pc: int
    agent_state: AgentState
    prompt: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    last_result: ToolResult | None = None
    last_step: "StepOutcome | None" = None


class ProgramSignal(str, Enum):
    STEP = "step"
    STEP_ALL = "step_all"
    END_TURN = "end_turn"
    DONE = "done"


# -----------------------------------------------------------------------------
# Program
# -----------------------------------------------------------------------------


NextInstruction = Callable[[ProgramContext], "Instruction | None"]


class StepProgram:
    """Static or dynamic instruction sequence.

    Example:
        StepProgram([CallTool("read_files", {"paths": ["README.md"]}), StepAll()])
        StepProgram(next_instruction=lambda ctx: Step() if ctx.pc < 3 else None)
    """

    def __init__(
        self,
        instructions: Sequence[Instruction] | None = None,
        *,
        next_instruction: NextInstruction | None = None,
    ) -> None:
        if (instructions is None) == (next_instruction is None):
            raise ProgramError("Provide either a list of instructions or a next_instruction function")
        self._instructions = tuple(instructions) if instructions is not None else None
        self._next = next_instruction

    @property
    def instructions(self) -> tuple[Instruction, ...] | None:
        return self._instructions

    def instruction_at(self, context: ProgramContext) -> Instruction | None:
        if self._instructions is not None:
            if context.pc >= len(self._instructions):
                return None
            return self._instructions[context.pc]
        assert self._next is not None
        return self._next(context)

    @classmethod
    def from_config(cls, entries: Sequence[Any]) -> StepProgram:
        """Build a static program from its YAML/JSON form.

        Each entry is either a bare keyword (``step``, ``step_all``,
        ``end_turn``) or a single-key mapping such as
        ``{"call_tool": {"name": "read_files", "input": {...}}}``,
        ``{"set_output": {...}}`` or ``{"set_messages": [...]}``.
        """

        return cls([_parse_instruction(entry, index) for index, entry in enumerate(entries)])


def _parse_instruction(entry: Any, index: int) -> Instruction:
    if isinstance(entry, str):
        keyword, body = entry, None
    elif isinstance(entry, Mapping) and len(entry) == 1:
        keyword, body = next(iter(entry.items()))
    else:
        raise ProgramError(f"Step {index}: expected a keyword or a single-key mapping")

    if keyword == "step":
        return Step()
    if keyword == "step_all":
        return StepAll()
    if keyword == "end_turn":
        return EndTurn()
    if keyword == "call_tool":
        if not isinstance(body, Mapping) or not isinstance(body.get("name"), str):
            raise ProgramError(f"Step {index}: call_tool requires a 'name'")
        return CallTool(
            name=body["name"],
            input=dict(body.get("input") or {}),
            include_in_history=bool(body.get("include_in_history", True)),
        )
    if keyword == "set_output":
        return SetOutput(value=body)
    if keyword == "set_messages":
        if not isinstance(body, Sequence) or isinstance(body, str):
            raise ProgramError(f"Step {index}: set_messages requires a list of messages")
        return SetMessages(messages=tuple(Message.from_dict(item) for item in body))
    raise ProgramError(f"Step {index}: unknown instruction '{keyword}'")


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------


ToolCaller = Callable[[CallTool], Awaitable["ToolResult | None"]]


class ProgramRunner:
    """Executes a :class:`StepProgram` until it needs the model or finishes.

    Args:
        program: The program to run.
        owner: State owner for the running agent.
        call_tool: Dispatches a scripted tool call and returns its committed result.
        prompt: Prompt the agent was started with.
        params: Params the agent was started with.
        is_cancelled: Polled between instructions.
    """

    def __init__(
        self,
        program: StepProgram,
        *,
        owner: "AgentStateOwner",
        call_tool: ToolCaller,
        prompt: str | None = None,
        params: Mapping[str, Any] | None = None,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> None:
        self._program = program
        self._owner = owner
        self._call_tool = call_tool
        self._context = ProgramContext(pc=0, agent_state=owner.state, prompt=prompt, params=dict(params or {}))
        self._is_cancelled = is_cancelled
        self._finished = False

    @property
    def pc(self) -> int:
        return self._context.pc

    @property
    def finished(self) -> bool:
        return self._finished

    def resume(self, outcome: "StepOutcome | None") -> None:
        """Feed the outcome of the model step(s) the program asked for."""
        self._context.last_step = outcome

    async def advance(self) -> ProgramSignal:
        """Run instructions until one needs the model or the program ends."""

        if self._finished:
            return ProgramSignal.DONE
        while True:
            if self._is_cancelled():
                return self._finish(ProgramSignal.DONE)
            instruction = self._program.instruction_at(self._context)
            if instruction is None:
                return self._finish(ProgramSignal.DONE)
            self._context.pc += 1
            LOGGER.debug("Program %s pc=%d: %s", self._owner.state.agent_type, self._context.pc - 1, instruction)

            if isinstance(instruction, CallTool):
                self._context.last_result = await self._call_tool(instruction)
                if self._owner.end_turn_requested:
                    return self._finish(ProgramSignal.END_TURN)
            elif isinstance(instruction, SetMessages):
                self._owner.replace_messages(instruction.messages)
            elif isinstance(instruction, SetOutput):
                self._owner.stage_output(AgentOutput.structured(instruction.value))
            elif isinstance(instruction, Step):
                return ProgramSignal.STEP
            elif isinstance(instruction, StepAll):
                return ProgramSignal.STEP_ALL
            elif isinstance(instruction, EndTurn):
                return self._finish(ProgramSignal.END_TURN)
            else:
                raise ProgramError(f"Unsupported instruction {instruction!r}")

    def _finish(self, signal: ProgramSignal) -> ProgramSignal:
        self._finished = True
        return signal
