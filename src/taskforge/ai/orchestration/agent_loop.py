"""The agent loop: scripted instructions and model steps until the turn ends.

:class:`AgentRuntime` bundles the collaborators every agent needs (model,
templates, tools, workspace) and runs one agent to completion with
:meth:`AgentRuntime.run_agent`. The same runtime drives subagents through
:class:`~taskforge.ai.agents.spawner.LocalAgentSpawner`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping

from ...utils import logging as logging_utils
from ..agents.spawner import LocalAgentSpawner
from ..agents.templates import AgentTemplate, AgentTemplateRegistry, TemplateError, default_templates
from ..tools import default_tool_registry
from ..tools.registry import CustomToolRegistry, ToolRegistry
from ..tools.types import ResourceStore, ToolSpec
from ..tools.validation import RawToolCall, ToolCallValidator
from .agent_step import AgentStep, StepCallbacks, StepOutcome
from .cancellation import CancellationToken
from .errors import (
    ErrorCode,
    ModelProviderError,
    NetworkError,
    PaymentRequiredError,
    AuthenticationError,
    RunCancelledError,
    classify_exception,
    sanitize_error_message,
)
from .step_program import CallTool, ProgramRunner, ProgramSignal
from .tool_dispatcher import AgentStateOwner, DispatchListener, ToolDispatcher
from .types import AgentOutput, AgentState, Message, ToolResult

if TYPE_CHECKING:
    from ..client import ModelStream

__all__ = [
    "OUT_OF_STEPS_MESSAGE",
    "MISSING_OUTPUT_REMINDER",
    "AgentRuntime",
    "loop_agent_steps",
]

LOGGER = logging.getLogger(__name__)

OUT_OF_STEPS_MESSAGE = "Agent ran out of steps"
MISSING_OUTPUT_REMINDER = "You must use the set_output tool to report your result before ending your turn."

# Failures that belong to the run controller's retry policy rather than the agent.
_PROPAGATED_ERRORS = (NetworkError, PaymentRequiredError, ModelProviderError, AuthenticationError, RunCancelledError)


@dataclass(slots=True)
class AgentRuntime:
    """Shared collaborators for every agent in a run.

    Attributes:
        model: Streaming model boundary.
        templates: Agent templates by agent type.
        registry: Built-in tool handlers.
        custom_tools: Caller-defined tools and providers.
        resource_store: Workspace handed to file tools.
        max_agent_steps: Step budget for agents whose template sets none.
        callbacks: Streaming observers for the main agent.
        listener: Dispatch observer.
    """

    model: "ModelStream"
    templates: AgentTemplateRegistry = field(default_factory=default_templates)
    registry: ToolRegistry = field(default_factory=default_tool_registry)
    custom_tools: CustomToolRegistry = field(default_factory=CustomToolRegistry)
    resource_store: ResourceStore | None = None
    max_agent_steps: int = 20
    callbacks: StepCallbacks | None = None
    listener: DispatchListener | None = None
    _validator: ToolCallValidator | None = field(default=None, init=False, repr=False)

    @property
    def validator(self) -> ToolCallValidator:
        if self._validator is None:
            self._validator = ToolCallValidator(self.registry, self.custom_tools)
        return self._validator

    def template_for(self, agent_type: str) -> AgentTemplate:
        return self.templates.get_required(agent_type)

    def spawner(self) -> LocalAgentSpawner:
        return LocalAgentSpawner(self)

    async def run_agent(
        self,
        state: AgentState,
        *,
        prompt: str | None,
        params: Mapping[str, Any] | None = None,
        cancellation: CancellationToken,
        on_cost: Callable[[float], None] | None = None,
        callbacks: StepCallbacks | None = None,
    ) -> AgentOutput:
        """Run ``state`` to completion and return its output.

        Model, network and billing failures propagate so the run controller
        can classify and retry them; any other failure becomes an error
        output. The output is also stored on ``state``.
        """

        try:
            template = self.template_for(state.agent_type)
        except TemplateError as exc:
            output = AgentOutput.error(str(exc), ErrorCode.NOT_FOUND)
            state.output = output
            return output

        with logging_utils.agent_context(state.run_id, state.agent_type):
            try:
                output = await loop_agent_steps(
                    self,
                    state,
                    template,
                    prompt=prompt,
                    params=params,
                    cancellation=cancellation,
                    on_cost=on_cost,
                    callbacks=callbacks if callbacks is not None else self.callbacks,
                )
            except _PROPAGATED_ERRORS:
                raise
            except Exception as exc:
                LOGGER.exception("Agent %s failed", state.agent_type)
                output = AgentOutput.error(sanitize_error_message(exc), classify_exception(exc))
        state.output = output
        return output


async def loop_agent_steps(
    runtime: AgentRuntime,
    state: AgentState,
    template: AgentTemplate,
    *,
    prompt: str | None,
    params: Mapping[str, Any] | None,
    cancellation: CancellationToken,
    on_cost: Callable[[float], None] | None = None,
    callbacks: StepCallbacks | None = None,
) -> AgentOutput:
    """Run ``template``'s program and model steps for one turn.

    The turn ends when the program issues ``EndTurn``, when a step calls
    ``end_turn``/``task_completed``, sets output, or makes no tool calls
    (unless the template requires ``task_completed``), or when the step
    budget runs out.
    """

    owner = AgentStateOwner(state, on_cost=on_cost)
    spawner = runtime.spawner()
    specs = _visible_specs(runtime, template)
    allowed = list(template.tool_names)
    if template.max_steps is not None and template.max_steps < state.steps_remaining:
        state.steps_remaining = template.max_steps
    history_start = len(state.message_history)

    if prompt:
        owner.append_messages([Message.user(prompt)])
    if params:
        owner.append_messages([Message.user(_render_params(params), kind="params")])

    def new_dispatcher() -> ToolDispatcher:
        return ToolDispatcher(
            registry=runtime.registry,
            owner=owner,
            cancellation=cancellation,
            custom_tools=runtime.custom_tools,
            allowed_tools=allowed,
            resource_store=runtime.resource_store,
            spawner=spawner,
            template=template,
            listener=runtime.listener,
        )

    last_outcome: StepOutcome | None = None
    out_of_steps = False

    async def run_step() -> StepOutcome | None:
        nonlocal out_of_steps
        if state.steps_remaining <= 0:
            out_of_steps = True
            return None
        state.steps_remaining -= 1
        step = AgentStep(
            model=runtime.model,
            template=template,
            owner=owner,
            dispatcher=new_dispatcher(),
            validator=runtime.validator,
            tool_specs=specs,
            callbacks=callbacks,
        )
        outcome = await step.run(cancellation)
        LOGGER.debug(
            "%s step done: %d call(s), end_turn=%s, %d step(s) left",
            state.agent_type,
            outcome.tool_call_count,
            outcome.end_turn,
            state.steps_remaining,
        )
        return outcome

    async def run_until_turn_end() -> StepOutcome | None:
        nonlocal last_outcome
        owner.reset_turn_flags()
        reminded = False
        while not cancellation.cancelled:
            outcome = await run_step()
            if outcome is None:
                break
            last_outcome = outcome
            if not outcome.end_turn:
                continue
            if _needs_structured_output(template, owner) and not reminded and not cancellation.cancelled:
                reminded = True
                owner.reset_turn_flags()
                owner.append_messages([Message.user(MISSING_OUTPUT_REMINDER)])
                continue
            break
        return last_outcome

    async def call_tool(instruction: CallTool) -> ToolResult | None:
        dispatcher = new_dispatcher()
        item = runtime.validator.resolve(
            RawToolCall(name=instruction.name, input=instruction.input),
            auto_insert_end_step=True,
            include_in_history=instruction.include_in_history,
        )
        record = dispatcher.submit(item, from_script=True)
        records = await dispatcher.finish()
        owner.commit_transcript(records)
        return record.result

    if template.step_program is not None:
        runner = ProgramRunner(
            template.step_program,
            owner=owner,
            call_tool=call_tool,
            prompt=prompt,
            params=params,
            is_cancelled=lambda: cancellation.cancelled,
        )
        while True:
            signal = await runner.advance()
            if signal is ProgramSignal.STEP:
                owner.reset_turn_flags()
                outcome = await run_step()
                if outcome is not None:
                    last_outcome = outcome
                runner.resume(outcome)
            elif signal is ProgramSignal.STEP_ALL:
                runner.resume(await run_until_turn_end())
            else:
                break
            if out_of_steps:
                break
    else:
        await run_until_turn_end()

    if cancellation.cancelled:
        return AgentOutput.error(cancellation.reason)
    if owner.staged_output is not None:
        return owner.staged_output
    if out_of_steps:
        LOGGER.info("%s ran out of steps", state.agent_type)
        return AgentOutput.error(OUT_OF_STEPS_MESSAGE)
    return _default_output(template, state, history_start, last_outcome)


def _visible_specs(runtime: AgentRuntime, template: AgentTemplate) -> list[ToolSpec]:
    builtin = runtime.registry.list_specs(filter_names=template.tool_names)
    custom = [spec for spec in runtime.custom_tools.list_specs() if spec.name in template.tool_names]
    return [*builtin, *custom]


def _needs_structured_output(template: AgentTemplate, owner: AgentStateOwner) -> bool:
    return template.output_mode == "structured_output" and owner.staged_output is None


def _default_output(
    template: AgentTemplate,
    state: AgentState,
    history_start: int,
    last_outcome: StepOutcome | None,
) -> AgentOutput:
    if template.output_mode == "all_messages":
        return AgentOutput.all_messages(state.message_history[history_start:])
    if template.output_mode == "structured_output":
        return AgentOutput.error("Agent finished without setting structured output")
    if last_outcome is not None:
        return AgentOutput.last_message(last_outcome.text.strip())
    for message in reversed(state.message_history):
        if message.role == "assistant":
            return AgentOutput.last_message(message.content)
    return AgentOutput.last_message("")


def _render_params(params: Mapping[str, Any]) -> str:
    return "<params>\n" + json.dumps(dict(params), indent=2, ensure_ascii=False, default=str) + "\n</params>"
