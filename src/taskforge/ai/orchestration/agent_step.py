"""One model step: prompt the model, stream its reply and dispatch tool calls.

Tool calls are dispatched as soon as their closing tag arrives, while the
rest of the response is still streaming. Once the stream ends, the step
waits for every call (and every deferred credit report), then commits the
assistant message followed by the forwarded results in issuance order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Collection, Sequence

from ...services import telemetry as telemetry_service
from ..tools.types import ToolSpec
from ..tools.validation import RawToolCall, ToolCallError, ToolCallValidator
from .cancellation import CancellationToken
from .errors import ErrorCode, ModelProviderError, classify_message
from .tag_extractor import (
    DEFAULT_TOOL_TAG,
    ExtractorErrorEvent,
    ReasoningEvent,
    TagEvent,
    TagExtractor,
    TextEvent,
    ToolCloseEvent,
    resolve_tool_name,
)
from .tool_dispatcher import AgentStateOwner, DispatchRecord, ToolDispatcher
from .types import Message, new_call_id

if TYPE_CHECKING:
    from ..client import ModelChunk, ModelStream
    from ..agents.templates import AgentTemplate

__all__ = ["StepOutcome", "StepCallbacks", "AgentStep", "render_messages", "build_system_prompt"]

LOGGER = logging.getLogger(__name__)

PARSE_ERROR_TOOL = "parse_error"

_TOOL_FORMAT_INSTRUCTIONS = """\
# Tool calls

Call a tool by writing a tag whose body is a JSON object of parameters:

<tool_call name="TOOL_NAME">{"param": "value"}</tool_call>

You may call several tools in one response; they run concurrently, but calls
on the same file are applied in the order you wrote them. Results arrive in
the next message. Add "ends_agent_step": true to a call's parameters to stop
your response after that call and wait for its result."""


@dataclass(slots=True)
class StepOutcome:
    """What one model step produced.

    Attributes:
        text: Plain response text with tool tags removed.
        text_id: Identifier of the response (provider id or content hash).
        records: Dispatch records in issuance order.
        end_turn: Whether the agent's turn is over after this step.
        ends_step_early: A call asked for the step to end and the stream was cut.
    """

    text: str = ""
    text_id: str = ""
    records: list[DispatchRecord] = field(default_factory=list)
    end_turn: bool = False
    ends_step_early: bool = False

    @property
    def tool_call_count(self) -> int:
        return len(self.records)


@dataclass(slots=True)
class StepCallbacks:
    """Optional observers for streamed output."""

    on_text: Callable[[str], None] | None = None
    on_reasoning: Callable[[str], None] | None = None


# -----------------------------------------------------------------------------
# Prompt rendering
# -----------------------------------------------------------------------------


def build_system_prompt(template: "AgentTemplate", specs: Sequence[ToolSpec]) -> str:
    sections = [template.system_prompt.strip()] if template.system_prompt.strip() else []
    if specs:
        sections.append(_TOOL_FORMAT_INSTRUCTIONS)
        sections.append("# Available tools\n\n" + "\n\n".join(spec.to_prompt() for spec in specs))
    return "\n\n".join(sections)


def render_messages(
    system_prompt: str,
    history: Sequence[Message],
    *,
    instructions: str | None = None,
) -> list[dict[str, Any]]:
    """Render the transcript as chat messages.

    Tool results are presented as user messages wrapped in ``<tool_result>``
    tags since calls are made inline rather than through native tool calling.
    """

    rendered: list[dict[str, Any]] = []
    if system_prompt:
        rendered.append({"role": "system", "content": system_prompt})
    for message in history:
        if message.role == "tool":
            rendered.append(
                {
                    "role": "user",
                    "content": (
                        f'<tool_result name="{message.name or ""}" call_id="{message.tool_call_id or ""}">\n'
                        f"{message.content}\n</tool_result>"
                    ),
                }
            )
        else:
            rendered.append({"role": message.role, "content": message.content})
    if instructions:
        rendered.append({"role": "system", "content": instructions})
    return rendered


# -----------------------------------------------------------------------------
# Agent Step
# -----------------------------------------------------------------------------


class AgentStep:
    """Runs a single model step against a prepared dispatcher.

    Args:
        model: Streaming model boundary.
        template: Template of the running agent.
        owner: State owner for the running agent.
        dispatcher: Fresh dispatcher for this step.
        validator: Tool call validator.
        tool_specs: Tools shown to the model.
        callbacks: Optional streaming observers.
    """

    def __init__(
        self,
        *,
        model: "ModelStream",
        template: "AgentTemplate",
        owner: AgentStateOwner,
        dispatcher: ToolDispatcher,
        validator: ToolCallValidator,
        tool_specs: Sequence[ToolSpec],
        callbacks: StepCallbacks | None = None,
    ) -> None:
        self._model = model
        self._template = template
        self._owner = owner
        self._dispatcher = dispatcher
        self._validator = validator
        self._specs = list(tool_specs)
        self._callbacks = callbacks or StepCallbacks()
        self._tool_tags = _tool_tags(self._specs)
        self._raw_parts: list[str] = []
        self._stop_stream = False

    async def run(self, cancellation: CancellationToken) -> StepOutcome:
        extractor = TagExtractor(tool_tags=self._tool_tags)
        messages = render_messages(
            build_system_prompt(self._template, self._specs),
            self._owner.state.message_history,
            instructions=self._template.instructions_prompt or None,
        )
        message_id: str | None = None
        stream_error: BaseException | None = None
        cancelled = asyncio.ensure_future(cancellation.wait())
        try:
            stream = self._model.stream(messages, model=self._template.model)
            try:
                chunks = stream.__aiter__()
                while (chunk := await _next_chunk(chunks, cancelled)) is not None:
                    if chunk.message_id and message_id is None:
                        message_id = chunk.message_id
                    if chunk.type == "text":
                        self._raw_parts.append(chunk.text)
                        self._handle_events(extractor.feed(chunk.text))
                    elif chunk.type == "reasoning":
                        self._emit_reasoning(chunk.text)
                    elif chunk.type == "usage":
                        self._owner.add_credits(chunk.credits)
                    elif chunk.type == "error":
                        raise ModelProviderError(
                            error_code=chunk.error_code or classify_message(chunk.text) or ErrorCode.UNKNOWN_ERROR,
                            message=chunk.text or "Model stream reported an error",
                        )
                    if self._stop_stream:
                        break
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
        except Exception as exc:
            stream_error = exc
        finally:
            cancelled.cancel()
        if cancellation.cancelled:
            LOGGER.debug("Stopped stream for %s: run cancelled", self._owner.state.agent_type)

        tail, text_id = extractor.finish(message_id)
        if stream_error is None:
            self._handle_events(tail)

        # In-flight calls always settle before the step returns, even on failure.
        records = await self._dispatcher.finish()
        if stream_error is not None:
            raise stream_error

        assistant = Message.assistant("".join(self._raw_parts), text_id=text_id)
        self._owner.commit_transcript(records, assistant)
        return StepOutcome(
            text=extractor.text,
            text_id=text_id,
            records=records,
            end_turn=self._should_end_turn(records),
            ends_step_early=self._stop_stream,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _handle_events(self, events: Sequence[TagEvent]) -> None:
        for event in events:
            if self._stop_stream:
                return
            if isinstance(event, TextEvent):
                if self._callbacks.on_text is not None:
                    self._callbacks.on_text(event.text)
            elif isinstance(event, ReasoningEvent):
                self._emit_reasoning(event.text)
            elif isinstance(event, ToolCloseEvent):
                self._submit_call(event)
            elif isinstance(event, ExtractorErrorEvent):
                self._submit_parse_error(event)

    def _submit_call(self, event: ToolCloseEvent) -> None:
        name, params = resolve_tool_name(event, (DEFAULT_TOOL_TAG,))
        if name is None:
            item: Any = ToolCallError(
                tool_name=event.name,
                call_id=new_call_id(),
                input=params,
                error="Tool call is missing a tool name",
            )
        else:
            item = self._validator.resolve(RawToolCall(name=name, input=params))
        record = self._dispatcher.submit(item)
        if not isinstance(item, ToolCallError) and item.ends_agent_step:
            LOGGER.debug("%s ends the step; ignoring the rest of the response", record.tool_name)
            self._stop_stream = True

    def _submit_parse_error(self, event: ExtractorErrorEvent) -> None:
        LOGGER.warning("Malformed <%s> tag: %s", event.name, event.message)
        telemetry_service.emit(
            "extractor.malformed_tool_call",
            {"tag": event.name, "message": event.message, "agent_type": self._owner.state.agent_type},
        )
        self._dispatcher.submit(
            ToolCallError(tool_name=PARSE_ERROR_TOOL, call_id=new_call_id(), input={}, error=event.message)
        )

    def _emit_reasoning(self, text: str) -> None:
        if text and self._callbacks.on_reasoning is not None:
            self._callbacks.on_reasoning(text)

    def _should_end_turn(self, records: Sequence[DispatchRecord]) -> bool:
        if self._owner.end_turn_requested or self._owner.staged_output is not None:
            return True
        if any(record.ends_agent_step and record.delta.end_turn for record in records):
            return True
        return not records and not self._template.requires_task_completed


def _tool_tags(specs: Collection[ToolSpec]) -> tuple[str, ...]:
    tags = [DEFAULT_TOOL_TAG]
    for spec in specs:
        if spec.name.isidentifier() and spec.name not in tags:
            tags.append(spec.name)
    return tuple(tags)


async def _next_chunk(chunks: AsyncIterator["ModelChunk"], cancelled: asyncio.Future) -> "ModelChunk | None":
    """Next chunk of the stream, or ``None`` at its end or once ``cancelled`` resolves.

    A stalled provider never blocks cancellation: the pending read is
    cancelled and awaited so the stream can be closed afterwards.
    """

    if cancelled.done():
        return None
    pending = asyncio.ensure_future(_read(chunks))
    try:
        await asyncio.wait({pending, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        pending.cancel()
        raise
    if not pending.done():
        pending.cancel()
        await asyncio.gather(pending, return_exceptions=True)
        return None
    try:
        return pending.result()
    except StopAsyncIteration:
        return None


async def _read(chunks: AsyncIterator["ModelChunk"]) -> "ModelChunk":
    return await chunks.__anext__()
