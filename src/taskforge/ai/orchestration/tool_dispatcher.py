"""Ordering and dispatch of validated tool calls.

Calls are submitted in the order the model (or a script) issued them.
Execution starts immediately and concurrently, with two ordering rules:

* calls that touch the same resource key enter the resource one at a time, in
  issuance order, through the per-key queues of :mod:`.resource_queue`;
* results are committed in issuance order: each call waits for the previous
  call's commit before its own, regardless of which finished first.

Handlers never mutate :class:`~.types.AgentState`. They return a
:class:`~taskforge.ai.tools.types.StateDelta` that :class:`AgentStateOwner`
applies during the ordered commit.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Protocol, Sequence

from ...services import telemetry as telemetry_service
from ..tools.registry import CustomToolRegistry, ToolRegistry, split_provider_name
from ..tools.types import (
    AgentSpawner,
    HandlerOutcome,
    ResourceStore,
    StateDelta,
    ToolContext,
    ToolHandler,
    ToolName,
)
from ..tools.validation import ToolCallError
from .cancellation import CancellationToken
from .errors import sanitize_error_message
from .resource_queue import QueueTicket, ResourceQueueArena, normalize_resource_key
from .types import AgentOutput, AgentState, Message, ToolCall, ToolResult

__all__ = [
    "DISALLOWED_TOOL_MESSAGE",
    "DispatchRecord",
    "DispatchListener",
    "AgentStateOwner",
    "ToolDispatcher",
]

LOGGER = logging.getLogger(__name__)

DISALLOWED_TOOL_MESSAGE = (
    "Tool `{name}` is not currently available. Make sure to only use tools listed in the system instructions."
)


# -----------------------------------------------------------------------------
# Dispatch Record
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchRecord:
    """Bookkeeping for one submitted call.

    Attributes:
        index: Issuance position within the dispatcher.
        tool_name: Name of the requested tool.
        call_id: Identifier shared by the call and its result.
        call: The validated call, ``None`` when validation failed.
        result: Committed result; ``None`` when skipped or discarded.
        delta: State changes applied for this call.
        skipped: The call never started because the run was cancelled.
        discarded: The call finished after cancellation; its result was dropped.
        ends_agent_step: Whether the step should end after this call.
        include_in_history: Whether the result enters the transcript.
        elapsed_ms: Handler execution time.
    """

    index: int
    tool_name: str
    call_id: str
    call: ToolCall | None = None
    result: ToolResult | None = None
    delta: StateDelta = field(default_factory=StateDelta)
    skipped: bool = False
    discarded: bool = False
    ends_agent_step: bool = False
    include_in_history: bool = True
    elapsed_ms: float = 0.0
    committed: "asyncio.Future[None] | None" = field(default=None, repr=False)

    @property
    def forwarded(self) -> bool:
        return self.result is not None and not self.skipped and not self.discarded

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "tool_name": self.tool_name,
            "call_id": self.call_id,
            "skipped": self.skipped,
            "discarded": self.discarded,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.result is not None:
            data["result"] = self.result.to_dict()
        return data


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, call: ToolCall) -> None:
        ...

    def on_tool_complete(self, record: DispatchRecord) -> None:
        ...

    def on_tool_error(self, call: ToolCall, error: BaseException) -> None:
        ...


# -----------------------------------------------------------------------------
# State owner
# -----------------------------------------------------------------------------


class AgentStateOwner:
    """Single writer for one :class:`AgentState`.

    Deltas are applied one at a time from the dispatcher's ordered commit
    path, so concurrent handlers never race on the state.
    """

    def __init__(self, state: AgentState, *, on_cost: Callable[[float], None] | None = None) -> None:
        self._state = state
        self._on_cost = on_cost
        self._staged_output: AgentOutput | None = None
        self._end_turn = False

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def staged_output(self) -> AgentOutput | None:
        """Most recent output set by a tool; the last write wins."""
        return self._staged_output

    @property
    def end_turn_requested(self) -> bool:
        return self._end_turn

    def stage_output(self, output: AgentOutput | None) -> None:
        self._staged_output = output

    def reset_turn_flags(self) -> None:
        self._end_turn = False

    def add_credits(self, amount: float) -> None:
        if not amount:
            return
        self._state.credits_used += amount
        self._state.direct_credits_used += amount
        if self._on_cost is not None:
            try:
                self._on_cost(amount)
            except Exception:  # pragma: no cover - callback errors are non-fatal
                LOGGER.debug("Cost callback failed", exc_info=True)

    def apply(self, delta: StateDelta) -> None:
        """Apply the non-transcript parts of ``delta``."""

        self.apply_accounting(delta)
        for key, goal in delta.subgoals.items():
            self._state.agent_context[key] = goal
        for key, update in delta.subgoal_updates.items():
            self._state.agent_context[key] = update.apply_to(self._state.agent_context[key])
        if delta.output is not None:
            self._staged_output = delta.output
        if delta.end_turn:
            self._end_turn = True

    def missing_subgoals(self, delta: StateDelta) -> list[str]:
        """Ids ``delta`` updates that neither exist nor are created by it."""

        known = self._state.agent_context
        return [key for key in delta.subgoal_updates if key not in known and key not in delta.subgoals]

    def apply_accounting(self, delta: StateDelta) -> None:
        """Apply credits and child states; used even for discarded results."""

        if delta.credits:
            self.add_credits(delta.credits)
        if delta.child_credits:
            self._state.credits_used += delta.child_credits
        for child in delta.subagents:
            self._state.subagents.append(child)
            self._state.child_run_ids.append(child.run_id)

    def append_messages(self, messages: Sequence[Message]) -> None:
        self._state.message_history.extend(messages)

    def replace_messages(self, messages: Sequence[Message]) -> None:
        self._state.message_history[:] = list(messages)

    def commit_transcript(
        self,
        records: Sequence[DispatchRecord],
        assistant_message: Message | None = None,
    ) -> None:
        """Append the step's assistant message and forwarded results in issuance order."""

        history = self._state.message_history
        if assistant_message is not None and assistant_message.content:
            history.append(assistant_message)
        for record in sorted(records, key=lambda item: item.index):
            if not record.forwarded:
                continue
            delta = record.delta
            if delta.replace_messages is not None:
                history[:] = list(delta.replace_messages)
            if record.include_in_history and record.result is not None:
                history.append(record.result.to_message())
            history.extend(delta.append_messages)


# -----------------------------------------------------------------------------
# Resource access
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _Handle:
    key: str
    store: ResourceStore

    async def read(self) -> str | None:
        return await self.store.read(self.key)

    async def write(self, content: str) -> None:
        await self.store.write(self.key, content)


class _ResourceTurn:
    """Async context manager granting access once the call's ticket comes up."""

    def __init__(self, ticket: QueueTicket, store: ResourceStore, cancellation: CancellationToken) -> None:
        self._ticket = ticket
        self._store = store
        self._cancellation = cancellation

    async def __aenter__(self) -> _Handle:
        await self._ticket.__aenter__()
        try:
            self._cancellation.raise_if_cancelled()
        except BaseException:
            self._ticket.release()
            raise
        return _Handle(key=self._ticket.key, store=self._store)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._ticket.release()
        return False


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Executes one step's tool calls with per-resource and transcript ordering.

    Args:
        registry: Built-in tool handlers.
        owner: State owner receiving deltas and credits.
        cancellation: Run-wide cancellation token.
        custom_tools: Caller-defined tools and providers.
        allowed_tools: Tool names the agent may call; ``None`` allows all.
        resource_store: External resource boundary handed to handlers.
        spawner: Spawn boundary handed to handlers.
        template: Template of the agent whose calls are dispatched.
        listener: Optional dispatch callbacks.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        owner: AgentStateOwner,
        cancellation: CancellationToken,
        custom_tools: CustomToolRegistry | None = None,
        allowed_tools: Collection[str] | None = None,
        resource_store: ResourceStore | None = None,
        spawner: AgentSpawner | None = None,
        template: Any | None = None,
        listener: DispatchListener | None = None,
    ) -> None:
        self._registry = registry
        self._owner = owner
        self._cancellation = cancellation
        self._custom = custom_tools or CustomToolRegistry()
        self._allowed = frozenset(allowed_tools) if allowed_tools is not None else None
        self._resource_store = resource_store
        self._spawner = spawner
        self._template = template
        self._listener = listener
        self._arena = ResourceQueueArena()
        self._records: list[DispatchRecord] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._cost_tasks: list[asyncio.Task[None]] = []
        self._barrier: asyncio.Future[None] | None = None

    @property
    def arena(self) -> ResourceQueueArena:
        return self._arena

    @property
    def records(self) -> list[DispatchRecord]:
        return list(self._records)

    @property
    def owner(self) -> AgentStateOwner:
        return self._owner

    def submit(self, item: ToolCall | ToolCallError, *, from_script: bool = False) -> DispatchRecord:
        """Schedule ``item``; must be called in issuance order."""

        loop = asyncio.get_running_loop()
        previous = self._barrier
        committed: asyncio.Future[None] = loop.create_future()
        self._barrier = committed

        if isinstance(item, ToolCallError):
            record = DispatchRecord(
                index=len(self._records),
                tool_name=item.tool_name,
                call_id=item.call_id,
                committed=committed,
            )
            outcome = HandlerOutcome(content=item.to_result().content, is_error=True)
            coroutine = self._commit_in_order(record, outcome, previous, committed)
        else:
            record = DispatchRecord(
                index=len(self._records),
                tool_name=item.tool_name,
                call_id=item.call_id,
                call=item,
                include_in_history=item.include_in_history,
                committed=committed,
            )
            handler, rejection = self._resolve(item, from_script)
            if handler is None:
                coroutine = self._commit_in_order(record, rejection, previous, committed)
            else:
                ticket = self._reserve(handler, item)
                coroutine = self._run(record, item, handler, ticket, previous, committed, from_script)

        self._records.append(record)
        self._tasks.append(loop.create_task(coroutine))
        return record

    async def wait_for(self, record: DispatchRecord) -> DispatchRecord:
        """Wait until ``record`` has been committed (or skipped)."""

        if record.committed is not None:
            await asyncio.shield(record.committed)
        return record

    async def finish(self) -> list[DispatchRecord]:
        """Wait for every submitted call and every deferred cost report."""

        if self._tasks:
            await asyncio.gather(*self._tasks)
        if self._cost_tasks:
            await asyncio.gather(*self._cost_tasks)
        return list(self._records)

    def results(self) -> list[ToolResult]:
        """Forwarded results in issuance order."""
        return [record.result for record in self._records if record.forwarded and record.result is not None]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _resolve(self, call: ToolCall, from_script: bool) -> tuple[ToolHandler | None, HandlerOutcome]:
        if not from_script and not self._is_allowed(call.tool_name):
            LOGGER.debug("Rejected disallowed tool %s", call.tool_name)
            telemetry_service.emit("tool.call_rejected", {"tool_name": call.tool_name, "call_id": call.call_id})
            return None, HandlerOutcome.error(DISALLOWED_TOOL_MESSAGE.format(name=call.tool_name))
        tool_name = ToolName.parse(call.tool_name)
        if tool_name is not None:
            handler = self._registry.get(tool_name)
        else:
            handler = self._custom.handler_for(call.tool_name)
        if handler is None:
            return None, HandlerOutcome.error(f"Tool {call.tool_name} not found")
        return handler, HandlerOutcome()

    def _is_allowed(self, name: str) -> bool:
        if self._allowed is None or name in self._allowed:
            return True
        provider, _ = split_provider_name(name)
        return provider is not None and f"{provider}/*" in self._allowed

    def _reserve(self, handler: ToolHandler, call: ToolCall) -> QueueTicket | None:
        try:
            key = handler.resource_key(call.input)
        except Exception:  # pragma: no cover - treated as unkeyed
            LOGGER.debug("resource_key failed for %s", call.tool_name, exc_info=True)
            return None
        if not key:
            return None
        return self._arena.reserve(key)

    def _context(self, ticket: QueueTicket | None, from_script: bool) -> ToolContext:
        store = self._resource_store
        cancellation = self._cancellation

        def resource_turn(key: str) -> _ResourceTurn:
            if ticket is None or normalize_resource_key(key) != ticket.key:
                raise ValueError(f"No queue position reserved for resource '{key}'")
            if store is None:
                raise RuntimeError("No resource store configured")
            return _ResourceTurn(ticket, store, cancellation)

        return ToolContext(
            agent_state=self._owner.state,
            cancellation=cancellation,
            template=self._template,
            from_script=from_script,
            resource_store=store,
            spawner=self._spawner,
            resource_turn=resource_turn,
        )

    async def _run(
        self,
        record: DispatchRecord,
        call: ToolCall,
        handler: ToolHandler,
        ticket: QueueTicket | None,
        previous: asyncio.Future[None] | None,
        committed: asyncio.Future[None],
        from_script: bool,
    ) -> None:
        outcome: HandlerOutcome | None = None
        try:
            try:
                if self._cancellation.cancelled:
                    record.skipped = True
                    LOGGER.debug("Skipped %s (%s): run cancelled", call.tool_name, call.call_id)
                    telemetry_service.emit(
                        "tool.call_skipped", {"tool_name": call.tool_name, "call_id": call.call_id}
                    )
                else:
                    outcome = await self._execute(record, call, handler, ticket, from_script)
            finally:
                if ticket is not None:
                    ticket.release()
            await self._commit_in_order(record, outcome, previous, committed)
        finally:
            if not committed.done():
                committed.set_result(None)

    async def _execute(
        self,
        record: DispatchRecord,
        call: ToolCall,
        handler: ToolHandler,
        ticket: QueueTicket | None,
        from_script: bool,
    ) -> HandlerOutcome:
        self._notify("on_tool_start", call)
        telemetry_service.emit("tool.call_started", {"tool_name": call.tool_name, "call_id": call.call_id})
        started = time.perf_counter()
        try:
            result = await handler.execute(call, self._context(ticket, from_script))
            outcome = result if isinstance(result, HandlerOutcome) else HandlerOutcome(content=result)
        except Exception as exc:
            LOGGER.warning("Tool %s (%s) failed: %s", call.tool_name, call.call_id, exc)
            self._notify("on_tool_error", call, exc)
            outcome = HandlerOutcome.error(f"Error executing {call.tool_name}: {sanitize_error_message(exc)}")
        record.elapsed_ms = (time.perf_counter() - started) * 1000
        self._track_credits(call, outcome.credits)
        return outcome

    def _track_credits(self, call: ToolCall, credits: Any) -> None:
        if credits is None:
            return
        if inspect.isawaitable(credits):
            self._cost_tasks.append(asyncio.ensure_future(self._await_credits(call, credits)))
            return
        try:
            self._owner.add_credits(float(credits))
        except (TypeError, ValueError):
            LOGGER.warning("Tool %s reported non-numeric credits %r", call.tool_name, credits)

    async def _await_credits(self, call: ToolCall, pending: Any) -> None:
        try:
            amount = await pending
        except Exception as exc:
            LOGGER.warning("Deferred credit report for %s failed: %s", call.tool_name, exc)
            return
        try:
            self._owner.add_credits(float(amount or 0.0))
        except (TypeError, ValueError):
            LOGGER.warning("Tool %s reported non-numeric credits %r", call.tool_name, amount)

    async def _commit_in_order(
        self,
        record: DispatchRecord,
        outcome: HandlerOutcome | None,
        previous: asyncio.Future[None] | None,
        committed: asyncio.Future[None],
    ) -> None:
        try:
            if previous is not None and not previous.done():
                await asyncio.shield(previous)
            self._commit(record, outcome)
        finally:
            if not committed.done():
                committed.set_result(None)

    def _commit(self, record: DispatchRecord, outcome: HandlerOutcome | None) -> None:
        if record.skipped or outcome is None:
            return
        if self._cancellation.cancelled:
            record.discarded = True
            self._owner.apply_accounting(outcome.delta)
            LOGGER.debug("Discarded result of %s (%s): run cancelled", record.tool_name, record.call_id)
            return
        missing = self._owner.missing_subgoals(outcome.delta)
        if missing:
            self._owner.apply_accounting(outcome.delta)
            outcome = HandlerOutcome.error(f"Subgoal {missing[0]} does not exist")
        record.result = ToolResult(
            tool_name=record.tool_name,
            call_id=record.call_id,
            content=outcome.content,
            is_error=outcome.is_error,
        )
        record.delta = outcome.delta
        record.ends_agent_step = bool(record.call is not None and record.call.ends_agent_step) or outcome.delta.end_turn
        self._owner.apply(outcome.delta)
        self._notify("on_tool_complete", record)
        telemetry_service.emit(
            "tool.call_finished",
            {
                "tool_name": record.tool_name,
                "call_id": record.call_id,
                "is_error": outcome.is_error,
                "elapsed_ms": record.elapsed_ms,
            },
        )

    def _notify(self, method: str, *args: Any) -> None:
        if self._listener is None:
            return
        callback = getattr(self._listener, method, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # pragma: no cover - listener errors are non-fatal
            LOGGER.debug("Dispatch listener %s failed", method, exc_info=True)
