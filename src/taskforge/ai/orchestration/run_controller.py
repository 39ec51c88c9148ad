"""Run controller: the boundary that turns an agent run into a :class:`RunState`.

:meth:`RunController.run` never raises. Every attempt starts from the same
initial state; failures classified as retryable are retried with exponential
backoff (tenacity), and the backoff wait itself is interruptible through the
run's :class:`CancellationToken`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from ...services import telemetry as telemetry_service
from ..agents.best_of_n import MAX_N, MIN_N, BestOfN, BestOfNResult
from .agent_loop import AgentRuntime
from .agent_step import StepCallbacks
from .cancellation import CancellationToken
from .errors import (
    RETRYABLE_ERROR_CODES,
    ErrorCode,
    PaymentRequiredError,
    RunCancelledError,
    classify_exception,
    classify_message,
    is_retryable,
    sanitize_error_message,
)
from .types import AgentOutput, AgentState, Message, RunState, SessionState

__all__ = [
    "RetryPolicy",
    "RetryAttempt",
    "RetryExhausted",
    "RunOptions",
    "RunController",
    "BEST_OF_N_AGENT_TYPE",
]

LOGGER = logging.getLogger(__name__)

BEST_OF_N_AGENT_TYPE = "best_of_n"


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Run-level retry configuration.

    The wait before retry ``n`` (0-based) is ``min(base_delay * 2**n, max_delay)``.
    Only failures whose error code is in ``retryable_codes`` are retried.
    """

    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 8.0
    retryable_codes: frozenset[str] = RETRYABLE_ERROR_CODES

    def delay_for(self, retry_index: int) -> float:
        return min(self.base_delay * (2**retry_index), self.max_delay)


@dataclass(slots=True, frozen=True)
class RetryAttempt:
    """Reported before each backoff wait."""

    attempt: int
    error_message: str
    delay: float
    error_code: str | None = None


@dataclass(slots=True, frozen=True)
class RetryExhausted:
    """Reported when the run ends in an error after classification."""

    total_attempts: int
    error_message: str
    error_code: str | None = None


@dataclass(slots=True)
class RunOptions:
    """Input of one run.

    Attributes:
        agent: Agent type of the main agent.
        prompt: User prompt for this turn.
        params: Structured parameters for the agent.
        previous_run: Continue from this run's transcript.
        file_context: Opaque project context carried on the session.
        retry: Run-level retry policy.
        cancellation: External cancellation token; a fresh one is created when omitted.
        on_retry: Called before each backoff wait.
        on_retry_exhausted: Called when the run ends in an error.
        on_cost: Called for every credit charged directly to the main agent.
        callbacks: Streaming observers for the main agent.
    """

    agent: str
    prompt: str | None = None
    params: Mapping[str, Any] | None = None
    previous_run: RunState | None = None
    file_context: Mapping[str, Any] | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cancellation: CancellationToken | None = None
    on_retry: Callable[[RetryAttempt], None] | None = None
    on_retry_exhausted: Callable[[RetryExhausted], None] | None = None
    on_cost: Callable[[float], None] | None = None
    callbacks: StepCallbacks | None = None


Sleep = Callable[[float], Awaitable[None]]


class RunController:
    """Runs agents with retry, cancellation and error normalisation.

    Args:
        runtime: Collaborators shared by every agent in the run.
        sleep: Backoff wait; defaults to the run's cancellable sleep.
    """

    def __init__(self, runtime: AgentRuntime, *, sleep: Sleep | None = None) -> None:
        self._runtime = runtime
        self._sleep = sleep

    @property
    def runtime(self) -> AgentRuntime:
        return self._runtime

    async def run(self, options: RunOptions) -> RunState:
        """Run ``options.agent`` to completion. Never raises."""

        cancellation = options.cancellation or CancellationToken()
        attempts = 0

        async def attempt() -> RunState:
            nonlocal attempts
            attempts += 1
            cancellation.raise_if_cancelled()
            return await self._attempt(options, cancellation)

        retryable = options.retry.retryable_codes

        def retry_result(run_state: RunState) -> bool:
            return not cancellation.cancelled and is_retryable(_output_error_code(run_state.output), retryable)

        def retry_exception(exc: BaseException) -> bool:
            if cancellation.cancelled or isinstance(exc, (RunCancelledError, PaymentRequiredError)):
                return False
            return is_retryable(classify_exception(exc), retryable)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(0, options.retry.max_retries) + 1),
            wait=wait_exponential(multiplier=options.retry.base_delay, max=options.retry.max_delay),
            retry=retry_if_result(retry_result) | retry_if_exception(retry_exception),
            before_sleep=lambda state: self._before_sleep(state, options),
            sleep=self._sleep or cancellation.sleep,
        )

        try:
            try:
                run_state = await retrying(attempt)
            except RetryError as exc:
                last = exc.last_attempt
                if last.failed:
                    raise last.exception() from exc  # type: ignore[misc]
                run_state = last.result()
        except RunCancelledError:
            LOGGER.info("Run of %s cancelled after %d attempt(s)", options.agent, attempts)
            telemetry_service.emit("run.cancelled", {"agent": options.agent, "attempts": attempts})
            return self._cancelled_state(options, cancellation)
        except Exception as exc:
            LOGGER.warning("Run of %s failed: %s", options.agent, exc)
            code = classify_exception(exc)
            run_state = RunState(
                session_state=self._initial_session(options),
                output=AgentOutput.error(sanitize_error_message(exc), code),
            )
            run_state.session_state.main_agent_state.output = run_state.output

        if cancellation.cancelled:
            telemetry_service.emit("run.cancelled", {"agent": options.agent, "attempts": attempts})
            return self._cancelled_state(options, cancellation, run_state)

        if run_state.output.is_error:
            self._report_exhausted(options, attempts, run_state.output)
        return run_state

    async def run_best_of_n(
        self,
        options: RunOptions,
        *,
        selector: str = "selector",
        n: int | None = None,
        min_n: int = MIN_N,
        max_n: int = MAX_N,
    ) -> tuple[RunState, BestOfNResult]:
        """Fan ``options.agent`` out to ``n`` instances and keep the one ``selector`` picks.

        The parent agent is a synthetic ``best_of_n`` agent that owns every
        instance and the selector as subagents. Never raises.
        """

        cancellation = options.cancellation or CancellationToken()
        session = self._initial_session(options)
        parent = session.main_agent_state
        parent.agent_type = BEST_OF_N_AGENT_TYPE
        if options.prompt:
            parent.message_history.append(Message.user(options.prompt))
        fan_out = BestOfN(self._runtime.spawner(), min_n=min_n, max_n=max_n)
        try:
            result = await fan_out.run(
                parent=parent,
                implementor=options.agent,
                selector=selector,
                prompt=options.prompt,
                params=options.params,
                n=n,
                cancellation=cancellation,
            )
        except Exception as exc:
            LOGGER.warning("Fan-out of %s failed: %s", options.agent, exc)
            result = BestOfNResult(output=AgentOutput.error(sanitize_error_message(exc), classify_exception(exc)))
        fan_out.record_on(parent, result)
        if result.output.is_error:
            self._report_exhausted(options, 1, result.output)
        return RunState(session_state=session, output=result.output), result

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------
    async def _attempt(self, options: RunOptions, cancellation: CancellationToken) -> RunState:
        session = self._initial_session(options)
        state = session.main_agent_state
        output = await self._runtime.run_agent(
            state,
            prompt=options.prompt,
            params=options.params,
            cancellation=cancellation,
            on_cost=options.on_cost,
            callbacks=options.callbacks,
        )
        if output.is_error and output.error_code is None:
            code = classify_message(output.message)
            if code is not None:
                output = AgentOutput.error(output.message or "", code)
                state.output = output
        return RunState(session_state=session, output=output)

    def _initial_session(self, options: RunOptions) -> SessionState:
        previous = options.previous_run
        if previous is not None:
            snapshot = SessionState.from_dict(previous.session_state.to_dict())
            state = snapshot.main_agent_state.for_continuation()
            state.steps_remaining = self._runtime.max_agent_steps
            file_context = dict(snapshot.file_context)
        else:
            state = AgentState(agent_type=options.agent, steps_remaining=self._runtime.max_agent_steps)
            file_context = {}
        if state.agent_type != options.agent:
            state.agent_type = options.agent
        if options.file_context:
            file_context.update(options.file_context)
        return SessionState(main_agent_state=state, file_context=file_context)

    def _cancelled_state(
        self,
        options: RunOptions,
        cancellation: CancellationToken,
        run_state: RunState | None = None,
    ) -> RunState:
        session = run_state.session_state if run_state is not None else self._initial_session(options)
        output = AgentOutput.error(cancellation.reason)
        session.main_agent_state.output = output
        return RunState(session_state=session, output=output)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def _before_sleep(self, retry_state: RetryCallState, options: RunOptions) -> None:
        outcome = retry_state.outcome
        if outcome is None:  # pragma: no cover - tenacity always sets an outcome first
            return
        if outcome.failed:
            exc = outcome.exception()
            message = sanitize_error_message(exc)
            code: str | None = classify_exception(exc)
        else:
            output = outcome.result().output
            message = output.message or ""
            code = _output_error_code(output)
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        attempt = RetryAttempt(attempt=retry_state.attempt_number, error_message=message, delay=delay, error_code=code)
        LOGGER.info(
            "Run of %s failed (%s); retry %d/%d in %.2fs",
            options.agent,
            code,
            retry_state.attempt_number,
            options.retry.max_retries,
            delay,
        )
        telemetry_service.emit(
            "run.retry_scheduled",
            {"agent": options.agent, "attempt": attempt.attempt, "delay": delay, "error_code": code},
        )
        if options.on_retry is not None:
            try:
                options.on_retry(attempt)
            except Exception:  # pragma: no cover - callback errors are non-fatal
                LOGGER.debug("on_retry callback failed", exc_info=True)

    def _report_exhausted(self, options: RunOptions, attempts: int, output: AgentOutput) -> None:
        report = RetryExhausted(
            total_attempts=attempts,
            error_message=output.message or "",
            error_code=_output_error_code(output),
        )
        telemetry_service.emit(
            "run.retry_exhausted",
            {"agent": options.agent, "attempts": attempts, "error_code": report.error_code},
        )
        if options.on_retry_exhausted is not None:
            try:
                options.on_retry_exhausted(report)
            except Exception:  # pragma: no cover - callback errors are non-fatal
                LOGGER.debug("on_retry_exhausted callback failed", exc_info=True)


def _output_error_code(output: AgentOutput) -> str | None:
    if not output.is_error:
        return None
    return output.error_code or classify_message(output.message) or ErrorCode.UNKNOWN_ERROR
