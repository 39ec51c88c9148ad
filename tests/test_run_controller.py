"""Tests for the run controller: retries, cancellation and continuation."""

from __future__ import annotations

import asyncio
import json

import pytest

from taskforge.ai.client import ModelChunk
from taskforge.ai.orchestration.agent_loop import AgentRuntime
from taskforge.ai.orchestration.cancellation import CancellationToken
from taskforge.ai.orchestration.errors import ErrorCode, ModelProviderError, PaymentRequiredError
from taskforge.ai.orchestration.run_controller import (
    RetryAttempt,
    RetryExhausted,
    RetryPolicy,
    RunController,
    RunOptions,
)
from taskforge.ai.orchestration.types import RunState
from tests.helpers import RecordingSleep, ScriptedModel, text_chunks, tool_call


def _server_error() -> ModelProviderError:
    return ModelProviderError(error_code=ErrorCode.SERVER_ERROR, message="Server error. Please try again later.")


def _controller(model: ScriptedModel, sleep: RecordingSleep | None = None) -> RunController:
    return RunController(AgentRuntime(model=model, max_agent_steps=5), sleep=sleep)


class _StallingModel(ScriptedModel):
    """Scripted model whose ``STALL`` responses emit one chunk and then hang."""

    STALL = "stall"

    def __init__(self, responses) -> None:
        super().__init__(responses)
        self.closed = 0

    async def stream(self, messages, *, model=None, stop=None):
        if self._responses and self._responses[0] == self.STALL:
            self._responses.pop(0)
            self.calls.append([dict(message) for message in messages])
            try:
                yield ModelChunk(type="text", text="Working on it")
                await asyncio.Event().wait()
            finally:
                self.closed += 1
            return
        async for chunk in super().stream(messages, model=model, stop=stop):
            yield chunk


async def _cancel_after(cancellation: CancellationToken, delay: float) -> None:
    await asyncio.sleep(delay)
    cancellation.cancel()


class TestRetryPolicy:
    def test_delay_doubles_up_to_the_cap(self) -> None:
        policy = RetryPolicy(max_retries=5, base_delay=0.5, max_delay=3.0)

        assert [policy.delay_for(index) for index in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


# =============================================================================
# Retries
# =============================================================================


class TestRetries:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        model = ScriptedModel([_server_error(), _server_error(), text_chunks("finally")])
        sleep = RecordingSleep()
        retries: list[RetryAttempt] = []
        exhausted: list[RetryExhausted] = []

        run_state = await _controller(model, sleep).run(
            RunOptions(
                agent="base",
                prompt="go",
                retry=RetryPolicy(max_retries=3, base_delay=0.5, max_delay=8.0),
                on_retry=retries.append,
                on_retry_exhausted=exhausted.append,
            )
        )

        assert run_state.output.value == "finally"
        assert model.call_count == 3
        assert sleep.delays == [0.5, 1.0]
        assert [attempt.attempt for attempt in retries] == [1, 2]
        assert retries[0].error_code == ErrorCode.SERVER_ERROR
        assert retries[0].delay == 0.5
        assert exhausted == []

    @pytest.mark.asyncio
    async def test_every_attempt_starts_from_the_initial_state(self) -> None:
        model = ScriptedModel([_server_error(), text_chunks("ok")])

        run_state = await _controller(model, RecordingSleep()).run(
            RunOptions(agent="base", prompt="go", retry=RetryPolicy(max_retries=1, base_delay=0.1))
        )

        history = run_state.session_state.main_agent_state.message_history
        assert [message.role for message in history] == ["user", "assistant"]
        assert [message["role"] for message in model.calls[1]] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_end_in_error(self, telemetry_sink) -> None:
        model = ScriptedModel([_server_error()] * 3)
        sleep = RecordingSleep()
        exhausted: list[RetryExhausted] = []

        run_state = await _controller(model, sleep).run(
            RunOptions(
                agent="base",
                prompt="go",
                retry=RetryPolicy(max_retries=2, base_delay=1.0, max_delay=1.5),
                on_retry_exhausted=exhausted.append,
            )
        )

        assert run_state.output.is_error
        assert run_state.output.error_code == ErrorCode.SERVER_ERROR
        assert model.call_count == 3
        assert sleep.delays == [1.0, 1.5]
        assert len(exhausted) == 1
        assert exhausted[0].total_attempts == 3
        assert telemetry_sink.names().count("run.retry_scheduled") == 2
        assert "run.retry_exhausted" in telemetry_sink.names()

    @pytest.mark.asyncio
    async def test_no_retries_by_default(self) -> None:
        model = ScriptedModel([_server_error(), text_chunks("unused")])
        sleep = RecordingSleep()

        run_state = await _controller(model, sleep).run(RunOptions(agent="base", prompt="go"))

        assert run_state.output.is_error
        assert model.call_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_payment_required_is_never_retried(self) -> None:
        model = ScriptedModel([PaymentRequiredError(), text_chunks("unused")])
        exhausted: list[RetryExhausted] = []

        run_state = await _controller(model, RecordingSleep()).run(
            RunOptions(
                agent="base",
                prompt="go",
                retry=RetryPolicy(max_retries=3),
                on_retry_exhausted=exhausted.append,
            )
        )

        assert run_state.output.error_code == ErrorCode.PAYMENT_REQUIRED
        assert model.call_count == 1
        assert exhausted[0].total_attempts == 1

    @pytest.mark.asyncio
    async def test_unclassified_failure_is_terminal(self) -> None:
        model = ScriptedModel([ModelProviderError(message="model refused the request"), text_chunks("unused")])

        run_state = await _controller(model, RecordingSleep()).run(
            RunOptions(agent="base", prompt="go", retry=RetryPolicy(max_retries=3))
        )

        assert run_state.output.is_error
        assert run_state.output.error_code == ErrorCode.UNKNOWN_ERROR
        assert model.call_count == 1

    @pytest.mark.asyncio
    async def test_retryable_error_text_in_output_is_retried(self) -> None:
        model = ScriptedModel([RuntimeError("upstream returned 503 service unavailable"), text_chunks("ok")])

        run_state = await _controller(model, RecordingSleep()).run(
            RunOptions(agent="base", prompt="go", retry=RetryPolicy(max_retries=1, base_delay=0.1))
        )

        assert run_state.output.value == "ok"
        assert model.call_count == 2

    @pytest.mark.asyncio
    async def test_codes_outside_the_policy_are_not_retried(self) -> None:
        model = ScriptedModel([_server_error(), text_chunks("unused")])

        run_state = await _controller(model, RecordingSleep()).run(
            RunOptions(
                agent="base",
                prompt="go",
                retry=RetryPolicy(max_retries=3, retryable_codes=frozenset({ErrorCode.TIMEOUT})),
            )
        )

        assert run_state.output.error_code == ErrorCode.SERVER_ERROR
        assert model.call_count == 1

    @pytest.mark.asyncio
    async def test_policy_can_retry_additional_codes(self) -> None:
        bad_request = ModelProviderError(error_code=ErrorCode.BAD_REQUEST, message="Bad request")
        model = ScriptedModel([bad_request, text_chunks("ok")])
        sleep = RecordingSleep()

        run_state = await _controller(model, sleep).run(
            RunOptions(
                agent="base",
                prompt="go",
                retry=RetryPolicy(
                    max_retries=1, base_delay=0.1, retryable_codes=frozenset({ErrorCode.BAD_REQUEST})
                ),
            )
        )

        assert run_state.output.value == "ok"
        assert model.call_count == 2
        assert sleep.delays == [0.1]


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_immediately(self, telemetry_sink) -> None:
        model = ScriptedModel([_server_error(), text_chunks("unused")])
        cancellation = CancellationToken()
        loop = asyncio.get_running_loop()

        def cancel_soon(attempt: RetryAttempt) -> None:
            loop.call_soon(cancellation.cancel)

        run_state = await asyncio.wait_for(
            _controller(model).run(
                RunOptions(
                    agent="base",
                    prompt="go",
                    retry=RetryPolicy(max_retries=3, base_delay=30.0, max_delay=60.0),
                    cancellation=cancellation,
                    on_retry=cancel_soon,
                )
            ),
            timeout=2,
        )

        assert run_state.output.is_error
        assert run_state.output.message == "Run cancelled by user."
        assert model.call_count == 1
        assert "run.cancelled" in telemetry_sink.names()

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self) -> None:
        model = ScriptedModel()
        cancellation = CancellationToken()
        cancellation.cancel("Stopped by caller")

        run_state = await _controller(model).run(
            RunOptions(agent="base", prompt="go", cancellation=cancellation)
        )

        assert run_state.output.message == "Stopped by caller"
        assert run_state.session_state.main_agent_state.output == run_state.output
        assert model.call_count == 0

    @pytest.mark.asyncio
    async def test_cancel_while_stream_is_stalled(self, telemetry_sink) -> None:
        model = _StallingModel([_StallingModel.STALL])
        cancellation = CancellationToken()
        canceller = asyncio.create_task(_cancel_after(cancellation, 0.05))

        run_state = await asyncio.wait_for(
            _controller(model).run(RunOptions(agent="base", prompt="go", cancellation=cancellation)),
            timeout=1,
        )
        await canceller

        assert run_state.output.is_error
        assert run_state.output.message == "Run cancelled by user."
        assert model.closed == 1
        assert "run.cancelled" in telemetry_sink.names()

    @pytest.mark.asyncio
    async def test_cancel_while_child_stream_is_stalled(self) -> None:
        spawn = tool_call("spawn_agents", json.dumps({"agents": [{"agent_type": "base", "prompt": "child task"}]}))
        model = _StallingModel([text_chunks(spawn), _StallingModel.STALL, text_chunks("parent done")])
        cancellation = CancellationToken()
        canceller = asyncio.create_task(_cancel_after(cancellation, 0.05))

        run_state = await asyncio.wait_for(
            _controller(model).run(RunOptions(agent="base", prompt="go", cancellation=cancellation)),
            timeout=1,
        )
        await canceller

        assert run_state.output.message == "Run cancelled by user."
        assert model.closed == 1
        assert model.call_count == 2


# =============================================================================
# Continuation and callbacks
# =============================================================================


class TestContinuation:
    @pytest.mark.asyncio
    async def test_previous_run_transcript_is_continued(self) -> None:
        model = ScriptedModel([text_chunks("first answer"), text_chunks("second answer")])
        controller = _controller(model)

        first = await controller.run(
            RunOptions(agent="base", prompt="first question", file_context={"project": "demo"})
        )
        restored = RunState.from_json(first.to_json())
        second = await controller.run(RunOptions(agent="base", prompt="second question", previous_run=restored))

        history = second.session_state.main_agent_state.message_history
        assert [message.content for message in history] == [
            "first question",
            "first answer",
            "second question",
            "second answer",
        ]
        assert second.session_state.file_context == {"project": "demo"}
        assert second.session_state.main_agent_state.run_id != first.session_state.main_agent_state.run_id
        assert second.session_state.main_agent_state.agent_id == first.session_state.main_agent_state.agent_id

    @pytest.mark.asyncio
    async def test_on_cost_receives_direct_credits(self) -> None:
        from taskforge.ai.client import ModelChunk

        model = ScriptedModel([[ModelChunk(type="text", text="hi"), ModelChunk(type="usage", credits=0.75)]])
        costs: list[float] = []

        run_state = await _controller(model).run(RunOptions(agent="base", prompt="go", on_cost=costs.append))

        assert costs == [0.75]
        assert run_state.session_state.main_agent_state.credits_used == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_unknown_agent_is_an_error_output(self) -> None:
        run_state = await _controller(ScriptedModel()).run(RunOptions(agent="nobody", prompt="go"))

        assert run_state.output.is_error
        assert run_state.output.error_code == ErrorCode.NOT_FOUND
