"""Tests for best-of-N fan-out."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from taskforge.ai.agents.best_of_n import BestOfN, BestOfNResult, clamp_n, parse_selection
from taskforge.ai.orchestration.agent_loop import AgentRuntime
from taskforge.ai.orchestration.cancellation import CancellationToken
from taskforge.ai.orchestration.run_controller import BEST_OF_N_AGENT_TYPE, RunController, RunOptions
from taskforge.ai.orchestration.types import AgentOutput, AgentState
from taskforge.ai.tools.types import SpawnResult
from tests.helpers import ScriptedModel, text_chunks, tool_call


class _FakeSpawner:
    """Returns canned outputs per label; exceptions are raised from ``spawn``."""

    def __init__(self, outputs: Mapping[str, Any], selection: Any) -> None:
        self.outputs = dict(outputs)
        self.selection = selection
        self.calls: list[tuple[str, str | None, Mapping[str, Any] | None]] = []

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
        self.calls.append((agent_type, label, params))
        result = self.selection if label == "selector" else self.outputs[label]
        if isinstance(result, Exception):
            raise result
        child = parent.spawn_child(agent_type)
        child.output = result
        child.credits_used = 1.0
        return SpawnResult(agent_type=agent_type, label=label or agent_type, output=result, state=child)


def _choose(label: str, reasoning: str | None = None) -> AgentOutput:
    value: dict[str, Any] = {"implementation_id": label}
    if reasoning:
        value["reasoning"] = reasoning
    return AgentOutput.structured(value)


async def _fan_out(spawner: _FakeSpawner, parent: AgentState, n: int, **kwargs: Any) -> BestOfNResult:
    return await BestOfN(spawner, **kwargs).run(
        parent=parent,
        implementor="base",
        selector="selector",
        prompt="Implement it",
        n=n,
        cancellation=CancellationToken(),
    )


# =============================================================================
# Selection
# =============================================================================


class TestSelection:
    @pytest.mark.asyncio
    async def test_selected_output_is_copied_exactly(self, telemetry_sink) -> None:
        outputs = {label: AgentOutput.last_message(f"impl {label}") for label in "ABCD"}
        outputs["C"] = AgentOutput.structured({"files": ["c.py"], "summary": "third"})
        spawner = _FakeSpawner(outputs, _choose("C", "cleanest"))
        parent = AgentState("best_of_n")

        result = await _fan_out(spawner, parent, 4)

        assert result.selected == "C"
        assert result.output == outputs["C"]
        assert result.winner is not None and result.winner.label == "C"
        assert [candidate.label for candidate in result.candidates] == ["A", "B", "C", "D"]
        assert len(parent.subagents) == 5
        assert parent.credits_used == pytest.approx(5.0)
        assert "fanout.selected" in telemetry_sink.names()

    @pytest.mark.asyncio
    async def test_selector_receives_every_candidate(self) -> None:
        outputs: dict[str, Any] = {"A": AgentOutput.last_message("a"), "B": RuntimeError("crashed")}
        spawner = _FakeSpawner(outputs, _choose("A"))

        await _fan_out(spawner, AgentState("best_of_n"), 2)

        agent_type, label, params = spawner.calls[-1]
        assert (agent_type, label) == ("selector", "selector")
        assert params == {
            "implementations": [
                {"id": "A", "content": "a"},
                {"id": "B", "error": "crashed"},
            ]
        }

    @pytest.mark.asyncio
    async def test_record_on_appends_rationale(self) -> None:
        spawner = _FakeSpawner({"A": AgentOutput.last_message("a")}, _choose("A", "only one"))
        parent = AgentState("best_of_n")
        fan_out = BestOfN(spawner)
        result = await fan_out.run(
            parent=parent,
            implementor="base",
            selector="selector",
            prompt="p",
            n=1,
            cancellation=CancellationToken(),
        )

        fan_out.record_on(parent, result)

        assert parent.message_history[-1].content == "Selected implementation A. only one"
        assert parent.output == result.output


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_label(self, telemetry_sink) -> None:
        spawner = _FakeSpawner({label: AgentOutput.last_message(label) for label in "AB"}, _choose("Z"))

        result = await _fan_out(spawner, AgentState("best_of_n"), 2)

        assert result.output.is_error
        assert result.output.message == "Failed to find chosen implementation 'Z'"
        assert result.selected is None
        assert "fanout.failed" in telemetry_sink.names()

    @pytest.mark.asyncio
    async def test_all_failed_skips_selector(self) -> None:
        spawner = _FakeSpawner(
            {label: AgentOutput.error(f"{label} broke") for label in "ABC"},
            _choose("A"),
        )

        result = await _fan_out(spawner, AgentState("best_of_n"), 3)

        assert result.output.message.startswith("All 3 implementations failed.")
        assert "B: B broke" in result.output.message
        assert all(label != "selector" for _, label, _ in spawner.calls)

    @pytest.mark.asyncio
    async def test_selector_failure(self) -> None:
        spawner = _FakeSpawner({"A": AgentOutput.last_message("a")}, AgentOutput.error("no decision"))

        result = await _fan_out(spawner, AgentState("best_of_n"), 1)

        assert result.output.message == "Selector failed: no decision"

    @pytest.mark.asyncio
    async def test_failed_candidate_cannot_be_selected(self) -> None:
        spawner = _FakeSpawner(
            {"A": AgentOutput.last_message("a"), "B": AgentOutput.error("tests failed")},
            _choose("B"),
        )

        result = await _fan_out(spawner, AgentState("best_of_n"), 2)

        assert result.output.message == "Selected implementation B failed: tests failed"


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    @pytest.mark.parametrize(
        ("requested", "expected"),
        [(None, 5), (0, 1), (3, 3), (50, 10)],
    )
    def test_clamp_n(self, requested: int | None, expected: int) -> None:
        assert clamp_n(requested) == expected

    @pytest.mark.asyncio
    async def test_instance_count_is_clamped_to_bounds(self) -> None:
        spawner = _FakeSpawner({label: AgentOutput.last_message(label) for label in "ABCDEF"}, _choose("A"))

        result = await _fan_out(spawner, AgentState("best_of_n"), 50, max_n=4)

        assert [candidate.label for candidate in result.candidates] == ["A", "B", "C", "D"]

    def test_invalid_bounds(self) -> None:
        with pytest.raises(ValueError):
            BestOfN(_FakeSpawner({}, None), min_n=3, max_n=2)

    @pytest.mark.parametrize(
        ("value", "label"),
        [
            ({"implementation_id": "B"}, "B"),
            ({"implementationId": " C "}, "C"),
            ({"label": "D"}, "D"),
            ("E", "E"),
            ({"reasoning": "undecided"}, None),
            (None, None),
        ],
    )
    def test_parse_selection(self, value: Any, label: str | None) -> None:
        assert parse_selection(AgentOutput.structured(value)).label == label


# =============================================================================
# End to end
# =============================================================================


class TestRunBestOfN:
    @pytest.mark.asyncio
    async def test_controller_fan_out_with_scripted_model(self) -> None:
        choice = tool_call("set_output", '{"implementation_id": "B", "reasoning": "shorter"}')
        model = ScriptedModel([text_chunks("impl A"), text_chunks("impl B"), text_chunks(choice)])
        controller = RunController(AgentRuntime(model=model))

        run_state, result = await controller.run_best_of_n(RunOptions(agent="base", prompt="Write it"), n=2)

        parent = run_state.session_state.main_agent_state
        assert run_state.output == AgentOutput.last_message("impl B")
        assert result.selected == "B"
        assert parent.agent_type == BEST_OF_N_AGENT_TYPE
        assert parent.message_history[0].content == "Write it"
        assert parent.message_history[-1].content == "Selected implementation B. shorter"
        assert [child.agent_type for child in parent.subagents] == ["base", "base", "selector"]
        assert '"implementation_id"' not in str(model.calls[0])
        assert "impl A" in str(model.calls[2])

    @pytest.mark.asyncio
    async def test_controller_reports_fan_out_failure(self) -> None:
        model = ScriptedModel([text_chunks("impl A"), text_chunks("no choice"), text_chunks("still none")])
        controller = RunController(AgentRuntime(model=model))
        exhausted: list[Any] = []

        run_state, result = await controller.run_best_of_n(
            RunOptions(agent="base", prompt="Write it", on_retry_exhausted=exhausted.append), n=1
        )

        assert run_state.output.is_error
        assert run_state.output.message.startswith("Selector failed:")
        assert len(exhausted) == 1
