"""Best-of-N fan-out: run N implementations of one task and let a selector pick.

Each instance is a subagent labelled ``A``, ``B``, ``C``... Instances run
concurrently and independently; a failed instance is reported to the
selector as failed and can never be picked. The selector returns the label
of the winner, whose output becomes the parent's output unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import string
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ...services import telemetry as telemetry_service
from ..orchestration.cancellation import CancellationToken
from ..orchestration.errors import RunCancelledError, sanitize_error_message
from ..orchestration.types import AgentOutput, AgentState, Message
from ..tools.types import AgentSpawner, SpawnResult

__all__ = [
    "LABELS",
    "MIN_N",
    "MAX_N",
    "DEFAULT_N",
    "clamp_n",
    "Candidate",
    "Selection",
    "BestOfNResult",
    "BestOfN",
    "parse_selection",
]

LOGGER = logging.getLogger(__name__)

LABELS = string.ascii_uppercase
MIN_N = 1
MAX_N = 10
DEFAULT_N = 5
_SELECTION_KEYS = ("implementation_id", "implementationId", "label", "id")


def clamp_n(n: int | None, *, minimum: int = MIN_N, maximum: int = MAX_N, default: int = DEFAULT_N) -> int:
    """Clamp the requested instance count into ``[minimum, maximum]``."""

    value = default if n is None else int(n)
    return max(minimum, min(maximum, value))


@dataclass(slots=True, frozen=True)
class Candidate:
    label: str
    result: SpawnResult

    @property
    def ok(self) -> bool:
        return self.result.ok

    def to_selector_entry(self) -> dict[str, Any]:
        if self.ok:
            return {"id": self.label, "content": self.result.output.value}
        return {"id": self.label, "error": self.result.output.message or "Implementation failed"}


@dataclass(slots=True, frozen=True)
class Selection:
    label: str | None
    reasoning: str | None = None


@dataclass(slots=True)
class BestOfNResult:
    """Outcome of a fan-out.

    Attributes:
        output: The parent's output: the winner's output, or an error.
        candidates: Every instance in label order.
        selected: Label chosen by the selector, when one was chosen.
        reasoning: Selector's rationale, when provided.
    """

    output: AgentOutput
    candidates: list[Candidate] = field(default_factory=list)
    selected: str | None = None
    reasoning: str | None = None

    @property
    def winner(self) -> Candidate | None:
        for candidate in self.candidates:
            if candidate.label == self.selected:
                return candidate
        return None


def parse_selection(output: AgentOutput) -> Selection:
    """Read the chosen label (and rationale) from a selector's output."""

    value = output.value
    if isinstance(value, Mapping):
        label = next((value[key] for key in _SELECTION_KEYS if isinstance(value.get(key), str)), None)
        reasoning = value.get("reasoning")
        return Selection(label=label.strip() if label else None, reasoning=str(reasoning) if reasoning else None)
    if isinstance(value, str) and value.strip():
        return Selection(label=value.strip())
    return Selection(label=None)


class BestOfN:
    """Runs a best-of-N fan-out through an :class:`AgentSpawner`.

    Args:
        spawner: Spawns the implementor and selector subagents.
        min_n: Lower bound for the instance count.
        max_n: Upper bound for the instance count.
    """

    def __init__(self, spawner: AgentSpawner, *, min_n: int = MIN_N, max_n: int = MAX_N) -> None:
        if min_n < 1 or max_n < min_n or max_n > len(LABELS):
            raise ValueError(f"Invalid fan-out bounds [{min_n}, {max_n}]")
        self._spawner = spawner
        self._min_n = min_n
        self._max_n = max_n

    async def run(
        self,
        *,
        parent: AgentState,
        implementor: str,
        selector: str,
        prompt: str | None,
        params: Mapping[str, Any] | None = None,
        n: int | None = None,
        cancellation: CancellationToken,
    ) -> BestOfNResult:
        count = clamp_n(n, minimum=self._min_n, maximum=self._max_n)
        labels = LABELS[:count]
        telemetry_service.emit("fanout.started", {"implementor": implementor, "selector": selector, "n": count})
        LOGGER.info("Fan-out of %d %s instance(s)", count, implementor)

        results = await asyncio.gather(
            *(self._spawn(implementor, prompt, params, parent, cancellation, label) for label in labels)
        )
        candidates = [Candidate(label=label, result=result) for label, result in zip(labels, results)]
        self._attach(parent, [candidate.result for candidate in candidates])

        if cancellation.cancelled:
            return self._fail(BestOfNResult(output=AgentOutput.error(cancellation.reason), candidates=candidates))
        if not any(candidate.ok for candidate in candidates):
            errors = "; ".join(f"{c.label}: {c.result.output.message}" for c in candidates)
            return self._fail(
                BestOfNResult(
                    output=AgentOutput.error(f"All {count} implementations failed. {errors}"),
                    candidates=candidates,
                )
            )

        selection_result = await self._spawn(
            selector,
            prompt,
            {"implementations": [candidate.to_selector_entry() for candidate in candidates]},
            parent,
            cancellation,
            "selector",
        )
        self._attach(parent, [selection_result])
        if not selection_result.ok:
            message = f"Selector failed: {selection_result.output.message}"
            return self._fail(BestOfNResult(output=AgentOutput.error(message), candidates=candidates))

        selection = parse_selection(selection_result.output)
        chosen = next((candidate for candidate in candidates if candidate.label == selection.label), None)
        if chosen is None:
            message = f"Failed to find chosen implementation {selection.label!r}"
            return self._fail(BestOfNResult(output=AgentOutput.error(message), candidates=candidates))
        if not chosen.ok:
            message = f"Selected implementation {chosen.label} failed: {chosen.result.output.message}"
            return self._fail(BestOfNResult(output=AgentOutput.error(message), candidates=candidates))

        output = chosen.result.output
        telemetry_service.emit("fanout.selected", {"label": chosen.label, "n": count})
        return BestOfNResult(
            output=AgentOutput(type=output.type, value=output.value),
            candidates=candidates,
            selected=chosen.label,
            reasoning=selection.reasoning,
        )

    def record_on(self, parent: AgentState, result: BestOfNResult) -> None:
        """Append the selection rationale to the parent's transcript and set its output."""

        if result.selected is not None:
            note = f"Selected implementation {result.selected}."
            if result.reasoning:
                note = f"{note} {result.reasoning}"
            parent.message_history.append(Message.assistant(note, kind="selection"))
        parent.output = result.output

    async def _spawn(
        self,
        agent_type: str,
        prompt: str | None,
        params: Mapping[str, Any] | None,
        parent: AgentState,
        cancellation: CancellationToken,
        label: str,
    ) -> SpawnResult:
        try:
            return await self._spawner.spawn(
                agent_type, prompt, params, parent=parent, cancellation=cancellation, label=label
            )
        except RunCancelledError as exc:
            return SpawnResult(agent_type=agent_type, label=label, output=AgentOutput.error(exc.message))
        except Exception as exc:
            LOGGER.warning("Fan-out instance %s failed to spawn: %s", label, exc)
            return SpawnResult(agent_type=agent_type, label=label, output=AgentOutput.error(sanitize_error_message(exc)))

    @staticmethod
    def _attach(parent: AgentState, results: Sequence[SpawnResult]) -> None:
        for result in results:
            if result.state is None:
                continue
            parent.subagents.append(result.state)
            parent.child_run_ids.append(result.state.run_id)
            parent.credits_used += result.state.credits_used

    @staticmethod
    def _fail(result: BestOfNResult) -> BestOfNResult:
        LOGGER.warning("Fan-out failed: %s", result.output.message)
        telemetry_service.emit("fanout.failed", {"message": result.output.message})
        return result
