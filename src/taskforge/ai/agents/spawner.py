"""In-process subagent spawning."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping

from ..orchestration.cancellation import CancellationToken
from ..orchestration.errors import RunCancelledError, sanitize_error_message, classify_exception
from ..orchestration.types import AgentOutput, AgentState
from ..tools.types import SpawnResult

if TYPE_CHECKING:
    from ..orchestration.agent_loop import AgentRuntime

__all__ = ["LocalAgentSpawner"]

LOGGER = logging.getLogger(__name__)


class LocalAgentSpawner:
    """Runs child agents on the parent's runtime and event loop.

    Children share the parent's cancellation token and workspace. A child
    failure, including a model or network failure, is reported as an error
    output on its :class:`SpawnResult` rather than raised, so siblings and
    the parent keep going.
    """

    def __init__(self, runtime: "AgentRuntime") -> None:
        self._runtime = runtime

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
        label = label or agent_type
        template = self._runtime.templates.get(agent_type)
        if template is None:
            return SpawnResult(
                agent_type=agent_type,
                label=label,
                output=AgentOutput.error(f"Agent template '{agent_type}' not found"),
            )

        child = parent.spawn_child(
            agent_type,
            steps_remaining=template.max_steps or self._runtime.max_agent_steps,
        )
        LOGGER.debug("Spawning %s (%s) under %s", agent_type, label, parent.agent_type)
        cancellation.raise_if_cancelled()
        try:
            output = await self._runtime.run_agent(
                child,
                prompt=prompt,
                params=params,
                cancellation=cancellation,
                callbacks=None,
            )
        except RunCancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Subagent %s (%s) failed: %s", agent_type, label, exc)
            output = AgentOutput.error(sanitize_error_message(exc), classify_exception(exc))
            child.output = output
        return SpawnResult(agent_type=agent_type, label=label, output=output, state=child)
