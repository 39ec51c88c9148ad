"""The ``spawn_agents`` tool: run subagents concurrently and report their results."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from ..orchestration.errors import RunCancelledError, sanitize_error_message
from ..orchestration.types import AgentOutput, ToolCall
from .types import (
    AgentSpawner,
    BaseToolHandler,
    HandlerOutcome,
    SpawnResult,
    StateDelta,
    ToolCategory,
    ToolContext,
    ToolName,
    ToolSpec,
)

__all__ = ["SpawnAgentsHandler", "SPAWN_ERROR_PREFIX"]

LOGGER = logging.getLogger(__name__)

SPAWN_ERROR_PREFIX = "Error spawning agent: "
MAX_SPAWNS_PER_CALL = 10


class SpawnAgentsHandler(BaseToolHandler):
    """Spawn one or more subagents and wait for all of them.

    Each child runs with its own state; finished states are attached to the
    parent and their credits are added to the parent's total. A failing child
    is reported in place and does not affect its siblings.
    """

    spec = ToolSpec(
        name=ToolName.SPAWN_AGENTS.value,
        description="Spawn subagents to work in parallel. Each entry names an agent type and a prompt.",
        parameters={
            "type": "object",
            "properties": {
                "agents": {
                    "type": "array",
                    "minItems": 1,
                    "maxItems": MAX_SPAWNS_PER_CALL,
                    "items": {
                        "type": "object",
                        "properties": {
                            "agent_type": {"type": "string", "minLength": 1},
                            "prompt": {"type": "string"},
                            "params": {"type": "object"},
                            "label": {"type": "string"},
                        },
                        "required": ["agent_type"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["agents"],
            "additionalProperties": False,
        },
        category=ToolCategory.AGENTS,
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        spawner = context.spawner
        if spawner is None:
            return HandlerOutcome.error("Spawning agents is not available in this run")

        requests = list(call.input["agents"])
        allowed = tuple(getattr(context.template, "spawnable_agents", ()) or ())
        tasks = [
            self._spawn_one(spawner, request, index, allowed, context) for index, request in enumerate(requests)
        ]
        results = await asyncio.gather(*tasks)

        report = [self._report(result) for result in results]
        children = tuple(result.state for result in results if result.state is not None)
        child_credits = sum(result.credits_used for result in results)
        return HandlerOutcome(
            content=report,
            delta=StateDelta(subagents=children, child_credits=child_credits),
        )

    async def _spawn_one(
        self,
        spawner: AgentSpawner,
        request: Mapping[str, Any],
        index: int,
        allowed: tuple[str, ...],
        context: ToolContext,
    ) -> SpawnResult:
        agent_type = str(request["agent_type"])
        label = str(request.get("label") or f"{agent_type}-{index + 1}")
        if context.template is not None and agent_type not in allowed:
            message = f"Agent type {agent_type} is not allowed to be spawned by {context.agent_state.agent_type}"
            return SpawnResult(agent_type=agent_type, label=label, output=AgentOutput.error(message))

        try:
            return await spawner.spawn(
                agent_type,
                request.get("prompt"),
                request.get("params"),
                parent=context.agent_state,
                cancellation=context.cancellation,
                label=label,
            )
        except RunCancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Spawning %s (%s) failed: %s", agent_type, label, exc)
            return SpawnResult(
                agent_type=agent_type,
                label=label,
                output=AgentOutput.error(sanitize_error_message(exc)),
            )

    @staticmethod
    def _report(result: SpawnResult) -> dict[str, Any]:
        entry: dict[str, Any] = {"agent_type": result.agent_type, "label": result.label}
        if result.ok:
            entry["value"] = result.output.to_dict()
        else:
            entry["error_message"] = SPAWN_ERROR_PREFIX + (result.output.message or "unknown error")
        return entry
