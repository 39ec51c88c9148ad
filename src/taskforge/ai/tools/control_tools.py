"""Tools that steer the agent loop rather than touch external resources."""

from __future__ import annotations

from jsonschema import Draft202012Validator

from ..orchestration.types import AgentOutput, Message, Subgoal, SubgoalStatus, ToolCall
from .types import (
    BaseToolHandler,
    HandlerOutcome,
    StateDelta,
    SubgoalUpdate,
    ToolCategory,
    ToolContext,
    ToolName,
    ToolSpec,
)
from .validation import format_schema_path

__all__ = [
    "EndTurnHandler",
    "TaskCompletedHandler",
    "SetOutputHandler",
    "SetMessagesHandler",
    "AddMessageHandler",
    "AddSubgoalHandler",
    "UpdateSubgoalHandler",
]

_MESSAGE_SCHEMA = {
    "type": "object",
    "properties": {
        "role": {"enum": ["system", "user", "assistant", "tool"]},
        "content": {"type": "string"},
        "name": {"type": "string"},
        "tool_call_id": {"type": "string"},
    },
    "required": ["role", "content"],
}


class EndTurnHandler(BaseToolHandler):
    spec = ToolSpec(
        name=ToolName.END_TURN.value,
        description="End your turn and wait for the user.",
        parameters={"type": "object", "properties": {}, "additionalProperties": False},
        ends_agent_step=True,
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        return HandlerOutcome(content={"message": "Turn ended."}, delta=StateDelta(end_turn=True))


class TaskCompletedHandler(BaseToolHandler):
    spec = ToolSpec(
        name=ToolName.TASK_COMPLETED.value,
        description="Signal that the task is complete.",
        parameters={"type": "object", "properties": {}, "additionalProperties": False},
        ends_agent_step=True,
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        return HandlerOutcome(content={"message": "Task completed."}, delta=StateDelta(end_turn=True))


class SetOutputHandler(BaseToolHandler):
    """Record structured output, validated against the agent's output schema when it has one."""

    spec = ToolSpec(
        name=ToolName.SET_OUTPUT.value,
        description="Set the structured output of this agent. Later calls replace earlier ones.",
        parameters={"type": "object", "additionalProperties": True},
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        value = dict(call.input)
        schema = getattr(context.template, "output_schema", None)
        if schema:
            issues = [
                f"{format_schema_path(issue.absolute_path)}: {issue.message}"
                if issue.absolute_path
                else issue.message
                for issue in Draft202012Validator(schema).iter_errors(value)
            ]
            if issues:
                return HandlerOutcome.error("Output does not match the output schema: " + "; ".join(issues))
        return HandlerOutcome(content={"message": "Output set"}, delta=StateDelta(output=AgentOutput.structured(value)))


class SetMessagesHandler(BaseToolHandler):
    spec = ToolSpec(
        name=ToolName.SET_MESSAGES.value,
        description="Replace the conversation history.",
        parameters={
            "type": "object",
            "properties": {"messages": {"type": "array", "items": _MESSAGE_SCHEMA}},
            "required": ["messages"],
        },
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        messages = tuple(Message.from_dict(item) for item in call.input["messages"])
        return HandlerOutcome(
            content={"message": f"History replaced with {len(messages)} message(s)"},
            delta=StateDelta(replace_messages=messages),
        )


class AddMessageHandler(BaseToolHandler):
    spec = ToolSpec(
        name=ToolName.ADD_MESSAGE.value,
        description="Append a message to the conversation history.",
        parameters=_MESSAGE_SCHEMA,
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        message = Message.from_dict(call.input)
        return HandlerOutcome(content={"message": "Message added"}, delta=StateDelta(append_messages=(message,)))


_SUBGOAL_STATUS = {"enum": list(SubgoalStatus.ALL)}


class AddSubgoalHandler(BaseToolHandler):
    spec = ToolSpec(
        name=ToolName.ADD_SUBGOAL.value,
        description="Track a new sub-goal.",
        parameters={
            "type": "object",
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "objective": {"type": "string", "minLength": 1},
                "status": _SUBGOAL_STATUS,
                "plan": {"type": "string"},
                "log": {"type": "string"},
            },
            "required": ["id", "objective", "status"],
            "additionalProperties": False,
        },
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        goal_id = str(call.input["id"])
        log = call.input.get("log")
        goal = Subgoal(
            objective=str(call.input["objective"]),
            status=str(call.input["status"]),
            plan=call.input.get("plan"),
            logs=(str(log),) if log else (),
        )
        return HandlerOutcome(
            content={"message": f"Added subgoal {goal_id}"}, delta=StateDelta(subgoals={goal_id: goal})
        )


class UpdateSubgoalHandler(BaseToolHandler):
    spec = ToolSpec(
        name=ToolName.UPDATE_SUBGOAL.value,
        description="Update the status, plan or log of an existing sub-goal.",
        parameters={
            "type": "object",
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "status": _SUBGOAL_STATUS,
                "plan": {"type": "string"},
                "log": {"type": "string"},
            },
            "required": ["id"],
            "additionalProperties": False,
        },
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        goal_id = str(call.input["id"])
        # Existence is checked at commit so earlier calls in the same step are visible.
        status = call.input.get("status")
        update = SubgoalUpdate(
            status=None if status is None else str(status),
            plan=call.input.get("plan"),
            log=str(call.input["log"]) if call.input.get("log") else None,
        )
        return HandlerOutcome(
            content={"message": f"Updated subgoal {goal_id}"}, delta=StateDelta(subgoal_updates={goal_id: update})
        )
