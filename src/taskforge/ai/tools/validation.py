"""Tool call validation.

Turns raw ``{name, call_id, input}`` triples coming from the tag extractor or
from scripted steps into :class:`~taskforge.ai.orchestration.types.ToolCall`
values, or into a :class:`ToolCallError` that the dispatcher records as an
error result. Built-in and caller-defined tools share one error shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import jsonschema
from jsonschema import Draft202012Validator

from ..orchestration.types import ToolCall, ToolResult, new_call_id
from .registry import CustomToolRegistry, ToolRegistry, split_provider_name
from .types import ENDS_AGENT_STEP_PARAM, ToolName, ToolSpec

__all__ = [
    "RawToolCall",
    "ToolCallError",
    "ToolCallValidator",
    "MAX_SCHEMA_ERRORS",
    "format_schema_path",
]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 25
_CONTROL_PARAMS = (ENDS_AGENT_STEP_PARAM,)


@dataclass(slots=True, frozen=True)
class RawToolCall:
    """Unvalidated tool call as recovered from the model stream or a script."""

    name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=new_call_id)


@dataclass(slots=True, frozen=True)
class ToolCallError:
    """Validation failure, carrying the original id and input for the transcript."""

    tool_name: str
    call_id: str
    input: Mapping[str, Any]
    error: str
    issues: tuple[str, ...] = ()

    def to_result(self) -> ToolResult:
        return ToolResult.error(self.tool_name, self.call_id, self.error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "call_id": self.call_id,
            "input": dict(self.input),
            "error": self.error,
            "issues": list(self.issues),
        }


def format_schema_path(path: Sequence[Any]) -> str:
    if not path:
        return ""
    components: list[str] = []
    for segment in path:
        if isinstance(segment, int):
            if components:
                components[-1] = f"{components[-1]}[{segment}]"
            else:
                components.append(f"[{segment}]")
        else:
            components.append(str(segment))
    return ".".join(filter(None, components))


class ToolCallValidator:
    """Validate raw calls against built-in and caller-defined tool tables."""

    def __init__(
        self,
        registry: ToolRegistry,
        custom_tools: CustomToolRegistry | None = None,
        *,
        max_issues: int = MAX_SCHEMA_ERRORS,
    ) -> None:
        self._registry = registry
        self._custom = custom_tools or CustomToolRegistry()
        self._max_issues = max(1, max_issues)
        self._validators: dict[str, tuple[Mapping[str, Any], Draft202012Validator]] = {}

    @property
    def custom_tools(self) -> CustomToolRegistry:
        return self._custom

    def validate(
        self,
        raw: RawToolCall,
        *,
        auto_insert_end_step: bool = False,
        include_in_history: bool = True,
    ) -> ToolCall | ToolCallError:
        """Validate ``raw`` against the built-in tool table.

        Args:
            raw: The unvalidated call.
            auto_insert_end_step: Force the call to end the current step.
            include_in_history: Whether the call's result enters the transcript.

        Returns:
            A :class:`ToolCall` on success, otherwise a :class:`ToolCallError`.
        """

        tool_name = ToolName.parse(raw.name)
        handler = self._registry.get(tool_name) if tool_name is not None else None
        if handler is None:
            return self._not_found(raw)
        return self._check(raw, handler.spec, auto_insert_end_step, include_in_history)

    def validate_custom(
        self,
        raw: RawToolCall,
        *,
        auto_insert_end_step: bool = False,
        include_in_history: bool = True,
    ) -> ToolCall | ToolCallError:
        """Validate ``raw`` against caller-defined tools or a ``provider/tool`` schema."""

        provider_name, tool = split_provider_name(raw.name)
        if provider_name is not None:
            provider = self._custom.get_provider(provider_name)
            schema = provider.get_schema(tool) if provider is not None and tool else None
            if schema is None:
                return self._not_found(raw)
            spec = ToolSpec(name=raw.name, description="", parameters=schema)
        else:
            handler = self._custom.get(raw.name)
            if handler is None:
                return self._not_found(raw)
            spec = handler.spec
        return self._check(raw, spec, auto_insert_end_step, include_in_history)

    def resolve(
        self,
        raw: RawToolCall,
        *,
        auto_insert_end_step: bool = False,
        include_in_history: bool = True,
    ) -> ToolCall | ToolCallError:
        """Route to the built-in path for known names, otherwise the custom path."""

        if ToolName.parse(raw.name) is not None:
            return self.validate(
                raw, auto_insert_end_step=auto_insert_end_step, include_in_history=include_in_history
            )
        return self.validate_custom(
            raw, auto_insert_end_step=auto_insert_end_step, include_in_history=include_in_history
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check(
        self,
        raw: RawToolCall,
        spec: ToolSpec,
        auto_insert_end_step: bool,
        include_in_history: bool,
    ) -> ToolCall | ToolCallError:
        tool_input = dict(raw.input)
        if auto_insert_end_step:
            tool_input[ENDS_AGENT_STEP_PARAM] = True

        issues = self._schema_issues(spec, tool_input)
        if issues:
            LOGGER.debug("Rejected %s call %s: %s", raw.name, raw.call_id, issues)
            return ToolCallError(
                tool_name=raw.name,
                call_id=raw.call_id,
                input=dict(raw.input),
                error=f"Invalid parameters for {raw.name}: " + "; ".join(issues),
                issues=tuple(issues),
            )

        ends_step = bool(tool_input.get(ENDS_AGENT_STEP_PARAM)) or spec.ends_agent_step
        for param in _CONTROL_PARAMS:
            tool_input.pop(param, None)
        return ToolCall(
            tool_name=raw.name,
            call_id=raw.call_id,
            input=tool_input,
            ends_agent_step=ends_step,
            include_in_history=include_in_history,
        )

    def _schema_issues(self, spec: ToolSpec, tool_input: Mapping[str, Any]) -> list[str]:
        try:
            validator = self._validator_for(spec)
        except jsonschema.exceptions.SchemaError as exc:
            LOGGER.warning("Tool %s declares an invalid schema: %s", spec.name, exc.message)
            return [f"Invalid JSON schema: {exc.message}"]
        issues: list[str] = []
        errors = sorted(validator.iter_errors(tool_input), key=lambda issue: list(map(str, issue.absolute_path)))
        for issue in errors:
            path = format_schema_path(issue.absolute_path)
            issues.append(f"{path}: {issue.message}" if path else issue.message)
            if len(issues) >= self._max_issues:
                issues.append("Too many validation errors; stopping early.")
                break
        return issues

    def _validator_for(self, spec: ToolSpec) -> Draft202012Validator:
        cached = self._validators.get(spec.name)
        if cached is not None and cached[0] is spec.parameters:
            return cached[1]
        schema = _with_control_params(spec.schema())
        Draft202012Validator.check_schema(schema)
        validator = Draft202012Validator(schema)
        self._validators[spec.name] = (spec.parameters, validator)
        return validator

    def _not_found(self, raw: RawToolCall) -> ToolCallError:
        LOGGER.debug("Unknown tool %s (call %s)", raw.name, raw.call_id)
        return ToolCallError(
            tool_name=raw.name,
            call_id=raw.call_id,
            input=dict(raw.input),
            error=f"Tool {raw.name} not found",
        )


def _with_control_params(schema: Mapping[str, Any]) -> dict[str, Any]:
    extended = dict(schema)
    extended.setdefault("type", "object")
    properties = dict(extended.get("properties") or {})
    properties.setdefault(ENDS_AGENT_STEP_PARAM, {"type": "boolean"})
    extended["properties"] = properties
    return extended
