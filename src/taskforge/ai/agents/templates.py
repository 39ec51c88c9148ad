"""Agent templates: per-agent-type configuration loaded from YAML or JSON files.

A template names the model, the prompts, the tools the agent may call, the
agent types it may spawn and how its output is produced. Files are parsed
with ruamel.yaml (JSON is valid YAML) and checked against
:data:`TEMPLATE_SCHEMA` before use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from jsonschema import Draft202012Validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from ..orchestration.step_program import ProgramError, StepProgram
from ..tools.types import ToolName

__all__ = [
    "OUTPUT_MODES",
    "TEMPLATE_SCHEMA",
    "TemplateError",
    "AgentTemplate",
    "AgentTemplateRegistry",
    "default_templates",
]

LOGGER = logging.getLogger(__name__)

OUTPUT_MODES: tuple[str, ...] = ("last_message", "all_messages", "structured_output")
_TEMPLATE_SUFFIXES = (".yaml", ".yml", ".json")

TEMPLATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "pattern": r"^[a-z0-9][a-z0-9_\-]*$"},
        "display_name": {"type": "string"},
        "model": {"type": "string"},
        "system_prompt": {"type": "string"},
        "instructions_prompt": {"type": "string"},
        "tool_names": {"type": "array", "items": {"type": "string"}, "uniqueItems": True},
        "spawnable_agents": {"type": "array", "items": {"type": "string"}, "uniqueItems": True},
        "output_mode": {"enum": list(OUTPUT_MODES)},
        "output_schema": {"type": "object"},
        "requires_task_completed": {"type": "boolean"},
        "max_steps": {"type": "integer", "minimum": 1},
        "steps": {"type": "array"},
    },
    "required": ["id"],
    "additionalProperties": False,
}


class TemplateError(ValueError):
    """Raised when a template file cannot be parsed or fails validation."""


@dataclass(slots=True)
class AgentTemplate:
    """Configuration for one agent type."""

    id: str
    display_name: str = ""
    model: str | None = None
    system_prompt: str = ""
    instructions_prompt: str = ""
    tool_names: tuple[str, ...] = ()
    spawnable_agents: tuple[str, ...] = ()
    output_mode: str = "last_message"
    output_schema: Mapping[str, Any] | None = None
    requires_task_completed: bool = False
    max_steps: int | None = None
    step_program: StepProgram | None = None
    source: Path | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.output_mode not in OUTPUT_MODES:
            raise TemplateError(f"Template {self.id}: unknown output mode '{self.output_mode}'")
        if self.output_schema is not None:
            Draft202012Validator.check_schema(self.output_schema)
        if self.spawnable_agents and ToolName.SPAWN_AGENTS.value not in self.tool_names:
            self.tool_names = (*self.tool_names, ToolName.SPAWN_AGENTS.value)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, source: Path | None = None) -> AgentTemplate:
        """Validate ``payload`` against :data:`TEMPLATE_SCHEMA` and build a template.

        Raises:
            TemplateError: If the payload is invalid.
        """

        where = str(source) if source is not None else payload.get("id", "<template>")
        issues = sorted(
            Draft202012Validator(TEMPLATE_SCHEMA).iter_errors(payload),
            key=lambda issue: list(map(str, issue.absolute_path)),
        )
        if issues:
            details = "; ".join(
                f"{'.'.join(map(str, issue.absolute_path)) or '<root>'}: {issue.message}" for issue in issues
            )
            raise TemplateError(f"Invalid agent template {where}: {details}")

        program = None
        if payload.get("steps"):
            try:
                program = StepProgram.from_config(payload["steps"])
            except ProgramError as exc:
                raise TemplateError(f"Invalid agent template {where}: {exc}") from exc

        return cls(
            id=str(payload["id"]),
            display_name=str(payload.get("display_name") or payload["id"]),
            model=payload.get("model"),
            system_prompt=str(payload.get("system_prompt") or ""),
            instructions_prompt=str(payload.get("instructions_prompt") or ""),
            tool_names=tuple(payload.get("tool_names") or ()),
            spawnable_agents=tuple(payload.get("spawnable_agents") or ()),
            output_mode=str(payload.get("output_mode") or "last_message"),
            output_schema=_plain(payload.get("output_schema")),
            requires_task_completed=bool(payload.get("requires_task_completed", False)),
            max_steps=payload.get("max_steps"),
            step_program=program,
            source=source,
        )


class AgentTemplateRegistry:
    """Lookup table of templates keyed by agent type."""

    def __init__(self, templates: Iterable[AgentTemplate] = ()) -> None:
        self._templates: dict[str, AgentTemplate] = {}
        for template in templates:
            self.register(template)

    def register(self, template: AgentTemplate, *, replace: bool = True) -> None:
        if not replace and template.id in self._templates:
            raise TemplateError(f"Agent template '{template.id}' is already registered")
        self._templates[template.id] = template

    def get(self, agent_type: str) -> AgentTemplate | None:
        return self._templates.get(agent_type)

    def get_required(self, agent_type: str) -> AgentTemplate:
        template = self._templates.get(agent_type)
        if template is None:
            raise TemplateError(f"Agent template '{agent_type}' not found")
        return template

    def list_ids(self) -> list[str]:
        return sorted(self._templates)

    def load_file(self, path: str | Path) -> AgentTemplate:
        """Parse, validate and register the template stored at ``path``."""

        target = Path(path).expanduser()
        yaml = YAML(typ="safe")
        try:
            payload = yaml.load(target.read_text(encoding="utf-8"))
        except (OSError, YAMLError) as exc:
            raise TemplateError(f"Unable to read agent template {target}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise TemplateError(f"Agent template {target} must contain a mapping")
        template = AgentTemplate.from_dict(payload, source=target)
        self.register(template)
        LOGGER.debug("Loaded agent template %s from %s", template.id, target)
        return template

    def load_directory(self, directory: str | Path) -> list[AgentTemplate]:
        """Load every ``*.yaml``/``*.yml``/``*.json`` template in ``directory``."""

        root = Path(directory).expanduser()
        if not root.is_dir():
            raise TemplateError(f"Agent template directory {root} does not exist")
        loaded = [self.load_file(path) for path in sorted(root.iterdir()) if path.suffix in _TEMPLATE_SUFFIXES]
        LOGGER.info("Loaded %d agent template(s) from %s", len(loaded), root)
        return loaded

    def __contains__(self, agent_type: object) -> bool:
        return isinstance(agent_type, str) and agent_type in self._templates

    def __iter__(self) -> Iterator[AgentTemplate]:
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)


def default_templates() -> AgentTemplateRegistry:
    """Built-in agent types available without any template files."""

    file_tools = (ToolName.READ_FILES.value, ToolName.WRITE_FILE.value, ToolName.STR_REPLACE.value)
    base = AgentTemplate(
        id="base",
        display_name="Base agent",
        system_prompt=(
            "You are a careful software agent. Use the tools to inspect and change files, "
            "then summarise what you did."
        ),
        tool_names=(
            *file_tools,
            ToolName.ADD_SUBGOAL.value,
            ToolName.UPDATE_SUBGOAL.value,
            ToolName.END_TURN.value,
        ),
        spawnable_agents=("base",),
    )
    selector = AgentTemplate(
        id="selector",
        display_name="Implementation selector",
        system_prompt=(
            "You compare candidate implementations of the same task and pick the best one. "
            "Call set_output with the id of the chosen implementation and your reasoning."
        ),
        tool_names=(ToolName.SET_OUTPUT.value,),
        output_mode="structured_output",
        output_schema={
            "type": "object",
            "properties": {
                "implementation_id": {"type": "string"},
                "reasoning": {"type": "string"},
            },
            "required": ["implementation_id"],
        },
        max_steps=3,
    )
    return AgentTemplateRegistry([base, selector])


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value
