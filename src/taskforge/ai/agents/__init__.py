"""Agent templates, subagent spawning and best-of-N fan-out."""

from .best_of_n import BestOfN, BestOfNResult
from .spawner import LocalAgentSpawner
from .templates import AgentTemplate, AgentTemplateRegistry, TemplateError, default_templates

__all__ = [
    "AgentTemplate",
    "AgentTemplateRegistry",
    "TemplateError",
    "default_templates",
    "LocalAgentSpawner",
    "BestOfN",
    "BestOfNResult",
]
