"""Model client, agents and tool wiring."""

from .client import AIClient, ClientSettings, ModelChunk

__all__ = ["AIClient", "ClientSettings", "ModelChunk"]
