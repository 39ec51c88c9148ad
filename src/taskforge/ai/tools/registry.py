"""Tool tables.

:class:`ToolRegistry` is the closed table of built-in handlers keyed by
:class:`~.types.ToolName`. :class:`CustomToolRegistry` is the open table of
caller-defined tools registered at run time, plus external tool providers
addressed with ``provider/tool`` names.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol, runtime_checkable

from ..orchestration.types import ToolCall
from .types import (
    BaseToolHandler,
    CustomToolFunction,
    CustomToolHandler,
    HandlerOutcome,
    ToolCategory,
    ToolContext,
    ToolHandler,
    ToolName,
    ToolSpec,
)

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "CustomToolRegistry",
    "ToolProvider",
    "ProviderToolHandler",
    "DuplicateToolError",
    "ToolNotFoundError",
    "PROVIDER_SEPARATOR",
    "split_provider_name",
]

LOGGER = logging.getLogger(__name__)

PROVIDER_SEPARATOR = "/"


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool {name} not found")


# -----------------------------------------------------------------------------
# Built-in tools
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool.

    Attributes:
        name: Tool name.
        handler: The handler implementation.
        enabled: Whether the tool is currently enabled.
        metadata: Additional registration metadata.
    """

    name: str
    handler: ToolHandler
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def spec(self) -> ToolSpec:
        return self.handler.spec


class ToolRegistry:
    """Registry of built-in tool handlers.

    Only names in :class:`ToolName` may be registered.

    Example:
        registry = ToolRegistry()
        registry.register(WriteFileHandler())
        handler = registry.get_required(ToolName.WRITE_FILE)
    """

    def __init__(self, handlers: Iterable[ToolHandler] = ()) -> None:
        self._tools: dict[ToolName, ToolRegistration] = {}
        for handler in handlers:
            self.register(handler)

    def register(
        self,
        handler: ToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a handler under its spec name.

        Raises:
            ValueError: If the name is not a built-in :class:`ToolName`.
            DuplicateToolError: If already registered and ``allow_override`` is False.
        """
        tool_name = ToolName.parse(handler.spec.name)
        if tool_name is None:
            raise ValueError(f"'{handler.spec.name}' is not a built-in tool name")
        if tool_name in self._tools and not allow_override:
            raise DuplicateToolError(tool_name.value)
        registration = ToolRegistration(
            name=tool_name.value,
            handler=handler,
            enabled=enabled,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[tool_name] = registration
        LOGGER.debug("Registered tool: %s", tool_name.value)
        return registration

    def unregister(self, name: str | ToolName) -> bool:
        tool_name = self._coerce(name)
        if tool_name is not None and tool_name in self._tools:
            del self._tools[tool_name]
            LOGGER.debug("Unregistered tool: %s", tool_name.value)
            return True
        return False

    def get(self, name: str | ToolName) -> ToolHandler | None:
        """Return the handler if registered and enabled."""
        tool_name = self._coerce(name)
        registration = self._tools.get(tool_name) if tool_name is not None else None
        if registration is None or not registration.enabled:
            return None
        return registration.handler

    def get_required(self, name: str | ToolName) -> ToolHandler:
        handler = self.get(name)
        if handler is None:
            raise ToolNotFoundError(str(getattr(name, "value", name)))
        return handler

    def has(self, name: str | ToolName) -> bool:
        return self.get(name) is not None

    def list_specs(self, *, filter_names: Iterable[str] | None = None) -> list[ToolSpec]:
        allowed = set(filter_names) if filter_names is not None else None
        specs: list[ToolSpec] = []
        for registration in self._tools.values():
            if not registration.enabled:
                continue
            if allowed is not None and registration.name not in allowed:
                continue
            specs.append(registration.spec)
        return specs

    def list_names(self) -> list[str]:
        return [registration.name for registration in self._tools.values() if registration.enabled]

    def enable(self, name: str | ToolName) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str | ToolName) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str | ToolName, enabled: bool) -> bool:
        tool_name = self._coerce(name)
        registration = self._tools.get(tool_name) if tool_name is not None else None
        if registration is None:
            return False
        registration.enabled = enabled
        return True

    @staticmethod
    def _coerce(name: str | ToolName) -> ToolName | None:
        if isinstance(name, ToolName):
            return name
        return ToolName.parse(name)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, (str, ToolName)) and self.has(name)


# -----------------------------------------------------------------------------
# Caller-defined tools
# -----------------------------------------------------------------------------


@runtime_checkable
class ToolProvider(Protocol):
    """External source of tools addressed as ``provider/tool``."""

    def get_schema(self, tool: str) -> Mapping[str, Any] | None:
        """Return the input schema for ``tool`` or ``None`` if unknown."""
        ...

    async def call(self, tool: str, tool_input: Mapping[str, Any]) -> Any:
        ...


def split_provider_name(name: str) -> tuple[str | None, str]:
    """Split ``provider/tool`` into its parts; plain names have no provider."""
    if PROVIDER_SEPARATOR not in name:
        return None, name
    provider, _, tool = name.partition(PROVIDER_SEPARATOR)
    return provider or None, tool


class CustomToolRegistry:
    """Run-time registry of caller-defined tools and tool providers."""

    def __init__(self) -> None:
        self._tools: dict[str, CustomToolHandler] = {}
        self._providers: dict[str, ToolProvider] = {}

    def register(
        self,
        name: str,
        function: CustomToolFunction,
        *,
        description: str = "",
        schema: Mapping[str, Any] | None = None,
        ends_agent_step: bool = False,
        allow_override: bool = False,
    ) -> CustomToolHandler:
        if not name or PROVIDER_SEPARATOR in name:
            raise ValueError(f"Invalid custom tool name '{name}'")
        if ToolName.parse(name) is not None:
            raise DuplicateToolError(name)
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        spec = ToolSpec(
            name=name,
            description=description,
            parameters=dict(schema or {}),
            category=ToolCategory.CUSTOM,
            ends_agent_step=ends_agent_step,
        )
        handler = CustomToolHandler(spec=spec, function=function)
        self._tools[name] = handler
        LOGGER.debug("Registered custom tool: %s", name)
        return handler

    def register_provider(self, name: str, provider: ToolProvider, *, allow_override: bool = False) -> None:
        if not name or PROVIDER_SEPARATOR in name:
            raise ValueError(f"Invalid provider name '{name}'")
        if name in self._providers and not allow_override:
            raise DuplicateToolError(name)
        self._providers[name] = provider
        LOGGER.debug("Registered tool provider: %s", name)

    def get(self, name: str) -> CustomToolHandler | None:
        return self._tools.get(name)

    def get_provider(self, name: str) -> ToolProvider | None:
        return self._providers.get(name)

    def list_specs(self) -> list[ToolSpec]:
        return [handler.spec for handler in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        provider, tool = split_provider_name(name)
        if provider is not None:
            return provider in self._providers
        return tool in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def handler_for(self, name: str) -> ToolHandler | None:
        """Return an executable handler for a custom or ``provider/tool`` name."""

        provider_name, tool = split_provider_name(name)
        if provider_name is None:
            return self._tools.get(name)
        provider = self._providers.get(provider_name)
        if provider is None or not tool:
            return None
        schema = provider.get_schema(tool)
        if schema is None:
            return None
        return ProviderToolHandler(
            spec=ToolSpec(name=name, description="", parameters=dict(schema), category=ToolCategory.CUSTOM),
            provider=provider,
            tool=tool,
        )


@dataclass
class ProviderToolHandler(BaseToolHandler):
    """Adapter executing a ``provider/tool`` call on its provider."""

    spec: ToolSpec
    provider: ToolProvider
    tool: str

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        result = await self.provider.call(self.tool, call.input)
        if isinstance(result, HandlerOutcome):
            return result
        return HandlerOutcome(content=result)
