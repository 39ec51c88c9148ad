"""Resource-keyed file tools.

``write_file`` and ``str_replace`` share one queue per path: each computes
what it can up front, then waits for its turn on the path before reading the
current content and writing the result. ``read_files`` is unkeyed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ..orchestration.resource_queue import normalize_resource_key
from ..orchestration.types import ToolCall
from .types import BaseToolHandler, HandlerOutcome, ToolCategory, ToolContext, ToolName, ToolSpec

__all__ = [
    "WriteFileHandler",
    "StrReplaceHandler",
    "ReadFilesHandler",
    "Replacement",
    "apply_replacements",
    "ReplacementError",
]

LOGGER = logging.getLogger(__name__)

_NO_WORKSPACE = "No workspace is available"

MAX_READ_FILES = 20


class ReplacementError(ValueError):
    """Raised when a replacement cannot be applied to the current content."""


@dataclass(slots=True, frozen=True)
class Replacement:
    old: str
    new: str
    allow_multiple: bool = False


def apply_replacements(content: str, replacements: Sequence[Replacement]) -> str:
    """Apply ``replacements`` in order.

    Raises:
        ReplacementError: If a target string is missing or ambiguous.
    """

    updated = content
    for index, replacement in enumerate(replacements):
        if not replacement.old:
            raise ReplacementError(f"Replacement {index}: 'old' must not be empty")
        occurrences = updated.count(replacement.old)
        if occurrences == 0:
            raise ReplacementError(f"Replacement {index}: string to replace was not found")
        if occurrences > 1 and not replacement.allow_multiple:
            raise ReplacementError(
                f"Replacement {index}: found {occurrences} occurrences; set allow_multiple to replace all"
            )
        count = -1 if replacement.allow_multiple else 1
        updated = updated.replace(replacement.old, replacement.new, count)
    return updated


class _PathKeyed(BaseToolHandler):
    def resource_key(self, tool_input: Mapping[str, Any]) -> str | None:
        path = tool_input.get("path")
        return normalize_resource_key(path) if isinstance(path, str) and path.strip() else None


class WriteFileHandler(_PathKeyed):
    """Create or overwrite a file."""

    spec = ToolSpec(
        name=ToolName.WRITE_FILE.value,
        description="Create or overwrite a file with the given content.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1},
                "content": {"type": "string"},
                "instructions": {"type": "string"},
            },
            "required": ["path", "content"],
            "additionalProperties": False,
        },
        category=ToolCategory.WRITE,
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        path = str(call.input["path"])
        content = str(call.input["content"])
        if context.resource_turn is None:
            return HandlerOutcome.error(_NO_WORKSPACE, tool=ToolName.WRITE_FILE.value, path=path)
        async with context.resource_turn(path) as resource:
            previous = await resource.read()
            await resource.write(content)
        LOGGER.debug("write_file %s (%d chars)", path, len(content))
        return HandlerOutcome(
            content={
                "tool": ToolName.WRITE_FILE.value,
                "path": path,
                "message": "Created new file" if previous is None else "Updated file",
            }
        )


class StrReplaceHandler(_PathKeyed):
    """Apply ordered search/replace edits to an existing file."""

    spec = ToolSpec(
        name=ToolName.STR_REPLACE.value,
        description="Replace exact strings in a file. Each 'old' must match the current content exactly.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1},
                "replacements": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "properties": {
                            "old": {"type": "string"},
                            "new": {"type": "string"},
                            "allow_multiple": {"type": "boolean"},
                        },
                        "required": ["old", "new"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["path", "replacements"],
            "additionalProperties": False,
        },
        category=ToolCategory.WRITE,
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        path = str(call.input["path"])
        replacements = [
            Replacement(
                old=str(item["old"]),
                new=str(item["new"]),
                allow_multiple=bool(item.get("allow_multiple", False)),
            )
            for item in call.input["replacements"]
        ]
        if context.resource_turn is None:
            return HandlerOutcome.error(_NO_WORKSPACE, tool=ToolName.STR_REPLACE.value, path=path)
        async with context.resource_turn(path) as resource:
            current = await resource.read()
            if current is None:
                return HandlerOutcome.error("File does not exist", tool=ToolName.STR_REPLACE.value, path=path)
            try:
                updated = apply_replacements(current, replacements)
            except ReplacementError as exc:
                return HandlerOutcome.error(str(exc), tool=ToolName.STR_REPLACE.value, path=path)
            await resource.write(updated)
        return HandlerOutcome(
            content={
                "tool": ToolName.STR_REPLACE.value,
                "path": path,
                "message": f"Applied {len(replacements)} replacement(s)",
            }
        )


class ReadFilesHandler(BaseToolHandler):
    """Return the current content of one or more files."""

    spec = ToolSpec(
        name=ToolName.READ_FILES.value,
        description="Read the content of the given files.",
        parameters={
            "type": "object",
            "properties": {
                "paths": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                    "minItems": 1,
                    "maxItems": MAX_READ_FILES,
                },
            },
            "required": ["paths"],
            "additionalProperties": False,
        },
        category=ToolCategory.READ,
    )

    async def execute(self, call: ToolCall, context: ToolContext) -> HandlerOutcome:
        store = context.resource_store
        if store is None:
            return HandlerOutcome.error(_NO_WORKSPACE)
        files: list[dict[str, Any]] = []
        for path in call.input["paths"]:
            content = await store.read(str(path))
            if content is None:
                files.append({"path": path, "error": "File does not exist"})
            else:
                files.append({"path": path, "content": content})
        return HandlerOutcome(content=files)
