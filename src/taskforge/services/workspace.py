"""Resource stores backing the file tools.

The execution core only needs two awaitable operations per resource key:
read the current content and write new content. :class:`LocalWorkspace`
maps keys to files under a root directory; :class:`InMemoryWorkspace` keeps
everything in a dict and is what the tests use.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Mapping

from ..ai.orchestration.resource_queue import normalize_resource_key

__all__ = ["WorkspaceError", "InMemoryWorkspace", "LocalWorkspace"]

LOGGER = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Raised when a resource key cannot be served by the workspace."""


class InMemoryWorkspace:
    """Dict-backed store; optional per-operation latency for ordering tests."""

    def __init__(
        self,
        files: Mapping[str, str] | None = None,
        *,
        read_delay: float = 0.0,
        write_delay: float = 0.0,
    ) -> None:
        self._files: dict[str, str] = {normalize_resource_key(key): value for key, value in (files or {}).items()}
        self._read_delay = read_delay
        self._write_delay = write_delay
        self.writes: list[tuple[str, str]] = []

    async def read(self, key: str) -> str | None:
        if self._read_delay:
            await asyncio.sleep(self._read_delay)
        return self._files.get(normalize_resource_key(key))

    async def write(self, key: str, content: str) -> None:
        if self._write_delay:
            await asyncio.sleep(self._write_delay)
        normalized = normalize_resource_key(key)
        self._files[normalized] = content
        self.writes.append((normalized, content))

    def snapshot(self) -> dict[str, str]:
        return dict(self._files)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and normalize_resource_key(key) in self._files


class LocalWorkspace:
    """File-system store rooted at ``root``; keys are paths relative to it."""

    def __init__(self, root: str | Path, *, encoding: str = "utf-8") -> None:
        self._root = Path(root).expanduser().resolve()
        self._encoding = encoding

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, key: str) -> Path:
        """Return the absolute path for ``key``, refusing paths outside the root."""

        relative = normalize_resource_key(key).lstrip("/")
        if not relative or relative.startswith(".."):
            raise WorkspaceError(f"Path '{key}' is outside the workspace")
        target = (self._root / relative).resolve()
        if target != self._root and self._root not in target.parents:
            raise WorkspaceError(f"Path '{key}' is outside the workspace")
        return target

    async def read(self, key: str) -> str | None:
        path = self.resolve(key)
        return await asyncio.to_thread(self._read_sync, path)

    async def write(self, key: str, content: str) -> None:
        path = self.resolve(key)
        await asyncio.to_thread(self._write_sync, path, content)
        LOGGER.debug("Wrote %d chars to %s", len(content), path)

    def _read_sync(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding=self._encoding)
        except FileNotFoundError:
            return None

    def _write_sync(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(content, encoding=self._encoding)
        tmp_path.replace(path)
