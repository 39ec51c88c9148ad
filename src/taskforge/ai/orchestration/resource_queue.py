"""Per-resource sequential queues.

The dispatcher reserves a :class:`QueueTicket` for every resource-keyed call
at the moment the call is issued. A ticket's holder may do any preparatory
work immediately but must enter the ticket (``async with ticket``) before
reading or mutating the resource; entry waits for every earlier ticket on the
same key to be released. Calls on different keys never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque

__all__ = ["QueueTicket", "ResourceQueueArena", "normalize_resource_key"]

LOGGER = logging.getLogger(__name__)


def normalize_resource_key(key: str) -> str:
    """Collapse equivalent spellings of a path so they share one queue."""

    cleaned = key.strip().replace("\\", "/")
    parts: list[str] = []
    for part in cleaned.split("/"):
        if part in ("", "."):
            continue
        if part == ".." and parts and parts[-1] != "..":
            parts.pop()
            continue
        parts.append(part)
    normalized = "/".join(parts)
    return f"/{normalized}" if cleaned.startswith("/") else normalized


@dataclass(slots=True, eq=False)
class QueueTicket:
    """A reserved position in one resource key's queue."""

    key: str
    position: int
    _previous: "asyncio.Future[None] | None"
    _done: "asyncio.Future[None]"
    _queue: "_KeyQueue"
    entered: bool = False

    @property
    def released(self) -> bool:
        return self._done.done()

    async def wait_turn(self) -> None:
        """Wait until every earlier ticket on this key has been released."""
        if self._previous is not None and not self._previous.done():
            await asyncio.shield(self._previous)
        self.entered = True

    def release(self) -> None:
        """Let the next ticket proceed; safe to call more than once."""
        if not self._done.done():
            self._done.set_result(None)
            self._queue.on_release(self)

    async def __aenter__(self) -> "QueueTicket":
        try:
            await self.wait_turn()
        except BaseException:
            self.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


@dataclass(slots=True)
class _KeyQueue:
    key: str
    issued: int = 0
    tail: "asyncio.Future[None] | None" = None
    outstanding: Deque[QueueTicket] = field(default_factory=deque)

    def reserve(self) -> QueueTicket:
        loop = asyncio.get_running_loop()
        done: asyncio.Future[None] = loop.create_future()
        ticket = QueueTicket(
            key=self.key,
            position=self.issued,
            _previous=self.tail,
            _done=done,
            _queue=self,
        )
        self.issued += 1
        self.tail = done
        self.outstanding.append(ticket)
        return ticket

    def on_release(self, ticket: QueueTicket) -> None:
        try:
            self.outstanding.remove(ticket)
        except ValueError:  # pragma: no cover - released twice
            pass


class ResourceQueueArena:
    """Arena of queues indexed by resource key.

    Queues are created on first use and kept for the arena's lifetime, which
    is one agent step.
    """

    def __init__(self) -> None:
        self._queues: dict[str, _KeyQueue] = {}

    def reserve(self, key: str) -> QueueTicket:
        """Reserve the next position on ``key``'s queue. Must be called in issuance order."""

        normalized = normalize_resource_key(key)
        queue = self._queues.get(normalized)
        if queue is None:
            queue = _KeyQueue(key=normalized)
            self._queues[normalized] = queue
        ticket = queue.reserve()
        LOGGER.debug("Reserved %s position %d", normalized, ticket.position)
        return ticket

    def keys(self) -> list[str]:
        return list(self._queues)

    def depth(self, key: str) -> int:
        """Number of reserved tickets on ``key`` not yet released."""
        queue = self._queues.get(normalize_resource_key(key))
        return len(queue.outstanding) if queue is not None else 0

    def issued(self, key: str) -> int:
        queue = self._queues.get(normalize_resource_key(key))
        return queue.issued if queue is not None else 0

    async def drain(self) -> None:
        """Wait until every reserved ticket has been released."""
        tails = [queue.tail for queue in self._queues.values() if queue.tail is not None]
        if tails:
            await asyncio.gather(*(asyncio.shield(tail) for tail in tails))

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and normalize_resource_key(key) in self._queues

    def __len__(self) -> int:
        return len(self._queues)
