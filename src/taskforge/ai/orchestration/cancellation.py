"""Cancellation signal shared by every suspension point of a run."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .errors import RunCancelledError

__all__ = ["CancellationToken", "CANCELLED_MESSAGE"]

LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Run cancelled by user."


class CancellationToken:
    """One-shot cancellation flag that async waits can race against.

    A single token is threaded through tool dispatch, backoff waits and
    subagent spawns so cancelling it once stops the whole run.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason or CANCELLED_MESSAGE

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason or CANCELLED_MESSAGE
        self._event.set()
        LOGGER.debug("Cancellation requested: %s", self._reason)
        for callback in list(self._callbacks):
            try:
                callback(self._reason)
            except Exception:  # pragma: no cover - listener errors are non-fatal
                LOGGER.debug("Cancellation callback failed", exc_info=True)

    def add_callback(self, callback: Callable[[str], None]) -> None:
        if self.cancelled:
            callback(self.reason)
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(message=self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            RunCancelledError: If the token fires before or during the wait.
        """

        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RunCancelledError(message=self.reason)
