"""Shared test doubles.

Import from here instead of duplicating stubs in individual test files::

    from tests.helpers import ScriptedModel, text_chunks
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence, Union

from taskforge.ai.client import ModelChunk

Response = Union[Sequence[ModelChunk], BaseException]


def text_chunks(*parts: str, message_id: str | None = None) -> list[ModelChunk]:
    """Build a response made of text deltas."""
    return [ModelChunk(type="text", text=part, message_id=message_id) for part in parts]


def tool_call(name: str, payload: str = "{}") -> str:
    return f'<tool_call name="{name}">{payload}</tool_call>'


class ScriptedModel:
    """Model double that replays one scripted response per ``stream`` call.

    A response is a list of chunks or an exception raised when the stream
    starts. Once the script runs out, every further call answers with
    ``fallback``.
    """

    def __init__(self, responses: Iterable[Response] = (), *, fallback: str = "Done.") -> None:
        self._responses: list[Response] = list(responses)
        self._fallback = fallback
        self.calls: list[list[Mapping[str, Any]]] = []
        self.chunk_delay = 0.0

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        stop: Sequence[str] | None = None,
    ) -> AsyncIterator[ModelChunk]:
        self.calls.append([dict(message) for message in messages])
        response: Response = self._responses.pop(0) if self._responses else text_chunks(self._fallback)
        if isinstance(response, BaseException):
            raise response
        for chunk in response:
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield chunk


class RecordingSleep:
    """Backoff sleep that records the requested delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
