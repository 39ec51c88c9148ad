"""Async model client built around OpenAI-compatible endpoints.

The agent loop only needs a stream of :class:`ModelChunk` values for a list
of chat messages; :class:`ModelStream` is that boundary and :class:`AIClient`
is the production implementation. Transient failures are retried here with
tenacity until output starts flowing. After the first chunk has been handed
to the caller a failure is surfaced instead, since replaying the request
would duplicate text (and tool calls) that have already been acted on.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Literal, Mapping, MutableMapping, Protocol, Sequence, cast

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .orchestration.errors import (
    AuthenticationError,
    ModelProviderError,
    PaymentRequiredError,
    classify_exception,
    sanitize_error_message,
)

__all__ = ["ClientSettings", "ModelChunk", "ModelStream", "AIClient"]

LOGGER = logging.getLogger(__name__)

_TRANSIENT_STATUS = frozenset({408, 409, 425, 429})

ChunkType = Literal["text", "reasoning", "usage", "error"]


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = None
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True, frozen=True)
class ModelChunk:
    """One normalized piece of a streamed model response.

    ``text`` and ``reasoning`` chunks carry ``text``; ``usage`` chunks carry
    token counts and, when the provider reports it, ``credits``; ``error``
    chunks carry a provider error that arrived inside the stream.
    """

    type: ChunkType
    text: str = ""
    message_id: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    credits: float = 0.0
    error_code: str | None = None


class ModelStream(Protocol):
    """Streaming model boundary consumed by the agent step."""

    def stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        stop: Sequence[str] | None = None,
    ) -> AsyncIterator[ModelChunk]:
        ...


class AIClient:
    """Async client streaming chat completions with retry semantics."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        stop: Sequence[str] | None = None,
    ) -> AsyncIterator[ModelChunk]:
        """Stream a chat completion for ``messages`` as :class:`ModelChunk` values.

        Raises:
            AuthenticationError: The endpoint rejected the credentials.
            PaymentRequiredError: The account is out of credits.
            ModelProviderError: Retries were exhausted, or the stream broke
                after output had started.
        """

        payload = self._build_chat_payload(self._coerce_messages(messages), model=model, stop=stop)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        attempts = 0
        emitted = False
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    try:
                        async with self._client.chat.completions.stream(**payload) as stream:
                            async for event in stream:
                                for chunk in self._normalize_stream_event(event):
                                    emitted = True
                                    yield chunk
                    except Exception as exc:
                        if emitted and _is_transient(exc):
                            raise ModelProviderError(
                                error_code=classify_exception(exc),
                                message=f"Stream interrupted after output started: {sanitize_error_message(exc)}",
                                attempts=attempts,
                            ) from exc
                        raise
                break
        except APIStatusError as exc:
            raise self._translate(exc, attempts) from exc
        except (APIConnectionError, APITimeoutError, httpx.TransportError) as exc:
            raise self._translate(exc, attempts) from exc

    def _translate(self, exc: Exception, attempts: int) -> Exception:
        status = getattr(exc, "status_code", None)
        if status in (401, 403):
            return AuthenticationError.from_status(status)
        if status == 402:
            return PaymentRequiredError()
        LOGGER.warning("Model request failed after %d attempt(s): %s", attempts, exc)
        return ModelProviderError(
            error_code=classify_exception(exc),
            message=f"Failed after {attempts} attempts. Last error: {sanitize_error_message(exc)}",
            attempts=attempts,
        )

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_transient),
        )

    def _coerce_messages(self, messages: Iterable[Mapping[str, Any]]) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        messages: Sequence[ChatCompletionMessageParam],
        *,
        model: str | None,
        stop: Sequence[str] | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": list(messages),
            "stream_options": {"include_usage": True},
        }
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        if stop:
            payload["stop"] = list(stop)
        return payload

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> list[ModelChunk]:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            return [ModelChunk(type="text", text=str(delta_text))] if delta_text else []
        if event_type == "refusal.delta":
            delta_text = getattr(event, "delta", None)
            return [ModelChunk(type="text", text=str(delta_text))] if delta_text else []
        if event_type != "chunk":
            return []

        # Raw chunks carry what the content helpers drop: id, usage, reasoning.
        chunk = getattr(event, "chunk", None)
        if chunk is None:
            return []
        message_id = getattr(chunk, "id", None)
        normalized: list[ModelChunk] = []
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
            if reasoning:
                normalized.append(ModelChunk(type="reasoning", text=str(reasoning), message_id=message_id))
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            normalized.append(
                ModelChunk(
                    type="usage",
                    message_id=message_id,
                    prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                    completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
                    credits=float(getattr(usage, "cost", 0.0) or 0.0),
                )
            )
        return normalized

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - close failures are logged only
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, APIStatusError):
        status = getattr(exc, "status_code", 0) or 0
        return status in _TRANSIENT_STATUS or status >= 500
    return isinstance(exc, (APIConnectionError, APITimeoutError, httpx.TimeoutException, httpx.TransportError))
