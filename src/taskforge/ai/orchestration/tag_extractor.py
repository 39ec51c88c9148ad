"""Streaming extraction of tool-call tags from model output.

Models emit tool calls inline, e.g.::

    Let me fix that. <tool_call name="write_file">{"path": "a.txt", "content": "hi"}</tool_call>

:class:`TagExtractor` consumes the response chunk by chunk and yields typed
events. A tag whose delimiter is split across chunk boundaries is still
recognised because only a bounded trailing window is held back while a
partial delimiter is pending; everything before it is released immediately.
Tag bodies are JSON objects; attributes on the opening tag are collected as
strings.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Mapping, Union

__all__ = [
    "TextEvent",
    "ReasoningEvent",
    "ToolOpenEvent",
    "ToolCloseEvent",
    "ExtractorErrorEvent",
    "TagEvent",
    "TagExtractor",
    "DEFAULT_TOOL_TAG",
    "TOOL_NAME_PARAM",
    "resolve_tool_name",
    "coalesce_events",
    "extract_all",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TOOL_TAG = "tool_call"
DEFAULT_REASONING_TAG = "think"
TOOL_NAME_PARAM = "tool_name"
MAX_OPEN_TAG_LENGTH = 512

_NAME_TERMINATORS = frozenset(" \t\r\n>/")
_ATTRIBUTE_PATTERN = re.compile(
    r"""([A-Za-z_][\w\-.:]*)(?:\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>/]+)))?"""
)
_PENDING = object()


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextEvent:
    text: str
    type: ClassVar[str] = "text"


@dataclass(slots=True, frozen=True)
class ReasoningEvent:
    text: str
    type: ClassVar[str] = "reasoning"


@dataclass(slots=True, frozen=True)
class ToolOpenEvent:
    name: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    type: ClassVar[str] = "tool_open"


@dataclass(slots=True, frozen=True)
class ToolCloseEvent:
    name: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)
    type: ClassVar[str] = "tool_close"


@dataclass(slots=True, frozen=True)
class ExtractorErrorEvent:
    name: str
    message: str
    type: ClassVar[str] = "error"


TagEvent = Union[TextEvent, ReasoningEvent, ToolOpenEvent, ToolCloseEvent, ExtractorErrorEvent]


@dataclass(slots=True)
class _Segment:
    name: str
    attributes: dict[str, str]
    raw_open: str
    body: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Skip:
    name: str
    depth: int
    raw: list[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Extractor
# -----------------------------------------------------------------------------


class TagExtractor:
    """Incremental tag parser.

    Args:
        tool_tags: Tag names treated as tool-call segments.
        reasoning_tag: Tag whose content is reported as reasoning, or ``None``.
        max_open_tag_length: Upper bound on an opening tag including attributes.
            Bounds the window held back while waiting for ``>``.
    """

    def __init__(
        self,
        tool_tags: Iterable[str] = (DEFAULT_TOOL_TAG,),
        *,
        reasoning_tag: str | None = DEFAULT_REASONING_TAG,
        max_open_tag_length: int = MAX_OPEN_TAG_LENGTH,
    ) -> None:
        self._tool_tags = frozenset(tag for tag in tool_tags if tag)
        if not self._tool_tags:
            raise ValueError("At least one tool tag name is required")
        self._reasoning_tag = reasoning_tag
        names = set(self._tool_tags)
        if reasoning_tag:
            names.add(reasoning_tag)
        self._open_names = sorted(names, key=len, reverse=True)
        self._max_open = max(max_open_tag_length, max(len(name) for name in names) + 2)
        self._buffer = ""
        self._state = "text"
        self._segment: _Segment | None = None
        self._skip: _Skip | None = None
        self._text_parts: list[str] = []
        self._finished = False

    @property
    def text(self) -> str:
        """Plain text emitted so far."""
        return "".join(self._text_parts)

    @property
    def pending(self) -> str:
        """Characters held back awaiting more input."""
        return self._buffer

    def feed(self, chunk: str) -> list[TagEvent]:
        """Consume ``chunk`` and return the events it completes."""

        if self._finished:
            raise RuntimeError("TagExtractor.feed() called after finish()")
        if not chunk:
            return []
        self._buffer += chunk
        return self._drain(final=False)

    def finish(self, message_id: str | None = None) -> tuple[list[TagEvent], str]:
        """Flush all buffered content and return ``(events, text_id)``.

        ``text_id`` is ``message_id`` when the provider supplied one, otherwise a
        digest of the emitted plain text.
        """

        if self._finished:
            return [], self._text_id(message_id)
        events = self._drain(final=True)
        if self._state == "tool" and self._segment is not None:
            segment = self._segment
            LOGGER.debug("Unterminated <%s> segment flushed as text", segment.name)
            self._emit_text(events, segment.raw_open + "".join(segment.body) + self._buffer)
        elif self._state == "skip" and self._skip is not None:
            self._emit_text(events, "".join(self._skip.raw) + self._buffer)
        elif self._buffer:
            self._emit_text(events, self._buffer)
        self._buffer = ""
        self._segment = None
        self._skip = None
        self._state = "text"
        self._finished = True
        return events, self._text_id(message_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _drain(self, *, final: bool) -> list[TagEvent]:
        events: list[TagEvent] = []
        while True:
            if self._state == "text":
                progressed = self._scan_text(events, final)
            elif self._state == "tool":
                progressed = self._scan_tool(events, final)
            elif self._state == "reasoning":
                progressed = self._scan_reasoning(events, final)
            else:
                progressed = self._scan_skip(final)
            if not progressed:
                return events

    def _scan_text(self, events: list[TagEvent], final: bool) -> bool:
        buffer = self._buffer
        search_from = 0
        while True:
            pos = buffer.find("<", search_from)
            if pos == -1:
                self._emit_text(events, buffer)
                self._buffer = ""
                return False
            match = self._match_open(buffer, pos, final)
            if match is _PENDING:
                self._emit_text(events, buffer[:pos])
                self._buffer = buffer[pos:]
                return False
            if match is None:
                search_from = pos + 1
                continue
            name, attributes, end, self_closing = match
            self._emit_text(events, buffer[:pos])
            self._buffer = buffer[end:]
            self._open_segment(events, name, attributes, buffer[pos:end], self_closing)
            return True

    def _scan_tool(self, events: list[TagEvent], final: bool) -> bool:
        segment = self._segment
        assert segment is not None
        close_tag = f"</{segment.name}>"
        buffer = self._buffer
        search_from = 0
        while True:
            pos = buffer.find("<", search_from)
            if pos == -1:
                segment.body.append(buffer)
                self._buffer = ""
                return False
            rest = buffer[pos:]
            if rest.startswith(close_tag):
                segment.body.append(buffer[:pos])
                self._buffer = buffer[pos + len(close_tag):]
                events.append(self._close_segment(segment))
                self._segment = None
                self._state = "text"
                return True
            nested = self._match_same_name(rest, segment.name, close_tag, final)
            if nested is _PENDING:
                segment.body.append(buffer[:pos])
                self._buffer = rest
                return False
            if nested:
                LOGGER.debug("Nested <%s> tag; discarding segment", segment.name)
                events.append(
                    ExtractorErrorEvent(segment.name, f"Nested <{segment.name}> tags are not supported")
                )
                raw = [segment.raw_open, *segment.body, buffer[:pos]]
                self._skip = _Skip(name=segment.name, depth=1, raw=raw)
                self._segment = None
                self._buffer = rest
                self._state = "skip"
                return True
            search_from = pos + 1

    def _scan_skip(self, final: bool) -> bool:
        skip = self._skip
        assert skip is not None
        close_tag = f"</{skip.name}>"
        open_prefix = f"<{skip.name}"
        buffer = self._buffer
        search_from = 0
        while True:
            pos = buffer.find("<", search_from)
            if pos == -1:
                skip.raw.append(buffer)
                self._buffer = ""
                return False
            rest = buffer[pos:]
            if rest.startswith(close_tag):
                skip.depth -= 1
                if skip.depth == 0:
                    self._buffer = buffer[pos + len(close_tag):]
                    self._skip = None
                    self._state = "text"
                    return True
                search_from = pos + len(close_tag)
                continue
            nested = self._match_same_name(rest, skip.name, close_tag, final)
            if nested is _PENDING:
                skip.raw.append(buffer[:pos])
                self._buffer = rest
                return False
            if nested:
                skip.depth += 1
                search_from = pos + len(open_prefix)
                continue
            search_from = pos + 1

    def _scan_reasoning(self, events: list[TagEvent], final: bool) -> bool:
        close_tag = f"</{self._reasoning_tag}>"
        buffer = self._buffer
        pos = buffer.find(close_tag)
        if pos != -1:
            self._emit(events, ReasoningEvent, buffer[:pos])
            self._buffer = buffer[pos + len(close_tag):]
            self._state = "text"
            return True
        keep = 0 if final else _partial_suffix_length(buffer, close_tag)
        self._emit(events, ReasoningEvent, buffer[: len(buffer) - keep])
        self._buffer = buffer[len(buffer) - keep:]
        return False

    # ------------------------------------------------------------------
    # Matching helpers
    # ------------------------------------------------------------------
    def _match_open(self, buffer: str, pos: int, final: bool) -> Any:
        rest = buffer[pos + 1:]
        pending = False
        for name in self._open_names:
            if rest.startswith(name):
                after = rest[len(name):]
                if not after:
                    pending = pending or not final
                    continue
                if after[0] not in _NAME_TERMINATORS:
                    continue
                window = buffer[pos: pos + self._max_open]
                close = window.find(">")
                if close == -1:
                    if len(window) < self._max_open and not final:
                        pending = True
                    continue
                inner = buffer[pos + 1 + len(name): pos + close].strip()
                self_closing = inner.endswith("/")
                if self_closing:
                    inner = inner[:-1]
                return name, _parse_attributes(inner), pos + close + 1, self_closing
            if not final and name.startswith(rest):
                pending = True
        return _PENDING if pending else None

    @staticmethod
    def _match_same_name(rest: str, name: str, close_tag: str, final: bool) -> Any:
        open_prefix = f"<{name}"
        if rest.startswith(open_prefix):
            if len(rest) == len(open_prefix):
                return False if final else _PENDING
            return rest[len(open_prefix)] in _NAME_TERMINATORS
        if not final and (open_prefix.startswith(rest) or close_tag.startswith(rest)):
            return _PENDING
        return False

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------
    def _open_segment(
        self,
        events: list[TagEvent],
        name: str,
        attributes: dict[str, str],
        raw_open: str,
        self_closing: bool,
    ) -> None:
        if name == self._reasoning_tag:
            self._state = "text" if self_closing else "reasoning"
            return
        events.append(ToolOpenEvent(name, dict(attributes)))
        segment = _Segment(name=name, attributes=attributes, raw_open=raw_open)
        if self_closing:
            events.append(self._close_segment(segment))
            return
        self._segment = segment
        self._state = "tool"

    def _close_segment(self, segment: _Segment) -> TagEvent:
        body = "".join(segment.body).strip()
        if not body:
            return ToolCloseEvent(segment.name, dict(segment.attributes), {})
        try:
            params = json.loads(body)
        except json.JSONDecodeError as exc:
            shortened = body if len(body) < 200 else f"{body[:100]}...{body[-100:]}"
            message = f"Invalid JSON: {json.dumps(shortened)}\nError: {exc.msg}"
            LOGGER.debug("Malformed <%s> body: %s", segment.name, exc)
            return ExtractorErrorEvent(segment.name, message)
        if not isinstance(params, dict):
            return ExtractorErrorEvent(
                segment.name, f"Tool call body must be a JSON object, got {type(params).__name__}"
            )
        return ToolCloseEvent(segment.name, dict(segment.attributes), params)

    def _emit_text(self, events: list[TagEvent], text: str) -> None:
        if text:
            self._text_parts.append(text)
            events.append(TextEvent(text))

    @staticmethod
    def _emit(events: list[TagEvent], kind: type, text: str) -> None:
        if text:
            events.append(kind(text))

    def _text_id(self, message_id: str | None) -> str:
        if message_id:
            return message_id
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()[:16]


# -----------------------------------------------------------------------------
# Module helpers
# -----------------------------------------------------------------------------


def _parse_attributes(text: str) -> dict[str, str]:
    attributes: dict[str, str] = {}
    for match in _ATTRIBUTE_PATTERN.finditer(text):
        key = match.group(1)
        value = next((group for group in match.groups()[1:] if group is not None), "")
        attributes[key] = value
    return attributes


def _partial_suffix_length(buffer: str, token: str) -> int:
    """Length of the longest suffix of ``buffer`` that is a proper prefix of ``token``."""
    for length in range(min(len(buffer), len(token) - 1), 0, -1):
        if buffer.endswith(token[:length]):
            return length
    return 0


def resolve_tool_name(event: ToolCloseEvent, wrapper_tags: Iterable[str] = (DEFAULT_TOOL_TAG,)) -> tuple[str | None, dict[str, Any]]:
    """Return ``(tool_name, params)`` for a closed tool tag.

    Wrapper tags name the tool via the ``name`` attribute or a ``tool_name`` key
    in the body; any other tag is named after itself.
    """

    params = dict(event.params)
    if event.name not in set(wrapper_tags):
        return event.name, params
    name = params.pop(TOOL_NAME_PARAM, None) or event.attributes.get("name")
    if not isinstance(name, str) or not name.strip():
        return None, params
    return name.strip(), params


def coalesce_events(events: Iterable[TagEvent]) -> list[TagEvent]:
    """Merge adjacent text and reasoning events."""

    merged: list[TagEvent] = []
    for event in events:
        if merged and isinstance(event, (TextEvent, ReasoningEvent)) and type(merged[-1]) is type(event):
            merged[-1] = type(event)(merged[-1].text + event.text)  # type: ignore[union-attr]
        else:
            merged.append(event)
    return merged


def extract_all(chunks: Iterable[str], **kwargs: Any) -> tuple[list[TagEvent], str]:
    """Run a fresh extractor over ``chunks`` and return coalesced events."""

    extractor = TagExtractor(**kwargs)
    events: list[TagEvent] = []
    for chunk in chunks:
        events.extend(extractor.feed(chunk))
    tail, text_id = extractor.finish()
    events.extend(tail)
    return coalesce_events(events), text_id
