"""Tests for the streaming tag extractor."""

from __future__ import annotations

import pytest

from taskforge.ai.orchestration.tag_extractor import (
    ExtractorErrorEvent,
    ReasoningEvent,
    TagExtractor,
    TextEvent,
    ToolCloseEvent,
    ToolOpenEvent,
    coalesce_events,
    extract_all,
    resolve_tool_name,
)


STREAM = (
    "Let me look. <think>plan: read then write</think>"
    '<tool_call name="read_files">{"paths": ["a.txt"]}</tool_call> then '
    '<write_file>{"path": "b.txt", "content": "x < y"}</write_file> done 3 < 4.'
)


def _run(chunks: list[str], **kwargs) -> list:
    events, _ = extract_all(chunks, **kwargs)
    return events


# =============================================================================
# Chunk boundaries
# =============================================================================


class TestChunkBoundaries:
    def test_tag_split_mid_name_is_recognised(self) -> None:
        extractor = TagExtractor()

        first = extractor.feed("hello <tool_")
        second = extractor.feed("call id=1>")

        assert first == [TextEvent("hello ")]
        assert second == [ToolOpenEvent("tool_call", {"id": "1"})]
        assert "<tool_" not in extractor.text

    def test_partial_delimiter_is_held_back(self) -> None:
        extractor = TagExtractor()

        events = extractor.feed("abc <tool")

        assert events == [TextEvent("abc ")]
        assert extractor.pending == "<tool"

    @pytest.mark.parametrize("offset", range(1, len(STREAM)))
    def test_two_chunk_split_matches_single_chunk(self, offset: int) -> None:
        tags = ("tool_call", "write_file")
        whole = _run([STREAM], tool_tags=tags)

        split = _run([STREAM[:offset], STREAM[offset:]], tool_tags=tags)

        assert split == whole

    def test_single_character_chunks_match_single_chunk(self) -> None:
        tags = ("tool_call", "write_file")

        assert _run(list(STREAM), tool_tags=tags) == _run([STREAM], tool_tags=tags)


# =============================================================================
# Event content
# =============================================================================


class TestEvents:
    def test_full_sequence(self) -> None:
        events = _run([STREAM], tool_tags=("tool_call", "write_file"))

        assert events == [
            TextEvent("Let me look. "),
            ReasoningEvent("plan: read then write"),
            ToolOpenEvent("tool_call", {"name": "read_files"}),
            ToolCloseEvent("tool_call", {"name": "read_files"}, {"paths": ["a.txt"]}),
            TextEvent(" then "),
            ToolOpenEvent("write_file", {}),
            ToolCloseEvent("write_file", {}, {"path": "b.txt", "content": "x < y"}),
            TextEvent(" done 3 < 4."),
        ]

    def test_empty_input_produces_no_events(self) -> None:
        extractor = TagExtractor()

        assert extractor.feed("") == []
        events, text_id = extractor.finish()

        assert events == []
        assert text_id

    def test_unrecognised_tags_are_plain_text(self) -> None:
        events = _run(["<div>hi</div>"])

        assert events == [TextEvent("<div>hi</div>")]

    def test_unterminated_segment_is_flushed_as_text(self) -> None:
        extractor = TagExtractor()
        extractor.feed('before <tool_call name="x">{"a": 1')

        events, _ = extractor.finish()

        assert events == [TextEvent('<tool_call name="x">{"a": 1')]
        assert extractor.text == 'before <tool_call name="x">{"a": 1'

    def test_self_closing_tag_emits_open_and_close(self) -> None:
        events = _run(['<tool_call name="end_turn"/>'])

        assert events == [
            ToolOpenEvent("tool_call", {"name": "end_turn"}),
            ToolCloseEvent("tool_call", {"name": "end_turn"}, {}),
        ]

    def test_malformed_json_body_is_an_error_event(self) -> None:
        events = _run(['<tool_call name="x">{not json}</tool_call> after'])

        assert isinstance(events[1], ExtractorErrorEvent)
        assert events[1].message.startswith("Invalid JSON")
        assert events[-1] == TextEvent(" after")

    def test_non_object_body_is_an_error_event(self) -> None:
        events = _run(['<tool_call name="x">[1, 2]</tool_call>'])

        assert isinstance(events[-1], ExtractorErrorEvent)
        assert "JSON object" in events[-1].message

    def test_nested_same_name_tag_fails_only_that_tag(self) -> None:
        stream = (
            '<tool_call name="a"><tool_call name="b">{}</tool_call></tool_call> ok '
            '<tool_call name="c">{}</tool_call>'
        )

        events = _run([stream])

        errors = [event for event in events if isinstance(event, ExtractorErrorEvent)]
        closes = [event for event in events if isinstance(event, ToolCloseEvent)]
        assert len(errors) == 1
        assert "Nested" in errors[0].message
        assert closes == [ToolCloseEvent("tool_call", {"name": "c"}, {})]
        assert TextEvent(" ok ") in events

    def test_text_id_prefers_provider_message_id(self) -> None:
        extractor = TagExtractor()
        extractor.feed("hello")

        _, text_id = extractor.finish("msg_123")

        assert text_id == "msg_123"

    def test_text_id_is_stable_hash_of_text(self) -> None:
        _, first = extract_all(["hel", "lo"])
        _, second = extract_all(["hello"])

        assert first == second

    def test_feed_after_finish_raises(self) -> None:
        extractor = TagExtractor()
        extractor.finish()

        with pytest.raises(RuntimeError):
            extractor.feed("late")


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    def test_resolve_tool_name_from_attribute(self) -> None:
        event = ToolCloseEvent("tool_call", {"name": "write_file"}, {"path": "a"})

        assert resolve_tool_name(event) == ("write_file", {"path": "a"})

    def test_resolve_tool_name_from_body_key(self) -> None:
        event = ToolCloseEvent("tool_call", {}, {"tool_name": "read_files", "paths": ["a"]})

        assert resolve_tool_name(event) == ("read_files", {"paths": ["a"]})

    def test_resolve_tool_name_for_named_tag(self) -> None:
        event = ToolCloseEvent("write_file", {}, {"path": "a"})

        assert resolve_tool_name(event) == ("write_file", {"path": "a"})

    def test_resolve_tool_name_missing(self) -> None:
        event = ToolCloseEvent("tool_call", {}, {})

        assert resolve_tool_name(event) == (None, {})

    def test_coalesce_merges_adjacent_text(self) -> None:
        merged = coalesce_events([TextEvent("a"), TextEvent("b"), ReasoningEvent("c"), TextEvent("d")])

        assert merged == [TextEvent("ab"), ReasoningEvent("c"), TextEvent("d")]
