"""Tests for the stream-json parser."""
from __future__ import annotations

import json

from tandem.adapters.events import (
    AssistantDelta,
    SessionLinked,
    StreamComplete,
    StreamError,
    SystemNotice,
    ThinkingDelta,
    ToolInvoked,
    ToolResult,
)
from tandem.adapters.stream_parser import StreamJsonParser, format_tool_result


def _parser() -> StreamJsonParser:
    return StreamJsonParser("s1", "g1")


def test_init_links_backend_session_once() -> None:
    parser = _parser()
    first = parser.parse({"type": "system", "subtype": "init", "session_id": "cli-1"})
    again = parser.parse({"type": "system", "subtype": "init", "session_id": "cli-1"})

    assert len(first) == 1
    assert isinstance(first[0], SessionLinked)
    assert first[0].backend_session_id == "cli-1"
    assert first[0].session_id == "s1"
    assert first[0].generation_id == "g1"
    assert again == []


def test_system_messages() -> None:
    parser = _parser()
    [notice] = parser.parse({"type": "system", "subtype": "info", "message": "compacting"})
    [error] = parser.parse({"type": "system", "subtype": "error", "message": "boom"})
    assert isinstance(notice, SystemNotice) and notice.text == "compacting"
    assert isinstance(error, StreamError) and error.message == "boom"


def test_assistant_blocks_get_positional_ids() -> None:
    events = _parser().parse({
        "type": "assistant",
        "message": {
            "id": "msg_1",
            "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Hello"},
                {"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {"command": "ls"}},
            ],
        },
    })

    thinking, text, tool = events
    assert isinstance(thinking, ThinkingDelta) and thinking.block_id == "msg_1:0"
    assert isinstance(text, AssistantDelta) and text.block_id == "msg_1:1"
    assert isinstance(tool, ToolInvoked)
    assert tool.tool_name == "Bash"
    assert json.loads(tool.content) == {"command": "ls"}


def test_tool_result_is_named_from_earlier_tool_use() -> None:
    parser = _parser()
    parser.parse({
        "type": "assistant",
        "message": {"id": "m", "content": [
            {"type": "tool_use", "id": "tu_9", "name": "Grep", "input": {}},
        ]},
    })
    [known, unknown] = parser.parse({
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "tu_9",
             "content": [{"type": "text", "text": "a.py:3"}]},
            {"type": "tool_result", "tool_use_id": "other", "content": "x", "is_error": True},
        ]},
    })

    assert isinstance(known, ToolResult)
    assert known.tool_name == "Grep"
    assert known.content == "a.py:3"
    assert unknown.tool_name == "Unknown"
    assert unknown.is_error


def test_partial_deltas_share_a_block_until_restarted() -> None:
    parser = _parser()
    parser.parse({"type": "stream_event", "event": {
        "type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""},
    }})
    [a] = parser.parse({"type": "stream_event", "event": {
        "type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "He"},
    }})
    [b] = parser.parse({"type": "stream_event", "event": {
        "type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "llo"},
    }})
    parser.parse({"type": "stream_event", "event": {
        "type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""},
    }})
    [c] = parser.parse({"type": "stream_event", "event": {
        "type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Next"},
    }})

    assert a.block_id == b.block_id
    assert c.block_id != a.block_id


def test_result_success_reports_usage_and_cost() -> None:
    events = _parser().parse({
        "type": "result",
        "subtype": "success",
        "session_id": "cli-2",
        "total_cost_usd": 0.0123,
        "usage": {
            "input_tokens": 10,
            "output_tokens": 20,
            "cache_creation_input_tokens": 3,
            "cache_read_input_tokens": 4,
        },
    })

    linked, complete = events
    assert isinstance(linked, SessionLinked)
    assert isinstance(complete, StreamComplete)
    assert (complete.input_tokens, complete.output_tokens) == (10, 20)
    assert (complete.cache_creation_tokens, complete.cache_read_tokens) == (3, 4)
    assert complete.cost == 0.0123


def test_result_error_becomes_stream_error() -> None:
    [error] = _parser().parse({
        "type": "result", "subtype": "error_max_turns", "is_error": True,
    })
    assert isinstance(error, StreamError)
    assert "error_max_turns" in error.message


def test_parse_line_skips_garbage() -> None:
    parser = _parser()
    assert parser.parse_line("") == []
    assert parser.parse_line("not json") == []
    assert parser.parse_line("[1, 2]") == []
    assert len(parser.parse_line(b'{"type": "system", "subtype": "init", "session_id": "x"}')) == 1


def test_format_tool_result_shapes() -> None:
    assert format_tool_result(None) == ""
    assert format_tool_result("plain") == "plain"
    assert format_tool_result(["a", {"type": "text", "text": "b"}]) == "a\nb"
    assert format_tool_result({"type": "text", "text": "c"}) == "c"
