"""Parse the assistant CLI's ``--output-format stream-json`` output.

Each stdout line is one JSON object. The parser turns it into zero or more
typed stream events stamped with the session and generation they belong
to. One parser instance is used per generation: it remembers tool-use ids
(so results can name their tool) and content-block positions (so streamed
deltas extend the right message).
"""
from __future__ import annotations

import json
import logging
from typing import Any

from tandem.adapters.events import (
    AssistantDelta,
    SessionLinked,
    StreamComplete,
    StreamError,
    StreamEvent,
    SystemNotice,
    ThinkingDelta,
    ToolInvoked,
    ToolResult,
)

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "Unknown"


def format_tool_result(content: Any) -> str:
    """Flatten a tool_result content payload into display text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(json.dumps(item))
        return "\n".join(parts)
    if isinstance(content, dict):
        if content.get("type") == "text":
            return str(content.get("text", ""))
        return json.dumps(content, indent=2)
    if content is None:
        return ""
    return str(content)


class StreamJsonParser:
    """Stateful stream-json parser for one generation."""

    def __init__(self, session_id: str, generation_id: str | None = None) -> None:
        self.session_id = session_id
        self.generation_id = generation_id
        self.backend_session_id: str | None = None
        self._tool_names: dict[str, str] = {}
        # content-block index -> number of blocks started at that index
        self._block_starts: dict[int, int] = {}

    def parse_line(self, line: str | bytes) -> list[StreamEvent]:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return []
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping non-JSON output line: %.200s", line)
            return []
        if not isinstance(data, dict):
            logger.warning("Skipping non-object JSON line: %.200s", line)
            return []
        return self.parse(data)

    def parse(self, data: dict[str, Any]) -> list[StreamEvent]:
        kind = data.get("type")
        if kind == "system":
            events = self._system(data)
        elif kind == "assistant":
            events = self._assistant(data)
        elif kind == "stream_event":
            events = self._partial(data.get("event") or {})
        elif kind == "user":
            events = self._user(data)
        elif kind == "result":
            events = self._result(data)
        else:
            logger.warning("Unknown stream-json message type: %s", kind)
            events = []
        for event in events:
            event.session_id = self.session_id
            event.generation_id = self.generation_id
        return events

    # ── Message kinds ──────────────────────────────────────────────

    def _system(self, data: dict[str, Any]) -> list[StreamEvent]:
        subtype = data.get("subtype")
        if subtype == "init":
            return self._link(data.get("session_id"))
        text = _message_text(data)
        if subtype == "error":
            return [StreamError(message=text or "An error occurred")]
        return [SystemNotice(text=text)] if text else []

    def _assistant(self, data: dict[str, Any]) -> list[StreamEvent]:
        message = data.get("message") or {}
        subtype = data.get("subtype")
        if subtype in ("content_block_start", "content_block_delta", "content_block_stop"):
            return self._partial({**message, "type": subtype})

        events: list[StreamEvent] = []
        content = message.get("content")
        blocks = content if isinstance(content, list) else [content]
        message_id = message.get("id") or ""
        for index, block in enumerate(blocks):
            events.extend(self._block(block, f"{message_id}:{index}"))
        return events

    def _partial(self, event: dict[str, Any]) -> list[StreamEvent]:
        kind = event.get("type")
        index = int(event.get("index") or 0)
        if kind == "content_block_start":
            self._block_starts[index] = self._block_starts.get(index, 0) + 1
            return self._block(
                event.get("content_block") or {}, self._partial_block_id(index)
            )
        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            block_id = self._partial_block_id(index)
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [AssistantDelta(text=delta["text"], block_id=block_id)]
            if delta.get("type") == "thinking_delta" and delta.get("thinking"):
                return [ThinkingDelta(text=delta["thinking"], block_id=block_id)]
        return []

    def _user(self, data: dict[str, Any]) -> list[StreamEvent]:
        content = (data.get("message") or {}).get("content")
        blocks = content if isinstance(content, list) else [content]
        events: list[StreamEvent] = []
        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_id = str(block.get("tool_use_id") or "")
            events.append(ToolResult(
                tool_name=self._tool_names.get(tool_id, UNKNOWN_TOOL),
                content=format_tool_result(block.get("content")),
                is_error=bool(block.get("is_error", False)),
                tool_id=tool_id,
            ))
        return events

    def _result(self, data: dict[str, Any]) -> list[StreamEvent]:
        events = self._link(data.get("session_id"))
        subtype = str(data.get("subtype") or "")
        if subtype.startswith("error") or data.get("is_error"):
            error = data.get("error")
            message = (
                (error.get("message") if isinstance(error, dict) else error)
                or data.get("result")
                or f"Assistant run failed ({subtype or 'error'})"
            )
            events.append(StreamError(message=str(message)))
            return events

        usage = data.get("usage") or {}
        cost = data.get("total_cost_usd", data.get("cost_usd"))
        events.append(StreamComplete(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            cache_creation_tokens=int(usage.get("cache_creation_input_tokens") or 0),
            cache_read_tokens=int(usage.get("cache_read_input_tokens") or 0),
            cost=cost,
        ))
        return events

    # ── Helpers ────────────────────────────────────────────────────

    def _block(self, block: Any, block_id: str) -> list[StreamEvent]:
        if not isinstance(block, dict):
            return []
        kind = block.get("type")
        if kind == "text":
            text = block.get("text") or ""
            return [AssistantDelta(text=text, block_id=block_id)] if text else []
        if kind == "thinking":
            text = block.get("thinking") or ""
            return [ThinkingDelta(text=text, block_id=block_id)] if text else []
        if kind == "tool_use":
            tool_id = str(block.get("id") or "")
            name = str(block.get("name") or UNKNOWN_TOOL)
            if tool_id:
                self._tool_names[tool_id] = name
            return [ToolInvoked(
                tool_name=name,
                content=json.dumps(block.get("input") or {}, indent=2),
                tool_id=tool_id,
            )]
        logger.debug("Ignoring content block type %s", kind)
        return []

    def _partial_block_id(self, index: int) -> str:
        return f"partial:{index}:{self._block_starts.get(index, 0)}"

    def _link(self, backend_session_id: Any) -> list[StreamEvent]:
        if not backend_session_id or backend_session_id == self.backend_session_id:
            return []
        self.backend_session_id = str(backend_session_id)
        return [SessionLinked(backend_session_id=self.backend_session_id)]


def _message_text(data: dict[str, Any]) -> str:
    message = data.get("message")
    if isinstance(message, dict):
        return format_tool_result(message.get("content"))
    if isinstance(message, str):
        return message
    return ""
