"""Event types emitted by the assistant backend.

Each event corresponds to a backend callback dict, parsed into a typed
dataclass for safe consumption by the session controllers.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class StreamEvent:
    """Base event from the assistant backend."""
    event_type: str = ""
    session_id: str = ""
    # Generation the event belongs to; None means "the active one".
    generation_id: str | None = None


@dataclass
class UserEcho(StreamEvent):
    event_type: str = "user_echo"
    text: str = ""


@dataclass
class AssistantDelta(StreamEvent):
    event_type: str = "assistant_delta"
    text: str = ""
    # Backend content-block id; a new id starts a new assistant message.
    block_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass
class ThinkingDelta(StreamEvent):
    event_type: str = "thinking_delta"
    text: str = ""
    block_id: str | None = None


@dataclass
class ToolInvoked(StreamEvent):
    event_type: str = "tool_invoked"
    tool_name: str = ""
    content: str = ""
    tool_id: str = ""


@dataclass
class ToolResult(StreamEvent):
    event_type: str = "tool_result"
    tool_name: str = ""
    content: str = ""
    is_error: bool = False
    tool_id: str = ""


@dataclass
class PermissionRequested(StreamEvent):
    event_type: str = "permission_requested"
    request_id: str = ""
    tool: str = ""
    path: str = ""
    tool_input: dict | None = None


@dataclass
class SystemNotice(StreamEvent):
    event_type: str = "system_notice"
    text: str = ""


@dataclass
class SessionLinked(StreamEvent):
    """Backend assigned (or confirmed) its own resume id for the session."""
    event_type: str = "session_linked"
    backend_session_id: str = ""


@dataclass
class StreamComplete(StreamEvent):
    event_type: str = "stream_complete"
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    # Reported cost in USD as a string or number; None means "estimate it".
    cost: str | float | None = None


@dataclass
class StreamError(StreamEvent):
    event_type: str = "stream_error"
    message: str = ""


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "user_echo": UserEcho,
    "assistant_delta": AssistantDelta,
    "thinking_delta": ThinkingDelta,
    "tool_invoked": ToolInvoked,
    "tool_result": ToolResult,
    "permission_requested": PermissionRequested,
    "system_notice": SystemNotice,
    "session_linked": SessionLinked,
    "stream_complete": StreamComplete,
    "stream_error": StreamError,
}


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" for consistency with backend callbacks
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> StreamEvent:
    """Convert a backend callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, StreamEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    # Map "event" key to "event_type" field
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
