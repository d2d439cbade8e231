"""Message models: the closed set of message types and their metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class MessageType(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    THINKING = "thinking"
    TOOL = "tool"
    TOOL_RESULT = "tool-result"
    SYSTEM = "system"
    ERROR = "error"
    PERMISSION_REQUEST = "permission-request"


class PermissionState(Enum):
    NONE = "none"
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class TokenCount:
    input: int = 0
    output: int = 0


@dataclass(frozen=True)
class PermissionRequest:
    id: str
    tool: str
    path: str = ""
    tool_input: dict[str, Any] | None = None


@dataclass
class MessageMetadata:
    tokens: TokenCount | None = None


@dataclass
class ToolMetadata(MessageMetadata):
    tool_name: str = ""
    permission_state: PermissionState = PermissionState.NONE

    @property
    def pending_permission(self) -> bool:
        return self.permission_state is PermissionState.PENDING

    @property
    def permission_denied(self) -> bool:
        return self.permission_state is PermissionState.DENIED

    def mark_pending(self) -> None:
        if self.permission_state is not PermissionState.NONE:
            raise ValueError(
                f"Tool '{self.tool_name}' permission already {self.permission_state.value}"
            )
        self.permission_state = PermissionState.PENDING

    def resolve_permission(self, allowed: bool) -> None:
        """Move pending -> granted/denied. Only ever happens once."""
        if self.permission_state is not PermissionState.PENDING:
            raise ValueError(
                f"Tool '{self.tool_name}' has no pending permission "
                f"(state={self.permission_state.value})"
            )
        self.permission_state = (
            PermissionState.GRANTED if allowed else PermissionState.DENIED
        )


@dataclass
class ToolResultMetadata(MessageMetadata):
    tool_name: str = ""
    is_error: bool = False


@dataclass
class PermissionRequestMetadata(MessageMetadata):
    permission_request: PermissionRequest | None = None


# Every message type maps to exactly one metadata class.
METADATA_TYPES: dict[MessageType, type[MessageMetadata]] = {
    MessageType.USER: MessageMetadata,
    MessageType.ASSISTANT: MessageMetadata,
    MessageType.THINKING: MessageMetadata,
    MessageType.TOOL: ToolMetadata,
    MessageType.TOOL_RESULT: ToolResultMetadata,
    MessageType.SYSTEM: MessageMetadata,
    MessageType.ERROR: MessageMetadata,
    MessageType.PERMISSION_REQUEST: PermissionRequestMetadata,
}


def check_exhaustive(table: dict, name: str) -> None:
    """Fail at import time if a dispatch table misses a message type."""
    missing = set(MessageType) - set(table)
    if missing:
        raise RuntimeError(
            f"{name} is missing message types: "
            + ", ".join(sorted(t.value for t in missing))
        )


check_exhaustive(METADATA_TYPES, "METADATA_TYPES")

_IMMUTABLE_FIELDS = frozenset({"id", "type"})


@dataclass
class Message:
    type: MessageType
    content: str
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: MessageMetadata | None = None

    def __post_init__(self) -> None:
        expected = METADATA_TYPES[self.type]
        if self.metadata is None:
            self.metadata = expected()
        elif type(self.metadata) is not expected:
            raise TypeError(
                f"{self.type.value} message requires {expected.__name__}, "
                f"got {type(self.metadata).__name__}"
            )

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _IMMUTABLE_FIELDS and name in self.__dict__:
            raise AttributeError(f"Message.{name} cannot change once created")
        super().__setattr__(name, value)

    @property
    def tool_metadata(self) -> ToolMetadata:
        if not isinstance(self.metadata, ToolMetadata):
            raise TypeError(f"{self.type.value} message has no tool metadata")
        return self.metadata


def user_message(content: str) -> Message:
    return Message(type=MessageType.USER, content=content)


def tool_message(tool_name: str, content: str) -> Message:
    return Message(
        type=MessageType.TOOL,
        content=content,
        metadata=ToolMetadata(tool_name=tool_name),
    )


def tool_result_message(tool_name: str, content: str, is_error: bool) -> Message:
    return Message(
        type=MessageType.TOOL_RESULT,
        content=content,
        metadata=ToolResultMetadata(tool_name=tool_name, is_error=is_error),
    )


def permission_request_message(request: PermissionRequest, content: str) -> Message:
    return Message(
        type=MessageType.PERMISSION_REQUEST,
        content=content,
        metadata=PermissionRequestMetadata(permission_request=request),
    )


# ── Serialization ────────────────────────────────────────────────


def _tokens_to_dict(tokens: TokenCount | None) -> dict[str, int] | None:
    if tokens is None:
        return None
    return {"input": tokens.input, "output": tokens.output}


def _base_meta(meta: MessageMetadata) -> dict[str, Any]:
    d: dict[str, Any] = {}
    tokens = _tokens_to_dict(meta.tokens)
    if tokens is not None:
        d["tokens"] = tokens
    return d


def _tool_meta(meta: ToolMetadata) -> dict[str, Any]:
    d = _base_meta(meta)
    d["tool_name"] = meta.tool_name
    d["permission_state"] = meta.permission_state.value
    return d


def _tool_result_meta(meta: ToolResultMetadata) -> dict[str, Any]:
    d = _base_meta(meta)
    d["tool_name"] = meta.tool_name
    d["is_error"] = meta.is_error
    return d


def _permission_meta(meta: PermissionRequestMetadata) -> dict[str, Any]:
    d = _base_meta(meta)
    req = meta.permission_request
    if req is not None:
        d["permission_request"] = {
            "id": req.id,
            "tool": req.tool,
            "path": req.path,
        }
        if req.tool_input is not None:
            d["permission_request"]["tool_input"] = req.tool_input
    return d


_META_ENCODERS: dict[MessageType, Callable[[Any], dict[str, Any]]] = {
    MessageType.USER: _base_meta,
    MessageType.ASSISTANT: _base_meta,
    MessageType.THINKING: _base_meta,
    MessageType.TOOL: _tool_meta,
    MessageType.TOOL_RESULT: _tool_result_meta,
    MessageType.SYSTEM: _base_meta,
    MessageType.ERROR: _base_meta,
    MessageType.PERMISSION_REQUEST: _permission_meta,
}
check_exhaustive(_META_ENCODERS, "_META_ENCODERS")


def _tokens_from(data: dict[str, Any]) -> TokenCount | None:
    raw = data.get("tokens")
    if not isinstance(raw, dict):
        return None
    return TokenCount(input=int(raw.get("input", 0)), output=int(raw.get("output", 0)))


def _decode_base(data: dict[str, Any]) -> MessageMetadata:
    return MessageMetadata(tokens=_tokens_from(data))


def _decode_tool(data: dict[str, Any]) -> ToolMetadata:
    state = data.get("permission_state", PermissionState.NONE.value)
    return ToolMetadata(
        tokens=_tokens_from(data),
        tool_name=data.get("tool_name", ""),
        permission_state=PermissionState(state),
    )


def _decode_tool_result(data: dict[str, Any]) -> ToolResultMetadata:
    return ToolResultMetadata(
        tokens=_tokens_from(data),
        tool_name=data.get("tool_name", ""),
        is_error=bool(data.get("is_error", False)),
    )


def _decode_permission(data: dict[str, Any]) -> PermissionRequestMetadata:
    raw = data.get("permission_request")
    request = None
    if isinstance(raw, dict):
        request = PermissionRequest(
            id=raw.get("id", ""),
            tool=raw.get("tool", ""),
            path=raw.get("path", ""),
            tool_input=raw.get("tool_input"),
        )
    return PermissionRequestMetadata(tokens=_tokens_from(data), permission_request=request)


_META_DECODERS: dict[MessageType, Callable[[dict[str, Any]], MessageMetadata]] = {
    MessageType.USER: _decode_base,
    MessageType.ASSISTANT: _decode_base,
    MessageType.THINKING: _decode_base,
    MessageType.TOOL: _decode_tool,
    MessageType.TOOL_RESULT: _decode_tool_result,
    MessageType.SYSTEM: _decode_base,
    MessageType.ERROR: _decode_base,
    MessageType.PERMISSION_REQUEST: _decode_permission,
}
check_exhaustive(_META_DECODERS, "_META_DECODERS")


def message_to_dict(msg: Message) -> dict[str, Any]:
    return {
        "id": msg.id,
        "type": msg.type.value,
        "content": msg.content,
        "timestamp": msg.timestamp.isoformat(),
        "metadata": _META_ENCODERS[msg.type](msg.metadata),
    }


def dict_to_message(data: dict[str, Any]) -> Message:
    msg_type = MessageType(data["type"])
    ts = data.get("timestamp")
    return Message(
        type=msg_type,
        content=data.get("content", ""),
        id=data.get("id") or _gen_id(),
        timestamp=datetime.fromisoformat(ts) if ts else _utcnow(),
        metadata=_META_DECODERS[msg_type](data.get("metadata") or {}),
    )
