"""Ordered, per-session message log.

Append-only while a generation streams; replaced wholesale when an
archived conversation is loaded. Message ids are unique within a store.
"""
from __future__ import annotations

import logging
from typing import Iterator

from tandem.shared.models.message import Message, MessageType

logger = logging.getLogger(__name__)


class MessageStore:
    """Ordered messages of one session, indexed by id."""

    def __init__(self, messages: list[Message] | None = None) -> None:
        self._messages: list[Message] = []
        self._index: dict[str, Message] = {}
        if messages:
            self.replace_all(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def append(self, message: Message) -> bool:
        """Append a message. Returns False when the id is already present."""
        if message.id in self._index:
            logger.debug("Ignoring duplicate message id %s", message.id)
            return False
        self._messages.append(message)
        self._index[message.id] = message
        return True

    def extend_content(self, message_id: str, text: str) -> Message:
        """Append streamed text to the newest message.

        Only the last message may grow; anything else would reorder
        content the user has already seen.
        """
        last = self.last
        if last is None or last.id != message_id:
            raise ValueError(f"Message {message_id} is not the newest message")
        last.content += text
        return last

    def get(self, message_id: str) -> Message | None:
        return self._index.get(message_id)

    def mark_tool_pending(self, message_id: str) -> Message:
        message = self._require_tool(message_id)
        message.tool_metadata.mark_pending()
        return message

    def resolve_tool_permission(self, message_id: str, allowed: bool) -> Message:
        message = self._require_tool(message_id)
        message.tool_metadata.resolve_permission(allowed)
        return message

    def clear(self) -> None:
        self._messages.clear()
        self._index.clear()

    def replace_all(self, messages: list[Message]) -> None:
        """Swap in a new conversation. Later duplicates of an id are dropped."""
        self.clear()
        for message in messages:
            self.append(message)

    def snapshot(self) -> list[Message]:
        return list(self._messages)

    def _require_tool(self, message_id: str) -> Message:
        message = self._index.get(message_id)
        if message is None or message.type is not MessageType.TOOL:
            raise ValueError(f"No tool message with id {message_id}")
        return message
