"""One streaming response cycle and its cancellation token."""
from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from tandem.adapters.events import StreamEvent
from tandem.shared.models.message import MessageType


class CancellationToken:
    """Cooperative cancellation flag, checked before every append."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason


@dataclass
class Generation:
    """Book-keeping for the single in-flight generation of a session."""

    session_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Request the generation is paused on, if any.
    pending_request_id: str | None = None
    # Tool messages appended by this generation, oldest first.
    tool_messages: list[str] = field(default_factory=list)
    # permission request id -> tool message id
    permission_targets: dict[str, str] = field(default_factory=dict)
    # Events held back while paused or while replaying.
    buffered: deque[StreamEvent] = field(default_factory=deque)
    replaying: bool = False
    # Open streaming block per message type: (block_id, message_id)
    open_blocks: dict[MessageType, tuple[str | None, str]] = field(default_factory=dict)

    def owns(self, event: StreamEvent) -> bool:
        """Events without a generation id belong to whoever is active."""
        return not event.generation_id or event.generation_id == self.id

    def close_blocks(self, keep: MessageType | None = None) -> None:
        for msg_type in list(self.open_blocks):
            if msg_type is not keep:
                del self.open_blocks[msg_type]
