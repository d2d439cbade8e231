"""Session persistence: save and load open sessions across restarts.

Storage layout:
    <data_dir>/sessions/{session_id}.json
    <data_dir>/sessions/.active_session     (id of the selected session)

Only the session record and its current messages are stored. Processing
state never survives a restart; a restored session is always idle.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from tandem.shared.models.message import Message, dict_to_message, message_to_dict
from tandem.shared.models.session import Session, dict_to_session, session_to_dict
from tandem.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"
ACTIVE_MARKER = ".active_session"


class SessionPersistence:
    """Save and load session snapshots as JSON files."""

    def __init__(self, base_dir: Path) -> None:
        self._dir = Path(base_dir)

    @property
    def directory(self) -> Path:
        return self._dir

    def save(self, session: Session, messages: list[Message]) -> Path:
        """Serialize a session and its messages."""
        data = {
            "version": FORMAT_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "session": session_to_dict(session),
            "messages": [message_to_dict(m) for m in messages],
        }
        path = self._dir / f"{session.id}.json"
        atomic_write_text(path, json.dumps(data, indent=2))
        logger.info("Session saved to %s", path)
        return path

    def load(self, session_id: str) -> tuple[Session, list[Message]]:
        """Deserialize a session. Raises FileNotFoundError for unknown ids."""
        path = self._dir / f"{session_id}.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        session = dict_to_session(data["session"])
        messages = [dict_to_message(m) for m in data.get("messages", [])]
        return session, messages

    def load_all(self) -> list[tuple[Session, list[Message]]]:
        """Every readable snapshot, oldest session first."""
        loaded: list[tuple[Session, list[Message]]] = []
        for session_id in self.list_sessions():
            try:
                loaded.append(self.load(session_id))
            except (OSError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable session %s: %s", session_id, exc)
        loaded.sort(key=lambda pair: pair[0].created_at)
        return loaded

    def list_sessions(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json"))

    def delete(self, session_id: str) -> bool:
        path = self._dir / f"{session_id}.json"
        if not path.exists():
            return False
        path.unlink()
        logger.info("Deleted session snapshot %s", path)
        return True

    def prune(self, keep: set[str]) -> int:
        """Remove snapshots of sessions that are no longer open."""
        removed = 0
        for session_id in self.list_sessions():
            if session_id not in keep and self.delete(session_id):
                removed += 1
        return removed

    def save_active(self, session_id: str | None) -> None:
        marker = self._dir / ACTIVE_MARKER
        if session_id is None:
            if marker.exists():
                marker.unlink()
            return
        atomic_write_text(marker, session_id)

    def load_active(self) -> str | None:
        marker = self._dir / ACTIVE_MARKER
        if not marker.exists():
            return None
        value = marker.read_text(encoding="utf-8").strip()
        return value or None
