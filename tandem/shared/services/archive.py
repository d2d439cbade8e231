"""Archived conversations, one JSON document per archive.

Storage layout:
    <data_dir>/archives/{workspace_id}/{key}.json

where {workspace_id} identifies the session's working directory and
{key} is ``{workspace_id}-{timestamp}`` with a filesystem-safe UTC stamp
(``2026-10-19T12-30-45.123456Z``). Archives are never rewritten.
"""
from __future__ import annotations

import abc
import hashlib
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from tandem.engine.errors import NotFoundError, PersistFailedError
from tandem.shared.models.history import (
    ArchivedConversation,
    format_archive_timestamp,
    normalize_archive_timestamp,
)
from tandem.shared.models.message import (
    Message,
    MessageType,
    dict_to_message,
    message_to_dict,
)
from tandem.shared.models.session import Session
from tandem.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
_SLUG_RE = re.compile(r"[^A-Za-z0-9._]+")

SessionLookup = Callable[[str], Session]


def workspace_id(working_directory: str) -> str:
    """Stable, filename-safe identity of a working directory.

    Example: /home/user/my project -> my-project-3f2a9c1b
    """
    normalized = str(PurePosixPath(working_directory.replace("\\", "/")))
    name = PurePosixPath(normalized).name or "root"
    slug = _SLUG_RE.sub("-", name).strip("-") or "workspace"
    digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


def archive_key(working_directory: str, moment: datetime | None = None) -> str:
    return f"{workspace_id(working_directory)}-{format_archive_timestamp(moment)}"


class ArchiveGateway(abc.ABC):
    """Store of immutable archived conversations per working directory."""

    @abc.abstractmethod
    async def list(self, session_id: str) -> list[ArchivedConversation]:
        """Archives of the session's workspace, newest first."""

    @abc.abstractmethod
    async def load(self, session_id: str, key: str) -> list[Message]:
        """Messages of an archive. Raises NotFoundError."""

    @abc.abstractmethod
    async def save(
        self,
        session_id: str,
        messages: list[Message],
        backend_session_id: str | None = None,
    ) -> str:
        """Write a new archive and return its key. Raises PersistFailedError."""

    @abc.abstractmethod
    async def resume_id(self, session_id: str, key: str) -> str | None:
        """Backend session id stored with an archive. Raises NotFoundError."""


class JsonArchiveGateway(ArchiveGateway):
    """ArchiveGateway writing one JSON file per archive."""

    def __init__(
        self,
        base_dir: Path,
        session_lookup: SessionLookup,
        preview_chars: int = 100,
    ) -> None:
        self._base_dir = Path(base_dir)
        self._lookup = session_lookup
        self._preview_chars = preview_chars

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    async def list(self, session_id: str) -> list[ArchivedConversation]:
        session = self._lookup(session_id)
        directory = self._workspace_dir(session.working_directory)
        if not directory.is_dir():
            return []

        archived: list[ArchivedConversation] = []
        for path in directory.glob("*.json"):
            data = self._read(path)
            if data is None:
                continue
            messages = data.get("messages") or []
            if not messages:
                continue
            key = data.get("key") or path.stem
            archived.append(ArchivedConversation(
                key=key,
                timestamp=data.get("timestamp", ""),
                message_count=len(messages),
                first_message=self._preview(messages),
                is_current=key == session.current_archive_key,
            ))
        archived.sort(key=lambda a: a.timestamp, reverse=True)
        return archived

    async def load(self, session_id: str, key: str) -> list[Message]:
        data = self._resolve(session_id, key)
        try:
            return [dict_to_message(m) for m in data.get("messages") or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise NotFoundError("Archive", key, f"unreadable: {exc}") from exc

    async def resume_id(self, session_id: str, key: str) -> str | None:
        return self._resolve(session_id, key).get("backend_session_id")

    async def save(
        self,
        session_id: str,
        messages: list[Message],
        backend_session_id: str | None = None,
    ) -> str:
        session = self._lookup(session_id)
        directory = self._workspace_dir(session.working_directory)

        moment = datetime.now(timezone.utc)
        key = archive_key(session.working_directory, moment)
        # Keys are never reused.
        while (directory / f"{key}.json").exists():
            moment += timedelta(microseconds=1)
            key = archive_key(session.working_directory, moment)

        stamp = format_archive_timestamp(moment)
        document = {
            "version": FORMAT_VERSION,
            "key": key,
            "workspace_id": workspace_id(session.working_directory),
            "working_directory": session.working_directory,
            "timestamp": normalize_archive_timestamp(stamp),
            "backend_session_id": backend_session_id,
            "messages": [message_to_dict(m) for m in messages],
        }
        try:
            atomic_write_json(directory / f"{key}.json", document)
        except OSError as exc:
            logger.error("Archive write failed for session %s: %s", session_id[:8], exc)
            raise PersistFailedError(str(exc)) from exc
        logger.info(
            "Archived %d messages for session %s as %s",
            len(messages), session_id[:8], key,
        )
        return key

    def _workspace_dir(self, working_directory: str) -> Path:
        return self._base_dir / workspace_id(working_directory)

    def _resolve(self, session_id: str, key: str) -> dict[str, Any]:
        session = self._lookup(session_id)
        wid = workspace_id(session.working_directory)
        if not key.startswith(f"{wid}-") or "/" in key or "\\" in key:
            raise NotFoundError("Archive", key, "not in this workspace")
        path = self._workspace_dir(session.working_directory) / f"{key}.json"
        if not path.is_file():
            raise NotFoundError("Archive", key)
        data = self._read(path)
        if data is None:
            raise NotFoundError("Archive", key, "unreadable")
        return data

    def _preview(self, messages: list[dict[str, Any]]) -> str:
        for raw in messages:
            if raw.get("type") == MessageType.USER.value:
                return str(raw.get("content", ""))[: self._preview_chars]
        return "Conversation"

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to read archive %s", path)
            return None
        return data if isinstance(data, dict) else None
