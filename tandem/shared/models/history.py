"""Checkpoint and archived-conversation records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class Checkpoint:
    hash: str
    timestamp: str
    author: str
    message: str


@dataclass(frozen=True)
class CheckpointStatus:
    is_git_repo: bool
    has_changes: bool = False


@dataclass(frozen=True)
class ArchivedConversation:
    key: str
    timestamp: str
    message_count: int
    first_message: str
    is_current: bool = False

    @property
    def filename(self) -> str:
        return self.key

    @property
    def display_timestamp(self) -> str:
        return normalize_archive_timestamp(self.timestamp)


# Archive timestamps swap ':' for '-' so they are safe in filenames:
#   2026-10-19T12:30:45.123456Z  <->  2026-10-19T12-30-45.123456Z
_STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S.%fZ"


def format_archive_timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(_STAMP_FORMAT)


def normalize_archive_timestamp(stamp: str) -> str:
    """Convert a filesystem-safe stamp back to colon-delimited ISO form."""
    date_part, sep, time_part = stamp.partition("T")
    if not sep:
        return stamp
    return f"{date_part}T{time_part.replace('-', ':')}"


def parse_archive_timestamp(stamp: str) -> datetime:
    iso = normalize_archive_timestamp(stamp)
    if iso.endswith("Z"):
        iso = iso[:-1] + "+00:00"
    return datetime.fromisoformat(iso)
