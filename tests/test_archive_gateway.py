from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from tandem.engine.errors import NotFoundError, PersistFailedError
from tandem.shared.models.history import (
    ArchivedConversation,
    format_archive_timestamp,
    normalize_archive_timestamp,
    parse_archive_timestamp,
)
from tandem.shared.models.message import Message, MessageType, user_message
from tandem.shared.models.session import Session
from tandem.shared.services.archive import JsonArchiveGateway, archive_key, workspace_id


class Sessions(dict):
    def lookup(self, session_id: str) -> Session:
        return self[session_id]


def _setup(tmp_path):
    sessions = Sessions(
        a=Session(working_directory="/work/project"),
        b=Session(working_directory="/work/other"),
    )
    gateway = JsonArchiveGateway(tmp_path / "archives", sessions.lookup, preview_chars=5)
    return sessions, gateway


def test_workspace_id_is_stable_and_safe() -> None:
    wid = workspace_id("/home/me/my project")
    assert wid.startswith("my-project-")
    assert len(wid.rsplit("-", 1)[1]) == 8
    assert workspace_id("/home/me/my project") == wid
    assert workspace_id("/home/you/my project") != wid
    assert workspace_id("/").startswith("root-")


def test_archive_key_format() -> None:
    moment = datetime(2026, 10, 19, 12, 30, 45, 123456, tzinfo=timezone.utc)
    key = archive_key("/work/project", moment)
    assert key == f"{workspace_id('/work/project')}-2026-10-19T12-30-45.123456Z"
    assert ":" not in key


def test_timestamp_helpers() -> None:
    stamp = format_archive_timestamp(datetime(2026, 1, 2, 3, 4, 5, 6, tzinfo=timezone.utc))
    assert stamp == "2026-01-02T03-04-05.000006Z"
    assert normalize_archive_timestamp(stamp) == "2026-01-02T03:04:05.000006Z"
    assert parse_archive_timestamp(stamp) == datetime(2026, 1, 2, 3, 4, 5, 6, tzinfo=timezone.utc)
    assert normalize_archive_timestamp("no-time") == "no-time"
    archived = ArchivedConversation(key="k", timestamp=stamp, message_count=1, first_message="")
    assert archived.display_timestamp == "2026-01-02T03:04:05.000006Z"


@pytest.mark.asyncio
async def test_save_load_and_resume_id(tmp_path) -> None:
    _, gateway = _setup(tmp_path)
    messages = [user_message("hello world"), Message(type=MessageType.ASSISTANT, content="hi")]

    key = await gateway.save("a", messages, backend_session_id="cli-7")
    loaded = await gateway.load("a", key)

    assert [m.id for m in loaded] == [m.id for m in messages]
    assert await gateway.resume_id("a", key) == "cli-7"

    path = tmp_path / "archives" / workspace_id("/work/project") / f"{key}.json"
    document = json.loads(path.read_text())
    assert document["key"] == key
    assert document["working_directory"] == "/work/project"
    assert ":" in document["timestamp"]


@pytest.mark.asyncio
async def test_keys_are_never_reused(tmp_path) -> None:
    _, gateway = _setup(tmp_path)
    keys = {await gateway.save("a", [user_message(str(i))]) for i in range(5)}
    assert len(keys) == 5


@pytest.mark.asyncio
async def test_list_is_per_workspace_and_newest_first(tmp_path) -> None:
    sessions, gateway = _setup(tmp_path)
    older = await gateway.save("a", [user_message("first chat")])
    newer = await gateway.save("a", [Message(type=MessageType.SYSTEM, content="x")])
    await gateway.save("b", [user_message("elsewhere")])
    sessions["a"].current_archive_key = older

    listed = await gateway.list("a")

    assert [a.key for a in listed] == [newer, older]
    assert listed[0].first_message == "Conversation"
    assert listed[1].first_message == "first"
    assert listed[1].is_current and not listed[0].is_current


@pytest.mark.asyncio
async def test_empty_archives_are_not_listed(tmp_path) -> None:
    _, gateway = _setup(tmp_path)
    await gateway.save("a", [])
    assert await gateway.list("a") == []


@pytest.mark.asyncio
async def test_other_workspace_keys_are_not_found(tmp_path) -> None:
    _, gateway = _setup(tmp_path)
    key = await gateway.save("b", [user_message("secret")])

    with pytest.raises(NotFoundError):
        await gateway.load("a", key)
    with pytest.raises(NotFoundError):
        await gateway.resume_id("a", key)
    with pytest.raises(NotFoundError):
        await gateway.load("a", f"{workspace_id('/work/project')}-missing")
    with pytest.raises(NotFoundError):
        await gateway.load("a", f"{workspace_id('/work/project')}-../../x")


@pytest.mark.asyncio
async def test_corrupt_archive(tmp_path) -> None:
    _, gateway = _setup(tmp_path)
    key = await gateway.save("a", [user_message("x")])
    path = tmp_path / "archives" / workspace_id("/work/project") / f"{key}.json"
    path.write_text("{broken")

    with pytest.raises(NotFoundError):
        await gateway.load("a", key)
    assert await gateway.list("a") == []


@pytest.mark.asyncio
async def test_write_failure_raises_persist_failed(tmp_path) -> None:
    blocker = tmp_path / "archives"
    blocker.write_text("not a directory")
    sessions = Sessions(a=Session(working_directory="/work/project"))
    gateway = JsonArchiveGateway(blocker, sessions.lookup)

    with pytest.raises(PersistFailedError):
        await gateway.save("a", [user_message("x")])
