from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

from tandem.shared.models.message import MessageType, tool_message, user_message
from tandem.shared.models.session import ModelChoice, Session, TokenUsage
from tandem.shared.services.durable_write import atomic_write_json, atomic_write_text
from tandem.shared.services.persistence import SessionPersistence


def _session(tmp_path) -> Session:
    return Session(
        working_directory=str(tmp_path / "proj"),
        model=ModelChoice.OPUS,
        total_cost=Decimal("1.2345"),
        token_usage=TokenUsage(input_tokens=10, output_tokens=20, cache_read_tokens=3),
        draft_input_text="half typed",
        backend_session_id="cli-1",
        yolo_mode=True,
        is_processing=True,
    )


def test_save_and_load(tmp_path) -> None:
    persistence = SessionPersistence(tmp_path / "sessions")
    session = _session(tmp_path)
    tool = tool_message("Bash", "ls")
    messages = [user_message("hello"), tool]

    path = persistence.save(session, messages)
    loaded, loaded_messages = persistence.load(session.id)

    assert json.loads(path.read_text())["version"] == "1.0"
    assert loaded.id == session.id
    assert loaded.name == "proj"
    assert loaded.model is ModelChoice.OPUS
    assert loaded.total_cost == Decimal("1.2345")
    assert loaded.token_usage == session.token_usage
    assert loaded.draft_input_text == "half typed"
    assert loaded.backend_session_id == "cli-1"
    assert loaded.yolo_mode
    assert not loaded.is_processing
    assert [m.id for m in loaded_messages] == [m.id for m in messages]
    assert loaded_messages[1].type is MessageType.TOOL


def test_load_all_skips_corrupt_files(tmp_path) -> None:
    persistence = SessionPersistence(tmp_path)
    older = Session(working_directory="/a", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    newer = Session(working_directory="/b", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
    persistence.save(newer, [])
    persistence.save(older, [])
    (tmp_path / "broken.json").write_text("{")

    loaded = persistence.load_all()

    assert [s.id for s, _ in loaded] == [older.id, newer.id]


def test_prune_and_active_marker(tmp_path) -> None:
    persistence = SessionPersistence(tmp_path)
    keep = Session(working_directory="/a")
    drop = Session(working_directory="/b")
    persistence.save(keep, [])
    persistence.save(drop, [])

    assert persistence.prune({keep.id}) == 1
    assert persistence.list_sessions() == [keep.id]

    assert persistence.load_active() is None
    persistence.save_active(keep.id)
    assert persistence.load_active() == keep.id
    persistence.save_active(None)
    assert persistence.load_active() is None


def test_missing_directory_lists_nothing(tmp_path) -> None:
    persistence = SessionPersistence(tmp_path / "nowhere")
    assert persistence.list_sessions() == []
    assert persistence.load_all() == []
    assert persistence.delete("x") is False


def test_atomic_writes_create_parents(tmp_path) -> None:
    target = tmp_path / "a" / "b" / "data.json"
    atomic_write_json(target, {"name": "café"})
    assert json.loads(target.read_text(encoding="utf-8")) == {"name": "café"}

    atomic_write_text(target, "replaced")
    assert target.read_text() == "replaced"
    assert [p.name for p in target.parent.iterdir()] == ["data.json"]
