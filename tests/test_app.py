from __future__ import annotations

import json
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from tandem.adapters.events import PermissionRequested, StreamComplete
from tandem.app import build_event_bus, build_registry, configure_logging, main
from tandem.engine.backend import AssistantBackend
from tandem.engine.config import EngineConfig
from tandem.shared.models.session import Session
from tandem.shared.services.persistence import SessionPersistence


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _backend() -> MagicMock:
    backend = MagicMock(spec=AssistantBackend)
    backend.start = AsyncMock()
    backend.cancel = AsyncMock()
    backend.answer_permission = AsyncMock()
    return backend


def test_configure_logging_writes_file(tmp_path, restore_root_logging) -> None:
    log_file = configure_logging("DEBUG", tmp_path / "logs")
    logging.getLogger("tandem.test").info("hello %s", "log")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_file == tmp_path / "logs" / "tandem.log"
    assert "hello log" in log_file.read_text()
    assert logging.getLogger().level == logging.DEBUG


def test_event_bus_uses_configured_size(tmp_path) -> None:
    bus = build_event_bus(EngineConfig(data_dir=tmp_path, event_queue_size=3))
    assert bus._queue.maxsize == 3


@pytest.mark.asyncio
async def test_always_allow_is_remembered_for_the_workspace(tmp_path) -> None:
    workspace = tmp_path / "project"
    workspace.mkdir()
    config = EngineConfig(data_dir=tmp_path / "data", checkpoint_on_send=False)
    registry = build_registry(_backend(), config)
    controller = registry.create(str(workspace))

    await controller.send_message("run the tests")
    await controller.handle_event(PermissionRequested(
        request_id="p1", tool="Bash", tool_input={"command": "pytest -q"},
    ))
    await controller.respond_to_permission("p1", True, always_allow=True)
    await controller.handle_event(StreamComplete())

    settings = json.loads((workspace / ".claude" / "settings.local.json").read_text())
    assert settings["permissions"]["allow"] == ["Bash(pytest:*)"]

    # The next request for the same command is approved without pausing.
    await controller.send_message("again")
    await controller.handle_event(PermissionRequested(
        request_id="p2", tool="Bash", tool_input={"command": "pytest tests/"},
    ))
    assert not registry.arbiter.outstanding(controller.id)


@pytest.mark.asyncio
async def test_always_deny_is_remembered_and_removable(tmp_path) -> None:
    workspace = tmp_path / "project"
    workspace.mkdir()
    backend = _backend()
    config = EngineConfig(data_dir=tmp_path / "data", checkpoint_on_send=False)
    registry = build_registry(backend, config)
    controller = registry.create(str(workspace))

    await controller.send_message("publish")
    await controller.handle_event(PermissionRequested(
        request_id="p1", tool="Bash", tool_input={"command": "npm publish"},
    ))
    await controller.respond_to_permission("p1", False, always_deny=True)
    await controller.handle_event(StreamComplete())
    assert registry.permission_rules(controller.id)["deny"] == ["Bash(npm:*)"]

    await controller.send_message("publish again")
    await controller.handle_event(PermissionRequested(
        request_id="p2", tool="Bash", tool_input={"command": "npm publish --tag next"},
    ))
    request_id, decision = backend.answer_permission.await_args.args[1:]
    assert request_id == "p2" and decision.allowed is False
    assert not registry.arbiter.outstanding(controller.id)
    await controller.handle_event(StreamComplete())

    assert registry.remove_permission_rule(controller.id, "Bash(npm:*)")
    settings = json.loads((workspace / ".claude" / "settings.local.json").read_text())
    assert settings["permissions"]["deny"] == []


def test_main_lists_saved_sessions(tmp_path, monkeypatch, capsys, restore_root_logging) -> None:
    monkeypatch.setenv("TANDEM_DATA_DIR", str(tmp_path))
    SessionPersistence(tmp_path / "sessions").save(Session(working_directory="/work/app"), [])

    assert main(["--list"]) == 0

    out = capsys.readouterr().out
    assert "/work/app" in out
    assert "0 messages" in out


def test_main_with_nothing_saved(tmp_path, monkeypatch, capsys, restore_root_logging) -> None:
    monkeypatch.setenv("TANDEM_DATA_DIR", str(tmp_path))
    assert main(["--list"]) == 0
    assert "No saved sessions." in capsys.readouterr().out
