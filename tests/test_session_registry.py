from __future__ import annotations

import pytest
from unittest.mock import AsyncMock, MagicMock

from tandem.adapters.event_bus import EventBus
from tandem.adapters.events import AssistantDelta, PermissionRequested, StreamComplete
from tandem.engine.backend import AssistantBackend
from tandem.engine.config import EngineConfig
from tandem.adapters.permission_store import PermissionPolicyStore
from tandem.engine.errors import AlreadyResolvedError, InvalidStateError, NotFoundError
from tandem.engine.lifecycle import SessionState
from tandem.engine.permission_arbiter import PermissionRule
from tandem.engine.session_registry import SessionRegistry, SessionUpdate
from tandem.shared.models.message import MessageType
from tandem.shared.models.session import ModelChoice
from tandem.shared.services.archive import ArchiveGateway
from tandem.shared.services.checkpoints import CheckpointGateway
from tandem.shared.services.persistence import SessionPersistence


def _registry(
    tmp_path,
    persistence: SessionPersistence | None = None,
    policy_store: PermissionPolicyStore | None = None,
) -> SessionRegistry:
    backend = MagicMock(spec=AssistantBackend)
    backend.start = AsyncMock()
    backend.cancel = AsyncMock()
    backend.answer_permission = AsyncMock()
    checkpoints = MagicMock(spec=CheckpointGateway)
    checkpoints.create_checkpoint = AsyncMock(return_value="abc")
    return SessionRegistry(
        backend,
        checkpoints,
        MagicMock(spec=ArchiveGateway),
        config=EngineConfig(data_dir=tmp_path, default_model="sonnet"),
        persistence=persistence,
        policy_store=policy_store,
    )


def test_create_selects_new_session(tmp_path) -> None:
    registry = _registry(tmp_path)
    first = registry.create(str(tmp_path / "alpha"))
    second = registry.create(str(tmp_path / "beta"), model="opus", name="Beta")

    assert registry.active is second
    assert not first.session.is_active
    assert second.session.is_active
    assert first.session.name == "alpha"
    assert first.session.model is ModelChoice.SONNET
    assert second.session.model is ModelChoice.OPUS

    registry.select(first.id)
    assert registry.active is first
    assert not second.session.is_active


def test_unknown_session_lookup(tmp_path) -> None:
    registry = _registry(tmp_path)
    with pytest.raises(NotFoundError):
        registry.get("nope")
    with pytest.raises(NotFoundError):
        registry.select("nope")


def test_rename_updates_session_and_notifies(tmp_path) -> None:
    registry = _registry(tmp_path)
    controller = registry.create(str(tmp_path / "alpha"))
    updates: list[SessionUpdate] = []
    registry.add_listener(updates.append)

    session = registry.rename(controller.id, "  Parser rewrite ")

    assert session.name == "Parser rewrite"
    assert [u.change for u in updates] == ["renamed"]
    with pytest.raises(InvalidStateError):
        registry.rename(controller.id, "   ")
    assert controller.session.name == "Parser rewrite"
    with pytest.raises(NotFoundError):
        registry.rename("nope", "x")


@pytest.mark.asyncio
async def test_dispatch_routes_by_session_and_drops_unknown(tmp_path) -> None:
    registry = _registry(tmp_path)
    a = registry.create(str(tmp_path))
    b = registry.create(str(tmp_path))
    await a.send_message("hi")

    gen = a.generation.id
    assert await registry.dispatch(a.id, AssistantDelta(session_id=a.id, generation_id=gen, text="for a"))
    assert await registry.dispatch("ghost", AssistantDelta(session_id="ghost", text="x")) is False

    assert a.messages[-1].content == "for a"
    assert len(b.messages) == 0


@pytest.mark.asyncio
async def test_sessions_progress_independently(tmp_path) -> None:
    registry = _registry(tmp_path)
    a = registry.create(str(tmp_path))
    b = registry.create(str(tmp_path))
    await a.send_message("one")
    await b.send_message("two")

    await registry.dispatch(a.id, PermissionRequested(
        session_id=a.id, generation_id=a.generation.id, request_id="p1", tool="Bash",
        tool_input={"command": "make"},
    ))
    await registry.dispatch(b.id, StreamComplete(session_id=b.id, generation_id=b.generation.id))

    assert a.state is SessionState.AWAITING_PERMISSION
    assert b.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_close_withdraws_outstanding_requests(tmp_path) -> None:
    registry = _registry(tmp_path)
    a = registry.create(str(tmp_path))
    b = registry.create(str(tmp_path))
    await a.send_message("go")
    await registry.dispatch(a.id, PermissionRequested(
        session_id=a.id, generation_id=a.generation.id, request_id="p1", tool="Write",
        path="/x",
    ))

    await registry.close(a.id)

    assert registry.arbiter.outstanding(a.id) == []
    assert registry.active is b
    assert b.session.is_active
    with pytest.raises(NotFoundError):
        registry.get(a.id)
    # Late events for the closed session are dropped.
    assert await registry.dispatch(a.id, StreamComplete(session_id=a.id)) is False


@pytest.mark.asyncio
async def test_response_after_close_is_rejected(tmp_path) -> None:
    registry = _registry(tmp_path)
    a = registry.create(str(tmp_path))
    await a.send_message("go")
    await registry.dispatch(a.id, PermissionRequested(
        session_id=a.id, generation_id=a.generation.id, request_id="p1", tool="Write",
    ))
    await registry.close_all()

    assert registry.active is None
    with pytest.raises((AlreadyResolvedError, NotFoundError)):
        registry.arbiter.resolve(a.id, "p1", True)


@pytest.mark.asyncio
async def test_listeners_receive_updates_and_can_unsubscribe(tmp_path) -> None:
    registry = _registry(tmp_path)
    updates: list[SessionUpdate] = []
    remove = registry.add_listener(updates.append)
    registry.add_listener(MagicMock(side_effect=RuntimeError("bad listener")))

    controller = registry.create(str(tmp_path))
    await controller.send_message("hello")

    changes = [u.change for u in updates]
    assert changes[:2] == ["created", "selected"]
    assert "messages" in changes
    assert any(u.change == "state" and u.is_processing for u in updates)

    remove()
    count = len(updates)
    registry.create(str(tmp_path))
    assert len(updates) == count


@pytest.mark.asyncio
async def test_consume_routes_bus_events(tmp_path) -> None:
    registry = _registry(tmp_path)
    controller = registry.create(str(tmp_path))
    await controller.send_message("hello")
    gen = controller.generation.id

    bus = EventBus()
    await bus.emit(AssistantDelta(session_id=controller.id, generation_id=gen, text="Hi"))
    await bus.emit(AssistantDelta(session_id="unknown", text="lost"))
    await bus.emit(StreamComplete(session_id=controller.id, generation_id=gen))
    bus.close()

    await registry.consume(bus)

    assert controller.state is SessionState.IDLE
    assert [m.type for m in controller.messages] == [MessageType.USER, MessageType.ASSISTANT]


@pytest.mark.asyncio
async def test_save_all_and_restore(tmp_path) -> None:
    persistence = SessionPersistence(tmp_path / "sessions")
    registry = _registry(tmp_path, persistence)
    a = registry.create(str(tmp_path / "alpha"))
    b = registry.create(str(tmp_path / "beta"))
    await a.send_message("kept")
    await registry.dispatch(a.id, StreamComplete(
        session_id=a.id, generation_id=a.generation.id, input_tokens=5, cost="0.5",
    ))
    # b is mid-generation when saved.
    await b.send_message("in flight")
    registry.select(a.id)

    assert registry.save_all() == 2

    fresh = _registry(tmp_path, persistence)
    restored = fresh.restore()

    assert {c.id for c in restored} == {a.id, b.id}
    assert fresh.active.id == a.id
    restored_a = fresh.get(a.id)
    assert [m.content for m in restored_a.messages] == ["kept"]
    assert str(restored_a.session.total_cost) == "0.5"
    restored_b = fresh.get(b.id)
    assert restored_b.state is SessionState.IDLE
    assert not restored_b.session.is_processing


@pytest.mark.asyncio
async def test_close_deletes_snapshot(tmp_path) -> None:
    persistence = SessionPersistence(tmp_path / "sessions")
    registry = _registry(tmp_path, persistence)
    a = registry.create(str(tmp_path))
    registry.save_all()
    assert persistence.list_sessions() == [a.id]

    await registry.close(a.id)
    assert persistence.list_sessions() == []


@pytest.mark.asyncio
async def test_permission_rules_are_listed_and_removable(tmp_path) -> None:
    workspace = tmp_path / "project"
    workspace.mkdir()
    store = PermissionPolicyStore()
    store.add_rule(PermissionRule(
        str(workspace), "Bash", tool_input={"command": "git push"}, deny=True,
    ))
    store.add_rule(PermissionRule(str(workspace), "Read"))
    registry = _registry(tmp_path, policy_store=store)
    controller = registry.create(str(workspace))

    assert registry.permission_rules(controller.id) == {
        "allow": ["Read(*)"],
        "deny": ["Bash(git:*)"],
    }

    # The saved deny rule answers without pausing.
    await controller.send_message("ship it")
    await controller.handle_event(PermissionRequested(
        request_id="p1", tool="Bash", tool_input={"command": "git push origin main"},
    ))
    assert controller.state is SessionState.PROCESSING
    assert not registry.arbiter.outstanding(controller.id)
    await controller.handle_event(StreamComplete())

    assert registry.remove_permission_rule(controller.id, "Bash(git:*)") is True
    assert registry.remove_permission_rule(controller.id, "Bash(git:*)") is False
    assert registry.permission_rules(controller.id)["deny"] == []

    await controller.send_message("ship it again")
    await controller.handle_event(PermissionRequested(
        request_id="p2", tool="Bash", tool_input={"command": "git push origin main"},
    ))
    assert controller.state is SessionState.AWAITING_PERMISSION


def test_permission_rules_without_a_store(tmp_path) -> None:
    registry = _registry(tmp_path)
    controller = registry.create(str(tmp_path))
    assert registry.permission_rules(controller.id) == {"allow": [], "deny": []}
    assert registry.remove_permission_rule(controller.id, "Read(*)") is False
