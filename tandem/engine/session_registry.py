"""Registry of open sessions.

One registry per running client. It creates and closes sessions, tracks
which one is selected, routes backend events to the owning controller and
fans out change notifications to UI listeners.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from tandem.adapters.events import StreamEvent
from tandem.engine.backend import AssistantBackend
from tandem.engine.config import EngineConfig
from tandem.engine.errors import InvalidStateError, NotFoundError
from tandem.engine.lifecycle import SessionState
from tandem.engine.message_store import MessageStore
from tandem.engine.permission_arbiter import PermissionArbiter
from tandem.engine.session_controller import PolicyCheck, SessionController
from tandem.shared.models.message import Message
from tandem.shared.models.session import ModelChoice, Session
from tandem.shared.services.archive import ArchiveGateway
from tandem.shared.services.checkpoints import CheckpointGateway

if TYPE_CHECKING:
    from tandem.adapters.permission_store import PermissionPolicyStore
    from tandem.adapters.event_bus import EventBus
    from tandem.shared.services.persistence import SessionPersistence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionUpdate:
    """Change notification delivered to registry listeners."""
    session_id: str
    # "created", "closed", "selected", "state", "messages", "usage", ...
    change: str
    state: SessionState | None = None
    is_processing: bool = False


UpdateListener = Callable[[SessionUpdate], None]


class SessionRegistry:
    """Owns every SessionController of this client."""

    def __init__(
        self,
        backend: AssistantBackend,
        checkpoints: CheckpointGateway,
        archives: ArchiveGateway,
        arbiter: PermissionArbiter | None = None,
        config: EngineConfig | None = None,
        *,
        policy_check: PolicyCheck | None = None,
        policy_store: PermissionPolicyStore | None = None,
        persistence: SessionPersistence | None = None,
    ) -> None:
        self._backend = backend
        self._checkpoints = checkpoints
        self._archives = archives
        self._arbiter = arbiter or PermissionArbiter()
        self._config = config or EngineConfig()
        self._policy_store = policy_store
        if policy_check is None and policy_store is not None:
            policy_check = policy_store.lookup
        self._policy_check = policy_check
        self._persistence = persistence
        self._controllers: dict[str, SessionController] = {}
        self._active_id: str | None = None
        self._listeners: list[UpdateListener] = []

    # ── Lookup ─────────────────────────────────────────────────────

    @property
    def arbiter(self) -> PermissionArbiter:
        return self._arbiter

    @property
    def sessions(self) -> list[Session]:
        return [c.session for c in self._controllers.values()]

    @property
    def controllers(self) -> list[SessionController]:
        return list(self._controllers.values())

    @property
    def active(self) -> SessionController | None:
        if self._active_id is None:
            return None
        return self._controllers.get(self._active_id)

    def get(self, session_id: str) -> SessionController:
        controller = self._controllers.get(session_id)
        if controller is None:
            raise NotFoundError("Session", session_id)
        return controller

    def session(self, session_id: str) -> Session:
        """Session record lookup, handed to the gateways."""
        return self.get(session_id).session

    # ── Lifecycle ──────────────────────────────────────────────────

    def create(
        self,
        working_directory: str,
        model: ModelChoice | str | None = None,
        name: str | None = None,
    ) -> SessionController:
        session = Session(
            working_directory=working_directory,
            name=name or "",
            model=ModelChoice.parse(model or self._config.default_model),
        )
        controller = self._add(session, [])
        logger.info(
            "Created session %s (%s) in %s", session.id[:8], session.name, working_directory
        )
        self._emit(controller, "created")
        self.select(session.id)
        return controller

    def select(self, session_id: str) -> SessionController:
        controller = self.get(session_id)
        previous = self.active
        if previous is not None and previous is not controller:
            previous.session.is_active = False
        self._active_id = session_id
        controller.session.is_active = True
        controller.session.touch()
        self._emit(controller, "selected")
        return controller

    async def close(self, session_id: str) -> None:
        """Stop the session's generation, withdraw its requests, forget it."""
        controller = self.get(session_id)
        await controller.shutdown()
        self._controllers.pop(session_id, None)
        controller.session.is_active = False
        if self._active_id == session_id:
            remaining = list(self._controllers)
            self._active_id = remaining[-1] if remaining else None
            if self._active_id is not None:
                self._controllers[self._active_id].session.is_active = True
        if self._persistence is not None:
            try:
                self._persistence.delete(session_id)
            except OSError:
                logger.warning("Failed to delete snapshot of session %s", session_id[:8])
        logger.info("Closed session %s", session_id[:8])
        self._emit(controller, "closed")

    def rename(self, session_id: str, name: str) -> Session:
        controller = self.get(session_id)
        name = (name or "").strip()
        if not name:
            raise InvalidStateError(session_id, "rename session", "name is empty")
        controller.session.name = name
        controller.session.touch()
        logger.info("Renamed session %s to %s", session_id[:8], name)
        self._emit(controller, "renamed")
        return controller.session

    async def close_all(self) -> None:
        for session_id in list(self._controllers):
            await self.close(session_id)

    # ── Permission rules ───────────────────────────────────────────

    def permission_rules(self, session_id: str) -> dict[str, list[str]]:
        """Saved allow and deny patterns of the session's workspace."""
        workspace = self.session(session_id).working_directory
        if self._policy_store is None:
            return {"allow": [], "deny": []}
        return self._policy_store.rules(workspace)

    def remove_permission_rule(self, session_id: str, pattern: str) -> bool:
        """Forget a saved pattern. Matching requests will ask again."""
        controller = self.get(session_id)
        if self._policy_store is None:
            return False
        removed = self._policy_store.remove_pattern(
            controller.session.working_directory, pattern
        )
        if removed:
            self._emit(controller, "settings")
        return removed

    # ── Event routing ──────────────────────────────────────────────

    async def dispatch(self, session_id: str, event: StreamEvent) -> bool:
        """Route a backend event. Unknown or closed sessions drop it."""
        controller = self._controllers.get(session_id)
        if controller is None:
            logger.warning(
                "Dropping %s for unknown session %s", event.event_type, session_id[:8]
            )
            return False
        return await controller.handle_event(event)

    async def consume(self, bus: EventBus) -> None:
        """Route events from a bus until it is closed."""
        async for event in bus.consume():
            try:
                await self.dispatch(event.session_id, event)
            except Exception:
                logger.exception(
                    "Error dispatching %s to session %s",
                    event.event_type, event.session_id[:8],
                )

    # ── Listeners ──────────────────────────────────────────────────

    def add_listener(self, listener: UpdateListener) -> Callable[[], None]:
        """Subscribe to updates. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _on_controller_change(self, session_id: str, change: str) -> None:
        controller = self._controllers.get(session_id)
        if controller is not None:
            self._emit(controller, change)

    def _emit(self, controller: SessionController, change: str) -> None:
        update = SessionUpdate(
            session_id=controller.id,
            change=change,
            state=controller.state,
            is_processing=controller.is_processing,
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Session listener failed on %s", change)

    # ── Persistence ────────────────────────────────────────────────

    def save_all(self) -> int:
        """Snapshot every open session. Returns how many were written."""
        if self._persistence is None:
            return 0
        saved = 0
        for controller in self._controllers.values():
            try:
                self._persistence.save(controller.session, controller.store.snapshot())
                saved += 1
            except OSError:
                logger.exception("Failed to save session %s", controller.id[:8])
        try:
            self._persistence.prune(set(self._controllers))
            self._persistence.save_active(self._active_id)
        except OSError:
            logger.exception("Failed to update session index")
        return saved

    def restore(self) -> list[SessionController]:
        """Re-open sessions saved by save_all(). All come back idle."""
        if self._persistence is None:
            return []
        restored: list[SessionController] = []
        for session, messages in self._persistence.load_all():
            if session.id in self._controllers:
                continue
            session.is_processing = False
            session.is_active = False
            controller = self._add(session, messages)
            restored.append(controller)
            self._emit(controller, "created")

        active_id = self._persistence.load_active()
        if active_id in self._controllers:
            self.select(active_id)
        elif restored and self._active_id is None:
            self.select(restored[-1].id)
        logger.info("Restored %d session(s)", len(restored))
        return restored

    def _add(self, session: Session, messages: list[Message]) -> SessionController:
        controller = SessionController(
            session,
            self._backend,
            self._checkpoints,
            self._archives,
            self._arbiter,
            self._config,
            store=MessageStore(messages),
            policy_check=self._policy_check,
            on_change=self._on_controller_change,
        )
        self._controllers[session.id] = controller
        return controller
