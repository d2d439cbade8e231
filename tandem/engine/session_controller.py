"""Per-session conversation controller.

Owns one session's message log and counters and drives its state machine
(see lifecycle). UI actions arrive as method calls; backend output arrives
as typed stream events through handle_event().

Ordering rules:
- the session state is updated before every await, so a concurrent call
  sees the new state and is rejected with InvalidStateError;
- a generation's CancellationToken is checked before every append;
- while a generation waits on a permission answer its events are
  buffered, then replayed in arrival order once the answer is in.
"""
from __future__ import annotations

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable

from tandem.adapters.events import (
    AssistantDelta,
    PermissionRequested,
    SessionLinked,
    StreamComplete,
    StreamEvent,
    SystemNotice,
    ThinkingDelta,
    ToolInvoked,
    ToolResult,
    UserEcho,
    _EVENT_MAP,
)
from tandem.adapters.events import StreamError as StreamErrorEvent
from tandem.engine.backend import AssistantBackend, GenerationRequest
from tandem.engine.config import EngineConfig
from tandem.engine.errors import BusyError, InvalidStateError, StreamError
from tandem.engine.generation import Generation
from tandem.engine.lifecycle import (
    PROCESSING_STATES,
    GenerationOutcome,
    SessionState,
    validate_transition,
)
from tandem.engine.message_store import MessageStore
from tandem.engine.permission_arbiter import PermissionArbiter, PermissionDecision
from tandem.shared.models.history import ArchivedConversation, Checkpoint, CheckpointStatus
from tandem.shared.models.message import (
    Message,
    MessageType,
    PermissionRequest,
    PermissionState,
    TokenCount,
    permission_request_message,
    tool_message,
    tool_result_message,
    user_message,
)
from tandem.shared.models.session import (
    ContextUsage,
    ModelChoice,
    Session,
    TokenUsage,
    estimate_cost,
)
from tandem.shared.services.archive import ArchiveGateway
from tandem.shared.services.checkpoints import CheckpointGateway

logger = logging.getLogger(__name__)

# Longest user-message excerpt used as a checkpoint label.
CHECKPOINT_LABEL_CHARS = 50

# Called as (session_id, change) after every visible change.
ChangeListener = Callable[[str, str], None]
# Saved rule lookup for (workspace, tool, path, input): True allows,
# False denies, None means ask.
PolicyCheck = Callable[[str, str, str, "dict | None"], "bool | None"]

_PERMISSION_VERBS = {
    "Read": "Read file",
    "Write": "Write file",
    "Edit": "Edit file",
    "Bash": "Execute command",
    "Glob": "Search files",
    "Grep": "Search content",
    "WebFetch": "Fetch URL",
    "NotebookEdit": "Edit notebook",
}


def describe_permission(request: PermissionRequest) -> str:
    verb = _PERMISSION_VERBS.get(request.tool, request.tool)
    target = request.path or str((request.tool_input or {}).get("command") or "")
    return f"{verb}: {target}" if target else verb


def checkpoint_label(text: str) -> str:
    label = " ".join(text.split())
    if len(label) > CHECKPOINT_LABEL_CHARS:
        label = label[:CHECKPOINT_LABEL_CHARS - 3] + "..."
    return label


class SessionController:
    """Drives one session: sends, stops, archives and stream events."""

    def __init__(
        self,
        session: Session,
        backend: AssistantBackend,
        checkpoints: CheckpointGateway,
        archives: ArchiveGateway,
        arbiter: PermissionArbiter,
        config: EngineConfig | None = None,
        *,
        store: MessageStore | None = None,
        policy_check: PolicyCheck | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        self.session = session
        self.store = store if store is not None else MessageStore()
        self._backend = backend
        self._checkpoints = checkpoints
        self._archives = archives
        self._arbiter = arbiter
        self._config = config or EngineConfig()
        self._policy_check = policy_check
        self._on_change = on_change

        self._state = SessionState.IDLE
        self._generation: Generation | None = None
        self._last_outcome: GenerationOutcome | None = None
        self.session.is_processing = False

    # ── Read-only views ────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._state in PROCESSING_STATES

    @property
    def generation(self) -> Generation | None:
        return self._generation

    @property
    def last_outcome(self) -> GenerationOutcome | None:
        return self._last_outcome

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.store.messages

    def context_usage(self) -> ContextUsage:
        return self.session.context_usage()

    # ── UI operations ──────────────────────────────────────────────

    async def send_message(self, text: str) -> Message:
        """Append a user message and start a generation for it."""
        if not text or not text.strip():
            raise InvalidStateError(self.id, "send message", "message is empty")
        self._require_idle("send message")
        self._arbiter.forget(self.id)

        message = user_message(text)
        self.store.append(message)
        generation = Generation(session_id=self.id)
        self._generation = generation
        self._set_state(SessionState.PROCESSING)
        self.session.draft_input_text = ""
        self.session.touch()
        self._notify("messages")
        logger.info(
            "Session %s: generation %s started (model=%s)",
            self.id[:8], generation.id, self.session.model.value,
        )

        if self._config.checkpoint_on_send:
            await self._checkpoint_before_send(text)
        if generation.token.cancelled:
            return message

        request = GenerationRequest(
            session_id=self.id,
            generation_id=generation.id,
            prompt=text,
            model=self.session.model,
            working_directory=self.session.working_directory,
            backend_session_id=self.session.backend_session_id,
            yolo_mode=self.session.yolo_mode,
        )
        try:
            await self._backend.start(request)
        except StreamError as exc:
            logger.warning("Session %s: backend refused to start: %s", self.id[:8], exc.message)
            if self._generation is generation and not generation.token.cancelled:
                self._fail(generation, exc.message or "Unknown stream error")
        except Exception as exc:
            logger.exception("Session %s: backend failed to start", self.id[:8])
            if self._generation is generation and not generation.token.cancelled:
                self._fail(generation, f"Failed to start assistant: {exc}")
        return message

    async def stop_process(self) -> None:
        """Cancel the active generation. No-op when idle."""
        generation = self._generation
        if generation is None or generation.token.cancelled:
            return
        generation.token.cancel("stopped")
        self._withdraw_permissions(generation)
        logger.info("Session %s: stopping generation %s", self.id[:8], generation.id)
        try:
            await self._backend.cancel(self.id, generation.id)
        except Exception:
            logger.exception("Session %s: backend cancel failed", self.id[:8])
        finally:
            self._finish(generation, GenerationOutcome.STOPPED)

    def update_model(self, model: ModelChoice | str) -> None:
        """Switch the model used by subsequent sends."""
        if self.is_processing:
            raise InvalidStateError(self.id, "change model", "a response is in progress")
        self.session.model = ModelChoice.parse(model)
        self._notify("model")

    def set_draft(self, text: str) -> None:
        self.session.draft_input_text = text
        self._notify("draft")

    def toggle_yolo_mode(self) -> bool:
        self.session.yolo_mode = not self.session.yolo_mode
        logger.info(
            "Session %s: yolo mode %s",
            self.id[:8], "on" if self.session.yolo_mode else "off",
        )
        self._notify("settings")
        return self.session.yolo_mode

    async def start_new_chat(self) -> str | None:
        """Archive the conversation (if any) and start an empty one.

        Returns the new archive key, or None when there was nothing to
        archive. A failed save leaves the conversation untouched.
        """
        self._require_idle("start a new chat")
        key: str | None = None
        if len(self.store):
            self._set_state(SessionState.ARCHIVING)
            try:
                key = await self._archives.save(
                    self.id, self.store.snapshot(), self.session.backend_session_id
                )
            finally:
                self._set_state(SessionState.IDLE)

        self.store.clear()
        self.session.draft_input_text = ""
        self.session.current_archive_key = None
        self.session.backend_session_id = None
        self.session.reset_usage()
        self.session.touch()
        self._notify("messages")
        return key

    async def load_archived_conversation(self, key: str) -> None:
        """Replace the conversation with an archived one."""
        self._require_idle("load an archived conversation")
        self._set_state(SessionState.LOADING)
        try:
            messages = await self._archives.load(self.id, key)
            resume_id = await self._archives.resume_id(self.id, key)
        finally:
            self._set_state(SessionState.IDLE)

        self.store.replace_all(messages)
        self.session.current_archive_key = key
        self.session.backend_session_id = resume_id
        self.session.reset_usage()
        self.session.touch()
        logger.info(
            "Session %s: loaded archive %s (%d messages)",
            self.id[:8], key, len(messages),
        )
        self._notify("messages")

    async def list_archives(self) -> list[ArchivedConversation]:
        return await self._archives.list(self.id)

    async def respond_to_permission(
        self,
        request_id: str,
        allowed: bool,
        always_allow: bool = False,
        always_deny: bool = False,
    ) -> PermissionDecision:
        """Answer a permission request and resume the paused generation.

        *always_allow* (with allowed) or *always_deny* (without) also saves
        a workspace rule so matching requests are answered automatically.
        """
        decision = self._arbiter.resolve(
            self.id, request_id, allowed, always_allow=always_allow, always_deny=always_deny
        )
        generation = self._generation

        target_id = None
        if generation is not None:
            target_id = generation.permission_targets.pop(request_id, None)
        if target_id is not None:
            target = self.store.get(target_id)
            if target is not None and target.tool_metadata.pending_permission:
                self.store.resolve_tool_permission(target_id, allowed)
        self._notify("messages")

        if generation is None or generation.token.cancelled:
            return decision

        resumes = generation.pending_request_id == request_id
        if resumes:
            # Keep buffering until everything held back has been replayed.
            generation.pending_request_id = None
            generation.replaying = True
            self._set_state(SessionState.PROCESSING)

        await self._forward_decision(generation, request_id, decision)
        if resumes:
            await self._replay(generation)
        return decision

    async def checkpoint_status(self) -> CheckpointStatus:
        return await self._checkpoints.get_status(self.id)

    async def list_checkpoints(self) -> list[Checkpoint]:
        return await self._checkpoints.list_checkpoints(self.id)

    async def restore_checkpoint(self, checkpoint_hash: str) -> None:
        """Roll the workspace back. Sends, new chats and loads wait it out."""
        if self._state is SessionState.RESTORING:
            raise BusyError(self.id, "restore checkpoint")
        self._require_idle("restore a checkpoint")
        self._set_state(SessionState.RESTORING)
        try:
            await self._checkpoints.restore_checkpoint(self.id, checkpoint_hash)
        finally:
            self._set_state(SessionState.IDLE)
        self._notify("checkpoints")

    async def shutdown(self) -> None:
        """Stop any generation and drop permission bookkeeping."""
        await self.stop_process()
        self._arbiter.withdraw(self.id)
        self._arbiter.forget(self.id)

    # ── Stream events ──────────────────────────────────────────────

    async def handle_event(self, event: StreamEvent) -> bool:
        """Apply one backend event. Returns False when it was dropped."""
        generation = self._generation
        if generation is None or generation.token.cancelled or not generation.owns(event):
            logger.debug(
                "Session %s: dropping %s (generation=%s, active=%s)",
                self.id[:8], event.event_type, event.generation_id,
                generation.id if generation else None,
            )
            return False

        if isinstance(event, StreamErrorEvent):
            self._fail(generation, event.message or "Unknown stream error")
            return True
        if generation.pending_request_id is not None or generation.replaying:
            generation.buffered.append(event)
            return True
        await self._apply(generation, event)
        return True

    async def _apply(self, generation: Generation, event: StreamEvent) -> None:
        handler = _HANDLERS.get(type(event))
        if handler is None:
            logger.warning(
                "Session %s: no handler for event %s", self.id[:8], event.event_type
            )
            return
        await handler(self, generation, event)

    async def _replay(self, generation: Generation) -> None:
        try:
            while (
                generation.buffered
                and self._generation is generation
                and generation.pending_request_id is None
                and not generation.token.cancelled
            ):
                await self._apply(generation, generation.buffered.popleft())
        finally:
            generation.replaying = False

    async def _on_user_echo(self, generation: Generation, event: UserEcho) -> None:
        # Already appended locally by send_message().
        return

    async def _on_assistant_delta(self, generation: Generation, event: AssistantDelta) -> None:
        message = self._stream_text(generation, MessageType.ASSISTANT, event.text, event.block_id)
        if message is not None and (event.input_tokens or event.output_tokens):
            message.metadata.tokens = TokenCount(
                input=max(0, event.input_tokens or 0),
                output=max(0, event.output_tokens or 0),
            )

    async def _on_thinking_delta(self, generation: Generation, event: ThinkingDelta) -> None:
        self._stream_text(generation, MessageType.THINKING, event.text, event.block_id)

    async def _on_tool_invoked(self, generation: Generation, event: ToolInvoked) -> None:
        message = tool_message(event.tool_name, event.content)
        if self._append(generation, message):
            generation.tool_messages.append(message.id)

    async def _on_tool_result(self, generation: Generation, event: ToolResult) -> None:
        if not event.is_error and event.tool_name in self._config.quiet_tools:
            generation.close_blocks()
            return
        self._append(
            generation,
            tool_result_message(event.tool_name, event.content, event.is_error),
        )

    async def _on_permission_requested(
        self, generation: Generation, event: PermissionRequested
    ) -> None:
        request = PermissionRequest(
            id=event.request_id or uuid.uuid4().hex[:12],
            tool=event.tool,
            path=event.path,
            tool_input=event.tool_input,
        )
        verdict = self._saved_verdict(request)
        if verdict is not None:
            logger.info(
                "Session %s: auto-%s %s (%s)", self.id[:8],
                "approved" if verdict else "denied", request.tool, request.path,
            )
            if not verdict:
                self._mark_denied(generation, request.tool)
            await self._forward_decision(
                generation, request.id, PermissionDecision(request.id, allowed=verdict)
            )
            return
        if generation.token.cancelled:
            return

        try:
            self._arbiter.open(self.id, request, workspace=self.session.working_directory)
        except ValueError:
            logger.warning(
                "Session %s: ignoring duplicate permission request %s", self.id[:8], request.id
            )
            return

        target = self._pending_target(generation, request.tool)
        if target is None:
            target = tool_message(request.tool, request.path or request.tool)
            self._append(generation, target)
            generation.tool_messages.append(target.id)
        self.store.mark_tool_pending(target.id)
        generation.permission_targets[request.id] = target.id
        self._append(
            generation, permission_request_message(request, describe_permission(request))
        )
        generation.pending_request_id = request.id
        self._set_state(SessionState.AWAITING_PERMISSION)

    async def _on_system_notice(self, generation: Generation, event: SystemNotice) -> None:
        if event.text:
            self._append(generation, Message(type=MessageType.SYSTEM, content=event.text))

    async def _on_session_linked(self, generation: Generation, event: SessionLinked) -> None:
        if event.backend_session_id:
            self.session.backend_session_id = event.backend_session_id
            self._notify("settings")

    async def _on_stream_complete(self, generation: Generation, event: StreamComplete) -> None:
        usage = TokenUsage(
            input_tokens=self._clamp("input_tokens", event.input_tokens),
            output_tokens=self._clamp("output_tokens", event.output_tokens),
            cache_creation_tokens=self._clamp(
                "cache_creation_tokens", event.cache_creation_tokens
            ),
            cache_read_tokens=self._clamp("cache_read_tokens", event.cache_read_tokens),
        )
        self.session.token_usage.add(usage)
        cost = self._generation_cost(event.cost, usage)
        self.session.total_cost += cost
        logger.info(
            "Session %s: generation %s completed (in=%d out=%d cost=%s)",
            self.id[:8], generation.id, usage.input_tokens, usage.output_tokens, cost,
        )
        self._notify("usage")
        self._finish(generation, GenerationOutcome.COMPLETED)

    # ── Internals ──────────────────────────────────────────────────

    def _require_idle(self, operation: str) -> None:
        if self._state is not SessionState.IDLE:
            reason = (
                "a response is in progress"
                if self.is_processing
                else f"session is {self._state.value}"
            )
            raise InvalidStateError(self.id, operation, reason)

    def _set_state(self, target: SessionState) -> None:
        validate_transition(self._state, target)
        logger.debug("Session %s: %s -> %s", self.id[:8], self._state.value, target.value)
        self._state = target
        self.session.is_processing = target in PROCESSING_STATES
        self._notify("state")

    def _notify(self, change: str) -> None:
        if self._on_change is not None:
            self._on_change(self.id, change)

    def _append(self, generation: Generation, message: Message) -> bool:
        if generation.token.cancelled or self._generation is not generation:
            return False
        generation.close_blocks()
        if not self.store.append(message):
            return False
        self._notify("messages")
        return True

    def _stream_text(
        self,
        generation: Generation,
        msg_type: MessageType,
        text: str,
        block_id: str | None,
    ) -> Message | None:
        if not text or generation.token.cancelled:
            return None
        open_block = generation.open_blocks.get(msg_type)
        last = self.store.last
        if (
            open_block is not None
            and open_block[0] == block_id
            and last is not None
            and last.id == open_block[1]
        ):
            self.store.extend_content(last.id, text)
            self._notify("messages")
            return last

        message = Message(type=msg_type, content=text)
        if not self._append(generation, message):
            return None
        generation.open_blocks[msg_type] = (block_id, message.id)
        return message

    def _pending_target(self, generation: Generation, tool: str) -> Message | None:
        """Newest tool message of this generation still awaiting a decision."""
        for message_id in reversed(generation.tool_messages):
            message = self.store.get(message_id)
            if (
                message is not None
                and message.tool_metadata.tool_name == tool
                and message.tool_metadata.permission_state is PermissionState.NONE
            ):
                return message
        return None

    def _saved_verdict(self, request: PermissionRequest) -> bool | None:
        """Answer without asking, or None. Deny rules beat yolo mode."""
        verdict = None
        if self._policy_check is not None:
            try:
                verdict = self._policy_check(
                    self.session.working_directory, request.tool, request.path, request.tool_input
                )
            except OSError:
                logger.warning("Session %s: permission policy lookup failed", self.id[:8])
        if verdict is False:
            return False
        if self.session.yolo_mode or request.tool in self._config.auto_approve_tools:
            return True
        return True if verdict else None

    def _mark_denied(self, generation: Generation, tool: str) -> None:
        target = self._pending_target(generation, tool)
        if target is None:
            return
        self.store.mark_tool_pending(target.id)
        self.store.resolve_tool_permission(target.id, False)
        self._notify("messages")

    async def _forward_decision(
        self, generation: Generation, request_id: str, decision: PermissionDecision
    ) -> None:
        try:
            await self._backend.answer_permission(self.id, request_id, decision)
        except StreamError as exc:
            logger.warning(
                "Session %s: backend rejected permission answer: %s", self.id[:8], exc.message
            )
            if self._generation is generation and not generation.token.cancelled:
                self._fail(generation, exc.message or "Unknown stream error")
        except Exception as exc:
            logger.exception("Session %s: failed to deliver permission answer", self.id[:8])
            if self._generation is generation and not generation.token.cancelled:
                self._fail(generation, f"Failed to deliver permission answer: {exc}")

    def _withdraw_permissions(self, generation: Generation) -> None:
        for withdrawal in self._arbiter.withdraw(self.id):
            target_id = generation.permission_targets.pop(withdrawal.request_id, None)
            target = self.store.get(target_id) if target_id else None
            if target is not None and target.tool_metadata.pending_permission:
                self.store.resolve_tool_permission(target.id, False)
        generation.pending_request_id = None
        generation.buffered.clear()

    def _fail(self, generation: Generation, message: str) -> None:
        logger.error("Session %s: generation %s failed: %s", self.id[:8], generation.id, message)
        self._append(generation, Message(type=MessageType.ERROR, content=message))
        generation.token.cancel("errored")
        self._withdraw_permissions(generation)
        self._finish(generation, GenerationOutcome.ERRORED)

    def _finish(self, generation: Generation, outcome: GenerationOutcome) -> None:
        if self._generation is not generation:
            return
        generation.close_blocks()
        generation.buffered.clear()
        self._generation = None
        self._last_outcome = outcome
        self._set_state(SessionState.IDLE)
        self.session.touch()
        logger.info(
            "Session %s: generation %s %s", self.id[:8], generation.id, outcome.value
        )

    async def _checkpoint_before_send(self, text: str) -> None:
        try:
            created = await self._checkpoints.create_checkpoint(
                self.id, checkpoint_label(text)
            )
        except Exception:
            logger.warning(
                "Session %s: checkpoint before send failed", self.id[:8], exc_info=True
            )
            return
        if created:
            self._notify("checkpoints")

    def _clamp(self, name: str, value: int | None) -> int:
        value = int(value or 0)
        if value < 0:
            logger.warning(
                "Session %s: negative %s (%d) reported, using 0", self.id[:8], name, value
            )
            return 0
        return value

    def _generation_cost(self, reported: str | float | None, usage: TokenUsage) -> Decimal:
        if reported is not None:
            try:
                cost = Decimal(str(reported))
            except InvalidOperation:
                logger.warning("Session %s: bad cost %r reported", self.id[:8], reported)
            else:
                if cost.is_finite() and cost >= 0:
                    return cost
                logger.warning("Session %s: bad cost %r reported", self.id[:8], reported)
        return estimate_cost(self.session.model, usage.input_tokens, usage.output_tokens)


Handler = Callable[[SessionController, Generation, StreamEvent], Awaitable[None]]

_HANDLERS: dict[type[StreamEvent], Handler] = {
    UserEcho: SessionController._on_user_echo,
    AssistantDelta: SessionController._on_assistant_delta,
    ThinkingDelta: SessionController._on_thinking_delta,
    ToolInvoked: SessionController._on_tool_invoked,
    ToolResult: SessionController._on_tool_result,
    PermissionRequested: SessionController._on_permission_requested,
    SystemNotice: SessionController._on_system_notice,
    SessionLinked: SessionController._on_session_linked,
    StreamComplete: SessionController._on_stream_complete,
}

# Stream errors bypass the buffer and are handled in handle_event().
_unhandled = set(_EVENT_MAP.values()) - set(_HANDLERS) - {StreamErrorEvent}
if _unhandled:
    raise RuntimeError(
        "Stream events without a handler: "
        + ", ".join(sorted(cls.__name__ for cls in _unhandled))
    )
