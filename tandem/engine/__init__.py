"""Session engine: per-session state machines, permissions and routing.

SessionController and SessionRegistry live in their own modules; they
depend on the gateway services, which in turn import from this package.
"""
from .config import EngineConfig
from .errors import (
    AlreadyResolvedError,
    BusyError,
    CheckpointError,
    InvalidStateError,
    NotFoundError,
    PersistFailedError,
    RestoreFailedError,
    SessionError,
    StreamError,
)
from .lifecycle import GenerationOutcome, SessionState
from .generation import CancellationToken, Generation
from .message_store import MessageStore
from .permission_arbiter import PermissionArbiter, PermissionDecision, PermissionRule
from .backend import AssistantBackend, GenerationRequest

__all__ = [
    "AlreadyResolvedError",
    "AssistantBackend",
    "BusyError",
    "CancellationToken",
    "CheckpointError",
    "EngineConfig",
    "Generation",
    "GenerationOutcome",
    "GenerationRequest",
    "InvalidStateError",
    "MessageStore",
    "NotFoundError",
    "PermissionArbiter",
    "PermissionDecision",
    "PermissionRule",
    "PersistFailedError",
    "RestoreFailedError",
    "SessionError",
    "SessionState",
    "StreamError",
]
