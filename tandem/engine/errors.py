"""Exception hierarchy for the session core.

Validation errors (InvalidStateError, NotFoundError, AlreadyResolvedError)
are raised before any mutation. Gateway errors (RestoreFailedError,
PersistFailedError, BusyError) leave session state untouched.
"""
from __future__ import annotations


class SessionError(Exception):
    """Base exception for all session-core errors."""


class InvalidStateError(SessionError):
    """Operation not permitted in the session's current state."""
    def __init__(self, session_id: str, operation: str, reason: str):
        self.session_id = session_id
        self.operation = operation
        self.reason = reason
        super().__init__(
            f"Cannot {operation} in session {session_id[:8]}: {reason}"
        )


class NotFoundError(SessionError, LookupError):
    """Unknown session, permission request or archive key."""
    def __init__(self, kind: str, key: str, reason: str = ""):
        self.kind = kind
        self.key = key
        detail = f" ({reason})" if reason else ""
        super().__init__(f"{kind} not found: {key}{detail}")


class AlreadyResolvedError(SessionError):
    """A permission request was already answered or withdrawn."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Permission request already resolved: {request_id}")


class RestoreFailedError(SessionError):
    """Checkpoint restore failed or the hash is unknown."""
    def __init__(self, checkpoint_hash: str, reason: str):
        self.checkpoint_hash = checkpoint_hash
        self.reason = reason
        super().__init__(
            f"Failed to restore checkpoint {checkpoint_hash[:12]}: {reason}"
        )


class PersistFailedError(SessionError):
    """Archive store unavailable; nothing was written."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to persist conversation: {reason}")


class BusyError(SessionError):
    """A conflicting gateway operation is already in flight."""
    def __init__(self, session_id: str, operation: str):
        self.session_id = session_id
        self.operation = operation
        super().__init__(
            f"Session {session_id[:8]} is busy: {operation} already in progress"
        )


class StreamError(SessionError):
    """Backend-reported failure in the middle of a generation."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CheckpointError(SessionError):
    """A git command behind the checkpoint gateway failed."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"git {command} failed: {reason}")
