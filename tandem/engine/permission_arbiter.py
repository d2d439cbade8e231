"""Outstanding tool-permission requests across all sessions.

Each request is resolved exactly once: by the user (allow or deny) or by
withdrawal when its generation is stopped or its session closed. The
arbiter keeps no durable state; "always allow" and "always deny" answers
are handed to a rule listener which is expected to persist them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from tandem.engine.errors import AlreadyResolvedError, NotFoundError
from tandem.shared.models.message import PermissionRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionRule:
    """Durable rule produced by an "always allow" or "always deny" answer."""
    workspace: str
    tool: str
    path: str = ""
    tool_input: dict[str, Any] | None = None
    deny: bool = False


@dataclass(frozen=True)
class PermissionDecision:
    request_id: str
    allowed: bool
    always_allow: bool = False
    always_deny: bool = False
    withdrawn: bool = False


@dataclass
class _Outstanding:
    session_id: str
    workspace: str
    request: PermissionRequest


RuleListener = Callable[[PermissionRule], None]


class PermissionArbiter:
    """Tracks open permission requests keyed by request id."""

    def __init__(self, rule_listener: RuleListener | None = None) -> None:
        self._open: dict[str, _Outstanding] = {}
        # Request ids that were answered or withdrawn.
        self._resolved: dict[str, str] = {}
        self._rule_listener = rule_listener

    def open(
        self, session_id: str, request: PermissionRequest, workspace: str = ""
    ) -> None:
        if request.id in self._open or request.id in self._resolved:
            raise ValueError(f"Duplicate permission request id: {request.id}")
        self._open[request.id] = _Outstanding(session_id, workspace, request)
        logger.info(
            "Permission requested session=%s request=%s tool=%s path=%s",
            session_id[:8], request.id, request.tool, request.path,
        )

    def get(self, session_id: str, request_id: str) -> PermissionRequest:
        """Look up an open request. Raises like resolve() would."""
        return self._lookup(session_id, request_id).request

    def resolve(
        self,
        session_id: str,
        request_id: str,
        allowed: bool,
        always_allow: bool = False,
        always_deny: bool = False,
    ) -> PermissionDecision:
        """Record the answer. Only the flag matching *allowed* takes effect."""
        entry = self._lookup(session_id, request_id)
        del self._open[request_id]
        self._resolved[request_id] = session_id
        decision = PermissionDecision(
            request_id=request_id,
            allowed=allowed,
            always_allow=allowed and always_allow,
            always_deny=not allowed and always_deny,
        )
        logger.info(
            "Permission %s session=%s request=%s tool=%s%s",
            "granted" if allowed else "denied",
            session_id[:8], request_id, entry.request.tool,
            " (always)" if decision.always_allow or decision.always_deny else "",
        )
        if decision.always_allow or decision.always_deny:
            self._emit_rule(PermissionRule(
                workspace=entry.workspace,
                tool=entry.request.tool,
                path=entry.request.path,
                tool_input=entry.request.tool_input,
                deny=decision.always_deny,
            ))
        return decision

    def withdraw(self, session_id: str) -> list[PermissionDecision]:
        """Deny every open request of a session. Returns the withdrawals."""
        withdrawn: list[PermissionDecision] = []
        for request_id in [
            rid for rid, entry in self._open.items() if entry.session_id == session_id
        ]:
            del self._open[request_id]
            self._resolved[request_id] = session_id
            withdrawn.append(PermissionDecision(
                request_id=request_id, allowed=False, withdrawn=True,
            ))
        if withdrawn:
            logger.info(
                "Withdrew %d permission request(s) for session %s",
                len(withdrawn), session_id[:8],
            )
        return withdrawn

    def outstanding(self, session_id: str) -> list[PermissionRequest]:
        return [
            entry.request for entry in self._open.values()
            if entry.session_id == session_id
        ]

    def forget(self, session_id: str) -> None:
        """Drop a session's resolution history.

        Called when the session closes and when it starts a new generation,
        so answered ids do not pile up over a long-lived session.
        """
        self._resolved = {
            rid: sid for rid, sid in self._resolved.items() if sid != session_id
        }

    def _lookup(self, session_id: str, request_id: str) -> _Outstanding:
        entry = self._open.get(request_id)
        if entry is None:
            if self._resolved.get(request_id) == session_id:
                raise AlreadyResolvedError(request_id)
            raise NotFoundError("Permission request", request_id)
        if entry.session_id != session_id:
            raise NotFoundError(
                "Permission request", request_id,
                "belongs to another session",
            )
        return entry

    def _emit_rule(self, rule: PermissionRule) -> None:
        if self._rule_listener is None:
            return
        try:
            self._rule_listener(rule)
        except Exception:
            logger.exception("Permission rule listener failed for tool %s", rule.tool)
