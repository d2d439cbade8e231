"""Abstract assistant backend.

A backend wraps whatever runs the assistant (a CLI subprocess, an SDK
client, a test double). The session core never talks to the transport
directly: it calls start() once per generation and then receives typed
stream events tagged with the session and generation id, either through
SessionRegistry.dispatch() or an EventBus.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass

from tandem.engine.permission_arbiter import PermissionDecision
from tandem.shared.models.session import ModelChoice


@dataclass(frozen=True)
class GenerationRequest:
    """Everything a backend needs to run one generation."""
    session_id: str
    generation_id: str
    prompt: str
    model: ModelChoice
    working_directory: str
    # Resume token from an earlier generation, if the backend issued one.
    backend_session_id: str | None = None
    yolo_mode: bool = False


class AssistantBackend(abc.ABC):
    """Transport to the assistant process."""

    @abc.abstractmethod
    async def start(self, request: GenerationRequest) -> None:
        """Begin a generation. Returns once it is running.

        Raises on failure to start; the controller treats that like a
        stream error. Raise errors.StreamError to have its message shown
        as is; any other exception is shown as "Failed to start assistant".
        """

    @abc.abstractmethod
    async def cancel(self, session_id: str, generation_id: str) -> None:
        """Stop a running generation. Must tolerate unknown ids."""

    @abc.abstractmethod
    async def answer_permission(
        self, session_id: str, request_id: str, decision: PermissionDecision
    ) -> None:
        """Deliver the user's answer for a pending tool permission.

        Raising errors.StreamError fails the generation with its message.
        """
