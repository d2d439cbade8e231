"""Git-backed code checkpoints.

A checkpoint is an ordinary commit whose subject starts with
``🔖 Checkpoint:``. Each one is also pinned under
``refs/tandem/checkpoints/<hash>`` so that ``git log --all`` keeps
listing it after a ``reset --hard`` to an older checkpoint.

git runs as an external process via asyncio.create_subprocess_exec
(argument list, no shell).
"""
from __future__ import annotations

import abc
import asyncio
import logging
import re
from typing import Callable

from tandem.engine.config import EngineConfig
from tandem.engine.errors import CheckpointError, NotFoundError, RestoreFailedError
from tandem.shared.models.history import Checkpoint, CheckpointStatus
from tandem.shared.models.session import Session

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "🔖 Checkpoint: "
CHECKPOINT_REF_NAMESPACE = "refs/tandem/checkpoints"
DEFAULT_AUTHOR_NAME = "Tandem"
DEFAULT_AUTHOR_EMAIL = "tandem@localhost"

_HASH_RE = re.compile(r"^[0-9a-fA-F]{4,64}$")
# %x1f (unit separator) cannot appear in a commit subject.
_LOG_FORMAT = "%H%x1f%s%x1f%aI%x1f%an"

SessionLookup = Callable[[str], Session]


class CheckpointGateway(abc.ABC):
    """Code checkpoints for a session's working directory."""

    @abc.abstractmethod
    async def get_status(self, session_id: str) -> CheckpointStatus:
        """Repository status. Never raises for git problems."""

    @abc.abstractmethod
    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        """Checkpoints newest first; empty when not a repository."""

    @abc.abstractmethod
    async def create_checkpoint(self, session_id: str, message: str) -> str | None:
        """Commit the working tree. Returns the hash, or None if clean."""

    @abc.abstractmethod
    async def restore_checkpoint(self, session_id: str, checkpoint_hash: str) -> None:
        """Reset the working tree to a checkpoint.

        Uncommitted changes are stashed first. Raises RestoreFailedError.
        """


class GitCheckpointGateway(CheckpointGateway):
    """CheckpointGateway driving the git CLI."""

    def __init__(
        self,
        session_lookup: SessionLookup,
        config: EngineConfig | None = None,
    ) -> None:
        self._lookup = session_lookup
        self._config = config or EngineConfig()

    async def get_status(self, session_id: str) -> CheckpointStatus:
        try:
            cwd = self._workdir(session_id)
            if not await self._is_repo(cwd):
                return CheckpointStatus(is_git_repo=False)
            porcelain = await self._git_ok(cwd, "status", "--porcelain")
        except (CheckpointError, NotFoundError) as exc:
            logger.warning("Checkpoint status unavailable for %s: %s", session_id[:8], exc)
            return CheckpointStatus(is_git_repo=False)
        return CheckpointStatus(is_git_repo=True, has_changes=bool(porcelain.strip()))

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        cwd = self._workdir(session_id)
        try:
            if not await self._is_repo(cwd):
                return []
            output = await self._git_ok(
                cwd, "log", "--all", "--date-order", "--fixed-strings",
                f"--grep={CHECKPOINT_PREFIX.strip()}",
                f"--pretty=format:{_LOG_FORMAT}",
            )
        except CheckpointError as exc:
            # An empty repository has no HEAD yet.
            logger.debug("No checkpoints for %s: %s", session_id[:8], exc)
            return []
        return _parse_log(output)

    async def create_checkpoint(self, session_id: str, message: str) -> str | None:
        cwd = self._workdir(session_id)
        if not await self._is_repo(cwd):
            if not self._config.auto_init_git:
                logger.debug("Skipping checkpoint: %s is not a git repository", cwd)
                return None
            await self._init_repo(cwd)

        await self._git_ok(cwd, "add", "-A")
        porcelain = await self._git_ok(cwd, "status", "--porcelain")
        if not porcelain.strip():
            logger.debug("No changes to checkpoint in %s", cwd)
            return None

        subject = CHECKPOINT_PREFIX + " ".join(message.split())
        await self._git_ok(
            cwd, "commit", "--no-verify", "-m", subject,
            "-m", "Auto-generated checkpoint",
        )
        commit = (await self._git_ok(cwd, "rev-parse", "HEAD")).strip()
        await self._git_ok(cwd, "update-ref", f"{CHECKPOINT_REF_NAMESPACE}/{commit}", commit)
        logger.info("Created checkpoint %s in %s", commit[:12], cwd)
        return commit

    async def restore_checkpoint(self, session_id: str, checkpoint_hash: str) -> None:
        cwd = self._workdir(session_id)
        if not _HASH_RE.match(checkpoint_hash or ""):
            raise RestoreFailedError(checkpoint_hash, "not a commit hash")
        try:
            if not await self._is_repo(cwd):
                raise RestoreFailedError(checkpoint_hash, "not a git repository")
            rc, _, _ = await self._git(
                cwd, "cat-file", "-e", f"{checkpoint_hash}^{{commit}}"
            )
            if rc != 0:
                raise RestoreFailedError(checkpoint_hash, "unknown checkpoint")

            porcelain = await self._git_ok(cwd, "status", "--porcelain")
            if porcelain.strip():
                await self._git_ok(
                    cwd, "stash", "push", "-m", "Auto-stash before checkpoint restore"
                )
                logger.info("Stashed uncommitted changes in %s", cwd)
            await self._git_ok(cwd, "reset", "--hard", checkpoint_hash)
        except CheckpointError as exc:
            raise RestoreFailedError(checkpoint_hash, exc.reason) from exc
        logger.info("Restored %s to checkpoint %s", cwd, checkpoint_hash[:12])

    # ── git plumbing ───────────────────────────────────────────────

    def _workdir(self, session_id: str) -> str:
        return self._lookup(session_id).working_directory

    async def _is_repo(self, cwd: str) -> bool:
        rc, _, _ = await self._git(cwd, "rev-parse", "--git-dir")
        return rc == 0

    async def _init_repo(self, cwd: str) -> None:
        logger.info("No git repository in %s, initializing", cwd)
        await self._git_ok(cwd, "init")
        # Commits need an identity; only fill in what is missing.
        for key, value in (
            ("user.name", DEFAULT_AUTHOR_NAME),
            ("user.email", DEFAULT_AUTHOR_EMAIL),
        ):
            rc, _, _ = await self._git(cwd, "config", key)
            if rc != 0:
                await self._git_ok(cwd, "config", key, value)

    async def _git_ok(self, cwd: str, *args: str) -> str:
        rc, out, err = await self._git(cwd, *args)
        if rc != 0:
            raise CheckpointError(args[0], err.strip() or f"exit status {rc}")
        return out

    async def _git(self, cwd: str, *args: str) -> tuple[int, str, str]:
        cmd = [self._config.git_command, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            raise CheckpointError(args[0], f"cannot run '{cmd[0]}' in {cwd}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._config.git_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CheckpointError(
                args[0], f"timed out after {self._config.git_timeout_seconds}s"
            ) from None
        return (
            proc.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )


def _parse_log(output: str) -> list[Checkpoint]:
    checkpoints: list[Checkpoint] = []
    for line in output.splitlines():
        parts = line.split("\x1f")
        if len(parts) != 4:
            continue
        commit, subject, timestamp, author = parts
        if not subject.startswith(CHECKPOINT_PREFIX.strip()):
            continue
        checkpoints.append(Checkpoint(
            hash=commit,
            timestamp=timestamp,
            author=author,
            message=subject[len(CHECKPOINT_PREFIX.strip()):].strip(),
        ))
    return checkpoints
