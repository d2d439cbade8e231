"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TANDEM_* env vars or
the ``engine:`` section of a YAML file (see yaml_config).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from tandem.shared.models.session import ModelChoice

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".tandem"


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Session core configuration."""

    # Root for archives, session snapshots and logs.
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    default_model: str = ModelChoice.DEFAULT.value

    # Checkpointing
    checkpoint_on_send: bool = True
    # Run `git init` (and set a fallback identity) when checkpointing
    # a directory that is not a repository yet.
    auto_init_git: bool = True
    git_command: str = "git"
    git_timeout_seconds: float = 30.0

    # Permission prompts
    auto_approve_tools: list[str] = field(default_factory=lambda: ["TodoWrite"])
    # Successful results of these tools are not shown as messages.
    quiet_tools: list[str] = field(
        default_factory=lambda: ["Read", "Edit", "MultiEdit", "TodoWrite"]
    )

    archive_preview_chars: int = 100
    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        ModelChoice.parse(self.default_model)

    @property
    def archive_dir(self) -> Path:
        return self.data_dir / "archives"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TANDEM_* environment variables."""
        tandem_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TANDEM_")
        }
        if tandem_vars:
            logger.info(
                "EngineConfig.from_env: TANDEM_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(tandem_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no TANDEM_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            data_dir=Path(os.getenv("TANDEM_DATA_DIR", str(defaults.data_dir))),
            default_model=os.getenv("TANDEM_DEFAULT_MODEL", defaults.default_model),
            checkpoint_on_send=_env_bool(
                "TANDEM_CHECKPOINT_ON_SEND", defaults.checkpoint_on_send
            ),
            auto_init_git=_env_bool("TANDEM_AUTO_INIT_GIT", defaults.auto_init_git),
            git_command=os.getenv("TANDEM_GIT_COMMAND", defaults.git_command),
            git_timeout_seconds=float(os.getenv(
                "TANDEM_GIT_TIMEOUT", str(defaults.git_timeout_seconds)
            )),
            auto_approve_tools=_env_list(
                "TANDEM_AUTO_APPROVE_TOOLS", defaults.auto_approve_tools
            ),
            quiet_tools=_env_list("TANDEM_QUIET_TOOLS", defaults.quiet_tools),
            archive_preview_chars=int(os.getenv(
                "TANDEM_ARCHIVE_PREVIEW_CHARS", str(defaults.archive_preview_chars)
            )),
            event_queue_size=int(os.getenv(
                "TANDEM_QUEUE_SIZE", str(defaults.event_queue_size)
            )),
            log_level=os.getenv("TANDEM_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "EngineConfig.from_env: data_dir=%s model=%s checkpoints=%s log_level=%s",
            config.data_dir, config.default_model,
            config.checkpoint_on_send, config.log_level,
        )
        return config
