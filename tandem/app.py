"""Composition root: logging setup and registry wiring."""
from __future__ import annotations

import argparse
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from tandem.adapters.event_bus import EventBus
from tandem.adapters.permission_store import PermissionPolicyStore
from tandem.engine.backend import AssistantBackend
from tandem.engine.config import EngineConfig
from tandem.engine.permission_arbiter import PermissionArbiter
from tandem.engine.session_registry import SessionRegistry
from tandem.engine.yaml_config import load_yaml_config
from tandem.shared.services.archive import JsonArchiveGateway
from tandem.shared.services.checkpoints import GitCheckpointGateway
from tandem.shared.services.persistence import SessionPersistence

LOG_FILENAME = "tandem.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> Path | None:
    """Install a rotating file handler plus stderr on the root logger.

    Returns the log file path, or None when only stderr is used.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    log_file = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / LOG_FILENAME
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    return log_file


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Environment config, overlaid with a YAML file when given."""
    config = EngineConfig.from_env()
    if path is not None:
        config = load_yaml_config(path, base=config)
    return config


def build_event_bus(config: EngineConfig | None = None) -> EventBus:
    config = config or EngineConfig.from_env()
    return EventBus(maxsize=config.event_queue_size)


def build_registry(
    backend: AssistantBackend,
    config: EngineConfig | None = None,
) -> SessionRegistry:
    """Wire gateways, arbiter, policy store and persistence into a registry."""
    config = config or EngineConfig.from_env()
    policy_store = PermissionPolicyStore()
    arbiter = PermissionArbiter(rule_listener=policy_store.add_rule)

    # Gateways resolve sessions lazily through the registry built below.
    def lookup(session_id: str):
        return registry.session(session_id)

    registry = SessionRegistry(
        backend,
        GitCheckpointGateway(lookup, config),
        JsonArchiveGateway(config.archive_dir, lookup, config.archive_preview_chars),
        arbiter,
        config,
        policy_store=policy_store,
        persistence=SessionPersistence(config.sessions_dir),
    )
    logger.info(
        "Session registry ready (data_dir=%s model=%s)",
        config.data_dir, config.default_model,
    )
    return registry


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tandem", description="Inspect tandem session data."
    )
    parser.add_argument("--config", help="YAML config file with an 'engine:' section")
    parser.add_argument("--list", action="store_true", help="List saved sessions")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(config.log_level, config.log_dir)

    if args.list:
        persistence = SessionPersistence(config.sessions_dir)
        saved = persistence.load_all()
        if not saved:
            print("No saved sessions.")
        for session, messages in saved:
            print(
                f"  {session.id[:8]}  {session.name}  {session.model.value}  "
                f"{len(messages)} messages  {session.working_directory}"
            )
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
