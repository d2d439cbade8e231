"""Session record with identity, model choice, draft text and usage counters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModelChoice(Enum):
    OPUS = "opus"
    SONNET = "sonnet"
    SONNET_1M = "sonnet1m"
    DEFAULT = "default"

    @classmethod
    def parse(cls, value: str | ModelChoice | None) -> ModelChoice:
        if isinstance(value, ModelChoice):
            return value
        if not value:
            return cls.DEFAULT
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown model '{value}'. "
                f"Expected one of: {', '.join(m.value for m in cls)}"
            ) from None


# Display-only context window sizes (tokens).
CONTEXT_LIMITS: dict[ModelChoice, int] = {
    ModelChoice.OPUS: 200_000,
    ModelChoice.SONNET: 200_000,
    ModelChoice.SONNET_1M: 1_000_000,
    ModelChoice.DEFAULT: 200_000,
}

# USD per 1M tokens: (input, output).
MODEL_PRICING: dict[ModelChoice, tuple[Decimal, Decimal]] = {
    ModelChoice.OPUS: (Decimal("15"), Decimal("75")),
    ModelChoice.SONNET: (Decimal("3"), Decimal("15")),
    ModelChoice.SONNET_1M: (Decimal("3"), Decimal("15")),
    ModelChoice.DEFAULT: (Decimal("3"), Decimal("15")),
}


def context_limit(model: ModelChoice) -> int:
    return CONTEXT_LIMITS.get(model, CONTEXT_LIMITS[ModelChoice.DEFAULT])


def estimate_cost(model: ModelChoice, input_tokens: int, output_tokens: int) -> Decimal:
    """Cost of one generation, rounded to 4 decimal places."""
    in_price, out_price = MODEL_PRICING.get(model, MODEL_PRICING[ModelChoice.DEFAULT])
    total = (Decimal(input_tokens) * in_price + Decimal(output_tokens) * out_price) / Decimal(1_000_000)
    return total.quantize(Decimal("0.0001"))


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cache_tokens(self) -> int:
        return self.cache_creation_tokens + self.cache_read_tokens

    def add(self, other: TokenUsage) -> None:
        """Accumulate another usage report. Counters never decrease."""
        for name in (
            "input_tokens",
            "output_tokens",
            "cache_creation_tokens",
            "cache_read_tokens",
        ):
            delta = getattr(other, name)
            if delta < 0:
                raise ValueError(f"{name} delta must be >= 0, got {delta}")
            setattr(self, name, getattr(self, name) + delta)


@dataclass
class ContextUsage:
    """Token usage relative to the model's context window."""

    used_tokens: int
    cache_tokens: int
    limit: int

    @property
    def percent(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.used_tokens / self.limit * 100


def session_name_from_directory(working_directory: str) -> str:
    parts = [p for p in PurePath(working_directory.replace("\\", "/")).parts if p not in ("/", "")]
    return parts[-1] if parts else "Session"


@dataclass
class Session:
    """Holds the UI-visible state of one conversation."""

    working_directory: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    model: ModelChoice = ModelChoice.DEFAULT
    is_processing: bool = False
    total_cost: Decimal = field(default_factory=lambda: Decimal("0"))
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    draft_input_text: str = ""
    current_archive_key: str | None = None
    # Resume token handed out by the assistant backend.
    backend_session_id: str | None = None
    yolo_mode: bool = False
    is_active: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_active: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = session_name_from_directory(self.working_directory)
        self.model = ModelChoice.parse(self.model)

    def touch(self) -> None:
        self.last_active = _utcnow()

    def context_usage(self) -> ContextUsage:
        return ContextUsage(
            used_tokens=self.token_usage.total_tokens,
            cache_tokens=self.token_usage.cache_tokens,
            limit=context_limit(self.model),
        )

    def reset_usage(self) -> None:
        """Start a fresh context window. Spend (total_cost) is kept."""
        self.token_usage = TokenUsage()


def session_to_dict(session: Session) -> dict:
    return {
        "id": session.id,
        "name": session.name,
        "working_directory": session.working_directory,
        "model": session.model.value,
        "total_cost": str(session.total_cost),
        "token_usage": {
            "input_tokens": session.token_usage.input_tokens,
            "output_tokens": session.token_usage.output_tokens,
            "cache_creation_tokens": session.token_usage.cache_creation_tokens,
            "cache_read_tokens": session.token_usage.cache_read_tokens,
        },
        "draft_input_text": session.draft_input_text,
        "current_archive_key": session.current_archive_key,
        "backend_session_id": session.backend_session_id,
        "yolo_mode": session.yolo_mode,
        "is_active": session.is_active,
        "created_at": session.created_at.isoformat(),
        "last_active": session.last_active.isoformat(),
    }


def dict_to_session(data: dict) -> Session:
    """Rebuild a session record. Processing state is never restored."""
    usage = data.get("token_usage") or {}
    session = Session(
        working_directory=data["working_directory"],
        id=data.get("id") or str(uuid.uuid4()),
        name=data.get("name", ""),
        model=ModelChoice.parse(data.get("model")),
        total_cost=Decimal(str(data.get("total_cost", "0"))),
        token_usage=TokenUsage(
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
            cache_creation_tokens=int(usage.get("cache_creation_tokens", 0)),
            cache_read_tokens=int(usage.get("cache_read_tokens", 0)),
        ),
        draft_input_text=data.get("draft_input_text", ""),
        current_archive_key=data.get("current_archive_key"),
        backend_session_id=data.get("backend_session_id"),
        yolo_mode=bool(data.get("yolo_mode", False)),
        is_active=bool(data.get("is_active", False)),
    )
    for attr in ("created_at", "last_active"):
        raw = data.get(attr)
        if raw:
            setattr(session, attr, datetime.fromisoformat(raw))
    return session
