"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "order_policy.db"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


@dataclass(frozen=True)
class Settings:
    db_path: Path = _DEFAULT_DB_PATH
    log_level: str = "INFO"
    max_cancellation_attempts: int = 3
    rate_limit_requests: int = 60
    rate_limit_window_seconds: int = 60
    seed_demo_data: bool = True


def load_settings() -> Settings:
    """Build settings from ``ORDER_POLICY_*`` environment variables."""
    db_path = os.getenv("ORDER_POLICY_DB_PATH", "").strip()
    return Settings(
        db_path=Path(db_path) if db_path else _DEFAULT_DB_PATH,
        log_level=os.getenv("ORDER_POLICY_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        max_cancellation_attempts=_env_int("ORDER_POLICY_MAX_CANCEL_ATTEMPTS", 3),
        rate_limit_requests=_env_int("ORDER_POLICY_RATE_LIMIT", 60),
        rate_limit_window_seconds=_env_int("ORDER_POLICY_RATE_LIMIT_WINDOW", 60),
        seed_demo_data=_env_bool("ORDER_POLICY_SEED_DEMO", True),
    )
