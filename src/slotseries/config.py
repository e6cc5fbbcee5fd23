"""Configuration helpers for the recurring series engine."""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .utils import parse_bool

DEFAULT_HORIZON_MONTHS = 6
MAX_HORIZON_MONTHS = 24


def _candidate_env_paths(start: Path) -> Iterable[Path]:
    """Yield plausible .env locations from closest to farthest."""
    override = os.environ.get("SLOTSERIES_ENV_FILE")
    if override:
        yield Path(override).expanduser()

    for directory in (start, *start.parents):
        yield directory / ".env"


def _discover_env_path() -> Path | None:
    """Return the first .env path that exists, if any."""
    package_dir = Path(__file__).resolve().parent
    for candidate in _candidate_env_paths(package_dir):
        if candidate.exists():
            return candidate
    return None


def load_env_file(path: Path | None = None) -> None:
    """Populate os.environ with values from a .env file if present."""
    env_path = path or _discover_env_path()
    if env_path is None or not env_path.exists():
        logger.debug("No .env file discovered for configuration")
        return

    logger.bind(path=str(env_path)).info("Loading environment variables from .env")
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        # Respect existing environment variables so runtime overrides win.
        os.environ.setdefault(key, value)


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}.") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {value}.")
    return value


load_env_file()


@dataclass(frozen=True)
class RecurrenceSettings:
    """Typed accessors for expansion limits and scheduler cadence."""

    default_horizon_months: int = DEFAULT_HORIZON_MONTHS
    max_horizon_months: int = MAX_HORIZON_MONTHS
    allow_unterminated_rules: bool = True
    lookahead_days: int = 90
    extension_days: int = 30
    max_occurrences_per_run: int = 500
    sweep_interval_seconds: int = 3600
    claim_ttl_seconds: int = 300
    lock_wait_seconds: float = 5.0
    run_scheduler: bool = False
    notify_webhook_url: str | None = None

    @classmethod
    def from_env(cls) -> RecurrenceSettings:
        default_horizon = _int_env(
            "SLOTSERIES_DEFAULT_HORIZON_MONTHS", DEFAULT_HORIZON_MONTHS, minimum=1
        )
        max_horizon = _int_env(
            "SLOTSERIES_MAX_HORIZON_MONTHS", MAX_HORIZON_MONTHS, minimum=1
        )
        if default_horizon > max_horizon:
            raise RuntimeError(
                "SLOTSERIES_DEFAULT_HORIZON_MONTHS cannot exceed "
                "SLOTSERIES_MAX_HORIZON_MONTHS."
            )

        settings = cls(
            default_horizon_months=default_horizon,
            max_horizon_months=max_horizon,
            allow_unterminated_rules=parse_bool(
                os.environ.get("SLOTSERIES_ALLOW_UNTERMINATED"), default=True
            ),
            lookahead_days=_int_env("SLOTSERIES_LOOKAHEAD_DAYS", 90, minimum=1),
            extension_days=_int_env("SLOTSERIES_EXTENSION_DAYS", 30, minimum=1),
            max_occurrences_per_run=_int_env(
                "SLOTSERIES_MAX_OCCURRENCES_PER_RUN", 500, minimum=1
            ),
            sweep_interval_seconds=_int_env(
                "SLOTSERIES_SWEEP_INTERVAL_SECONDS", 3600, minimum=1
            ),
            claim_ttl_seconds=_int_env("SLOTSERIES_CLAIM_TTL_SECONDS", 300, minimum=1),
            lock_wait_seconds=float(
                _int_env("SLOTSERIES_LOCK_WAIT_SECONDS", 5, minimum=0)
            ),
            run_scheduler=parse_bool(os.environ.get("SLOTSERIES_RUN_SCHEDULER")),
            notify_webhook_url=os.environ.get("SLOTSERIES_NOTIFY_WEBHOOK_URL") or None,
        )

        logger.bind(
            default_horizon_months=settings.default_horizon_months,
            max_horizon_months=settings.max_horizon_months,
            allow_unterminated=settings.allow_unterminated_rules,
        ).debug("Recurrence settings loaded from environment")
        return settings


__all__ = [
    "DEFAULT_HORIZON_MONTHS",
    "MAX_HORIZON_MONTHS",
    "RecurrenceSettings",
    "load_env_file",
]
