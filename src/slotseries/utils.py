"""General utilities shared across the slotseries package."""

from __future__ import annotations

import os
import sys
from datetime import UTC, datetime

from loguru import logger

_LOGGER_CONFIGURED = False


def parse_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(*, force: bool = False) -> None:
    """Set up the global Loguru logger with application defaults."""
    global _LOGGER_CONFIGURED
    if _LOGGER_CONFIGURED and not force:
        return

    log_level = os.getenv("SLOTSERIES_LOG_LEVEL", "INFO")
    diagnose = parse_bool(os.getenv("SLOTSERIES_LOG_DIAGNOSE"))

    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        backtrace=False,
        diagnose=diagnose,
        enqueue=False,
        colorize=True,
    )

    _LOGGER_CONFIGURED = True


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as a second-precision UTC ISO string."""
    if value.tzinfo is None:
        raise ValueError("Naive datetimes cannot be stored; attach a timezone first.")
    return value.astimezone(UTC).isoformat(timespec="seconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


configure_logging()

__all__ = [
    "configure_logging",
    "parse_bool",
    "utc_now",
    "to_iso",
    "from_iso",
    "logger",
]
