"""Default target-table bindings and the sample reservations table."""

from __future__ import annotations

import os

from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Engine

from .storage import TargetTable

SAMPLE_TABLE = "reservations"

DEFAULT_TARGET_TABLES: list[TargetTable] = [
    TargetTable(
        name=SAMPLE_TABLE,
        start_field="starts_at",
        end_field="ends_at",
        scope_field="resource_id",
    )
]

_SQLITE_SAMPLE_DDL = (
    """
    CREATE TABLE IF NOT EXISTS reservations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        resource_id INTEGER NOT NULL,
        title TEXT,
        purpose TEXT,
        attendee_count INTEGER,
        starts_at TEXT NOT NULL,
        ends_at TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        CHECK (ends_at > starts_at)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS reservations_no_overlap_insert
    BEFORE INSERT ON reservations
    WHEN EXISTS (
        SELECT 1 FROM reservations existing
        WHERE existing.resource_id = NEW.resource_id
          AND existing.starts_at < NEW.ends_at
          AND existing.ends_at > NEW.starts_at
    )
    BEGIN
        SELECT RAISE(ABORT, 'time slot overlaps an existing reservation');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS reservations_no_overlap_update
    BEFORE UPDATE OF resource_id, starts_at, ends_at ON reservations
    WHEN EXISTS (
        SELECT 1 FROM reservations existing
        WHERE existing.id != NEW.id
          AND existing.resource_id = NEW.resource_id
          AND existing.starts_at < NEW.ends_at
          AND existing.ends_at > NEW.starts_at
    )
    BEGIN
        SELECT RAISE(ABORT, 'time slot overlaps an existing reservation');
    END
    """,
)

_POSTGRES_SAMPLE_DDL = (
    "CREATE EXTENSION IF NOT EXISTS btree_gist",
    """
    CREATE TABLE IF NOT EXISTS reservations (
        id SERIAL PRIMARY KEY,
        resource_id INTEGER NOT NULL,
        title TEXT,
        purpose TEXT,
        attendee_count INTEGER,
        starts_at TIMESTAMPTZ NOT NULL,
        ends_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ DEFAULT now(),
        CHECK (ends_at > starts_at),
        CONSTRAINT reservations_no_overlap EXCLUDE USING gist (
            resource_id WITH =,
            tstzrange(starts_at, ends_at, '[)') WITH &&
        )
    )
    """,
)


def install_sample_tables(engine: Engine) -> None:
    """Create the sample reservations table with its no-overlap guarantee."""
    statements = (
        _POSTGRES_SAMPLE_DDL if engine.dialect.name == "postgresql" else _SQLITE_SAMPLE_DDL
    )
    with engine.begin() as connection:
        for statement in statements:
            connection.exec_driver_sql(statement)
    logger.bind(table=SAMPLE_TABLE, dialect=engine.dialect.name).info(
        "Sample target table ready"
    )


def load_target_tables() -> list[TargetTable]:
    """Read target-table bindings from ``SLOTSERIES_TARGET_TABLES`` when set."""
    raw = os.getenv("SLOTSERIES_TARGET_TABLES")
    if not raw:
        return list(DEFAULT_TARGET_TABLES)
    try:
        bindings = TypeAdapter(list[TargetTable]).validate_json(raw)
    except PydanticValidationError as exc:
        raise RuntimeError(f"SLOTSERIES_TARGET_TABLES is invalid: {exc}") from exc
    logger.bind(tables=[binding.name for binding in bindings]).info(
        "Loaded target-table bindings from environment"
    )
    return bindings


__all__ = [
    "DEFAULT_TARGET_TABLES",
    "SAMPLE_TABLE",
    "install_sample_tables",
    "load_target_tables",
]
