"""Shared fixtures: a throwaway SQLite database with the sample target table."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import text

from slotseries.config import RecurrenceSettings
from slotseries.database import build_engine, make_session_factory
from slotseries.defaults import DEFAULT_TARGET_TABLES, install_sample_tables
from slotseries.permissions import StaticPermissions
from slotseries.series import SeriesDefinition
from slotseries.service import RecurrenceService
from slotseries.storage import SQLTargetStore

WEEKDAY_RULE = "FREQ=WEEKLY;BYDAY=MO,WE,FR"
FIRST_MONDAY = datetime(2025, 1, 6, 14, 0, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str | None, str, dict[str, Any]]] = []

    def notify(self, recipient: str | None, subject: str, payload: dict[str, Any]) -> None:
        self.sent.append((recipient, subject, payload))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'slotseries.db'}")
    install_sample_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store() -> SQLTargetStore:
    return SQLTargetStore(DEFAULT_TARGET_TABLES)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 1, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def settings() -> RecurrenceSettings:
    return RecurrenceSettings(lock_wait_seconds=0.2)


@pytest.fixture
def permissions() -> StaticPermissions:
    return StaticPermissions({"*": ["*"]})


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(session_factory, store, settings, permissions, notifier, clock) -> RecurrenceService:
    return RecurrenceService(
        session_factory,
        store,
        settings=settings,
        permissions=permissions,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def make_definition() -> Callable[..., SeriesDefinition]:
    def _make(**overrides: Any) -> SeriesDefinition:
        values: dict[str, Any] = {
            "target_table": "reservations",
            "template": {"resource_id": 1, "title": "Team sync"},
            "rule": WEEKDAY_RULE,
            "anchor": FIRST_MONDAY,
            "duration": "PT2H",
            "timezone": "UTC",
            "group_name": "Team sync",
        }
        values.update(overrides)
        return SeriesDefinition(**values)

    return _make


@pytest.fixture
def reservations(session_factory) -> Callable[..., list[dict[str, Any]]]:
    """Return the sample table's rows ordered by start time."""

    def _rows(resource_id: int | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM reservations"
        params: dict[str, Any] = {}
        if resource_id is not None:
            query += " WHERE resource_id = :resource_id"
            params["resource_id"] = resource_id
        with session_factory() as session:
            rows = session.execute(text(query + " ORDER BY starts_at"), params).mappings()
            return [dict(row) for row in rows]

    return _rows
