"""Audit trail helpers for series and occurrence changes."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db_models import SeriesEventModel
from .utils import from_iso, to_iso, utc_now


@dataclass(frozen=True)
class Event:
    """Represents a recorded audit event."""

    id: int | None
    timestamp: datetime
    action: str
    actor: str | None
    series_id: int | None
    group_id: int | None
    reason: str | None
    metadata: dict[str, Any]


def _model_to_event(model: SeriesEventModel) -> Event:
    return Event(
        id=model.id,
        timestamp=from_iso(model.timestamp),
        action=model.action,
        actor=model.actor,
        series_id=model.series_id,
        group_id=model.group_id,
        reason=model.reason,
        metadata=json.loads(model.metadata_json or "{}"),
    )


def record_event(
    session: Session,
    *,
    action: str,
    actor: str | None = None,
    series_id: int | None = None,
    group_id: int | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> None:
    """Add an audit row to ``session`` so it commits with the change it describes."""
    session.add(
        SeriesEventModel(
            timestamp=to_iso(timestamp or utc_now()),
            action=action,
            actor=actor,
            series_id=series_id,
            group_id=group_id,
            reason=reason,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
        )
    )
    logger.bind(
        action=action, actor=actor, series_id=series_id, group_id=group_id
    ).debug("Audit event staged")


def list_recent_events(
    session_factory: sessionmaker[Session],
    limit: int = 100,
    *,
    series_id: int | None = None,
    group_id: int | None = None,
) -> list[Event]:
    """Return the most recent audit events, newest first."""
    stmt = select(SeriesEventModel)
    if series_id is not None:
        stmt = stmt.where(SeriesEventModel.series_id == series_id)
    if group_id is not None:
        stmt = stmt.where(SeriesEventModel.group_id == group_id)
    with session_factory() as session:
        rows = session.execute(
            stmt.order_by(SeriesEventModel.id.desc()).limit(limit)
        ).scalars().all()
        return [_model_to_event(row) for row in rows]


__all__ = ["Event", "list_recent_events", "record_event"]
