"""Domain records shared by the expander, materializer, and version manager."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Literal

from .db_models import InstanceModel, SeriesGroupModel, SeriesModel
from .errors import ValidationError
from .utils import from_iso

SeriesStatus = Literal["active", "paused", "needs_attention", "ended"]
ExceptionKind = Literal["modified", "rescheduled", "cancelled", "conflict_skipped"]
ConflictPolicy = Literal["skip", "abort"]

SERIES_STATUSES: tuple[str, ...] = ("active", "paused", "needs_attention", "ended")
CONFLICT_POLICIES: tuple[str, ...] = ("skip", "abort")


@dataclass(frozen=True, order=True)
class TimeRange:
    """Half-open UTC interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("Time ranges require timezone-aware datetimes.")
        if self.end <= self.start:
            raise ValidationError("Time range end must be after its start.")

    def overlaps(self, other: TimeRange) -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class Occurrence:
    """One concrete occurrence produced by expanding a rule."""

    local_date: date
    start: datetime
    end: datetime

    @property
    def range(self) -> TimeRange:
        return TimeRange(self.start, self.end)


@dataclass(frozen=True)
class GroupRecord:
    id: int
    display_name: str
    description: str | None
    color: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class SeriesRecord:
    """Snapshot of one series version."""

    id: int
    group_id: int
    version_number: int
    effective_from: date
    effective_until: date | None
    target_table: str
    template: dict[str, Any]
    rule: str
    anchor: datetime
    duration: timedelta
    timezone: str
    status: str
    materialized_through: date | None
    created_by: str | None
    created_at: datetime
    template_updated_at: datetime | None = None
    template_updated_by: str | None = None

    @property
    def is_current(self) -> bool:
        return self.effective_until is None


@dataclass(frozen=True)
class InstanceRecord:
    id: int
    series_id: int
    occurrence_date: date
    target_table: str
    target_ref: str | None
    is_exception: bool
    exception_kind: str | None
    original_range: TimeRange | None = None
    exception_reason: str | None = None
    exception_by: str | None = None
    exception_at: datetime | None = None

    @property
    def state(self) -> str:
        return self.exception_kind or "active"


@dataclass(frozen=True)
class MaterializeResult:
    """Outcome of materializing a single occurrence."""

    occurrence_date: date
    created: bool
    target_ref: str | None = None
    skipped_reason: str | None = None
    conflicting_ref: str | None = None


@dataclass
class BatchResult:
    created: int = 0
    skipped: int = 0
    existing: int = 0
    skipped_occurrences: list[MaterializeResult] = field(default_factory=list)

    def add(self, result: MaterializeResult) -> None:
        if result.created:
            self.created += 1
        elif result.skipped_reason == "exists":
            self.existing += 1
        else:
            self.skipped += 1
            self.skipped_occurrences.append(result)


def group_from_model(model: SeriesGroupModel) -> GroupRecord:
    return GroupRecord(
        id=model.id,
        display_name=model.display_name,
        description=model.description,
        color=model.color,
        created_by=model.created_by,
        created_at=from_iso(model.created_at),
        updated_at=from_iso(model.updated_at),
    )


def series_from_model(model: SeriesModel) -> SeriesRecord:
    return SeriesRecord(
        id=model.id,
        group_id=model.group_id,
        version_number=model.version_number,
        effective_from=model.effective_from,
        effective_until=model.effective_until,
        target_table=model.target_table,
        template=json.loads(model.template_json or "{}"),
        rule=model.rule,
        anchor=from_iso(model.anchor),
        duration=timedelta(seconds=model.duration_seconds),
        timezone=model.timezone,
        status=model.status,
        materialized_through=model.materialized_through,
        created_by=model.created_by,
        created_at=from_iso(model.created_at),
        template_updated_at=(
            from_iso(model.template_updated_at) if model.template_updated_at else None
        ),
        template_updated_by=model.template_updated_by,
    )


def instance_from_model(model: InstanceModel) -> InstanceRecord:
    original = None
    if model.original_start and model.original_end:
        original = TimeRange(from_iso(model.original_start), from_iso(model.original_end))
    return InstanceRecord(
        id=model.id,
        series_id=model.series_id,
        occurrence_date=model.occurrence_date,
        target_table=model.target_table,
        target_ref=model.target_ref,
        is_exception=bool(model.is_exception),
        exception_kind=model.exception_kind,
        original_range=original,
        exception_reason=model.exception_reason,
        exception_by=model.exception_by,
        exception_at=from_iso(model.exception_at) if model.exception_at else None,
    )


__all__ = [
    "BatchResult",
    "CONFLICT_POLICIES",
    "ConflictPolicy",
    "ExceptionKind",
    "GroupRecord",
    "InstanceRecord",
    "MaterializeResult",
    "Occurrence",
    "SERIES_STATUSES",
    "SeriesRecord",
    "SeriesStatus",
    "TimeRange",
    "group_from_model",
    "instance_from_model",
    "series_from_model",
]
