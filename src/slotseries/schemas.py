"""Pydantic models for the recurring series HTTP API."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _to_camel(value: str) -> str:
    parts = value.split("_")
    return parts[0] + "".join(part.capitalize() for part in parts[1:])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)


# Series ----------------------------------------------------------------------


class SeriesCreateRequest(CamelModel):
    target_table: str = Field(..., min_length=1)
    template: dict[str, Any] = Field(default_factory=dict)
    rule: str = Field(..., min_length=1)
    anchor: datetime
    duration: timedelta
    timezone: str = "UTC"
    group_name: str | None = None
    group_description: str | None = None
    group_color: str | None = None
    group_id: int | None = None
    expand_until: date | None = None
    conflict_policy: Literal["skip", "abort"] = "skip"


class SeriesCreateResponse(CamelModel):
    group_id: int
    series_id: int
    instances_created: int = Field(..., ge=0)
    instances_skipped: int = Field(..., ge=0)
    skipped_occurrences: list[date] = Field(default_factory=list)


class PreviewOccurrence(CamelModel):
    occurrence_date: date
    start: datetime
    end: datetime
    has_conflict: bool
    conflicting_ref: str | None = None


class SeriesPreviewResponse(CamelModel):
    occurrences: list[PreviewOccurrence] = Field(default_factory=list)
    conflict_count: int = Field(0, ge=0)


class SeriesDetail(CamelModel):
    id: int
    group_id: int
    version_number: int
    effective_from: date
    effective_until: date | None = None
    target_table: str
    template: dict[str, Any] = Field(default_factory=dict)
    rule: str
    anchor: datetime
    duration_seconds: int
    timezone: str
    status: str
    materialized_through: date | None = None
    created_by: str | None = None
    created_at: datetime
    template_updated_at: datetime | None = None
    template_updated_by: str | None = None


class InstanceDetail(CamelModel):
    id: int
    series_id: int
    occurrence_date: date
    target_table: str
    target_ref: str | None = None
    is_exception: bool = False
    state: str
    original_start: datetime | None = None
    original_end: datetime | None = None
    exception_reason: str | None = None
    exception_by: str | None = None
    exception_at: datetime | None = None


class InstanceListResponse(CamelModel):
    series_id: int
    materialized_through: date | None = None
    instances: list[InstanceDetail] = Field(default_factory=list)


class ExpandRequest(CamelModel):
    until: date


class ExpansionResponse(CamelModel):
    series_id: int
    status: str
    created: int = 0
    skipped: int = 0
    existing: int = 0
    materialized_through: date | None = None
    detail: str | None = None


class SweepResponse(CamelModel):
    outcomes: list[ExpansionResponse] = Field(default_factory=list)


class SplitRequest(CamelModel):
    split_date: date
    new_anchor: datetime | None = None
    new_template: dict[str, Any] | None = None
    new_duration: timedelta | None = None
    reason: str | None = None


class SplitResponse(CamelModel):
    series_id: int
    new_series_id: int


class TemplateUpdateRequest(CamelModel):
    template: dict[str, Any]
    skip_exceptions: bool = True
    reason: str | None = None


class TemplateUpdateResponse(CamelModel):
    series_id: int
    updated_instances: int = Field(..., ge=0)


class ScheduleUpdateRequest(CamelModel):
    rule: str | None = None
    anchor: datetime | None = None
    duration: timedelta | None = None
    timezone: str | None = None
    reason: str | None = None

    @model_validator(mode="after")
    def _require_change(self) -> ScheduleUpdateRequest:
        if all(
            value is None for value in (self.rule, self.anchor, self.duration, self.timezone)
        ):
            raise ValueError("At least one of rule, anchor, duration or timezone is required.")
        return self


class StatusUpdateRequest(CamelModel):
    status: Literal["active", "paused", "ended", "needs_attention"]
    reason: str | None = None


# Groups ----------------------------------------------------------------------


class GroupSummary(CamelModel):
    id: int
    display_name: str
    description: str | None = None
    color: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    version_count: int = Field(..., ge=0)
    started_on: date | None = None
    current_series_id: int | None = None
    current_version: int | None = None
    active_instance_count: int = Field(0, ge=0)
    exception_count: int = Field(0, ge=0)
    status: str


class GroupListResponse(CamelModel):
    groups: list[GroupSummary] = Field(default_factory=list)


class GroupDetailResponse(CamelModel):
    group: GroupSummary
    versions: list[SeriesDetail] = Field(default_factory=list)


class GroupUpdateRequest(CamelModel):
    display_name: str | None = None
    description: str | None = None
    color: str | None = None


# Conflicts and occurrences ---------------------------------------------------


class TimeWindow(CamelModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> TimeWindow:
        if self.end <= self.start:
            raise ValueError("end must be after start.")
        return self


class ConflictPreviewRequest(CamelModel):
    target_table: str
    scope_value: Any = None
    ranges: list[TimeWindow] = Field(default_factory=list)


class ConflictPreviewItem(CamelModel):
    index: int
    start: datetime
    end: datetime
    has_conflict: bool
    conflicting_ref: str | None = None


class ConflictPreviewResponse(CamelModel):
    results: list[ConflictPreviewItem] = Field(default_factory=list)


class OccurrenceTarget(CamelModel):
    target_table: str
    target_id: str | int
    reason: str | None = None


class OccurrenceCancelRequest(OccurrenceTarget):
    pass


class OccurrenceRescheduleRequest(OccurrenceTarget):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> OccurrenceRescheduleRequest:
        if self.end <= self.start:
            raise ValueError("end must be after start.")
        return self


class OccurrenceModifyRequest(OccurrenceTarget):
    updates: dict[str, Any] = Field(..., min_length=1)


class OccurrenceStateResponse(CamelModel):
    target_table: str
    target_id: str
    state: str


class MembershipResponse(CamelModel):
    is_series_member: bool
    series_id: int | None = None
    group_id: int | None = None
    group_name: str | None = None
    group_color: str | None = None
    version_number: int | None = None
    occurrence_date: date | None = None
    is_exception: bool | None = None
    state: str | None = None
    template: dict[str, Any] | None = None


# Audit -----------------------------------------------------------------------


class AuditEvent(BaseModel):
    id: int | None = None
    timestamp: datetime
    action: str
    actor: str | None = None
    series_id: int | None = None
    group_id: int | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EventListResponse(BaseModel):
    events: list[AuditEvent] = Field(default_factory=list)


__all__ = [
    "AuditEvent",
    "CamelModel",
    "ConflictPreviewItem",
    "ConflictPreviewRequest",
    "ConflictPreviewResponse",
    "EventListResponse",
    "ExpandRequest",
    "ExpansionResponse",
    "GroupDetailResponse",
    "GroupListResponse",
    "GroupSummary",
    "GroupUpdateRequest",
    "InstanceDetail",
    "InstanceListResponse",
    "MembershipResponse",
    "OccurrenceCancelRequest",
    "OccurrenceModifyRequest",
    "OccurrenceRescheduleRequest",
    "OccurrenceStateResponse",
    "OccurrenceTarget",
    "PreviewOccurrence",
    "ScheduleUpdateRequest",
    "SeriesCreateRequest",
    "SeriesCreateResponse",
    "SeriesDetail",
    "SeriesPreviewResponse",
    "SplitRequest",
    "SplitResponse",
    "StatusUpdateRequest",
    "SweepResponse",
    "TemplateUpdateRequest",
    "TemplateUpdateResponse",
    "TimeWindow",
]
