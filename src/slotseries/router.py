"""API router exposing the recurring series endpoints."""

from __future__ import annotations

from datetime import date
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from . import schemas
from .domain import InstanceRecord, SeriesRecord, TimeRange
from .errors import (
    ConflictAbortError,
    NotFoundError,
    PermissionDeniedError,
    RecurrenceError,
    UnknownTableError,
    ValidationError,
)
from .events import Event
from .scheduler import ExpansionOutcome
from .series import GroupSummary, SeriesDefinition
from .service import get_recurrence_service

router = APIRouter(prefix="/api", tags=["series"])


def _resolve_actor(request: Request, explicit: str | None = None) -> str:
    if explicit:
        candidate = explicit.strip()
        if candidate:
            return candidate
    header_actor = request.headers.get("x-actor")
    if header_actor:
        candidate = header_actor.strip()
        if candidate:
            return candidate
    return "system"


def _resolve_reason(request: Request, explicit: str | None = None) -> str | None:
    if explicit:
        candidate = explicit.strip()
        if candidate:
            return candidate
    header_reason = request.headers.get("x-reason")
    if header_reason:
        candidate = header_reason.strip()
        if candidate:
            return candidate
    return None


def _http_error(exc: RecurrenceError) -> HTTPException:
    if isinstance(exc, (ValidationError, UnknownTableError)):
        return HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, ConflictAbortError):
        return HTTPException(
            status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "conflicts": [
                    {
                        "occurrenceDate": str(item.get("occurrence_date")),
                        "conflictingRef": item.get("conflicting_ref"),
                    }
                    for item in exc.conflicts
                ],
            },
        )
    return HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))


# Conversions -----------------------------------------------------------------


def _series_to_schema(record: SeriesRecord) -> schemas.SeriesDetail:
    return schemas.SeriesDetail(
        id=record.id,
        group_id=record.group_id,
        version_number=record.version_number,
        effective_from=record.effective_from,
        effective_until=record.effective_until,
        target_table=record.target_table,
        template=record.template,
        rule=record.rule,
        anchor=record.anchor,
        duration_seconds=int(record.duration.total_seconds()),
        timezone=record.timezone,
        status=record.status,
        materialized_through=record.materialized_through,
        created_by=record.created_by,
        created_at=record.created_at,
        template_updated_at=record.template_updated_at,
        template_updated_by=record.template_updated_by,
    )


def _instance_to_schema(record: InstanceRecord) -> schemas.InstanceDetail:
    original = record.original_range
    return schemas.InstanceDetail(
        id=record.id,
        series_id=record.series_id,
        occurrence_date=record.occurrence_date,
        target_table=record.target_table,
        target_ref=record.target_ref,
        is_exception=record.is_exception,
        state=record.state,
        original_start=original.start if original else None,
        original_end=original.end if original else None,
        exception_reason=record.exception_reason,
        exception_by=record.exception_by,
        exception_at=record.exception_at,
    )


def _group_to_schema(summary: GroupSummary) -> schemas.GroupSummary:
    group = summary.group
    return schemas.GroupSummary(
        id=group.id,
        display_name=group.display_name,
        description=group.description,
        color=group.color,
        created_by=group.created_by,
        created_at=group.created_at,
        updated_at=group.updated_at,
        version_count=summary.version_count,
        started_on=summary.started_on,
        current_series_id=summary.current_series_id,
        current_version=summary.current_version,
        active_instance_count=summary.active_instance_count,
        exception_count=summary.exception_count,
        status=summary.status,
    )


def _outcome_to_schema(outcome: ExpansionOutcome) -> schemas.ExpansionResponse:
    return schemas.ExpansionResponse(
        series_id=outcome.series_id,
        status=outcome.status,
        created=outcome.created,
        skipped=outcome.skipped,
        existing=outcome.existing,
        materialized_through=outcome.materialized_through,
        detail=outcome.detail,
    )


def _event_to_schema(event: Event) -> schemas.AuditEvent:
    return schemas.AuditEvent(
        id=event.id,
        timestamp=event.timestamp,
        action=event.action,
        actor=event.actor,
        series_id=event.series_id,
        group_id=event.group_id,
        reason=event.reason,
        metadata=event.metadata,
    )


def _definition_from_payload(payload: schemas.SeriesCreateRequest) -> SeriesDefinition:
    return SeriesDefinition(
        target_table=payload.target_table,
        template=payload.template,
        rule=payload.rule,
        anchor=payload.anchor,
        duration=payload.duration,
        timezone=payload.timezone,
        group_name=payload.group_name,
        group_description=payload.group_description,
        group_color=payload.group_color,
        group_id=payload.group_id,
        expand_until=payload.expand_until,
        conflict_policy=payload.conflict_policy,
    )


# Series ----------------------------------------------------------------------


@router.post(
    "/series",
    response_model=schemas.SeriesCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_series(
    payload: schemas.SeriesCreateRequest, request: Request
) -> schemas.SeriesCreateResponse:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    try:
        result = service.series.create_series(_definition_from_payload(payload), actor=actor)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.SeriesCreateResponse(
        group_id=result.group_id,
        series_id=result.series_id,
        instances_created=result.instances_created,
        instances_skipped=result.instances_skipped,
        skipped_occurrences=result.skipped_occurrences,
    )


@router.post("/series/preview", response_model=schemas.SeriesPreviewResponse)
def preview_series(payload: schemas.SeriesCreateRequest) -> schemas.SeriesPreviewResponse:
    service = get_recurrence_service()
    try:
        previewed = service.series.preview_series(_definition_from_payload(payload))
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    occurrences = [
        schemas.PreviewOccurrence(
            occurrence_date=item.occurrence.local_date,
            start=item.occurrence.start,
            end=item.occurrence.end,
            has_conflict=item.conflict.has_conflict,
            conflicting_ref=item.conflict.conflicting_ref,
        )
        for item in previewed
    ]
    return schemas.SeriesPreviewResponse(
        occurrences=occurrences,
        conflict_count=sum(1 for item in occurrences if item.has_conflict),
    )


@router.get("/series/{series_id}", response_model=schemas.SeriesDetail)
def get_series(series_id: int) -> schemas.SeriesDetail:
    service = get_recurrence_service()
    try:
        record = service.series.get_series(series_id)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return _series_to_schema(record)


@router.get("/series/{series_id}/instances", response_model=schemas.InstanceListResponse)
def list_series_instances(
    series_id: int,
    until: Annotated[
        date | None,
        Query(description="Extend the series on demand and list instances up to this date."),
    ] = None,
) -> schemas.InstanceListResponse:
    service = get_recurrence_service()
    try:
        instances = service.series.list_instances(series_id, until=until)
        record = service.series.get_series(series_id)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.InstanceListResponse(
        series_id=series_id,
        materialized_through=record.materialized_through,
        instances=[_instance_to_schema(item) for item in instances],
    )


@router.post("/series/{series_id}/expand", response_model=schemas.ExpansionResponse)
def expand_series(series_id: int, payload: schemas.ExpandRequest) -> schemas.ExpansionResponse:
    service = get_recurrence_service()
    try:
        outcome = service.series.expand_instances(series_id, payload.until)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return _outcome_to_schema(outcome)


@router.post(
    "/series/{series_id}/split",
    response_model=schemas.SplitResponse,
    status_code=status.HTTP_201_CREATED,
)
def split_series(
    series_id: int, payload: schemas.SplitRequest, request: Request
) -> schemas.SplitResponse:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request, payload.reason)
    try:
        new_series_id = service.series.split_from_date(
            series_id,
            payload.split_date,
            new_anchor=payload.new_anchor,
            new_template=payload.new_template,
            new_duration=payload.new_duration,
            actor=actor,
            reason=reason,
        )
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.SplitResponse(series_id=series_id, new_series_id=new_series_id)


@router.patch("/series/{series_id}/template", response_model=schemas.TemplateUpdateResponse)
def update_series_template(
    series_id: int, payload: schemas.TemplateUpdateRequest, request: Request
) -> schemas.TemplateUpdateResponse:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request, payload.reason)
    try:
        updated = service.series.update_template(
            series_id,
            payload.template,
            skip_exceptions=payload.skip_exceptions,
            actor=actor,
            reason=reason,
        )
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.TemplateUpdateResponse(series_id=series_id, updated_instances=updated)


@router.put("/series/{series_id}/schedule", response_model=schemas.ExpansionResponse)
def update_series_schedule(
    series_id: int, payload: schemas.ScheduleUpdateRequest, request: Request
) -> schemas.ExpansionResponse:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request, payload.reason)
    try:
        outcome = service.series.update_schedule(
            series_id,
            rule=payload.rule,
            anchor=payload.anchor,
            duration=payload.duration,
            timezone=payload.timezone,
            actor=actor,
            reason=reason,
        )
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return _outcome_to_schema(outcome)


@router.patch("/series/{series_id}/status", response_model=schemas.SeriesDetail)
def update_series_status(
    series_id: int, payload: schemas.StatusUpdateRequest, request: Request
) -> schemas.SeriesDetail:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request, payload.reason)
    try:
        record = service.series.set_status(series_id, payload.status, actor=actor, reason=reason)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return _series_to_schema(record)


@router.delete("/series/{series_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_series(series_id: int, request: Request) -> Response:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request)
    try:
        service.series.delete_series(series_id, actor=actor, reason=reason)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Groups ----------------------------------------------------------------------


@router.get("/groups", response_model=schemas.GroupListResponse, tags=["groups"])
def list_groups() -> schemas.GroupListResponse:
    service = get_recurrence_service()
    return schemas.GroupListResponse(
        groups=[_group_to_schema(summary) for summary in service.series.list_groups()]
    )


@router.get("/groups/{group_id}", response_model=schemas.GroupDetailResponse, tags=["groups"])
def get_group(group_id: int) -> schemas.GroupDetailResponse:
    service = get_recurrence_service()
    try:
        summary, versions = service.series.get_group(group_id)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.GroupDetailResponse(
        group=_group_to_schema(summary),
        versions=[_series_to_schema(record) for record in versions],
    )


@router.patch("/groups/{group_id}", response_model=schemas.GroupDetailResponse, tags=["groups"])
def update_group(
    group_id: int, payload: schemas.GroupUpdateRequest, request: Request
) -> schemas.GroupDetailResponse:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    try:
        service.series.update_group_info(
            group_id,
            display_name=payload.display_name,
            description=payload.description,
            color=payload.color,
            actor=actor,
        )
        summary, versions = service.series.get_group(group_id)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.GroupDetailResponse(
        group=_group_to_schema(summary),
        versions=[_series_to_schema(record) for record in versions],
    )


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["groups"])
def delete_group(group_id: int, request: Request) -> Response:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request)
    try:
        service.series.delete_group(group_id, actor=actor, reason=reason)
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Conflicts and occurrences ---------------------------------------------------


@router.post(
    "/conflicts/preview", response_model=schemas.ConflictPreviewResponse, tags=["conflicts"]
)
def preview_conflicts(payload: schemas.ConflictPreviewRequest) -> schemas.ConflictPreviewResponse:
    service = get_recurrence_service()
    try:
        results = service.preview_conflicts(
            payload.target_table,
            payload.scope_value,
            [TimeRange(window.start, window.end) for window in payload.ranges],
        )
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.ConflictPreviewResponse(
        results=[
            schemas.ConflictPreviewItem(
                index=result.index,
                start=result.range.start,
                end=result.range.end,
                has_conflict=result.has_conflict,
                conflicting_ref=result.conflicting_ref,
            )
            for result in results
        ]
    )


@router.post(
    "/occurrences/cancel", status_code=status.HTTP_204_NO_CONTENT, tags=["occurrences"]
)
def cancel_occurrence(payload: schemas.OccurrenceCancelRequest, request: Request) -> Response:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request, payload.reason)
    try:
        service.occurrences.cancel_occurrence(
            payload.target_table, str(payload.target_id), actor=actor, reason=reason
        )
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/occurrences/reschedule", status_code=status.HTTP_204_NO_CONTENT, tags=["occurrences"]
)
def reschedule_occurrence(
    payload: schemas.OccurrenceRescheduleRequest, request: Request
) -> Response:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request, payload.reason)
    try:
        service.occurrences.reschedule_occurrence(
            payload.target_table,
            str(payload.target_id),
            TimeRange(payload.start, payload.end),
            actor=actor,
            reason=reason,
        )
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/occurrences/modify", response_model=schemas.OccurrenceStateResponse, tags=["occurrences"]
)
def modify_occurrence(
    payload: schemas.OccurrenceModifyRequest, request: Request
) -> schemas.OccurrenceStateResponse:
    service = get_recurrence_service()
    actor = _resolve_actor(request)
    reason = _resolve_reason(request, payload.reason)
    try:
        state = service.occurrences.modify_occurrence(
            payload.target_table,
            str(payload.target_id),
            payload.updates,
            actor=actor,
            reason=reason,
        )
    except RecurrenceError as exc:
        raise _http_error(exc) from exc
    return schemas.OccurrenceStateResponse(
        target_table=payload.target_table, target_id=str(payload.target_id), state=state
    )


@router.get(
    "/occurrences/membership", response_model=schemas.MembershipResponse, tags=["occurrences"]
)
def get_membership(
    target_table: Annotated[str, Query(alias="targetTable")],
    target_id: Annotated[str, Query(alias="targetId")],
) -> schemas.MembershipResponse:
    service = get_recurrence_service()
    return schemas.MembershipResponse(
        **service.occurrences.get_membership(target_table, target_id)
    )


# Maintenance and audit -------------------------------------------------------


@router.post("/maintenance/sweep", response_model=schemas.SweepResponse, tags=["maintenance"])
def run_sweep() -> schemas.SweepResponse:
    service = get_recurrence_service()
    outcomes = service.scheduler.sweep_once()
    return schemas.SweepResponse(outcomes=[_outcome_to_schema(item) for item in outcomes])


@router.get(
    "/events",
    response_model=schemas.EventListResponse,
    tags=["events"],
)
def list_audit_events(
    limit: Annotated[
        int,
        Query(
            ge=1,
            le=500,
            description="Maximum number of recent events to return.",
        ),
    ] = 100,
    series_id: Annotated[int | None, Query(alias="seriesId")] = None,
    group_id: Annotated[int | None, Query(alias="groupId")] = None,
) -> schemas.EventListResponse:
    service = get_recurrence_service()
    events = service.recent_events(limit, series_id=series_id, group_id=group_id)
    return schemas.EventListResponse(events=[_event_to_schema(event) for event in events])


__all__ = ["router"]
