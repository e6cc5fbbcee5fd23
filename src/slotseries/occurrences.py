"""Per-instance exception tracking for single-occurrence edits."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db_models import InstanceModel, SeriesGroupModel, SeriesModel
from .domain import TimeRange, series_from_model
from .errors import (
    ConflictAbortError,
    ExclusionViolation,
    InstanceNotFoundError,
    InvalidTransitionError,
)
from .events import record_event
from .recurrence import first_occurrence_on_or_after
from .storage import TargetStore, record_time_range, scope_value, validate_template
from .utils import to_iso, utc_now

ACTIVE = "active"
MODIFIED = "modified"
RESCHEDULED = "rescheduled"
CANCELLED = "cancelled"
CONFLICT_SKIPPED = "conflict_skipped"

DIRECT_DELETE_REASON = "Target record deleted directly"

# ``None`` is the state of an instance that has not been written yet.
TRANSITIONS: dict[str | None, frozenset[str]] = {
    None: frozenset({ACTIVE, CONFLICT_SKIPPED}),
    ACTIVE: frozenset({ACTIVE, MODIFIED, RESCHEDULED, CANCELLED}),
    MODIFIED: frozenset({ACTIVE, MODIFIED, RESCHEDULED, CANCELLED}),
    RESCHEDULED: frozenset({ACTIVE, MODIFIED, RESCHEDULED, CANCELLED}),
    CANCELLED: frozenset(),
    CONFLICT_SKIPPED: frozenset(),
}


def instance_state(instance: InstanceModel) -> str:
    return instance.exception_kind or ACTIVE


def check_transition(current: str | None, requested: str) -> None:
    if requested not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current or "new", requested)


def classify_edit(
    *,
    template: Mapping[str, Any],
    record: Mapping[str, Any],
    edited_fields: Mapping[str, Any],
    current_range: TimeRange | None,
    expected_range: TimeRange | None,
) -> str:
    """Label an occurrence after an edit by comparing it to its series.

    A time-range difference wins over field differences.
    """
    if current_range is None or current_range != expected_range:
        return RESCHEDULED
    keys = set(template) | set(edited_fields)
    if any(record.get(key) != template.get(key) for key in keys):
        return MODIFIED
    return ACTIVE


class ExceptionTracker:
    """Applies cancel, reschedule, and modify edits to single occurrences."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: TargetStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._clock = clock

    def _find_instance(self, session: Session, table: str, ref: str) -> InstanceModel | None:
        return session.execute(
            select(InstanceModel).where(
                InstanceModel.target_table == table,
                InstanceModel.target_ref == str(ref),
            )
        ).scalar_one_or_none()

    def _require_instance(self, session: Session, table: str, ref: str) -> InstanceModel:
        instance = self._find_instance(session, table, ref)
        if instance is None:
            raise InstanceNotFoundError(f"Record {ref} in {table} does not belong to a series.")
        return instance

    def _expected_range(self, series: SeriesModel, instance: InstanceModel) -> TimeRange | None:
        record = series_from_model(series)
        occurrence = first_occurrence_on_or_after(
            record.rule,
            record.anchor,
            record.duration,
            record.timezone,
            instance.occurrence_date,
        )
        if occurrence is None or occurrence.local_date != instance.occurrence_date:
            return None
        return occurrence.range

    def _apply_state(
        self,
        instance: InstanceModel,
        state: str,
        *,
        actor: str | None,
        reason: str | None,
        now: datetime,
        original_range: TimeRange | None = None,
    ) -> None:
        check_transition(instance_state(instance), state)
        if state == ACTIVE:
            instance.is_exception = False
            instance.exception_kind = None
            instance.original_start = None
            instance.original_end = None
            instance.exception_reason = None
            instance.exception_by = None
            instance.exception_at = None
            return
        instance.is_exception = True
        instance.exception_kind = state
        instance.exception_reason = reason
        instance.exception_by = actor
        instance.exception_at = to_iso(now)
        if state == RESCHEDULED:
            if instance.original_start is None and original_range is not None:
                instance.original_start = to_iso(original_range.start)
                instance.original_end = to_iso(original_range.end)
        else:
            instance.original_start = None
            instance.original_end = None

    def cancel_occurrence(
        self,
        table: str,
        ref: str,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """Delete one occurrence's target record and keep its instance as history.

        Returns False when there was nothing left to cancel.
        """
        ref = str(ref)
        now = self._clock()
        with self._session_factory() as session:
            instance = self._find_instance(session, table, ref)
            if instance is None:
                deleted = self._store.delete_record(session, table, ref)
                session.commit()
                if deleted:
                    logger.bind(table=table, ref=ref).info(
                        "Deleted record that belongs to no series"
                    )
                return deleted

            self._apply_state(instance, CANCELLED, actor=actor, reason=reason, now=now)
            self._store.delete_record(session, table, ref)
            instance.target_ref = None
            series = session.get(SeriesModel, instance.series_id)
            record_event(
                session,
                action="occurrence_cancelled",
                actor=actor,
                series_id=instance.series_id,
                group_id=series.group_id if series else None,
                reason=reason,
                metadata={"occurrence_date": instance.occurrence_date, "target_ref": ref},
                timestamp=now,
            )
            session.commit()

        logger.bind(
            table=table, ref=ref, occurrence_date=str(instance.occurrence_date)
        ).info("Occurrence cancelled")
        return True

    def edit_occurrence(
        self,
        table: str,
        ref: str,
        fields: Mapping[str, Any] | None = None,
        time_range: TimeRange | None = None,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> str:
        """Apply a field and/or time edit and return the re-evaluated state."""
        ref = str(ref)
        now = self._clock()
        with self._session_factory() as session:
            instance = self._require_instance(session, table, ref)
            check_transition(instance_state(instance), MODIFIED)
            series = session.get(SeriesModel, instance.series_id)
            if series is None:
                raise InstanceNotFoundError(f"Series for record {ref} no longer exists.")

            cleaned = validate_template(self._store, session, table, fields or {}, partial=True)
            previous_range = record_time_range(self._store, session, table, ref)
            if time_range is not None:
                merged = {**series_from_model(series).template, **cleaned}
                conflicting = self._store.find_overlapping(
                    session,
                    table,
                    scope_value(self._store, table, merged),
                    time_range,
                    exclude_ref=ref,
                )
                if conflicting is not None:
                    raise ConflictAbortError(
                        [
                            {
                                "occurrence_date": instance.occurrence_date,
                                "conflicting_ref": conflicting,
                            }
                        ]
                    )
            try:
                updated = self._store.update_record(session, table, ref, cleaned, time_range)
            except ExclusionViolation as exc:
                raise ConflictAbortError(
                    [{"occurrence_date": instance.occurrence_date, "conflicting_ref": None}]
                ) from exc
            if not updated:
                raise InstanceNotFoundError(f"Record {ref} no longer exists in {table}.")

            record = self._store.get_record(session, table, ref) or {}
            state = classify_edit(
                template=series_from_model(series).template,
                record=record,
                edited_fields=cleaned,
                current_range=record_time_range(self._store, session, table, ref),
                expected_range=self._expected_range(series, instance),
            )
            self._apply_state(
                instance,
                state,
                actor=actor,
                reason=reason,
                now=now,
                original_range=previous_range,
            )
            action = "occurrence_rescheduled" if time_range is not None else "occurrence_modified"
            record_event(
                session,
                action=action,
                actor=actor,
                series_id=series.id,
                group_id=series.group_id,
                reason=reason,
                metadata={
                    "occurrence_date": instance.occurrence_date,
                    "target_ref": ref,
                    "state": state,
                    "fields": sorted(cleaned),
                },
                timestamp=now,
            )
            session.commit()

        logger.bind(table=table, ref=ref, state=state).info("Occurrence edited")
        return state

    def reschedule_occurrence(
        self,
        table: str,
        ref: str,
        time_range: TimeRange,
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> str:
        return self.edit_occurrence(table, ref, None, time_range, actor=actor, reason=reason)

    def modify_occurrence(
        self,
        table: str,
        ref: str,
        fields: Mapping[str, Any],
        *,
        actor: str | None = None,
        reason: str | None = None,
    ) -> str:
        return self.edit_occurrence(table, ref, fields, None, actor=actor, reason=reason)

    def record_target_deleted(self, table: str, ref: str, *, actor: str | None = None) -> bool:
        """Mark an instance cancelled after its target record vanished elsewhere."""
        ref = str(ref)
        now = self._clock()
        with self._session_factory() as session:
            instance = self._find_instance(session, table, ref)
            if instance is None:
                return False
            self._apply_state(
                instance, CANCELLED, actor=actor, reason=DIRECT_DELETE_REASON, now=now
            )
            instance.target_ref = None
            session.commit()
        logger.bind(table=table, ref=ref).warning("Instance orphaned by direct delete")
        return True

    def get_membership(self, table: str, ref: str) -> dict[str, Any]:
        """Describe the series an existing target record belongs to, if any."""
        with self._session_factory() as session:
            row = session.execute(
                select(InstanceModel, SeriesModel, SeriesGroupModel)
                .join(SeriesModel, SeriesModel.id == InstanceModel.series_id)
                .join(SeriesGroupModel, SeriesGroupModel.id == SeriesModel.group_id)
                .where(
                    InstanceModel.target_table == table,
                    InstanceModel.target_ref == str(ref),
                )
            ).first()
            if row is None:
                return {"is_series_member": False}
            instance, series, group = row
            return {
                "is_series_member": True,
                "series_id": series.id,
                "group_id": group.id,
                "group_name": group.display_name,
                "group_color": group.color,
                "version_number": series.version_number,
                "occurrence_date": instance.occurrence_date,
                "is_exception": bool(instance.is_exception),
                "state": instance_state(instance),
                "template": series_from_model(series).template,
            }


__all__ = [
    "ACTIVE",
    "CANCELLED",
    "CONFLICT_SKIPPED",
    "DIRECT_DELETE_REASON",
    "ExceptionTracker",
    "MODIFIED",
    "RESCHEDULED",
    "TRANSITIONS",
    "check_transition",
    "classify_edit",
    "instance_state",
]
