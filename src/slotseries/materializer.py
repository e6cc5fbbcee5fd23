"""Turns expanded occurrences into target records plus instance rows."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .conflicts import preview_conflicts
from .db_models import InstanceModel
from .domain import BatchResult, MaterializeResult, Occurrence, SeriesRecord
from .errors import ConflictAbortError, ExclusionViolation, StorageError, ValidationError
from .storage import TargetStore, scope_value, validate_template
from .utils import to_iso

CONFLICT_SKIP_REASON = "Conflicts with an existing booking"


def _instance_exists(session: Session, series_id: int, occurrence_date: date) -> bool:
    found = session.execute(
        select(InstanceModel.id).where(
            InstanceModel.series_id == series_id,
            InstanceModel.occurrence_date == occurrence_date,
        )
    ).scalar_one_or_none()
    return found is not None


def _add_instance(
    session: Session,
    series: SeriesRecord,
    occurrence_date: date,
    target_ref: str | None,
    *,
    now: datetime,
    conflicting_ref: str | None = None,
) -> None:
    skipped = target_ref is None
    session.add(
        InstanceModel(
            series_id=series.id,
            occurrence_date=occurrence_date,
            target_table=series.target_table,
            target_ref=target_ref,
            is_exception=skipped,
            exception_kind="conflict_skipped" if skipped else None,
            exception_reason=(
                (
                    f"{CONFLICT_SKIP_REASON} ({conflicting_ref})"
                    if conflicting_ref
                    else CONFLICT_SKIP_REASON
                )
                if skipped
                else None
            ),
            exception_by="system" if skipped else None,
            exception_at=to_iso(now) if skipped else None,
            created_at=to_iso(now),
        )
    )


def materialize(
    session: Session,
    store: TargetStore,
    series: SeriesRecord,
    occurrence: Occurrence,
    template: Mapping[str, Any],
    *,
    now: datetime,
    conflicting_ref: str | None = None,
) -> MaterializeResult:
    """Write one occurrence within the caller's transaction.

    Existing instances are left alone. A flagged conflict produces only a
    conflict-skipped instance row. Storage exclusion violations propagate so
    the caller can roll the transaction back.
    """
    if _instance_exists(session, series.id, occurrence.local_date):
        return MaterializeResult(occurrence.local_date, created=False, skipped_reason="exists")

    if conflicting_ref is not None:
        _add_instance(
            session, series, occurrence.local_date, None, now=now, conflicting_ref=conflicting_ref
        )
        session.flush()
        return MaterializeResult(
            occurrence.local_date,
            created=False,
            skipped_reason="conflict",
            conflicting_ref=conflicting_ref,
        )

    ref = store.create_record(session, series.target_table, template, occurrence.range)
    _add_instance(session, series, occurrence.local_date, ref, now=now)
    session.flush()
    return MaterializeResult(occurrence.local_date, created=True, target_ref=ref)


def flag_conflicts(
    session: Session,
    store: TargetStore,
    series: SeriesRecord,
    occurrences: Sequence[Occurrence],
    template: Mapping[str, Any],
) -> dict[date, str]:
    """Map occurrence dates to the committed record each one overlaps."""
    results = preview_conflicts(
        session,
        store,
        series.target_table,
        scope_value(store, series.target_table, template),
        [occurrence.range for occurrence in occurrences],
    )
    return {
        occurrences[result.index].local_date: result.conflicting_ref
        for result in results
        if result.has_conflict and result.conflicting_ref is not None
    }


def materialize_atomic(
    session: Session,
    store: TargetStore,
    series: SeriesRecord,
    occurrences: Sequence[Occurrence],
    template: Mapping[str, Any],
    *,
    now: datetime,
) -> BatchResult:
    """Materialize every occurrence in one transaction or raise ``ConflictAbortError``.

    The caller owns the transaction and must roll it back on error.
    """
    pending = [
        occurrence
        for occurrence in occurrences
        if not _instance_exists(session, series.id, occurrence.local_date)
    ]
    flagged = flag_conflicts(session, store, series, pending, template)
    if flagged:
        raise ConflictAbortError(
            [
                {"occurrence_date": day, "conflicting_ref": ref}
                for day, ref in sorted(flagged.items())
            ]
        )

    batch = BatchResult(existing=len(occurrences) - len(pending))
    for occurrence in pending:
        try:
            batch.add(materialize(session, store, series, occurrence, template, now=now))
        except ExclusionViolation as exc:
            raise ConflictAbortError(
                [{"occurrence_date": occurrence.local_date, "conflicting_ref": None}]
            ) from exc
        except IntegrityError as exc:
            raise StorageError(
                f"Instance for {occurrence.local_date} was written concurrently."
            ) from exc
    return batch


def _record_commit_conflict(
    session_factory: sessionmaker[Session],
    series: SeriesRecord,
    occurrence: Occurrence,
    *,
    now: datetime,
) -> MaterializeResult:
    with session_factory() as session:
        try:
            _add_instance(session, series, occurrence.local_date, None, now=now)
            session.commit()
        except IntegrityError:
            session.rollback()
            return MaterializeResult(occurrence.local_date, created=False, skipped_reason="exists")
    return MaterializeResult(occurrence.local_date, created=False, skipped_reason="conflict")


def materialize_each(
    session_factory: sessionmaker[Session],
    store: TargetStore,
    series: SeriesRecord,
    occurrences: Sequence[Occurrence],
    template: Mapping[str, Any],
    *,
    now: datetime,
    flagged: Mapping[date, str] | None = None,
) -> BatchResult:
    """Materialize occurrences in independent transactions, skipping conflicts."""
    flagged = flagged or {}
    batch = BatchResult()
    for occurrence in occurrences:
        log = logger.bind(series_id=series.id, occurrence_date=str(occurrence.local_date))
        with session_factory() as session:
            try:
                result = materialize(
                    session,
                    store,
                    series,
                    occurrence,
                    template,
                    now=now,
                    conflicting_ref=flagged.get(occurrence.local_date),
                )
                session.commit()
            except ExclusionViolation:
                session.rollback()
                log.debug("Storage rejected overlapping occurrence at commit")
                result = None
            except IntegrityError:
                session.rollback()
                log.debug("Instance already written by another worker")
                result = MaterializeResult(
                    occurrence.local_date, created=False, skipped_reason="exists"
                )
        if result is None:
            result = _record_commit_conflict(session_factory, series, occurrence, now=now)
        if result.skipped_reason == "conflict":
            log.debug("Occurrence skipped due to conflict")
        batch.add(result)
    return batch


def materialize_batch(
    session_factory: sessionmaker[Session],
    store: TargetStore,
    series: SeriesRecord,
    occurrences: Sequence[Occurrence],
    *,
    policy: str = "skip",
    now: datetime,
) -> BatchResult:
    """Validate the template, preview conflicts, then materialize per ``policy``."""
    if policy not in ("skip", "abort"):
        raise ValidationError(f"Unknown conflict policy: {policy}")
    if not occurrences:
        return BatchResult()

    if policy == "abort":
        with session_factory() as session:
            template = validate_template(store, session, series.target_table, series.template)
            # Closing the session without a commit discards every write.
            batch = materialize_atomic(session, store, series, occurrences, template, now=now)
            session.commit()
        return batch

    with session_factory() as session:
        template = validate_template(store, session, series.target_table, series.template)
        flagged = flag_conflicts(session, store, series, occurrences, template)
        session.rollback()
    return materialize_each(
        session_factory, store, series, occurrences, template, now=now, flagged=flagged
    )


__all__ = [
    "flag_conflicts",
    "materialize",
    "materialize_atomic",
    "materialize_batch",
    "materialize_each",
]
