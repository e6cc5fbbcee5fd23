"""Background scheduler that keeps each series materialized ahead of time."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from .config import RecurrenceSettings
from .db_models import InstanceModel, SeriesModel
from .domain import SeriesRecord, series_from_model
from .errors import SeriesNotFoundError
from .events import record_event
from .locks import SeriesLease, new_owner_token
from .materializer import materialize_batch
from .notifications import Notifier, safe_notify
from .permissions import PermissionChecker
from .recurrence import (
    DEFAULT_MAX_COUNT,
    expand,
    first_occurrence_on_or_after,
    hard_ceiling,
    is_terminated,
)
from .storage import TargetStore, check_drift
from .utils import utc_now


@dataclass(frozen=True)
class ExpansionOutcome:
    """Result of one expand-series-to-date unit of work."""

    series_id: int
    status: str
    created: int = 0
    skipped: int = 0
    existing: int = 0
    materialized_through: date | None = None
    detail: str | None = None


@dataclass
class ExpansionScheduler:
    session_factory: sessionmaker[Session]
    store: TargetStore
    settings: RecurrenceSettings
    lease: SeriesLease
    permissions: PermissionChecker
    notifier: Notifier | None = None
    clock: Callable[[], datetime] = utc_now
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _running: bool = field(default=False, init=False)

    async def start(self) -> None:
        if self._task:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.info("Expansion scheduler started.")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Expansion scheduler stopped.")

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception as exc:  # pragma: no cover - keep the loop alive
                logger.exception("Expansion sweep failed.", error=str(exc))
            await asyncio.sleep(self.settings.sweep_interval_seconds)

    # Sweep -------------------------------------------------------------------

    def due_series_ids(self, today: date) -> list[int]:
        threshold = today + timedelta(days=self.settings.lookahead_days)
        with self.session_factory() as session:
            return list(
                session.execute(
                    select(SeriesModel.id)
                    .where(
                        SeriesModel.status == "active",
                        SeriesModel.effective_until.is_(None),
                        or_(
                            SeriesModel.materialized_through.is_(None),
                            SeriesModel.materialized_through < threshold,
                        ),
                    )
                    .order_by(SeriesModel.id)
                ).scalars()
            )

    def sweep_once(self, *, now: datetime | None = None) -> list[ExpansionOutcome]:
        """Extend every active current series that is inside the lookahead window."""
        current = now or self.clock()
        today = current.date()
        outcomes: list[ExpansionOutcome] = []
        due = self.due_series_ids(today)
        logger.bind(due=len(due)).info("Expansion sweep started")

        for series_id in due:
            try:
                with self.session_factory() as session:
                    series = session.get(SeriesModel, series_id)
                    through = series.materialized_through if series else None
                base = max(through or today, today)
                target = base + timedelta(days=self.settings.extension_days)
                outcome = self.expand_series(series_id, target, now=current)
            except Exception as exc:  # noqa: BLE001 - one broken series must not stop the sweep
                logger.exception(
                    "Series expansion failed during sweep.", series_id=series_id, error=str(exc)
                )
                outcome = ExpansionOutcome(series_id, "failed", detail=str(exc))
            if outcome.status == "busy":
                logger.bind(series_id=series_id).warning("Series busy; left for next sweep")
            outcomes.append(outcome)

        logger.bind(
            due=len(due),
            created=sum(outcome.created for outcome in outcomes),
            skipped=sum(outcome.skipped for outcome in outcomes),
        ).info("Expansion sweep finished")
        return outcomes

    # Single series -----------------------------------------------------------

    def _pause(
        self,
        session: Session,
        series: SeriesModel,
        *,
        cause: str,
        issues: list[str],
        now: datetime,
    ) -> ExpansionOutcome:
        series.status = "needs_attention"
        record_event(
            session,
            action="series_paused",
            actor="system",
            series_id=series.id,
            group_id=series.group_id,
            reason=cause,
            metadata={"issues": issues},
            timestamp=now,
        )
        session.commit()
        logger.bind(series_id=series.id, cause=cause, issues=issues).warning(
            "Series paused and needs attention"
        )
        safe_notify(
            self.notifier,
            series.created_by,
            "Recurring series needs attention",
            {"series_id": series.id, "cause": cause, "issues": issues},
        )
        return ExpansionOutcome(
            series.id,
            "needs_attention",
            materialized_through=series.materialized_through,
            detail=cause,
        )

    def _window(self, record: SeriesRecord, until: date | None, today: date) -> tuple[date, date]:
        if until is None:
            base = max(record.materialized_through or today, today)
            until = base + timedelta(days=self.settings.extension_days)
        ceiling = hard_ceiling(today, record.effective_from, self.settings.max_horizon_months)
        target = min(until, ceiling)
        if record.effective_until is not None:
            target = min(target, record.effective_until)
        start = record.effective_from
        if record.materialized_through is not None:
            start = max(start, record.materialized_through + timedelta(days=1))
        return start, target

    def expand_series(
        self,
        series_id: int,
        until: date | None = None,
        *,
        owner: str | None = None,
        wait_seconds: float = 0.0,
        now: datetime | None = None,
    ) -> ExpansionOutcome:
        """Materialize ``series_id`` through ``until`` under the series claim.

        Without ``wait_seconds`` a busy series is reported rather than waited
        for. Schema drift or lost write permission pause the series and still
        count as a successful run.
        """
        current = now or self.clock()
        today = current.date()
        token = owner or new_owner_token("expand")
        if wait_seconds > 0:
            self.lease.acquire(series_id, token, wait_seconds=wait_seconds)
        elif not self.lease.try_claim(series_id, token):
            return ExpansionOutcome(series_id, "busy")

        started = time.perf_counter()
        try:
            with self.session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                record = series_from_model(series)
                if record.status != "active":
                    return ExpansionOutcome(
                        series_id,
                        "skipped",
                        materialized_through=record.materialized_through,
                        detail=f"status is {record.status}",
                    )
                if not self.permissions.can_write(record.created_by, record.target_table):
                    return self._pause(
                        session,
                        series,
                        cause="permission_lost",
                        issues=[f"{record.created_by} may no longer write {record.target_table}"],
                        now=current,
                    )
                issues = check_drift(self.store, session, record.target_table, record.template)
                if issues:
                    return self._pause(
                        session, series, cause="schema_drift", issues=issues, now=current
                    )

                start, target = self._window(record, until, today)
                if target < start:
                    return ExpansionOutcome(
                        series_id, "up_to_date", materialized_through=record.materialized_through
                    )
                existing = set(
                    session.execute(
                        select(InstanceModel.occurrence_date).where(
                            InstanceModel.series_id == series_id,
                            InstanceModel.occurrence_date >= start,
                            InstanceModel.occurrence_date <= target,
                        )
                    ).scalars()
                )

            cap = self.settings.max_occurrences_per_run
            max_count = min(cap + len(existing), DEFAULT_MAX_COUNT + len(existing))
            occurrences = expand(
                record.rule,
                record.anchor,
                record.duration,
                record.timezone,
                from_date=start,
                until_date=target,
                max_count=max_count,
            )
            pending = [item for item in occurrences if item.local_date not in existing]
            through = target
            if len(pending) > cap:
                pending = pending[:cap]
                through = pending[-1].local_date
            elif len(occurrences) == max_count:
                through = occurrences[-1].local_date

            batch = materialize_batch(
                self.session_factory, self.store, record, pending, policy="skip", now=current
            )

            with self.session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                if series.materialized_through is None or series.materialized_through < through:
                    series.materialized_through = through
                status = "expanded"
                if (
                    series.effective_until is None
                    and is_terminated(record.rule)
                    and first_occurrence_on_or_after(
                        record.rule,
                        record.anchor,
                        record.duration,
                        record.timezone,
                        series.materialized_through + timedelta(days=1),
                    )
                    is None
                ):
                    series.status = "ended"
                    status = "ended"
                session.commit()
                materialized_through = series.materialized_through
        finally:
            if owner is None:
                self.lease.release(series_id, token)

        logger.bind(
            series_id=series_id,
            created=batch.created,
            skipped=batch.skipped,
            existing=batch.existing + len(existing),
            materialized_through=str(materialized_through),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        ).info("Series expansion finished")
        return ExpansionOutcome(
            series_id,
            status,
            created=batch.created,
            skipped=batch.skipped,
            existing=batch.existing + len(existing),
            materialized_through=materialized_through,
        )

    def ensure_materialized(
        self, series_id: int, until: date, *, now: datetime | None = None
    ) -> ExpansionOutcome | None:
        """Extend a series on demand before a caller reads past its horizon."""
        current = now or self.clock()
        outcome: ExpansionOutcome | None = None
        while True:
            with self.session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                through = series.materialized_through
            if through is not None and through >= until:
                return outcome
            outcome = self.expand_series(
                series_id,
                until,
                wait_seconds=self.settings.lock_wait_seconds,
                now=current,
            )
            if outcome.status != "expanded" or outcome.materialized_through == through:
                return outcome


__all__ = ["ExpansionOutcome", "ExpansionScheduler"]
