"""Series version manager: groups, versions, splits, and template propagation."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from dateutil.relativedelta import relativedelta
from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from .config import RecurrenceSettings
from .conflicts import ConflictResult, preview_conflicts
from .db_models import InstanceModel, SeriesGroupModel, SeriesModel
from .domain import (
    CONFLICT_POLICIES,
    SERIES_STATUSES,
    GroupRecord,
    InstanceRecord,
    Occurrence,
    SeriesRecord,
    group_from_model,
    instance_from_model,
    series_from_model,
)
from .errors import (
    ConflictAbortError,
    ExclusionViolation,
    GroupBusyError,
    GroupNotFoundError,
    InvalidSplitError,
    PermissionDeniedError,
    SeriesNotFoundError,
    ValidationError,
)
from .events import record_event
from .locks import GroupLease, SeriesLease, new_owner_token
from .materializer import flag_conflicts, materialize_atomic, materialize_each
from .recurrence import (
    ensure_utc,
    expand,
    first_occurrence_on_or_after,
    hard_ceiling,
    horizon_end,
    local_anchor,
    parse_duration,
    resolve_timezone,
    rule_count,
    truncate_rule,
    validate_rule,
    with_count,
)
from .scheduler import ExpansionOutcome, ExpansionScheduler
from .storage import TargetStore, check_drift, scope_value, validate_template
from .utils import to_iso, utc_now

_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


@dataclass(frozen=True)
class SeriesDefinition:
    """Everything needed to register a new recurring series."""

    target_table: str
    template: dict[str, Any]
    rule: str
    anchor: datetime
    duration: timedelta | str | int
    timezone: str
    group_name: str | None = None
    group_description: str | None = None
    group_color: str | None = None
    group_id: int | None = None
    expand_until: date | None = None
    conflict_policy: str = "skip"


@dataclass
class CreateResult:
    group_id: int
    series_id: int
    instances_created: int
    instances_skipped: int
    skipped_occurrences: list[date] = field(default_factory=list)


@dataclass(frozen=True)
class PreviewedOccurrence:
    occurrence: Occurrence
    conflict: ConflictResult


@dataclass(frozen=True)
class GroupSummary:
    group: GroupRecord
    version_count: int
    started_on: date | None
    current_series_id: int | None
    current_version: int | None
    active_instance_count: int
    exception_count: int
    status: str


# Utility ---------------------------------------------------------------------


def _validate_color(color: str | None) -> str | None:
    if color is None or color == "":
        return None
    if not _COLOR_PATTERN.match(color):
        raise ValidationError("Color must be a hex value such as #1A2B3C.")
    return color.upper()


def _derive_group_status(versions: list[SeriesModel]) -> str:
    if any(item.effective_until is None and item.status == "active" for item in versions):
        return "active"
    if any(item.status == "needs_attention" for item in versions):
        return "needs_attention"
    return "ended"


class SeriesManager:
    """Creates and edits series versions under series and group claims."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: TargetStore,
        scheduler: ExpansionScheduler,
        lease: SeriesLease,
        settings: RecurrenceSettings,
        *,
        group_lease: GroupLease | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._scheduler = scheduler
        self._lease = lease
        self._settings = settings
        self._clock = clock
        self._group_lease = group_lease or GroupLease(
            session_factory, ttl_seconds=settings.claim_ttl_seconds, clock=clock
        )

    def _hold_group(self, group_id: int) -> AbstractContextManager[str]:
        return self._group_lease.hold([group_id], wait_seconds=self._settings.lock_wait_seconds)

    # Reads ---------------------------------------------------------------

    def get_series(self, series_id: int) -> SeriesRecord:
        with self._session_factory() as session:
            series = session.get(SeriesModel, series_id)
            if series is None:
                raise SeriesNotFoundError(series_id)
            return series_from_model(series)

    def list_instances(
        self,
        series_id: int,
        *,
        until: date | None = None,
        extend: bool = True,
    ) -> list[InstanceRecord]:
        """Return a series' instances, extending the horizon first when asked."""
        self.get_series(series_id)
        if until is not None and extend:
            self._scheduler.ensure_materialized(series_id, until, now=self._clock())
        stmt = select(InstanceModel).where(InstanceModel.series_id == series_id)
        if until is not None:
            stmt = stmt.where(InstanceModel.occurrence_date <= until)
        with self._session_factory() as session:
            rows = session.execute(stmt.order_by(InstanceModel.occurrence_date)).scalars()
            return [instance_from_model(row) for row in rows]

    def _summarize(self, session: Session, group: SeriesGroupModel) -> GroupSummary:
        versions = list(
            session.execute(
                select(SeriesModel)
                .where(SeriesModel.group_id == group.id)
                .order_by(SeriesModel.version_number)
            ).scalars()
        )
        series_ids = [item.id for item in versions]
        live = exceptions = 0
        if series_ids:
            live = session.execute(
                select(func.count(InstanceModel.id)).where(
                    InstanceModel.series_id.in_(series_ids),
                    InstanceModel.target_ref.is_not(None),
                )
            ).scalar_one()
            exceptions = session.execute(
                select(func.count(InstanceModel.id)).where(
                    InstanceModel.series_id.in_(series_ids),
                    InstanceModel.is_exception.is_(True),
                )
            ).scalar_one()
        current = next((item for item in versions if item.effective_until is None), None)
        return GroupSummary(
            group=group_from_model(group),
            version_count=len(versions),
            started_on=min((item.effective_from for item in versions), default=None),
            current_series_id=current.id if current else None,
            current_version=current.version_number if current else None,
            active_instance_count=live,
            exception_count=exceptions,
            status=_derive_group_status(versions),
        )

    def list_groups(self) -> list[GroupSummary]:
        with self._session_factory() as session:
            groups = list(
                session.execute(
                    select(SeriesGroupModel).order_by(SeriesGroupModel.id)
                ).scalars()
            )
            return [self._summarize(session, group) for group in groups]

    def get_group(self, group_id: int) -> tuple[GroupSummary, list[SeriesRecord]]:
        with self._session_factory() as session:
            group = session.get(SeriesGroupModel, group_id)
            if group is None:
                raise GroupNotFoundError(group_id)
            versions = list(
                session.execute(
                    select(SeriesModel)
                    .where(SeriesModel.group_id == group_id)
                    .order_by(SeriesModel.version_number)
                ).scalars()
            )
            return self._summarize(session, group), [series_from_model(row) for row in versions]

    # Create --------------------------------------------------------------

    def _normalise(self, definition: SeriesDefinition) -> tuple[str, datetime, timedelta]:
        resolve_timezone(definition.timezone)
        rule = validate_rule(
            definition.rule, allow_unterminated=self._settings.allow_unterminated_rules
        )
        if definition.conflict_policy not in CONFLICT_POLICIES:
            raise ValidationError(f"Unknown conflict policy: {definition.conflict_policy}")
        return rule, ensure_utc(definition.anchor), parse_duration(definition.duration)

    def _initial_occurrences(
        self, rule: str, anchor: datetime, duration: timedelta, definition: SeriesDefinition
    ) -> tuple[list[Occurrence], date]:
        anchor_date = local_anchor(anchor, definition.timezone).date()
        until = definition.expand_until or horizon_end(
            anchor, definition.timezone, self._settings.default_horizon_months
        )
        ceiling = hard_ceiling(
            self._clock().date(), anchor_date, self._settings.max_horizon_months
        )
        until = min(until, ceiling)
        cap = self._settings.max_occurrences_per_run
        occurrences = expand(
            rule, anchor, duration, definition.timezone, until_date=until, max_count=cap
        )
        if len(occurrences) == cap:
            until = occurrences[-1].local_date
        return occurrences, until

    def preview_series(self, definition: SeriesDefinition) -> list[PreviewedOccurrence]:
        """Expand a proposed series and report conflicts without writing."""
        rule, anchor, duration = self._normalise(definition)
        occurrences, _ = self._initial_occurrences(rule, anchor, duration, definition)
        with self._session_factory() as session:
            template = validate_template(
                self._store, session, definition.target_table, definition.template
            )
            results = preview_conflicts(
                session,
                self._store,
                definition.target_table,
                scope_value(self._store, definition.target_table, template),
                [item.range for item in occurrences],
            )
        return [
            PreviewedOccurrence(occurrence, result)
            for occurrence, result in zip(occurrences, results)
        ]

    def create_series(
        self, definition: SeriesDefinition, *, actor: str | None = None
    ) -> CreateResult:
        """Register a series (and its group when new) and run the first batch."""
        rule, anchor, duration = self._normalise(definition)
        occurrences, through = self._initial_occurrences(rule, anchor, duration, definition)
        now = self._clock()
        color = _validate_color(definition.group_color)
        if not self._scheduler.permissions.can_write(actor or "system", definition.target_table):
            raise PermissionDeniedError(
                f"{actor or 'system'} may not write to {definition.target_table}."
            )

        # Adding a version to an existing group excludes a concurrent group delete.
        group_claim: AbstractContextManager[object] = nullcontext()
        if definition.group_id is not None:
            with self._session_factory() as session:
                if session.get(SeriesGroupModel, definition.group_id) is None:
                    raise GroupNotFoundError(definition.group_id)
            group_claim = self._hold_group(definition.group_id)
        # The skip policy commits before materializing; the claim written with the
        # row keeps a sweep from expanding the series in between.
        token = new_owner_token("create") if definition.conflict_policy != "abort" else None

        with group_claim, self._session_factory() as session:
            template = validate_template(
                self._store, session, definition.target_table, definition.template
            )
            if definition.group_id is not None:
                group = session.get(SeriesGroupModel, definition.group_id)
                if group is None:
                    raise GroupNotFoundError(definition.group_id)
                current = session.execute(
                    select(SeriesModel.id).where(
                        SeriesModel.group_id == group.id,
                        SeriesModel.effective_until.is_(None),
                    )
                ).first()
                if current is not None:
                    raise ValidationError(
                        "Group already has a current version; split it instead."
                    )
            else:
                name = (definition.group_name or "").strip()
                if not name:
                    raise ValidationError("Group name is required for a new series.")
                group = SeriesGroupModel(
                    display_name=name,
                    description=definition.group_description,
                    color=color,
                    created_by=actor,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
                session.add(group)
                session.flush()

            version = session.execute(
                select(func.coalesce(func.max(SeriesModel.version_number), 0)).where(
                    SeriesModel.group_id == group.id
                )
            ).scalar_one()
            model = SeriesModel(
                group_id=group.id,
                version_number=version + 1,
                effective_from=local_anchor(anchor, definition.timezone).date(),
                effective_until=None,
                target_table=definition.target_table,
                template_json=json.dumps(template),
                rule=rule,
                anchor=to_iso(anchor),
                duration_seconds=int(duration.total_seconds()),
                timezone=definition.timezone,
                status="active",
                materialized_through=None,
                created_by=actor,
                created_at=to_iso(now),
                claimed_by=token,
                claimed_until=self._lease.claim_until() if token else None,
            )
            session.add(model)
            session.flush()
            record = series_from_model(model)
            record_event(
                session,
                action="series_created",
                actor=actor,
                series_id=model.id,
                group_id=group.id,
                metadata={"rule": rule, "occurrences": len(occurrences)},
                timestamp=now,
            )

            if definition.conflict_policy == "abort":
                batch = materialize_atomic(
                    session, self._store, record, occurrences, template, now=now
                )
                model.materialized_through = through
                session.commit()
            else:
                session.commit()
                batch = None
            group_id = group.id

        if batch is None:
            with self._lease.hold(
                [record.id], owner=token, wait_seconds=self._settings.lock_wait_seconds
            ):
                with self._session_factory() as session:
                    flagged = flag_conflicts(session, self._store, record, occurrences, template)
                batch = materialize_each(
                    self._session_factory,
                    self._store,
                    record,
                    occurrences,
                    template,
                    now=now,
                    flagged=flagged,
                )
                with self._session_factory() as session:
                    session.execute(
                        update(SeriesModel)
                        .where(SeriesModel.id == record.id)
                        .values(materialized_through=through)
                        .execution_options(synchronize_session=False)
                    )
                    session.commit()

        logger.bind(
            group_id=group_id,
            series_id=record.id,
            table=record.target_table,
            created=batch.created,
            skipped=batch.skipped,
        ).info("Series created")
        return CreateResult(
            group_id=group_id,
            series_id=record.id,
            instances_created=batch.created,
            instances_skipped=batch.skipped,
            skipped_occurrences=[item.occurrence_date for item in batch.skipped_occurrences],
        )

    def expand_instances(self, series_id: int, until: date) -> ExpansionOutcome:
        self.get_series(series_id)
        return self._scheduler.expand_series(
            series_id, until, wait_seconds=self._settings.lock_wait_seconds, now=self._clock()
        )

    # Split ---------------------------------------------------------------

    def _reconcile_repointed(
        self,
        session: Session,
        series: SeriesModel,
        template: Mapping[str, Any],
    ) -> dict[str, int]:
        """Bring re-pointed, non-exception instances in line with a new version."""
        record = series_from_model(series)
        instances = list(
            session.execute(
                select(InstanceModel)
                .where(
                    InstanceModel.series_id == series.id,
                    InstanceModel.is_exception.is_(False),
                    InstanceModel.target_ref.is_not(None),
                )
                .order_by(InstanceModel.occurrence_date)
            ).scalars()
        )
        counts = {"updated": 0, "removed": 0}
        if not instances:
            return counts

        produced = {
            item.local_date: item
            for item in expand(
                record.rule,
                record.anchor,
                record.duration,
                record.timezone,
                from_date=instances[0].occurrence_date,
                until_date=instances[-1].occurrence_date,
                max_count=len(instances) + self._settings.max_occurrences_per_run,
            )
        }
        scope = scope_value(self._store, record.target_table, template)
        for instance in instances:
            occurrence = produced.get(instance.occurrence_date)
            if occurrence is None:
                self._store.delete_record(session, record.target_table, instance.target_ref)
                session.delete(instance)
                counts["removed"] += 1
                continue
            conflicting = self._store.find_overlapping(
                session,
                record.target_table,
                scope,
                occurrence.range,
                exclude_ref=instance.target_ref,
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
                self._store.update_record(
                    session,
                    record.target_table,
                    instance.target_ref,
                    template,
                    occurrence.range,
                )
            except ExclusionViolation as exc:
                raise ConflictAbortError(
                    [{"occurrence_date": instance.occurrence_date, "conflicting_ref": None}]
                ) from exc
            counts["updated"] += 1
        return counts

    def split_from_date(
        self,
        series_id: int,
        split_date: date,
        *,
        new_anchor: datetime | None = None,
        new_template: Mapping[str, Any] | None = None,
        new_duration: timedelta | str | int | None = None,
        actor: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Branch a new version starting at ``split_date`` and return its id."""
        now = self._clock()
        owning_group = self.get_series(series_id).group_id
        with self._hold_group(owning_group), self._lease.hold(
            [series_id], wait_seconds=self._settings.lock_wait_seconds
        ):
            with self._session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                if series.effective_until is not None:
                    raise InvalidSplitError("Only the current version of a series can be split.")
                if split_date <= series.effective_from:
                    raise InvalidSplitError(
                        "Split date must fall after the version's effective-from date."
                    )
                record = series_from_model(series)
                duration = (
                    parse_duration(new_duration) if new_duration is not None else record.duration
                )
                template = validate_template(
                    self._store,
                    session,
                    record.target_table,
                    {**record.template, **dict(new_template or {})},
                )

                if new_anchor is not None:
                    anchor = ensure_utc(new_anchor)
                    if local_anchor(anchor, record.timezone).date() < split_date:
                        raise InvalidSplitError("New anchor must not precede the split date.")
                else:
                    first = first_occurrence_on_or_after(
                        record.rule, record.anchor, duration, record.timezone, split_date
                    )
                    if first is None:
                        raise InvalidSplitError("No occurrences remain on or after the split date.")
                    anchor = first.start

                rule = record.rule
                count = rule_count(rule)
                if count is not None:
                    used = len(
                        expand(
                            record.rule,
                            record.anchor,
                            record.duration,
                            record.timezone,
                            until_date=split_date - timedelta(days=1),
                            max_count=count,
                        )
                    )
                    if count - used < 1:
                        raise InvalidSplitError("The series has no occurrences left to split off.")
                    rule = with_count(rule, count - used)

                last_day = split_date - timedelta(days=1)
                previous_through = series.materialized_through
                series.effective_until = last_day
                series.rule = truncate_rule(record.rule, last_day, record.timezone)
                if previous_through is not None and previous_through > last_day:
                    series.materialized_through = last_day

                version = session.execute(
                    select(func.max(SeriesModel.version_number)).where(
                        SeriesModel.group_id == series.group_id
                    )
                ).scalar_one()
                successor = SeriesModel(
                    group_id=series.group_id,
                    version_number=version + 1,
                    effective_from=split_date,
                    effective_until=None,
                    target_table=record.target_table,
                    template_json=json.dumps(template),
                    rule=rule,
                    anchor=to_iso(anchor),
                    duration_seconds=int(duration.total_seconds()),
                    timezone=record.timezone,
                    status=series.status,
                    materialized_through=None,
                    created_by=actor or record.created_by,
                    created_at=to_iso(now),
                )
                session.add(successor)
                session.flush()

                moved = session.execute(
                    update(InstanceModel)
                    .where(
                        InstanceModel.series_id == series.id,
                        InstanceModel.occurrence_date >= split_date,
                    )
                    .values(series_id=successor.id)
                    .execution_options(synchronize_session=False)
                ).rowcount
                counts = self._reconcile_repointed(session, successor, template)
                record_event(
                    session,
                    action="series_split",
                    actor=actor,
                    series_id=series.id,
                    group_id=series.group_id,
                    reason=reason,
                    metadata={
                        "new_series_id": successor.id,
                        "split_date": split_date,
                        "repointed": moved,
                        **counts,
                    },
                    timestamp=now,
                )
                session.commit()
                successor_id = successor.id
                group_id = series.group_id

            if previous_through is not None and previous_through >= split_date:
                self._scheduler.expand_series(
                    successor_id,
                    previous_through,
                    wait_seconds=self._settings.lock_wait_seconds,
                    now=now,
                )

        logger.bind(
            series_id=series_id,
            new_series_id=successor_id,
            group_id=group_id,
            split_date=str(split_date),
            repointed=moved,
        ).info("Series split")
        return successor_id

    # Template and schedule edits ----------------------------------------

    def update_template(
        self,
        series_id: int,
        new_template: Mapping[str, Any],
        *,
        skip_exceptions: bool = True,
        actor: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Store a merged template and push changed fields to live instances."""
        now = self._clock()
        self.get_series(series_id)
        with self._lease.hold([series_id], wait_seconds=self._settings.lock_wait_seconds):
            with self._session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                record = series_from_model(series)
                # Keys whose columns were dropped fall out so a drifted series can recover.
                writable = self._store.writable_fields(session, record.target_table)
                kept = {key: value for key, value in record.template.items() if key in writable}
                merged = validate_template(
                    self._store,
                    session,
                    record.target_table,
                    {**kept, **dict(new_template)},
                )
                changed = {
                    key: value
                    for key, value in merged.items()
                    if key not in record.template or record.template[key] != value
                }
                series.template_json = json.dumps(merged)
                series.template_updated_at = to_iso(now)
                series.template_updated_by = actor
                if series.status == "needs_attention" and not check_drift(
                    self._store, session, record.target_table, merged
                ):
                    series.status = "active"

                stmt = select(InstanceModel).where(
                    InstanceModel.series_id == series_id,
                    InstanceModel.target_ref.is_not(None),
                )
                if skip_exceptions:
                    stmt = stmt.where(InstanceModel.is_exception.is_(False))
                updated = 0
                for instance in list(session.execute(stmt).scalars()):
                    try:
                        if changed and self._store.update_record(
                            session, record.target_table, instance.target_ref, changed
                        ):
                            updated += 1
                    except ExclusionViolation as exc:
                        raise ConflictAbortError(
                            [
                                {
                                    "occurrence_date": instance.occurrence_date,
                                    "conflicting_ref": None,
                                }
                            ]
                        ) from exc
                record_event(
                    session,
                    action="series_template_updated",
                    actor=actor,
                    series_id=series_id,
                    group_id=series.group_id,
                    reason=reason,
                    metadata={"fields": sorted(changed), "updated": updated},
                    timestamp=now,
                )
                session.commit()

        logger.bind(series_id=series_id, fields=sorted(changed), updated=updated).info(
            "Series template updated"
        )
        return updated

    def update_schedule(
        self,
        series_id: int,
        *,
        rule: str | None = None,
        anchor: datetime | None = None,
        duration: timedelta | str | int | None = None,
        timezone: str | None = None,
        actor: str | None = None,
        reason: str | None = None,
    ) -> ExpansionOutcome:
        """Replace a current version's schedule in place and re-expand it.

        Non-exception instances and their target records are removed; exception
        instances stay as history.
        """
        now = self._clock()
        self.get_series(series_id)
        with self._lease.hold(
            [series_id], wait_seconds=self._settings.lock_wait_seconds
        ) as token:
            with self._session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                if series.effective_until is not None:
                    raise ValidationError("Only the current version's schedule can change.")
                record = series_from_model(series)
                zone_name = timezone or record.timezone
                resolve_timezone(zone_name)
                new_rule = validate_rule(
                    rule or record.rule,
                    allow_unterminated=self._settings.allow_unterminated_rules,
                )
                new_anchor = ensure_utc(anchor) if anchor is not None else record.anchor
                new_duration = (
                    parse_duration(duration) if duration is not None else record.duration
                )
                if local_anchor(new_anchor, zone_name).date() < series.effective_from:
                    raise ValidationError(
                        "Anchor must not precede the version's effective-from date."
                    )

                removable = list(
                    session.execute(
                        select(InstanceModel).where(
                            InstanceModel.series_id == series_id,
                            InstanceModel.is_exception.is_(False),
                        )
                    ).scalars()
                )
                for instance in removable:
                    if instance.target_ref is not None:
                        self._store.delete_record(
                            session, record.target_table, instance.target_ref
                        )
                    session.delete(instance)

                series.rule = new_rule
                series.anchor = to_iso(new_anchor)
                series.duration_seconds = int(new_duration.total_seconds())
                series.timezone = zone_name
                series.materialized_through = None
                if series.status == "ended":
                    series.status = "active"
                record_event(
                    session,
                    action="series_schedule_updated",
                    actor=actor,
                    series_id=series_id,
                    group_id=series.group_id,
                    reason=reason,
                    metadata={"rule": new_rule, "removed": len(removable)},
                    timestamp=now,
                )
                session.commit()

            until = max(now.date(), local_anchor(new_anchor, zone_name).date()) + relativedelta(
                months=self._settings.default_horizon_months
            )
            outcome = self._scheduler.expand_series(series_id, until, owner=token, now=now)

        logger.bind(series_id=series_id, removed=len(removable), created=outcome.created).info(
            "Series schedule updated"
        )
        return outcome

    def set_status(
        self, series_id: int, status: str, *, actor: str | None = None, reason: str | None = None
    ) -> SeriesRecord:
        """Pause or resume a series; resuming re-checks the target schema."""
        if status not in SERIES_STATUSES:
            raise ValidationError(f"Unknown series status: {status}")
        now = self._clock()
        self.get_series(series_id)
        with self._lease.hold([series_id], wait_seconds=self._settings.lock_wait_seconds):
            with self._session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                if status == "active":
                    issues = check_drift(
                        self._store, session, series.target_table, json.loads(series.template_json)
                    )
                    if issues:
                        raise ValidationError(
                            "Template no longer matches the target table: " + "; ".join(issues)
                        )
                previous = series.status
                series.status = status
                record_event(
                    session,
                    action="series_paused" if status != "active" else "series_resumed",
                    actor=actor,
                    series_id=series_id,
                    group_id=series.group_id,
                    reason=reason,
                    metadata={"from": previous, "to": status},
                    timestamp=now,
                )
                session.commit()
                return series_from_model(series)

    def update_group_info(
        self,
        group_id: int,
        *,
        display_name: str | None = None,
        description: str | None = None,
        color: str | None = None,
        actor: str | None = None,
    ) -> GroupRecord:
        """Edit group metadata; blank names keep the existing name."""
        now = self._clock()
        with self._session_factory() as session:
            group = session.get(SeriesGroupModel, group_id)
            if group is None:
                raise GroupNotFoundError(group_id)
            if display_name is not None and display_name.strip():
                group.display_name = display_name.strip()
            if description is not None:
                group.description = description or None
            if color is not None:
                group.color = _validate_color(color)
            group.updated_at = to_iso(now)
            record_event(
                session,
                action="group_updated",
                actor=actor,
                group_id=group_id,
                metadata={"display_name": group.display_name, "color": group.color},
                timestamp=now,
            )
            session.commit()
            return group_from_model(group)

    # Deletes -------------------------------------------------------------

    def _delete_series_rows(self, session: Session, series: SeriesModel) -> int:
        instances = list(
            session.execute(
                select(InstanceModel).where(InstanceModel.series_id == series.id)
            ).scalars()
        )
        removed = 0
        for instance in instances:
            if instance.target_ref is not None and self._store.delete_record(
                session, series.target_table, instance.target_ref
            ):
                removed += 1
        session.execute(delete(InstanceModel).where(InstanceModel.series_id == series.id))
        session.delete(series)
        session.flush()
        return removed

    def _group_is_empty(self, session: Session, group_id: int) -> bool:
        remaining = session.execute(
            select(func.count(SeriesModel.id)).where(SeriesModel.group_id == group_id)
        ).scalar_one()
        return remaining == 0

    def delete_series(
        self, series_id: int, *, actor: str | None = None, reason: str | None = None
    ) -> None:
        """Delete a series with its target records, and its group when emptied."""
        now = self._clock()
        owning_group = self.get_series(series_id).group_id
        with self._hold_group(owning_group), self._lease.hold(
            [series_id], wait_seconds=self._settings.lock_wait_seconds
        ):
            with self._session_factory() as session:
                series = session.get(SeriesModel, series_id)
                if series is None:
                    raise SeriesNotFoundError(series_id)
                group_id = series.group_id
                removed = self._delete_series_rows(session, series)
                record_event(
                    session,
                    action="series_deleted",
                    actor=actor,
                    series_id=series_id,
                    group_id=group_id,
                    reason=reason,
                    metadata={"target_records_deleted": removed},
                    timestamp=now,
                )
                group_removed = self._group_is_empty(session, group_id)
                if group_removed:
                    session.execute(delete(SeriesGroupModel).where(SeriesGroupModel.id == group_id))
                session.commit()

        logger.bind(
            series_id=series_id, group_id=group_id, removed=removed, group_removed=group_removed
        ).info("Series deleted")

    def delete_group(
        self, group_id: int, *, actor: str | None = None, reason: str | None = None
    ) -> None:
        """Delete every version of a group, one transaction per series."""
        now = self._clock()
        with self._session_factory() as session:
            if session.get(SeriesGroupModel, group_id) is None:
                raise GroupNotFoundError(group_id)

        with self._hold_group(group_id):
            # Versions are read under the group claim so a split cannot add one unseen.
            with self._session_factory() as session:
                series_ids = list(
                    session.execute(
                        select(SeriesModel.id).where(SeriesModel.group_id == group_id)
                    ).scalars()
                )
            self._delete_versions(group_id, series_ids, actor=actor, reason=reason, now=now)

        logger.bind(group_id=group_id, series=len(series_ids)).info("Series group deleted")

    def _delete_versions(
        self,
        group_id: int,
        series_ids: list[int],
        *,
        actor: str | None,
        reason: str | None,
        now: datetime,
    ) -> None:
        with self._lease.hold(series_ids, wait_seconds=self._settings.lock_wait_seconds):
            for series_id in series_ids:
                with self._session_factory() as session:
                    series = session.get(SeriesModel, series_id)
                    if series is None:
                        continue
                    removed = self._delete_series_rows(session, series)
                    record_event(
                        session,
                        action="series_deleted",
                        actor=actor,
                        series_id=series_id,
                        group_id=group_id,
                        reason=reason,
                        metadata={"target_records_deleted": removed},
                        timestamp=now,
                    )
                    session.commit()

            with self._session_factory() as session:
                if not self._group_is_empty(session, group_id):
                    logger.bind(group_id=group_id).warning(
                        "Group gained a version during delete; leaving it in place"
                    )
                    raise GroupBusyError(group_id)
                session.execute(delete(SeriesGroupModel).where(SeriesGroupModel.id == group_id))
                record_event(
                    session,
                    action="group_deleted",
                    actor=actor,
                    group_id=group_id,
                    reason=reason,
                    metadata={"series_deleted": len(series_ids)},
                    timestamp=now,
                )
                session.commit()


__all__ = [
    "CreateResult",
    "GroupSummary",
    "PreviewedOccurrence",
    "SeriesDefinition",
    "SeriesManager",
]
