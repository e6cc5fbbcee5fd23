"""Target-table storage collaborator and template validation."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Protocol

from loguru import logger
from sqlalchemy import DateTime, MetaData, Table, delete, inspect, insert, select, update
from sqlalchemy.exc import IntegrityError, NoSuchTableError
from sqlalchemy.orm import Session

from .domain import TimeRange
from .errors import (
    ExclusionViolation,
    StorageError,
    TemplateValidationError,
    UnknownTableError,
)
from .recurrence import ensure_utc
from .utils import from_iso, to_iso

BLOCKED_FIELDS = frozenset({"id", "created_at", "created_by", "updated_at", "updated_by"})
TIME_SLOT_KEY = "time_slot"
_EXCLUSION_SQLSTATE = "23P01"


@dataclass(frozen=True)
class TargetTable:
    """Binds a target table to the columns the engine manages."""

    name: str
    start_field: str = "starts_at"
    end_field: str = "ends_at"
    scope_field: str | None = None
    id_field: str = "id"

    @property
    def managed_fields(self) -> frozenset[str]:
        return frozenset({self.start_field, self.end_field, TIME_SLOT_KEY})


class TargetStore(Protocol):
    """Narrow interface over the tables occurrences are written to."""

    def binding(self, table: str) -> TargetTable:
        ...

    def tables(self) -> list[str]:
        ...

    def writable_fields(self, session: Session, table: str) -> frozenset[str]:
        ...

    def required_fields(self, session: Session, table: str) -> frozenset[str]:
        ...

    def create_record(
        self,
        session: Session,
        table: str,
        fields: Mapping[str, Any],
        time_range: TimeRange,
    ) -> str:
        ...

    def update_record(
        self,
        session: Session,
        table: str,
        ref: str,
        fields: Mapping[str, Any],
        time_range: TimeRange | None = None,
    ) -> bool:
        ...

    def delete_record(self, session: Session, table: str, ref: str) -> bool:
        ...

    def get_record(self, session: Session, table: str, ref: str) -> dict[str, Any] | None:
        ...

    def find_overlapping(
        self,
        session: Session,
        table: str,
        scope_value: Any,
        time_range: TimeRange,
        exclude_ref: str | None = None,
    ) -> str | None:
        ...


def _is_exclusion_violation(exc: IntegrityError) -> bool:
    original = exc.orig
    code = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)
    if code == _EXCLUSION_SQLSTATE:
        return True
    message = str(original).lower()
    return "overlap" in message or "exclu" in message


class SQLTargetStore(TargetStore):
    """Target store over reflected tables that share the engine's transactions."""

    def __init__(self, bindings: Iterable[TargetTable]) -> None:
        self._bindings = {binding.name: binding for binding in bindings}
        self._tables: dict[str, Table] = {}
        self._lock = Lock()

    def binding(self, table: str) -> TargetTable:
        try:
            return self._bindings[table]
        except KeyError as exc:
            raise UnknownTableError(table) from exc

    def tables(self) -> list[str]:
        return sorted(self._bindings)

    def _columns(self, session: Session, table: str) -> list[dict[str, Any]]:
        self.binding(table)
        try:
            return inspect(session.connection()).get_columns(table)
        except NoSuchTableError as exc:
            raise StorageError(f"Target table {table!r} does not exist.") from exc

    def _table(self, session: Session, table: str, keys: Iterable[str] = ()) -> Table:
        binding = self.binding(table)
        with self._lock:
            reflected = self._tables.get(table)
            if reflected is None or any(key not in reflected.c for key in keys):
                try:
                    reflected = Table(
                        binding.name, MetaData(), autoload_with=session.connection()
                    )
                except NoSuchTableError as exc:
                    raise StorageError(f"Target table {table!r} does not exist.") from exc
                self._tables[table] = reflected
            return reflected

    def writable_fields(self, session: Session, table: str) -> frozenset[str]:
        binding = self.binding(table)
        names = {column["name"] for column in self._columns(session, table)}
        excluded = BLOCKED_FIELDS | binding.managed_fields | {binding.id_field}
        return frozenset(names - excluded)

    def required_fields(self, session: Session, table: str) -> frozenset[str]:
        binding = self.binding(table)
        excluded = BLOCKED_FIELDS | binding.managed_fields | {binding.id_field}
        required = {
            column["name"]
            for column in self._columns(session, table)
            if not column.get("nullable", True)
            and column.get("default") is None
            and column.get("autoincrement") is not True
        }
        return frozenset(required - excluded)

    def _encode_instant(self, reflected: Table, column: str, value: datetime) -> Any:
        if isinstance(reflected.c[column].type, DateTime):
            if reflected.c[column].type.timezone:
                return ensure_utc(value)
            return ensure_utc(value).replace(tzinfo=None)
        return to_iso(value)

    def _values(
        self,
        reflected: Table,
        binding: TargetTable,
        fields: Mapping[str, Any],
        time_range: TimeRange | None,
    ) -> dict[str, Any]:
        values = {
            key: value
            for key, value in fields.items()
            if key not in binding.managed_fields and key not in BLOCKED_FIELDS
        }
        if time_range is not None:
            values[binding.start_field] = self._encode_instant(
                reflected, binding.start_field, time_range.start
            )
            values[binding.end_field] = self._encode_instant(
                reflected, binding.end_field, time_range.end
            )
        return values

    def _ref_value(self, reflected: Table, binding: TargetTable, ref: str) -> Any:
        column = reflected.c[binding.id_field]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return ref
        if python_type is int:
            try:
                return int(ref)
            except (TypeError, ValueError):
                return ref
        return ref

    def create_record(
        self,
        session: Session,
        table: str,
        fields: Mapping[str, Any],
        time_range: TimeRange,
    ) -> str:
        binding = self.binding(table)
        reflected = self._table(session, table, fields.keys())
        values = self._values(reflected, binding, fields, time_range)
        try:
            result = session.execute(insert(reflected).values(**values))
        except IntegrityError as exc:
            if _is_exclusion_violation(exc):
                raise ExclusionViolation(table) from exc
            raise StorageError(f"Could not create record in {table}: {exc.orig}") from exc
        ref = result.inserted_primary_key[0]
        logger.bind(table=table, ref=ref).debug("Target record created")
        return str(ref)

    def update_record(
        self,
        session: Session,
        table: str,
        ref: str,
        fields: Mapping[str, Any],
        time_range: TimeRange | None = None,
    ) -> bool:
        binding = self.binding(table)
        reflected = self._table(session, table, fields.keys())
        values = self._values(reflected, binding, fields, time_range)
        key = reflected.c[binding.id_field] == self._ref_value(reflected, binding, ref)
        if not values:
            return self.get_record(session, table, ref) is not None
        try:
            result = session.execute(update(reflected).where(key).values(**values))
        except IntegrityError as exc:
            if _is_exclusion_violation(exc):
                raise ExclusionViolation(table) from exc
            raise StorageError(f"Could not update record in {table}: {exc.orig}") from exc
        return result.rowcount > 0

    def delete_record(self, session: Session, table: str, ref: str) -> bool:
        binding = self.binding(table)
        reflected = self._table(session, table)
        key = reflected.c[binding.id_field] == self._ref_value(reflected, binding, ref)
        result = session.execute(delete(reflected).where(key))
        return result.rowcount > 0

    def get_record(self, session: Session, table: str, ref: str) -> dict[str, Any] | None:
        binding = self.binding(table)
        reflected = self._table(session, table)
        key = reflected.c[binding.id_field] == self._ref_value(reflected, binding, ref)
        row = session.execute(select(reflected).where(key)).mappings().first()
        return dict(row) if row is not None else None

    def find_overlapping(
        self,
        session: Session,
        table: str,
        scope_value: Any,
        time_range: TimeRange,
        exclude_ref: str | None = None,
    ) -> str | None:
        binding = self.binding(table)
        reflected = self._table(session, table)
        start_column = reflected.c[binding.start_field]
        end_column = reflected.c[binding.end_field]
        stmt = select(reflected.c[binding.id_field]).where(
            start_column
            < self._encode_instant(reflected, binding.start_field, time_range.end),
            end_column
            > self._encode_instant(reflected, binding.end_field, time_range.start),
        )
        if binding.scope_field is not None:
            stmt = stmt.where(reflected.c[binding.scope_field] == scope_value)
        if exclude_ref is not None:
            stmt = stmt.where(
                reflected.c[binding.id_field]
                != self._ref_value(reflected, binding, exclude_ref)
            )
        found = session.execute(stmt.order_by(start_column).limit(1)).scalar_one_or_none()
        return str(found) if found is not None else None


def decode_instant(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return from_iso(str(value))


def record_time_range(
    store: TargetStore, session: Session, table: str, ref: str
) -> TimeRange | None:
    """Read the time range a target record currently occupies."""
    record = store.get_record(session, table, ref)
    if record is None:
        return None
    binding = store.binding(table)
    start = decode_instant(record.get(binding.start_field))
    end = decode_instant(record.get(binding.end_field))
    if start is None or end is None or end <= start:
        return None
    return TimeRange(start, end)


def scope_value(store: TargetStore, table: str, template: Mapping[str, Any]) -> Any:
    binding = store.binding(table)
    if binding.scope_field is None:
        return None
    return template.get(binding.scope_field)


# Templates -------------------------------------------------------------------


def validate_template(
    store: TargetStore,
    session: Session,
    table: str,
    template: Mapping[str, Any],
    *,
    partial: bool = False,
) -> dict[str, Any]:
    """Check ``template`` against the table's writable-field allow-list.

    Time fields managed by expansion are dropped silently; audit columns and
    unknown fields reject the whole template. ``partial`` skips the
    required-field check for field-level edits.
    """
    if not isinstance(template, Mapping):
        raise TemplateValidationError("Template must be an object of field values.")
    binding = store.binding(table)
    writable = store.writable_fields(session, table)
    cleaned: dict[str, Any] = {}
    for key, value in template.items():
        if key in binding.managed_fields:
            continue
        if key in BLOCKED_FIELDS or key == binding.id_field:
            raise TemplateValidationError(f"Field {key!r} cannot be set from a template.")
        if key not in writable:
            raise TemplateValidationError(
                f"Field {key!r} is not a writable field of {table}."
            )
        cleaned[key] = value
    if not partial:
        missing = sorted(store.required_fields(session, table) - cleaned.keys())
        if missing:
            raise TemplateValidationError(
                f"Required field(s) missing from template: {', '.join(missing)}"
            )
    return cleaned


def check_drift(
    store: TargetStore, session: Session, table: str, template: Mapping[str, Any]
) -> list[str]:
    """Describe every way ``template`` no longer fits the table's current schema."""
    writable = store.writable_fields(session, table)
    binding = store.binding(table)
    issues = [
        f"{key}: Field no longer exists in target table"
        for key in sorted(template)
        if key not in writable and key not in binding.managed_fields
    ]
    issues.extend(
        f"{key}: Required field missing from template"
        for key in sorted(store.required_fields(session, table) - set(template))
    )
    return issues


__all__ = [
    "BLOCKED_FIELDS",
    "SQLTargetStore",
    "TargetStore",
    "TargetTable",
    "check_drift",
    "decode_instant",
    "record_time_range",
    "scope_value",
    "validate_template",
]
