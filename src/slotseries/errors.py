"""Exception hierarchy raised by the recurring series engine."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from typing import Any


class RecurrenceError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(RecurrenceError, ValueError):
    """Raised when caller input is rejected before any state is written."""


class RuleValidationError(ValidationError):
    """Raised when a recurrence rule is malformed or not allowed."""


class TemplateValidationError(ValidationError):
    """Raised when a field template does not fit the target table."""


class TimezoneValidationError(ValidationError):
    """Raised when a timezone name cannot be resolved."""


class InvalidSplitError(ValidationError):
    """Raised when a series cannot be split at the requested date."""


class NotFoundError(RecurrenceError, LookupError):
    """Raised when a referenced record does not exist."""


class SeriesNotFoundError(NotFoundError):
    def __init__(self, series_id: int) -> None:
        super().__init__(f"Series {series_id} not found.")
        self.series_id = series_id


class GroupNotFoundError(NotFoundError):
    def __init__(self, group_id: int) -> None:
        super().__init__(f"Series group {group_id} not found.")
        self.group_id = group_id


class InstanceNotFoundError(NotFoundError):
    """Raised when no series instance references a target record."""


class PermissionDeniedError(RecurrenceError):
    """Raised when the acting identity may not write to the target table."""


class SeriesBusyError(RecurrenceError):
    """Raised when another worker holds the claim on a series."""

    def __init__(self, series_id: int) -> None:
        super().__init__(f"Series {series_id} is locked by another operation.")
        self.series_id = series_id


class GroupBusyError(RecurrenceError):
    """Raised when another operation holds the claim on a series group."""

    def __init__(self, group_id: int) -> None:
        super().__init__(f"Group {group_id} is locked by another operation.")
        self.group_id = group_id


class ConflictAbortError(RecurrenceError):
    """Raised when the abort conflict policy meets a conflicting occurrence."""

    def __init__(self, conflicts: Sequence[dict[str, Any]]) -> None:
        dates = ", ".join(str(item.get("occurrence_date")) for item in conflicts)
        super().__init__(f"Conflicting occurrences prevent materialization: {dates}")
        self.conflicts = list(conflicts)


class InvalidTransitionError(RecurrenceError):
    """Raised when the exception state machine rejects a transition."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move an instance from {current} to {requested}.")
        self.current = current
        self.requested = requested


class StorageError(RecurrenceError):
    """Raised by target storage adapters."""


class UnknownTableError(StorageError):
    def __init__(self, table: str) -> None:
        super().__init__(f"Target table {table!r} is not registered.")
        self.table = table


class ExclusionViolation(StorageError):
    """The storage layer rejected a write that overlaps an existing range."""

    def __init__(self, table: str, occurrence_date: date | None = None) -> None:
        super().__init__(f"Range exclusion violated on {table}.")
        self.table = table
        self.occurrence_date = occurrence_date


__all__ = [
    "RecurrenceError",
    "ValidationError",
    "RuleValidationError",
    "TemplateValidationError",
    "TimezoneValidationError",
    "InvalidSplitError",
    "NotFoundError",
    "SeriesNotFoundError",
    "GroupNotFoundError",
    "InstanceNotFoundError",
    "PermissionDeniedError",
    "SeriesBusyError",
    "GroupBusyError",
    "ConflictAbortError",
    "InvalidTransitionError",
    "StorageError",
    "UnknownTableError",
    "ExclusionViolation",
]
