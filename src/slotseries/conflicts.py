"""Advisory overlap detection against committed target records."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from .domain import TimeRange
from .storage import TargetStore


@dataclass(frozen=True)
class ConflictResult:
    index: int
    range: TimeRange
    has_conflict: bool
    conflicting_ref: str | None = None


def preview_conflicts(
    session: Session,
    store: TargetStore,
    table: str,
    scope_value: Any,
    ranges: Sequence[TimeRange],
) -> list[ConflictResult]:
    """Report which candidate ranges intersect committed ranges in one scope.

    Intervals are half-open, so a range ending exactly where another starts
    does not conflict. Read-only: the storage layer's own exclusion constraint
    stays the final authority at commit time.
    """
    results: list[ConflictResult] = []
    for index, candidate in enumerate(ranges):
        conflicting = store.find_overlapping(session, table, scope_value, candidate)
        results.append(
            ConflictResult(
                index=index,
                range=candidate,
                has_conflict=conflicting is not None,
                conflicting_ref=conflicting,
            )
        )

    flagged = sum(1 for result in results if result.has_conflict)
    logger.bind(table=table, scope=scope_value, candidates=len(ranges), conflicts=flagged).debug(
        "Conflict preview completed"
    )
    return results


__all__ = ["ConflictResult", "preview_conflicts"]
