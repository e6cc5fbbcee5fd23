"""Composition root wiring storage, scheduler, version manager, and tracker."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from .config import RecurrenceSettings
from .conflicts import ConflictResult, preview_conflicts
from .database import get_session_factory
from .defaults import load_target_tables
from .domain import TimeRange
from .events import Event, list_recent_events
from .locks import GroupLease, SeriesLease
from .notifications import LoggingNotifier, Notifier, WebhookNotifier
from .occurrences import ExceptionTracker
from .permissions import AllowAllPermissions, PermissionChecker, get_permission_checker
from .scheduler import ExpansionScheduler
from .series import SeriesManager
from .storage import SQLTargetStore, TargetStore
from .utils import utc_now


class RecurrenceService:
    """Single entry point for the recurring series operations."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: TargetStore,
        *,
        settings: RecurrenceSettings | None = None,
        permissions: PermissionChecker | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.settings = settings or RecurrenceSettings()
        self.clock = clock
        self.lease = SeriesLease(
            session_factory, ttl_seconds=self.settings.claim_ttl_seconds, clock=clock
        )
        self.group_lease = GroupLease(
            session_factory, ttl_seconds=self.settings.claim_ttl_seconds, clock=clock
        )
        self.scheduler = ExpansionScheduler(
            session_factory=session_factory,
            store=store,
            settings=self.settings,
            lease=self.lease,
            permissions=permissions or AllowAllPermissions(),
            notifier=notifier,
            clock=clock,
        )
        self.series = SeriesManager(
            session_factory,
            store,
            self.scheduler,
            self.lease,
            self.settings,
            group_lease=self.group_lease,
            clock=clock,
        )
        self.occurrences = ExceptionTracker(session_factory, store, clock=clock)

    def preview_conflicts(
        self, table: str, scope_value: Any, ranges: Sequence[TimeRange]
    ) -> list[ConflictResult]:
        with self.session_factory() as session:
            return preview_conflicts(session, self.store, table, scope_value, ranges)

    def recent_events(
        self, limit: int = 100, *, series_id: int | None = None, group_id: int | None = None
    ) -> list[Event]:
        return list_recent_events(
            self.session_factory, limit, series_id=series_id, group_id=group_id
        )


def _build_notifier(settings: RecurrenceSettings) -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LoggingNotifier()


@lru_cache
def get_recurrence_service() -> RecurrenceService:
    """Return the process-wide service built from environment configuration."""
    settings = RecurrenceSettings.from_env()
    return RecurrenceService(
        get_session_factory(),
        SQLTargetStore(load_target_tables()),
        settings=settings,
        permissions=get_permission_checker(),
        notifier=_build_notifier(settings),
    )


__all__ = ["RecurrenceService", "get_recurrence_service"]
