"""Per-series and per-group claims that keep expansion and edits from interleaving."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import or_, update
from sqlalchemy.orm import Session, sessionmaker

from .db_models import SeriesGroupModel, SeriesModel
from .errors import GroupBusyError, RecurrenceError, SeriesBusyError
from .utils import to_iso, utc_now

_POLL_INTERVAL_SECONDS = 0.05


def new_owner_token(prefix: str = "worker") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class SeriesLease:
    """Lease held on ``series`` rows through ``claimed_by``/``claimed_until``.

    Claims are taken with a single conditional UPDATE, so only one owner can
    win a row at a time. Expired claims are reclaimable, which lets the next
    scheduler tick recover from a crashed worker.
    """

    model: type[SeriesModel] | type[SeriesGroupModel] = SeriesModel

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def _busy(self, row_id: int) -> RecurrenceError:
        return SeriesBusyError(row_id)

    def claim_until(self) -> str:
        """Expiry stamp for a claim written directly alongside a new row."""
        return to_iso(self._clock() + self._ttl)

    def try_claim(self, row_id: int, owner: str) -> bool:
        now = self._clock()
        model = self.model
        with self._session_factory() as session:
            result = session.execute(
                update(model)
                .where(
                    model.id == row_id,
                    or_(
                        model.claimed_until.is_(None),
                        model.claimed_until < to_iso(now),
                        model.claimed_by == owner,
                    ),
                )
                .values(claimed_by=owner, claimed_until=to_iso(now + self._ttl))
                .execution_options(synchronize_session=False)
            )
            session.commit()
        claimed = result.rowcount > 0
        if not claimed:
            logger.bind(table=model.__tablename__, row_id=row_id, owner=owner).debug(
                "Claim refused"
            )
        return claimed

    def release(self, row_id: int, owner: str) -> None:
        model = self.model
        with self._session_factory() as session:
            session.execute(
                update(model)
                .where(model.id == row_id, model.claimed_by == owner)
                .values(claimed_by=None, claimed_until=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def acquire(self, row_id: int, owner: str, *, wait_seconds: float = 0.0) -> None:
        deadline = time.monotonic() + wait_seconds
        while not self.try_claim(row_id, owner):
            if time.monotonic() >= deadline:
                raise self._busy(row_id)
            time.sleep(_POLL_INTERVAL_SECONDS)

    @contextmanager
    def hold(
        self,
        row_ids: Sequence[int],
        *,
        owner: str | None = None,
        wait_seconds: float = 0.0,
    ) -> Iterator[str]:
        """Claim every row in ``row_ids`` for the duration of the block."""
        token = owner or new_owner_token("edit")
        claimed: list[int] = []
        try:
            for row_id in sorted(set(row_ids)):
                self.acquire(row_id, token, wait_seconds=wait_seconds)
                claimed.append(row_id)
            yield token
        finally:
            for row_id in claimed:
                self.release(row_id, token)


class GroupLease(SeriesLease):
    """Lease on ``series_groups`` rows, held while versions are added or removed.

    Take it before any series claim in the same operation.
    """

    model = SeriesGroupModel

    def _busy(self, row_id: int) -> RecurrenceError:
        return GroupBusyError(row_id)


__all__ = ["GroupLease", "SeriesLease", "new_owner_token"]
