"""Advisory, timestamp-based generation lock.

Foreground and background triggers run in separate processes with no shared
memory, so the lock lives in the durable store as one record per user.  A
record is abandoned ("stale") when its timestamp is in the future, falls on
a different local day than now, or is older than the staleness window.
Stale records are reclaimed by compare-and-swap so two reclaimers cannot
both win.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta, tzinfo

from incurio.errors import LockUnavailable, StoreError
from incurio.sparks.days import as_utc, local_date, utcnow
from incurio.sparks.store import SparkStore

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=5)


class GenerationLock:
    """Per-user generation lock backed by :class:`SparkStore` lock records."""

    def __init__(
        self,
        store: SparkStore,
        *,
        tz: tzinfo = UTC,
        stale_after: timedelta = STALE_AFTER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._tz = tz
        self._stale_after = stale_after
        self._clock = clock

    def is_stale(self, acquired_at: datetime, now: datetime | None = None) -> bool:
        """Whether a lock taken at ``acquired_at`` has been abandoned."""
        now = as_utc(now or self._clock())
        acquired_at = as_utc(acquired_at)

        if acquired_at > now:
            logger.info("Lock timestamp is in the future, considering stale: %s", acquired_at)
            return True
        if local_date(acquired_at, self._tz) != local_date(now, self._tz):
            logger.info("Lock is from a different day, considering stale: %s", acquired_at)
            return True
        if now - acquired_at > self._stale_after:
            logger.info("Lock is older than %s, considering stale", self._stale_after)
            return True
        return False

    def acquire(self, user_id: str) -> bool:
        """Try to take the lock for ``user_id``.

        Returns False when a live lock exists or another context won the
        race for it.
        """
        now = as_utc(self._clock())

        try:
            existing = self._store.read_lock(user_id)
        except StoreError:
            logger.warning("Error reading lock for %s, assuming none", user_id, exc_info=True)
            existing = None

        try:
            if existing is None:
                acquired = self._store.insert_lock(user_id, now)
            elif self.is_stale(existing, now):
                logger.info("Reclaiming stale lock for %s (taken %s)", user_id, existing)
                acquired = self._store.replace_lock(user_id, existing, now)
            else:
                logger.info("Found valid lock for %s, cannot acquire", user_id)
                return False
        except StoreError:
            logger.error("Error setting lock for %s", user_id, exc_info=True)
            return False

        if acquired:
            logger.info("Acquired generation lock for %s", user_id)
        else:
            logger.info("Lost lock race for %s", user_id)
        return acquired

    def release(self, user_id: str) -> None:
        """Remove the lock for ``user_id``; failures are logged, never raised."""
        try:
            self._store.delete_lock(user_id)
        except StoreError:
            logger.warning(
                "Failed to release lock for %s; it will be reclaimed once stale",
                user_id,
                exc_info=True,
            )
            return
        logger.info("Released generation lock for %s", user_id)

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            LockUnavailable: The lock could not be acquired.
        """
        if not self.acquire(user_id):
            raise LockUnavailable(user_id)
        try:
            yield
        finally:
            self.release(user_id)
