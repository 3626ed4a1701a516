# series/services/locks.py
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from django.db import DEFAULT_DB_ALIAS, OperationalError, connections, router, transaction
from django.db.transaction import TransactionManagementError
from django.db.models import F
from django.utils import timezone

from series import conf
from series.exceptions import SeriesLocked
from series.values import SeriesKey

logger = logging.getLogger(__name__)


class _RetryPolicy:
    def __init__(self, retries: Optional[int] = None, retry_delay: Optional[float] = None) -> None:
        self._retries = retries
        self._retry_delay = retry_delay

    @property
    def retries(self) -> int:
        return self._retries if self._retries is not None else conf.lock_retries()

    @property
    def retry_delay(self) -> float:
        return self._retry_delay if self._retry_delay is not None else conf.lock_retry_delay()


# ------------------------------------------------------------------
# Database row lock
# ------------------------------------------------------------------
class DatabaseLease:
    def __init__(self, counter, using: str) -> None:
        self.counter = counter
        self.using = using

    def record(self, value: int) -> None:
        from series.models import SeriesCounter

        SeriesCounter.objects.using(self.using).filter(pk=self.counter.pk).update(
            last_value=value,
            allocations=F("allocations") + 1,
        )


class DatabaseSeriesLock(_RetryPolicy):
    """
    Per-series lock backed by a SeriesCounter row.

    hold(key):
    1) Requires an open transaction (TransactionManagementError otherwise)
       and opens a savepoint in it
    2) Locks the SeriesCounter row of `key` with select_for_update
       (nowait where the backend supports it, retried with a linear backoff)
    3) Yields a lease the allocator uses to record the handed out value

    The row lock belongs to the transaction, not to the context manager.
    hold() runs inside the save transaction of the entity, so the lock is
    released only when that transaction commits and the next allocation in
    the same series reads the committed number.

    On backends without row locks (SQLite) a busy database is reported as
    SeriesLocked after one attempt; the caller retries the whole transaction.
    """

    def __init__(
        self,
        using: Optional[str] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        super().__init__(retries=retries, retry_delay=retry_delay)
        self.using = using

    def _alias(self) -> str:
        from series.models import SeriesCounter

        return self.using or router.db_for_write(SeriesCounter) or DEFAULT_DB_ALIAS

    def _acquire(self, key: SeriesKey, using: str):
        from series.models import SeriesCounter

        features = connections[using].features
        nowait = features.has_select_for_update_nowait
        manager = SeriesCounter.objects.db_manager(using)
        lookup = SeriesCounter.lookup_for(key)
        # Without row locks (SQLite) the failed attempt keeps its database
        # lock until the whole transaction rolls back, so one try only.
        attempts = self.retries if features.has_select_for_update else 1
        last_error = None

        for attempt in range(1, attempts + 1):
            try:
                with transaction.atomic(using=using):
                    counter, created = manager.select_for_update(nowait=nowait).get_or_create(**lookup)
                    # Write early so backends without row locks take their write lock here.
                    manager.filter(pk=counter.pk).update(locked_at=timezone.now())
                if created:
                    logger.debug("Created series counter for %s", key)
                return counter
            except OperationalError as exc:
                last_error = exc
                if attempt >= attempts:
                    break
                logger.debug(
                    "Series %s is locked (attempt %d/%d): %s",
                    key,
                    attempt,
                    attempts,
                    exc,
                )
                time.sleep(self.retry_delay * attempt)

        logger.warning("Giving up on series %s after %d attempt(s)", key, attempts)
        raise SeriesLocked(key, attempts) from last_error

    @contextmanager
    def hold(self, key: SeriesKey) -> Iterator[DatabaseLease]:
        using = self._alias()
        if not transaction.get_connection(using).in_atomic_block:
            raise TransactionManagementError(
                "DatabaseSeriesLock needs an open transaction: the row lock has to "
                "last until the allocated number is committed."
            )
        with transaction.atomic(using=using):
            counter = self._acquire(key, using)
            yield DatabaseLease(counter, using)


# ------------------------------------------------------------------
# In-process lock
# ------------------------------------------------------------------
class LocalLease:
    def __init__(self, owner: "LocalSeriesLock", key: SeriesKey) -> None:
        self.owner = owner
        self.key = key

    def record(self, value: int) -> None:
        self.owner.last_values[self.key] = value


class LocalSeriesLock(_RetryPolicy):
    """
    Per-series lock for a single process: one threading.Lock per key.

    Keys never share a lock, so allocations in different series never wait
    on each other. Hold the lock until the allocated value is visible to the
    store, e.g. with Allocator.reserve().
    """

    def __init__(self, retries: Optional[int] = None, retry_delay: Optional[float] = None) -> None:
        super().__init__(retries=retries, retry_delay=retry_delay)
        self._locks: Dict[SeriesKey, threading.Lock] = {}
        self._registry = threading.Lock()
        self.last_values: Dict[SeriesKey, int] = {}

    def _lock_for(self, key: SeriesKey) -> threading.Lock:
        with self._registry:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, key: SeriesKey) -> Iterator[LocalLease]:
        lock = self._lock_for(key)
        attempts = self.retries

        for attempt in range(1, attempts + 1):
            if lock.acquire(timeout=self.retry_delay * attempt):
                break
            logger.debug("Series %s is locked (attempt %d/%d)", key, attempt, attempts)
        else:
            logger.warning("Giving up on series %s after %d attempt(s)", key, attempts)
            raise SeriesLocked(key, attempts)

        try:
            yield LocalLease(self, key)
        finally:
            lock.release()
