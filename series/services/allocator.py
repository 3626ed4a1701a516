# series/services/allocator.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from series.services.locks import DatabaseSeriesLock
from series.services.query import SequenceQuery
from series.services.resolver import Moment, resolve_suffix
from series.values import Allocation, SeriesKey

logger = logging.getLogger(__name__)

Resolver = Callable[[str, Optional[Moment]], str]


def next_after(current: Optional[int]) -> int:
    """Next number of a series whose current maximum is `current`."""
    if not current:
        return 1
    return current + 1


class Allocator:
    """
    Computes "the next number in series S".

    Collaborators are injected:
    - query: SequenceQuery reading the current maximum of a series
    - lock: per-series lock with a hold(key) context manager
            (DatabaseSeriesLock by default)
    - resolver: turns (template, at) into the resolved suffix

    Usage:

        allocator = Allocator(ModelSequenceQuery(Invoice))
        allocation = allocator.next("invoices.invoice", "invoice", "-Y-m", "number")

    next() is safe on its own only when the lock outlives the call, which
    is the case for DatabaseSeriesLock inside an open transaction. With
    other locks use reserve() and persist the value inside the block.
    """

    def __init__(
        self,
        query: SequenceQuery,
        lock: Any = None,
        resolver: Resolver = resolve_suffix,
    ) -> None:
        self.query = query
        self.lock = lock if lock is not None else DatabaseSeriesLock()
        self.resolver = resolver

    def key_for(
        self,
        entity_type_id: str,
        bundle: str,
        template: str,
        field_name: str,
        at: Optional[Moment] = None,
    ) -> SeriesKey:
        suffix = self.resolver(template, at)
        return SeriesKey(
            entity_type_id=entity_type_id,
            bundle=bundle,
            suffix=suffix,
            field_name=field_name,
        )

    @contextmanager
    def reserve(
        self,
        entity_type_id: str,
        bundle: str,
        template: str,
        field_name: str,
        exclude_pk: Any = None,
        at: Optional[Moment] = None,
    ) -> Iterator[Allocation]:
        """
        Allocate inside the series lock and keep holding it for the block.

        The caller must make the value visible to the SequenceQuery before
        leaving the block.
        """
        key = self.key_for(entity_type_id, bundle, template, field_name, at=at)

        with self.lock.hold(key) as lease:
            current = self.query.max_value(key, exclude_pk=exclude_pk)
            value = next_after(current)
            lease.record(value)

            logger.debug("Reserved %s for series %s (previous max: %s)", value, key, current)
            yield Allocation(value=value, suffix=key.suffix, key=key)

    def next(
        self,
        entity_type_id: str,
        bundle: str,
        template: str,
        field_name: str,
        exclude_pk: Any = None,
        at: Optional[Moment] = None,
    ) -> Allocation:
        with self.reserve(
            entity_type_id,
            bundle,
            template,
            field_name,
            exclude_pk=exclude_pk,
            at=at,
        ) as allocation:
            return allocation

    def peek(
        self,
        entity_type_id: str,
        bundle: str,
        template: str,
        field_name: str,
        exclude_pk: Any = None,
        at: Optional[Moment] = None,
    ) -> Allocation:
        """
        The number next() would hand out right now, without locking.
        Informational only: it can be stale as soon as it is returned.
        """
        key = self.key_for(entity_type_id, bundle, template, field_name, at=at)
        current = self.query.max_value(key, exclude_pk=exclude_pk)
        return Allocation(value=next_after(current), suffix=key.suffix, key=key)
