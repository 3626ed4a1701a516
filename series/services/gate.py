# series/services/gate.py
from __future__ import annotations

from typing import Callable, Optional

from django.db import router
from django.utils import timezone

from series.services.allocator import Allocator
from series.services.locks import DatabaseSeriesLock
from series.services.query import ModelSequenceQuery
from series.values import Allocation, SeriesValue


def default_allocator(model, using: str) -> Allocator:
    return Allocator(
        ModelSequenceQuery(model, using=using),
        lock=DatabaseSeriesLock(using=using),
    )


class AutofillGate:
    """
    Runs right before an instance is written and decides whether a series
    field gets a new number.

    - autofill set: allocate (excluding the instance itself from the scan),
      write value + resolved suffix, clear autofill
    - autofill not set: nothing changes, manual values are authoritative

    The instance is only touched after a successful allocation. On any
    SeriesError the value, suffix and autofill flag stay as they were.

    The default allocator locks a database row, so before_save() has to run
    inside the transaction that writes the instance (DatabaseSeriesLock
    refuses to run otherwise).
    """

    def __init__(
        self,
        allocator_factory: Optional[Callable[..., Allocator]] = None,
        clock: Callable = timezone.now,
    ) -> None:
        self.allocator_factory = allocator_factory or default_allocator
        self.clock = clock

    def before_save(self, instance, field, using: Optional[str] = None) -> Optional[Allocation]:
        current: SeriesValue = field.get_series_value(instance)
        if not current.autofill:
            return None

        model = type(instance)
        using = using or router.db_for_write(model, instance=instance)

        allocator = self.allocator_factory(model, using)
        allocation = allocator.next(
            instance._meta.label_lower,
            field.bundle_for(instance),
            field.suffix_template,
            field.name,
            exclude_pk=instance.pk,
            at=self.clock(),
        )

        field.set_series_value(
            instance,
            SeriesValue(value=allocation.value, autofill=False, series_suffix=allocation.suffix),
        )
        return allocation
