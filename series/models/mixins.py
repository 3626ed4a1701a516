# series/models/mixins.py
from __future__ import annotations

import logging
import time
from functools import partial
from typing import Dict, List, Optional, Tuple

from django.db import models, router, transaction

from series import conf
from series.domain.dispatcher import emit as emit_domain_event
from series.domain.events import SeriesNumberAllocated
from series.exceptions import SeriesLocked
from series.services.gate import AutofillGate
from series.values import Allocation, SeriesValue

from .fields import SeriesNumberField

logger = logging.getLogger(__name__)


class SeriesNumberedModel(models.Model):
    """
    Abstract model that allocates its SeriesNumberField values on save().

    save():
    1) Opens a transaction (atomic)
    2) Runs the autofill gate for every series field
    3) Writes the instance
    4) Emits SeriesNumberAllocated after the transaction commits

    The series lock taken in step 2 is released only when the transaction
    of step 1 commits, after the instance row is written. If anything fails
    the in-memory value/autofill/suffix triples are put back, so a retry
    allocates again instead of saving half of an allocation.

    When save() opens the outermost transaction, a SeriesLocked from step 2
    rolls the whole transaction back and starts over, up to
    SERIES_LOCK_RETRIES times.
    """

    series_gate = AutofillGate()

    class Meta:
        abstract = True

    @classmethod
    def series_fields(cls) -> List[SeriesNumberField]:
        return [f for f in cls._meta.concrete_fields if isinstance(f, SeriesNumberField)]

    def get_series_value(self, field_name: str) -> SeriesValue:
        return self._meta.get_field(field_name).get_series_value(self)

    def request_autofill(self, field_name: str) -> None:
        """Ask for a fresh number on the next save()."""
        setattr(self, self._meta.get_field(field_name).autofill_field_name, True)

    def save(self, *args, **kwargs) -> None:
        fields = self.series_fields()
        if not fields:
            super().save(*args, **kwargs)
            return

        using = kwargs.get("using") or router.db_for_write(type(self), instance=self)
        # A nested save shares the caller's transaction and cannot start it over.
        attempts = 1 if transaction.get_connection(using).in_atomic_block else conf.lock_retries()

        for attempt in range(1, attempts + 1):
            try:
                self._save_series(fields, using, args, dict(kwargs))
                return
            except SeriesLocked as exc:
                if attempt >= attempts:
                    raise
                logger.debug(
                    "Retrying save of %s after a locked series (attempt %d/%d): %s",
                    self._meta.label_lower,
                    attempt,
                    attempts,
                    exc,
                )
                time.sleep(conf.lock_retry_delay() * attempt)

    def _save_series(self, fields: List[SeriesNumberField], using: str, args, kwargs) -> None:
        update_fields: Optional[List[str]] = kwargs.get("update_fields")
        if update_fields is not None:
            update_fields = list(update_fields)

        snapshot: Dict[str, SeriesValue] = {f.name: f.get_series_value(self) for f in fields}
        allocations: List[Tuple[SeriesNumberField, Allocation]] = []

        try:
            with transaction.atomic(using=using):
                for field in fields:
                    # save(update_fields=[...]) without this field leaves it alone
                    if update_fields is not None and not set(field.stored_names) & set(update_fields):
                        continue

                    allocation = self.series_gate.before_save(self, field, using=using)
                    if allocation is None:
                        continue

                    allocations.append((field, allocation))
                    if update_fields is not None:
                        update_fields += [n for n in field.stored_names if n not in update_fields]

                if update_fields is not None:
                    kwargs["update_fields"] = update_fields

                super().save(*args, **kwargs)

                for field, allocation in allocations:
                    transaction.on_commit(
                        partial(self._series_number_allocated, field, allocation),
                        using=using,
                    )
        except Exception:
            for field in fields:
                field.set_series_value(self, snapshot[field.name])
            raise

    def _series_number_allocated(self, field: SeriesNumberField, allocation: Allocation) -> None:
        emit_domain_event(
            SeriesNumberAllocated(
                entity_type_id=allocation.key.entity_type_id,
                object_pk=self.pk,
                bundle=allocation.key.bundle,
                field_name=field.name,
                value=allocation.value,
                suffix=allocation.suffix,
            )
        )
