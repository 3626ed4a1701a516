# series/services/query.py
from __future__ import annotations

from typing import Any, Optional, Protocol, Type

from django.db import DatabaseError, models
from django.db.models import F

from series.exceptions import QueryFailure
from series.values import SeriesKey


def coerce_number(raw: Any) -> Optional[int]:
    """
    Stored maximum as an int, or None when it is missing or not numeric.
    """
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class SequenceQuery(Protocol):
    """
    Read side of the entity store used by the allocator.
    """

    def max_value(self, key: SeriesKey, exclude_pk: Any = None) -> Optional[int]:
        ...


class ModelSequenceQuery:
    """
    SequenceQuery backed by a Django model that carries a SeriesNumberField.

    The scan is limited to:
    - rows of the same model
    - the same bundle (when the field has a bundle attribute)
    - the same resolved suffix
    - every row except `exclude_pk` (the instance being saved)
    """

    def __init__(self, model: Type[models.Model], using: Optional[str] = None) -> None:
        self.model = model
        self.using = using

    def _manager(self):
        manager = self.model._default_manager
        if self.using:
            return manager.db_manager(self.using)
        return manager

    def _field(self, field_name: str):
        return self.model._meta.get_field(field_name)

    def series_queryset(self, key: SeriesKey, exclude_pk: Any = None) -> models.QuerySet:
        field = self._field(key.field_name)

        qs = self._manager().filter(**{field.suffix_field_name: key.suffix})

        if field.bundle_field:
            qs = qs.filter(**{field.bundle_field: key.bundle})

        if exclude_pk is not None:
            qs = qs.exclude(pk=exclude_pk)

        return qs

    def max_value(self, key: SeriesKey, exclude_pk: Any = None) -> Optional[int]:
        qs = (
            self.series_queryset(key, exclude_pk=exclude_pk)
            .order_by(F(key.field_name).desc(nulls_last=True))
            .values_list(key.field_name, flat=True)
        )

        try:
            raw = qs.first()
        except DatabaseError as exc:
            raise QueryFailure(key) from exc

        return coerce_number(raw)

    def load(self, pk: Any) -> Optional[models.Model]:
        """Load one instance by primary key, or None."""
        try:
            return self._manager().filter(pk=pk).first()
        except DatabaseError as exc:
            raise QueryFailure(pk, f"Could not load {self.model._meta.label} pk={pk}") from exc
