# series/values.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SeriesKey:
    """
    Identity of one monotonic numbering sequence.

    Example:
    - entity_type_id: "invoices.invoice"
    - bundle: "invoice"
    - suffix: "-2024-03"
    - field_name: "number"
    """

    entity_type_id: str
    bundle: str
    suffix: str
    field_name: str

    def __str__(self) -> str:
        return f"{self.entity_type_id}[{self.bundle}].{self.field_name} '{self.suffix}'"


@dataclass
class SeriesValue:
    """
    The (value, autofill, series_suffix) triple stored for one series field.

    - value: allocated or manually entered number (may be None)
    - autofill: True requests allocation on the next save
    - series_suffix: resolved suffix once allocated, or the manual one
    """

    value: Optional[int] = None
    autofill: Optional[bool] = None
    series_suffix: str = ""

    @property
    def is_empty(self) -> bool:
        # A pending autofill request counts as content.
        return self.value is None and not self.autofill

    @property
    def is_pending(self) -> bool:
        return bool(self.autofill)


@dataclass(frozen=True)
class Allocation:
    """Result of a successful allocation."""

    value: int
    suffix: str
    key: SeriesKey
