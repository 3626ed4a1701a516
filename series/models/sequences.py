# series/models/sequences.py
from django.db import models
from django.utils.translation import gettext_lazy as _

from series.conf import SUFFIX_MAX_LENGTH


class SeriesCounter(models.Model):
    """
    One row per series key. Used as the lock row for allocations and as a
    record of the last value handed out.

    Example:
    - entity_type_id: "invoices.invoice"
    - bundle: "invoice"
    - suffix: "-2025-11"
    - field_name: "number"
    - last_value: 42

    The numbers themselves are derived from the entity rows (max + 1); this
    table never decides the next value on its own.
    """

    entity_type_id = models.CharField(max_length=100, verbose_name=_("Entity type"))
    bundle = models.CharField(max_length=100, verbose_name=_("Bundle"))
    suffix = models.CharField(
        max_length=SUFFIX_MAX_LENGTH,
        blank=True,
        verbose_name=_("Series suffix"),
    )
    field_name = models.CharField(max_length=100, verbose_name=_("Field name"))

    last_value = models.PositiveIntegerField(null=True, blank=True, verbose_name=_("Last value"))
    allocations = models.PositiveIntegerField(default=0, verbose_name=_("Allocations"))
    locked_at = models.DateTimeField(null=True, blank=True, verbose_name=_("Last locked at"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Updated at"))

    class Meta:
        verbose_name = _("Series counter")
        verbose_name_plural = _("Series counters")
        constraints = [
            models.UniqueConstraint(
                fields=["entity_type_id", "bundle", "suffix", "field_name"],
                name="series_counter_unique_key",
            ),
        ]

    def __str__(self) -> str:
        if self.suffix:
            return f"{self.entity_type_id}[{self.bundle}].{self.field_name} [{self.suffix}] → {self.last_value}"
        return f"{self.entity_type_id}[{self.bundle}].{self.field_name} → {self.last_value}"

    @classmethod
    def lookup_for(cls, key) -> dict:
        return {
            "entity_type_id": key.entity_type_id,
            "bundle": key.bundle,
            "suffix": key.suffix,
            "field_name": key.field_name,
        }
