# invoices/models.py
from decimal import Decimal

from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from series.models import SeriesNumberedModel, SeriesNumberField

DECIMAL_ZERO = Decimal("0.000")


class Invoice(SeriesNumberedModel):
    """
    Invoice or credit note, numbered per kind and per calendar month.

    number = 8, number_series_suffix = "-2024-03"  →  serial "8-2024-03"
    """

    class Kind(models.TextChoices):
        INVOICE = "invoice", _("Invoice")
        CREDIT_NOTE = "credit_note", _("Credit note")

    kind = models.CharField(
        max_length=20,
        choices=Kind.choices,
        default=Kind.INVOICE,
        db_index=True,
        verbose_name=_("Kind"),
    )

    customer_name = models.CharField(max_length=200, blank=True, verbose_name=_("Customer"))
    issued_at = models.DateField(default=timezone.now, verbose_name=_("Issue date"))

    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=3,
        default=DECIMAL_ZERO,
        verbose_name=_("Total"),
    )

    number = SeriesNumberField(
        series_suffix="-Y-m",
        bundle_field="kind",
        verbose_name=_("Invoice number"),
    )

    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Created at"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Updated at"))

    class Meta:
        ordering = ["-created_at"]
        verbose_name = _("Invoice")
        verbose_name_plural = _("Invoices")

    def __str__(self) -> str:
        return f"{self.get_kind_display()} {self.serial}"

    @property
    def serial(self) -> str:
        if self.number is None:
            return "NEW"
        return f"{self.number}{self.number_series_suffix}"


class Receipt(SeriesNumberedModel):
    """
    Shop receipt using the default yearly "-Y-store" series.
    """

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=3,
        default=DECIMAL_ZERO,
        verbose_name=_("Amount"),
    )

    number = SeriesNumberField(verbose_name=_("Receipt number"))

    def __str__(self) -> str:
        return f"{self.number}{self.number_series_suffix}"
