# series/models/fields.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from django.core import checks
from django.core.exceptions import FieldDoesNotExist
from django.db import models
from django.utils.translation import gettext_lazy as _

from series import conf
from series.exceptions import InvalidTemplate
from series.services.resolver import resolve_suffix
from series.values import SeriesValue

# Fixed moment used to validate templates in system checks.
_CHECK_MOMENT = datetime(2000, 1, 1, 12, 0, 0)


class SeriesNumberField(models.IntegerField):
    """
    Integer that increases by one the last number found in the same series.

    Adding `number = SeriesNumberField(series_suffix="-Y-m")` to a model
    stores three columns:
    - number                 nullable integer (the value)
    - number_autofill        boolean, default False
    - number_series_suffix   short text, the resolved (or manual) suffix

    Options:
    - series_suffix: date format template of the series suffix
      (Django `date` filter characters, backslash escapes literals).
      Defaults to settings.SERIES_DEFAULT_SUFFIX.
    - bundle_field: name of a char field that splits the model into
      bundles, each with its own sequences. Without it the model name is
      the bundle.

    The companion columns are added in contribute_to_class(). Migrations
    list them explicitly, so deconstruct() turns that off.
    """

    description = _("Number that increases by one the last number found in the same series")

    def __init__(
        self,
        *args,
        series_suffix: Optional[str] = None,
        bundle_field: Optional[str] = None,
        companions: bool = True,
        **kwargs,
    ) -> None:
        kwargs.setdefault("null", True)
        kwargs.setdefault("blank", True)
        self.series_suffix = series_suffix
        self.bundle_field = bundle_field
        self.companions = companions
        super().__init__(*args, **kwargs)

    # ------------------------------------------------------------------
    # Model wiring
    # ------------------------------------------------------------------
    def contribute_to_class(self, cls, name, private_only=False):
        super().contribute_to_class(cls, name, private_only=private_only)

        if not self.companions or cls._meta.abstract:
            return

        autofill = models.BooleanField(
            default=False,
            verbose_name=_("Automatic fill"),
        )
        suffix = models.CharField(
            max_length=conf.SUFFIX_MAX_LENGTH,
            blank=True,
            default="",
            verbose_name=_("Series suffix"),
        )
        cls.add_to_class(self.autofill_field_name, autofill)
        cls.add_to_class(self.suffix_field_name, suffix)

    def deconstruct(self):
        name, path, args, kwargs = super().deconstruct()
        if self.series_suffix is not None:
            kwargs["series_suffix"] = self.series_suffix
        if self.bundle_field:
            kwargs["bundle_field"] = self.bundle_field
        kwargs["companions"] = False
        return name, path, args, kwargs

    @property
    def autofill_field_name(self) -> str:
        return f"{self.name}_autofill"

    @property
    def suffix_field_name(self) -> str:
        return f"{self.name}_series_suffix"

    @property
    def stored_names(self) -> List[str]:
        return [self.attname, self.autofill_field_name, self.suffix_field_name]

    @property
    def suffix_template(self) -> str:
        if self.series_suffix is None:
            return conf.default_suffix()
        return self.series_suffix

    # ------------------------------------------------------------------
    # Instance helpers
    # ------------------------------------------------------------------
    def bundle_for(self, instance) -> str:
        if self.bundle_field:
            bundle = getattr(instance, self.bundle_field)
            return "" if bundle is None else str(bundle)
        return instance._meta.model_name

    def get_series_value(self, instance) -> SeriesValue:
        return SeriesValue(
            value=getattr(instance, self.attname),
            autofill=getattr(instance, self.autofill_field_name),
            series_suffix=getattr(instance, self.suffix_field_name) or "",
        )

    def set_series_value(self, instance, series_value: SeriesValue) -> None:
        setattr(instance, self.attname, series_value.value)
        setattr(instance, self.autofill_field_name, bool(series_value.autofill))
        setattr(instance, self.suffix_field_name, series_value.series_suffix or "")

    # ------------------------------------------------------------------
    # System checks
    # ------------------------------------------------------------------
    def check(self, **kwargs):
        return [
            *super().check(**kwargs),
            *self._check_suffix_template(),
            *self._check_bundle_field(),
        ]

    def _check_suffix_template(self):
        try:
            resolve_suffix(self.suffix_template, _CHECK_MOMENT)
        except InvalidTemplate as exc:
            return [
                checks.Error(
                    str(exc),
                    obj=self,
                    id="series.E001",
                )
            ]
        return []

    def _check_bundle_field(self):
        if not self.bundle_field:
            return []
        try:
            self.model._meta.get_field(self.bundle_field)
        except FieldDoesNotExist:
            return [
                checks.Error(
                    f"bundle_field refers to the nonexistent field '{self.bundle_field}'.",
                    obj=self,
                    id="series.E002",
                )
            ]
        return []
