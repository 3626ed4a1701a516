# series/management/commands/series_next.py
from django.apps import apps
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from series.exceptions import SeriesError
from series.models import SeriesNumberField
from series.services.allocator import Allocator
from series.services.query import ModelSequenceQuery


class Command(BaseCommand):
    """
    Show the number the next autofilled save would get, without allocating it.
    """

    help = "Preview the resolved series suffix and the next number of a series field."

    def add_arguments(self, parser):
        parser.add_argument("model", help="Model label, e.g. invoices.Invoice")
        parser.add_argument("--field", help="Series field name (default: the first series field of the model)")
        parser.add_argument("--bundle", help="Bundle value (default: the model name when the field has no bundle field)")
        parser.add_argument("--at", help="Date or datetime (ISO 8601) used to resolve the suffix (default: now)")

    def _moment(self, raw):
        if not raw:
            return timezone.now()
        try:
            moment = parse_datetime(raw) or parse_date(raw)
        except ValueError as e:
            # well formed but not a real date, e.g. 2024-02-30
            raise CommandError(f"Invalid --at value {raw!r}: {e}") from e
        if moment is None:
            raise CommandError(f"Cannot parse --at value {raw!r}")
        return moment

    def handle(self, *args, **options):
        try:
            model = apps.get_model(options["model"])
        except (LookupError, ValueError) as e:
            raise CommandError(f"Unknown model {options['model']!r}") from e

        series_fields = [f for f in model._meta.concrete_fields if isinstance(f, SeriesNumberField)]
        if options["field"]:
            series_fields = [f for f in series_fields if f.name == options["field"]]
        if not series_fields:
            raise CommandError(f"{model._meta.label} has no matching series field.")
        field = series_fields[0]

        bundle = options["bundle"]
        if bundle is None:
            if field.bundle_field:
                raise CommandError(f"--bundle is required: {field.name} is split by '{field.bundle_field}'.")
            bundle = model._meta.model_name

        allocator = Allocator(ModelSequenceQuery(model))
        try:
            allocation = allocator.peek(
                model._meta.label_lower,
                bundle,
                field.suffix_template,
                field.name,
                at=self._moment(options["at"]),
            )
        except SeriesError as e:
            raise CommandError(str(e)) from e

        self.stdout.write(f"Series: {allocation.key}")
        self.stdout.write(self.style.SUCCESS(f"Next number: {allocation.value} (suffix '{allocation.suffix}')"))
