# invoices/tests.py

import threading
from datetime import datetime, timezone as dt_timezone
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, OperationalError, connection, models
from django.db.transaction import TransactionManagementError
from django.test import TestCase, TransactionTestCase, override_settings

from series.domain.dispatcher import register_handler, unregister_handler
from series.domain.events import SeriesNumberAllocated
from series.exceptions import InvalidTemplate, QueryFailure, SeriesLocked
from series.models import SeriesCounter, SeriesNumberField
from series.services.allocator import Allocator
from series.services.gate import AutofillGate, default_allocator
from series.services.locks import DatabaseSeriesLock
from series.services.query import ModelSequenceQuery
from series.values import SeriesKey

from .models import Invoice, Receipt

MARCH = datetime(2024, 3, 15, 12, 0, tzinfo=dt_timezone.utc)
FEBRUARY = datetime(2024, 2, 10, 9, 30, tzinfo=dt_timezone.utc)


def fixed_gate(at=MARCH):
    return AutofillGate(clock=lambda: at)


class SeriesBaseTestCase(TestCase):
    """
    Freezes the allocation clock of Invoice and Receipt to MARCH.
    """

    def setUp(self):
        super().setUp()
        for model in (Invoice, Receipt):
            patcher = mock.patch.object(model, "series_gate", fixed_gate())
            patcher.start()
            self.addCleanup(patcher.stop)

    def manual_invoice(self, number, suffix="-2024-03", kind=Invoice.Kind.INVOICE):
        return Invoice.objects.create(
            kind=kind,
            number=number,
            number_series_suffix=suffix,
        )

    def autofill_invoice(self, kind=Invoice.Kind.INVOICE, **extra):
        return Invoice.objects.create(kind=kind, number_autofill=True, **extra)


class AutofillTests(SeriesBaseTestCase):
    def test_first_invoice_of_a_new_series_gets_one(self):
        invoice = self.autofill_invoice()

        invoice.refresh_from_db()
        self.assertEqual(invoice.number, 1)
        self.assertEqual(invoice.number_series_suffix, "-2024-03")
        self.assertFalse(invoice.number_autofill)
        self.assertEqual(invoice.serial, "1-2024-03")

    def test_next_number_follows_the_series_maximum(self):
        for number in (3, 7, 5):
            self.manual_invoice(number)

        invoice = self.autofill_invoice()

        invoice.refresh_from_db()
        self.assertEqual(invoice.number, 8)
        self.assertEqual(invoice.number_series_suffix, "-2024-03")
        self.assertFalse(invoice.number_autofill)

    def test_other_month_is_another_series(self):
        self.manual_invoice(7, suffix="-2024-03")

        with mock.patch.object(Invoice, "series_gate", fixed_gate(FEBRUARY)):
            february = self.autofill_invoice()
        march = self.autofill_invoice()

        self.assertEqual((february.number, february.number_series_suffix), (1, "-2024-02"))
        self.assertEqual((march.number, march.number_series_suffix), (8, "-2024-03"))

    def test_other_kind_is_another_series(self):
        self.manual_invoice(50, kind=Invoice.Kind.CREDIT_NOTE)

        invoice = self.autofill_invoice(kind=Invoice.Kind.INVOICE)
        credit_note = self.autofill_invoice(kind=Invoice.Kind.CREDIT_NOTE)

        self.assertEqual(invoice.number, 1)
        self.assertEqual(credit_note.number, 51)

    def test_consecutive_autofills_increase_by_one(self):
        numbers = [self.autofill_invoice().number for _ in range(4)]
        self.assertEqual(numbers, [1, 2, 3, 4])

    def test_default_template_and_model_bundle(self):
        receipt = Receipt.objects.create(number_autofill=True)

        receipt.refresh_from_db()
        self.assertEqual(receipt.number, 1)
        self.assertEqual(receipt.number_series_suffix, "-2024-store")
        self.assertEqual(str(receipt), "1-2024-store")

    def test_null_numbers_in_the_series_are_ignored(self):
        Invoice.objects.create(number=None, number_series_suffix="-2024-03")
        self.manual_invoice(2)

        self.assertEqual(self.autofill_invoice().number, 3)


class ResaveTests(SeriesBaseTestCase):
    def test_second_save_keeps_the_number(self):
        invoice = self.autofill_invoice()
        self.manual_invoice(20)

        invoice.customer_name = "Changed"
        invoice.save()
        invoice.save()

        invoice.refresh_from_db()
        self.assertEqual(invoice.number, 1)
        self.assertFalse(invoice.number_autofill)

    def test_new_autofill_request_excludes_the_instance_itself(self):
        self.manual_invoice(5)
        invoice = self.autofill_invoice()
        self.assertEqual(invoice.number, 6)

        invoice.request_autofill("number")
        invoice.save()

        invoice.refresh_from_db()
        self.assertEqual(invoice.number, 6)
        self.assertFalse(invoice.number_autofill)

    def test_manual_value_is_kept(self):
        self.manual_invoice(100)

        invoice = self.manual_invoice(42)

        invoice.refresh_from_db()
        self.assertEqual(invoice.number, 42)
        self.assertEqual(invoice.number_series_suffix, "-2024-03")
        self.assertFalse(invoice.number_autofill)

    def test_update_fields_without_the_series_field_do_not_allocate(self):
        invoice = Invoice.objects.create(customer_name="Draft")
        invoice.number_autofill = True
        invoice.customer_name = "Customer"

        invoice.save(update_fields=["customer_name"])

        invoice.refresh_from_db()
        self.assertIsNone(invoice.number)
        self.assertFalse(invoice.number_autofill)

    def test_update_fields_with_the_flag_write_the_whole_triple(self):
        self.manual_invoice(9)
        invoice = Invoice.objects.create(customer_name="Draft")
        invoice.number_autofill = True

        invoice.save(update_fields=["number_autofill"])

        invoice.refresh_from_db()
        self.assertEqual(invoice.number, 10)
        self.assertEqual(invoice.number_series_suffix, "-2024-03")
        self.assertFalse(invoice.number_autofill)


class SeriesValueOnModelTests(SeriesBaseTestCase):
    def test_emptiness(self):
        invoice = Invoice(kind=Invoice.Kind.INVOICE)
        self.assertTrue(invoice.get_series_value("number").is_empty)

        invoice.number_autofill = True
        self.assertFalse(invoice.get_series_value("number").is_empty)

    def test_series_fields(self):
        self.assertEqual([f.name for f in Invoice.series_fields()], ["number"])


class FailureTests(SeriesBaseTestCase):
    def assertUntouched(self, invoice):
        self.assertIsNone(invoice.number)
        self.assertTrue(invoice.number_autofill)
        self.assertEqual(invoice.number_series_suffix, "")

    def test_invalid_template_aborts_the_save(self):
        field = Invoice._meta.get_field("number")
        invoice = Invoice(number_autofill=True)

        with mock.patch.object(field, "series_suffix", "-Y-\\"):
            with self.assertRaises(InvalidTemplate):
                invoice.save()

        self.assertUntouched(invoice)
        self.assertFalse(Invoice.objects.exists())

    def test_locked_series_keeps_the_autofill_flag(self):
        def locked_allocator(model, using):
            allocator = mock.Mock()
            allocator.next.side_effect = SeriesLocked("invoices.invoice", 5)
            return allocator

        invoice = Invoice(number_autofill=True)

        with mock.patch.object(Invoice, "series_gate", AutofillGate(allocator_factory=locked_allocator)):
            with self.assertRaises(SeriesLocked):
                invoice.save()

        self.assertUntouched(invoice)
        self.assertFalse(Invoice.objects.exists())

    def test_failed_write_restores_the_triple(self):
        invoice = Invoice(number_autofill=True)

        with mock.patch.object(models.Model, "save_base", side_effect=DatabaseError("disk full")):
            with self.assertRaises(DatabaseError):
                invoice.save()

        self.assertUntouched(invoice)

    def test_query_error_becomes_query_failure(self):
        key = SeriesKey("invoices.invoice", "invoice", "-2024-03", "number")

        with mock.patch.object(models.QuerySet, "first", side_effect=DatabaseError("gone")):
            with self.assertRaises(QueryFailure) as ctx:
                ModelSequenceQuery(Invoice).max_value(key)

        self.assertEqual(ctx.exception.key, key)
        self.assertIsInstance(ctx.exception.__cause__, DatabaseError)

    def test_series_lock_refuses_to_run_outside_a_transaction(self):
        invoice = Invoice(number_autofill=True)
        field = Invoice._meta.get_field("number")
        outside = mock.Mock(in_atomic_block=False)

        with mock.patch("series.services.locks.transaction.get_connection", return_value=outside):
            with self.assertRaises(TransactionManagementError):
                AutofillGate().before_save(invoice, field)

        self.assertUntouched(invoice)

    @override_settings(SERIES_LOCK_RETRY_DELAY=0)
    def test_busy_database_aborts_the_save_as_locked_series(self):
        invoice = Invoice(number_autofill=True)
        busy = OperationalError("database is locked")

        with mock.patch.object(models.QuerySet, "get_or_create", side_effect=busy):
            with self.assertRaises(SeriesLocked) as ctx:
                invoice.save()

        self.assertIs(ctx.exception.__cause__, busy)
        self.assertUntouched(invoice)
        self.assertFalse(Invoice.objects.exists())


class DatabaseSeriesLockTests(SeriesBaseTestCase):
    key = SeriesKey("invoices.invoice", "invoice", "-2024-03", "number")

    def hold_while_busy(self, lock, row_locks):
        busy = mock.patch.object(
            models.QuerySet,
            "get_or_create",
            side_effect=OperationalError("database is locked"),
        )
        features = mock.patch.object(connection.features, "has_select_for_update", row_locks)

        with features, busy as get_or_create:
            with self.assertRaises(SeriesLocked) as ctx:
                with lock.hold(self.key):
                    self.fail("lock acquired on a busy database")
        return ctx.exception, get_or_create

    def test_row_lock_backends_retry_then_give_up(self):
        error, get_or_create = self.hold_while_busy(DatabaseSeriesLock(retries=3, retry_delay=0), True)

        self.assertEqual(get_or_create.call_count, 3)
        self.assertEqual(error.attempts, 3)
        self.assertEqual(error.key, self.key)
        self.assertIsInstance(error.__cause__, OperationalError)

    def test_backends_without_row_locks_give_up_at_once(self):
        error, get_or_create = self.hold_while_busy(DatabaseSeriesLock(retries=3, retry_delay=0), False)

        self.assertEqual(get_or_create.call_count, 1)
        self.assertEqual(error.attempts, 1)

    def test_hold_creates_and_stamps_the_counter(self):
        with DatabaseSeriesLock().hold(self.key) as lease:
            lease.record(4)

        counter = SeriesCounter.objects.get(**SeriesCounter.lookup_for(self.key))
        self.assertEqual(counter.last_value, 4)
        self.assertEqual(counter.allocations, 1)
        self.assertIsNotNone(counter.locked_at)


class SequenceQueryTests(SeriesBaseTestCase):
    def test_max_value_is_scoped_to_bundle_and_suffix(self):
        self.manual_invoice(4)
        self.manual_invoice(9, suffix="-2024-02")
        self.manual_invoice(30, kind=Invoice.Kind.CREDIT_NOTE)
        own = self.manual_invoice(12)

        query = ModelSequenceQuery(Invoice)
        key = SeriesKey("invoices.invoice", "invoice", "-2024-03", "number")

        self.assertEqual(query.max_value(key), 12)
        self.assertEqual(query.max_value(key, exclude_pk=own.pk), 4)

    def test_empty_series_has_no_max(self):
        key = SeriesKey("invoices.invoice", "invoice", "-1999-01", "number")
        self.assertIsNone(ModelSequenceQuery(Invoice).max_value(key))

    def test_load(self):
        invoice = self.manual_invoice(3)
        query = ModelSequenceQuery(Invoice)

        self.assertEqual(query.load(invoice.pk), invoice)
        self.assertIsNone(query.load(invoice.pk + 1000))


class SeriesCounterTests(SeriesBaseTestCase):
    def test_counter_records_allocations(self):
        self.manual_invoice(7)
        self.autofill_invoice()
        self.autofill_invoice()

        counter = SeriesCounter.objects.get(
            entity_type_id="invoices.invoice",
            bundle="invoice",
            suffix="-2024-03",
            field_name="number",
        )
        self.assertEqual(counter.last_value, 9)
        self.assertEqual(counter.allocations, 2)
        self.assertIsNotNone(counter.locked_at)

    def test_manual_values_do_not_touch_counters(self):
        self.manual_invoice(7)
        self.assertFalse(SeriesCounter.objects.exists())


class AllocationEventTests(SeriesBaseTestCase):
    def test_event_emitted_after_commit(self):
        seen = []
        register_handler(SeriesNumberAllocated, seen.append)
        self.addCleanup(unregister_handler, SeriesNumberAllocated, seen.append)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            invoice = self.autofill_invoice()
            self.assertEqual(seen, [])

        self.assertEqual(len(callbacks), 1)
        self.assertEqual(len(seen), 1)
        event = seen[0]
        self.assertEqual(event.object_pk, invoice.pk)
        self.assertEqual(event.value, 1)
        self.assertEqual(event.suffix, "-2024-03")
        self.assertEqual(event.bundle, "invoice")

    def test_allocation_is_logged(self):
        with self.assertLogs("series.handlers", "INFO") as logs:
            with self.captureOnCommitCallbacks(execute=True):
                self.autofill_invoice()

        self.assertIn("Allocated 1-2024-03 to invoices.invoice", logs.output[0])

    def test_manual_save_emits_nothing(self):
        with self.captureOnCommitCallbacks() as callbacks:
            self.manual_invoice(3)
        self.assertEqual(callbacks, [])


class OutsideTransactionTests(TransactionTestCase):
    def locked_then(self, calls, fail_times):
        def allocator_factory(model, using):
            calls.append(using)
            if len(calls) <= fail_times:
                allocator = mock.Mock()
                allocator.next.side_effect = SeriesLocked("invoices.invoice", 1)
                return allocator
            return default_allocator(model, using)

        return AutofillGate(allocator_factory=allocator_factory, clock=lambda: MARCH)

    def test_database_lock_needs_a_transaction(self):
        allocator = Allocator(ModelSequenceQuery(Invoice))

        with self.assertRaises(TransactionManagementError):
            allocator.next("invoices.invoice", "invoice", "-Y-m", "number", at=MARCH)

        self.assertFalse(SeriesCounter.objects.exists())

    @override_settings(SERIES_LOCK_RETRIES=3, SERIES_LOCK_RETRY_DELAY=0)
    def test_save_starts_over_after_a_locked_series(self):
        calls = []

        with mock.patch.object(Invoice, "series_gate", self.locked_then(calls, fail_times=2)):
            invoice = Invoice.objects.create(number_autofill=True)

        self.assertEqual(len(calls), 3)
        invoice.refresh_from_db()
        self.assertEqual(invoice.number, 1)
        self.assertEqual(invoice.number_series_suffix, "-2024-03")
        self.assertFalse(invoice.number_autofill)

    @override_settings(SERIES_LOCK_RETRIES=3, SERIES_LOCK_RETRY_DELAY=0)
    def test_save_gives_up_after_the_configured_retries(self):
        calls = []
        invoice = Invoice(number_autofill=True)

        with mock.patch.object(Invoice, "series_gate", self.locked_then(calls, fail_times=10)):
            with self.assertRaises(SeriesLocked):
                invoice.save()

        self.assertEqual(len(calls), 3)
        self.assertTrue(invoice.number_autofill)
        self.assertIsNone(invoice.number)
        self.assertFalse(Invoice.objects.exists())


@override_settings(SERIES_LOCK_RETRIES=50, SERIES_LOCK_RETRY_DELAY=0.01)
class ConcurrentSaveTests(TransactionTestCase):
    """
    Autofill saves from several threads, each on its own connection.
    """

    workers = 5

    def test_parallel_saves_get_distinct_contiguous_numbers(self):
        Invoice.objects.create(number=7, number_series_suffix="-2024-03")
        barrier = threading.Barrier(self.workers)
        numbers, errors = [], []

        def worker():
            try:
                barrier.wait(timeout=10)
                numbers.append(Invoice.objects.create(number_autofill=True).number)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        with mock.patch.object(Invoice, "series_gate", fixed_gate()):
            threads = [threading.Thread(target=worker) for _ in range(self.workers)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=60)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(numbers), [8, 9, 10, 11, 12])

        stored = Invoice.objects.filter(number_series_suffix="-2024-03").values_list("number", flat=True)
        self.assertEqual(sorted(stored), [7, 8, 9, 10, 11, 12])
        self.assertFalse(Invoice.objects.filter(number_autofill=True).exists())

        counter = SeriesCounter.objects.get(entity_type_id="invoices.invoice", suffix="-2024-03")
        self.assertEqual(counter.last_value, 12)
        self.assertEqual(counter.allocations, 5)


class SeriesFieldTests(TestCase):
    def test_companion_columns(self):
        names = {f.name for f in Invoice._meta.concrete_fields}
        self.assertTrue({"number", "number_autofill", "number_series_suffix"} <= names)

        autofill = Invoice._meta.get_field("number_autofill")
        suffix = Invoice._meta.get_field("number_series_suffix")
        self.assertFalse(autofill.default)
        self.assertEqual(suffix.max_length, 255)
        self.assertTrue(Invoice._meta.get_field("number").null)

    def test_deconstruct(self):
        name, path, args, kwargs = Invoice._meta.get_field("number").deconstruct()

        self.assertEqual(path, "series.models.fields.SeriesNumberField")
        self.assertEqual(kwargs["series_suffix"], "-Y-m")
        self.assertEqual(kwargs["bundle_field"], "kind")
        self.assertIs(kwargs["companions"], False)

    def test_field_checks_pass(self):
        self.assertEqual(Invoice._meta.get_field("number").check(), [])

    def test_invalid_template_fails_check(self):
        field = SeriesNumberField(series_suffix="-Y-\\")
        errors = field._check_suffix_template()
        self.assertEqual([e.id for e in errors], ["series.E001"])

    def test_bundle_for(self):
        field = Invoice._meta.get_field("number")
        self.assertEqual(field.bundle_for(Invoice(kind=Invoice.Kind.CREDIT_NOTE)), "credit_note")
        self.assertEqual(Receipt._meta.get_field("number").bundle_for(Receipt()), "receipt")


class SeriesNextCommandTests(TestCase):
    def test_preview_next_number(self):
        Invoice.objects.create(number=7, number_series_suffix="-2024-03")
        out = StringIO()

        call_command("series_next", "invoices.Invoice", "--bundle", "invoice", "--at", "2024-03-15", stdout=out)

        self.assertIn("Next number: 8 (suffix '-2024-03')", out.getvalue())
        self.assertFalse(SeriesCounter.objects.exists())

    def test_bundle_is_required_for_split_fields(self):
        with self.assertRaises(CommandError):
            call_command("series_next", "invoices.Invoice", stdout=StringIO())

    def test_unknown_model(self):
        with self.assertRaises(CommandError):
            call_command("series_next", "invoices.Nope", stdout=StringIO())

    def test_model_without_bundle_field(self):
        out = StringIO()
        call_command("series_next", "invoices.Receipt", "--at", "2024-03-15T10:00:00", stdout=out)
        self.assertIn("Next number: 1 (suffix '-2024-store')", out.getvalue())

    def test_impossible_date_is_a_command_error(self):
        with self.assertRaises(CommandError) as ctx:
            call_command("series_next", "invoices.Receipt", "--at", "2024-02-30", stdout=StringIO())

        self.assertIn("2024-02-30", str(ctx.exception))
