# series/tests.py

import threading
import time
from datetime import date, datetime, timezone as dt_timezone
from itertools import count
from zoneinfo import ZoneInfo

from django.test import SimpleTestCase
from django.utils import timezone

from series.domain.dispatcher import emit, handlers_for, register_handler, unregister_handler
from series.domain.events import DomainEvent, SeriesNumberAllocated
from series.handlers import log_series_number_allocated
from series.exceptions import InvalidTemplate, QueryFailure, SeriesLocked
from series.services.allocator import Allocator, next_after
from series.services.locks import LocalSeriesLock
from series.services.query import coerce_number
from series.services.resolver import resolve_suffix
from series.values import SeriesKey, SeriesValue

MARCH = datetime(2024, 3, 15, 12, 0, tzinfo=dt_timezone.utc)
FEBRUARY = datetime(2024, 2, 10, 9, 30, tzinfo=dt_timezone.utc)


class InMemorySeriesStore:
    """
    Minimal entity store: rows of (series key, value) keyed by pk.
    """

    def __init__(self):
        self.rows = {}
        self._pks = count(1)
        self._mutex = threading.Lock()

    def add(self, key, value, pk=None):
        with self._mutex:
            pk = pk if pk is not None else next(self._pks)
            self.rows[pk] = (key, value)
            return pk

    def max_value(self, key, exclude_pk=None):
        with self._mutex:
            values = [
                coerce_number(value)
                for pk, (row_key, value) in self.rows.items()
                if row_key == key and pk != exclude_pk
            ]
        values = [v for v in values if v is not None]
        return max(values) if values else None


class FailingQuery:
    def max_value(self, key, exclude_pk=None):
        raise QueryFailure(key)


def invoice_key(suffix="-2024-03", bundle="invoice"):
    return SeriesKey(
        entity_type_id="invoices.invoice",
        bundle=bundle,
        suffix=suffix,
        field_name="number",
    )


class ResolveSuffixTests(SimpleTestCase):
    def test_year_month_template(self):
        self.assertEqual(resolve_suffix("-Y-m", MARCH), "-2024-03")

    def test_escaped_literals_mixed_with_tokens(self):
        self.assertEqual(resolve_suffix(r"-Y-\s\t\o\r\e", MARCH), "-2024-store")
        self.assertEqual(resolve_suffix(r"\S\t\o\r\e-Y", MARCH), "Store-2024")

    def test_same_input_same_suffix(self):
        self.assertEqual(resolve_suffix("-Y-m-d", MARCH), resolve_suffix("-Y-m-d", MARCH))

    def test_plain_date_is_accepted(self):
        self.assertEqual(resolve_suffix("-Y-m", date(2024, 1, 31)), "-2024-01")

    def test_aware_datetime_uses_current_timezone(self):
        late_utc = datetime(2024, 3, 31, 22, 30, tzinfo=dt_timezone.utc)
        with timezone.override(ZoneInfo("Asia/Muscat")):
            self.assertEqual(resolve_suffix("-Y-m", late_utc), "-2024-04")
        with timezone.override(ZoneInfo("UTC")):
            self.assertEqual(resolve_suffix("-Y-m", late_utc), "-2024-03")

    def test_empty_template_is_a_single_series(self):
        self.assertEqual(resolve_suffix("", MARCH), "")

    def test_dangling_escape_is_invalid(self):
        with self.assertRaises(InvalidTemplate):
            resolve_suffix("-Y-\\", MARCH)

    def test_escaped_backslash_is_fine(self):
        self.assertEqual(resolve_suffix("Y\\\\", MARCH), "2024\\")

    def test_non_string_template_is_invalid(self):
        with self.assertRaises(InvalidTemplate):
            resolve_suffix(None, MARCH)

    def test_time_token_on_plain_date_is_invalid(self):
        with self.assertRaises(InvalidTemplate):
            resolve_suffix("-Y-H", date(2024, 3, 15))

    def test_too_long_suffix_is_invalid(self):
        with self.assertRaises(InvalidTemplate) as ctx:
            resolve_suffix("Y" * 100, MARCH)
        self.assertIsInstance(ctx.exception, ValueError)


class SeriesValueTests(SimpleTestCase):
    def test_nothing_set_is_empty(self):
        self.assertTrue(SeriesValue(value=None, autofill=None).is_empty)
        self.assertTrue(SeriesValue(value=None, autofill=False).is_empty)

    def test_pending_autofill_is_content(self):
        value = SeriesValue(value=None, autofill=True)
        self.assertFalse(value.is_empty)
        self.assertTrue(value.is_pending)

    def test_zero_is_content(self):
        self.assertFalse(SeriesValue(value=0, autofill=False).is_empty)
        self.assertFalse(SeriesValue(value=0, autofill=True).is_empty)


class AllocatorTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemorySeriesStore()
        self.lock = LocalSeriesLock(retries=2, retry_delay=0.01)
        self.allocator = Allocator(self.store, lock=self.lock)

    def allocate(self, template="-Y-m", at=MARCH, bundle="invoice", exclude_pk=None):
        return self.allocator.next(
            "invoices.invoice",
            bundle,
            template,
            "number",
            exclude_pk=exclude_pk,
            at=at,
        )

    def test_empty_series_starts_at_one(self):
        allocation = self.allocate()
        self.assertEqual(allocation.value, 1)
        self.assertEqual(allocation.suffix, "-2024-03")
        self.assertEqual(allocation.key, invoice_key())

    def test_existing_max_plus_one(self):
        for value in (3, 7, 5):
            self.store.add(invoice_key(), value)
        self.assertEqual(self.allocate().value, 8)

    def test_excluded_pk_is_not_compared(self):
        self.store.add(invoice_key(), 4)
        own_pk = self.store.add(invoice_key(), 9)
        self.assertEqual(self.allocate(exclude_pk=own_pk).value, 5)

    def test_suffixes_do_not_share_a_sequence(self):
        self.store.add(invoice_key("-2024-03"), 7)
        february = self.allocate(at=FEBRUARY)
        self.assertEqual((february.value, february.suffix), (1, "-2024-02"))
        self.store.add(february.key, february.value)
        self.assertEqual(self.allocate(at=MARCH).value, 8)

    def test_bundles_do_not_share_a_sequence(self):
        self.store.add(invoice_key(bundle="credit_note"), 50)
        self.assertEqual(self.allocate(bundle="invoice").value, 1)

    def test_corrupt_max_is_treated_as_absent(self):
        self.store.add(invoice_key(), "not-a-number")
        self.assertEqual(self.allocate().value, 1)

    def test_null_max_is_treated_as_absent(self):
        self.store.add(invoice_key(), None)
        self.assertEqual(self.allocate().value, 1)

    def test_next_after(self):
        self.assertEqual(next_after(None), 1)
        self.assertEqual(next_after(0), 1)
        self.assertEqual(next_after(41), 42)

    def test_lease_records_last_value(self):
        self.store.add(invoice_key(), 2)
        self.allocate()
        self.assertEqual(self.lock.last_values[invoice_key()], 3)

    def test_peek_does_not_record(self):
        self.store.add(invoice_key(), 2)
        preview = self.allocator.peek("invoices.invoice", "invoice", "-Y-m", "number", at=MARCH)
        self.assertEqual(preview.value, 3)
        self.assertNotIn(invoice_key(), self.lock.last_values)

    def test_invalid_template_propagates(self):
        with self.assertRaises(InvalidTemplate):
            self.allocate(template="-Y-\\")

    def test_query_failure_propagates_and_releases_lock(self):
        allocator = Allocator(FailingQuery(), lock=self.lock)
        with self.assertRaises(QueryFailure):
            allocator.next("invoices.invoice", "invoice", "-Y-m", "number", at=MARCH)
        # the lock is free again
        self.assertEqual(self.allocate().value, 1)

    def test_locked_series_raises_series_locked(self):
        with self.lock.hold(invoice_key()):
            with self.assertRaises(SeriesLocked) as ctx:
                self.allocate()
        self.assertEqual(ctx.exception.key, invoice_key())
        self.assertEqual(ctx.exception.attempts, 2)

    def test_other_series_is_not_blocked(self):
        results = []

        with self.lock.hold(invoice_key("-2024-03")):
            worker = threading.Thread(target=lambda: results.append(self.allocate(at=FEBRUARY)))
            worker.start()
            worker.join(timeout=5)

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].suffix, "-2024-02")


class ConcurrentAllocationTests(SimpleTestCase):
    """
    Simulated concurrent savers on one series: every worker reserves a number
    and stores it before the lock is released.
    """

    workers = 25

    def test_concurrent_allocations_are_distinct_and_contiguous(self):
        store = InMemorySeriesStore()
        store.add(invoice_key(), 10)
        allocator = Allocator(store, lock=LocalSeriesLock(retries=200, retry_delay=0.05))

        barrier = threading.Barrier(self.workers)
        results = []
        errors = []
        results_lock = threading.Lock()

        def save_one():
            try:
                barrier.wait()
                with allocator.reserve("invoices.invoice", "invoice", "-Y-m", "number", at=MARCH) as allocation:
                    # widen the window between read and write
                    time.sleep(0.001)
                    store.add(allocation.key, allocation.value)
                with results_lock:
                    results.append(allocation.value)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=save_one) for _ in range(self.workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(results), list(range(11, 11 + self.workers)))

    def test_concurrent_series_progress_independently(self):
        store = InMemorySeriesStore()
        allocator = Allocator(store, lock=LocalSeriesLock(retries=200, retry_delay=0.05))
        results = {"-2024-02": [], "-2024-03": []}
        results_lock = threading.Lock()

        def save_one(at):
            with allocator.reserve("invoices.invoice", "invoice", "-Y-m", "number", at=at) as allocation:
                store.add(allocation.key, allocation.value)
            with results_lock:
                results[allocation.suffix].append(allocation.value)

        threads = [
            threading.Thread(target=save_one, args=(FEBRUARY if i % 2 else MARCH,))
            for i in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(results["-2024-02"]), [1, 2, 3, 4, 5])
        self.assertEqual(sorted(results["-2024-03"]), [1, 2, 3, 4, 5])


class DomainEventDispatcherTests(SimpleTestCase):
    def setUp(self):
        unregister_handler(SeriesNumberAllocated, log_series_number_allocated)
        self.addCleanup(register_handler, SeriesNumberAllocated, log_series_number_allocated)

    def make_event(self):
        return SeriesNumberAllocated(
            entity_type_id="invoices.invoice",
            object_pk=1,
            bundle="invoice",
            field_name="number",
            value=8,
            suffix="-2024-03",
        )

    def subscribe(self, event_type, handler):
        register_handler(event_type, handler)
        self.addCleanup(unregister_handler, event_type, handler)

    def test_emit_calls_registered_handlers_once(self):
        seen = []
        self.subscribe(SeriesNumberAllocated, seen.append)
        register_handler(SeriesNumberAllocated, seen.append)

        delivered = emit(self.make_event())

        self.assertEqual([e.value for e in seen], [8])
        self.assertEqual(delivered, 1)

    def test_base_class_handlers_receive_subclass_events(self):
        seen = []
        self.subscribe(DomainEvent, seen.append)

        emit(self.make_event())

        self.assertEqual(len(seen), 1)
        self.assertIn(seen.append, handlers_for(SeriesNumberAllocated))

    def test_unregistered_handler_is_not_called(self):
        seen = []
        register_handler(SeriesNumberAllocated, seen.append)
        unregister_handler(SeriesNumberAllocated, seen.append)

        emit(self.make_event())

        self.assertEqual(seen, [])

    def test_failing_handler_does_not_stop_others(self):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        self.subscribe(SeriesNumberAllocated, broken)
        self.subscribe(SeriesNumberAllocated, seen.append)

        with self.assertLogs("series.domain.dispatcher", "ERROR"):
            delivered = emit(self.make_event())

        self.assertEqual(len(seen), 1)
        self.assertEqual(delivered, 1)
