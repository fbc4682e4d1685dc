"""
Unit tests for the per-card, per-month cache.

Tests the current-month boundary, fill-then-hit, disk fallback, persistence
failures and single-flight behaviour under concurrency.
"""

import os
import shutil
import tempfile
import threading
import time
from datetime import datetime
from unittest.mock import patch

import pytest

from compass_usage.core.decoder import decode_usage
from compass_usage.core.errors import CachePersistError, FormatError
from compass_usage.storage.month_cache import (
    MonthCache,
    current_month_window,
    is_cacheable,
    is_current_month,
    month_key,
    parse_month_key,
)

HEADER = (
    b"DateTime,Transaction,Product,LineItem,Amount,BalanceDetails,"
    b"OrderDate,Payment,OrderNumber,AuthCode,Total\n"
)
JANUARY_CSV = HEADER + b"Jan-05-2024 09:00 AM,Purchase,Monthly Pass,Adult,$91.00,$0.00,,,,,\n"
FEBRUARY_CSV = HEADER + b"Feb-01-2024 07:45 AM,Tap in,Stored Value,Stn,-$2.50,$10.00,,,,,\n"

NOW = datetime(2024, 3, 15, 10, 30)


class CountingFetcher:
    """Fetcher returning a fixed export and counting invocations."""

    def __init__(self, raw: bytes = JANUARY_CSV, delay: float = 0.0):
        self.raw = raw
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return decode_usage(self.raw), self.raw


class TestMonthKeys:
    """Test month key formatting and parsing."""

    def test_month_key(self):
        assert month_key(2024, 1) == "2024-01"
        assert month_key(2024, 12) == "2024-12"

    def test_month_key_out_of_range(self):
        with pytest.raises(ValueError, match="out of range"):
            month_key(2024, 13)
        with pytest.raises(ValueError, match="out of range"):
            month_key(2024, 0)

    def test_parse_month_key(self):
        assert parse_month_key("2024-01") == datetime(2024, 1, 1)

    def test_parse_month_key_invalid(self):
        for key in ["2024-1", "2024/01", "24-01", "2024-13", "2024-00", ""]:
            with pytest.raises(ValueError):
                parse_month_key(key)


class TestCurrentMonthBoundary:
    """Pin the exact boundary arithmetic used to decide the current month."""

    def test_window_mid_month(self):
        start, end = current_month_window(NOW)

        assert start == datetime(2024, 2, 28, 10, 30)
        assert end == datetime(2024, 3, 27, 10, 30)

    def test_window_rolls_day_overflow_forward(self):
        # Jan 30 + 1 month is "Feb 30", which rolls to Mar 2 (2023 is not a leap year)
        start, end = current_month_window(datetime(2023, 2, 20, 10, 0))

        assert start == datetime(2023, 1, 30, 10, 0)
        assert end == datetime(2023, 3, 1, 10, 0)

    def test_window_leap_year(self):
        start, end = current_month_window(datetime(2024, 2, 20, 10, 0))

        assert start == datetime(2024, 1, 30, 10, 0)
        assert end == datetime(2024, 2, 29, 10, 0)

    def test_calendar_month_is_current(self):
        assert is_current_month(datetime(2024, 3, 1), NOW)
        assert not is_current_month(datetime(2024, 2, 1), NOW)
        assert not is_current_month(datetime(2024, 4, 1), NOW)

    def test_first_day_of_month(self):
        now = datetime(2024, 3, 1, 0, 30)

        assert is_current_month(datetime(2024, 3, 1), now)
        assert not is_current_month(datetime(2024, 2, 1), now)

    def test_last_day_of_month(self):
        now = datetime(2024, 3, 31, 23, 59)

        assert is_current_month(datetime(2024, 3, 1), now)
        assert not is_current_month(datetime(2024, 2, 1), now)
        assert not is_current_month(datetime(2024, 4, 1), now)

    def test_window_reaches_into_next_month(self):
        # Mid-February 2023 the window ends Mar 1 10:00, after Mar 1 00:00
        assert is_current_month(datetime(2023, 3, 1), datetime(2023, 2, 20, 10, 0))

    def test_is_cacheable(self):
        assert is_cacheable(datetime(2024, 2, 1), NOW)
        assert is_cacheable(datetime(2019, 7, 1), NOW)
        assert not is_cacheable(datetime(2024, 3, 1), NOW)

    def test_future_month_not_cacheable(self):
        assert not is_current_month(datetime(2024, 6, 1), NOW)
        assert not is_cacheable(datetime(2024, 6, 1), NOW)


class TestMonthCache:
    """Test cache tiers and fetch policy."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.cache = MonthCache(self.temp_dir, clock=lambda: NOW)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name: str, raw: bytes) -> None:
        with open(os.path.join(self.temp_dir, name), "wb") as f:
            f.write(raw)

    def test_current_month_always_fetches(self):
        self._write("111-2024-03.csv", JANUARY_CSV)
        fetcher = CountingFetcher(FEBRUARY_CSV)

        first = self.cache.get("111", "2024-03", fetcher)
        second = self.cache.get("111", "2024-03", fetcher)

        assert fetcher.calls == 2
        assert first == second == decode_usage(FEBRUARY_CSV)
        assert os.listdir(self.temp_dir) == ["111-2024-03.csv"]
        with open(os.path.join(self.temp_dir, "111-2024-03.csv"), "rb") as f:
            assert f.read() == JANUARY_CSV

    def test_current_month_writes_nothing(self):
        self.cache.get("111", "2024-03", CountingFetcher())

        assert os.listdir(self.temp_dir) == []

    def test_future_month_not_cached(self):
        fetcher = CountingFetcher(HEADER)

        self.cache.get("111", "2024-05", fetcher)
        self.cache.get("111", "2024-05", fetcher)

        assert fetcher.calls == 2
        assert os.listdir(self.temp_dir) == []

    def test_fill_then_hit(self):
        fetcher = CountingFetcher()

        first = self.cache.get("111", "2024-01", fetcher)

        assert fetcher.calls == 1
        assert os.listdir(self.temp_dir) == ["111-2024-01.csv"]
        with open(os.path.join(self.temp_dir, "111-2024-01.csv"), "rb") as f:
            assert f.read() == JANUARY_CSV

        second = self.cache.get("111", "2024-01", fetcher)

        assert fetcher.calls == 1
        assert second == first

    def test_disk_fallback(self):
        self._write("111-2024-02.csv", FEBRUARY_CSV)
        fetcher = CountingFetcher()

        records = self.cache.get("111", "2024-02", fetcher)

        assert fetcher.calls == 0
        assert records == decode_usage(FEBRUARY_CSV)

    def test_disk_read_populates_memory(self):
        self._write("111-2024-02.csv", FEBRUARY_CSV)
        self.cache.get("111", "2024-02", CountingFetcher())
        os.remove(os.path.join(self.temp_dir, "111-2024-02.csv"))

        fetcher = CountingFetcher()
        records = self.cache.get("111", "2024-02", fetcher)

        assert fetcher.calls == 0
        assert records == decode_usage(FEBRUARY_CSV)

    def test_cards_do_not_collide(self):
        self.cache.get("111", "2024-01", CountingFetcher(JANUARY_CSV))
        fetcher = CountingFetcher(FEBRUARY_CSV)

        records = self.cache.get("222", "2024-01", fetcher)

        assert fetcher.calls == 1
        assert records == decode_usage(FEBRUARY_CSV)
        assert sorted(os.listdir(self.temp_dir)) == ["111-2024-01.csv", "222-2024-01.csv"]

    def test_corrupt_cache_file_raises(self):
        self._write("111-2024-01.csv", HEADER + b"garbage,row\n")
        fetcher = CountingFetcher()

        with pytest.raises(FormatError):
            self.cache.get("111", "2024-01", fetcher)
        assert fetcher.calls == 0

    @patch("compass_usage.storage.month_cache._logger")
    def test_unreadable_cache_file_is_a_miss(self, mock_logger):
        os.mkdir(os.path.join(self.temp_dir, "111-2024-01.csv"))
        fetcher = CountingFetcher()

        records = self.cache.get("111", "2024-01", fetcher)

        assert fetcher.calls == 1
        assert records == decode_usage(JANUARY_CSV)
        messages = [c.args[0] for c in mock_logger.warning.call_args_list]
        assert any("read_failed" in m for m in messages)

    def test_fetch_error_propagates_and_caches_nothing(self):
        def failing():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError, match="upstream down"):
            self.cache.get("111", "2024-01", failing)
        assert os.listdir(self.temp_dir) == []

        fetcher = CountingFetcher()
        self.cache.get("111", "2024-01", fetcher)
        assert fetcher.calls == 1

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            self.cache.get("111", "January", CountingFetcher())

    def test_end_to_end_single_purchase(self):
        records = self.cache.get("111", "2024-01", CountingFetcher(JANUARY_CSV))

        assert len(records) == 1
        assert records[0].amount == 91.00


class TestPersistFailures:
    """Test behaviour when the cache directory cannot be written."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.missing_dir = os.path.join(self.temp_dir, "does", "not", "exist")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch("compass_usage.storage.month_cache._logger")
    def test_persist_failure_is_a_warning_by_default(self, mock_logger):
        cache = MonthCache(self.missing_dir, clock=lambda: NOW)
        fetcher = CountingFetcher()

        records = cache.get("111", "2024-01", fetcher)

        assert records == decode_usage(JANUARY_CSV)
        mock_logger.warning.assert_called_once()
        assert "persist_failed" in mock_logger.warning.call_args.args[0]

        # Memory tier still serves the month
        assert cache.get("111", "2024-01", fetcher) == records
        assert fetcher.calls == 1

    def test_strict_persist_raises(self):
        cache = MonthCache(self.missing_dir, clock=lambda: NOW, strict_persist=True)
        fetcher = CountingFetcher()

        with pytest.raises(CachePersistError):
            cache.get("111", "2024-01", fetcher)

        # The decoded month was kept in memory before the write failed
        assert cache.get("111", "2024-01", fetcher) == decode_usage(JANUARY_CSV)
        assert fetcher.calls == 1


class TestSingleFlight:
    """Test that concurrent callers for one key share a fetch."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.cache = MonthCache(self.temp_dir, clock=lambda: NOW)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _run_concurrently(self, target, count):
        results = []
        errors = []

        def worker():
            try:
                results.append(target())
            except Exception as e:  # surfaced through the errors list
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        return results, errors

    def test_same_key_fetches_once(self):
        fetcher = CountingFetcher(delay=0.1)

        results, errors = self._run_concurrently(
            lambda: self.cache.get("111", "2024-01", fetcher), 8
        )

        assert errors == []
        assert fetcher.calls == 1
        assert len(results) == 8
        assert all(r == results[0] for r in results)

    def test_key_locks_dropped_once_filled(self):
        self._run_concurrently(lambda: self.cache.get("111", "2024-01", CountingFetcher(delay=0.05)), 4)
        self.cache.get("111", "2024-02", CountingFetcher())

        assert self.cache._locks == {}

    def test_key_lock_kept_after_failed_fetch(self):
        def failing():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError):
            self.cache.get("111", "2024-01", failing)

        assert list(self.cache._locks) == [("111", "2024-01")]

        self.cache.get("111", "2024-01", CountingFetcher())
        assert self.cache._locks == {}

    def test_different_keys_fetch_independently(self):
        fetcher = CountingFetcher(delay=0.05)
        keys = iter(["2024-01", "2024-02", "2023-12"])
        lock = threading.Lock()

        def next_key():
            with lock:
                return next(keys)

        results, errors = self._run_concurrently(
            lambda: self.cache.get("111", next_key(), fetcher), 3
        )

        assert errors == []
        assert fetcher.calls == 3
        assert len(os.listdir(self.temp_dir)) == 3
