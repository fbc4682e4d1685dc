"""
Per-card, per-month usage cache.

Two tiers: decoded records in memory, raw CSV exports on disk at
``<cache_dir>/<card>-<YYYY-MM>.csv``. A month whose data may still change
(the current month, or any later month) is never cached, so a stored entry
never goes stale.

Concurrent requests for the same (card, month) share one upstream fetch.
"""

import contextlib
import os
import re
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..core.decoder import decode_usage
from ..core.errors import CachePersistError
from ..logging_setup import get_logger
from .models import UsageRecord

Fetcher = Callable[[], Tuple[List[UsageRecord], bytes]]

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")

_logger = get_logger("compass_usage.storage.month_cache")


def month_key(year: int, month: int) -> str:
    """Format a month as ``YYYY-MM``."""
    if not 1 <= month <= 12:
        raise ValueError("month out of range [1, 12]")
    return f"{year:04d}-{month:02d}"


def parse_month_key(key: str) -> datetime:
    """Return the first instant of the month named by ``YYYY-MM``."""
    match = _MONTH_KEY_RE.fullmatch(key)
    if not match:
        raise ValueError(f"invalid month key {key!r}, expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"invalid month key {key!r}: month out of range [1, 12]")
    return datetime(year, month, 1)


def _add_months(value: datetime, months: int) -> datetime:
    # Day overflow rolls into the next month (Jan 30 + 1 month -> Mar 2).
    index = value.year * 12 + (value.month - 1) + months
    first = value.replace(year=index // 12, month=index % 12 + 1, day=1)
    return first + timedelta(days=value.day - 1)


def current_month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Return the open interval treated as the still-accruing month.

    Starts ``now.day + 1`` days before ``now`` and ends one calendar month
    later minus one day. The window is slightly wider than the calendar
    month: late in a short month it also covers the first day of the next.
    """
    start = now - timedelta(days=now.day + 1)
    end = _add_months(start, 1) - timedelta(days=1)
    return start, end


def is_current_month(month_start: datetime, now: datetime) -> bool:
    """True when the month's first instant falls strictly inside the window."""
    start, end = current_month_window(now)
    return start < month_start < end


def is_cacheable(month_start: datetime, now: datetime) -> bool:
    """True for months whose usage can no longer change."""
    return not is_current_month(month_start, now) and month_start <= now


class MonthCache:
    """Two-tier cache of decoded usage keyed by (card, month).

    Memory entries are immutable once written. The disk tier survives
    restarts; the memory tier is filled lazily from either a fetch or
    a disk read.
    """

    def __init__(
        self,
        cache_dir,
        clock: Callable[[], datetime] = datetime.now,
        strict_persist: bool = False,
    ):
        """Initialize the cache.

        Args:
            cache_dir: Directory holding the raw CSV files
            clock: Returns the current time; decides which month is current
            strict_persist: Raise CachePersistError when a fetched month cannot
                be written, instead of logging a warning
        """
        self.cache_dir = Path(cache_dir)
        self.clock = clock
        self.strict_persist = strict_persist
        self._memory: Dict[Tuple[str, str], List[UsageRecord]] = {}
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def cache_path(self, card: str, key: str) -> Path:
        """Path of the raw CSV file for a (card, month) entry."""
        return self.cache_dir / f"{card}-{key}.csv"

    def _key_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _release_key_lock(self, key: Tuple[str, str]) -> None:
        # Filled entries are served before any lock is taken
        with self._locks_guard:
            self._locks.pop(key, None)

    def get(self, card: str, key: str, fetcher: Fetcher) -> List[UsageRecord]:
        """Return usage for a card and month, fetching on a miss.

        Args:
            card: Card serial number
            key: Month as ``YYYY-MM``
            fetcher: Called on a miss; returns decoded records and raw CSV bytes

        Returns:
            Decoded usage records for the month

        Raises:
            ValueError: If ``key`` is not a valid month key
            FormatError: If a cached file cannot be decoded
            CachePersistError: If ``strict_persist`` is set and the write fails
            Any error raised by ``fetcher``
        """
        month_start = parse_month_key(key)
        if not is_cacheable(month_start, self.clock()):
            _logger.debug("month_cache:bypass card=%s month=%s", card, key)
            records, _ = fetcher()
            return records

        entry_key = (card, key)
        records = self._memory.get(entry_key)
        if records is not None:
            return records

        with self._key_lock(entry_key):
            records = self._fill(card, key, fetcher)
        self._release_key_lock(entry_key)
        return records

    def _fill(self, card: str, key: str, fetcher: Fetcher) -> List[UsageRecord]:
        entry_key = (card, key)
        # Another caller may have filled the entry while we waited
        records = self._memory.get(entry_key)
        if records is not None:
            return records

        path = self.cache_path(card, key)
        raw = self._read(path)
        if raw is not None:
            records = decode_usage(raw)
            self._memory[entry_key] = records
            _logger.debug("month_cache:disk_hit card=%s month=%s path=%s", card, key, path)
            return records

        _logger.info("month_cache:miss card=%s month=%s", card, key)
        records, raw = fetcher()
        self._memory[entry_key] = records
        self._persist(path, raw)
        return records

    def _read(self, path: Path) -> Optional[bytes]:
        """Raw bytes of a cache file, or None when it cannot be read."""
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            _logger.warning("month_cache:read_failed path=%s error=%s", path, e)
            return None

    def _persist(self, path: Path, raw: bytes) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            try:
                tmp.write_bytes(raw)
                os.replace(tmp, path)
            except OSError:
                with contextlib.suppress(FileNotFoundError):
                    tmp.unlink()
                raise
        except OSError as e:
            if self.strict_persist:
                raise CachePersistError(f"could not write cache file {path}: {e}") from e
            _logger.warning("month_cache:persist_failed path=%s error=%s", path, e)
            return
        _logger.debug("month_cache:persisted path=%s bytes=%d", path, len(raw))
