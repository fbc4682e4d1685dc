"""
Usage service.

Glue between the portal session and the month cache: every upstream lookup
signs in with a fresh session, and completed months are served from cache.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from .session import ENDPOINT, CompassSession, open_session
from ..logging_setup import get_logger
from ..storage.models import UsageOptions, UsageRecord
from ..storage.month_cache import MonthCache, month_key

SessionFactory = Callable[..., CompassSession]

_logger = get_logger("compass_usage.core.service")


def month_range(year: int, month: int) -> UsageOptions:
    """Return the inclusive range covering a whole calendar month."""
    start = datetime(year, month, 1)
    next_month = datetime(year + month // 12, month % 12 + 1, 1)
    return UsageOptions(start_date=start, end_date=next_month - timedelta(seconds=1))


class UsageService:
    """Monthly usage lookups for one portal account."""

    def __init__(
        self,
        username: str,
        password: str,
        cache: MonthCache,
        session_factory: SessionFactory = open_session,
        base_url: str = ENDPOINT,
        timeout: Optional[float] = None,
    ):
        if not username or not password:
            raise ValueError("username and password are required")
        self.username = username
        self.password = password
        self.cache = cache
        self.session_factory = session_factory
        self.base_url = base_url
        self.timeout = timeout

    def _open(self) -> CompassSession:
        return self.session_factory(
            self.username,
            self.password,
            base_url=self.base_url,
            timeout=self.timeout,
        )

    def lookup(self, ccsn: str, year: int, month: int) -> Tuple[List[UsageRecord], bytes]:
        """Fetch one month of usage straight from the portal."""
        session = self._open()
        _logger.info("service:lookup ccsn=%s month=%s", ccsn, month_key(year, month))
        return session.usage(ccsn, month_range(year, month))

    def monthly_usage(self, ccsn: str, year: int, month: int) -> List[UsageRecord]:
        """Return one month of usage, served from cache when the month is complete.

        Raises:
            ValueError: If month is outside 1..12
            CompassError: On session, decode or cache failures
        """
        key = month_key(year, month)
        return self.cache.get(ccsn, key, lambda: self.lookup(ccsn, year, month))

    def list_cards(self) -> List[str]:
        """Return the serial numbers of the account's cards."""
        return self._open().cards()
