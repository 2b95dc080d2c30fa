"""
Cronkeeper: Time and Trading Calendar Utilities

This module holds the timestamp convention shared by the coordination
tables and a trading calendar used to decide which dates a daily job is
expected to cover and how large the archival window is.

Key responsibilities:
- Produce naive-UTC timestamps for persisted columns
- Classify ``trading_calendar.hol_div`` codes as business days
- Determine whether a given date is a trading day
- Compute previous/next trading days and enumerate ranges

External dependencies:
- psycopg2: Reading the ``trading_calendar`` table

Database tables accessed:
- historical_db.trading_calendar (Read)

Thread safety: Thread-safe (calendar state is read-only after load)

Author: Cronkeeper Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import psycopg2

from cronkeeper.core.database import DatabaseError, DatabaseManager, get_db_manager
from cronkeeper.core.logging import get_logger

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

# Trading calendar identifiers
JPX: str = "JPX"

# hol_div codes: '0' closed, '1' full session, '2' half-day session.
BUSINESS_DAY_CODES: frozenset[str] = frozenset({"1", "2"})

# Minimal non-business day set for the Tokyo exchange. Only used when the
# trading_calendar table is unavailable or empty.
JPX_HOLIDAYS: set[date] = {
    date(2024, 1, 1),
    date(2024, 1, 2),
    date(2024, 1, 3),
    date(2024, 12, 31),
    date(2025, 1, 1),
    date(2025, 1, 2),
    date(2025, 1, 3),
    date(2025, 12, 31),
}

MARKET_HOLIDAYS: Mapping[str, set[date]] = {
    JPX: JPX_HOLIDAYS,
}


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime.

    All coordination tables store ``TIMESTAMP WITHOUT TIME ZONE`` values in
    UTC, so comparisons in Python use the same representation.
    """

    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_business_day(hol_div: Optional[str]) -> bool:
    """Return True if a ``trading_calendar.hol_div`` code is a trading day."""

    return hol_div in BUSINESS_DAY_CODES


@dataclass(frozen=True)
class TradingCalendarConfig:
    """Configuration for a trading calendar.

    Attributes:
        market: Market identifier (e.g. "JPX").
        use_db_holidays: If True, load non-business days from the
            trading_calendar table. If False or the DB is unavailable, use
            the hardcoded fallback.
    """

    market: str = JPX
    use_db_holidays: bool = True


class TradingCalendar:
    """Trading calendar for a specific market.

    - Trading days are Monday-Friday (no weekend trading).
    - Dates flagged as closed in trading_calendar are excluded.
    """

    def __init__(
        self,
        config: TradingCalendarConfig | None = None,
        db_manager: DatabaseManager | None = None,
    ) -> None:
        self._config = config or TradingCalendarConfig()
        self._market = self._config.market
        self._db_manager = db_manager

        if self._config.use_db_holidays:
            self._holidays = self._load_holidays_from_db()
        else:
            self._holidays = set(MARKET_HOLIDAYS.get(self._market, set()))

        logger.info(
            "TradingCalendar initialized: market=%s, holidays=%d, use_db=%s",
            self._market,
            len(self._holidays),
            self._config.use_db_holidays,
        )

    # ======================================================================
    # Internal: Holiday Loading
    # ======================================================================

    def _load_holidays_from_db(self) -> set[date]:
        """Load weekday non-business days from trading_calendar.

        Falls back to the hardcoded set if the DB is unavailable or empty.
        """

        sql = """
            SELECT calendar_date, hol_div
            FROM trading_calendar
        """
        try:
            db = self._db_manager or get_db_manager()
            with db.get_historical_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql)
                    rows = cursor.fetchall()
                finally:
                    cursor.close()
        except (DatabaseError, psycopg2.Error) as exc:
            logger.warning(
                "Failed to load trading calendar for market %s: %s. Using fallback.",
                self._market,
                exc,
            )
            return set(MARKET_HOLIDAYS.get(self._market, set()))

        loaded = {calendar_date for calendar_date, hol_div in rows if not is_business_day(hol_div)}
        if rows:
            logger.info("Loaded %d closed days from DB for market %s", len(loaded), self._market)
            return loaded

        logger.warning(
            "No trading calendar rows found for market %s, using hardcoded fallback",
            self._market,
        )
        return set(MARKET_HOLIDAYS.get(self._market, set()))

    # ======================================================================
    # Core API
    # ======================================================================

    def is_trading_day(self, as_of_date: date) -> bool:
        """Return True if ``as_of_date`` is a weekday and not a closed day."""

        if as_of_date.weekday() >= 5:  # 5 = Saturday, 6 = Sunday
            return False
        return as_of_date not in self._holidays

    def get_prev_trading_day(self, as_of_date: date, n: int = 1) -> date:
        """Return the trading day ``n`` steps before ``as_of_date``."""

        if n < 1:
            raise ValueError("n must be >= 1")

        current = as_of_date
        steps = 0
        while steps < n:
            current = current - timedelta(days=1)
            if self.is_trading_day(current):
                steps += 1
        return current

    def get_next_trading_day(self, as_of_date: date, n: int = 1) -> date:
        """Return the trading day ``n`` steps after ``as_of_date``."""

        if n < 1:
            raise ValueError("n must be >= 1")

        current = as_of_date
        steps = 0
        while steps < n:
            current = current + timedelta(days=1)
            if self.is_trading_day(current):
                steps += 1
        return current

    def trading_days_between(self, start_date: date, end_date: date) -> list[date]:
        """Return all trading days in the inclusive range [start_date, end_date].

        Returns an empty list if ``start_date`` > ``end_date``.
        """

        if start_date > end_date:
            return []

        days: list[date] = []
        current = start_date
        while current <= end_date:
            if self.is_trading_day(current):
                days.append(current)
            current = current + timedelta(days=1)
        return days
