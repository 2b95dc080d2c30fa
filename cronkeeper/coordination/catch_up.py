"""
Cronkeeper – missed business-day detection.

Daily jobs normally process the previous business day. When an invocation
was missed or failed, the next one picks up the gap: business days within
the lookback window that have no successful run are processed oldest first,
a bounded number per invocation.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import List, Optional

from cronkeeper.coordination.run_ledger import RunLedger
from cronkeeper.core.config import CatchUpConfig
from cronkeeper.core.logging import get_logger
from cronkeeper.core.time import TradingCalendar

logger = get_logger(__name__)

QUICK_CHECK = CatchUpConfig(max_days=1, lookback_days=7)


def find_missing_business_days(
    ledger: RunLedger,
    calendar: TradingCalendar,
    job_name: str,
    config: Optional[CatchUpConfig] = None,
    today: Optional[date] = None,
) -> List[date]:
    """Return business days lacking a successful run, oldest first.

    The window runs from ``today - lookback_days`` to the business day
    before ``today``; at most ``max_days`` dates are returned.
    """

    config = config or CatchUpConfig()
    today = today or date.today()

    previous_business_day = calendar.get_prev_trading_day(today)
    lookback_start = today - timedelta(days=config.lookback_days)
    business_days = calendar.trading_days_between(lookback_start, previous_business_day)
    if not business_days:
        logger.info("No business days in lookback period for job=%s", job_name)
        return []

    done = ledger.successful_target_dates(job_name, business_days)
    missing = [day for day in business_days if day not in done][: config.max_days]

    if missing:
        logger.info(
            "Found %d missing business days for job=%s: %s",
            len(missing),
            job_name,
            ", ".join(day.isoformat() for day in missing),
        )
    return missing


def determine_target_dates(
    ledger: RunLedger,
    calendar: TradingCalendar,
    job_name: str,
    config: Optional[CatchUpConfig] = None,
    today: Optional[date] = None,
) -> List[date]:
    """Return the dates this invocation should process.

    Missing business days when there are any, otherwise just the previous
    business day (which the ledger will skip if it already succeeded).
    """

    today = today or date.today()
    missing = find_missing_business_days(ledger, calendar, job_name, config, today)
    if missing:
        return missing
    return [calendar.get_prev_trading_day(today)]


def needs_catch_up(
    ledger: RunLedger,
    calendar: TradingCalendar,
    job_name: str,
    today: Optional[date] = None,
) -> bool:
    return bool(find_missing_business_days(ledger, calendar, job_name, QUICK_CHECK, today))


def get_last_successful_date(ledger: RunLedger, job_name: str) -> Optional[date]:
    return ledger.last_successful_target_date(job_name)
