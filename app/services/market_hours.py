# app/services/market_hours.py
from __future__ import annotations
import datetime as dt
from typing import Optional
from zoneinfo import ZoneInfo

IST_NAME = "Asia/Kolkata"
IST = ZoneInfo(IST_NAME)

# minutes since local midnight
MARKET_OPEN = 9 * 60 + 15
MARKET_CLOSE = 15 * 60 + 30


def to_exchange_time(now: Optional[dt.datetime] = None) -> dt.datetime:
    """Naive datetimes are taken to already be exchange-local."""
    if now is None:
        return dt.datetime.now(IST)
    if now.tzinfo is None:
        return now.replace(tzinfo=IST)
    return now.astimezone(IST)


def exchange_now() -> dt.datetime:
    return to_exchange_time()


def _minutes(local: dt.datetime) -> int:
    return local.hour * 60 + local.minute


def is_live_window(now: Optional[dt.datetime] = None) -> bool:
    """Weekday and 09:15-15:30 IST, both boundary minutes included."""
    local = to_exchange_time(now)
    is_weekday = local.weekday() < 5
    return is_weekday and MARKET_OPEN <= _minutes(local) <= MARKET_CLOSE


def is_post_close_window(now: Optional[dt.datetime] = None) -> bool:
    # time of day only; weekends are not excluded
    return _minutes(to_exchange_time(now)) >= MARKET_CLOSE


def format_exchange_time(now: Optional[dt.datetime] = None) -> str:
    return to_exchange_time(now).strftime("%d/%m/%Y, %I:%M:%S %p")
