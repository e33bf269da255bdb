from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from carerota.settings import get_settings

logger = logging.getLogger("carerota.time")

_FALLBACK_TIMEZONE = "Europe/London"


@lru_cache
def schedule_timezone() -> ZoneInfo:
    raw_name = (get_settings().schedule_timezone or "").strip() or _FALLBACK_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except ZoneInfoNotFoundError:
        logger.warning("schedule_timezone_unknown", extra={"timezone": raw_name})
        return ZoneInfo(_FALLBACK_TIMEZONE)


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    # naive values come back from backends that drop the offset; they are stored as UTC
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def normalize_optional_ts(ts_utc: datetime | None) -> datetime | None:
    if ts_utc is None:
        return None
    return normalize_ts(ts_utc)


def combine_local(day_date: date, local_time: time) -> datetime:
    local_dt = datetime.combine(day_date, local_time, tzinfo=schedule_timezone())
    return local_dt.astimezone(timezone.utc)


def local_date(ts_utc: datetime) -> date:
    return normalize_ts(ts_utc).astimezone(schedule_timezone()).date()


def local_hhmm(ts_utc: datetime) -> str:
    return normalize_ts(ts_utc).astimezone(schedule_timezone()).strftime("%H:%M")


def local_days_bounds_utc(first_day: date, last_day: date) -> tuple[datetime, datetime]:
    """Half-open UTC window covering whole local days first_day..last_day."""
    start = combine_local(first_day, time(0, 0))
    end = combine_local(last_day + timedelta(days=1), time(0, 0))
    return start, end


def iter_days(first_day: date, last_day: date) -> list[date]:
    return [first_day + timedelta(days=offset) for offset in range((last_day - first_day).days + 1)]
