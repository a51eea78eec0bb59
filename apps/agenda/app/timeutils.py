from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError


def get_tz(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"invalid timezone: {tz_name}")


def parse_hhmm(val: str) -> int:
    """'09:30' -> 570 minutes from midnight."""
    try:
        hh, mm = val.strip().split(":")
        hhi = int(hh)
        mmi = int(mm)
    except (AttributeError, ValueError):
        raise ValidationError("time must be HH:MM 24h")
    if hhi < 0 or hhi > 24 or mmi < 0 or mmi > 59 or (hhi == 24 and mmi != 0):
        raise ValidationError("time must be HH:MM 24h")
    return hhi * 60 + mmi


def format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def local_instant(day: date, minute_of_day: int, tz: ZoneInfo) -> datetime:
    """Wall-clock minute on ``day`` in ``tz``, as an aware UTC datetime."""
    local = (datetime.combine(day, time(0, 0)) + timedelta(minutes=minute_of_day)).replace(tzinfo=tz)
    return local.astimezone(timezone.utc)


def local_date(ts: datetime, tz: ZoneInfo) -> date:
    return ts.astimezone(tz).date()


def local_today(tz: ZoneInfo) -> date:
    return datetime.now(tz=tz).date()


def add_days(day: date, days: int) -> date:
    """``day + days``, saturating at the calendar ends."""
    try:
        return day + timedelta(days=days)
    except OverflowError:
        return date.max if days > 0 else date.min


def day_range_utc(start: Optional[date], end: Optional[date], tz: ZoneInfo) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Whole local days [start 00:00, end+1 00:00) expressed in UTC."""
    lo = local_instant(start, 0, tz) if start else None
    # the last representable day has no following midnight; leave it open
    hi = local_instant(end + timedelta(days=1), 0, tz) if end and end < date.max else None
    return lo, hi


def iter_days(start: date, end: date):
    cur = start
    while cur <= end:
        yield cur
        if cur == date.max:
            return
        cur += timedelta(days=1)
