import calendar as _cal
import logging
from collections import OrderedDict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import MAX_LOOKAHEAD_DAYS, get_session
from .errors import ValidationError
from .expansion import materialize
from .models import Availability, DayKind
from .registry import get_doctor_or_404
from .schemas import AvailabilityOut, CalendarDay, CalendarOut
from .timeutils import add_days, day_range_utc, get_tz, iter_days, local_date, local_today

log = logging.getLogger("agenda.calendar")

router = APIRouter()

MAX_CALENDAR_DAYS = 93


def month_view(s: Session, doctor_id: str, month_start: date, month_end: date, tz: ZoneInfo) -> List[Availability]:
    """All of a doctor's slots starting on local days month_start..month_end."""
    materialize(s, min(month_end, add_days(local_today(tz), MAX_LOOKAHEAD_DAYS)), doctor_id=doctor_id)
    lo, hi = day_range_utc(month_start, month_end, tz)
    stmt = select(Availability).where(Availability.doctor_id == doctor_id, Availability.start_time >= lo)
    if hi is not None:
        stmt = stmt.where(Availability.start_time < hi)
    stmt = stmt.order_by(Availability.start_time.asc(), Availability.id.asc())
    return s.execute(stmt).scalars().all()


def classify(availabilities: Iterable[Availability]) -> DayKind:
    individual = False
    configured = False
    for a in availabilities:
        if a.config_id is None:
            individual = True
        else:
            configured = True
    if individual and configured:
        return DayKind.BOTH
    if individual:
        return DayKind.INDIVIDUAL
    if configured:
        return DayKind.CONFIG
    return DayKind.NONE


def classify_day(day: date, availabilities: Iterable[Availability], tz: ZoneInfo) -> DayKind:
    return classify(a for a in availabilities if local_date(a.start_time, tz) == day)


def group_by_day(availabilities: Iterable[Availability], tz: ZoneInfo) -> Dict[date, List[Availability]]:
    """Partition slots by local start date; dates and slots ascending."""
    buckets: Dict[date, List[Availability]] = {}
    for a in availabilities:
        buckets.setdefault(local_date(a.start_time, tz), []).append(a)
    out: Dict[date, List[Availability]] = OrderedDict()
    for day in sorted(buckets):
        out[day] = sorted(buckets[day], key=lambda a: (a.start_time, a.id))
    return out


@router.get("/doctors/{doctor_id}/calendar", response_model=CalendarOut)
def get_calendar(
    doctor_id: str,
    month_start: Optional[date] = Query(default=None, alias="monthStart"),
    month_end: Optional[date] = Query(default=None, alias="monthEnd"),
    tz: Optional[str] = Query(default=None),
    s: Session = Depends(get_session),
):
    doctor = get_doctor_or_404(s, doctor_id)
    zone = get_tz(tz or doctor.timezone)
    if month_start is None:
        month_start = local_today(zone).replace(day=1)
    if month_end is None:
        month_end = month_start.replace(day=_cal.monthrange(month_start.year, month_start.month)[1])
    if month_end < month_start:
        raise ValidationError("monthEnd must not be before monthStart")
    if month_end - month_start >= timedelta(days=MAX_CALENDAR_DAYS):
        raise ValidationError(f"calendar range is limited to {MAX_CALENDAR_DAYS} days")

    grouped = group_by_day(month_view(s, doctor_id, month_start, month_end, zone), zone)
    days = []
    for day in iter_days(month_start, month_end):
        slots = grouped.get(day, [])
        days.append(
            CalendarDay(
                date=day,
                kind=classify(slots),
                availabilities=[AvailabilityOut.model_validate(a) for a in slots],
            )
        )
    return CalendarOut(
        doctor_id=doctor_id,
        timezone=zone.key,
        month_start=month_start,
        month_end=month_end,
        days=days,
    )
