import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union

from fastapi import APIRouter, Depends, Request
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from .auth import Actor, get_actor, require_admin, require_doctor_or_admin
from .db import EXPANSION_HORIZON_DAYS, MAX_LOOKAHEAD_DAYS, atomic, get_session, utcnow
from .errors import InvalidTransitionError, NotFoundError, OverlapError, SlotBookedError, ValidationError
from .expansion import materialize
from .models import (
    ACTIVE_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    Availability,
    AvailabilityStatus,
)
from .overlap import find_overlapping
from .registry import get_doctor_or_404, lock_doctor_schedule, require_doctor_specialty
from .schemas import (
    AvailabilityDeleteOut,
    AvailabilityIn,
    AvailabilityOut,
    AvailabilityPage,
    AvailabilitySearch,
    AvailabilityStatusIn,
    AvailabilityUpdate,
    Pagination,
)
from .timeutils import add_days, day_range_utc, get_tz, local_today

log = logging.getLogger("agenda.availabilities")

router = APIRouter()

_TRANSITIONS = {
    AvailabilityStatus.AVAILABLE: {AvailabilityStatus.BOOKED, AvailabilityStatus.CANCELLED},
    AvailabilityStatus.BOOKED: {AvailabilityStatus.CANCELLED, AvailabilityStatus.AVAILABLE},
    AvailabilityStatus.CANCELLED: set(),
}


def get_availability_or_404(s: Session, availability_id: str) -> Availability:
    a = s.get(Availability, availability_id)
    if not a:
        raise NotFoundError("availability not found")
    return a


def transition(a: Availability, new_status) -> Availability:
    """Move ``a`` along the slot state machine. The caller commits."""
    cur = AvailabilityStatus(a.status)
    new = AvailabilityStatus(new_status)
    if new not in _TRANSITIONS[cur]:
        raise InvalidTransitionError(f"availability cannot go from {cur.value} to {new.value}")
    a.status = new.value
    a.updated_at = utcnow()
    return a


def cancel_bound_appointments(s: Session, availability_ids: List[str], actor_id: Optional[str]) -> int:
    """Cancel the BOOKED/ONGOING appointments holding these slots and detach them."""
    if not availability_ids:
        return 0
    now = utcnow()
    res = s.execute(
        update(Appointment)
        .where(
            Appointment.availability_id.in_(availability_ids),
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        )
        .values(
            status=AppointmentStatus.CANCELLED.value,
            cancelled_at=now,
            cancelled_by=actor_id,
            availability_id=None,
            updated_at=now,
        )
    )
    return res.rowcount or 0


def detach_appointments(s: Session, availability_ids: List[str]) -> None:
    # completed / cancelled history survives the slot
    if availability_ids:
        s.execute(
            update(Appointment)
            .where(Appointment.availability_id.in_(availability_ids))
            .values(availability_id=None)
        )


def purge(s: Session, a: Availability, actor_id: Optional[str]) -> bool:
    """
    Delete a slot whatever its status.

    A BOOKED slot first has its active appointment cancelled. Returns whether
    an appointment was cancelled. The caller owns the transaction.
    """
    cancelled = 0
    if a.status == AvailabilityStatus.BOOKED.value:
        cancelled = cancel_bound_appointments(s, [a.id], actor_id)
    detach_appointments(s, [a.id])
    s.execute(delete(Availability).where(Availability.id == a.id))
    return cancelled > 0


def _search_filter(request: Request) -> AvailabilitySearch:
    return AvailabilitySearch.model_validate(dict(request.query_params))


def search(s: Session, f: AvailabilitySearch):
    tz_name = f.tz
    if f.doctor_id:
        doctor = get_doctor_or_404(s, f.doctor_id)
        tz_name = tz_name or doctor.timezone
    tz = get_tz(tz_name)
    if f.start_date and f.end_date and f.end_date < f.start_date:
        raise ValidationError("endDate must not be before startDate")
    today = local_today(tz)
    if f.end_date and (f.end_date - (f.start_date or today)).days > MAX_LOOKAHEAD_DAYS:
        raise ValidationError(f"search range is limited to {MAX_LOOKAHEAD_DAYS} days")

    until = f.end_date or add_days(today, EXPANSION_HORIZON_DAYS)
    materialize(s, min(until, add_days(today, MAX_LOOKAHEAD_DAYS)), doctor_id=f.doctor_id, specialty_id=f.specialty_id)

    stmt = select(Availability)
    if f.doctor_id:
        stmt = stmt.where(Availability.doctor_id == f.doctor_id)
    if f.specialty_id:
        stmt = stmt.where(Availability.specialty_id == f.specialty_id)
    if f.mode:
        stmt = stmt.where(Availability.mode == f.mode.value)
    if f.status:
        stmt = stmt.where(Availability.status == f.status.value)
    lo, hi = day_range_utc(f.start_date, f.end_date, tz)
    if lo is not None:
        stmt = stmt.where(Availability.start_time >= lo)
    if hi is not None:
        stmt = stmt.where(Availability.start_time < hi)
    stmt = stmt.order_by(Availability.start_time.asc(), Availability.id.asc())

    if f.all:
        return [AvailabilityOut.model_validate(a) for a in s.execute(stmt).scalars().all()]
    total = s.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    rows = s.execute(stmt.offset((f.page - 1) * f.limit).limit(f.limit)).scalars().all()
    return AvailabilityPage(
        data=[AvailabilityOut.model_validate(a) for a in rows],
        pagination=Pagination.build(total, f.page, f.limit),
    )


def _checked_window(start: datetime, end: datetime, duration_minutes: Optional[int]) -> Tuple[datetime, datetime, int]:
    start = start.astimezone(timezone.utc)
    end = end.astimezone(timezone.utc)
    if end <= start:
        raise ValidationError("endTime must be after startTime")
    if start < utcnow():
        raise ValidationError("startTime must not be in the past")
    window = end - start
    if window % timedelta(minutes=1):
        raise ValidationError("slot bounds must fall on whole minutes")
    length = int(window.total_seconds()) // 60
    if duration_minutes is not None and duration_minutes != length:
        raise ValidationError("durationMinutes must equal the slot length")
    return start, end, length


def _reject_overlap(s: Session, doctor_id: str, start: datetime, end: datetime, exclude_ids=()) -> None:
    clash = find_overlapping(s, doctor_id, start, end, exclude_ids)
    if clash:
        raise OverlapError(
            "slot overlaps an existing availability",
            details={"availabilityId": clash[0].id},
        )


@router.post("/availabilities", response_model=AvailabilityOut, status_code=201)
def create_availability(req: AvailabilityIn, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    get_doctor_or_404(s, req.doctor_id)
    require_doctor_or_admin(actor, req.doctor_id)
    require_doctor_specialty(s, req.doctor_id, req.specialty_id)
    start, end, length = _checked_window(req.start_time, req.end_time, req.duration_minutes)
    a = Availability(
        doctor_id=req.doctor_id,
        specialty_id=req.specialty_id,
        config_id=None,
        mode=req.mode.value,
        start_time=start,
        end_time=end,
        duration_minutes=length,
        status=AvailabilityStatus.AVAILABLE.value,
    )
    with atomic(s):
        lock_doctor_schedule(s, req.doctor_id)
        _reject_overlap(s, req.doctor_id, start, end)
        s.add(a)
    s.refresh(a)
    log.info("availability created", extra={"availability_id": a.id, "doctor_id": a.doctor_id})
    return a


@router.get("/availabilities/search", response_model=Union[AvailabilityPage, List[AvailabilityOut]])
def search_availabilities(f: AvailabilitySearch = Depends(_search_filter), s: Session = Depends(get_session)):
    return search(s, f)


@router.patch("/availabilities/{availability_id}", response_model=AvailabilityOut)
def update_availability(
    availability_id: str,
    req: AvailabilityUpdate,
    actor: Actor = Depends(get_actor),
    s: Session = Depends(get_session),
):
    """
    Edit an open slot: mode, specialty, bounds and duration.

    Only AVAILABLE slots can change. New bounds go through the same checks as
    a new slot, minus the slot itself in the overlap test; moving a generated
    slot turns it into an individual one. Status changes go through
    ``PATCH /availabilities/{id}/status``.
    """
    a = get_availability_or_404(s, availability_id)
    require_doctor_or_admin(actor, a.doctor_id)
    if a.status == AvailabilityStatus.BOOKED.value:
        raise SlotBookedError("availability has an active booking")
    if a.status != AvailabilityStatus.AVAILABLE.value:
        raise InvalidTransitionError(f"a {a.status} availability cannot be edited")
    changes = req.model_dump(exclude_unset=True)
    if changes.get("specialty_id"):
        require_doctor_specialty(s, a.doctor_id, changes["specialty_id"])
    moved = any(changes.get(k) is not None for k in ("start_time", "end_time", "duration_minutes"))
    start, end, length = a.start_time, a.end_time, a.duration_minutes
    if moved:
        start = changes.get("start_time") or a.start_time
        if changes.get("end_time"):
            end = changes["end_time"]
        elif changes.get("duration_minutes"):
            end = start + timedelta(minutes=changes["duration_minutes"])
        else:
            end = start + (a.end_time - a.start_time)
        start, end, length = _checked_window(start, end, changes.get("duration_minutes"))

    values = {"updated_at": utcnow()}
    if moved:
        # a moved slot no longer follows its template
        values.update(start_time=start, end_time=end, duration_minutes=length, config_id=None)
    if changes.get("mode") is not None:
        values["mode"] = changes["mode"].value
    if changes.get("specialty_id"):
        values["specialty_id"] = changes["specialty_id"]

    with atomic(s):
        if moved:
            lock_doctor_schedule(s, a.doctor_id)
            _reject_overlap(s, a.doctor_id, start, end, exclude_ids=[a.id])
        res = s.execute(
            update(Availability)
            .where(Availability.id == a.id, Availability.status == AvailabilityStatus.AVAILABLE.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise SlotBookedError("availability was booked or closed meanwhile")
    s.refresh(a)
    log.info("availability updated", extra={"availability_id": a.id, "moved": moved})
    return a


@router.get("/availabilities/{availability_id}", response_model=AvailabilityOut)
def get_availability(availability_id: str, s: Session = Depends(get_session)):
    return get_availability_or_404(s, availability_id)


@router.patch("/availabilities/{availability_id}/status", response_model=AvailabilityOut)
def update_availability_status(
    availability_id: str,
    req: AvailabilityStatusIn,
    actor: Actor = Depends(get_actor),
    s: Session = Depends(get_session),
):
    a = get_availability_or_404(s, availability_id)
    require_doctor_or_admin(actor, a.doctor_id)
    if req.status is AvailabilityStatus.BOOKED:
        raise ValidationError("slots are booked through appointments")
    if a.status == AvailabilityStatus.BOOKED.value and req.status is AvailabilityStatus.AVAILABLE:
        raise InvalidTransitionError("a booked slot is released by cancelling its appointment")
    with atomic(s):
        if a.status == AvailabilityStatus.BOOKED.value:
            cancel_bound_appointments(s, [a.id], actor.user_id)
        transition(a, req.status)
    s.refresh(a)
    log.info("availability status changed", extra={"availability_id": a.id, "status": a.status})
    return a


@router.delete("/availabilities/{availability_id}", response_model=AvailabilityDeleteOut)
def delete_availability(availability_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    a = get_availability_or_404(s, availability_id)
    require_doctor_or_admin(actor, a.doctor_id)
    if a.status == AvailabilityStatus.BOOKED.value:
        raise SlotBookedError("availability has an active booking")
    with atomic(s):
        purge(s, a, actor.user_id)
    log.info("availability deleted", extra={"availability_id": availability_id})
    return AvailabilityDeleteOut(cancelled_appointment=False)


@router.delete("/admin/availabilities/{availability_id}", response_model=AvailabilityDeleteOut)
def admin_purge_availability(availability_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    require_admin(actor)
    a = get_availability_or_404(s, availability_id)
    with atomic(s):
        cancelled = purge(s, a, actor.user_id)
    log.info(
        "availability purged",
        extra={"availability_id": availability_id, "cancelled_appointment": cancelled},
    )
    return AvailabilityDeleteOut(cancelled_appointment=cancelled)
