"""
Recurring availability configurations.

A config is a weekly template (days of week, local start/end hour, slot
length) that is expanded into concrete Availability rows. Creation
materializes the first ``EXPANSION_HORIZON_DAYS`` and refuses the whole
config when any generated slot overlaps an existing one; later reads extend
it on demand (see :func:`expansion.materialize`).
"""

import logging
from datetime import date
from typing import List, Optional, Sequence, Tuple

from fastapi import APIRouter, Depends, Query
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .auth import Actor, get_actor, require_doctor_or_admin
from .availabilities import cancel_bound_appointments, detach_appointments
from .db import EXPANSION_HORIZON_DAYS, MAX_LOOKAHEAD_DAYS, atomic, get_session, utcnow
from .errors import NotFoundError, OverlapError, ValidationError
from .expansion import drop_existing, expand
from .models import (
    ACTIVE_APPOINTMENT_STATUSES,
    Appointment,
    Availability,
    AvailabilityStatus,
    ConfigAvailability,
    new_id,
)
from .overlap import IntervalIndex
from .registry import get_doctor_or_404, lock_doctor_schedule, require_doctor_specialty
from .schemas import ConfigDeleteOut, ConfigIn, ConfigOut, ConfigUpdate, CountOut
from .timeutils import add_days, format_hhmm, get_tz, local_instant, local_today, parse_hhmm

log = logging.getLogger("agenda.configs")

router = APIRouter()


def get_config_or_404(s: Session, config_id: str) -> ConfigAvailability:
    cfg = s.get(ConfigAvailability, config_id)
    if not cfg:
        raise NotFoundError("config availability not found")
    return cfg


def _config_to_out(cfg: ConfigAvailability) -> ConfigOut:
    return ConfigOut(
        id=cfg.id,
        doctor_id=cfg.doctor_id,
        specialty_id=cfg.specialty_id,
        mode=cfg.mode,
        start_date=cfg.start_date,
        end_date=cfg.end_date,
        start_hour=format_hhmm(cfg.start_minute),
        end_hour=format_hhmm(cfg.end_minute),
        duration_minutes=cfg.duration_minutes,
        days_of_week=sorted(cfg.weekdays),
        materialized_until=cfg.materialized_until,
        created_at=cfg.created_at,
        updated_at=cfg.updated_at,
    )


def _validate_template(
    start_hour: str,
    end_hour: str,
    duration_minutes: int,
    days_of_week: Sequence[int],
    start_date: date,
    end_date: Optional[date],
) -> Tuple[int, int, str]:
    start_minute = parse_hhmm(start_hour)
    end_minute = parse_hhmm(end_hour)
    if end_minute <= start_minute:
        raise ValidationError("endHour must be after startHour")
    if duration_minutes > end_minute - start_minute:
        raise ValidationError("durationMinutes does not fit between startHour and endHour")
    days = sorted(set(days_of_week))
    if not days:
        raise ValidationError("daysOfWeek must not be empty")
    if any(d < 1 or d > 7 for d in days):
        raise ValidationError("daysOfWeek values must be 1 (Monday) .. 7 (Sunday)")
    if end_date is not None and end_date < start_date:
        raise ValidationError("endDate must not be before startDate")
    return start_minute, end_minute, ",".join(str(d) for d in days)


def _overlap_error(slot: Availability, hit) -> OverlapError:
    return OverlapError(
        "generated slot overlaps an existing availability",
        details={"slotStart": slot.start_time.isoformat(), "availabilityId": hit[2]},
    )


def _cascade_targets(s: Session, config_id: str):
    slots = s.execute(select(Availability.id, Availability.status).where(Availability.config_id == config_id)).all()
    booked = [sid for sid, st in slots if st == AvailabilityStatus.BOOKED.value]
    return [sid for sid, _ in slots], booked


def appointments_count(s: Session, config_id: str) -> int:
    """Appointments a delete of this config would cancel."""
    booked = select(Availability.id).where(
        Availability.config_id == config_id,
        Availability.status == AvailabilityStatus.BOOKED.value,
    )
    return s.execute(
        select(func.count(Appointment.id)).where(
            Appointment.availability_id.in_(booked),
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        )
    ).scalar_one()


def cascade_delete(s: Session, cfg: ConfigAvailability, actor_id: Optional[str]) -> int:
    slot_ids, booked_ids = _cascade_targets(s, cfg.id)
    cancelled = cancel_bound_appointments(s, booked_ids, actor_id)
    detach_appointments(s, slot_ids)
    s.execute(delete(Availability).where(Availability.config_id == cfg.id))
    s.execute(delete(ConfigAvailability).where(ConfigAvailability.id == cfg.id))
    return cancelled


@router.post("/config-availabilities", response_model=ConfigOut, status_code=201)
def create_config(req: ConfigIn, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    doctor = get_doctor_or_404(s, req.doctor_id)
    require_doctor_or_admin(actor, req.doctor_id)
    require_doctor_specialty(s, req.doctor_id, req.specialty_id)
    start_minute, end_minute, days = _validate_template(
        req.start_hour, req.end_hour, req.duration_minutes, req.days_of_week, req.start_date, req.end_date
    )
    tz = get_tz(doctor.timezone)
    today = local_today(tz)
    if req.start_date < today:
        raise ValidationError("startDate must not be in the past")
    if req.start_date > add_days(today, MAX_LOOKAHEAD_DAYS):
        raise ValidationError(f"startDate must be within {MAX_LOOKAHEAD_DAYS} days")

    cfg = ConfigAvailability(
        id=new_id(),
        doctor_id=req.doctor_id,
        specialty_id=req.specialty_id,
        mode=req.mode.value,
        start_date=req.start_date,
        end_date=req.end_date,
        start_minute=start_minute,
        end_minute=end_minute,
        duration_minutes=req.duration_minutes,
        days_of_week=days,
    )
    horizon = add_days(req.start_date, EXPANSION_HORIZON_DAYS)
    until = min(req.end_date, horizon) if req.end_date else horizon
    slots = expand(cfg, req.start_date, until, tz)

    with atomic(s):
        lock_doctor_schedule(s, cfg.doctor_id)
        if slots:
            index = IntervalIndex.for_doctor(s, cfg.doctor_id, slots[0].start_time, slots[-1].end_time)
            for slot in slots:
                hit = index.conflict(slot.start_time, slot.end_time)
                if hit is not None:
                    raise _overlap_error(slot, hit)
                slot.id = new_id()
                index.add(slot.start_time, slot.end_time, slot.id)
        cfg.materialized_until = until
        s.add(cfg)
        s.flush()
        s.add_all(slots)
    s.refresh(cfg)
    log.info(
        "config availability created",
        extra={"config_id": cfg.id, "doctor_id": cfg.doctor_id, "slots": len(slots)},
    )
    return _config_to_out(cfg)


@router.get("/config-availabilities", response_model=List[ConfigOut])
def list_configs(
    doctor_id: Optional[str] = Query(default=None, alias="doctorId"),
    s: Session = Depends(get_session),
):
    stmt = select(ConfigAvailability)
    if doctor_id:
        stmt = stmt.where(ConfigAvailability.doctor_id == doctor_id)
    stmt = stmt.order_by(ConfigAvailability.start_date.asc(), ConfigAvailability.start_minute.asc())
    return [_config_to_out(c) for c in s.execute(stmt).scalars().all()]


@router.get("/config-availabilities/{config_id}", response_model=ConfigOut)
def get_config(config_id: str, s: Session = Depends(get_session)):
    return _config_to_out(get_config_or_404(s, config_id))


@router.patch("/config-availabilities/{config_id}", response_model=ConfigOut)
def update_config(
    config_id: str,
    req: ConfigUpdate,
    actor: Actor = Depends(get_actor),
    s: Session = Depends(get_session),
):
    """
    Change the template and re-expand the already materialized window.

    Future AVAILABLE slots the new template no longer produces are removed,
    BOOKED ones stay. Nothing changes if a new slot would overlap another
    availability of the doctor.
    """
    cfg = get_config_or_404(s, config_id)
    require_doctor_or_admin(actor, cfg.doctor_id)
    changes = req.model_dump(exclude_unset=True)
    end_date = changes["end_date"] if "end_date" in changes else cfg.end_date
    start_minute, end_minute, days = _validate_template(
        changes.get("start_hour") or format_hhmm(cfg.start_minute),
        changes.get("end_hour") or format_hhmm(cfg.end_minute),
        changes.get("duration_minutes") or cfg.duration_minutes,
        changes.get("days_of_week") or sorted(cfg.weekdays),
        cfg.start_date,
        end_date,
    )
    tz = get_tz(get_doctor_or_404(s, cfg.doctor_id).timezone)
    window_start = max(local_today(tz), cfg.start_date)
    cutoff = local_instant(window_start, 0, tz)

    with atomic(s):
        lock_doctor_schedule(s, cfg.doctor_id)
        if changes.get("mode") is not None:
            cfg.mode = changes["mode"].value
        cfg.end_date = end_date
        cfg.start_minute = start_minute
        cfg.end_minute = end_minute
        cfg.duration_minutes = changes.get("duration_minutes") or cfg.duration_minutes
        cfg.days_of_week = days
        cfg.updated_at = utcnow()
        if end_date is not None and cfg.materialized_until is not None and cfg.materialized_until > end_date:
            cfg.materialized_until = end_date

        window_end = cfg.materialized_until
        wanted: List[Availability] = []
        if window_end is not None and window_start <= window_end:
            wanted = expand(cfg, window_start, window_end, tz)
        wanted_keys = {slot.slot_key for slot in wanted}

        future = (
            s.execute(
                select(Availability).where(Availability.config_id == cfg.id, Availability.start_time >= cutoff)
            )
            .scalars()
            .all()
        )
        stale = [a for a in future if a.status == AvailabilityStatus.AVAILABLE.value and a.slot_key not in wanted_keys]
        stale_ids = [a.id for a in stale]
        for a in future:
            if a.status == AvailabilityStatus.AVAILABLE.value and a.id not in stale_ids:
                a.mode = cfg.mode

        detach_appointments(s, stale_ids)
        if stale_ids:
            s.execute(delete(Availability).where(Availability.id.in_(stale_ids)))

        fresh = drop_existing(s, cfg.id, wanted)
        added = 0
        if fresh:
            own = set(s.execute(select(Availability.id).where(Availability.config_id == cfg.id)).scalars().all())
            index = IntervalIndex.for_doctor(s, cfg.doctor_id, fresh[0].start_time, fresh[-1].end_time)
            for slot in fresh:
                hit = index.conflict(slot.start_time, slot.end_time)
                if hit is not None:
                    if hit[2] in own:
                        continue
                    raise _overlap_error(slot, hit)
                slot.id = new_id()
                s.add(slot)
                index.add(slot.start_time, slot.end_time, slot.id)
                added += 1
        s.add(cfg)
    s.refresh(cfg)
    log.info(
        "config availability updated",
        extra={"config_id": cfg.id, "removed": len(stale_ids), "added": added},
    )
    return _config_to_out(cfg)


@router.delete("/config-availabilities/{config_id}", response_model=ConfigDeleteOut)
def delete_config(config_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    cfg = get_config_or_404(s, config_id)
    require_doctor_or_admin(actor, cfg.doctor_id)
    with atomic(s):
        cancelled = cascade_delete(s, cfg, actor.user_id)
    log.info(
        "config availability deleted",
        extra={"config_id": config_id, "cancelled_appointments": cancelled},
    )
    return ConfigDeleteOut(cancelled_appointments_count=cancelled)


@router.get("/config-availabilities/{config_id}/appointments-count", response_model=CountOut)
def get_appointments_count(config_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    cfg = get_config_or_404(s, config_id)
    require_doctor_or_admin(actor, cfg.doctor_id)
    return CountOut(count=appointments_count(s, config_id))
