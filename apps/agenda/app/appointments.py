import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import Actor, Role, get_actor, require_doctor_or_admin
from .availabilities import get_availability_or_404
from .db import atomic, get_session, utcnow
from .errors import (
    AlreadyBookedError,
    AlreadyCancelledError,
    AlreadyCompletedError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    ACTIVE_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    Availability,
    AvailabilityStatus,
    Idempotency,
    new_id,
)
from .schemas import AppointmentIn, AppointmentOut, AppointmentPage, AppointmentSearch, Pagination
from .timeutils import day_range_utc, get_tz

log = logging.getLogger("agenda.appointments")

router = APIRouter()


def get_appointment_or_404(s: Session, appointment_id: str) -> Appointment:
    a = s.get(Appointment, appointment_id)
    if not a:
        raise NotFoundError("appointment not found")
    return a


def _can_see(actor: Actor, a: Appointment) -> bool:
    if actor.is_admin or actor.is_doctor(a.doctor_id):
        return True
    return actor.role is Role.PATIENT and actor.user_id == a.patient_id


def scoped_key(actor: Actor, idempotency_key: Optional[str]) -> Optional[str]:
    """Idempotency keys are per caller; two actors may reuse the same value."""
    if not idempotency_key:
        return None
    key = f"{actor.user_id}:{idempotency_key}"
    if len(key) > 120:
        raise ValidationError("Idempotency-Key is too long")
    return key


def _replay(s: Session, idempotency_key: Optional[str]) -> Optional[Appointment]:
    if not idempotency_key:
        return None
    ie = s.get(Idempotency, idempotency_key)
    if ie and ie.ref_id:
        return s.get(Appointment, ie.ref_id)
    return None


def book(s: Session, availability_id: str, patient_id: str, idempotency_key: Optional[str] = None) -> Appointment:
    """
    Claim a slot for a patient.

    The slot is taken with a conditional UPDATE guarded on
    ``status = 'AVAILABLE'``, so of several concurrent callers exactly one
    sees an affected row. The appointment insert commits in the same
    transaction.
    """
    slot = get_availability_or_404(s, availability_id)
    if slot.start_time <= utcnow():
        raise ValidationError("availability has already started")
    doctor_id, mode, start, end = slot.doctor_id, slot.mode, slot.start_time, slot.end_time
    now = utcnow()
    appt = Appointment(
        id=new_id(),
        availability_id=availability_id,
        doctor_id=doctor_id,
        patient_id=patient_id,
        mode=mode,
        start_time=start,
        end_time=end,
        status=AppointmentStatus.BOOKED.value,
    )
    try:
        with atomic(s):
            res = s.execute(
                update(Availability)
                .where(
                    Availability.id == availability_id,
                    Availability.status == AvailabilityStatus.AVAILABLE.value,
                )
                .values(status=AvailabilityStatus.BOOKED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                current = s.execute(
                    select(Availability.status).where(Availability.id == availability_id)
                ).scalar_one_or_none()
                if current is None:
                    raise NotFoundError("availability not found")
                raise AlreadyBookedError("availability is no longer available")
            s.add(appt)
            if idempotency_key:
                s.add(Idempotency(key=idempotency_key, ref_id=appt.id))
    except IntegrityError:
        # a concurrent request with the same Idempotency-Key won
        prior = _replay(s, idempotency_key)
        if prior is None:
            raise
        return prior
    s.refresh(appt)
    log.info(
        "appointment booked",
        extra={"appointment_id": appt.id, "availability_id": availability_id, "doctor_id": doctor_id},
    )
    return appt


def _settled_error(s: Session, appointment_id: str):
    """The error for a guarded update that matched no row."""
    current = s.execute(select(Appointment.status).where(Appointment.id == appointment_id)).scalar_one_or_none()
    if current is None:
        return NotFoundError("appointment not found")
    if current == AppointmentStatus.COMPLETED.value:
        return AlreadyCompletedError("appointment is already completed")
    if current == AppointmentStatus.CANCELLED.value:
        return AlreadyCancelledError("appointment is already cancelled")
    return InvalidTransitionError("appointment has already started")


def _guarded_update(s: Session, appointment_id: str, allowed, **values) -> None:
    """
    Move an appointment out of one of the ``allowed`` statuses.

    The status test is part of the UPDATE, so a caller holding a stale copy
    of the row cannot overwrite a transition another request committed.
    """
    res = s.execute(
        update(Appointment)
        .where(Appointment.id == appointment_id, Appointment.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise _settled_error(s, appointment_id)


def release_slot(s: Session, availability_id: Optional[str]) -> bool:
    """Put a BOOKED slot back to AVAILABLE once no active appointment holds it."""
    if not availability_id:
        return False
    held = s.execute(
        select(func.count(Appointment.id)).where(
            Appointment.availability_id == availability_id,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        )
    ).scalar_one()
    if held:
        return False
    res = s.execute(
        update(Availability)
        .where(Availability.id == availability_id, Availability.status == AvailabilityStatus.BOOKED.value)
        .values(status=AvailabilityStatus.AVAILABLE.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def cancel(s: Session, appointment_id: str, actor: Actor) -> Appointment:
    a = get_appointment_or_404(s, appointment_id)
    if not _can_see(actor, a):
        raise ForbiddenError("only the patient, the doctor or an admin may cancel")
    slot_id = a.availability_id
    now = utcnow()
    with atomic(s):
        _guarded_update(
            s,
            appointment_id,
            ACTIVE_APPOINTMENT_STATUSES,
            status=AppointmentStatus.CANCELLED.value,
            cancelled_at=now,
            cancelled_by=actor.user_id,
            updated_at=now,
        )
        released = release_slot(s, slot_id)
    s.refresh(a)
    log.info(
        "appointment cancelled",
        extra={"appointment_id": a.id, "cancelled_by": actor.user_id, "slot_released": released},
    )
    return a


def start(s: Session, appointment_id: str, actor: Actor) -> Appointment:
    a = get_appointment_or_404(s, appointment_id)
    require_doctor_or_admin(actor, a.doctor_id)
    with atomic(s):
        _guarded_update(
            s,
            appointment_id,
            (AppointmentStatus.BOOKED.value,),
            status=AppointmentStatus.ONGOING.value,
            updated_at=utcnow(),
        )
    s.refresh(a)
    return a


def complete(s: Session, appointment_id: str, actor: Actor) -> Appointment:
    a = get_appointment_or_404(s, appointment_id)
    require_doctor_or_admin(actor, a.doctor_id)
    now = utcnow()
    with atomic(s):
        _guarded_update(
            s,
            appointment_id,
            ACTIVE_APPOINTMENT_STATUSES,
            status=AppointmentStatus.COMPLETED.value,
            completed_at=now,
            updated_at=now,
        )
    s.refresh(a)
    log.info("appointment completed", extra={"appointment_id": a.id})
    return a


def search(s: Session, f: AppointmentSearch, actor: Actor) -> AppointmentPage:
    stmt = select(Appointment)
    if actor.role is Role.PATIENT:
        stmt = stmt.where(Appointment.patient_id == actor.user_id)
    elif actor.role is Role.DOCTOR:
        stmt = stmt.where(Appointment.doctor_id == actor.doctor_id)
    if f.doctor_id:
        stmt = stmt.where(Appointment.doctor_id == f.doctor_id)
    if f.patient_id:
        stmt = stmt.where(Appointment.patient_id == f.patient_id)
    if f.status:
        stmt = stmt.where(Appointment.status == f.status.value)
    if f.mode:
        stmt = stmt.where(Appointment.mode == f.mode.value)
    if f.start_date and f.end_date and f.end_date < f.start_date:
        raise ValidationError("endDate must not be before startDate")
    lo, hi = day_range_utc(f.start_date, f.end_date, get_tz(f.tz))
    if lo is not None:
        stmt = stmt.where(Appointment.start_time >= lo)
    if hi is not None:
        stmt = stmt.where(Appointment.start_time < hi)

    total = s.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    if f.order == "desc":
        stmt = stmt.order_by(Appointment.start_time.desc(), Appointment.id.desc())
    else:
        stmt = stmt.order_by(Appointment.start_time.asc(), Appointment.id.asc())
    rows = s.execute(stmt.offset((f.page - 1) * f.limit).limit(f.limit)).scalars().all()
    return AppointmentPage(
        data=[AppointmentOut.model_validate(a) for a in rows],
        pagination=Pagination.build(total, f.page, f.limit),
    )


def _search_filter(request: Request) -> AppointmentSearch:
    return AppointmentSearch.model_validate(dict(request.query_params))


@router.post("/appointments", response_model=AppointmentOut, status_code=201)
def create_appointment(
    req: AppointmentIn,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    actor: Actor = Depends(get_actor),
    s: Session = Depends(get_session),
):
    if actor.role is Role.PATIENT:
        if req.patient_id and req.patient_id != actor.user_id:
            raise ForbiddenError("patients can only book for themselves")
        patient_id = actor.user_id
    else:
        if not req.patient_id:
            raise ValidationError("patientId is required")
        patient_id = req.patient_id
    key = scoped_key(actor, idempotency_key)
    prior = _replay(s, key)
    if prior is not None:
        return prior
    slot = get_availability_or_404(s, req.availability_id)
    if actor.role is Role.DOCTOR:
        require_doctor_or_admin(actor, slot.doctor_id)
    return book(s, req.availability_id, patient_id, key)


@router.get("/appointments", response_model=AppointmentPage)
def search_appointments(
    f: AppointmentSearch = Depends(_search_filter),
    actor: Actor = Depends(get_actor),
    s: Session = Depends(get_session),
):
    return search(s, f, actor)


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def get_appointment(appointment_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    a = get_appointment_or_404(s, appointment_id)
    if not _can_see(actor, a):
        raise ForbiddenError("not your appointment")
    return a


@router.patch("/appointments/{appointment_id}/start", response_model=AppointmentOut)
def start_appointment(appointment_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    return start(s, appointment_id, actor)


@router.patch("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel_appointment(appointment_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    return cancel(s, appointment_id, actor)


@router.patch("/appointments/{appointment_id}/complete", response_model=AppointmentOut)
def complete_appointment(appointment_id: str, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    return complete(s, appointment_id, actor)
