import logging
from typing import Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .auth import Actor, get_actor, require_admin
from .db import get_session
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Doctor, DoctorSpecialty, Specialty
from .schemas import DoctorIn, DoctorOut, DoctorSpecialtyIn, SpecialtyIn, SpecialtyOut
from .timeutils import get_tz

log = logging.getLogger("agenda.registry")

router = APIRouter()


def get_doctor_or_404(s: Session, doctor_id: str) -> Doctor:
    d = s.get(Doctor, doctor_id)
    if not d:
        raise NotFoundError("doctor not found")
    return d


def lock_doctor_schedule(s: Session, doctor_id: str) -> None:
    """
    Hold the doctor row until the current transaction ends.

    Slot writes take this lock before their overlap check, so two writers for
    one doctor run one after the other. The self-assignment is a row lock on
    PostgreSQL and the database write lock on SQLite.
    """
    s.execute(
        update(Doctor)
        .where(Doctor.id == doctor_id)
        .values(timezone=Doctor.timezone)
        .execution_options(synchronize_session=False)
    )


def get_specialty_or_404(s: Session, specialty_id: str) -> Specialty:
    sp = s.get(Specialty, specialty_id)
    if not sp:
        raise NotFoundError("specialty not found")
    return sp


def require_doctor_specialty(s: Session, doctor_id: str, specialty_id: str) -> None:
    get_specialty_or_404(s, specialty_id)
    link = s.get(DoctorSpecialty, (doctor_id, specialty_id))
    if not link:
        raise ValidationError("doctor does not practice this specialty")


def _specialties_for(s: Session, doctor_ids: List[str]) -> Dict[str, List[Specialty]]:
    out: Dict[str, List[Specialty]] = {d: [] for d in doctor_ids}
    if not doctor_ids:
        return out
    stmt = (
        select(DoctorSpecialty.doctor_id, Specialty)
        .join(Specialty, Specialty.id == DoctorSpecialty.specialty_id)
        .where(DoctorSpecialty.doctor_id.in_(doctor_ids))
        .order_by(Specialty.name.asc())
    )
    for doctor_id, sp in s.execute(stmt).all():
        out[doctor_id].append(sp)
    return out


def _doctor_out(d: Doctor, specialties: List[Specialty]) -> DoctorOut:
    return DoctorOut(
        id=d.id,
        user_id=d.user_id,
        license_number=d.license_number,
        title=d.title,
        timezone=d.timezone,
        specialties=[SpecialtyOut.model_validate(sp) for sp in specialties],
    )


def _doctors_out(s: Session, doctors: List[Doctor]) -> List[DoctorOut]:
    specs = _specialties_for(s, [d.id for d in doctors])
    return [_doctor_out(d, specs[d.id]) for d in doctors]


@router.get("/specialties", response_model=List[SpecialtyOut])
def list_specialties(s: Session = Depends(get_session)):
    return s.execute(select(Specialty).order_by(Specialty.name.asc())).scalars().all()


@router.post("/specialties", response_model=SpecialtyOut, status_code=201)
def create_specialty(req: SpecialtyIn, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    require_admin(actor)
    name = req.name.strip()
    if not name:
        raise ValidationError("name must not be blank")
    key = name.lower()
    if s.execute(select(Specialty).where(Specialty.name_key == key)).scalars().first():
        raise ConflictError("specialty already exists")
    sp = Specialty(name=name, name_key=key)
    s.add(sp)
    s.commit()
    s.refresh(sp)
    log.info("specialty created", extra={"specialty_id": sp.id})
    return sp


@router.get("/specialties/{specialty_id}/doctors", response_model=List[DoctorOut])
def list_doctors_by_specialty(specialty_id: str, s: Session = Depends(get_session)):
    get_specialty_or_404(s, specialty_id)
    stmt = (
        select(Doctor)
        .join(DoctorSpecialty, DoctorSpecialty.doctor_id == Doctor.id)
        .where(DoctorSpecialty.specialty_id == specialty_id)
        .order_by(Doctor.title.asc())
    )
    return _doctors_out(s, s.execute(stmt).scalars().all())


@router.get("/doctors", response_model=List[DoctorOut])
def list_doctors(s: Session = Depends(get_session)):
    return _doctors_out(s, s.execute(select(Doctor).order_by(Doctor.title.asc())).scalars().all())


@router.get("/doctors/{doctor_id}", response_model=DoctorOut)
def get_doctor(doctor_id: str, s: Session = Depends(get_session)):
    d = get_doctor_or_404(s, doctor_id)
    return _doctors_out(s, [d])[0]


@router.post("/doctors", response_model=DoctorOut, status_code=201)
def create_doctor(req: DoctorIn, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    require_admin(actor)
    tz_name = req.timezone or "UTC"
    get_tz(tz_name)  # validate timezone string
    specialty_ids = list(dict.fromkeys(req.specialty_ids))
    for sid in specialty_ids:
        get_specialty_or_404(s, sid)
    d = Doctor(
        user_id=req.user_id.strip(),
        license_number=req.license_number.strip(),
        title=req.title.strip(),
        timezone=tz_name,
    )
    s.add(d)
    s.flush()
    s.add_all([DoctorSpecialty(doctor_id=d.id, specialty_id=sid) for sid in specialty_ids])
    s.commit()
    s.refresh(d)
    log.info("doctor created", extra={"doctor_id": d.id})
    return _doctors_out(s, [d])[0]


@router.post("/doctors/{doctor_id}/specialties", response_model=DoctorOut)
def add_doctor_specialty(
    doctor_id: str,
    req: DoctorSpecialtyIn,
    actor: Actor = Depends(get_actor),
    s: Session = Depends(get_session),
):
    require_admin(actor)
    d = get_doctor_or_404(s, doctor_id)
    get_specialty_or_404(s, req.specialty_id)
    if not s.get(DoctorSpecialty, (doctor_id, req.specialty_id)):
        s.add(DoctorSpecialty(doctor_id=doctor_id, specialty_id=req.specialty_id))
        s.commit()
    return _doctors_out(s, [d])[0]
