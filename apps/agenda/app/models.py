import enum
import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base, UTCDateTime, _table_args, fk, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class AppointmentMode(str, enum.Enum):
    IN_PERSON = "IN_PERSON"
    VIRTUAL = "VIRTUAL"


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    CANCELLED = "CANCELLED"


class AppointmentStatus(str, enum.Enum):
    BOOKED = "BOOKED"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class DayKind(str, enum.Enum):
    NONE = "NONE"
    INDIVIDUAL = "INDIVIDUAL"
    CONFIG = "CONFIG"
    BOTH = "BOTH"


# Appointment states that still hold their slot.
ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.BOOKED.value, AppointmentStatus.ONGOING.value)


class Specialty(Base):
    __tablename__ = "specialties"
    __table_args__ = _table_args(UniqueConstraint("name_key", name="uq_specialties_name_key"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120))
    name_key: Mapped[str] = mapped_column(String(120))  # lower-cased name
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)


class Doctor(Base):
    __tablename__ = "doctors"
    __table_args__ = _table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    license_number: Mapped[str] = mapped_column(String(64))
    title: Mapped[str] = mapped_column(String(120))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)


class DoctorSpecialty(Base):
    __tablename__ = "doctor_specialties"
    __table_args__ = _table_args()
    doctor_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("doctors.id")), primary_key=True)
    specialty_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("specialties.id")), primary_key=True)


class ConfigAvailability(Base):
    __tablename__ = "config_availabilities"
    __table_args__ = _table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    doctor_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("doctors.id")), index=True)
    specialty_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("specialties.id")))
    mode: Mapped[str] = mapped_column(String(16))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date, default=None)
    start_minute: Mapped[int] = mapped_column(Integer)  # minutes from local midnight
    end_minute: Mapped[int] = mapped_column(Integer)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    days_of_week: Mapped[str] = mapped_column(String(16))  # comma-separated ISO weekdays, e.g. "1,3,5"
    materialized_until: Mapped[Optional[date]] = mapped_column(Date, default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)

    @property
    def weekdays(self) -> frozenset:
        return frozenset(int(d) for d in (self.days_of_week or "").split(",") if d.strip())


class Availability(Base):
    __tablename__ = "availabilities"
    __table_args__ = _table_args(
        Index("ix_availabilities_doctor_start", "doctor_id", "start_time"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    doctor_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("doctors.id")))
    specialty_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("specialties.id")))
    config_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey(fk("config_availabilities.id")), default=None, index=True)
    mode: Mapped[str] = mapped_column(String(16))
    start_time: Mapped[datetime] = mapped_column(UTCDateTime())
    end_time: Mapped[datetime] = mapped_column(UTCDateTime())
    duration_minutes: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default=AvailabilityStatus.AVAILABLE.value)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)

    @property
    def slot_key(self) -> tuple:
        return (self.doctor_id, self.start_time, self.end_time, self.config_id)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = _table_args(
        Index("ix_appointments_doctor_start", "doctor_id", "start_time"),
        Index("ix_appointments_patient_start", "patient_id", "start_time"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    availability_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey(fk("availabilities.id"), ondelete="SET NULL"), default=None, index=True
    )
    doctor_id: Mapped[str] = mapped_column(String(36), ForeignKey(fk("doctors.id")))
    patient_id: Mapped[str] = mapped_column(String(36))
    mode: Mapped[str] = mapped_column(String(16))
    start_time: Mapped[datetime] = mapped_column(UTCDateTime())
    end_time: Mapped[datetime] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(String(16), default=AppointmentStatus.BOOKED.value)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=None)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)


class Idempotency(Base):
    __tablename__ = "idempotency"
    __table_args__ = _table_args()
    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    ref_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), default=utcnow)
