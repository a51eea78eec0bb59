import math
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .db import MAX_PAGE_SIZE
from .models import AppointmentMode, AppointmentStatus, AvailabilityStatus, DayKind


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class QueryFilter(CamelModel):
    # Filters are built from raw query strings; unknown keys are a client bug.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


# --- registry ---


class SpecialtyIn(CamelModel):
    name: str = Field(min_length=1, max_length=120)


class SpecialtyOut(CamelModel):
    id: str
    name: str
    created_at: Optional[datetime] = None


class DoctorIn(CamelModel):
    user_id: str = Field(min_length=1, max_length=36)
    license_number: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=120)
    timezone: str = Field(default="UTC", description="IANA timezone, e.g. America/Bogota")
    specialty_ids: List[str] = []


class DoctorSpecialtyIn(CamelModel):
    specialty_id: str


class DoctorOut(CamelModel):
    id: str
    user_id: str
    license_number: str
    title: str
    timezone: str
    specialties: List[SpecialtyOut] = []


# --- recurring configurations ---


class ConfigIn(CamelModel):
    doctor_id: str
    specialty_id: str
    mode: AppointmentMode
    start_date: date
    end_date: Optional[date] = None
    start_hour: str = Field(description="HH:MM 24h, doctor local time")
    end_hour: str = Field(description="HH:MM 24h, doctor local time")
    duration_minutes: int = Field(ge=5, le=480)
    days_of_week: List[int] = Field(description="ISO weekdays, 1=Monday .. 7=Sunday")


class ConfigUpdate(CamelModel):
    mode: Optional[AppointmentMode] = None
    end_date: Optional[date] = None
    start_hour: Optional[str] = None
    end_hour: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=5, le=480)
    days_of_week: Optional[List[int]] = None


class ConfigOut(CamelModel):
    id: str
    doctor_id: str
    specialty_id: str
    mode: AppointmentMode
    start_date: date
    end_date: Optional[date] = None
    start_hour: str
    end_hour: str
    duration_minutes: int
    days_of_week: List[int]
    materialized_until: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConfigDeleteOut(CamelModel):
    cancelled_appointments_count: int


class CountOut(CamelModel):
    count: int


# --- availabilities ---


class AvailabilityIn(CamelModel):
    doctor_id: str
    specialty_id: str
    mode: AppointmentMode
    start_time: AwareDatetime
    end_time: AwareDatetime
    duration_minutes: Optional[int] = Field(default=None, ge=1)


class AvailabilityOut(CamelModel):
    id: str
    doctor_id: str
    specialty_id: str
    config_id: Optional[str] = None
    mode: AppointmentMode
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: AvailabilityStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AvailabilityUpdate(CamelModel):
    mode: Optional[AppointmentMode] = None
    specialty_id: Optional[str] = None
    start_time: Optional[AwareDatetime] = None
    end_time: Optional[AwareDatetime] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1)


class AvailabilityStatusIn(CamelModel):
    status: AvailabilityStatus


class AvailabilityDeleteOut(CamelModel):
    cancelled_appointment: bool


class AvailabilitySearch(QueryFilter):
    doctor_id: Optional[str] = None
    specialty_id: Optional[str] = None
    mode: Optional[AppointmentMode] = None
    status: Optional[AvailabilityStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    tz: Optional[str] = None
    all: bool = False
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=MAX_PAGE_SIZE)


# --- appointments ---


class AppointmentIn(CamelModel):
    availability_id: str
    patient_id: Optional[str] = None


class AppointmentOut(CamelModel):
    id: str
    availability_id: Optional[str] = None
    doctor_id: str
    patient_id: str
    mode: AppointmentMode
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AppointmentSearch(QueryFilter):
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    status: Optional[AppointmentStatus] = None
    mode: Optional[AppointmentMode] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    tz: Optional[str] = None
    order: Literal["asc", "desc"] = "asc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=MAX_PAGE_SIZE)


# --- shared ---


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "Pagination":
        total_pages = math.ceil(total / limit) if total else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class AvailabilityPage(CamelModel):
    data: List[AvailabilityOut]
    pagination: Pagination


class AppointmentPage(CamelModel):
    data: List[AppointmentOut]
    pagination: Pagination


class CalendarDay(CamelModel):
    date: date
    kind: DayKind
    availabilities: List[AvailabilityOut]


class CalendarOut(CamelModel):
    doctor_id: str
    timezone: str
    month_start: date
    month_end: date
    days: List[CalendarDay]
