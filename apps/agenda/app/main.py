import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from agenda_shared import RequestIDMiddleware, add_standard_health, configure_cors, setup_json_logging

from . import appointments, availabilities, calendar_view, configs, registry
from .db import EXPANSION_HORIZON_DAYS, Base, _env_bool, engine, ping_database
from .errors import register_exception_handlers
from .expansion import materialize
from .models import AppointmentMode, ConfigAvailability, Doctor, DoctorSpecialty, Specialty, new_id
from .timeutils import get_tz, local_today

log = logging.getLogger("agenda.main")


def _seed_demo_data():
    if not _env_bool("AGENDA_DEMO_SEED", False):
        return
    with Session(engine) as s:
        existing = s.execute(select(func.count(Doctor.id))).scalar() or 0
        if existing > 0:
            return
        specialties = {}
        for name in ("General Medicine", "Dermatology", "Pediatrics"):
            sp = Specialty(id=new_id(), name=name, name_key=name.lower())
            s.add(sp)
            specialties[name] = sp
        samples = [
            ("doc-anna", "LIC-1001", "Dr. Anna Müller", "Europe/Berlin", "General Medicine"),
            ("doc-samir", "LIC-1002", "Dr. Samir Youssef", "Europe/Berlin", "Dermatology"),
            ("doc-laura", "LIC-1003", "Dr. Laura Rossi", "America/Bogota", "Pediatrics"),
        ]
        for user_id, lic, title, tz, sp_name in samples:
            d = Doctor(id=new_id(), user_id=user_id, license_number=lic, title=title, timezone=tz)
            s.add(d)
            s.flush()
            s.add(DoctorSpecialty(doctor_id=d.id, specialty_id=specialties[sp_name].id))
            # Mon-Fri mornings, 30 minute slots
            s.add(
                ConfigAvailability(
                    id=new_id(),
                    doctor_id=d.id,
                    specialty_id=specialties[sp_name].id,
                    mode=AppointmentMode.IN_PERSON.value,
                    start_date=local_today(get_tz(tz)),
                    start_minute=9 * 60,
                    end_minute=12 * 60,
                    duration_minutes=30,
                    days_of_week="1,2,3,4,5",
                )
            )
        s.commit()
        materialize(s, local_today(get_tz("UTC")) + timedelta(days=EXPANSION_HORIZON_DAYS))
        log.info("demo data seeded", extra={"doctors": len(samples)})


def on_startup():
    Base.metadata.create_all(engine)
    _seed_demo_data()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    on_startup()
    yield


app = FastAPI(title="Agenda API", version="0.1.0", lifespan=_lifespan)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", "*"))
add_standard_health(app, db_check=ping_database)
register_exception_handlers(app)

app.include_router(registry.router)
app.include_router(configs.router)
app.include_router(availabilities.router)
app.include_router(appointments.router)
app.include_router(calendar_view.router)
