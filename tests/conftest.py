import os
import tempfile
from datetime import date, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault(
    "AGENDA_DB_URL",
    "sqlite+pysqlite:///" + os.path.join(tempfile.mkdtemp(prefix="agenda-test-"), "agenda.db"),
)

from apps.agenda.app.auth import Actor, Role  # noqa: E402
from apps.agenda.app.db import Base, make_engine  # noqa: E402
from apps.agenda.app.models import Doctor, DoctorSpecialty, Specialty, new_id  # noqa: E402


@pytest.fixture()
def agenda_engine():
    """
    Isolated in-memory SQLite engine. StaticPool keeps one connection so
    TestClient worker threads see the same database.
    """
    engine = make_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


def next_weekday(iso_weekday: int, min_days_ahead: int = 2) -> date:
    d = date.today() + timedelta(days=min_days_ahead)
    while d.isoweekday() != iso_weekday:
        d += timedelta(days=1)
    return d


@pytest.fixture()
def admin() -> Actor:
    return Actor(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture()
def patient() -> Actor:
    return Actor(user_id="patient-1", role=Role.PATIENT)


@pytest.fixture()
def other_patient() -> Actor:
    return Actor(user_id="patient-2", role=Role.PATIENT)


def seed_doctor(s: Session, timezone: str = "UTC", title: str = "Dr. Ada Lovelace") -> SimpleNamespace:
    sp = Specialty(id=new_id(), name="Cardiology " + title, name_key=("cardiology " + title).lower())
    d = Doctor(id=new_id(), user_id="user-" + new_id()[:8], license_number="LIC-1", title=title, timezone=timezone)
    s.add_all([sp, d])
    s.flush()
    s.add(DoctorSpecialty(doctor_id=d.id, specialty_id=sp.id))
    s.commit()
    return SimpleNamespace(
        doctor_id=d.id,
        specialty_id=sp.id,
        actor=Actor(user_id=d.user_id, role=Role.DOCTOR, doctor_id=d.id),
    )


@pytest.fixture()
def clinic(agenda_engine) -> SimpleNamespace:
    """One UTC doctor holding one specialty, plus the next Monday."""
    with Session(agenda_engine) as s:
        c = seed_doctor(s)
    c.monday = next_weekday(1)
    return c


@pytest.fixture()
def make_doctor():
    return seed_doctor


@pytest.fixture()
def upcoming():
    return next_weekday
