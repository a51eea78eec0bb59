import threading
from datetime import date, datetime, time, timedelta, timezone

import pydantic
import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from apps.agenda.app import appointments as appts
from apps.agenda.app import availabilities as av
from apps.agenda.app import configs
from apps.agenda.app.db import MAX_LOOKAHEAD_DAYS, Base, make_engine
from apps.agenda.app.errors import (
    ForbiddenError,
    InvalidTransitionError,
    OverlapError,
    SlotBookedError,
    ValidationError,
)
from apps.agenda.app.models import Appointment, Availability, ConfigAvailability, DoctorSpecialty, Specialty, new_id
from apps.agenda.app.schemas import (
    AvailabilityIn,
    AvailabilitySearch,
    AvailabilityStatusIn,
    AvailabilityUpdate,
    ConfigIn,
)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


def _slot(clinic, start: datetime, minutes: int = 30, **kw) -> AvailabilityIn:
    return AvailabilityIn(
        doctor_id=clinic.doctor_id,
        specialty_id=clinic.specialty_id,
        mode=kw.pop("mode", "IN_PERSON"),
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        **kw,
    )


def test_individual_slot_then_overlapping_config_is_rejected(agenda_engine, clinic):
    with Session(agenda_engine) as s:
        a = av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=clinic.actor, s=s)
        assert a.config_id is None
        assert a.duration_minutes == 30

        req = ConfigIn(
            doctor_id=clinic.doctor_id,
            specialty_id=clinic.specialty_id,
            mode="IN_PERSON",
            start_date=clinic.monday,
            end_date=clinic.monday,
            start_hour="10:15",
            end_hour="10:45",
            duration_minutes=30,
            days_of_week=[1],
        )
        with pytest.raises(OverlapError):
            configs.create_config(req=req, actor=clinic.actor, s=s)

        assert s.execute(select(func.count(ConfigAvailability.id))).scalar_one() == 0
        assert s.execute(select(func.count(Availability.id))).scalar_one() == 1


def test_individual_slot_overlapping_config_slot_is_rejected(agenda_engine, clinic):
    with Session(agenda_engine) as s:
        req = ConfigIn(
            doctor_id=clinic.doctor_id,
            specialty_id=clinic.specialty_id,
            mode="VIRTUAL",
            start_date=clinic.monday,
            end_date=clinic.monday,
            start_hour="10:15",
            end_hour="10:45",
            duration_minutes=30,
            days_of_week=[1],
        )
        configs.create_config(req=req, actor=clinic.actor, s=s)
        with pytest.raises(OverlapError):
            av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=clinic.actor, s=s)


def test_touching_slots_do_not_overlap(agenda_engine, clinic):
    with Session(agenda_engine) as s:
        av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=clinic.actor, s=s)
        av.create_availability(req=_slot(clinic, at(clinic.monday, 10, 30)), actor=clinic.actor, s=s)
        av.create_availability(req=_slot(clinic, at(clinic.monday, 9, 30)), actor=clinic.actor, s=s)
        with pytest.raises(OverlapError):
            av.create_availability(req=_slot(clinic, at(clinic.monday, 10, 29), minutes=2), actor=clinic.actor, s=s)


def test_overlap_is_checked_across_specialties(agenda_engine, clinic):
    with Session(agenda_engine) as s:
        other = Specialty(id=new_id(), name="Neurology", name_key="neurology")
        s.add(other)
        s.flush()
        s.add(DoctorSpecialty(doctor_id=clinic.doctor_id, specialty_id=other.id))
        s.commit()

        av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=clinic.actor, s=s)
        req = AvailabilityIn(
            doctor_id=clinic.doctor_id,
            specialty_id=other.id,
            mode="VIRTUAL",
            start_time=at(clinic.monday, 10, 15),
            end_time=at(clinic.monday, 10, 45),
        )
        with pytest.raises(OverlapError):
            av.create_availability(req=req, actor=clinic.actor, s=s)


def test_individual_slot_validation(agenda_engine, clinic, make_doctor):
    with Session(agenda_engine) as s:
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        with pytest.raises(ValidationError):
            av.create_availability(req=_slot(clinic, past), actor=clinic.actor, s=s)
        with pytest.raises(ValidationError):
            av.create_availability(req=_slot(clinic, at(clinic.monday, 10), duration_minutes=20), actor=clinic.actor, s=s)
        with pytest.raises(ValidationError):
            av.create_availability(req=_slot(clinic, at(clinic.monday, 10), minutes=0), actor=clinic.actor, s=s)

        stranger = make_doctor(s, title="Dr. Grace Hopper")
        req = AvailabilityIn(
            doctor_id=clinic.doctor_id,
            specialty_id=stranger.specialty_id,
            mode="IN_PERSON",
            start_time=at(clinic.monday, 10),
            end_time=at(clinic.monday, 10, 30),
        )
        with pytest.raises(ValidationError):
            av.create_availability(req=req, actor=clinic.actor, s=s)
        with pytest.raises(ForbiddenError):
            av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=stranger.actor, s=s)


def test_simple_delete_refuses_booked_slot_but_purge_cancels(agenda_engine, clinic, patient, admin):
    with Session(agenda_engine) as s:
        a = av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=clinic.actor, s=s)
        slot_id = a.id
        appt = appts.book(s, slot_id, patient.user_id)

        with pytest.raises(SlotBookedError):
            av.delete_availability(availability_id=slot_id, actor=clinic.actor, s=s)
        with pytest.raises(ForbiddenError):
            av.admin_purge_availability(availability_id=slot_id, actor=clinic.actor, s=s)

        out = av.admin_purge_availability(availability_id=slot_id, actor=admin, s=s)
        assert out.cancelled_appointment is True
        assert s.get(Availability, slot_id) is None
        s.expire_all()
        cancelled = s.get(Appointment, appt.id)
        assert cancelled.status == "CANCELLED"
        assert cancelled.availability_id is None
        assert cancelled.cancelled_by == admin.user_id


def test_simple_delete_of_free_slot(agenda_engine, clinic):
    with Session(agenda_engine) as s:
        a = av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=clinic.actor, s=s)
        slot_id = a.id
        out = av.delete_availability(availability_id=slot_id, actor=clinic.actor, s=s)
        assert out.cancelled_appointment is False
        assert s.get(Availability, slot_id) is None


def test_status_transitions(agenda_engine, clinic, patient):
    with Session(agenda_engine) as s:
        a = av.create_availability(req=_slot(clinic, at(clinic.monday, 10)), actor=clinic.actor, s=s)
        slot_id = a.id

        with pytest.raises(ValidationError):
            av.update_availability_status(
                availability_id=slot_id, req=AvailabilityStatusIn(status="BOOKED"), actor=clinic.actor, s=s
            )
        out = av.update_availability_status(
            availability_id=slot_id, req=AvailabilityStatusIn(status="CANCELLED"), actor=clinic.actor, s=s
        )
        assert out.status == "CANCELLED"
        with pytest.raises(InvalidTransitionError):
            av.update_availability_status(
                availability_id=slot_id, req=AvailabilityStatusIn(status="AVAILABLE"), actor=clinic.actor, s=s
            )


def test_cancelling_a_booked_slot_cancels_its_appointment(agenda_engine, clinic, patient):
    with Session(agenda_engine) as s:
        a = av.create_availability(req=_slot(clinic, at(clinic.monday, 11)), actor=clinic.actor, s=s)
        slot_id = a.id
        appt = appts.book(s, slot_id, patient.user_id)
        with pytest.raises(InvalidTransitionError):
            av.update_availability_status(
                availability_id=slot_id, req=AvailabilityStatusIn(status="AVAILABLE"), actor=clinic.actor, s=s
            )
        av.update_availability_status(
            availability_id=slot_id, req=AvailabilityStatusIn(status="CANCELLED"), actor=clinic.actor, s=s
        )
        s.expire_all()
        assert s.get(Appointment, appt.id).status == "CANCELLED"


def test_transition_table():
    slot = Availability(status="AVAILABLE")
    av.transition(slot, "BOOKED")
    av.transition(slot, "AVAILABLE")
    av.transition(slot, "CANCELLED")
    assert slot.status == "CANCELLED"
    with pytest.raises(InvalidTransitionError):
        av.transition(slot, "BOOKED")


def test_search_filters_pages_and_orders(agenda_engine, clinic, patient):
    with Session(agenda_engine) as s:
        for hour in (12, 9, 10, 11):
            av.create_availability(req=_slot(clinic, at(clinic.monday, hour)), actor=clinic.actor, s=s)
        av.create_availability(
            req=_slot(clinic, at(clinic.monday + timedelta(days=1), 9), mode="VIRTUAL"), actor=clinic.actor, s=s
        )
        booked = s.execute(
            select(Availability).where(Availability.start_time == at(clinic.monday, 9))
        ).scalar_one()
        appts.book(s, booked.id, patient.user_id)

        page = av.search_availabilities(
            f=AvailabilitySearch(doctor_id=clinic.doctor_id, start_date=clinic.monday, end_date=clinic.monday, limit=3),
            s=s,
        )
        assert page.pagination.total == 4
        assert page.pagination.total_pages == 2
        assert page.pagination.has_next is True
        assert [a.start_time.hour for a in page.data] == [9, 10, 11]

        free = av.search_availabilities(
            f=AvailabilitySearch(doctor_id=clinic.doctor_id, status="AVAILABLE", all=True), s=s
        )
        assert isinstance(free, list)
        assert len(free) == 4

        virtual = av.search_availabilities(f=AvailabilitySearch(mode="VIRTUAL", all=True), s=s)
        assert [a.start_time.date() for a in virtual] == [clinic.monday + timedelta(days=1)]

        with pytest.raises(ValidationError):
            av.search_availabilities(
                f=AvailabilitySearch(start_date=clinic.monday, end_date=clinic.monday - timedelta(days=1)), s=s
            )


def test_search_day_bounds_follow_doctor_timezone(agenda_engine, make_doctor, upcoming):
    monday = upcoming(1)
    with Session(agenda_engine) as s:
        c = make_doctor(s, timezone="America/Bogota")
        # 23:30 local on Monday is already Tuesday in UTC
        late = datetime.combine(monday + timedelta(days=1), time(4, 30), tzinfo=timezone.utc)
        req = AvailabilityIn(
            doctor_id=c.doctor_id,
            specialty_id=c.specialty_id,
            mode="VIRTUAL",
            start_time=late,
            end_time=late + timedelta(minutes=20),
        )
        av.create_availability(req=req, actor=c.actor, s=s)
        local = av.search_availabilities(
            f=AvailabilitySearch(doctor_id=c.doctor_id, start_date=monday, end_date=monday, all=True), s=s
        )
        assert len(local) == 1
        utc = av.search_availabilities(
            f=AvailabilitySearch(doctor_id=c.doctor_id, start_date=monday, end_date=monday, tz="UTC", all=True), s=s
        )
        assert utc == []


def test_search_filter_rejects_unknown_keys():
    with pytest.raises(pydantic.ValidationError):
        AvailabilitySearch.model_validate({"doctorId": "x", "sort": "price"})
    f = AvailabilitySearch.model_validate({"doctorId": "x", "all": "true", "page": "2"})
    assert f.all is True
    assert f.page == 2


def _weekly_config(clinic, **kw) -> ConfigIn:
    fields = dict(
        doctor_id=clinic.doctor_id,
        specialty_id=clinic.specialty_id,
        mode="IN_PERSON",
        start_date=clinic.monday,
        end_date=None,
        start_hour="09:00",
        end_hour="10:00",
        duration_minutes=30,
        days_of_week=[1],
    )
    fields.update(kw)
    return ConfigIn(**fields)


def test_search_range_is_capped_and_far_dates_do_not_overflow(agenda_engine, clinic):
    today = datetime.now(timezone.utc).date()
    ceiling = today + timedelta(days=MAX_LOOKAHEAD_DAYS + 1)
    with Session(agenda_engine) as s:
        cfg = configs.create_config(req=_weekly_config(clinic), actor=clinic.actor, s=s)
        cfg_id = cfg.id

        with pytest.raises(ValidationError):
            av.search(s, AvailabilitySearch(doctor_id=clinic.doctor_id, end_date=date.max))
        with pytest.raises(ValidationError):
            av.search(
                s,
                AvailabilitySearch(
                    doctor_id=clinic.doctor_id,
                    start_date=today,
                    end_date=today + timedelta(days=MAX_LOOKAHEAD_DAYS + 1),
                ),
            )

        # narrow windows far ahead are answered, but configs only expand to the lookahead
        far = av.search(
            s, AvailabilitySearch(doctor_id=clinic.doctor_id, start_date=date(2300, 1, 1), end_date=date(2300, 1, 2), all=True)
        )
        assert far == []
        last_day = av.search(
            s, AvailabilitySearch(doctor_id=clinic.doctor_id, start_date=date.max, end_date=date.max, all=True)
        )
        assert last_day == []

        s.expire_all()
        assert s.get(ConfigAvailability, cfg_id).materialized_until <= ceiling
        latest = s.execute(select(func.max(Availability.start_time))).scalar_one()
        assert latest.date() <= ceiling


def test_update_moves_and_edits_an_open_slot(agenda_engine, clinic, make_doctor):
    monday = clinic.monday
    with Session(agenda_engine) as s:
        slot_id = av.create_availability(req=_slot(clinic, at(monday, 10)), actor=clinic.actor, s=s).id
        av.create_availability(req=_slot(clinic, at(monday, 11)), actor=clinic.actor, s=s)

        with pytest.raises(OverlapError):
            av.update_availability(
                availability_id=slot_id, req=AvailabilityUpdate(start_time=at(monday, 10, 45)), actor=clinic.actor, s=s
            )

        # overlapping its own old bounds is fine
        out = av.update_availability(
            availability_id=slot_id, req=AvailabilityUpdate(start_time=at(monday, 10, 15)), actor=clinic.actor, s=s
        )
        assert (out.start_time, out.end_time, out.duration_minutes) == (at(monday, 10, 15), at(monday, 10, 45), 30)

        out = av.update_availability(
            availability_id=slot_id,
            req=AvailabilityUpdate(duration_minutes=45, mode="VIRTUAL"),
            actor=clinic.actor,
            s=s,
        )
        assert (out.end_time, out.duration_minutes, out.mode) == (at(monday, 11), 45, "VIRTUAL")

        with pytest.raises(ValidationError):
            av.update_availability(
                availability_id=slot_id, req=AvailabilityUpdate(end_time=at(monday, 10, 15)), actor=clinic.actor, s=s
            )
        with pytest.raises(ValidationError):
            av.update_availability(
                availability_id=slot_id,
                req=AvailabilityUpdate(end_time=at(monday, 11), duration_minutes=20),
                actor=clinic.actor,
                s=s,
            )

        stranger = make_doctor(s, title="Dr. Edsger Dijkstra")
        with pytest.raises(ValidationError):
            av.update_availability(
                availability_id=slot_id,
                req=AvailabilityUpdate(specialty_id=stranger.specialty_id),
                actor=clinic.actor,
                s=s,
            )
        with pytest.raises(ForbiddenError):
            av.update_availability(
                availability_id=slot_id, req=AvailabilityUpdate(mode="IN_PERSON"), actor=stranger.actor, s=s
            )

        extra = Specialty(id=new_id(), name="Neurology", name_key="neurology")
        s.add(extra)
        s.flush()
        s.add(DoctorSpecialty(doctor_id=clinic.doctor_id, specialty_id=extra.id))
        s.commit()
        out = av.update_availability(
            availability_id=slot_id, req=AvailabilityUpdate(specialty_id=extra.id), actor=clinic.actor, s=s
        )
        assert out.specialty_id == extra.id
        assert out.start_time == at(monday, 10, 15)


def test_update_refuses_booked_and_closed_slots(agenda_engine, clinic, patient):
    monday = clinic.monday
    with Session(agenda_engine) as s:
        cfg = configs.create_config(
            req=_weekly_config(clinic, end_date=monday), actor=clinic.actor, s=s
        )
        first_id, second_id = (
            s.execute(select(Availability.id).where(Availability.config_id == cfg.id).order_by(Availability.start_time))
            .scalars()
            .all()
        )
        appts.book(s, first_id, patient.user_id)
        with pytest.raises(SlotBookedError):
            av.update_availability(
                availability_id=first_id, req=AvailabilityUpdate(mode="VIRTUAL"), actor=clinic.actor, s=s
            )

        moved = av.update_availability(
            availability_id=second_id, req=AvailabilityUpdate(start_time=at(monday, 12)), actor=clinic.actor, s=s
        )
        assert moved.config_id is None
        assert moved.start_time == at(monday, 12)

        av.update_availability_status(
            availability_id=second_id, req=AvailabilityStatusIn(status="CANCELLED"), actor=clinic.actor, s=s
        )
        with pytest.raises(InvalidTransitionError):
            av.update_availability(
                availability_id=second_id, req=AvailabilityUpdate(mode="VIRTUAL"), actor=clinic.actor, s=s
            )


def test_concurrent_creates_for_one_doctor_keep_slots_disjoint(tmp_path, make_doctor, upcoming):
    engine = make_engine(
        f"sqlite+pysqlite:///{tmp_path / 'agenda.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    with Session(engine) as s:
        c = make_doctor(s)
    monday = upcoming(1)

    n = 4
    barrier = threading.Barrier(n)
    results = []
    lock = threading.Lock()

    def worker(i: int):
        # 10:00, 10:05, ... all intersect each other
        req = _slot(c, at(monday, 10, i * 5))
        with Session(engine) as s:
            barrier.wait()
            try:
                av.create_availability(req=req, actor=c.actor, s=s)
                outcome = "created"
            except OverlapError:
                outcome = "overlap"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["created"] + ["overlap"] * (n - 1)
    with Session(engine) as s:
        assert s.execute(select(func.count(Availability.id))).scalar_one() == 1
    engine.dispose()
