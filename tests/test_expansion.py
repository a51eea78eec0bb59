from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from apps.agenda.app.expansion import expand, materialize
from apps.agenda.app.models import Availability, ConfigAvailability, new_id

MONDAY = date(2025, 1, 6)


def _config(**kw) -> ConfigAvailability:
    fields = dict(
        id="cfg-1",
        doctor_id="doc-1",
        specialty_id="spec-1",
        mode="IN_PERSON",
        start_date=MONDAY,
        end_date=MONDAY,
        start_minute=9 * 60,
        end_minute=10 * 60,
        duration_minutes=30,
        days_of_week="1",
    )
    fields.update(kw)
    return ConfigAvailability(**fields)


def test_monday_morning_produces_two_half_hour_slots():
    slots = expand(_config(), MONDAY, MONDAY)
    assert [(a.start_time, a.end_time) for a in slots] == [
        (datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc), datetime(2025, 1, 6, 9, 30, tzinfo=timezone.utc)),
        (datetime(2025, 1, 6, 9, 30, tzinfo=timezone.utc), datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)),
    ]
    for a in slots:
        assert a.config_id == "cfg-1"
        assert a.status == "AVAILABLE"
        assert a.duration_minutes == 30
        assert a.mode == "IN_PERSON"


def test_trailing_partial_slot_is_dropped():
    slots = expand(_config(duration_minutes=40), MONDAY, MONDAY)
    assert len(slots) == 1
    assert slots[0].end_time == datetime(2025, 1, 6, 9, 40, tzinfo=timezone.utc)


def test_expansion_is_deterministic():
    cfg = _config(end_date=MONDAY + timedelta(days=13), days_of_week="1,3,5")
    first = [(a.start_time, a.end_time) for a in expand(cfg, MONDAY, MONDAY + timedelta(days=13))]
    second = [(a.start_time, a.end_time) for a in expand(cfg, MONDAY, MONDAY + timedelta(days=13))]
    assert first == second
    # Mon/Wed/Fri over two weeks, two slots each
    assert len(first) == 12


def test_range_is_clamped_to_config_dates():
    cfg = _config(start_date=MONDAY + timedelta(days=7), end_date=MONDAY + timedelta(days=7))
    assert expand(cfg, MONDAY, MONDAY + timedelta(days=6)) == []
    assert len(expand(cfg, MONDAY, MONDAY + timedelta(days=30))) == 2


def test_open_ended_config_uses_range_end():
    cfg = _config(end_date=None)
    slots = expand(cfg, MONDAY, MONDAY + timedelta(days=20))
    assert {a.start_time.date() for a in slots} == {MONDAY, MONDAY + timedelta(days=7), MONDAY + timedelta(days=14)}


def test_wall_clock_is_localized_in_doctor_timezone():
    slots = expand(_config(), MONDAY, MONDAY, ZoneInfo("America/Bogota"))
    # Bogota is UTC-5 all year
    assert slots[0].start_time == datetime(2025, 1, 6, 14, 0, tzinfo=timezone.utc)


def test_materialize_is_idempotent_and_does_not_resurrect_deleted_slots(agenda_engine, clinic):
    monday = clinic.monday
    with Session(agenda_engine) as s:
        cfg = ConfigAvailability(
            id=new_id(),
            doctor_id=clinic.doctor_id,
            specialty_id=clinic.specialty_id,
            mode="VIRTUAL",
            start_date=monday,
            end_date=monday + timedelta(days=14),
            start_minute=9 * 60,
            end_minute=10 * 60,
            duration_minutes=30,
            days_of_week="1",
        )
        s.add(cfg)
        s.commit()

        assert materialize(s, monday + timedelta(days=6)) == 2
        assert materialize(s, monday + timedelta(days=6)) == 0
        count = s.execute(select(func.count(Availability.id))).scalar_one()
        assert count == 2

        first = s.execute(select(Availability).order_by(Availability.start_time)).scalars().first()
        s.delete(first)
        s.commit()

        assert materialize(s, monday + timedelta(days=14)) == 4
        starts = s.execute(select(Availability.start_time).order_by(Availability.start_time)).scalars().all()
        assert len(starts) == 5
        assert datetime.combine(monday, datetime.min.time(), tzinfo=timezone.utc) + timedelta(hours=9) not in starts
        assert s.get(ConfigAvailability, cfg.id).materialized_until == monday + timedelta(days=14)


def test_materialize_skips_slots_overlapping_existing_ones(agenda_engine, clinic):
    monday = clinic.monday
    with Session(agenda_engine) as s:
        nine_fifteen = datetime.combine(monday, datetime.min.time(), tzinfo=timezone.utc) + timedelta(hours=9, minutes=15)
        s.add(
            Availability(
                doctor_id=clinic.doctor_id,
                specialty_id=clinic.specialty_id,
                mode="IN_PERSON",
                start_time=nine_fifteen,
                end_time=nine_fifteen + timedelta(minutes=30),
                duration_minutes=30,
            )
        )
        s.add(
            ConfigAvailability(
                id=new_id(),
                doctor_id=clinic.doctor_id,
                specialty_id=clinic.specialty_id,
                mode="IN_PERSON",
                start_date=monday,
                end_date=monday,
                start_minute=9 * 60,
                end_minute=11 * 60,
                duration_minutes=30,
                days_of_week="1",
            )
        )
        s.commit()

        # 09:00 and 09:30 collide with the 09:15 slot, 10:00 and 10:30 do not
        assert materialize(s, monday) == 2
