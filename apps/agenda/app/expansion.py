"""
Config expansion.

Turns a recurring ConfigAvailability into concrete Availability slots and
keeps generated slots materialized as callers look further ahead.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .db import atomic
from .models import Availability, AvailabilityStatus, ConfigAvailability, Doctor, new_id
from .overlap import IntervalIndex
from .registry import lock_doctor_schedule
from .timeutils import get_tz, iter_days, local_instant

log = logging.getLogger("agenda.expansion")

_UTC = ZoneInfo("UTC")
_FAR_FUTURE = datetime(9999, 12, 31, tzinfo=timezone.utc)


def expand(config: ConfigAvailability, range_start: date, range_end: date, tz: ZoneInfo = _UTC) -> List[Availability]:
    """
    Slots ``config`` produces between two local dates, both inclusive.

    Pure: nothing is read from or written to the database and the same
    arguments always give the same slot boundaries. A trailing window shorter
    than ``duration_minutes`` produces no slot.
    """
    first = max(config.start_date, range_start)
    last = min(config.end_date or range_end, range_end)
    if first > last:
        return []
    weekdays = config.weekdays
    length = config.duration_minutes
    out: List[Availability] = []
    for day in iter_days(first, last):
        if day.isoweekday() not in weekdays:
            continue
        minute = config.start_minute
        while minute + length <= config.end_minute:
            out.append(
                Availability(
                    doctor_id=config.doctor_id,
                    specialty_id=config.specialty_id,
                    config_id=config.id,
                    mode=config.mode,
                    start_time=local_instant(day, minute, tz),
                    end_time=local_instant(day, minute + length, tz),
                    duration_minutes=length,
                    status=AvailabilityStatus.AVAILABLE.value,
                )
            )
            minute += length
    return out


def existing_keys(s: Session, config_id: str) -> Set[tuple]:
    rows = s.execute(
        select(Availability.doctor_id, Availability.start_time, Availability.end_time, Availability.config_id).where(
            Availability.config_id == config_id
        )
    ).all()
    return {tuple(r) for r in rows}


def drop_existing(s: Session, config_id: str, slots: Iterable[Availability]) -> List[Availability]:
    """Re-expansion must never duplicate (doctor, start, end, config) rows."""
    seen = existing_keys(s, config_id)
    fresh: List[Availability] = []
    for slot in slots:
        key = slot.slot_key
        if key in seen:
            continue
        seen.add(key)
        fresh.append(slot)
    return fresh


def materialize(
    s: Session,
    until: date,
    doctor_id: Optional[str] = None,
    specialty_id: Optional[str] = None,
) -> int:
    """
    Extend every open config (optionally of one doctor / specialty) up to
    ``until``, starting after its ``materialized_until`` frontier.

    Slots already generated are never regenerated, so a slot the doctor
    deleted stays deleted. Generated slots that would overlap an existing
    one are skipped. Returns the number of rows inserted.
    """
    stmt = select(ConfigAvailability).where(
        or_(ConfigAvailability.materialized_until.is_(None), ConfigAvailability.materialized_until < until),
        or_(
            ConfigAvailability.end_date.is_(None),
            ConfigAvailability.materialized_until.is_(None),
            ConfigAvailability.materialized_until < ConfigAvailability.end_date,
        ),
    )
    if doctor_id:
        stmt = stmt.where(ConfigAvailability.doctor_id == doctor_id)
    if specialty_id:
        stmt = stmt.where(ConfigAvailability.specialty_id == specialty_id)
    configs = s.execute(stmt.order_by(ConfigAvailability.doctor_id, ConfigAvailability.start_date)).scalars().all()
    if not configs:
        return 0

    inserted = 0
    with atomic(s):
        for locked_id in sorted({cfg.doctor_id for cfg in configs}):
            lock_doctor_schedule(s, locked_id)
        plans = []
        for cfg in configs:
            # another writer may have moved the frontier before we got the lock
            s.refresh(cfg)
            doctor = s.get(Doctor, cfg.doctor_id)
            tz = get_tz(doctor.timezone if doctor else None)
            frontier = cfg.materialized_until or (cfg.start_date - timedelta(days=1))
            start = max(cfg.start_date, frontier + timedelta(days=1))
            end = min(cfg.end_date or until, until)
            if start > end:
                continue
            plans.append((cfg, end, drop_existing(s, cfg.id, expand(cfg, start, end, tz))))

        lows = {}
        for cfg, _, slots in plans:
            if slots:
                lo = min(a.start_time for a in slots)
                lows[cfg.doctor_id] = min(lo, lows.get(cfg.doctor_id, lo))
        indexes = {
            doctor_id: IntervalIndex.for_doctor(s, doctor_id, lo, _FAR_FUTURE) for doctor_id, lo in lows.items()
        }

        for cfg, end, slots in plans:
            index = indexes.get(cfg.doctor_id)
            for slot in slots:
                hit = index.conflict(slot.start_time, slot.end_time)
                if hit is not None:
                    log.warning(
                        "skipping generated slot that overlaps an existing one",
                        extra={
                            "config_id": cfg.id,
                            "doctor_id": cfg.doctor_id,
                            "slot_start": slot.start_time.isoformat(),
                            "conflicting_id": hit[2],
                        },
                    )
                    continue
                slot.id = new_id()
                s.add(slot)
                index.add(slot.start_time, slot.end_time, slot.id)
                inserted += 1
            cfg.materialized_until = end
            s.add(cfg)
    if inserted:
        log.info("materialized config slots", extra={"inserted": inserted, "until": until.isoformat()})
    return inserted
