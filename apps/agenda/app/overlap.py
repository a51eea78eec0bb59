"""
Overlap detection for a doctor's slots.

Two slots conflict when their half-open intervals intersect:
``[s1, e1)`` and ``[s2, e2)`` overlap iff ``s1 < e2 and s2 < e1``. A slot
ending at 09:30 and one starting at 09:30 do not overlap. The check is global
per doctor, independent of specialty, mode, origin or status.
"""

from bisect import bisect_left
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Availability


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    return s1 < e2 and s2 < e1


def find_overlapping(
    s: Session,
    doctor_id: str,
    start: datetime,
    end: datetime,
    exclude_ids: Iterable[str] = (),
) -> List[Availability]:
    stmt = select(Availability).where(
        Availability.doctor_id == doctor_id,
        Availability.start_time < end,
        Availability.end_time > start,
    )
    excluded = list(exclude_ids)
    if excluded:
        stmt = stmt.where(Availability.id.not_in(excluded))
    return s.execute(stmt.order_by(Availability.start_time.asc())).scalars().all()


class IntervalIndex:
    """
    Sorted, non-overlapping intervals of one doctor.

    Because stored slots never overlap, sorting by start also sorts by end,
    so only the predecessor of a candidate has to be checked.
    """

    def __init__(self, intervals: Iterable[Tuple[datetime, datetime, Optional[str]]] = ()):
        self._items: List[Tuple[datetime, datetime, Optional[str]]] = sorted(intervals, key=lambda x: (x[0], x[1]))
        self._starts: List[datetime] = [i[0] for i in self._items]

    @classmethod
    def for_doctor(cls, s: Session, doctor_id: str, start: datetime, end: datetime, exclude_ids: Sequence[str] = ()):
        rows = find_overlapping(s, doctor_id, start, end, exclude_ids)
        return cls((r.start_time, r.end_time, r.id) for r in rows)

    def __len__(self) -> int:
        return len(self._items)

    def conflict(self, start: datetime, end: datetime) -> Optional[Tuple[datetime, datetime, Optional[str]]]:
        i = bisect_left(self._starts, end)
        if i == 0:
            return None
        item = self._items[i - 1]  # latest start before ``end``
        if intervals_overlap(start, end, item[0], item[1]):
            return item
        return None

    def add(self, start: datetime, end: datetime, ref: Optional[str] = None) -> None:
        idx = bisect_left(self._starts, start)
        self._items.insert(idx, (start, end, ref))
        self._starts.insert(idx, start)
