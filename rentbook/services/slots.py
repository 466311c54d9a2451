from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from rentbook.core.errors import NotFound
from rentbook.db.session import Database
from rentbook.models.booking import HourBooking, ACTIVE_STATUSES
from rentbook.models.cabinet import Cabinet, CabinetSchedule, CabinetScheduleOverride
from rentbook.schemas.slot import ScheduleWindow, TimeSlot
from rentbook.utils.timeslots import combine, iso_weekday


def resolve_window(db: Session, cabinet_id: int, day: date) -> Optional[ScheduleWindow]:
    """
    Bookable window of a cabinet on a date.

    The active weekly row for the weekday is the base; an override for the
    date either closes the day or replaces the start and/or end. Returns
    None when there is nothing to book.
    """
    schedule = (
        db.query(CabinetSchedule)
        .filter(
            CabinetSchedule.cabinet_id == cabinet_id,
            CabinetSchedule.day_of_week == iso_weekday(day),
            CabinetSchedule.is_active.is_(True),
        )
        .order_by(CabinetSchedule.id.desc())
        .first()
    )
    if schedule is None:
        return None

    start, end = schedule.start_time, schedule.end_time
    override = (
        db.query(CabinetScheduleOverride)
        .filter(CabinetScheduleOverride.cabinet_id == cabinet_id, CabinetScheduleOverride.date == day)
        .first()
    )
    if override is not None:
        if override.is_closed:
            return None
        if override.start_time:
            start = override.start_time
        if override.end_time:
            end = override.end_time

    window_start, window_end = combine(day, start), combine(day, end)
    if window_end <= window_start or schedule.slot_duration < 1:
        return None
    return ScheduleWindow(start=window_start, end=window_end, slot_duration=schedule.slot_duration)


def iter_intervals(window: ScheduleWindow):
    step = timedelta(minutes=window.slot_duration)
    cursor = window.start
    while cursor + step <= window.end:
        yield cursor, cursor + step
        cursor += step


def is_aligned(window: ScheduleWindow, start: datetime, end: datetime) -> bool:
    step = timedelta(minutes=window.slot_duration)
    if end - start != step:
        return False
    if start < window.start or end > window.end:
        return False
    return (start - window.start) % step == timedelta(0)


def count_overlapping(db: Session, cabinet_id: int, start: datetime, end: datetime,
                      exclude_id: Optional[int] = None) -> int:
    q = db.query(HourBooking).filter(
        HourBooking.cabinet_id == cabinet_id,
        HourBooking.status.in_(ACTIVE_STATUSES),
        HourBooking.start_time < end,
        HourBooking.end_time > start,
    )
    if exclude_id is not None:
        q = q.filter(HourBooking.id != exclude_id)
    return q.count()


class SlotGenerator:
    def __init__(self, database: Database):
        self.database = database

    def get_available_slots(self, cabinet_id: int, day: date) -> List[TimeSlot]:
        with self.database.session() as db:
            if db.get(Cabinet, cabinet_id) is None:
                raise NotFound(f"cabinet {cabinet_id} not found")
            window = resolve_window(db, cabinet_id, day)
            if window is None:
                return []
            busy = (
                db.query(HourBooking.start_time, HourBooking.end_time)
                .filter(
                    HourBooking.cabinet_id == cabinet_id,
                    HourBooking.status.in_(ACTIVE_STATUSES),
                    HourBooking.start_time < window.end,
                    HourBooking.end_time > window.start,
                )
                .all()
            )

        slots = []
        for start, end in iter_intervals(window):
            taken = any(b_start < end and b_end > start for b_start, b_end in busy)
            slots.append(TimeSlot(start_time=start, end_time=end, available=not taken))
        return slots
