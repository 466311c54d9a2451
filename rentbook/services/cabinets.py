import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from rentbook.core.errors import InvalidArgument, NotFound
from rentbook.db.session import Database
from rentbook.models.cabinet import Cabinet, CabinetSchedule, CabinetScheduleOverride
from rentbook.utils.timeslots import parse_hhmm
from rentbook.utils.validators import normalize_name

logger = logging.getLogger(__name__)


def _minutes(hhmm: str) -> int:
    t = parse_hhmm(hhmm)
    return t.hour * 60 + t.minute


def validate_window(start_time: str, end_time: str, slot_duration: int) -> None:
    try:
        start, end = _minutes(start_time), _minutes(end_time)
    except ValueError as e:
        raise InvalidArgument(str(e)) from e
    if slot_duration < 1:
        raise InvalidArgument("slot_duration must be at least 1 minute")
    if end <= start:
        raise InvalidArgument("end_time must be after start_time")
    if (end - start) % slot_duration:
        raise InvalidArgument("schedule window must be a multiple of slot_duration")


class CabinetService:
    """Cabinets, their weekly schedules and per-date overrides."""

    def __init__(self, database: Database):
        self.database = database

    # -----------------------------------------------------------------------
    # Cabinets
    # -----------------------------------------------------------------------

    def create_cabinet(self, name: str, description: str = "") -> Cabinet:
        name = (name or "").strip()
        if not name:
            raise InvalidArgument("cabinet name is required")

        def _run(db: Session) -> Cabinet:
            exists = db.query(Cabinet.id).filter(func.lower(Cabinet.name) == normalize_name(name)).first()
            if exists:
                raise InvalidArgument(f"cabinet {name!r} already exists")
            cabinet = Cabinet(name=name, description=description, is_active=True)
            db.add(cabinet)
            db.flush()
            return cabinet

        return self.database.transaction(_run)

    def update_cabinet(self, cabinet_id: int, name: Optional[str] = None,
                       description: Optional[str] = None, is_active: Optional[bool] = None) -> Cabinet:
        def _run(db: Session) -> Cabinet:
            cabinet = db.get(Cabinet, cabinet_id)
            if cabinet is None:
                raise NotFound(f"cabinet {cabinet_id} not found")
            if name is not None:
                cabinet.name = name.strip()
            if description is not None:
                cabinet.description = description
            if is_active is not None:
                cabinet.is_active = is_active
            db.flush()
            return cabinet

        return self.database.transaction(_run)

    def deactivate_cabinet(self, cabinet_id: int) -> Cabinet:
        return self.update_cabinet(cabinet_id, is_active=False)

    def get_cabinet(self, cabinet_id: int) -> Cabinet:
        with self.database.session() as db:
            cabinet = db.get(Cabinet, cabinet_id)
        if cabinet is None:
            raise NotFound(f"cabinet {cabinet_id} not found")
        return cabinet

    def list_cabinets(self, active_only: bool = True) -> List[Cabinet]:
        with self.database.session() as db:
            q = db.query(Cabinet)
            if active_only:
                q = q.filter(Cabinet.is_active.is_(True))
            return q.order_by(Cabinet.id).all()

    # -----------------------------------------------------------------------
    # Weekly schedule
    # -----------------------------------------------------------------------

    def set_schedule(self, cabinet_id: int, day_of_week: int, start_time: str,
                     end_time: str, slot_duration: int = 60) -> CabinetSchedule:
        """Create the active entry for a weekday, retiring the previous one."""
        if not 1 <= day_of_week <= 7:
            raise InvalidArgument("day_of_week must be 1 (Monday) .. 7 (Sunday)")
        validate_window(start_time, end_time, slot_duration)

        def _run(db: Session) -> CabinetSchedule:
            if db.get(Cabinet, cabinet_id) is None:
                raise NotFound(f"cabinet {cabinet_id} not found")
            db.query(CabinetSchedule).filter(
                CabinetSchedule.cabinet_id == cabinet_id,
                CabinetSchedule.day_of_week == day_of_week,
                CabinetSchedule.is_active.is_(True),
            ).update({"is_active": False}, synchronize_session=False)
            schedule = CabinetSchedule(
                cabinet_id=cabinet_id,
                day_of_week=day_of_week,
                start_time=start_time,
                end_time=end_time,
                slot_duration=slot_duration,
                is_active=True,
            )
            db.add(schedule)
            db.flush()
            return schedule

        return self.database.transaction(_run)

    def set_weekly_schedule(self, cabinet_id: int, start_time: str, end_time: str,
                            slot_duration: int = 60, days=range(1, 8)) -> List[CabinetSchedule]:
        return [self.set_schedule(cabinet_id, d, start_time, end_time, slot_duration) for d in days]

    def deactivate_schedule(self, schedule_id: int) -> None:
        def _run(db: Session) -> None:
            schedule = db.get(CabinetSchedule, schedule_id)
            if schedule is None:
                raise NotFound(f"schedule {schedule_id} not found")
            schedule.is_active = False

        self.database.transaction(_run)

    def list_schedules(self, cabinet_id: int) -> List[CabinetSchedule]:
        with self.database.session() as db:
            return (
                db.query(CabinetSchedule)
                .filter(CabinetSchedule.cabinet_id == cabinet_id, CabinetSchedule.is_active.is_(True))
                .order_by(CabinetSchedule.day_of_week)
                .all()
            )

    # -----------------------------------------------------------------------
    # Overrides
    # -----------------------------------------------------------------------

    def set_override(self, cabinet_id: int, day: date, is_closed: bool = False,
                     start_time: Optional[str] = None, end_time: Optional[str] = None,
                     reason: Optional[str] = None) -> CabinetScheduleOverride:
        for value in (start_time, end_time):
            if value:
                try:
                    parse_hhmm(value)
                except ValueError as e:
                    raise InvalidArgument(str(e)) from e

        def _run(db: Session) -> CabinetScheduleOverride:
            if db.get(Cabinet, cabinet_id) is None:
                raise NotFound(f"cabinet {cabinet_id} not found")
            override = (
                db.query(CabinetScheduleOverride)
                .filter(CabinetScheduleOverride.cabinet_id == cabinet_id, CabinetScheduleOverride.date == day)
                .first()
            )
            if override is None:
                override = CabinetScheduleOverride(cabinet_id=cabinet_id, date=day)
                db.add(override)
            override.is_closed = is_closed
            override.start_time = start_time or None
            override.end_time = end_time or None
            override.reason = reason
            db.flush()
            return override

        return self.database.transaction(_run)

    def delete_override(self, cabinet_id: int, day: date) -> bool:
        def _run(db: Session) -> int:
            return (
                db.query(CabinetScheduleOverride)
                .filter(CabinetScheduleOverride.cabinet_id == cabinet_id, CabinetScheduleOverride.date == day)
                .delete(synchronize_session=False)
            )

        return self.database.transaction(_run) > 0
