"""
Reservation engine.

The only code path that mutates booking rows. Every mutation runs in one
serializable transaction that also writes the matching ``sync_queue`` row;
worker notification and event publication happen after the commit.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from rentbook.core.config import Settings
from rentbook.core.errors import (
    AlreadyFinalized,
    BookingLimitExceeded,
    ConcurrentModification,
    Forbidden,
    InvalidArgument,
    ItemNotAvailable,
    NotFound,
    OutsideBookingWindow,
    PermissionDenied,
    SlotMisaligned,
    SlotNotAvailable,
    TooLate,
    UserBlacklisted,
)
from rentbook.db.session import Database
from rentbook.models.booking import (
    DayBooking,
    HourBooking,
    ACTIVE_STATUSES,
    ALL_STATUSES,
    STATUS_APPROVED,
    STATUS_CANCELED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    STATUS_REJECTED,
    is_terminal,
    normalize_status,
)
from rentbook.models.cabinet import Cabinet
from rentbook.models.item import Item
from rentbook.models.sync_task import (
    TASK_DELETE,
    TASK_SYNC_SCHEDULE,
    TASK_UPDATE_STATUS,
    TASK_UPSERT,
)
from rentbook.schemas.booking import BookingUser, DayBookingSnapshot, HourBookingSnapshot
from rentbook.services import events as ev
from rentbook.services.availability import count_active
from rentbook.services.catalog import ItemCatalog
from rentbook.services.slots import count_overlapping, is_aligned, resolve_window
from rentbook.services.sync_queue import SyncQueue
from rentbook.services.users import UserService
from rentbook.utils.timeslots import parse_time_label
from rentbook.utils.validators import normalize_phone, parse_wire_date

logger = logging.getLogger(__name__)

ROLE_MANAGER = "manager"
ROLE_USER = "user"

KIND_DAY = "day"
KIND_HOUR = "hour"

# only managers decide these
MANAGER_ONLY_STATUSES = (STATUS_APPROVED, STATUS_REJECTED)
USER_CANCELABLE = (STATUS_PENDING, STATUS_CONFIRMED)


class SyncDispatcher(Protocol):
    def notify(self, task_id: int) -> None: ...


class ItemChecker(Protocol):
    """Answers whether an external item still has capacity on a date."""

    def has_capacity(self, db: Session, item_name: str, day: date) -> bool: ...


class LocalItemChecker:
    """Checks the local catalog inside the caller's transaction."""

    def __init__(self, catalog: ItemCatalog):
        self.catalog = catalog

    def has_capacity(self, db: Session, item_name: str, day: date) -> bool:
        item = self.catalog.get_by_name(item_name)
        if item is None:
            return False
        total = db.query(Item.total_quantity).filter(Item.id == item.id).scalar()
        return count_active(db, item.id, day) < (total or 0)


class RemoteItemChecker:
    """Asks another deployment's availability API."""

    def __init__(self, client):
        self.client = client

    def has_capacity(self, db: Session, item_name: str, day: date) -> bool:
        return self.client.get_availability(item_name, day).available


def day_payload(snapshot: DayBookingSnapshot) -> dict:
    return {
        "booking_id": snapshot.id,
        "kind": KIND_DAY,
        "booking": snapshot.model_dump(mode="json"),
        "status": snapshot.status,
    }


def hour_payload(snapshot: HourBookingSnapshot) -> dict:
    return {
        "booking_id": snapshot.id,
        "kind": KIND_HOUR,
        "booking": snapshot.model_dump(mode="json"),
        "status": snapshot.status,
    }


class ReservationEngine:
    def __init__(
        self,
        settings: Settings,
        database: Database,
        catalog: ItemCatalog,
        queue: SyncQueue,
        users: UserService,
        events: Optional[ev.EventBus] = None,
        item_checker: Optional[ItemChecker] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = settings.booking
        self.database = database
        self.catalog = catalog
        self.queue = queue
        self.users = users
        self.events = events or ev.EventBus()
        self.item_checker = item_checker or LocalItemChecker(catalog)
        self.clock = clock
        self._dispatcher: Optional[SyncDispatcher] = None

    def attach_dispatcher(self, dispatcher: Optional[SyncDispatcher]) -> None:
        self._dispatcher = dispatcher

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _after_commit(self, task_ids: List[int], events: List[ev.Event]) -> None:
        if self._dispatcher is not None:
            for task_id in task_ids:
                try:
                    self._dispatcher.notify(task_id)
                except Exception:
                    # the poller picks the row up anyway
                    logger.exception("Failed to notify sync dispatcher about task %d.", task_id)
        for event in events:
            self.events.publish(event)

    def _check_user(self, db: Session, user_id: int) -> None:
        if self.users.is_blacklisted(user_id, db):
            raise UserBlacklisted(f"user {user_id} is blacklisted")
        limit = self.config.max_active_per_user
        if limit <= 0:
            return
        now = self.clock()
        day_count = (
            db.query(func.count(DayBooking.id))
            .filter(
                DayBooking.user_id == user_id,
                DayBooking.status.in_(ACTIVE_STATUSES),
                DayBooking.date >= now.date(),
            )
            .scalar()
        )
        hour_count = (
            db.query(func.count(HourBooking.id))
            .filter(
                HourBooking.user_id == user_id,
                HourBooking.status.in_(ACTIVE_STATUSES),
                HourBooking.end_time > now,
            )
            .scalar()
        )
        if (day_count or 0) + (hour_count or 0) >= limit:
            raise BookingLimitExceeded(f"at most {limit} active bookings per user")

    @staticmethod
    def _parse_day(day) -> date:
        if isinstance(day, datetime):
            return day.date()
        if isinstance(day, date):
            return day
        try:
            return parse_wire_date(day)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e

    @staticmethod
    def _normalize_phone(phone: str, required: bool) -> str:
        if not phone:
            if required:
                raise InvalidArgument("phone is required")
            return ""
        try:
            return normalize_phone(phone)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e

    def _check_day_window(self, day: date) -> None:
        now = self.clock()
        today = now.date()
        if day < today:
            raise OutsideBookingWindow("date is in the past")
        if day > today + timedelta(days=self.config.max_booking_days):
            raise OutsideBookingWindow(f"date is more than {self.config.max_booking_days} days ahead")
        if self.config.day_min_advance_minutes > 0:
            earliest = now + timedelta(minutes=self.config.day_min_advance_minutes)
            if datetime.combine(day, time.min) < earliest:
                raise OutsideBookingWindow(
                    f"bookings must be made {self.config.day_min_advance_minutes} minutes in advance"
                )

    def _check_hour_window(self, start: datetime) -> None:
        now = self.clock()
        if start < now + timedelta(minutes=self.config.min_advance_minutes):
            raise OutsideBookingWindow(
                f"bookings must be made {self.config.min_advance_minutes} minutes in advance"
            )
        if start > now + timedelta(days=self.config.hour_max_advance_days):
            raise OutsideBookingWindow(f"start is more than {self.config.hour_max_advance_days} days ahead")

    @staticmethod
    def _status_event(kind: str, booking_id: int, status: str, **data) -> List[ev.Event]:
        event_type = ev.STATUS_EVENTS.get(status)
        if event_type is None:
            return []
        return [ev.Event(type=event_type, booking_id=booking_id, kind=kind, data=dict(status=status, **data))]

    # -----------------------------------------------------------------------
    # Day bookings
    # -----------------------------------------------------------------------

    def create_day_booking(self, user: BookingUser, item_name: str, day, comment: str = "") -> DayBookingSnapshot:
        day = self._parse_day(day)
        item = self.catalog.get_by_name(item_name)
        if item is None:
            raise NotFound(f"item {(item_name or '').strip()!r} not found")
        self._check_day_window(day)
        phone = self._normalize_phone(user.phone, required=False)

        def _run(db: Session) -> Tuple[DayBookingSnapshot, int]:
            self._check_user(db, user.id)
            row = db.get(Item, item.id)
            if row is None or not row.is_active:
                raise NotFound(f"item {item.name!r} not found")
            booked = count_active(db, row.id, day)
            if booked >= row.total_quantity:
                raise ItemNotAvailable(f"{row.name} is fully booked on {day.isoformat()}")

            now = self.clock()
            booking = DayBooking(
                user_id=user.id,
                user_name=user.name,
                user_nickname=user.nickname,
                phone=phone,
                item_id=row.id,
                item_name=row.name,
                date=day,
                status=STATUS_PENDING,
                comment=comment or "",
                version=1,
                created_at=now,
                updated_at=now,
            )
            db.add(booking)
            db.flush()
            snapshot = DayBookingSnapshot.model_validate(booking)
            task = self.queue.enqueue(db, TASK_UPSERT, booking.id, day_payload(snapshot))
            return snapshot, task.id

        snapshot, task_id = self.database.transaction(_run)
        logger.info("Day booking %d created: item=%s date=%s user=%d.", snapshot.id, snapshot.item_name,
                    snapshot.date, snapshot.user_id)
        self._after_commit(
            [task_id],
            [ev.Event(type=ev.BOOKING_CREATED, booking_id=snapshot.id, kind=KIND_DAY,
                      data={"item_name": snapshot.item_name, "date": snapshot.date.isoformat()})],
        )
        return snapshot

    def change_status(self, booking_id: int, new_status: str, actor_role: str,
                      actor_id: Optional[int] = None, expected_version: Optional[int] = None) -> DayBookingSnapshot:
        new_status = normalize_status(new_status)
        if new_status not in ALL_STATUSES:
            raise InvalidArgument(f"unknown status {new_status!r}")
        if actor_role not in (ROLE_MANAGER, ROLE_USER):
            raise PermissionDenied(f"unknown role {actor_role!r}")
        if actor_role != ROLE_MANAGER and new_status in MANAGER_ONLY_STATUSES:
            raise PermissionDenied(f"only managers may set {new_status}")

        def _run(db: Session) -> Tuple[DayBookingSnapshot, int, str]:
            booking = db.get(DayBooking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            current = normalize_status(booking.status)

            if actor_role == ROLE_USER:
                if new_status != STATUS_CANCELED:
                    raise PermissionDenied("users may only cancel bookings")
                if booking.user_id != actor_id:
                    raise Forbidden("booking belongs to another user")
                if booking.date <= self.clock().date():
                    raise TooLate("booking date already reached")
                if is_terminal(current) or current == STATUS_COMPLETED:
                    raise AlreadyFinalized(f"booking is already {current}")
                if current not in USER_CANCELABLE:
                    raise Forbidden(f"{current} bookings can only be changed by a manager")
            elif new_status in ACTIVE_STATUSES and current not in ACTIVE_STATUSES:
                # reactivation takes a unit of capacity back
                total = db.query(Item.total_quantity).filter(Item.id == booking.item_id).scalar() or 0
                if count_active(db, booking.item_id, booking.date, exclude_id=booking.id) >= total:
                    raise ItemNotAvailable(f"{booking.item_name} is fully booked on {booking.date.isoformat()}")

            version = booking.version if expected_version is None else expected_version
            updated = (
                db.query(DayBooking)
                .filter(DayBooking.id == booking_id, DayBooking.version == version)
                .update(
                    {
                        "status": new_status,
                        "version": DayBooking.version + 1,
                        "updated_at": self.clock(),
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                raise ConcurrentModification(f"booking {booking_id} was modified concurrently")
            db.refresh(booking)
            snapshot = DayBookingSnapshot.model_validate(booking)
            task = self.queue.enqueue(db, TASK_UPDATE_STATUS, booking_id, day_payload(snapshot))
            return snapshot, task.id, current

        snapshot, task_id, previous = self.database.transaction(_run)
        logger.info("Day booking %d: %s -> %s by %s.", booking_id, previous, new_status, actor_role)
        events = [] if previous == new_status else self._status_event(KIND_DAY, booking_id, new_status)
        self._after_commit([task_id], events)
        return snapshot

    def change_item(self, booking_id: int, new_item, expected_version: int,
                    new_status: Optional[str] = None) -> DayBookingSnapshot:
        """Move a booking to another item, given by id or name."""
        if isinstance(new_item, int):
            item = self.catalog.get_by_id(new_item)
        else:
            item = self.catalog.get_by_name(new_item)
        if item is None:
            raise NotFound(f"item {str(new_item).strip()!r} not found")
        if new_status is not None:
            new_status = normalize_status(new_status)
            if new_status not in ALL_STATUSES:
                raise InvalidArgument(f"unknown status {new_status!r}")

        def _run(db: Session) -> Tuple[DayBookingSnapshot, int, str, str]:
            booking = db.get(DayBooking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            current = normalize_status(booking.status)
            if is_terminal(current):
                raise AlreadyFinalized(f"booking is already {current}")
            row = db.get(Item, item.id)
            if row is None or not row.is_active:
                raise NotFound(f"item {item.name!r} not found")
            status = new_status or current
            if status in ACTIVE_STATUSES:
                if count_active(db, row.id, booking.date, exclude_id=booking.id) >= row.total_quantity:
                    raise ItemNotAvailable(f"{row.name} is fully booked on {booking.date.isoformat()}")

            previous_item = booking.item_name
            updated = (
                db.query(DayBooking)
                .filter(DayBooking.id == booking_id, DayBooking.version == expected_version)
                .update(
                    {
                        "item_id": row.id,
                        "item_name": row.name,
                        "status": status,
                        "version": DayBooking.version + 1,
                        "updated_at": self.clock(),
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                raise ConcurrentModification(f"booking {booking_id} was modified concurrently")
            db.refresh(booking)
            snapshot = DayBookingSnapshot.model_validate(booking)
            task = self.queue.enqueue(db, TASK_UPSERT, booking_id, day_payload(snapshot))
            return snapshot, task.id, previous_item, current

        snapshot, task_id, previous_item, previous_status = self.database.transaction(_run)
        logger.info("Day booking %d moved from %s to %s.", booking_id, previous_item, snapshot.item_name)
        events = [
            ev.Event(type=ev.BOOKING_ITEM_CHANGED, booking_id=booking_id, kind=KIND_DAY,
                     data={"from": previous_item, "to": snapshot.item_name})
        ]
        if snapshot.status != previous_status:
            events += self._status_event(KIND_DAY, booking_id, snapshot.status)
        self._after_commit([task_id], events)
        return snapshot

    def delete_day_booking(self, booking_id: int) -> None:
        """Hard-delete a day booking (manager clean-up); the sheet row is removed too."""

        def _run(db: Session) -> int:
            booking = db.get(DayBooking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            db.delete(booking)
            db.flush()
            task = self.queue.enqueue(db, TASK_DELETE, booking_id, {"booking_id": booking_id, "kind": KIND_DAY})
            return task.id

        task_id = self.database.transaction(_run)
        logger.info("Day booking %d deleted.", booking_id)
        self._after_commit([task_id], [])

    def get_day_booking(self, booking_id: int) -> DayBookingSnapshot:
        with self.database.session() as db:
            booking = db.get(DayBooking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            return DayBookingSnapshot.model_validate(booking)

    def list_user_bookings(self, user_id: int, active_only: bool = True) -> List[DayBookingSnapshot]:
        with self.database.session() as db:
            q = db.query(DayBooking).filter(DayBooking.user_id == user_id)
            if active_only:
                q = q.filter(DayBooking.status.in_(ACTIVE_STATUSES), DayBooking.date >= self.clock().date())
            rows = q.order_by(DayBooking.date, DayBooking.id).all()
            return [DayBookingSnapshot.model_validate(r) for r in rows]

    def list_day_bookings(self, start: date, end: date) -> List[DayBookingSnapshot]:
        with self.database.session() as db:
            rows = (
                db.query(DayBooking)
                .filter(DayBooking.date >= start, DayBooking.date <= end)
                .order_by(DayBooking.date, DayBooking.id)
                .all()
            )
            return [DayBookingSnapshot.model_validate(r) for r in rows]

    # -----------------------------------------------------------------------
    # Hour bookings
    # -----------------------------------------------------------------------

    def create_hour_booking(self, user: BookingUser, cabinet_id: int, day, time_label: str,
                            client_name: str = "", client_phone: str = "",
                            external_item_name: Optional[str] = None, comment: str = "") -> HourBookingSnapshot:
        day = self._parse_day(day)
        try:
            start_t, end_t = parse_time_label(time_label)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e
        phone = self._normalize_phone(client_phone or user.phone, required=True)
        client_name = (client_name or user.name or "").strip()
        start = datetime.combine(day, start_t)
        end = datetime.combine(day, end_t)
        self._check_hour_window(start)

        def _run(db: Session) -> Tuple[HourBookingSnapshot, int]:
            cabinet = db.get(Cabinet, cabinet_id)
            if cabinet is None or not cabinet.is_active:
                raise NotFound(f"cabinet {cabinet_id} not found")
            self._check_user(db, user.id)

            window = resolve_window(db, cabinet_id, day)
            if window is None:
                raise SlotMisaligned(f"cabinet {cabinet.name} has no slots on {day.isoformat()}")
            if not is_aligned(window, start, end):
                raise SlotMisaligned(f"{time_label} is not a bookable slot")
            if count_overlapping(db, cabinet_id, start, end) > 0:
                raise SlotNotAvailable(f"{time_label} is already booked")

            if external_item_name:
                try:
                    ok = self.item_checker.has_capacity(db, external_item_name, day)
                except Exception as e:
                    logger.warning("Item availability check failed for %s: %s", external_item_name, e)
                    raise ItemNotAvailable(f"could not confirm {external_item_name} is available") from e
                if not ok:
                    raise ItemNotAvailable(f"{external_item_name} is not available on {day.isoformat()}")

            now = self.clock()
            booking = HourBooking(
                user_id=user.id,
                cabinet_id=cabinet_id,
                item_name=external_item_name or None,
                client_name=client_name,
                client_phone=phone,
                start_time=start,
                end_time=end,
                status=STATUS_PENDING,
                comment=comment or "",
                created_at=now,
                updated_at=now,
            )
            db.add(booking)
            db.flush()
            snapshot = HourBookingSnapshot.model_validate(booking)
            task = self.queue.enqueue(db, TASK_UPSERT, booking.id, hour_payload(snapshot))
            return snapshot, task.id

        snapshot, task_id = self.database.transaction(_run)
        logger.info("Hour booking %d created: cabinet=%d %s %s user=%d.", snapshot.id, cabinet_id,
                    day.isoformat(), time_label, user.id)
        self._after_commit(
            [task_id],
            [ev.Event(type=ev.BOOKING_CREATED, booking_id=snapshot.id, kind=KIND_HOUR,
                      data={"cabinet_id": cabinet_id, "start": start.isoformat()})],
        )
        return snapshot

    def change_hour_status(self, booking_id: int, new_status: str, actor_role: str) -> HourBookingSnapshot:
        new_status = normalize_status(new_status)
        if new_status not in ALL_STATUSES:
            raise InvalidArgument(f"unknown status {new_status!r}")
        if actor_role != ROLE_MANAGER:
            raise PermissionDenied("only managers may change hour booking status")

        def _run(db: Session) -> Tuple[HourBookingSnapshot, int, str]:
            booking = db.get(HourBooking, booking_id)
            if booking is None:
                raise NotFound(f"hour booking {booking_id} not found")
            current = normalize_status(booking.status)
            if new_status in ACTIVE_STATUSES and current not in ACTIVE_STATUSES:
                if count_overlapping(db, booking.cabinet_id, booking.start_time, booking.end_time,
                                     exclude_id=booking.id):
                    raise SlotNotAvailable("slot has been taken since")
            booking.status = new_status
            booking.updated_at = self.clock()
            db.flush()
            snapshot = HourBookingSnapshot.model_validate(booking)
            task = self.queue.enqueue(db, TASK_UPDATE_STATUS, booking_id, hour_payload(snapshot))
            return snapshot, task.id, current

        snapshot, task_id, previous = self.database.transaction(_run)
        logger.info("Hour booking %d: %s -> %s.", booking_id, previous, new_status)
        events = [] if previous == new_status else self._status_event(KIND_HOUR, booking_id, new_status)
        self._after_commit([task_id], events)
        return snapshot

    def cancel_as_user(self, booking_id: int, user_id: int) -> HourBookingSnapshot:
        def _run(db: Session) -> Tuple[HourBookingSnapshot, int]:
            booking = db.get(HourBooking, booking_id)
            if booking is None:
                raise NotFound(f"hour booking {booking_id} not found")
            if booking.user_id != user_id:
                raise Forbidden("booking belongs to another user")
            if booking.start_time <= self.clock():
                raise TooLate("booking has already started")
            if is_terminal(booking.status):
                raise AlreadyFinalized(f"booking is already {normalize_status(booking.status)}")
            booking.status = STATUS_CANCELED
            booking.updated_at = self.clock()
            db.flush()
            snapshot = HourBookingSnapshot.model_validate(booking)
            task = self.queue.enqueue(db, TASK_UPDATE_STATUS, booking_id, hour_payload(snapshot))
            return snapshot, task.id

        snapshot, task_id = self.database.transaction(_run)
        logger.info("Hour booking %d canceled by user %d.", booking_id, user_id)
        self._after_commit([task_id], self._status_event(KIND_HOUR, booking_id, STATUS_CANCELED))
        return snapshot

    def get_hour_booking(self, booking_id: int) -> HourBookingSnapshot:
        with self.database.session() as db:
            booking = db.get(HourBooking, booking_id)
            if booking is None:
                raise NotFound(f"hour booking {booking_id} not found")
            return HourBookingSnapshot.model_validate(booking)

    def list_user_hour_bookings(self, user_id: int, active_only: bool = True) -> List[HourBookingSnapshot]:
        with self.database.session() as db:
            q = db.query(HourBooking).filter(HourBooking.user_id == user_id)
            if active_only:
                q = q.filter(HourBooking.status.in_(ACTIVE_STATUSES), HourBooking.end_time > self.clock())
            rows = q.order_by(HourBooking.start_time).all()
            return [HourBookingSnapshot.model_validate(r) for r in rows]

    # -----------------------------------------------------------------------
    # Spreadsheet schedule
    # -----------------------------------------------------------------------

    def enqueue_schedule_sync(self, start: Optional[date] = None, end: Optional[date] = None) -> int:
        """Ask the worker to re-render the schedule grid; defaults to one month back, two ahead."""
        today = self.clock().date()
        start = start or today - timedelta(days=30)
        end = end or today + timedelta(days=60)
        if end < start:
            raise InvalidArgument("end must not be before start")

        def _run(db: Session) -> int:
            task = self.queue.enqueue(
                db, TASK_SYNC_SCHEDULE, 0, {"start": start.isoformat(), "end": end.isoformat()}
            )
            return task.id

        task_id = self.database.transaction(_run)
        self._after_commit([task_id], [])
        return task_id
