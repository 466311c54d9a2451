"""
Tests for the reservation engine: capacity, status transitions, optimistic
locking and the sync task written alongside every mutation.
"""

import threading
from datetime import date, datetime

import pytest

from conftest import make_user
from rentbook.core.errors import (
    AlreadyFinalized,
    BookingLimitExceeded,
    ConcurrentModification,
    Forbidden,
    InvalidArgument,
    ItemNotAvailable,
    NotAvailable,
    NotFound,
    OutsideBookingWindow,
    PermissionDenied,
    TooLate,
    UserBlacklisted,
)
from rentbook.models.booking import DayBooking
from rentbook.models.sync_task import SyncTask
from rentbook.services import events as ev
from rentbook.services.reservations import ROLE_MANAGER, ROLE_USER


def _tasks(services, booking_id=None):
    with services.database.session() as db:
        q = db.query(SyncTask)
        if booking_id is not None:
            q = q.filter(SyncTask.booking_id == booking_id)
        return q.order_by(SyncTask.id).all()


class TestCreateDayBooking:

    def test_capacity_saturates(self, services, engine, reader):
        for user_id in (1, 2):
            b = engine.create_day_booking(make_user(user_id), "camera", "2025-12-01")
            engine.change_status(b.id, "confirmed", ROLE_MANAGER)

        result = reader.get_availability("camera", "2025-12-01")
        assert result.available is False
        assert result.booked_count == 2
        assert result.total == 2

        with pytest.raises(ItemNotAvailable):
            engine.create_day_booking(make_user(3), "camera", "2025-12-01")

    def test_new_booking_is_pending_version_one(self, engine):
        b = engine.create_day_booking(make_user(5, "Anna"), "  Camera ", date(2025, 12, 3), "studio")
        assert b.status == "pending"
        assert b.version == 1
        assert b.item_name == "camera"
        assert b.user_name == "Anna"
        assert b.comment == "studio"

    def test_enqueues_one_upsert_with_snapshot(self, services, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        tasks = _tasks(services, b.id)
        assert len(tasks) == 1
        assert tasks[0].task_type == "upsert"
        assert tasks[0].status == "pending"
        assert '"booking_id": %d' % b.id in tasks[0].payload

    def test_unknown_item(self, engine):
        with pytest.raises(NotFound):
            engine.create_day_booking(make_user(5), "drone", "2025-12-03")

    def test_inactive_item(self, services, engine):
        services.catalog.deactivate_item(3)
        with pytest.raises(NotFound):
            engine.create_day_booking(make_user(5), "tripod", "2025-12-03")

    def test_past_date(self, engine):
        with pytest.raises(OutsideBookingWindow):
            engine.create_day_booking(make_user(5), "lens", "2025-11-19")

    def test_today_is_allowed(self, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-11-20")
        assert b.date == date(2025, 11, 20)

    def test_beyond_max_days(self, engine):
        with pytest.raises(OutsideBookingWindow):
            engine.create_day_booking(make_user(5), "lens", "2026-11-21")

    def test_bad_date(self, engine):
        with pytest.raises(InvalidArgument):
            engine.create_day_booking(make_user(5), "lens", "01.12.2025")

    def test_blacklisted_user(self, services, engine):
        services.settings.blacklist.append(66)
        with pytest.raises(UserBlacklisted):
            engine.create_day_booking(make_user(66), "lens", "2025-12-03")

    def test_blacklisted_in_users_table(self, services, engine):
        services.users.get_or_create_user(77, "bad")
        services.users.set_blacklisted(77, True)
        with pytest.raises(PermissionDenied):
            engine.create_day_booking(make_user(77), "lens", "2025-12-03")

    def test_max_active_per_user(self, services, engine):
        services.settings.booking.max_active_per_user = 1
        engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        with pytest.raises(BookingLimitExceeded):
            engine.create_day_booking(make_user(5), "lens", "2025-12-04")

    def test_canceled_bookings_free_capacity(self, engine, reader):
        b = engine.create_day_booking(make_user(1), "tripod", "2025-12-05")
        with pytest.raises(NotAvailable):
            engine.create_day_booking(make_user(2), "tripod", "2025-12-05")
        engine.change_status(b.id, "canceled", ROLE_MANAGER)
        engine.create_day_booking(make_user(2), "tripod", "2025-12-05")
        assert reader.get_booked_count(3, date(2025, 12, 5)) == 1

    def test_race_for_last_unit(self, services, engine, reader):
        results = []
        lock = threading.Lock()
        start = threading.Barrier(10)

        def attempt(user_id):
            start.wait()
            try:
                engine.create_day_booking(make_user(user_id), "tripod", "2026-01-05")
                outcome = "ok"
            except NotAvailable:
                outcome = "full"
            except Exception as e:
                outcome = repr(e)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt, args=(100 + i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(60)

        assert sorted(results) == ["full"] * 9 + ["ok"]
        assert reader.get_booked_count(3, date(2026, 1, 5)) == 1


class TestChangeStatus:

    def test_manager_approves_and_version_increments(self, services, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        approved = engine.change_status(b.id, "approved", ROLE_MANAGER, expected_version=1)
        assert approved.status == "approved"
        assert approved.version == 2
        assert [t.task_type for t in _tasks(services, b.id)] == ["upsert", "update_status"]

    def test_stale_version(self, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        engine.change_status(b.id, "confirmed", ROLE_MANAGER, expected_version=1)
        with pytest.raises(ConcurrentModification):
            engine.change_status(b.id, "approved", ROLE_MANAGER, expected_version=1)
        assert engine.get_day_booking(b.id).status == "confirmed"

    def test_user_cannot_approve(self, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        with pytest.raises(PermissionDenied):
            engine.change_status(b.id, "approved", ROLE_USER, actor_id=5)

    def test_owner_cancels(self, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        canceled = engine.change_status(b.id, "canceled", ROLE_USER, actor_id=5)
        assert canceled.status == "canceled"

    def test_other_user_cannot_cancel(self, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        with pytest.raises(Forbidden):
            engine.change_status(b.id, "canceled", ROLE_USER, actor_id=6)

    def test_user_cancel_too_late(self, engine, clock):
        b = engine.create_day_booking(make_user(5), "lens", "2025-11-21")
        clock.now = datetime(2025, 11, 21, 8, 0)
        with pytest.raises(TooLate):
            engine.change_status(b.id, "canceled", ROLE_USER, actor_id=5)

    def test_user_cancel_twice(self, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        engine.change_status(b.id, "canceled", ROLE_USER, actor_id=5)
        with pytest.raises(AlreadyFinalized):
            engine.change_status(b.id, "canceled", ROLE_USER, actor_id=5)

    def test_legacy_spelling_is_terminal(self, services, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        with services.database.session() as db:
            db.query(DayBooking).filter(DayBooking.id == b.id).update({"status": "cancelled"})
            db.commit()
        with pytest.raises(AlreadyFinalized):
            engine.change_status(b.id, "canceled", ROLE_USER, actor_id=5)

    def test_reactivation_rechecks_capacity(self, engine):
        first = engine.create_day_booking(make_user(1), "tripod", "2025-12-05")
        engine.change_status(first.id, "rejected", ROLE_MANAGER)
        engine.create_day_booking(make_user(2), "tripod", "2025-12-05")
        with pytest.raises(ItemNotAvailable):
            engine.change_status(first.id, "pending", ROLE_MANAGER)

    def test_unknown_booking(self, engine):
        with pytest.raises(NotFound):
            engine.change_status(999, "confirmed", ROLE_MANAGER)

    def test_unknown_status(self, engine):
        b = engine.create_day_booking(make_user(5), "lens", "2025-12-03")
        with pytest.raises(InvalidArgument):
            engine.change_status(b.id, "archived", ROLE_MANAGER)


class TestChangeItem:

    def test_moves_booking_and_confirms(self, services, engine, reader):
        b = engine.create_day_booking(make_user(5), "camera", "2025-12-03")
        moved = engine.change_item(b.id, "lens", expected_version=1, new_status="confirmed")
        assert moved.item_name == "lens"
        assert moved.item_id == 2
        assert moved.status == "confirmed"
        assert moved.version == 2
        assert reader.get_booked_count(1, date(2025, 12, 3)) == 0
        assert reader.get_booked_count(2, date(2025, 12, 3)) == 1
        assert [t.task_type for t in _tasks(services, b.id)] == ["upsert", "upsert"]

    def test_target_full(self, engine):
        engine.create_day_booking(make_user(1), "tripod", "2025-12-03")
        b = engine.create_day_booking(make_user(2), "camera", "2025-12-03")
        with pytest.raises(ItemNotAvailable):
            engine.change_item(b.id, "tripod", expected_version=1)

    def test_stale_version(self, engine):
        b = engine.create_day_booking(make_user(5), "camera", "2025-12-03")
        with pytest.raises(ConcurrentModification):
            engine.change_item(b.id, "lens", expected_version=7)

    def test_target_by_id(self, engine):
        b = engine.create_day_booking(make_user(5), "camera", "2025-12-03")
        assert engine.change_item(b.id, 3, expected_version=1).item_name == "tripod"

    def test_inactive_target(self, services, engine):
        b = engine.create_day_booking(make_user(5), "camera", "2025-12-03")
        services.catalog.deactivate_item(2)
        with pytest.raises(NotFound):
            engine.change_item(b.id, 2, expected_version=1)


class TestEvents:

    def test_published_after_commit(self, services, engine):
        seen = []
        for event_type in (ev.BOOKING_CREATED, ev.BOOKING_CONFIRMED, ev.BOOKING_ITEM_CHANGED):
            services.events.subscribe(event_type, lambda e: seen.append((e.type, e.booking_id)))

        b = engine.create_day_booking(make_user(5), "camera", "2025-12-03")
        engine.change_status(b.id, "confirmed", ROLE_MANAGER)
        engine.change_item(b.id, "lens", expected_version=2)

        assert seen == [
            (ev.BOOKING_CREATED, b.id),
            (ev.BOOKING_CONFIRMED, b.id),
            (ev.BOOKING_ITEM_CHANGED, b.id),
        ]

    def test_failing_handler_does_not_break_booking(self, services, engine):
        def boom(event):
            raise RuntimeError("handler bug")

        services.events.subscribe(ev.BOOKING_CREATED, boom)
        b = engine.create_day_booking(make_user(5), "camera", "2025-12-03")
        assert engine.get_day_booking(b.id).status == "pending"


class TestScheduleSync:

    def test_default_range(self, services, engine):
        task_id = engine.enqueue_schedule_sync()
        task = services.queue.get(task_id)
        assert task.task_type == "sync_schedule"
        assert task.booking_id == 0
        assert '"start": "2025-10-21"' in task.payload
        assert '"end": "2026-01-19"' in task.payload

    def test_delete_enqueues_delete(self, services, engine):
        b = engine.create_day_booking(make_user(5), "camera", "2025-12-03")
        engine.delete_day_booking(b.id)
        assert [t.task_type for t in _tasks(services, b.id)] == ["upsert", "delete"]
        with pytest.raises(NotFound):
            engine.get_day_booking(b.id)


class TestUserBookings:

    def test_active_upcoming_only(self, engine, clock):
        late = engine.create_day_booking(make_user(5), "lens", "2025-12-05")
        soon = engine.create_day_booking(make_user(5), "camera", "2025-11-21")
        dropped = engine.create_day_booking(make_user(5), "tripod", "2025-12-01")
        engine.create_day_booking(make_user(6), "lens", "2025-12-01")
        engine.change_status(dropped.id, "canceled", ROLE_USER, actor_id=5)

        assert [b.id for b in engine.list_user_bookings(5)] == [soon.id, late.id]
        assert [b.id for b in engine.list_user_bookings(5, active_only=False)] == [soon.id, dropped.id, late.id]

        clock.now = datetime(2025, 11, 22, 9, 0)
        assert [b.id for b in engine.list_user_bookings(5)] == [late.id]

    def test_unknown_user_has_none(self, engine):
        assert engine.list_user_bookings(404) == []
