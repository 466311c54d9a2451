"""
Tests for cabinet schedules, slot generation and hour bookings.
"""

from datetime import date, datetime

import pytest

from conftest import make_user
from rentbook.core.errors import (
    AlreadyFinalized,
    Forbidden,
    InvalidArgument,
    ItemNotAvailable,
    NotFound,
    OutsideBookingWindow,
    PermissionDenied,
    SlotMisaligned,
    SlotNotAvailable,
    TooLate,
)
from rentbook.services.reservations import ROLE_MANAGER

MONDAY = date(2026, 1, 5)
TUESDAY = date(2026, 1, 6)


@pytest.fixture(autouse=True)
def new_year(clock):
    clock.now = datetime(2026, 1, 1, 9, 0)


def _labels(slots):
    return [(s.label, s.available) for s in slots]


class TestSlotGenerator:

    def test_weekly_schedule(self, services, cabinet):
        slots = services.slots.get_available_slots(cabinet.id, MONDAY)
        assert _labels(slots) == [
            ("09:00-10:00", True),
            ("10:00-11:00", True),
            ("11:00-12:00", True),
        ]

    def test_booked_slot_is_busy(self, services, engine, cabinet):
        engine.create_hour_booking(make_user(123), cabinet.id, MONDAY, "10:00-11:00", "Ivan", "+79991234567")
        slots = services.slots.get_available_slots(cabinet.id, MONDAY)
        assert _labels(slots) == [
            ("09:00-10:00", True),
            ("10:00-11:00", False),
            ("11:00-12:00", True),
        ]

    def test_canceled_booking_frees_slot(self, services, engine, cabinet):
        b = engine.create_hour_booking(make_user(123), cabinet.id, MONDAY, "10:00-11:00", "Ivan", "+79991234567")
        engine.cancel_as_user(b.id, 123)
        assert all(s.available for s in services.slots.get_available_slots(cabinet.id, MONDAY))

    def test_closed_override(self, services, engine, cabinet):
        services.cabinets.set_override(cabinet.id, TUESDAY, is_closed=True, reason="cleaning")
        assert services.slots.get_available_slots(cabinet.id, TUESDAY) == []
        with pytest.raises(SlotMisaligned):
            engine.create_hour_booking(make_user(1), cabinet.id, TUESDAY, "09:00-10:00", "Ivan", "+79991234567")

    def test_override_shortens_day(self, services, cabinet):
        services.cabinets.set_override(cabinet.id, TUESDAY, start_time="10:00")
        labels = [s.label for s in services.slots.get_available_slots(cabinet.id, TUESDAY)]
        assert labels == ["10:00-11:00", "11:00-12:00"]

    def test_override_replaced_for_same_date(self, services, cabinet):
        services.cabinets.set_override(cabinet.id, TUESDAY, is_closed=True)
        services.cabinets.set_override(cabinet.id, TUESDAY, end_time="10:00")
        labels = [s.label for s in services.slots.get_available_slots(cabinet.id, TUESDAY)]
        assert labels == ["09:00-10:00"]

    def test_no_schedule_for_day(self, services):
        cab = services.cabinets.create_cabinet("Room 2")
        services.cabinets.set_schedule(cab.id, 1, "09:00", "11:00", 30)
        assert services.slots.get_available_slots(cab.id, TUESDAY) == []
        assert len(services.slots.get_available_slots(cab.id, MONDAY)) == 4

    def test_sunday_is_seven(self, services):
        cab = services.cabinets.create_cabinet("Room 3")
        services.cabinets.set_schedule(cab.id, 7, "12:00", "14:00", 60)
        assert len(services.slots.get_available_slots(cab.id, date(2026, 1, 4))) == 2

    def test_new_schedule_replaces_previous(self, services, cabinet):
        services.cabinets.set_schedule(cabinet.id, 1, "14:00", "16:00", 120)
        labels = [s.label for s in services.slots.get_available_slots(cabinet.id, MONDAY)]
        assert labels == ["14:00-16:00"]

    def test_schedule_window_must_fit_slots(self, services, cabinet):
        with pytest.raises(InvalidArgument):
            services.cabinets.set_schedule(cabinet.id, 1, "09:00", "10:30", 60)
        with pytest.raises(InvalidArgument):
            services.cabinets.set_schedule(cabinet.id, 1, "12:00", "09:00", 60)

    def test_unknown_cabinet(self, services):
        with pytest.raises(NotFound):
            services.slots.get_available_slots(999, MONDAY)

    def test_deactivated_schedule_closes_day(self, services, cabinet):
        monday = next(s for s in services.cabinets.list_schedules(cabinet.id) if s.day_of_week == 1)
        services.cabinets.deactivate_schedule(monday.id)
        assert services.slots.get_available_slots(cabinet.id, MONDAY) == []
        assert len(services.slots.get_available_slots(cabinet.id, TUESDAY)) == 3
        assert [s.day_of_week for s in services.cabinets.list_schedules(cabinet.id)] == [2, 3, 4, 5, 6, 7]

    def test_deactivate_unknown_schedule(self, services):
        with pytest.raises(NotFound):
            services.cabinets.deactivate_schedule(999)


class TestCreateHourBooking:

    def test_creates_pending_booking(self, services, engine, cabinet):
        b = engine.create_hour_booking(make_user(1), cabinet.id, "2026-01-05", "09:00-10:00",
                                       "Ivan", "8 (999) 123-45-67", comment="first visit")
        assert b.status == "pending"
        assert b.start_time == datetime(2026, 1, 5, 9, 0)
        assert b.end_time == datetime(2026, 1, 5, 10, 0)
        assert b.client_phone == "89991234567"
        tasks = services.queue.fetch_due()
        assert [(t.task_type, t.booking_id) for t in tasks] == [("upsert", b.id)]
        assert '"kind": "hour"' in tasks[0].payload

    def test_overlap(self, engine, cabinet):
        engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "10:00-11:00", "Ivan", "+79991234567")
        with pytest.raises(SlotNotAvailable):
            engine.create_hour_booking(make_user(2), cabinet.id, MONDAY, "10:00-11:00", "Olga", "+79991234568")

    def test_wrong_width(self, engine, cabinet):
        with pytest.raises(SlotMisaligned):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:00-11:00", "Ivan", "+79991234567")

    def test_wrong_offset(self, engine, cabinet):
        with pytest.raises(SlotMisaligned):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:30-10:30", "Ivan", "+79991234567")

    def test_last_slot_of_window(self, engine, cabinet):
        engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "11:00-12:00", "Ivan", "+79991234567")
        with pytest.raises(SlotMisaligned):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "12:00-13:00", "Ivan", "+79991234567")

    def test_bad_label(self, engine, cabinet):
        with pytest.raises(InvalidArgument):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "9-10", "Ivan", "+79991234567")

    def test_bad_phone(self, engine, cabinet):
        with pytest.raises(InvalidArgument):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:00-10:00", "Ivan", "12-34")

    def test_inactive_cabinet(self, services, engine, cabinet):
        services.cabinets.deactivate_cabinet(cabinet.id)
        with pytest.raises(NotFound):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:00-10:00", "Ivan", "+79991234567")

    def test_min_advance_boundary(self, engine, cabinet, clock):
        clock.now = datetime(2026, 1, 5, 9, 0, 1)
        with pytest.raises(OutsideBookingWindow):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "10:00-11:00", "Ivan", "+79991234567")
        clock.now = datetime(2026, 1, 5, 9, 0)
        b = engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "10:00-11:00", "Ivan", "+79991234567")
        assert b.start_time == datetime(2026, 1, 5, 10, 0)

    def test_max_advance(self, services, engine, cabinet):
        with pytest.raises(OutsideBookingWindow):
            engine.create_hour_booking(make_user(1), cabinet.id, date(2026, 2, 2), "09:00-10:00",
                                       "Ivan", "+79991234567")

    def test_external_item_checked(self, engine, cabinet):
        engine.create_day_booking(make_user(50), "tripod", MONDAY)
        with pytest.raises(ItemNotAvailable):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:00-10:00", "Ivan",
                                       "+79991234567", external_item_name="tripod")
        b = engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:00-10:00", "Ivan",
                                       "+79991234567", external_item_name="lens")
        assert b.item_name == "lens"

    def test_external_item_unknown(self, engine, cabinet):
        with pytest.raises(ItemNotAvailable):
            engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:00-10:00", "Ivan",
                                       "+79991234567", external_item_name="hovercraft")


class TestCancelAsUser:

    def _booking(self, engine, cabinet, status="confirmed"):
        b = engine.create_hour_booking(make_user(123), cabinet.id, MONDAY, "10:00-11:00", "Ivan", "+79991234567")
        if status != "pending":
            engine.change_hour_status(b.id, status, ROLE_MANAGER)
        return b

    def test_owner_cancels_then_already_finalized(self, services, engine, cabinet):
        b = self._booking(engine, cabinet)
        canceled = engine.cancel_as_user(b.id, 123)
        assert canceled.status == "canceled"
        with pytest.raises(AlreadyFinalized):
            engine.cancel_as_user(b.id, 123)
        assert engine.get_hour_booking(b.id).status == "canceled"

    def test_other_user(self, engine, cabinet):
        b = self._booking(engine, cabinet)
        with pytest.raises(Forbidden):
            engine.cancel_as_user(b.id, 124)

    def test_not_found(self, engine):
        with pytest.raises(NotFound):
            engine.cancel_as_user(404, 123)

    def test_too_late(self, engine, cabinet, clock):
        b = self._booking(engine, cabinet)
        clock.now = datetime(2026, 1, 5, 10, 0)
        with pytest.raises(TooLate):
            engine.cancel_as_user(b.id, 123)

    def test_rejected_is_final(self, engine, cabinet):
        b = self._booking(engine, cabinet, status="rejected")
        with pytest.raises(AlreadyFinalized):
            engine.cancel_as_user(b.id, 123)

    def test_manager_only_status_change(self, engine, cabinet):
        b = self._booking(engine, cabinet, status="pending")
        with pytest.raises(PermissionDenied):
            engine.change_hour_status(b.id, "approved", "user")


class TestUserHourBookings:

    def test_active_upcoming_only(self, engine, cabinet, clock):
        first = engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "09:00-10:00", "Ivan", "+79991234567")
        later = engine.create_hour_booking(make_user(1), cabinet.id, TUESDAY, "11:00-12:00", "Ivan", "+79991234567")
        canceled = engine.create_hour_booking(make_user(1), cabinet.id, MONDAY, "11:00-12:00", "Ivan", "+79991234567")
        engine.create_hour_booking(make_user(2), cabinet.id, MONDAY, "10:00-11:00", "Olga", "+79991234567")
        engine.cancel_as_user(canceled.id, 1)

        assert [b.id for b in engine.list_user_hour_bookings(1)] == [first.id, later.id]
        assert [b.id for b in engine.list_user_hour_bookings(1, active_only=False)] == [
            first.id, canceled.id, later.id,
        ]

        clock.now = datetime(2026, 1, 5, 10, 0)
        assert [b.id for b in engine.list_user_hour_bookings(1)] == [later.id]
