"""
Pytest configuration and fixtures.
Every test gets its own SQLite file, a controllable clock and an in-memory sheet.
"""

from datetime import datetime, timedelta

import pytest

from rentbook.core.config import ItemConfig, Settings
from rentbook.db.init_db import init_db
from rentbook.db.session import Database
from rentbook.schemas.booking import BookingUser
from rentbook.services.container import build_services


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSheets:
    """Stands in for the spreadsheet; ``fail_times`` makes the next calls raise."""

    def __init__(self):
        self.rows = {}
        self.calls = []
        self.fail_times = 0
        self.schedules = []
        self.warm_ups = 0

    def _maybe_fail(self):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("sheets unavailable")

    def upsert_booking(self, kind, booking):
        self.calls.append(("upsert", kind, booking["id"]))
        self._maybe_fail()
        self.rows[(kind, booking["id"])] = dict(booking)

    def delete_booking(self, kind, booking_id):
        self.calls.append(("delete", kind, booking_id))
        self._maybe_fail()
        self.rows.pop((kind, booking_id), None)

    def update_status(self, kind, booking_id, status, updated_at=None):
        self.calls.append(("update_status", kind, booking_id))
        self._maybe_fail()
        row = self.rows.get((kind, booking_id))
        if row is None:
            return False
        row["status"] = status
        return True

    def render_schedule(self, start, end, items, bookings):
        self.calls.append(("sync_schedule", start, end))
        self._maybe_fail()
        self.schedules.append((start, end, list(items), list(bookings)))

    def warm_up(self):
        self.warm_ups += 1
        self._maybe_fail()

    def close(self):
        pass


ITEMS = [
    ItemConfig(id=1, name="camera", description="Camera body", total_quantity=2, sort_order=1),
    ItemConfig(id=2, name="lens", description="Zoom lens", total_quantity=3, sort_order=2),
    ItemConfig(id=3, name="tripod", description="", total_quantity=1, sort_order=2),
]


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 11, 20, 10, 0))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database={"url": f"sqlite:///{tmp_path / 'rentbook.db'}"},
        worker={"max_retries": 3, "initial_delay": 1, "backoff_factor": 2, "max_delay": 60},
        booking={"min_advance_minutes": 60, "hour_max_advance_days": 30, "max_booking_days": 365},
    )


@pytest.fixture
def sheets():
    return FakeSheets()


@pytest.fixture
def services(settings, clock, sheets):
    database = Database(settings.database)
    init_db(database)
    services = build_services(settings, database=database, sheets=sheets, clock=clock)
    services.catalog.sync_items(ITEMS)
    yield services
    services.close()


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def reader(services):
    return services.reader


@pytest.fixture
def cabinet(services):
    """Cabinet open every day 09:00-12:00 in one-hour slots."""
    cab = services.cabinets.create_cabinet("Room 1", "Ground floor")
    services.cabinets.set_weekly_schedule(cab.id, "09:00", "12:00", 60)
    return cab


def make_user(user_id: int, name: str = "", phone: str = "+79991234567") -> BookingUser:
    return BookingUser(id=user_id, name=name or f"user{user_id}", nickname=f"nick{user_id}", phone=phone)
