from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from rentbook.core.errors import InvalidArgument, NotFound
from rentbook.db.session import Database
from rentbook.models.booking import DayBooking, ACTIVE_STATUSES
from rentbook.schemas.availability import (
    DayCount,
    ItemAvailability,
    ItemOut,
    PeriodAvailability,
)
from rentbook.services.catalog import CatalogItem, ItemCatalog
from rentbook.utils.validators import parse_wire_date


def count_active(db: Session, item_id: int, day: date, exclude_id: Optional[int] = None) -> int:
    q = db.query(func.count(DayBooking.id)).filter(
        DayBooking.item_id == item_id,
        DayBooking.date == day,
        DayBooking.status.in_(ACTIVE_STATUSES),
    )
    if exclude_id is not None:
        q = q.filter(DayBooking.id != exclude_id)
    return q.scalar() or 0


def _parse_date(value: str) -> date:
    try:
        return parse_wire_date(value)
    except ValueError as e:
        raise InvalidArgument(str(e)) from e


class AvailabilityReader:
    """Point and bulk availability over the day-booking table. Takes no locks."""

    def __init__(self, database: Database, catalog: ItemCatalog):
        self.database = database
        self.catalog = catalog

    def _resolve(self, item_name: str) -> CatalogItem:
        item = self.catalog.get_by_name(item_name)
        if item is None:
            raise NotFound(f"item {item_name.strip()!r} not found")
        return item

    def get_booked_count(self, item_id: int, day: date) -> int:
        with self.database.session() as db:
            return count_active(db, item_id, day)

    def get_availability(self, item_name: str, day) -> ItemAvailability:
        if isinstance(day, str):
            day = _parse_date(day)
        item = self._resolve(item_name)
        booked = self.get_booked_count(item.id, day)
        return ItemAvailability(
            item_name=item.name,
            date=day.isoformat(),
            available=booked < item.total_quantity,
            booked_count=booked,
            total=item.total_quantity,
        )

    def get_availability_bulk(self, items: List[str], dates: List[str]) -> List[ItemAvailability]:
        """Cross product in input order; unknown items are skipped, any bad date fails the call."""
        items = [i for i in (items or []) if i and i.strip()]
        dates = [d for d in (dates or []) if d and d.strip()]
        if not items:
            raise InvalidArgument("items must not be empty")
        if not dates:
            raise InvalidArgument("dates must not be empty")
        days = [_parse_date(d) for d in dates]

        resolved = []
        for name in items:
            item = self.catalog.get_by_name(name)
            if item is not None:
                resolved.append(item)
        if not resolved:
            return []

        counts: Dict[tuple, int] = {}
        with self.database.session() as db:
            rows = (
                db.query(DayBooking.item_id, DayBooking.date, func.count(DayBooking.id))
                .filter(
                    DayBooking.item_id.in_({i.id for i in resolved}),
                    DayBooking.date.in_(set(days)),
                    DayBooking.status.in_(ACTIVE_STATUSES),
                )
                .group_by(DayBooking.item_id, DayBooking.date)
                .all()
            )
        for item_id, day, count in rows:
            counts[(item_id, day)] = count

        results = []
        for item in resolved:
            for day in days:
                booked = counts.get((item.id, day), 0)
                results.append(
                    ItemAvailability(
                        item_name=item.name,
                        date=day.isoformat(),
                        available=booked < item.total_quantity,
                        booked_count=booked,
                        total=item.total_quantity,
                    )
                )
        return results

    def list_items(self) -> List[ItemOut]:
        return [
            ItemOut(
                id=i.id,
                name=i.name,
                description=i.description,
                total_quantity=i.total_quantity,
                sort_order=i.sort_order,
            )
            for i in self.catalog.active_items()
        ]

    def get_availability_for_period(self, item_id: int, start: date, days: int) -> PeriodAvailability:
        if days < 1:
            raise InvalidArgument("days must be positive")
        item = self.catalog.get_by_id(item_id)
        if item is None:
            raise NotFound(f"item {item_id} not found")
        end = start + timedelta(days=days - 1)
        with self.database.session() as db:
            rows = (
                db.query(DayBooking.date, func.count(DayBooking.id))
                .filter(
                    DayBooking.item_id == item_id,
                    DayBooking.date >= start,
                    DayBooking.date <= end,
                    DayBooking.status.in_(ACTIVE_STATUSES),
                )
                .group_by(DayBooking.date)
                .all()
            )
        booked = {day: count for day, count in rows}
        out = []
        for offset in range(days):
            day = start + timedelta(days=offset)
            count = booked.get(day, 0)
            out.append(
                DayCount(
                    date=day.isoformat(),
                    booked_count=count,
                    available_count=max(0, item.total_quantity - count),
                    total=item.total_quantity,
                )
            )
        return PeriodAvailability(item_id=item.id, item_name=item.name, days=out)
