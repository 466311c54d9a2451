import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from rentbook.core.config import ItemConfig
from rentbook.core.errors import InvalidArgument, NotFound
from rentbook.db.session import Database
from rentbook.models.item import Item
from rentbook.utils.rwlock import RWLock
from rentbook.utils.validators import normalize_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogItem:
    id: int
    name: str
    description: str
    total_quantity: int
    sort_order: int
    is_active: bool

    @classmethod
    def from_row(cls, item: Item) -> "CatalogItem":
        return cls(
            id=item.id,
            name=item.name,
            description=item.description or "",
            total_quantity=item.total_quantity,
            sort_order=item.sort_order or 0,
            is_active=bool(item.is_active),
        )


def advance_id_sequence(db: Session) -> None:
    """Move the PostgreSQL id sequence past ids written explicitly by the catalog sync."""
    if db.get_bind().dialect.name != "postgresql":
        return
    db.execute(text(
        "SELECT setval(pg_get_serial_sequence('items', 'id'), "
        "(SELECT COALESCE(MAX(id), 1) FROM items))"
    ))


class ItemCatalog:
    """
    Read-through cache over the ``items`` table.

    Lookups are by trimmed, case-insensitive name. The map is rebuilt when
    older than ``ttl`` seconds or on ``reload()``; readers share the lock and
    the refresher swaps the whole map under the exclusive lock. Booking
    counters are never cached here.
    """

    def __init__(self, database: Database, ttl: float = 30 * 60, monotonic: Callable[[], float] = time.monotonic):
        self.database = database
        self.ttl = ttl
        self._monotonic = monotonic
        self._lock = RWLock()
        self._refresh_lock = threading.Lock()
        self._by_name: Dict[str, CatalogItem] = {}
        self._by_id: Dict[int, CatalogItem] = {}
        self._loaded_at: Optional[float] = None

    # -----------------------------------------------------------------------
    # Cache
    # -----------------------------------------------------------------------

    def _stale(self) -> bool:
        with self._lock.read():
            loaded_at = self._loaded_at
        return loaded_at is None or self._monotonic() - loaded_at >= self.ttl

    def _ensure_fresh(self) -> None:
        if not self._stale():
            return
        with self._refresh_lock:
            if self._stale():
                self.reload()

    def reload(self) -> None:
        with self.database.session() as db:
            rows = db.query(Item).all()
        by_name = {}
        by_id = {}
        for row in rows:
            item = CatalogItem.from_row(row)
            by_id[item.id] = item
            by_name[normalize_name(item.name)] = item
        with self._lock.write():
            self._by_name = by_name
            self._by_id = by_id
            self._loaded_at = self._monotonic()
        logger.debug("Item catalog loaded: %d item(s).", len(by_id))

    def invalidate(self) -> None:
        with self._lock.write():
            self._loaded_at = None

    def get_by_name(self, name: str) -> Optional[CatalogItem]:
        """Active item with this name, or None."""
        self._ensure_fresh()
        with self._lock.read():
            item = self._by_name.get(normalize_name(name))
        if item is None or not item.is_active:
            return None
        return item

    def get_by_id(self, item_id: int) -> Optional[CatalogItem]:
        self._ensure_fresh()
        with self._lock.read():
            return self._by_id.get(item_id)

    def active_items(self) -> List[CatalogItem]:
        self._ensure_fresh()
        with self._lock.read():
            items = [i for i in self._by_id.values() if i.is_active]
        return sorted(items, key=lambda i: (i.sort_order, i.id))

    # -----------------------------------------------------------------------
    # Administration
    # -----------------------------------------------------------------------

    def _name_taken(self, db: Session, name: str, exclude_id: Optional[int] = None) -> bool:
        q = db.query(Item.id).filter(func.lower(Item.name) == normalize_name(name))
        if exclude_id is not None:
            q = q.filter(Item.id != exclude_id)
        return q.first() is not None

    def create_item(self, name: str, total_quantity: int, description: str = "", sort_order: int = 0) -> CatalogItem:
        name = (name or "").strip()
        if not name:
            raise InvalidArgument("item name is required")
        if total_quantity < 1:
            raise InvalidArgument("total_quantity must be at least 1")

        def _run(db: Session) -> CatalogItem:
            if self._name_taken(db, name):
                raise InvalidArgument(f"item {name!r} already exists")
            item = Item(
                name=name,
                description=description,
                total_quantity=total_quantity,
                sort_order=sort_order,
                is_active=True,
            )
            db.add(item)
            db.flush()
            return CatalogItem.from_row(item)

        created = self.database.transaction(_run)
        self.invalidate()
        return created

    def update_item(self, item_id: int, **changes) -> CatalogItem:
        allowed = {"name", "description", "total_quantity", "sort_order", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidArgument(f"unknown item fields: {', '.join(sorted(unknown))}")
        if "total_quantity" in changes and changes["total_quantity"] < 1:
            raise InvalidArgument("total_quantity must be at least 1")

        def _run(db: Session) -> CatalogItem:
            item = db.get(Item, item_id)
            if item is None:
                raise NotFound(f"item {item_id} not found")
            if "name" in changes:
                changes["name"] = (changes["name"] or "").strip()
                if not changes["name"]:
                    raise InvalidArgument("item name is required")
                if self._name_taken(db, changes["name"], exclude_id=item_id):
                    raise InvalidArgument(f"item {changes['name']!r} already exists")
            for key, value in changes.items():
                setattr(item, key, value)
            db.flush()
            return CatalogItem.from_row(item)

        updated = self.database.transaction(_run)
        self.invalidate()
        return updated

    def deactivate_item(self, item_id: int) -> CatalogItem:
        return self.update_item(item_id, is_active=False)

    def reorder_items(self, ordered_ids: Iterable[int]) -> None:
        ordered_ids = list(ordered_ids)

        def _run(db: Session) -> None:
            for position, item_id in enumerate(ordered_ids, start=1):
                updated = db.query(Item).filter(Item.id == item_id).update({"sort_order": position})
                if not updated:
                    raise NotFound(f"item {item_id} not found")

        self.database.transaction(_run)
        self.invalidate()

    def sync_items(self, items: Iterable[ItemConfig]) -> int:
        """
        Upsert the configured catalog by id. Items missing from the file are
        deactivated, never deleted, so existing bookings keep their reference.
        """
        items = list(items)
        if not items:
            return 0

        def _run(db: Session) -> int:
            keep = set()
            for cfg in items:
                keep.add(cfg.id)
                row = db.get(Item, cfg.id)
                if row is None:
                    row = Item(id=cfg.id)
                    db.add(row)
                row.name = cfg.name
                row.description = cfg.description
                row.total_quantity = cfg.total_quantity
                row.sort_order = cfg.sort_order
                row.is_active = True
            stale = db.query(Item).filter(Item.is_active.is_(True), Item.id.notin_(keep))
            deactivated = stale.update({"is_active": False}, synchronize_session=False)
            db.flush()
            advance_id_sequence(db)
            return deactivated

        deactivated = self.database.transaction(_run)
        self.invalidate()
        logger.info("Synced %d item(s) from config, deactivated %d.", len(items), deactivated)
        return len(items)
