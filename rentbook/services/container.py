import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from rentbook.api.limiter import RateLimiter
from rentbook.clients.availability import AvailabilityClient
from rentbook.core.config import Settings
from rentbook.core.security import APIKeyAuthenticator
from rentbook.db.redis_client import create_redis
from rentbook.db.session import Database
from rentbook.services.availability import AvailabilityReader
from rentbook.services.cabinets import CabinetService
from rentbook.services.catalog import ItemCatalog
from rentbook.services.events import EventBus
from rentbook.services.reservations import RemoteItemChecker, ReservationEngine
from rentbook.services.slots import SlotGenerator
from rentbook.services.sync_queue import SyncQueue
from rentbook.services.users import UserService
from rentbook.state import FailoverStateRepository, MemoryStateRepository, RedisStateRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide collaborators, built once at start-up and passed explicitly."""

    settings: Settings
    database: Database
    catalog: ItemCatalog
    cabinets: CabinetService
    slots: SlotGenerator
    reader: AvailabilityReader
    queue: SyncQueue
    users: UserService
    events: EventBus
    engine: ReservationEngine
    state: Any
    authenticator: APIKeyAuthenticator
    limiter: RateLimiter
    redis: Any = None
    worker: Any = None
    sheets: Any = None

    def close(self) -> None:
        if self.worker is not None:
            self.worker.stop()
        if self.sheets is not None:
            self.sheets.close()
        if self.redis is not None:
            self.redis.close()
        self.database.dispose()


def build_state_store(settings: Settings, redis=None):
    ttl = settings.state.ttl_hours * 60 * 60
    memory = MemoryStateRepository(ttl=ttl)
    if redis is None:
        return memory
    return FailoverStateRepository(
        RedisStateRepository(redis, ttl=ttl),
        memory,
        retry_after=settings.state.retry_primary_after,
    )


def build_services(
    settings: Settings,
    database: Optional[Database] = None,
    redis=None,
    sheets=None,
    clock: Callable[[], datetime] = datetime.now,
) -> Services:
    database = database or Database(settings.database)
    if redis is None:
        redis = create_redis(settings.redis)

    catalog = ItemCatalog(database, ttl=settings.booking.items_cache_ttl)
    queue = SyncQueue(database, clock=clock)
    users = UserService(database, settings, clock=clock)
    events = EventBus()

    item_checker = None
    if settings.availability_client.base_url:
        client = AvailabilityClient(
            settings.availability_client,
            redis=redis,
            header_api_key=settings.api.auth.header_api_key,
            header_extra=settings.api.auth.header_extra,
        )
        item_checker = RemoteItemChecker(client)

    engine = ReservationEngine(
        settings, database, catalog, queue, users,
        events=events, item_checker=item_checker, clock=clock,
    )

    if sheets is None and settings.google.enabled:
        from rentbook.sheets.client import SheetsClient

        sheets = SheetsClient(settings.google)

    worker = None
    if sheets is not None:
        from rentbook.worker.sheets_worker import SheetsWorker

        worker = SheetsWorker(
            queue,
            sheets,
            settings.worker,
            redis=redis,
            list_items=catalog.active_items,
            list_bookings=engine.list_day_bookings,
            clock=clock,
        )
        engine.attach_dispatcher(worker)
    else:
        logger.warning("Google Sheets not configured; sync tasks will stay queued.")

    rl = settings.api.rate_limit
    return Services(
        settings=settings,
        database=database,
        catalog=catalog,
        cabinets=CabinetService(database),
        slots=SlotGenerator(database),
        reader=AvailabilityReader(database, catalog),
        queue=queue,
        users=users,
        events=events,
        engine=engine,
        state=build_state_store(settings, redis),
        authenticator=APIKeyAuthenticator(settings.api.auth),
        limiter=RateLimiter(rl.rps, rl.burst, rl.max_keys),
        redis=redis,
        worker=worker,
        sheets=sheets,
    )
