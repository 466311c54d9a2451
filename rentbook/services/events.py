import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking_created"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_APPROVED = "booking_approved"
BOOKING_REJECTED = "booking_rejected"
BOOKING_CANCELED = "booking_canceled"
BOOKING_COMPLETED = "booking_completed"
BOOKING_ITEM_CHANGED = "booking_item_changed"

# status -> event published when a booking moves into it
STATUS_EVENTS = {
    "confirmed": BOOKING_CONFIRMED,
    "approved": BOOKING_APPROVED,
    "rejected": BOOKING_REJECTED,
    "canceled": BOOKING_CANCELED,
    "completed": BOOKING_COMPLETED,
}


@dataclass
class Event:
    type: str
    booking_id: int
    kind: str = "day"  # "day" or "hour"
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.now)


Handler = Callable[[Event], None]


class EventBus:
    """In-process, synchronous publish/subscribe. A failing handler never reaches the publisher."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.type, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s (booking %d).", event.type, event.booking_id)
