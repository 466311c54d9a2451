import logging
import threading
import time
from typing import Callable, Optional

from rentbook.schemas.state import UserFlowState

logger = logging.getLogger(__name__)


class FailoverStateRepository:
    """
    Uses ``primary`` until it errors, then serves from ``fallback``.

    While down, the primary is retried at most once per ``retry_after``
    seconds; the first successful call brings it back.
    """

    def __init__(self, primary, fallback, retry_after: float = 60.0,
                 monotonic: Callable[[], float] = time.monotonic):
        self.primary = primary
        self.fallback = fallback
        self.retry_after = retry_after
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._down = False
        self._last_check = 0.0

    @property
    def is_down(self) -> bool:
        with self._lock:
            return self._down

    def _use_primary(self) -> bool:
        with self._lock:
            if not self._down:
                return True
            now = self._monotonic()
            if now - self._last_check >= self.retry_after:
                self._last_check = now
                return True
            return False

    def _mark_down(self, op: str, exc: Exception) -> None:
        with self._lock:
            was_down = self._down
            self._down = True
            self._last_check = self._monotonic()
        if not was_down:
            logger.warning("State store primary failed on %s, switching to fallback: %s", op, exc)

    def _mark_up(self) -> None:
        with self._lock:
            was_down = self._down
            self._down = False
        if was_down:
            logger.info("State store primary recovered.")

    def _call(self, op: str, *args):
        if self._use_primary():
            try:
                result = getattr(self.primary, op)(*args)
            except Exception as e:
                self._mark_down(op, e)
            else:
                self._mark_up()
                return result
        return getattr(self.fallback, op)(*args)

    def get(self, user_id: int) -> Optional[UserFlowState]:
        return self._call("get", user_id)

    def set(self, state: UserFlowState) -> None:
        self._call("set", state)

    def clear(self, user_id: int) -> None:
        self._call("clear", user_id)

    def check_rate_limit(self, user_id: int, limit: int, window: int) -> bool:
        return self._call("check_rate_limit", user_id, limit, window)
