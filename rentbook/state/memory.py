import threading
import time
from typing import Callable, Dict, Optional, Tuple

from rentbook.schemas.state import UserFlowState


class MemoryStateRepository:
    """Process-local store; entries vanish after ``ttl`` seconds."""

    def __init__(self, ttl: float = 24 * 60 * 60, monotonic: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._states: Dict[int, Tuple[str, float]] = {}
        self._counters: Dict[int, Tuple[int, float]] = {}

    def get(self, user_id: int) -> Optional[UserFlowState]:
        now = self._monotonic()
        with self._lock:
            entry = self._states.get(user_id)
            if entry is None:
                return None
            blob, expires_at = entry
            if now >= expires_at:
                del self._states[user_id]
                return None
        return UserFlowState.model_validate_json(blob)

    def set(self, state: UserFlowState) -> None:
        # stored serialized so callers never share a mutable instance
        blob = state.model_dump_json()
        with self._lock:
            self._states[state.user_id] = (blob, self._monotonic() + self.ttl)

    def clear(self, user_id: int) -> None:
        with self._lock:
            self._states.pop(user_id, None)

    def check_rate_limit(self, user_id: int, limit: int, window: int) -> bool:
        now = self._monotonic()
        with self._lock:
            count, expires_at = self._counters.get(user_id, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + window
            count += 1
            self._counters[user_id] = (count, expires_at)
        return count <= limit

    def purge_expired(self) -> int:
        now = self._monotonic()
        with self._lock:
            stale = [k for k, (_, exp) in self._states.items() if now >= exp]
            for k in stale:
                del self._states[k]
            for k in [k for k, (_, exp) in self._counters.items() if now >= exp]:
                del self._counters[k]
        return len(stale)
