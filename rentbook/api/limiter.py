import threading
import time
from collections import OrderedDict
from typing import Callable

DEFAULT_BURST = 5


class TokenBucket:
    def __init__(self, rate: float, burst: int, now: float):
        self.rate = rate
        self.burst = burst
        self.tokens = float(burst)
        self.last = now

    def allow(self, now: float) -> bool:
        elapsed = max(0.0, now - self.last)
        self.last = now
        self.tokens = min(float(self.burst), self.tokens + elapsed * self.rate)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False


class RateLimiter:
    """Per-key token buckets; the least recently used key is evicted past ``max_keys``."""

    def __init__(self, rps: float, burst: int = DEFAULT_BURST, max_keys: int = 10000,
                 monotonic: Callable[[], float] = time.monotonic):
        self.rps = rps
        self.burst = burst if burst > 0 else DEFAULT_BURST
        self.max_keys = max(1, max_keys)
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self.rps > 0

    def allow(self, key: str) -> bool:
        if not self.enabled:
            return True
        now = self._monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(self.rps, self.burst, now)
                self._buckets[key] = bucket
                if len(self._buckets) > self.max_keys:
                    self._buckets.popitem(last=False)
            else:
                self._buckets.move_to_end(key)
            return bucket.allow(now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)
