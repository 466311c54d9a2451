from dataclasses import dataclass

from rentbook.core.config import WorkerConfig


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    initial_delay: float = 2.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0

    @classmethod
    def from_config(cls, config: WorkerConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            backoff_factor=config.backoff_factor,
        )

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""
        if attempt < 1:
            attempt = 1
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        return min(self.max_delay, delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_retries
