from dataclasses import dataclass

from outbox_service.core.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Decides when the dispatcher gives up on a message and how long it waits between attempts.

    The store records every failed attempt; only this policy turns a
    ``retrying`` message into a terminal ``failed`` one.
    """

    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.backoff_base_seconds < 0 or self.backoff_cap_seconds < 0:
            raise ValueError("backoff durations must not be negative")

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_retries=config.outbox_max_retries,
            backoff_base_seconds=config.outbox_backoff_base_seconds,
            backoff_cap_seconds=config.outbox_backoff_cap_seconds,
        )

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    def next_delay(self, retry_count: int) -> float:
        if retry_count <= 0:
            return 0.0
        delay = self.backoff_base_seconds * (2 ** min(retry_count - 1, 32))
        return float(min(delay, self.backoff_cap_seconds))

