"""Per-pnode stats polling backoff.

Pure functions of failure count and time; the only persisted state is
``next_stats_allowed_at`` on the pnode row.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

DEFAULT_BASE_SECONDS = 60
DEFAULT_CAP_EXPONENT = 5


class _HasNextAllowed(Protocol):
    next_stats_allowed_at: datetime | None


@dataclass(frozen=True)
class BackoffScheduler:
    """Capped exponential backoff.

    After a success the next poll is ``base_seconds`` away. After the n-th
    consecutive failure it is ``base_seconds * 2 ** min(n, cap_exponent)``
    away (60s, 120s, 240s, ... up to 1920s with the defaults).
    """

    base_seconds: int = DEFAULT_BASE_SECONDS
    cap_exponent: int = DEFAULT_CAP_EXPONENT

    def eligible(self, peer: _HasNextAllowed, now: datetime) -> bool:
        return peer.next_stats_allowed_at is None or peer.next_stats_allowed_at <= now

    def failure_delay(self, failure_count: int) -> timedelta:
        exponent = min(max(failure_count, 0), self.cap_exponent)
        return timedelta(seconds=self.base_seconds * 2**exponent)

    def on_success(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.base_seconds)

    def on_failure(self, failure_count: int, now: datetime) -> datetime:
        """Next allowed poll time given the failure count *after* this failure."""
        return now + self.failure_delay(failure_count)

    @property
    def max_delay(self) -> timedelta:
        return self.failure_delay(self.cap_exponent)
