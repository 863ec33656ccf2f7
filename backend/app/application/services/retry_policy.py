from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.config import settings


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_minutes: int

    def next_retry_at(self, now: datetime) -> datetime | None:
        if not self.retry:
            return None
        return now + timedelta(minutes=self.delay_minutes)


def decide(retry_count: int, max_retries: int, *, base_delay_minutes: int | None = None) -> RetryDecision:
    """Bounded exponential backoff: 5, 10, 20, ... minutes until retries run out.

    The delay has no upper cap; a large max_retries yields long waits.
    """
    if retry_count < 0:
        raise ValueError("retry_count must be non-negative")
    base = settings.retry_base_delay_minutes if base_delay_minutes is None else base_delay_minutes
    delay_minutes = base * (2**retry_count)
    if retry_count < max_retries:
        return RetryDecision(retry=True, delay_minutes=delay_minutes)
    return RetryDecision(retry=False, delay_minutes=delay_minutes)
