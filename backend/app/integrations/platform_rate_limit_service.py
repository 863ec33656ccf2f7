import logging
from dataclasses import dataclass
from datetime import datetime

from redis.exceptions import RedisError

from app.core.clock import utc_now
from app.core.config import settings
from app.infrastructure.cache.ttl_store import TTLStore

logger = logging.getLogger(__name__)

WINDOW_TTL_SECONDS = 65


@dataclass(frozen=True)
class RateLimitDecision:
    platform: str
    limit: int
    current: int
    allowed: bool
    retry_after_seconds: int


class PlatformRateLimiter:
    """Fixed one-minute window of publish calls per platform."""

    def __init__(
        self,
        store: TTLStore,
        *,
        limit_per_minute: int | None = None,
        platform_limits: dict[str, int] | None = None,
    ) -> None:
        self._store = store
        self._default_limit = max(1, limit_per_minute or settings.platform_rate_limit_per_minute)
        self._platform_limits = {key.strip().lower(): max(1, value) for key, value in (platform_limits or {}).items()}

    def limit_for(self, platform: str) -> int:
        return self._platform_limits.get(platform, self._default_limit)

    def check(self, platform: str, now: datetime | None = None) -> RateLimitDecision:
        normalized_platform = platform.strip().lower()
        current_time = now or utc_now()
        limit = self.limit_for(normalized_platform)
        window_key = f"platform_rate_limit:{normalized_platform}:{current_time:%Y%m%d%H%M}"

        try:
            current = self._store.incr(window_key)
            if current == 1:
                self._store.expire(window_key, WINDOW_TTL_SECONDS)
            ttl = self._store.ttl(window_key)
            retry_after = ttl if ttl > 0 else 60
        except RedisError:
            # Fail open on transient Redis issues.
            logger.warning("platform_rate_limit_store_unavailable platform=%s", normalized_platform)
            return RateLimitDecision(
                platform=normalized_platform,
                limit=limit,
                current=0,
                allowed=True,
                retry_after_seconds=0,
            )

        return RateLimitDecision(
            platform=normalized_platform,
            limit=limit,
            current=current,
            allowed=current <= limit,
            retry_after_seconds=retry_after,
        )
