import asyncio
import logging
from time import perf_counter

from app.application.services.dispatch_service import ScheduleDispatcher
from app.application.services.metrics_collection_service import collect_recent_metrics
from app.application.services.token_refresh_service import refresh_expiring_tokens as refresh_expiring_tokens_service
from app.core.clock import utc_now
from app.core.config import settings
from app.infrastructure.cache.redis_client import get_redis_client
from app.infrastructure.cache.ttl_store import RedisTTLStore
from app.infrastructure.db.session import SessionLocal
from app.infrastructure.observability.metrics import measure_redis
from app.integrations.platform_rate_limit_service import PlatformRateLimiter
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = utc_now().isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


# One run per beat tick; overlapping runs are safe because every schedule is claimed atomically.
@celery_app.task(name="workers.tasks.dispatch_due_schedules", acks_late=True)
def dispatch_due_schedules() -> dict:
    started_at = perf_counter()
    dispatcher = ScheduleDispatcher(
        SessionLocal,
        rate_limiter=PlatformRateLimiter(RedisTTLStore(get_redis_client())),
    )
    report = asyncio.run(dispatcher.run_once())
    logger.info(
        "dispatch_task completed duration_ms=%.1f checked=%s published=%s retried=%s failed=%s",
        (perf_counter() - started_at) * 1000.0,
        report.checked,
        report.published,
        report.retried,
        report.failed,
    )
    return report.as_dict()


@celery_app.task(name="workers.tasks.collect_post_metrics")
def collect_post_metrics() -> dict:
    report = asyncio.run(collect_recent_metrics(SessionLocal))
    return {"collected": report.collected, "failed": report.failed}


@celery_app.task(name="workers.tasks.refresh_expiring_tokens")
def refresh_expiring_tokens() -> dict:
    report = asyncio.run(refresh_expiring_tokens_service(SessionLocal))
    return {
        "refreshed": report.refreshed,
        "failed": report.failed,
        "deactivated": report.deactivated,
    }
