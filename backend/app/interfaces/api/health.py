from time import perf_counter

from fastapi import APIRouter, Response, status
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from app.core.clock import utc_now
from app.core.config import settings
from app.domain.models.schedule import Schedule, ScheduleStatus
from app.infrastructure.cache.redis_client import get_redis_client
from app.infrastructure.db.session import SessionLocal
from app.infrastructure.observability.metrics import measure_redis, metrics_response

router = APIRouter()


def _check_database() -> tuple[str, float | None, int | None]:
    try:
        started_at = perf_counter()
        with SessionLocal() as db:
            # Overdue pending schedules mean the dispatcher is falling behind.
            overdue = db.execute(
                select(func.count(Schedule.id)).where(
                    Schedule.status == ScheduleStatus.PENDING.value,
                    Schedule.scheduled_for <= utc_now(),
                )
            ).scalar_one()
        return "up", round((perf_counter() - started_at) * 1000, 2), int(overdue)
    except SQLAlchemyError:
        return "down", None, None


def _check_redis() -> tuple[str, float | None, bool]:
    try:
        redis_client = get_redis_client()
        started_at = perf_counter()
        with measure_redis("health_ping"):
            redis_client.ping()
        latency_ms = round((perf_counter() - started_at) * 1000, 2)
        with measure_redis("health_worker_heartbeat_check"):
            worker_alive = bool(redis_client.exists(settings.worker_heartbeat_key))
        return "up", latency_ms, worker_alive
    except RedisError:
        return "down", None, False


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check() -> dict:
    db_status, db_latency_ms, overdue_schedules = _check_database()
    redis_status, redis_latency_ms, worker_alive = _check_redis()
    overall = "ok" if db_status == "up" and redis_status == "up" and worker_alive else "degraded"
    return {
        "status": overall,
        "services": {
            "api": "up",
            "database": db_status,
            "redis": redis_status,
            "worker_alive": worker_alive,
            "db_latency_ms": db_latency_ms,
            "redis_latency_ms": redis_latency_ms,
            "overdue_schedules": overdue_schedules,
        },
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(response: Response) -> dict:
    payload = health_check()
    services = payload["services"]
    if services["database"] != "up" or services["redis"] != "up" or services["worker_alive"] is not True:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "services": services}
    return {"status": "ready", "services": services}


@router.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_response()
