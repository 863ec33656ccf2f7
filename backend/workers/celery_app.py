import json
import logging.config
from pathlib import Path

from celery import Celery
from celery.schedules import schedule
from celery.signals import setup_logging
from kombu import Queue

from app.core.config import settings

celery_app = Celery(
    "post_scheduler",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="publishing",
    task_queues=(
        Queue("publishing"),
        Queue("scheduler"),
        Queue("analytics"),
    ),
    task_routes={
        "workers.tasks.dispatch_due_schedules": {"queue": "publishing"},
        "workers.tasks.refresh_expiring_tokens": {"queue": "scheduler"},
        "workers.tasks.worker_heartbeat": {"queue": "scheduler"},
        "workers.tasks.collect_post_metrics": {"queue": "analytics"},
    },
    beat_schedule={
        "dispatch-due-schedules": {
            "task": "workers.tasks.dispatch_due_schedules",
            "schedule": schedule(float(settings.dispatch_interval_seconds)),
            "options": {"queue": "publishing"},
        },
        "collect-post-metrics": {
            "task": "workers.tasks.collect_post_metrics",
            "schedule": schedule(float(settings.metrics_collection_interval_seconds)),
            "options": {"queue": "analytics"},
        },
        "refresh-expiring-tokens": {
            "task": "workers.tasks.refresh_expiring_tokens",
            "schedule": schedule(float(settings.token_refresh_interval_seconds)),
            "options": {"queue": "scheduler"},
        },
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "scheduler"},
        },
    },
)


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    config_path = Path(__file__).resolve().parent.parent / "logging.json"
    logging.config.dictConfig(json.loads(config_path.read_text(encoding="utf-8")))


celery_app.autodiscover_tasks(["workers"])
