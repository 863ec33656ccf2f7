import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.application.services.schedule_service import (
    cancel_schedule,
    create_schedule,
    get_calendar_schedules,
    get_schedule_stats,
    list_schedules,
    update_schedule,
)
from app.domain.models.schedule import Schedule, ScheduleStatus
from app.domain.models.social_account import Platform
from app.infrastructure.db.session import get_db
from app.interfaces.api.deps import get_current_user_id
from app.interfaces.api.errors import domain_errors

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schedules", tags=["schedules"])


class ScheduleCreateRequest(BaseModel):
    post_id: UUID
    platform: Platform
    social_account_id: UUID
    scheduled_for: datetime
    variant_id: UUID | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)


class ScheduleUpdateRequest(BaseModel):
    scheduled_for: datetime | None = None
    variant_id: UUID | None = None
    social_account_id: UUID | None = None


def serialize_schedule(schedule: Schedule) -> dict:
    return {
        "id": str(schedule.id),
        "post_id": str(schedule.post_id),
        "variant_id": str(schedule.variant_id) if schedule.variant_id else None,
        "platform": schedule.platform,
        "social_account_id": str(schedule.social_account_id),
        "scheduled_for": schedule.scheduled_for.isoformat(),
        "status": schedule.status,
        "retry_count": schedule.retry_count,
        "max_retries": schedule.max_retries,
        "next_retry_at": schedule.next_retry_at.isoformat() if schedule.next_retry_at else None,
        "published_at": schedule.published_at.isoformat() if schedule.published_at else None,
        "published_post_id": schedule.published_post_id,
        "published_url": schedule.published_url,
        "error": schedule.error,
        "metadata": schedule.publish_metadata or {},
        "created_at": schedule.created_at.isoformat(),
        "updated_at": schedule.updated_at.isoformat(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_schedule_endpoint(
    payload: ScheduleCreateRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        schedule = create_schedule(
            db,
            user_id=user_id,
            post_id=payload.post_id,
            platform=payload.platform.value,
            social_account_id=payload.social_account_id,
            scheduled_for=payload.scheduled_for,
            variant_id=payload.variant_id,
            max_retries=payload.max_retries,
        )
    db.commit()
    return serialize_schedule(schedule)


@router.get("")
def list_schedules_endpoint(
    status_filter: ScheduleStatus | None = Query(default=None, alias="status"),
    platform: Platform | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> list[dict]:
    rows = list_schedules(
        db,
        user_id=user_id,
        status=status_filter.value if status_filter else None,
        platform=platform.value if platform else None,
        start=start,
        end=end,
        limit=limit,
    )
    return [serialize_schedule(row) for row in rows]


@router.get("/stats")
def schedule_stats_endpoint(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    stats = get_schedule_stats(db, user_id=user_id, start=start, end=end)
    return {
        "total": stats.total,
        "by_status": stats.by_status,
        "success_rate": stats.success_rate,
        "platform_breakdown": stats.platform_breakdown,
    }


@router.get("/calendar")
def schedule_calendar_endpoint(
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> list[dict]:
    entries = get_calendar_schedules(db, user_id=user_id, start=start, end=end)
    return [
        {
            "id": str(entry.schedule.id),
            "title": entry.title,
            "start": entry.schedule.scheduled_for.isoformat(),
            "status": entry.schedule.status,
            "platform": entry.schedule.platform,
            "post_id": str(entry.schedule.post_id),
            "content_preview": entry.content_preview,
        }
        for entry in entries
    ]


@router.patch("/{schedule_id}")
def update_schedule_endpoint(
    schedule_id: UUID,
    payload: ScheduleUpdateRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        schedule = update_schedule(
            db,
            user_id=user_id,
            schedule_id=schedule_id,
            scheduled_for=payload.scheduled_for,
            variant_id=payload.variant_id,
            social_account_id=payload.social_account_id,
        )
    db.commit()
    return serialize_schedule(schedule)


@router.post("/{schedule_id}/cancel")
def cancel_schedule_endpoint(
    schedule_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        schedule = cancel_schedule(db, user_id=user_id, schedule_id=schedule_id)
    db.commit()
    logger.info("schedule_cancel_requested user_id=%s schedule_id=%s", user_id, schedule_id)
    return serialize_schedule(schedule)
