import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.application.services import retry_policy
from app.application.services.post_service import LIVE_SCHEDULE_STATUSES, recompute_post_status
from app.core.clock import utc_now
from app.core.config import settings
from app.domain.errors import InvalidStateError, NotFoundError, ValidationError
from app.domain.models.post import Post, PostStatus
from app.domain.models.post_variant import PostVariant
from app.domain.models.schedule import Schedule, ScheduleStatus
from app.domain.models.social_account import SocialAccount
from app.integrations.platform_adapters import ContentTooLongError, check_content_length

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
CALENDAR_PREVIEW_LENGTH = 100
LEASE_EXPIRED_ERROR = "Publish lease expired before the dispatcher reported a result"
SYSTEM_TARGET_STATUSES = {
    ScheduleStatus.PROCESSING.value,
    ScheduleStatus.PUBLISHED.value,
    ScheduleStatus.FAILED.value,
}


@dataclass(frozen=True)
class CalendarEntry:
    schedule: Schedule
    title: str
    content_preview: str


@dataclass(frozen=True)
class ScheduleStats:
    total: int
    by_status: dict[str, int]
    success_rate: int
    platform_breakdown: dict[str, int] = field(default_factory=dict)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _require_future(scheduled_for: datetime, now: datetime) -> datetime:
    normalized = _as_utc(scheduled_for)
    if normalized <= now:
        raise ValidationError("Scheduled time must be in the future")
    return normalized


def _owned_post(db: Session, *, user_id: UUID, post_id: UUID) -> Post:
    post = db.execute(select(Post).where(Post.id == post_id, Post.user_id == user_id)).scalar_one_or_none()
    if post is None:
        raise ValidationError("Post not found or not owned by the caller")
    return post


def _owned_account(db: Session, *, user_id: UUID, account_id: UUID) -> SocialAccount:
    account = db.execute(
        select(SocialAccount).where(SocialAccount.id == account_id, SocialAccount.user_id == user_id)
    ).scalar_one_or_none()
    if account is None:
        raise ValidationError("Social account not found or not owned by the caller")
    if not account.is_active:
        raise ValidationError("Social account is inactive")
    return account


def _check_variant(db: Session, *, post_id: UUID, variant_id: UUID | None) -> None:
    if variant_id is None:
        return
    variant = db.get(PostVariant, variant_id)
    if variant is None or variant.post_id != post_id:
        raise ValidationError("Variant does not belong to the post")


def _check_content_fits(db: Session, *, post: Post, variant_id: UUID | None, platform: str) -> None:
    variant = db.get(PostVariant, variant_id) if variant_id else None
    content = variant.content if variant is not None else post.publishable_content
    try:
        check_content_length(platform, content)
    except ContentTooLongError as exc:
        raise ValidationError(str(exc)) from exc


def _check_no_live_duplicate(
    db: Session,
    *,
    post_id: UUID,
    platform: str,
    account_id: UUID,
    exclude_schedule_id: UUID | None = None,
) -> None:
    query = select(Schedule.id).where(
        Schedule.post_id == post_id,
        Schedule.platform == platform,
        Schedule.social_account_id == account_id,
        Schedule.status != ScheduleStatus.CANCELLED.value,
    )
    if exclude_schedule_id is not None:
        query = query.where(Schedule.id != exclude_schedule_id)
    if db.execute(query).first() is not None:
        raise ValidationError("A schedule for this post, platform and account already exists")


def _flush_or_duplicate(db: Session) -> None:
    # The partial unique index settles create races the pre-check cannot see.
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError("A schedule for this post, platform and account already exists") from exc


def _owned_schedule(db: Session, *, user_id: UUID, schedule_id: UUID) -> Schedule:
    schedule = db.execute(
        select(Schedule)
        .join(Post, Post.id == Schedule.post_id)
        .where(Schedule.id == schedule_id, Post.user_id == user_id)
    ).scalar_one_or_none()
    if schedule is None:
        raise NotFoundError("Schedule not found")
    return schedule


def create_schedule(
    db: Session,
    *,
    user_id: UUID,
    post_id: UUID,
    platform: str,
    social_account_id: UUID,
    scheduled_for: datetime,
    variant_id: UUID | None = None,
    max_retries: int | None = None,
    now: datetime | None = None,
) -> Schedule:
    current_time = now or utc_now()
    normalized_platform = platform.strip().lower()
    resolved_max_retries = settings.default_max_retries if max_retries is None else max_retries
    if resolved_max_retries < 0:
        raise ValidationError("max_retries must be non-negative")

    post = _owned_post(db, user_id=user_id, post_id=post_id)
    account = _owned_account(db, user_id=user_id, account_id=social_account_id)
    if account.platform != normalized_platform:
        raise ValidationError(
            f"Platform mismatch: account is '{account.platform}', schedule is '{normalized_platform}'"
        )
    _check_variant(db, post_id=post.id, variant_id=variant_id)
    _check_content_fits(db, post=post, variant_id=variant_id, platform=normalized_platform)
    _check_no_live_duplicate(db, post_id=post.id, platform=normalized_platform, account_id=account.id)
    normalized_when = _require_future(scheduled_for, current_time)

    schedule = Schedule(
        post_id=post.id,
        variant_id=variant_id,
        platform=normalized_platform,
        social_account_id=account.id,
        scheduled_for=normalized_when,
        status=ScheduleStatus.PENDING.value,
        retry_count=0,
        max_retries=resolved_max_retries,
        publish_metadata={},
    )
    db.add(schedule)
    _flush_or_duplicate(db)

    post.status = PostStatus.SCHEDULED.value
    post.scheduled_for = normalized_when
    db.add(post)
    db.flush()
    logger.info(
        "schedule_created user_id=%s schedule_id=%s post_id=%s platform=%s scheduled_for=%s",
        user_id,
        schedule.id,
        post.id,
        normalized_platform,
        normalized_when.isoformat(),
    )
    return schedule


def update_schedule(
    db: Session,
    *,
    user_id: UUID,
    schedule_id: UUID,
    scheduled_for: datetime | None = None,
    variant_id: UUID | None = None,
    social_account_id: UUID | None = None,
    now: datetime | None = None,
) -> Schedule:
    current_time = now or utc_now()
    schedule = _owned_schedule(db, user_id=user_id, schedule_id=schedule_id)
    if schedule.status != ScheduleStatus.PENDING.value:
        raise InvalidStateError(f"Cannot update a schedule in status '{schedule.status}'")

    if social_account_id is not None and social_account_id != schedule.social_account_id:
        account = _owned_account(db, user_id=user_id, account_id=social_account_id)
        if account.platform != schedule.platform:
            raise ValidationError(
                f"Platform mismatch: account is '{account.platform}', schedule is '{schedule.platform}'"
            )
        _check_no_live_duplicate(
            db,
            post_id=schedule.post_id,
            platform=schedule.platform,
            account_id=account.id,
            exclude_schedule_id=schedule.id,
        )
        schedule.social_account_id = account.id

    if variant_id is not None:
        _check_variant(db, post_id=schedule.post_id, variant_id=variant_id)
        post = db.get(Post, schedule.post_id)
        if post is not None:
            _check_content_fits(db, post=post, variant_id=variant_id, platform=schedule.platform)
        schedule.variant_id = variant_id

    if scheduled_for is not None:
        schedule.scheduled_for = _require_future(scheduled_for, current_time)
        # An explicit reschedule replaces any pending retry slot.
        schedule.next_retry_at = None

    db.add(schedule)
    _flush_or_duplicate(db)
    recompute_post_status(db, post_id=schedule.post_id)
    logger.info("schedule_updated user_id=%s schedule_id=%s", user_id, schedule.id)
    return schedule


def cancel_schedule(db: Session, *, user_id: UUID, schedule_id: UUID) -> Schedule:
    schedule = _owned_schedule(db, user_id=user_id, schedule_id=schedule_id)
    if schedule.status in {ScheduleStatus.PUBLISHED.value, ScheduleStatus.CANCELLED.value}:
        raise InvalidStateError(f"Cannot cancel a schedule in status '{schedule.status}'")

    previous_status = schedule.status
    schedule.status = ScheduleStatus.CANCELLED.value
    schedule.next_retry_at = None
    schedule.lease_expires_at = None
    db.add(schedule)
    db.flush()

    other_live = db.execute(
        select(Schedule.id).where(
            Schedule.post_id == schedule.post_id,
            Schedule.id != schedule.id,
            Schedule.status.in_(LIVE_SCHEDULE_STATUSES),
        )
    ).first()
    if other_live is None:
        post = db.get(Post, schedule.post_id)
        if post is not None:
            post.status = PostStatus.DRAFT.value
            post.scheduled_for = None
            db.add(post)
            db.flush()

    logger.info(
        "schedule_cancelled user_id=%s schedule_id=%s previous_status=%s",
        user_id,
        schedule.id,
        previous_status,
    )
    return schedule


def transition_status(
    db: Session,
    schedule_id: UUID,
    new_status: str,
    *,
    now: datetime | None = None,
    published_at: datetime | None = None,
    published_post_id: str | None = None,
    published_url: str | None = None,
    error: str | None = None,
    metadata: dict | None = None,
    lease_seconds: int | None = None,
) -> Schedule:
    """Dispatcher-side status change.

    Writes against a terminal schedule are ignored. A failure is routed
    through the retry policy and either re-arms the schedule as pending
    with a next_retry_at or leaves it terminally failed.
    """
    current_time = now or utc_now()
    schedule = db.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFoundError("Schedule not found")
    if new_status not in SYSTEM_TARGET_STATUSES:
        raise InvalidStateError(f"Unsupported system transition target '{new_status}'")
    if schedule.is_terminal:
        logger.info(
            "schedule_transition_ignored schedule_id=%s current_status=%s requested_status=%s",
            schedule.id,
            schedule.status,
            new_status,
        )
        return schedule

    if metadata:
        schedule.publish_metadata = {**(schedule.publish_metadata or {}), **metadata}

    if new_status == ScheduleStatus.PROCESSING.value:
        schedule.status = ScheduleStatus.PROCESSING.value
        schedule.lease_expires_at = current_time + timedelta(
            seconds=lease_seconds if lease_seconds is not None else settings.publish_lease_seconds
        )
        db.add(schedule)
        db.flush()
        return schedule

    schedule.lease_expires_at = None
    if new_status == ScheduleStatus.PUBLISHED.value:
        schedule.status = ScheduleStatus.PUBLISHED.value
        schedule.published_at = published_at or current_time
        schedule.published_post_id = published_post_id
        schedule.published_url = published_url
        schedule.next_retry_at = None
        schedule.error = None
        logger.info(
            "schedule_published schedule_id=%s platform=%s published_post_id=%s",
            schedule.id,
            schedule.platform,
            published_post_id,
        )
    else:
        decision = retry_policy.decide(schedule.retry_count, schedule.max_retries)
        schedule.error = error
        if decision.retry:
            schedule.retry_count += 1
            schedule.status = ScheduleStatus.PENDING.value
            schedule.next_retry_at = decision.next_retry_at(current_time)
            logger.warning(
                "schedule_retry_scheduled schedule_id=%s retry_count=%s max_retries=%s delay_minutes=%s error=%s",
                schedule.id,
                schedule.retry_count,
                schedule.max_retries,
                decision.delay_minutes,
                error,
            )
        else:
            schedule.status = ScheduleStatus.FAILED.value
            schedule.next_retry_at = None
            logger.error(
                "schedule_failed schedule_id=%s retry_count=%s max_retries=%s error=%s",
                schedule.id,
                schedule.retry_count,
                schedule.max_retries,
                error,
            )

    db.add(schedule)
    db.flush()
    recompute_post_status(db, post_id=schedule.post_id)
    return schedule


def _is_due(now: datetime):
    return or_(
        and_(Schedule.next_retry_at.is_(None), Schedule.scheduled_for <= now),
        Schedule.next_retry_at <= now,
    )


def claim_schedule(
    db: Session,
    schedule_id: UUID,
    *,
    now: datetime | None = None,
    lease_seconds: int | None = None,
) -> bool:
    """Atomically move a due pending schedule to processing.

    Returns False when another worker already claimed it, or it was
    cancelled or rescheduled since the scan.
    """
    current_time = now or utc_now()
    lease = lease_seconds if lease_seconds is not None else settings.publish_lease_seconds
    result = db.execute(
        update(Schedule)
        .where(
            Schedule.id == schedule_id,
            Schedule.status == ScheduleStatus.PENDING.value,
            _is_due(current_time),
        )
        .values(
            status=ScheduleStatus.PROCESSING.value,
            lease_expires_at=current_time + timedelta(seconds=lease),
            updated_at=current_time,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def recover_stale_processing(db: Session, *, now: datetime | None = None) -> list[UUID]:
    current_time = now or utc_now()
    stale_ids = list(
        db.execute(
            select(Schedule.id).where(
                Schedule.status == ScheduleStatus.PROCESSING.value,
                or_(Schedule.lease_expires_at.is_(None), Schedule.lease_expires_at <= current_time),
            )
        )
        .scalars()
        .all()
    )
    for schedule_id in stale_ids:
        transition_status(
            db,
            schedule_id,
            ScheduleStatus.FAILED.value,
            now=current_time,
            error=LEASE_EXPIRED_ERROR,
            metadata={"last_error_code": "lease_expired"},
        )
        logger.warning("schedule_lease_recovered schedule_id=%s", schedule_id)
    return stale_ids


def due_now(db: Session, now: datetime | None = None) -> list[Schedule]:
    current_time = now or utc_now()
    return list(
        db.execute(
            select(Schedule)
            .where(
                Schedule.status == ScheduleStatus.PENDING.value,
                Schedule.next_retry_at.is_(None),
                Schedule.scheduled_for <= current_time,
            )
            .order_by(Schedule.scheduled_for.asc(), Schedule.created_at.asc(), Schedule.id.asc())
        )
        .scalars()
        .all()
    )


def due_for_retry(db: Session, now: datetime | None = None) -> list[Schedule]:
    current_time = now or utc_now()
    return list(
        db.execute(
            select(Schedule)
            .where(
                Schedule.status == ScheduleStatus.PENDING.value,
                Schedule.next_retry_at.is_not(None),
                Schedule.next_retry_at <= current_time,
            )
            .order_by(Schedule.next_retry_at.asc(), Schedule.created_at.asc(), Schedule.id.asc())
        )
        .scalars()
        .all()
    )


def list_schedules(
    db: Session,
    *,
    user_id: UUID,
    status: str | None = None,
    platform: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int | None = DEFAULT_LIST_LIMIT,
) -> list[Schedule]:
    query = select(Schedule).join(Post, Post.id == Schedule.post_id).where(Post.user_id == user_id)
    if status:
        query = query.where(Schedule.status == status)
    if platform:
        query = query.where(Schedule.platform == platform.strip().lower())
    if start is not None:
        query = query.where(Schedule.scheduled_for >= _as_utc(start))
    if end is not None:
        query = query.where(Schedule.scheduled_for <= _as_utc(end))
    query = query.order_by(Schedule.scheduled_for.asc(), Schedule.created_at.asc(), Schedule.id.asc())
    return list(db.execute(query.limit(limit)).scalars().all())


def get_schedules_for_post(db: Session, *, user_id: UUID, post_id: UUID) -> list[Schedule]:
    post = db.execute(select(Post).where(Post.id == post_id, Post.user_id == user_id)).scalar_one_or_none()
    if post is None:
        raise NotFoundError("Post not found")
    return list(
        db.execute(
            select(Schedule)
            .where(Schedule.post_id == post.id)
            .order_by(Schedule.scheduled_for.asc(), Schedule.created_at.asc())
        )
        .scalars()
        .all()
    )


def get_calendar_schedules(db: Session, *, user_id: UUID, start: datetime, end: datetime) -> list[CalendarEntry]:
    rows = db.execute(
        select(Schedule, Post, SocialAccount)
        .join(Post, Post.id == Schedule.post_id)
        .join(SocialAccount, SocialAccount.id == Schedule.social_account_id)
        .where(
            Post.user_id == user_id,
            Schedule.scheduled_for >= _as_utc(start),
            Schedule.scheduled_for <= _as_utc(end),
        )
        .order_by(Schedule.scheduled_for.asc(), Schedule.created_at.asc())
    ).all()

    entries: list[CalendarEntry] = []
    for schedule, post, account in rows:
        content = post.publishable_content
        preview = content[:CALENDAR_PREVIEW_LENGTH]
        if len(content) > CALENDAR_PREVIEW_LENGTH:
            preview += "..."
        entries.append(
            CalendarEntry(
                schedule=schedule,
                title=f"{account.display_name or account.username} ({schedule.platform})",
                content_preview=preview,
            )
        )
    return entries


def get_schedule_stats(
    db: Session,
    *,
    user_id: UUID,
    start: datetime | None = None,
    end: datetime | None = None,
) -> ScheduleStats:
    schedules = list_schedules(db, user_id=user_id, start=start, end=end, limit=None)
    by_status = {status.value: 0 for status in ScheduleStatus}
    platform_breakdown: dict[str, int] = {}
    for schedule in schedules:
        by_status[schedule.status] = by_status.get(schedule.status, 0) + 1
        platform_breakdown[schedule.platform] = platform_breakdown.get(schedule.platform, 0) + 1

    total = len(schedules)
    success_rate = round(by_status[ScheduleStatus.PUBLISHED.value] / total * 100) if total else 0
    return ScheduleStats(
        total=total,
        by_status=by_status,
        success_rate=success_rate,
        platform_breakdown=platform_breakdown,
    )
