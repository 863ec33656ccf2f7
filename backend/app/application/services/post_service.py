import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.domain.errors import InvalidStateError, NotFoundError, ValidationError
from app.domain.models.post import Post, PostStatus
from app.domain.models.post_variant import PostVariant
from app.domain.models.publication_metrics import PublicationMetrics
from app.domain.models.schedule import Schedule, ScheduleStatus
from app.integrations.platform_adapters import ContentTooLongError, check_content_length

logger = logging.getLogger(__name__)

LIVE_SCHEDULE_STATUSES = (ScheduleStatus.PENDING.value, ScheduleStatus.PROCESSING.value)
DEFAULT_LIST_LIMIT = 50


def _clean_content(content: str | None, *, field_name: str = "content") -> str:
    cleaned = (content or "").strip()
    if not cleaned:
        raise ValidationError(f"Post {field_name} must not be empty")
    return cleaned


def create_post(
    db: Session,
    *,
    user_id: UUID,
    content: str,
    final_content: str | None = None,
    media_urls: list[str] | None = None,
) -> Post:
    post = Post(
        user_id=user_id,
        content=_clean_content(content),
        final_content=final_content.strip() if final_content and final_content.strip() else None,
        media_urls=list(media_urls or []),
        status=PostStatus.DRAFT.value,
    )
    db.add(post)
    db.flush()
    logger.info("post_created user_id=%s post_id=%s", user_id, post.id)
    return post


def get_post(db: Session, post_id: UUID) -> Post | None:
    return db.get(Post, post_id)


def get_post_for_user(db: Session, *, user_id: UUID, post_id: UUID) -> Post:
    post = db.execute(select(Post).where(Post.id == post_id, Post.user_id == user_id)).scalar_one_or_none()
    if post is None:
        raise NotFoundError("Post not found")
    return post


def list_posts(
    db: Session,
    *,
    user_id: UUID,
    status: str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[Post]:
    query = select(Post).where(Post.user_id == user_id)
    if status:
        query = query.where(Post.status == status)
    query = query.order_by(Post.created_at.desc(), Post.id.asc()).limit(limit)
    return list(db.execute(query).scalars().all())


def _check_live_schedules_fit(db: Session, post: Post) -> None:
    platforms = db.execute(
        select(Schedule.platform)
        .where(
            Schedule.post_id == post.id,
            Schedule.variant_id.is_(None),
            Schedule.status.in_(LIVE_SCHEDULE_STATUSES),
        )
        .distinct()
    ).scalars().all()
    for platform in platforms:
        try:
            check_content_length(platform, post.publishable_content)
        except ContentTooLongError as exc:
            raise ValidationError(str(exc)) from exc


def update_post(
    db: Session,
    *,
    user_id: UUID,
    post_id: UUID,
    content: str | None = None,
    final_content: str | None = None,
    media_urls: list[str] | None = None,
) -> Post:
    post = get_post_for_user(db, user_id=user_id, post_id=post_id)
    _require_editable(post)
    if content is not None:
        post.content = _clean_content(content)
    if final_content is not None:
        post.final_content = final_content.strip() or None
    if media_urls is not None:
        post.media_urls = list(media_urls)
    _check_live_schedules_fit(db, post)
    db.add(post)
    db.flush()
    return post


def add_variant(db: Session, *, user_id: UUID, post_id: UUID, content: str, score: int = 0) -> PostVariant:
    post = get_post_for_user(db, user_id=user_id, post_id=post_id)
    if score < 0 or score > 100:
        raise ValidationError("Variant score must be between 0 and 100")
    variant = PostVariant(post_id=post.id, content=_clean_content(content, field_name="variant content"), score=score)
    db.add(variant)
    db.flush()
    return variant


def list_variants(db: Session, *, post_id: UUID) -> list[PostVariant]:
    return list(
        db.execute(
            select(PostVariant)
            .where(PostVariant.post_id == post_id)
            .order_by(PostVariant.score.desc(), PostVariant.created_at.asc())
        )
        .scalars()
        .all()
    )


def _owned_variant(db: Session, *, user_id: UUID, post_id: UUID, variant_id: UUID) -> tuple[Post, PostVariant]:
    post = get_post_for_user(db, user_id=user_id, post_id=post_id)
    variant = db.get(PostVariant, variant_id)
    if variant is None or variant.post_id != post.id:
        raise NotFoundError("Variant not found")
    return post, variant


def _require_editable(post: Post) -> None:
    if post.status in {PostStatus.PUBLISHED.value, PostStatus.PARTIALLY_PUBLISHED.value}:
        raise InvalidStateError("Published posts cannot be edited")


def select_variant(db: Session, *, user_id: UUID, post_id: UUID, variant_id: UUID) -> PostVariant:
    """Mark one variant as chosen and make its text the post's final content.

    Any previously selected variant of the same post is deselected first.
    """
    post, variant = _owned_variant(db, user_id=user_id, post_id=post_id, variant_id=variant_id)
    _require_editable(post)
    for sibling in list_variants(db, post_id=post.id):
        if sibling.id != variant.id and sibling.is_selected:
            sibling.is_selected = False
            db.add(sibling)
    # Only one variant per post may be selected, so clear the old one first.
    db.flush()
    variant.is_selected = True
    post.final_content = variant.content
    _check_live_schedules_fit(db, post)
    db.add_all([variant, post])
    db.flush()
    logger.info("post_variant_selected user_id=%s post_id=%s variant_id=%s", user_id, post.id, variant.id)
    return variant


def deselect_variant(db: Session, *, user_id: UUID, post_id: UUID, variant_id: UUID) -> PostVariant:
    post, variant = _owned_variant(db, user_id=user_id, post_id=post_id, variant_id=variant_id)
    _require_editable(post)
    if variant.is_selected:
        variant.is_selected = False
        post.final_content = None
        db.add_all([variant, post])
        db.flush()
        logger.info("post_variant_deselected user_id=%s post_id=%s variant_id=%s", user_id, post.id, variant.id)
    return variant


def get_selected_variant(db: Session, *, user_id: UUID, post_id: UUID) -> PostVariant | None:
    post = get_post_for_user(db, user_id=user_id, post_id=post_id)
    return db.execute(
        select(PostVariant).where(PostVariant.post_id == post.id, PostVariant.is_selected.is_(True))
    ).scalar_one_or_none()


def get_best_variant(db: Session, *, user_id: UUID, post_id: UUID) -> PostVariant | None:
    """Highest scoring variant; the earliest one wins a tie."""
    post = get_post_for_user(db, user_id=user_id, post_id=post_id)
    variants = list_variants(db, post_id=post.id)
    return variants[0] if variants else None


def delete_post(db: Session, *, user_id: UUID, post_id: UUID) -> None:
    """Delete a post with its variants, schedules and collected metrics.

    Refused while any schedule of the post is still waiting or in flight.
    """
    post = get_post_for_user(db, user_id=user_id, post_id=post_id)
    live_schedule = db.execute(
        select(Schedule.id).where(Schedule.post_id == post.id, Schedule.status.in_(LIVE_SCHEDULE_STATUSES))
    ).first()
    if live_schedule is not None:
        raise InvalidStateError("Cancel the post's active schedules before deleting it")

    schedule_ids = select(Schedule.id).where(Schedule.post_id == post.id)
    db.execute(
        delete(PublicationMetrics)
        .where(PublicationMetrics.schedule_id.in_(schedule_ids))
        .execution_options(synchronize_session=False)
    )
    db.execute(delete(Schedule).where(Schedule.post_id == post.id).execution_options(synchronize_session=False))
    db.execute(
        delete(PostVariant).where(PostVariant.post_id == post.id).execution_options(synchronize_session=False)
    )
    db.delete(post)
    db.flush()
    logger.info("post_deleted user_id=%s post_id=%s", user_id, post_id)


def update_post_status(
    db: Session,
    *,
    post_id: UUID,
    status: str,
    published_at: datetime | None = None,
    error_message: str | None = None,
) -> Post:
    if status not in {value.value for value in PostStatus}:
        raise ValidationError(f"Unknown post status: {status}")
    post = db.get(Post, post_id)
    if post is None:
        raise NotFoundError("Post not found")
    post.status = status
    if published_at is not None:
        post.published_at = published_at
    post.error_message = error_message
    db.add(post)
    db.flush()
    return post


def recompute_post_status(db: Session, *, post_id: UUID) -> Post | None:
    """Derive the post status from its non-cancelled schedules."""
    post = get_post(db, post_id)
    if post is None:
        return None

    schedules = db.execute(
        select(Schedule).where(
            Schedule.post_id == post_id,
            Schedule.status != ScheduleStatus.CANCELLED.value,
        )
    ).scalars().all()
    statuses = {schedule.status for schedule in schedules}
    live = [schedule for schedule in schedules if schedule.status in LIVE_SCHEDULE_STATUSES]
    published = [schedule for schedule in schedules if schedule.status == ScheduleStatus.PUBLISHED.value]
    failed = [schedule for schedule in schedules if schedule.status == ScheduleStatus.FAILED.value]

    if live:
        status = PostStatus.SCHEDULED.value
        post.scheduled_for = min(schedule.scheduled_for for schedule in live)
    elif published and failed:
        status = PostStatus.PARTIALLY_PUBLISHED.value
    elif published:
        status = PostStatus.PUBLISHED.value
    elif failed:
        status = PostStatus.FAILED.value
    else:
        status = PostStatus.DRAFT.value
        post.scheduled_for = None

    published_at = max(
        (schedule.published_at for schedule in published if schedule.published_at is not None),
        default=None,
    )
    if failed and not live:
        error_message = failed[-1].error
    elif failed:
        error_message = post.error_message
    else:
        error_message = None

    update_post_status(db, post_id=post.id, status=status, published_at=published_at, error_message=error_message)
    logger.info(
        "post_status_recomputed post_id=%s status=%s schedule_statuses=%s",
        post.id,
        post.status,
        ",".join(sorted(statuses)) or "none",
    )
    return post
