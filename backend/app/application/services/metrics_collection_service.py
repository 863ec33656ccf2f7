import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import utc_now
from app.core.config import settings
from app.domain.models.publication_metrics import PublicationMetrics
from app.domain.models.schedule import Schedule, ScheduleStatus
from app.domain.models.social_account import SocialAccount
from app.integrations.platform_adapters import (
    AccountCredentials,
    BasePlatformAdapter,
    PostMetrics,
    PublishError,
    credentials_from_account,
    get_platform_adapter,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsTarget:
    schedule_id: UUID
    platform: str
    platform_post_id: str
    credentials: AccountCredentials


@dataclass(frozen=True)
class MetricsCollectionReport:
    collected: int
    failed: int


def _load_targets(db: Session, *, since: datetime) -> list[MetricsTarget]:
    rows = db.execute(
        select(Schedule, SocialAccount)
        .join(SocialAccount, SocialAccount.id == Schedule.social_account_id)
        .where(
            Schedule.status == ScheduleStatus.PUBLISHED.value,
            Schedule.published_post_id.is_not(None),
            Schedule.published_at >= since,
            SocialAccount.is_active.is_(True),
        )
        .order_by(Schedule.published_at.desc())
    ).all()
    targets: list[MetricsTarget] = []
    for schedule, account in rows:
        try:
            credentials = credentials_from_account(account)
        except ValueError:
            logger.warning("metrics_target_skipped schedule_id=%s reason=unreadable_credentials", schedule.id)
            continue
        targets.append(
            MetricsTarget(
                schedule_id=schedule.id,
                platform=schedule.platform,
                platform_post_id=schedule.published_post_id,
                credentials=credentials,
            )
        )
    return targets


def upsert_publication_metrics(
    db: Session,
    *,
    schedule_id: UUID,
    platform: str,
    metrics: PostMetrics,
    collected_at: datetime,
) -> PublicationMetrics:
    row = db.execute(
        select(PublicationMetrics).where(PublicationMetrics.schedule_id == schedule_id)
    ).scalar_one_or_none()
    if row is None:
        row = PublicationMetrics(schedule_id=schedule_id, platform=platform)
    row.views = metrics.views
    row.likes = metrics.likes
    row.reposts = metrics.reposts
    row.replies = metrics.replies
    row.quotes = metrics.quotes
    row.raw = metrics.raw
    row.collected_at = collected_at
    db.add(row)
    db.flush()
    return row


async def collect_recent_metrics(
    session_factory: sessionmaker[Session],
    *,
    adapter_resolver: Callable[[str], BasePlatformAdapter] | None = None,
    lookback_days: int | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> MetricsCollectionReport:
    now = clock()
    since = now - timedelta(days=lookback_days if lookback_days is not None else settings.metrics_lookback_days)
    with session_factory() as db:
        targets = _load_targets(db, since=since)

    async def _collect(resolver: Callable[[str], BasePlatformAdapter]) -> MetricsCollectionReport:
        collected = 0
        failed = 0
        for target in targets:
            try:
                metrics = await resolver(target.platform).fetch_metrics(target.credentials, target.platform_post_id)
            except PublishError as exc:
                failed += 1
                logger.warning(
                    "metrics_collection_failed schedule_id=%s platform=%s error_code=%s error=%s",
                    target.schedule_id,
                    target.platform,
                    exc.error_code,
                    exc,
                )
                continue
            except Exception:
                failed += 1
                logger.exception(
                    "metrics_collection_crashed schedule_id=%s platform=%s",
                    target.schedule_id,
                    target.platform,
                )
                continue

            with session_factory() as db:
                upsert_publication_metrics(
                    db,
                    schedule_id=target.schedule_id,
                    platform=target.platform,
                    metrics=metrics,
                    collected_at=clock(),
                )
                db.commit()
            collected += 1
        return MetricsCollectionReport(collected=collected, failed=failed)

    if adapter_resolver is not None:
        report = await _collect(adapter_resolver)
    else:
        async with httpx.AsyncClient(timeout=settings.adapter_timeout_seconds) as client:
            report = await _collect(lambda platform: get_platform_adapter(platform, client=client, strict=False))

    logger.info("metrics_collection_completed collected=%s failed=%s", report.collected, report.failed)
    return report

