import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from time import perf_counter
from uuid import UUID

import httpx
from sqlalchemy.orm import Session, sessionmaker

from app.application.services.schedule_service import (
    claim_schedule,
    due_for_retry,
    due_now,
    recover_stale_processing,
    transition_status,
)
from app.core.clock import utc_now
from app.core.config import settings
from app.domain.models.post import Post
from app.domain.models.post_variant import PostVariant
from app.domain.models.schedule import Schedule, ScheduleStatus
from app.domain.models.social_account import SocialAccount
from app.infrastructure.logging.context import reset_schedule_id, set_schedule_id
from app.infrastructure.observability.metrics import increment_background_counter, observe_adapter_call
from app.integrations.platform_adapters import (
    AccountCredentials,
    BasePlatformAdapter,
    PlatformRateLimitedError,
    PublishError,
    PublishResult,
    credentials_from_account,
    get_platform_adapter,
)
from app.integrations.platform_rate_limit_service import PlatformRateLimiter

logger = logging.getLogger(__name__)

AdapterResolver = Callable[[str], BasePlatformAdapter]


class DispatchOutcome:
    PUBLISHED = "published"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    ERROR = "error"


@dataclass(frozen=True)
class DispatchJob:
    schedule_id: UUID
    post_id: UUID
    platform: str
    content: str
    media_urls: list[str]
    credentials: AccountCredentials | None
    credentials_error: str | None = None


@dataclass(frozen=True)
class ScheduleDispatchResult:
    schedule_id: UUID
    platform: str
    outcome: str
    publish_duration_ms: int
    error: str | None = None
    error_code: str | None = None


@dataclass
class DispatchReport:
    checked: int = 0
    recovered: int = 0
    published: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    ignored: int = 0
    errors: int = 0
    results: list[ScheduleDispatchResult] = field(default_factory=list)

    def add(self, result: ScheduleDispatchResult) -> None:
        self.results.append(result)
        if result.outcome == DispatchOutcome.PUBLISHED:
            self.published += 1
        elif result.outcome == DispatchOutcome.RETRY_SCHEDULED:
            self.retried += 1
        elif result.outcome == DispatchOutcome.FAILED:
            self.failed += 1
        elif result.outcome == DispatchOutcome.SKIPPED:
            self.skipped += 1
        elif result.outcome == DispatchOutcome.IGNORED:
            self.ignored += 1
        else:
            self.errors += 1

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "recovered": self.recovered,
            "published": self.published,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
            "ignored": self.ignored,
            "errors": self.errors,
        }


class ScheduleDispatcher:
    """Publishes every due schedule once per run.

    Each schedule is claimed, published and resolved on its own. No
    database session stays open while a platform API call is in flight,
    and one schedule's failure never affects another.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        adapter_resolver: AdapterResolver | None = None,
        rate_limiter: PlatformRateLimiter | None = None,
        max_concurrency: int | None = None,
        lease_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._adapter_resolver = adapter_resolver
        self._rate_limiter = rate_limiter
        self._max_concurrency = max(1, max_concurrency or settings.dispatcher_max_concurrency)
        self._lease_seconds = lease_seconds if lease_seconds is not None else settings.publish_lease_seconds
        self._clock = clock

    async def run_once(self) -> DispatchReport:
        report = DispatchReport()
        now = self._clock()

        with self._session_factory() as db:
            recovered = recover_stale_processing(db, now=now)
            db.commit()
            schedule_ids: list[UUID] = list(
                dict.fromkeys(schedule.id for schedule in [*due_now(db, now), *due_for_retry(db, now)])
            )

        report.recovered = len(recovered)
        report.checked = len(schedule_ids)
        increment_background_counter("stale_leases_recovered_total", len(recovered))
        increment_background_counter("scheduled_jobs_checked_total", len(schedule_ids))
        if not schedule_ids:
            logger.info("dispatch_run_completed %s", _format_report(report))
            return report

        if self._adapter_resolver is not None:
            await self._dispatch_all(schedule_ids, self._adapter_resolver, report)
        else:
            async with httpx.AsyncClient(timeout=settings.adapter_timeout_seconds) as client:
                await self._dispatch_all(
                    schedule_ids,
                    lambda platform: get_platform_adapter(platform, client=client, strict=False),
                    report,
                )

        logger.info("dispatch_run_completed %s", _format_report(report))
        return report

    async def _dispatch_all(self, schedule_ids: list[UUID], resolver: AdapterResolver, report: DispatchReport) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrency)
        outcomes = await asyncio.gather(
            *(self._dispatch_one(schedule_id, resolver, semaphore) for schedule_id in schedule_ids),
            return_exceptions=True,
        )
        for schedule_id, outcome in zip(schedule_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "dispatch_schedule_crashed schedule_id=%s error=%s",
                    schedule_id,
                    outcome,
                    exc_info=(type(outcome), outcome, outcome.__traceback__),
                )
                report.add(
                    ScheduleDispatchResult(
                        schedule_id=schedule_id,
                        platform="unknown",
                        outcome=DispatchOutcome.ERROR,
                        publish_duration_ms=0,
                        error=str(outcome),
                    )
                )
            else:
                report.add(outcome)

    async def _dispatch_one(
        self,
        schedule_id: UUID,
        resolver: AdapterResolver,
        semaphore: asyncio.Semaphore,
    ) -> ScheduleDispatchResult:
        async with semaphore:
            context_token = set_schedule_id(str(schedule_id))
            started_at = perf_counter()
            try:
                job = self._claim(schedule_id)
                if job is None:
                    logger.info("dispatch_schedule_skipped schedule_id=%s reason=claim_lost", schedule_id)
                    return ScheduleDispatchResult(
                        schedule_id=schedule_id,
                        platform="unknown",
                        outcome=DispatchOutcome.SKIPPED,
                        publish_duration_ms=_elapsed_ms(started_at),
                    )

                increment_background_counter("publish_attempts_total")
                try:
                    result = await self._publish(job, resolver)
                except PublishError as exc:
                    logger.warning(
                        "dispatch_publish_failed schedule_id=%s platform=%s error_code=%s error=%s",
                        job.schedule_id,
                        job.platform,
                        exc.error_code,
                        exc,
                    )
                    return self._resolve_failure(job, exc, started_at)
                except Exception as exc:
                    logger.exception(
                        "dispatch_publish_crashed schedule_id=%s platform=%s",
                        job.schedule_id,
                        job.platform,
                    )
                    wrapped = PublishError(f"Unexpected adapter failure: {exc.__class__.__name__}: {exc}")
                    return self._resolve_failure(job, wrapped, started_at)
                return self._resolve_success(job, result, started_at)
            finally:
                reset_schedule_id(context_token)

    def _claim(self, schedule_id: UUID) -> DispatchJob | None:
        with self._session_factory() as db:
            if not claim_schedule(db, schedule_id, now=self._clock(), lease_seconds=self._lease_seconds):
                db.rollback()
                return None
            db.commit()

            schedule = db.get(Schedule, schedule_id)
            if schedule is None:
                return None
            post = db.get(Post, schedule.post_id)
            variant = db.get(PostVariant, schedule.variant_id) if schedule.variant_id else None
            if variant is not None:
                content = variant.content
            else:
                content = post.publishable_content if post is not None else ""

            account = db.get(SocialAccount, schedule.social_account_id)
            credentials: AccountCredentials | None = None
            credentials_error: str | None = None
            if account is None:
                credentials_error = "Social account not found"
            else:
                try:
                    credentials = credentials_from_account(account)
                except ValueError as exc:
                    credentials_error = f"Stored credentials unreadable: {exc}"

            return DispatchJob(
                schedule_id=schedule.id,
                post_id=schedule.post_id,
                platform=schedule.platform,
                content=content,
                media_urls=list((post.media_urls if post is not None else None) or []),
                credentials=credentials,
                credentials_error=credentials_error,
            )

    async def _publish(self, job: DispatchJob, resolver: AdapterResolver) -> PublishResult:
        if job.credentials is None:
            raise PublishError(job.credentials_error or "Social account credentials unavailable")
        if not job.credentials.is_active:
            raise PublishError("Social account is inactive")

        if self._rate_limiter is not None:
            decision = self._rate_limiter.check(job.platform, now=self._clock())
            if not decision.allowed:
                raise PlatformRateLimitedError(
                    f"Platform rate limit exceeded for {decision.platform}. "
                    f"Retry after {decision.retry_after_seconds}s"
                )

        adapter = resolver(job.platform)
        call_started_at = perf_counter()
        outcome = "error"
        try:
            # The lease bounds how long a hung call can hold the schedule.
            result = await asyncio.wait_for(
                adapter.publish(job.credentials, job.content, job.media_urls),
                timeout=self._lease_seconds,
            )
            outcome = "success"
            return result
        except TimeoutError as exc:
            raise PublishError(f"{job.platform} publish exceeded {self._lease_seconds}s") from exc
        finally:
            observe_adapter_call(perf_counter() - call_started_at, platform=job.platform, outcome=outcome)

    def _resolve_success(self, job: DispatchJob, result: PublishResult, started_at: float) -> ScheduleDispatchResult:
        with self._session_factory() as db:
            schedule = transition_status(
                db,
                job.schedule_id,
                ScheduleStatus.PUBLISHED.value,
                now=self._clock(),
                published_at=result.published_at,
                published_post_id=result.platform_post_id,
                published_url=result.url,
                metadata={**result.metadata, "last_error_code": None},
            )
            db.commit()
            status = schedule.status

        outcome = DispatchOutcome.PUBLISHED if status == ScheduleStatus.PUBLISHED.value else DispatchOutcome.IGNORED
        logger.info(
            "dispatch_schedule_resolved schedule_id=%s platform=%s outcome=%s platform_post_id=%s",
            job.schedule_id,
            job.platform,
            outcome,
            result.platform_post_id,
        )
        return ScheduleDispatchResult(
            schedule_id=job.schedule_id,
            platform=job.platform,
            outcome=outcome,
            publish_duration_ms=_elapsed_ms(started_at),
        )

    def _resolve_failure(self, job: DispatchJob, error: PublishError, started_at: float) -> ScheduleDispatchResult:
        increment_background_counter("publish_failures_total")
        now = self._clock()
        with self._session_factory() as db:
            schedule = transition_status(
                db,
                job.schedule_id,
                ScheduleStatus.FAILED.value,
                now=now,
                error=str(error),
                metadata={"last_error_code": error.error_code, "last_failure_at": now.isoformat()},
            )
            db.commit()
            status = schedule.status

        if status == ScheduleStatus.PENDING.value:
            outcome = DispatchOutcome.RETRY_SCHEDULED
            increment_background_counter("publish_retries_scheduled_total")
        elif status == ScheduleStatus.FAILED.value:
            outcome = DispatchOutcome.FAILED
        else:
            outcome = DispatchOutcome.IGNORED
        return ScheduleDispatchResult(
            schedule_id=job.schedule_id,
            platform=job.platform,
            outcome=outcome,
            publish_duration_ms=_elapsed_ms(started_at),
            error=str(error),
            error_code=error.error_code,
        )


def _elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)


def _format_report(report: DispatchReport) -> str:
    return " ".join(f"{key}={value}" for key, value in report.as_dict().items())
