import asyncio
from datetime import timedelta

from sqlalchemy import select

from app.application.services.metrics_collection_service import collect_recent_metrics
from app.application.services.schedule_service import create_schedule, transition_status
from app.application.services.token_refresh_service import refresh_expiring_tokens
from app.core.config import settings
from app.domain.models.publication_metrics import PublicationMetrics
from app.domain.models.schedule import ScheduleStatus
from app.domain.models.social_account import SocialAccount
from app.integrations.platform_adapters import (
    PlatformAuthError,
    PlatformUnavailableError,
    PostMetrics,
    RefreshedTokens,
    credentials_from_account,
)
from app.integrations.platform_adapters.twitter_adapter import TwitterAdapter


class FakeAdapter:
    def __init__(self, *, metrics: PostMetrics | None = None, tokens: RefreshedTokens | None = None, error=None):
        self.metrics = metrics
        self.tokens = tokens
        self.error = error
        self.metric_requests: list[str] = []
        self.refreshed: list[str] = []

    async def fetch_metrics(self, credentials, platform_post_id):
        self.metric_requests.append(platform_post_id)
        if self.error is not None:
            raise self.error
        return self.metrics

    async def refresh_credentials(self, credentials):
        self.refreshed.append(credentials.username)
        if self.error is not None:
            raise self.error
        return self.tokens


def _published_schedule(db_session, *, user_id, post, account, now, platform_post_id="1789"):
    schedule = create_schedule(
        db_session,
        user_id=user_id,
        post_id=post.id,
        platform=account.platform,
        social_account_id=account.id,
        scheduled_for=now + timedelta(minutes=1),
        now=now,
    )
    transition_status(
        db_session,
        schedule.id,
        ScheduleStatus.PUBLISHED.value,
        now=now + timedelta(minutes=1),
        published_post_id=platform_post_id,
    )
    db_session.commit()
    return schedule


def test_metrics_are_collected_and_upserted(db_session, session_factory, user_id, post, twitter_account, now):
    schedule = _published_schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    adapter = FakeAdapter(metrics=PostMetrics(views=100, likes=7, reposts=2, replies=1, quotes=0, raw={"like_count": 7}))

    first = asyncio.run(
        collect_recent_metrics(session_factory, adapter_resolver=lambda platform: adapter, clock=lambda: now + timedelta(hours=1))
    )
    adapter.metrics = PostMetrics(views=250, likes=9)
    second = asyncio.run(
        collect_recent_metrics(session_factory, adapter_resolver=lambda platform: adapter, clock=lambda: now + timedelta(hours=2))
    )

    assert (first.collected, first.failed) == (1, 0)
    assert second.collected == 1
    assert adapter.metric_requests == ["1789", "1789"]
    with session_factory() as db:
        rows = db.execute(select(PublicationMetrics).where(PublicationMetrics.schedule_id == schedule.id)).scalars().all()
    assert len(rows) == 1
    assert rows[0].views == 250
    assert rows[0].likes == 9
    assert rows[0].collected_at == now + timedelta(hours=2)


def test_metrics_outside_lookback_are_skipped_and_failures_counted(
    db_session, session_factory, user_id, post, twitter_account, threads_account, now
):
    _published_schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    adapter = FakeAdapter(error=PlatformUnavailableError("down"))

    stale = asyncio.run(
        collect_recent_metrics(
            session_factory,
            adapter_resolver=lambda platform: adapter,
            lookback_days=7,
            clock=lambda: now + timedelta(days=8),
        )
    )
    assert (stale.collected, stale.failed) == (0, 0)

    failing = asyncio.run(
        collect_recent_metrics(session_factory, adapter_resolver=lambda platform: adapter, clock=lambda: now + timedelta(days=1))
    )
    assert (failing.collected, failing.failed) == (0, 1)


def test_expiring_tokens_are_refreshed(db_session, session_factory, twitter_account, threads_account, now):
    twitter_account.token_expires_at = now + timedelta(hours=1)
    db_session.commit()
    adapter = FakeAdapter(tokens=RefreshedTokens(access_token="fresh-access", refresh_token="fresh-refresh", expires_in_seconds=7200))

    report = asyncio.run(refresh_expiring_tokens(session_factory, adapter_resolver=lambda platform: adapter, clock=lambda: now))

    assert (report.refreshed, report.failed, report.deactivated) == (1, 0, 0)
    assert adapter.refreshed == ["acme"]
    with session_factory() as db:
        account = db.get(SocialAccount, twitter_account.id)
        credentials = credentials_from_account(account)
    assert credentials.access_token == "fresh-access"
    assert credentials.refresh_token == "fresh-refresh"
    assert account.token_expires_at == now + timedelta(hours=2)
    assert account.last_refreshed_at == now


def test_refresh_auth_failure_deactivates_account(db_session, session_factory, twitter_account, now):
    twitter_account.token_expires_at = now + timedelta(hours=1)
    db_session.commit()
    adapter = FakeAdapter(error=PlatformAuthError("invalid_grant"))

    report = asyncio.run(refresh_expiring_tokens(session_factory, adapter_resolver=lambda platform: adapter, clock=lambda: now))

    assert (report.refreshed, report.failed, report.deactivated) == (0, 1, 1)
    with session_factory() as db:
        assert db.get(SocialAccount, twitter_account.id).is_active is False


def test_transient_refresh_failure_keeps_account_active(db_session, session_factory, twitter_account, now):
    twitter_account.token_expires_at = now + timedelta(hours=1)
    db_session.commit()
    adapter = FakeAdapter(error=PlatformUnavailableError("timeout"))

    report = asyncio.run(refresh_expiring_tokens(session_factory, adapter_resolver=lambda platform: adapter, clock=lambda: now))

    assert (report.failed, report.deactivated) == (1, 0)
    with session_factory() as db:
        assert db.get(SocialAccount, twitter_account.id).is_active is True


def test_missing_twitter_client_configuration_keeps_account_active(
    db_session, session_factory, twitter_account, now, monkeypatch
):
    monkeypatch.setattr(settings, "twitter_client_id", None)
    monkeypatch.setattr(settings, "twitter_client_secret", None)
    twitter_account.token_expires_at = now + timedelta(hours=1)
    db_session.commit()

    report = asyncio.run(
        refresh_expiring_tokens(
            session_factory,
            adapter_resolver=lambda platform: TwitterAdapter(clock=lambda: now),
            clock=lambda: now,
        )
    )

    assert (report.refreshed, report.failed, report.deactivated) == (0, 1, 0)
    with session_factory() as db:
        assert db.get(SocialAccount, twitter_account.id).is_active is True


def test_unexpected_refresh_error_does_not_stop_other_accounts(
    db_session, session_factory, twitter_account, threads_account, now
):
    twitter_account.token_expires_at = now + timedelta(hours=1)
    threads_account.token_expires_at = now + timedelta(hours=2)
    db_session.commit()
    adapters = {
        "twitter": FakeAdapter(error=KeyError("expires_in")),
        "threads": FakeAdapter(tokens=RefreshedTokens(access_token="threads-fresh", refresh_token=None, expires_in_seconds=3600)),
    }

    report = asyncio.run(
        refresh_expiring_tokens(session_factory, adapter_resolver=lambda platform: adapters[platform], clock=lambda: now)
    )

    assert (report.refreshed, report.failed, report.deactivated) == (1, 1, 0)
    assert adapters["twitter"].refreshed == ["acme"]
    assert adapters["threads"].refreshed == ["acme.threads"]
    with session_factory() as db:
        assert db.get(SocialAccount, twitter_account.id).is_active is True
        threads = db.get(SocialAccount, threads_account.id)
        assert credentials_from_account(threads).access_token == "threads-fresh"
