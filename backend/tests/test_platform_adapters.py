import asyncio
import base64
import json
import uuid
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from app.core.config import settings
from app.integrations.platform_adapters import (
    AccountCredentials,
    AdapterConfigurationError,
    AdapterResolutionError,
    ContentTooLongError,
    PlatformAuthError,
    PlatformRateLimitedError,
    PlatformUnavailableError,
    PublishError,
    TokenExpiredError,
    get_adapter_capabilities,
    get_platform_adapter,
    list_registered_platforms,
)
from app.integrations.platform_adapters.threads_adapter import ThreadsAdapter
from app.integrations.platform_adapters.twitter_adapter import TwitterAdapter

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _credentials(platform: str, **overrides) -> AccountCredentials:
    values = {
        "account_id": uuid.uuid4(),
        "platform": platform,
        "external_account_id": "th-2002" if platform == "threads" else "tw-1001",
        "username": "acme",
        "access_token": "secret-access",
        "refresh_token": "secret-refresh",
        "token_expires_at": NOW + timedelta(days=1),
    }
    values.update(overrides)
    return AccountCredentials(**values)


def _run(adapter_cls, handler, call):
    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await call(adapter_cls(client, clock=lambda: NOW))

    return asyncio.run(_go())


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode("utf-8")).items()}


def test_twitter_publish_posts_text_and_builds_public_url():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"data": {"id": "1789", "text": "Hello"}})

    result = _run(TwitterAdapter, handler, lambda adapter: adapter.publish(_credentials("twitter"), "  Hello  "))

    assert str(seen[0].url) == "https://api.x.com/2/tweets"
    assert seen[0].headers["Authorization"] == "Bearer secret-access"
    assert json.loads(seen[0].content) == {"text": "Hello"}
    assert result.platform_post_id == "1789"
    assert result.url == "https://twitter.com/acme/status/1789"
    assert result.published_at == NOW
    assert result.metadata == {}


def test_twitter_publish_rejects_over_length_content_without_request():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(201, json={"data": {"id": "42"}})

    with pytest.raises(ContentTooLongError) as exc_info:
        _run(TwitterAdapter, handler, lambda adapter: adapter.publish(_credentials("twitter"), "x" * 300 + " END"))

    assert calls == []
    assert exc_info.value.error_code == "content_too_long"


def test_twitter_length_is_weighted():
    assert TwitterAdapter.content_length("hello") == 5
    assert TwitterAdapter.content_length("see https://example.test/a/very/long/path/that/keeps/going") == 4 + 23
    assert TwitterAdapter.content_length("日本語") == 6
    TwitterAdapter.check_content_length("a" * 280)
    with pytest.raises(ContentTooLongError):
        TwitterAdapter.check_content_length("日" * 141)


def test_twitter_publish_warns_about_skipped_media():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"data": {"id": "42"}})

    text = "a" * 280
    result = _run(
        TwitterAdapter,
        handler,
        lambda adapter: adapter.publish(_credentials("twitter"), text, ["https://cdn.example.test/a.png"]),
    )

    assert bodies[0]["text"] == text
    assert "truncated" not in result.metadata
    assert result.metadata["skipped_media_urls"] == ["https://cdn.example.test/a.png"]
    assert "warning" in result.metadata


def test_expired_token_fails_before_any_request():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(201, json={"data": {"id": "1"}})

    credentials = _credentials("twitter", token_expires_at=NOW - timedelta(minutes=1))
    with pytest.raises(TokenExpiredError) as exc_info:
        _run(TwitterAdapter, handler, lambda adapter: adapter.publish(credentials, "Hello"))

    assert calls == []
    assert exc_info.value.error_code == "token_expired"


@pytest.mark.parametrize(
    ("status_code", "expected_error"),
    [
        (401, PlatformAuthError),
        (403, PlatformAuthError),
        (429, PlatformRateLimitedError),
        (503, PlatformUnavailableError),
    ],
)
def test_http_status_maps_to_publish_error_subclass(status_code, expected_error):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"detail": "nope"})

    with pytest.raises(expected_error):
        _run(TwitterAdapter, handler, lambda adapter: adapter.publish(_credentials("twitter"), "Hello"))


def test_other_client_errors_are_plain_publish_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"errors": [{"message": "duplicate content"}]})

    with pytest.raises(PublishError, match="duplicate content") as exc_info:
        _run(TwitterAdapter, handler, lambda adapter: adapter.publish(_credentials("twitter"), "Hello"))
    assert type(exc_info.value) is PublishError


def test_transport_failure_is_platform_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PlatformUnavailableError):
        _run(TwitterAdapter, handler, lambda adapter: adapter.publish(_credentials("twitter"), "Hello"))


def test_twitter_fetch_metrics_reads_public_metrics():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/2/tweets/1789"
        return httpx.Response(
            200,
            json={
                "data": {
                    "id": "1789",
                    "public_metrics": {
                        "impression_count": 900,
                        "like_count": 12,
                        "retweet_count": 3,
                        "reply_count": 2,
                        "quote_count": 1,
                    },
                }
            },
        )

    metrics = _run(TwitterAdapter, handler, lambda adapter: adapter.fetch_metrics(_credentials("twitter"), "1789"))

    assert (metrics.views, metrics.likes, metrics.reposts, metrics.replies, metrics.quotes) == (900, 12, 3, 2, 1)


def test_twitter_refresh_uses_refresh_grant_with_basic_auth(monkeypatch):
    monkeypatch.setattr(settings, "twitter_client_id", "client-id")
    monkeypatch.setattr(settings, "twitter_client_secret", "client-secret")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 7200})

    tokens = _run(TwitterAdapter, handler, lambda adapter: adapter.refresh_credentials(_credentials("twitter")))

    expected_auth = base64.b64encode(b"client-id:client-secret").decode("ascii")
    assert seen[0].headers["Authorization"] == f"Basic {expected_auth}"
    assert _form(seen[0])["grant_type"] == "refresh_token"
    assert _form(seen[0])["refresh_token"] == "secret-refresh"
    assert tokens.access_token == "new-access"
    assert tokens.refresh_token == "new-refresh"
    assert tokens.expires_in_seconds == 7200


def test_twitter_refresh_rejection_is_auth_error(monkeypatch):
    monkeypatch.setattr(settings, "twitter_client_id", "client-id")
    monkeypatch.setattr(settings, "twitter_client_secret", "client-secret")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    with pytest.raises(PlatformAuthError):
        _run(TwitterAdapter, handler, lambda adapter: adapter.refresh_credentials(_credentials("twitter")))


def test_twitter_refresh_without_client_configuration_is_not_an_auth_error(monkeypatch):
    monkeypatch.setattr(settings, "twitter_client_id", None)
    monkeypatch.setattr(settings, "twitter_client_secret", None)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(AdapterConfigurationError) as exc_info:
        _run(TwitterAdapter, handler, lambda adapter: adapter.refresh_credentials(_credentials("twitter")))

    assert not isinstance(exc_info.value, PlatformAuthError)
    assert calls == []


def test_threads_publish_creates_then_publishes_container():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/threads"):
            return httpx.Response(200, json={"id": "container-7"})
        return httpx.Response(200, json={"id": "media-99"})

    result = _run(
        ThreadsAdapter,
        handler,
        lambda adapter: adapter.publish(
            _credentials("threads"),
            "Launch",
            ["https://cdn.example.test/a.jpg", "https://cdn.example.test/b.jpg"],
        ),
    )

    assert [request.url.path for request in seen] == ["/v1.0/th-2002/threads", "/v1.0/th-2002/threads_publish"]
    create_form = _form(seen[0])
    assert create_form["media_type"] == "IMAGE"
    assert create_form["image_url"] == "https://cdn.example.test/a.jpg"
    assert create_form["text"] == "Launch"
    assert _form(seen[1])["creation_id"] == "container-7"
    assert result.platform_post_id == "media-99"
    assert result.url == "https://www.threads.net/@acme/media-99"
    assert result.metadata["media_type"] == "IMAGE"
    assert "warning" in result.metadata


def test_threads_detects_video_media():
    forms: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        forms.append(_form(request))
        return httpx.Response(200, json={"id": "x1"})

    _run(
        ThreadsAdapter,
        handler,
        lambda adapter: adapter.publish(_credentials("threads"), "Clip", ["https://cdn.example.test/clip.MP4?sig=1"]),
    )

    assert forms[0]["media_type"] == "VIDEO"
    assert forms[0]["video_url"] == "https://cdn.example.test/clip.MP4?sig=1"


def test_threads_fetch_metrics():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["fields"] == "like_count,reply_count,repost_count,quote_count,views"
        return httpx.Response(
            200,
            json={"id": "media-99", "views": 50, "like_count": 5, "reply_count": 1, "repost_count": 2, "quote_count": 0},
        )

    metrics = _run(ThreadsAdapter, handler, lambda adapter: adapter.fetch_metrics(_credentials("threads"), "media-99"))

    assert (metrics.views, metrics.likes, metrics.reposts, metrics.replies, metrics.quotes) == (50, 5, 2, 1, 0)


def test_threads_refresh_keeps_no_refresh_token():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["grant_type"] == "th_refresh_token"
        return httpx.Response(200, json={"access_token": "long-lived", "expires_in": 5184000})

    tokens = _run(ThreadsAdapter, handler, lambda adapter: adapter.refresh_credentials(_credentials("threads")))

    assert tokens.access_token == "long-lived"
    assert tokens.refresh_token is None
    assert tokens.expires_in_seconds == 5184000


def test_registry_discovers_both_platforms():
    assert {"threads", "twitter"} <= set(list_registered_platforms())
    assert get_adapter_capabilities("Twitter")["max_length"] == 280
    assert isinstance(get_platform_adapter("threads"), ThreadsAdapter)


def test_unknown_platform_resolution():
    with pytest.raises(AdapterResolutionError):
        get_platform_adapter("myspace")

    fallback = get_platform_adapter("myspace", strict=False)
    with pytest.raises(AdapterResolutionError):
        asyncio.run(fallback.publish(_credentials("myspace"), "Hello"))
