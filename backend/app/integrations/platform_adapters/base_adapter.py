from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

import httpx

from app.core.clock import utc_now
from app.core.config import settings
from app.integrations.platform_adapters.credentials import AccountCredentials


class AdapterResolutionError(RuntimeError):
    error_code: str = "adapter_not_found"


class PublishError(RuntimeError):
    error_code: str = "publish_error"


class TokenExpiredError(PublishError):
    error_code = "token_expired"


class PlatformAuthError(PublishError):
    error_code = "platform_auth_error"


class PlatformRateLimitedError(PublishError):
    error_code = "platform_rate_limited"


class PlatformUnavailableError(PublishError):
    error_code = "platform_unavailable"


class AdapterConfigurationError(PublishError):
    error_code = "adapter_misconfigured"


class ContentTooLongError(PublishError):
    error_code = "content_too_long"


@dataclass(frozen=True)
class PublishResult:
    platform_post_id: str
    published_at: datetime
    url: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PostMetrics:
    views: int = 0
    likes: int = 0
    reposts: int = 0
    replies: int = 0
    quotes: int = 0
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RefreshedTokens:
    access_token: str
    refresh_token: str | None
    expires_in_seconds: int | None


class BasePlatformAdapter(ABC):
    """Stateless translation layer between a schedule and one platform API.

    Adapters never retry; every failure surfaces as a PublishError and the
    dispatcher decides what happens next.
    """

    platform: ClassVar[str] = ""
    is_fallback: ClassVar[bool] = False

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.adapter_timeout_seconds
        self._clock = clock

    @classmethod
    def get_capabilities(cls) -> dict:
        return {
            "text": True,
            "image": False,
            "video": False,
            "max_length": 500,
        }

    @classmethod
    def content_length(cls, content: str) -> int:
        return len(content.strip())

    @classmethod
    def check_content_length(cls, content: str) -> None:
        max_length = cls.get_capabilities().get("max_length")
        if max_length is None:
            return
        length = cls.content_length(content)
        if length > int(max_length):
            raise ContentTooLongError(f"{cls.platform} content is {length} characters; the limit is {max_length}")

    async def publish(
        self,
        credentials: AccountCredentials,
        content: str,
        media_urls: list[str] | None = None,
    ) -> PublishResult:
        self._ensure_token_valid(credentials)
        self.check_content_length(content)
        return await self._publish(credentials, content, list(media_urls or []))

    async def fetch_metrics(self, credentials: AccountCredentials, platform_post_id: str) -> PostMetrics:
        self._ensure_token_valid(credentials)
        return await self._fetch_metrics(credentials, platform_post_id)

    @abstractmethod
    async def _publish(self, credentials: AccountCredentials, content: str, media_urls: list[str]) -> PublishResult:
        raise NotImplementedError

    @abstractmethod
    async def _fetch_metrics(self, credentials: AccountCredentials, platform_post_id: str) -> PostMetrics:
        raise NotImplementedError

    @abstractmethod
    async def refresh_credentials(self, credentials: AccountCredentials) -> RefreshedTokens:
        raise NotImplementedError

    def _ensure_token_valid(self, credentials: AccountCredentials) -> None:
        if credentials.is_expired(self._clock()):
            raise TokenExpiredError(
                f"{self.platform} access token expired at {credentials.token_expires_at.isoformat()}; re-authentication required"
            )
        if not credentials.access_token:
            raise PlatformAuthError(f"{self.platform} access token unavailable")

    @asynccontextmanager
    async def _http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client

    async def _request(self, method: str, url: str, *, action: str, **kwargs) -> httpx.Response:
        try:
            async with self._http_client() as client:
                return await client.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except httpx.TimeoutException as exc:
            raise PlatformUnavailableError(f"{self.platform} {action} timed out") from exc
        except httpx.TransportError as exc:
            raise PlatformUnavailableError(f"{self.platform} {action} transport failure: {exc}") from exc

    def _raise_for_status(
        self,
        response: httpx.Response,
        *,
        action: str,
        client_error: type[PublishError] = PublishError,
    ) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        detail = self._error_detail(response)
        if status_code in {401, 403}:
            raise PlatformAuthError(f"{self.platform} {action} unauthorized: {status_code} {detail}")
        if status_code == 429:
            raise PlatformRateLimitedError(f"{self.platform} {action} rate limited: {detail}")
        if status_code >= 500:
            raise PlatformUnavailableError(f"{self.platform} {action} temporary failure: {status_code}")
        raise client_error(f"{self.platform} {action} failed: {status_code} {detail}")

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:300]
        if not isinstance(payload, dict):
            return str(payload)[:300]
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("detail") or errors[0].get("message") or errors[0])
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(payload.get("detail") or payload.get("title") or error or response.reason_phrase)

    @staticmethod
    def _json_object(response: httpx.Response, *, action: str, platform: str) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            raise PublishError(f"{platform} {action} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise PublishError(f"{platform} {action} returned an unexpected payload")
        return payload
