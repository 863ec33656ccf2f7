import re

from app.core.config import settings
from app.domain.models.social_account import Platform
from app.integrations.platform_adapters.base_adapter import (
    AdapterConfigurationError,
    BasePlatformAdapter,
    PlatformAuthError,
    PostMetrics,
    PublishError,
    PublishResult,
    RefreshedTokens,
)
from app.integrations.platform_adapters.credentials import AccountCredentials

TWITTER_TOKEN_URL = "https://api.x.com/2/oauth2/token"
TWITTER_CREATE_POST_URL = "https://api.x.com/2/tweets"
TWITTER_POST_URL_TEMPLATE = "https://api.x.com/2/tweets/{tweet_id}"
TWITTER_PUBLIC_URL_TEMPLATE = "https://twitter.com/{username}/status/{tweet_id}"

# Weighted counting: links count as 23, code points outside these ranges count as 2.
TWITTER_URL_WEIGHT = 23
TWITTER_LIGHT_RANGES = ((0x0000, 0x10FF), (0x2000, 0x200D), (0x2010, 0x201F), (0x2032, 0x2037))
URL_PATTERN = re.compile(r"https?://\S+")


class TwitterAdapter(BasePlatformAdapter):
    platform = Platform.TWITTER.value

    @classmethod
    def get_capabilities(cls) -> dict:
        return {
            "text": True,
            "image": False,
            "video": False,
            "max_length": 280,
        }

    @classmethod
    def content_length(cls, content: str) -> int:
        text = content.strip()
        length = TWITTER_URL_WEIGHT * len(URL_PATTERN.findall(text))
        for char in URL_PATTERN.sub("", text):
            code_point = ord(char)
            light = any(start <= code_point <= end for start, end in TWITTER_LIGHT_RANGES)
            length += 1 if light else 2
        return length

    def _auth_headers(self, credentials: AccountCredentials) -> dict:
        return {"Authorization": f"Bearer {credentials.access_token}"}

    async def _publish(self, credentials: AccountCredentials, content: str, media_urls: list[str]) -> PublishResult:
        metadata: dict = {}
        text = content.strip()
        if not text:
            raise PublishError("twitter publish rejected: empty content")
        if media_urls:
            metadata["warning"] = "Twitter media upload is not supported; published as text-only."
            metadata["skipped_media_urls"] = media_urls

        response = await self._request(
            "POST",
            TWITTER_CREATE_POST_URL,
            action="publish",
            headers={**self._auth_headers(credentials), "Content-Type": "application/json"},
            json={"text": text},
        )
        self._raise_for_status(response, action="publish")
        payload = self._json_object(response, action="publish", platform=self.platform)

        data = payload.get("data") or {}
        tweet_id = str(data.get("id") or "")
        if not tweet_id:
            raise PublishError("twitter publish response missing post id")

        return PublishResult(
            platform_post_id=tweet_id,
            published_at=self._clock(),
            url=TWITTER_PUBLIC_URL_TEMPLATE.format(username=credentials.username, tweet_id=tweet_id),
            metadata=metadata,
        )

    async def _fetch_metrics(self, credentials: AccountCredentials, platform_post_id: str) -> PostMetrics:
        response = await self._request(
            "GET",
            TWITTER_POST_URL_TEMPLATE.format(tweet_id=platform_post_id),
            action="metrics",
            headers=self._auth_headers(credentials),
            params={"tweet.fields": "public_metrics,created_at"},
        )
        self._raise_for_status(response, action="metrics")
        payload = self._json_object(response, action="metrics", platform=self.platform)
        metrics = (payload.get("data") or {}).get("public_metrics") or {}
        return PostMetrics(
            views=int(metrics.get("impression_count") or 0),
            likes=int(metrics.get("like_count") or 0),
            reposts=int(metrics.get("retweet_count") or 0),
            replies=int(metrics.get("reply_count") or 0),
            quotes=int(metrics.get("quote_count") or 0),
            raw=metrics,
        )

    async def refresh_credentials(self, credentials: AccountCredentials) -> RefreshedTokens:
        if not credentials.refresh_token:
            raise PlatformAuthError("twitter refresh token not available")
        if not settings.twitter_client_id or not settings.twitter_client_secret:
            raise AdapterConfigurationError("twitter OAuth client configuration missing")

        response = await self._request(
            "POST",
            TWITTER_TOKEN_URL,
            action="token refresh",
            data={
                "grant_type": "refresh_token",
                "refresh_token": credentials.refresh_token,
                "client_id": settings.twitter_client_id,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=(settings.twitter_client_id, settings.twitter_client_secret),
        )
        self._raise_for_status(response, action="token refresh", client_error=PlatformAuthError)
        payload = self._json_object(response, action="token refresh", platform=self.platform)

        access_token = str(payload.get("access_token") or "")
        if not access_token:
            raise PlatformAuthError("twitter token refresh response missing access token")
        expires_in = payload.get("expires_in")
        return RefreshedTokens(
            access_token=access_token,
            refresh_token=str(payload.get("refresh_token") or credentials.refresh_token),
            expires_in_seconds=int(expires_in) if expires_in is not None else None,
        )
