from app.domain.models.social_account import Platform
from app.integrations.platform_adapters.base_adapter import (
    BasePlatformAdapter,
    PlatformAuthError,
    PostMetrics,
    PublishError,
    PublishResult,
    RefreshedTokens,
)
from app.integrations.platform_adapters.credentials import AccountCredentials

THREADS_CREATE_URL_TEMPLATE = "https://graph.threads.net/v1.0/{threads_user_id}/threads"
THREADS_PUBLISH_URL_TEMPLATE = "https://graph.threads.net/v1.0/{threads_user_id}/threads_publish"
THREADS_MEDIA_URL_TEMPLATE = "https://graph.threads.net/v1.0/{media_id}"
THREADS_REFRESH_URL = "https://graph.threads.net/refresh_access_token"
THREADS_PUBLIC_URL_TEMPLATE = "https://www.threads.net/@{username}/{media_id}"
THREADS_METRIC_FIELDS = "like_count,reply_count,repost_count,quote_count,views"
VIDEO_EXTENSIONS = (".mp4", ".mov", ".m4v")


class ThreadsAdapter(BasePlatformAdapter):
    platform = Platform.THREADS.value

    @classmethod
    def get_capabilities(cls) -> dict:
        return {
            "text": True,
            "image": True,
            "video": True,
            "max_length": 500,
        }

    async def _publish(self, credentials: AccountCredentials, content: str, media_urls: list[str]) -> PublishResult:
        text = content.strip()
        create_payload: dict = {"media_type": "TEXT", "text": text, "access_token": credentials.access_token}
        metadata: dict = {}
        if media_urls:
            media_url = media_urls[0]
            if media_url.lower().split("?", 1)[0].endswith(VIDEO_EXTENSIONS):
                create_payload["media_type"] = "VIDEO"
                create_payload["video_url"] = media_url
            else:
                create_payload["media_type"] = "IMAGE"
                create_payload["image_url"] = media_url
            metadata["media_source_url"] = media_url
            if len(media_urls) > 1:
                metadata["warning"] = "Only the first media URL is attached on Threads."
        elif not text:
            raise PublishError("threads publish rejected: empty content")

        creation_id = await self._create_container(credentials, create_payload)
        media_id = await self._publish_container(credentials, creation_id)
        metadata["creation_id"] = creation_id
        metadata["media_type"] = create_payload["media_type"]
        return PublishResult(
            platform_post_id=media_id,
            published_at=self._clock(),
            url=THREADS_PUBLIC_URL_TEMPLATE.format(username=credentials.username, media_id=media_id),
            metadata=metadata,
        )

    async def _create_container(self, credentials: AccountCredentials, payload: dict) -> str:
        response = await self._request(
            "POST",
            THREADS_CREATE_URL_TEMPLATE.format(threads_user_id=credentials.external_account_id),
            action="create container",
            data=payload,
        )
        self._raise_for_status(response, action="create container")
        data = self._json_object(response, action="create container", platform=self.platform)
        creation_id = str(data.get("id") or "")
        if not creation_id:
            raise PublishError("threads create container response missing id")
        return creation_id

    async def _publish_container(self, credentials: AccountCredentials, creation_id: str) -> str:
        response = await self._request(
            "POST",
            THREADS_PUBLISH_URL_TEMPLATE.format(threads_user_id=credentials.external_account_id),
            action="publish",
            data={"creation_id": creation_id, "access_token": credentials.access_token},
        )
        self._raise_for_status(response, action="publish")
        data = self._json_object(response, action="publish", platform=self.platform)
        media_id = str(data.get("id") or "")
        if not media_id:
            raise PublishError("threads publish response missing id")
        return media_id

    async def _fetch_metrics(self, credentials: AccountCredentials, platform_post_id: str) -> PostMetrics:
        response = await self._request(
            "GET",
            THREADS_MEDIA_URL_TEMPLATE.format(media_id=platform_post_id),
            action="metrics",
            params={"fields": THREADS_METRIC_FIELDS, "access_token": credentials.access_token},
        )
        self._raise_for_status(response, action="metrics")
        data = self._json_object(response, action="metrics", platform=self.platform)
        return PostMetrics(
            views=int(data.get("views") or 0),
            likes=int(data.get("like_count") or 0),
            reposts=int(data.get("repost_count") or 0),
            replies=int(data.get("reply_count") or 0),
            quotes=int(data.get("quote_count") or 0),
            raw=data,
        )

    async def refresh_credentials(self, credentials: AccountCredentials) -> RefreshedTokens:
        if not credentials.access_token:
            raise PlatformAuthError("threads access token unavailable")
        # Threads long-lived tokens refresh themselves; there is no separate refresh token.
        response = await self._request(
            "GET",
            THREADS_REFRESH_URL,
            action="token refresh",
            params={"grant_type": "th_refresh_token", "access_token": credentials.access_token},
        )
        self._raise_for_status(response, action="token refresh", client_error=PlatformAuthError)
        payload = self._json_object(response, action="token refresh", platform=self.platform)

        access_token = str(payload.get("access_token") or "")
        if not access_token:
            raise PlatformAuthError("threads refresh response missing access token")
        expires_in = payload.get("expires_in")
        return RefreshedTokens(
            access_token=access_token,
            refresh_token=None,
            expires_in_seconds=int(expires_in) if expires_in is not None else None,
        )
