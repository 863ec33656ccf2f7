from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.core.security import decrypt_secret
from app.domain.models.social_account import SocialAccount


@dataclass(frozen=True)
class AccountCredentials:
    """Decrypted, session-independent snapshot of a social account."""

    account_id: UUID
    platform: str
    external_account_id: str
    username: str
    access_token: str
    refresh_token: str
    token_expires_at: datetime | None
    is_active: bool = True

    def is_expired(self, now: datetime) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= now

    def __repr__(self) -> str:
        return (
            f"AccountCredentials(account_id={self.account_id!s}, platform={self.platform!r}, "
            f"username={self.username!r}, token_expires_at={self.token_expires_at!r})"
        )


def credentials_from_account(account: SocialAccount) -> AccountCredentials:
    return AccountCredentials(
        account_id=account.id,
        platform=account.platform,
        external_account_id=account.external_account_id,
        username=account.username,
        access_token=decrypt_secret(account.access_token) if account.access_token else "",
        refresh_token=decrypt_secret(account.refresh_token) if account.refresh_token else "",
        token_expires_at=account.token_expires_at,
        is_active=account.is_active,
    )
