import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import utc_now
from app.core.security import encrypt_secret
from app.domain.errors import NotFoundError, ValidationError
from app.domain.models.social_account import Platform, SocialAccount

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = {platform.value for platform in Platform}


def normalize_platform(platform: str) -> str:
    normalized_platform = platform.strip().lower()
    if normalized_platform not in SUPPORTED_PLATFORMS:
        raise ValidationError(f"Unsupported platform: {normalized_platform}")
    return normalized_platform


def connect_account(
    db: Session,
    *,
    user_id: UUID,
    platform: str,
    external_account_id: str,
    username: str,
    display_name: str | None = None,
    access_token: str | None = None,
    refresh_token: str | None = None,
    token_expires_at: datetime | None = None,
) -> SocialAccount:
    normalized_platform = normalize_platform(platform)
    account = db.execute(
        select(SocialAccount).where(
            SocialAccount.user_id == user_id,
            SocialAccount.platform == normalized_platform,
            SocialAccount.external_account_id == external_account_id,
        )
    ).scalar_one_or_none()

    if account is None:
        account = SocialAccount(
            user_id=user_id,
            platform=normalized_platform,
            external_account_id=external_account_id,
            username=username,
            display_name=display_name,
            access_token=(encrypt_secret(access_token) if access_token else None),
            refresh_token=(encrypt_secret(refresh_token) if refresh_token else None),
            token_expires_at=token_expires_at,
            is_active=True,
        )
    else:
        account.username = username
        account.display_name = display_name
        account.access_token = encrypt_secret(access_token) if access_token else account.access_token
        account.refresh_token = (
            encrypt_secret(refresh_token) if refresh_token else account.refresh_token
        )
        account.token_expires_at = token_expires_at if token_expires_at is not None else account.token_expires_at
        account.is_active = True

    db.add(account)
    db.flush()
    logger.info(
        "social_account_connected user_id=%s platform=%s account_id=%s",
        user_id,
        normalized_platform,
        account.id,
    )
    return account


def get_account(db: Session, account_id: UUID) -> SocialAccount | None:
    return db.get(SocialAccount, account_id)


def get_account_for_user(db: Session, *, user_id: UUID, account_id: UUID) -> SocialAccount:
    account = db.execute(
        select(SocialAccount).where(SocialAccount.id == account_id, SocialAccount.user_id == user_id)
    ).scalar_one_or_none()
    if account is None:
        raise NotFoundError("Social account not found")
    return account


def list_accounts(db: Session, *, user_id: UUID, platform: str | None = None) -> list[SocialAccount]:
    query = select(SocialAccount).where(SocialAccount.user_id == user_id)
    if platform:
        query = query.where(SocialAccount.platform == normalize_platform(platform))
    return list(db.execute(query.order_by(SocialAccount.created_at.asc())).scalars().all())


def deactivate_account(db: Session, *, account: SocialAccount, reason: str | None = None) -> SocialAccount:
    account.is_active = False
    db.add(account)
    db.flush()
    logger.warning(
        "social_account_deactivated account_id=%s platform=%s reason=%s",
        account.id,
        account.platform,
        reason,
    )
    return account


def update_account_tokens(
    db: Session,
    *,
    account: SocialAccount,
    access_token: str | None,
    refresh_token: str | None,
    expires_in_seconds: int | None = None,
    now: datetime | None = None,
) -> SocialAccount:
    current_time = now or utc_now()
    if access_token:
        account.access_token = encrypt_secret(access_token)
    if refresh_token:
        account.refresh_token = encrypt_secret(refresh_token)
    if expires_in_seconds is not None:
        account.token_expires_at = current_time + timedelta(seconds=max(1, int(expires_in_seconds)))
    account.last_refreshed_at = current_time
    db.add(account)
    db.flush()
    return account


def accounts_expiring_within(db: Session, *, hours: int, now: datetime | None = None) -> list[SocialAccount]:
    threshold = (now or utc_now()) + timedelta(hours=hours)
    return list(
        db.execute(
            select(SocialAccount)
            .where(
                SocialAccount.is_active.is_(True),
                SocialAccount.token_expires_at.is_not(None),
                SocialAccount.token_expires_at <= threshold,
            )
            .order_by(SocialAccount.token_expires_at.asc())
        )
        .scalars()
        .all()
    )
