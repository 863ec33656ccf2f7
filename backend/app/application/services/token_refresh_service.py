import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
from sqlalchemy.orm import Session, sessionmaker

from app.application.services.social_account_service import (
    accounts_expiring_within,
    deactivate_account,
    get_account,
    update_account_tokens,
)
from app.core.clock import utc_now
from app.core.config import settings
from app.integrations.platform_adapters import (
    AdapterResolutionError,
    BasePlatformAdapter,
    PlatformAuthError,
    PublishError,
    credentials_from_account,
    get_platform_adapter,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenRefreshReport:
    refreshed: int
    failed: int
    deactivated: int


async def refresh_expiring_tokens(
    session_factory: sessionmaker[Session],
    *,
    adapter_resolver: Callable[[str], BasePlatformAdapter] | None = None,
    within_hours: int | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> TokenRefreshReport:
    """Refresh every active account whose token expires inside the window.

    Accounts the platform refuses to refresh are deactivated so the
    dispatcher stops publishing through them. Missing client configuration
    and transient failures only count as failed.
    """
    now = clock()
    window = within_hours if within_hours is not None else settings.token_refresh_window_hours
    with session_factory() as db:
        snapshots = []
        for account in accounts_expiring_within(db, hours=window, now=now):
            try:
                snapshots.append(credentials_from_account(account))
            except ValueError:
                logger.warning("token_refresh_skipped account_id=%s reason=unreadable_credentials", account.id)

    refreshed = 0
    failed = 0
    deactivated = 0

    async def _refresh_all(resolver: Callable[[str], BasePlatformAdapter]) -> None:
        nonlocal refreshed, failed, deactivated
        for credentials in snapshots:
            try:
                tokens = await resolver(credentials.platform).refresh_credentials(credentials)
            except (PlatformAuthError, AdapterResolutionError) as exc:
                failed += 1
                deactivated += 1
                logger.error(
                    "token_refresh_denied account_id=%s platform=%s error=%s",
                    credentials.account_id,
                    credentials.platform,
                    exc,
                )
                with session_factory() as db:
                    account = get_account(db, credentials.account_id)
                    if account is not None:
                        deactivate_account(db, account=account, reason=str(exc))
                        db.commit()
                continue
            except PublishError as exc:
                failed += 1
                logger.warning(
                    "token_refresh_failed account_id=%s platform=%s error_code=%s error=%s",
                    credentials.account_id,
                    credentials.platform,
                    exc.error_code,
                    exc,
                )
                continue
            except Exception:
                failed += 1
                logger.exception(
                    "token_refresh_crashed account_id=%s platform=%s",
                    credentials.account_id,
                    credentials.platform,
                )
                continue

            with session_factory() as db:
                account = get_account(db, credentials.account_id)
                if account is None:
                    continue
                update_account_tokens(
                    db,
                    account=account,
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    expires_in_seconds=tokens.expires_in_seconds,
                    now=clock(),
                )
                db.commit()
            refreshed += 1
            logger.info(
                "token_refreshed account_id=%s platform=%s expires_in=%s",
                credentials.account_id,
                credentials.platform,
                tokens.expires_in_seconds,
            )

    if adapter_resolver is not None:
        await _refresh_all(adapter_resolver)
    else:
        async with httpx.AsyncClient(timeout=settings.adapter_timeout_seconds) as client:
            await _refresh_all(lambda platform: get_platform_adapter(platform, client=client, strict=False))

    logger.info(
        "token_refresh_completed refreshed=%s failed=%s deactivated=%s",
        refreshed,
        failed,
        deactivated,
    )
    return TokenRefreshReport(refreshed=refreshed, failed=failed, deactivated=deactivated)
