from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.application.services.social_account_service import (
    connect_account,
    deactivate_account,
    get_account_for_user,
    list_accounts,
)
from app.domain.models.social_account import Platform, SocialAccount
from app.infrastructure.db.session import get_db
from app.interfaces.api.deps import get_current_user_id
from app.interfaces.api.errors import domain_errors

router = APIRouter(prefix="/accounts", tags=["accounts"])


class AccountConnectRequest(BaseModel):
    platform: Platform
    external_account_id: str = Field(min_length=1, max_length=255)
    username: str = Field(min_length=1, max_length=255)
    display_name: str | None = Field(default=None, max_length=255)
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    token_expires_at: datetime | None = None


def _serialize_account(account: SocialAccount) -> dict:
    # Tokens never leave the service.
    return {
        "id": str(account.id),
        "platform": account.platform,
        "external_account_id": account.external_account_id,
        "username": account.username,
        "display_name": account.display_name,
        "is_active": account.is_active,
        "token_expires_at": account.token_expires_at.isoformat() if account.token_expires_at else None,
        "last_refreshed_at": account.last_refreshed_at.isoformat() if account.last_refreshed_at else None,
        "created_at": account.created_at.isoformat(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def connect_account_endpoint(
    payload: AccountConnectRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        account = connect_account(
            db,
            user_id=user_id,
            platform=payload.platform.value,
            external_account_id=payload.external_account_id,
            username=payload.username,
            display_name=payload.display_name,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            token_expires_at=payload.token_expires_at,
        )
    db.commit()
    return _serialize_account(account)


@router.get("")
def list_accounts_endpoint(
    platform: Platform | None = Query(default=None),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> list[dict]:
    rows = list_accounts(db, user_id=user_id, platform=platform.value if platform else None)
    return [_serialize_account(row) for row in rows]


@router.delete("/{account_id}")
def deactivate_account_endpoint(
    account_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        account = get_account_for_user(db, user_id=user_id, account_id=account_id)
    deactivate_account(db, account=account, reason="disconnected_by_user")
    db.commit()
    return _serialize_account(account)
