import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.application.services.post_service import (
    add_variant,
    create_post,
    delete_post,
    deselect_variant,
    get_best_variant,
    get_post_for_user,
    get_selected_variant,
    list_posts,
    list_variants,
    select_variant,
    update_post,
)
from app.application.services.schedule_service import get_schedules_for_post
from app.domain.models.post import Post, PostStatus
from app.domain.models.post_variant import PostVariant
from app.infrastructure.db.session import get_db
from app.interfaces.api.deps import get_current_user_id
from app.interfaces.api.errors import domain_errors
from app.interfaces.api.schedules import serialize_schedule

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/posts", tags=["posts"])


class PostCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    final_content: str | None = None
    media_urls: list[str] = Field(default_factory=list)


class PostUpdateRequest(BaseModel):
    content: str | None = Field(default=None, min_length=1)
    final_content: str | None = None
    media_urls: list[str] | None = None


class VariantCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    score: int = Field(default=0, ge=0, le=100)


def _serialize_variant(variant: PostVariant) -> dict:
    return {
        "id": str(variant.id),
        "post_id": str(variant.post_id),
        "content": variant.content,
        "score": variant.score,
        "is_selected": variant.is_selected,
        "created_at": variant.created_at.isoformat(),
    }


def _serialize_post(post: Post, variants: list[PostVariant] | None = None) -> dict:
    payload = {
        "id": str(post.id),
        "user_id": str(post.user_id),
        "content": post.content,
        "final_content": post.final_content,
        "media_urls": post.media_urls or [],
        "status": post.status,
        "scheduled_for": post.scheduled_for.isoformat() if post.scheduled_for else None,
        "published_at": post.published_at.isoformat() if post.published_at else None,
        "error_message": post.error_message,
        "created_at": post.created_at.isoformat(),
        "updated_at": post.updated_at.isoformat(),
    }
    if variants is not None:
        payload["variants"] = [_serialize_variant(variant) for variant in variants]
    return payload


@router.post("", status_code=status.HTTP_201_CREATED)
def create_post_endpoint(
    payload: PostCreateRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        post = create_post(
            db,
            user_id=user_id,
            content=payload.content,
            final_content=payload.final_content,
            media_urls=payload.media_urls,
        )
    db.commit()
    return _serialize_post(post, variants=[])


@router.get("")
def list_posts_endpoint(
    status_filter: PostStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> list[dict]:
    rows = list_posts(
        db,
        user_id=user_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
    )
    return [_serialize_post(row) for row in rows]


@router.get("/{post_id}")
def get_post_endpoint(
    post_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        post = get_post_for_user(db, user_id=user_id, post_id=post_id)
    return _serialize_post(post, variants=list_variants(db, post_id=post.id))


@router.patch("/{post_id}")
def update_post_endpoint(
    post_id: UUID,
    payload: PostUpdateRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        post = update_post(
            db,
            user_id=user_id,
            post_id=post_id,
            content=payload.content,
            final_content=payload.final_content,
            media_urls=payload.media_urls,
        )
    db.commit()
    return _serialize_post(post)


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_post_endpoint(
    post_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> Response:
    with domain_errors():
        delete_post(db, user_id=user_id, post_id=post_id)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{post_id}/variants", status_code=status.HTTP_201_CREATED)
def add_variant_endpoint(
    post_id: UUID,
    payload: VariantCreateRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        variant = add_variant(db, user_id=user_id, post_id=post_id, content=payload.content, score=payload.score)
    db.commit()
    return _serialize_variant(variant)


@router.get("/{post_id}/variants/best")
def get_best_variant_endpoint(
    post_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict | None:
    with domain_errors():
        variant = get_best_variant(db, user_id=user_id, post_id=post_id)
    return _serialize_variant(variant) if variant is not None else None


@router.get("/{post_id}/variants/selected")
def get_selected_variant_endpoint(
    post_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict | None:
    with domain_errors():
        variant = get_selected_variant(db, user_id=user_id, post_id=post_id)
    return _serialize_variant(variant) if variant is not None else None


@router.post("/{post_id}/variants/{variant_id}/select")
def select_variant_endpoint(
    post_id: UUID,
    variant_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        variant = select_variant(db, user_id=user_id, post_id=post_id, variant_id=variant_id)
    db.commit()
    return _serialize_variant(variant)


@router.post("/{post_id}/variants/{variant_id}/deselect")
def deselect_variant_endpoint(
    post_id: UUID,
    variant_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    with domain_errors():
        variant = deselect_variant(db, user_id=user_id, post_id=post_id, variant_id=variant_id)
    db.commit()
    return _serialize_variant(variant)


@router.get("/{post_id}/schedules")
def list_post_schedules_endpoint(
    post_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> list[dict]:
    with domain_errors():
        rows = get_schedules_for_post(db, user_id=user_id, post_id=post_id)
    return [serialize_schedule(row) for row in rows]
