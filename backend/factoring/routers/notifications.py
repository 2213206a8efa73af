"""Notification API endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from factoring.core.auth import Actor, get_current_actor
from factoring.core.cache import CacheBackend, CacheUnavailable, get_cache
from factoring.core.database import get_db
from factoring.core.exceptions import MarketplaceError, to_http_exception
from factoring.models.notification import Notification
from factoring.schemas.notification import (
    MarkAllReadResponse,
    NotificationCountResponse,
    NotificationResponse,
)
from factoring.services.marketplace_cache import MarketplaceCache
from factoring.services.notification_service import NotificationService

router = APIRouter()


@router.get(
    "/",
    response_model=list[NotificationResponse],
    summary="List notifications",
    responses={401: {"description": "Unauthorized – invalid or missing access token"}},
)
async def list_notifications(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    category: str | None = None,
    is_read: bool | None = None,
    order_by: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Notification]:
    """List the caller's notifications with optional filters."""
    return NotificationService(db).list_for_user(
        actor.user_id,
        skip=skip,
        limit=limit,
        category=category,
        is_read=is_read,
        order_by=order_by,
    )


@router.get(
    "/unread_count",
    response_model=NotificationCountResponse,
    summary="Get unread notification count",
    responses={401: {"description": "Unauthorized – invalid or missing access token"}},
)
async def get_unread_count(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> NotificationCountResponse:
    count = NotificationService(db).unread_count(actor.user_id)
    return NotificationCountResponse(unread_count=count)


@router.get(
    "/recent",
    summary="Recent real-time marketplace notices",
    responses={401: {"description": "Unauthorized – invalid or missing access token"}},
)
async def recent_notices(
    limit: int = Query(default=20, ge=1, le=50),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> list[Any]:
    """The last notices pushed to the caller's live channel; empty when the cache is down."""
    try:
        return await MarketplaceCache(cache).recent_notifications(actor.user_id, limit)
    except CacheUnavailable:
        return []


@router.post(
    "/{notification_id}/read",
    response_model=NotificationResponse,
    summary="Mark a notification as read",
    responses={
        401: {"description": "Unauthorized – invalid or missing access token"},
        404: {"description": "Notification not found"},
    },
)
async def mark_as_read(
    notification_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Notification:
    try:
        return NotificationService(db).mark_as_read(actor.user_id, notification_id)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/read_all",
    response_model=MarkAllReadResponse,
    summary="Mark all notifications as read",
    responses={401: {"description": "Unauthorized – invalid or missing access token"}},
)
async def mark_all_as_read(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> MarkAllReadResponse:
    count = NotificationService(db).mark_all_as_read(actor.user_id)
    return MarkAllReadResponse(marked_count=count)
