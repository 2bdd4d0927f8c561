"""Notification API router — list, count, mark read, respond."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.session import get_db
from src.models.enums import NotificationAudience
from src.modules.identity.auth import AuthenticatedUser, get_current_user
from src.modules.notification.constants import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT
from src.modules.notification.dispatcher import NotificationDispatcher, Recipient
from src.modules.notification.schemas import (
    MarkAllReadResponse,
    NotificationCountResponse,
    NotificationListResponse,
    NotificationRespondRequest,
    NotificationResponse,
    NotificationSummaryResponse,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _recipient(user: AuthenticatedUser) -> Recipient:
    audience = NotificationAudience.ADMIN if user.is_admin else NotificationAudience.CUSTOMER
    return Recipient(audience, user_id=user.id, email=user.email)


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's notifications, newest first."""
    dispatcher = NotificationDispatcher(db)
    items, total = await dispatcher.list_for(
        _recipient(user), unread_only=unread_only, limit=limit, offset=offset
    )
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/count", response_model=NotificationCountResponse)
async def unread_count(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    dispatcher = NotificationDispatcher(db)
    return NotificationCountResponse(unread=await dispatcher.unread_count(_recipient(user)))


@router.get("/summary", response_model=NotificationSummaryResponse)
async def notification_summary(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    dispatcher = NotificationDispatcher(db)
    return NotificationSummaryResponse(**await dispatcher.summary(_recipient(user)))


@router.patch("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    dispatcher = NotificationDispatcher(db)
    return MarkAllReadResponse(updated=await dispatcher.mark_all_read(_recipient(user)))


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark one notification read; already-read notifications are returned unchanged."""
    dispatcher = NotificationDispatcher(db)
    notification = await dispatcher.mark_read(notification_id, _recipient(user))
    return NotificationResponse.model_validate(notification)


@router.post("/{notification_id}/respond", response_model=NotificationResponse)
async def respond(
    notification_id: uuid.UUID,
    body: NotificationRespondRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Answer an action-required notification."""
    dispatcher = NotificationDispatcher(db)
    notification = await dispatcher.respond(
        notification_id, _recipient(user), body.action, body.response
    )
    return NotificationResponse.model_validate(notification)
