"""Pydantic v2 schemas for notification endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import (
    NotificationAudience,
    NotificationMethod,
    NotificationPriority,
    NotificationType,
)


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    audience: NotificationAudience
    type: NotificationType
    title: str
    message: str
    link_url: str | None = None
    ticket_id: uuid.UUID | None = None
    session_id: uuid.UUID | None = None
    priority: NotificationPriority
    action_required: bool
    notification_method: NotificationMethod
    is_read: bool
    read_at: datetime | None = None
    response: str | None = None
    response_action: str | None = None
    responded_at: datetime | None = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    total: int
    limit: int
    offset: int


class NotificationCountResponse(BaseModel):
    unread: int


class NotificationSummaryResponse(BaseModel):
    total: int
    unread: int
    urgent_unread: int
    awaiting_action: int


class MarkAllReadResponse(BaseModel):
    updated: int


class NotificationRespondRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=50)
    response: str | None = Field(None, max_length=5000)
