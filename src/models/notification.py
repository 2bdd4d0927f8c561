"""Notification model — durable, recipient-addressed record of an event."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, JSONType, UUIDPrimaryKeyMixin, utcnow
from src.models.enums import (
    NotificationAudience,
    NotificationMethod,
    NotificationPriority,
    NotificationType,
    enum_values,
)


class Notification(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "notifications"

    audience: Mapped[NotificationAudience] = mapped_column(
        SQLAlchemyEnum(
            NotificationAudience, name="notificationaudience", values_callable=enum_values
        ),
        nullable=False,
    )
    # Exactly one recipient: a user, or a bare e-mail for customers without an account.
    recipient_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE")
    )
    recipient_email: Mapped[str | None] = mapped_column(String(255))
    # Normalised recipient identity used for de-duplication.
    recipient_key: Mapped[str] = mapped_column(String(300), nullable=False)

    type: Mapped[NotificationType] = mapped_column(
        SQLAlchemyEnum(NotificationType, name="notificationtype", values_callable=enum_values),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link_url: Mapped[str | None] = mapped_column(String(500))
    ticket_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("support_tickets.id", ondelete="SET NULL")
    )
    session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat_sessions.id", ondelete="SET NULL")
    )
    priority: Mapped[NotificationPriority] = mapped_column(
        SQLAlchemyEnum(
            NotificationPriority, name="notificationpriority", values_callable=enum_values
        ),
        default=NotificationPriority.NORMAL,
        nullable=False,
    )
    action_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_method: Mapped[NotificationMethod] = mapped_column(
        SQLAlchemyEnum(
            NotificationMethod, name="notificationmethod", values_callable=enum_values
        ),
        default=NotificationMethod.NONE,
        nullable=False,
    )
    metadata_extra: Mapped[dict | None] = mapped_column(JSONType)
    dedup_key: Mapped[str | None] = mapped_column(String(255))

    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Customer response to an action-required notification
    response: Mapped[str | None] = mapped_column(Text)
    response_action: Mapped[str | None] = mapped_column(String(50))
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("recipient_key", "dedup_key", name="uq_notifications_recipient_event"),
        Index("ix_notifications_recipient_key", "recipient_key"),
        Index("ix_notifications_unread", "recipient_key", "read_at"),
    )

    @property
    def is_read(self) -> bool:
        return self.read_at is not None
