"""ChatSession model — ephemeral (possibly anonymous) support chat."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin, utcnow
from src.models.enums import SessionStatus, enum_values


class ChatSession(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "chat_sessions"

    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL")
    )
    status: Mapped[SessionStatus] = mapped_column(
        SQLAlchemyEnum(SessionStatus, name="sessionstatus", values_callable=enum_values),
        default=SessionStatus.ACTIVE,
        server_default="active",
        nullable=False,
    )
    # Set once on promotion; never cleared.
    ticket_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("support_tickets.id", ondelete="SET NULL", use_alter=True),
        unique=True,
    )
    metadata_extra: Mapped[dict | None] = mapped_column(JSONType)
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_chat_sessions_customer_email", "customer_email"),
        Index("ix_chat_sessions_status", "status"),
    )

    @property
    def thread_id(self) -> uuid.UUID:
        return self.id

    def __repr__(self) -> str:
        return f"<ChatSession id={self.id} status={self.status} ticket={self.ticket_id}>"
