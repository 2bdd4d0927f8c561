"""ChatMessage model — one immutable entry in a conversation transcript."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, JSONType, UUIDPrimaryKeyMixin, utcnow
from src.models.enums import MessageKind, enum_values


class ChatMessage(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "chat_messages"

    # Ordering key: (thread_id, sequence) is the per-conversation total order.
    thread_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat_sessions.id", ondelete="CASCADE")
    )
    ticket_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("support_tickets.id", ondelete="CASCADE")
    )

    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sender_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL")
    )
    kind: Mapped[MessageKind] = mapped_column(
        SQLAlchemyEnum(MessageKind, name="messagekind", values_callable=enum_values),
        default=MessageKind.TEXT,
        server_default="text",
        nullable=False,
    )
    attachment_urls: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("thread_id", "sequence", name="uq_chat_messages_thread_sequence"),
        Index("ix_chat_messages_session_id", "session_id"),
        Index("ix_chat_messages_ticket_id", "ticket_id"),
    )

    def __repr__(self) -> str:
        return f"<ChatMessage id={self.id} thread={self.thread_id} seq={self.sequence}>"
