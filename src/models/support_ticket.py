"""SupportTicket model — durable, admin-triaged support conversation."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow
from src.models.enums import TicketPriority, TicketStatus, enum_values

if TYPE_CHECKING:
    from src.models.ticket_transition import TicketTransition


class SupportTicket(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "support_tickets"

    ticket_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    priority: Mapped[TicketPriority] = mapped_column(
        SQLAlchemyEnum(TicketPriority, name="ticketpriority", values_callable=enum_values),
        default=TicketPriority.MEDIUM,
        server_default="medium",
        nullable=False,
    )
    status: Mapped[TicketStatus] = mapped_column(
        SQLAlchemyEnum(TicketStatus, name="ticketstatus", values_callable=enum_values),
        default=TicketStatus.OPEN,
        server_default="open",
        nullable=False,
    )

    # Customer identity
    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL")
    )

    assigned_admin_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL")
    )
    # Session this ticket was promoted from; shares its transcript.
    source_session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("chat_sessions.id", ondelete="SET NULL"), unique=True
    )

    # Escalation
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    escalated_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    escalation_reason: Mapped[str | None] = mapped_column(Text)

    # Resolution
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    resolution_notes: Mapped[str | None] = mapped_column(Text)

    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    transitions: Mapped[list[TicketTransition]] = relationship(
        "TicketTransition",
        back_populates="ticket",
        lazy="noload",
        order_by="TicketTransition.created_at",
    )

    __table_args__ = (
        Index("ix_support_tickets_status", "status"),
        Index("ix_support_tickets_assigned_admin_id", "assigned_admin_id"),
        Index("ix_support_tickets_customer_email", "customer_email"),
    )

    @property
    def thread_id(self) -> uuid.UUID:
        return self.source_session_id or self.id

    def __repr__(self) -> str:
        return f"<SupportTicket {self.ticket_number} status={self.status}>"
