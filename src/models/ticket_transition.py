"""TicketTransition model — status transition audit log for tickets."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Text
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, UUIDPrimaryKeyMixin, utcnow
from src.models.enums import TicketStatus, enum_values

if TYPE_CHECKING:
    from src.models.support_ticket import SupportTicket


class TicketTransition(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "ticket_transitions"

    ticket_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("support_tickets.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[TicketStatus] = mapped_column(
        SQLAlchemyEnum(TicketStatus, name="ticketstatus", values_callable=enum_values),
        nullable=False,
    )
    to_status: Mapped[TicketStatus] = mapped_column(
        SQLAlchemyEnum(TicketStatus, name="ticketstatus", values_callable=enum_values),
        nullable=False,
    )
    transitioned_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    ticket: Mapped[SupportTicket] = relationship(
        "SupportTicket", back_populates="transitions", lazy="noload"
    )

    __table_args__ = (
        Index("ix_ticket_transitions_ticket_id", "ticket_id"),
    )
