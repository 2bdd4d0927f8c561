"""SupportService — ticket lifecycle orchestration.

Each operation persists through the conversation store, commits, publishes
any transcript entry to live subscribers, and then records notifications.
Notification failures never undo the operation.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.exceptions import NotFoundException, ValidationException
from src.models.chat_message import ChatMessage
from src.models.chat_session import ChatSession
from src.models.enums import TicketPriority, TicketStatus, UserRole
from src.models.support_ticket import SupportTicket
from src.models.user import User
from src.modules.conversation.access import ensure_participant
from src.modules.conversation.schemas import CustomerIdentity, TicketFields
from src.modules.conversation.store import Conversation, ConversationStore
from src.modules.identity.auth import ChatIdentity
from src.modules.notification.dispatcher import NotificationDispatcher
from src.modules.notification.notifier import ConversationNotifier
from src.modules.realtime.router_service import MessageRouter

logger = logging.getLogger(__name__)


class SupportService:
    def __init__(self, db: AsyncSession, router: MessageRouter) -> None:
        self.db = db
        self.router = router
        self.store = ConversationStore(db)

    async def _ticket_event(
        self, ticket_id: uuid.UUID, append: Callable[[], Awaitable[ChatMessage]]
    ) -> tuple[SupportTicket, ChatMessage]:
        """Apply a ticket change whose notice joins the transcript, then broadcast it."""
        ticket = await self.store.get_ticket(ticket_id)
        message = await self.router.append_and_publish(self.db, ticket.thread_id, append)
        return ticket, message

    async def _notify(self, event: Callable[[ConversationNotifier], Awaitable[object]]) -> None:
        dispatcher = NotificationDispatcher(self.db, self.router.delivery)
        try:
            await event(ConversationNotifier(dispatcher))
            await self.db.commit()
        except Exception:
            logger.exception("Failed to record notifications")
            await self.db.rollback()
            return
        await dispatcher.deliver_pending()

    # ------------------------------------------------------------------
    # Customer-facing
    # ------------------------------------------------------------------

    async def create_session(
        self, customer: CustomerIdentity, metadata: dict | None = None
    ) -> ChatSession:
        session = await self.store.create_session(customer, metadata)
        await self.db.commit()
        return session

    async def create_ticket(self, fields: TicketFields, customer: CustomerIdentity) -> SupportTicket:
        ticket = await self.store.create_ticket(
            subject=fields.subject,
            category=fields.category,
            priority=fields.priority,
            customer=customer,
            description=fields.description,
        )
        await self.db.commit()
        await self._notify(lambda notifier: notifier.ticket_created(ticket))
        return ticket

    async def promote_session(
        self, session_id: uuid.UUID, fields: TicketFields, actor: ChatIdentity
    ) -> SupportTicket:
        session = await self.store.get_session(session_id)
        ensure_participant(Conversation(session=session), actor)
        if session.ticket_id is not None:
            return await self.store.get_ticket(session.ticket_id)

        async def promote() -> ChatMessage | None:
            ticket = await self.store.promote_session_to_ticket(session_id, fields)
            messages = await self.store.list_messages(Conversation(session=session, ticket=ticket))
            return messages[-1] if messages else None

        await self.router.append_and_publish(self.db, session.id, promote)
        ticket = await self.store.get_ticket(session.ticket_id)
        await self._notify(lambda notifier: notifier.ticket_created(ticket))
        return ticket

    async def end_session(self, session_id: uuid.UUID, actor: ChatIdentity) -> ChatSession:
        session = await self.store.get_session(session_id)
        ensure_participant(Conversation(session=session), actor)
        session = await self.store.end_session(session_id)
        await self.db.commit()
        return session

    async def get_ticket(self, ticket_id: uuid.UUID, viewer: ChatIdentity) -> SupportTicket:
        ticket = await self.store.get_ticket_with_transitions(ticket_id)
        ensure_participant(Conversation(ticket=ticket), viewer)
        return ticket

    async def list_messages(self, ref: str, viewer: ChatIdentity) -> list[ChatMessage]:
        conversation = await self.store.resolve(ref)
        ensure_participant(conversation, viewer)
        return await self.store.list_messages(conversation)

    async def mark_read(self, ref: str, reader: ChatIdentity) -> int:
        """Mark the other party's messages as read; returns how many changed."""
        conversation = await self.store.resolve(ref)
        ensure_participant(conversation, reader)
        updated = await self.store.mark_messages_read(
            conversation, reader_is_customer=not reader.is_admin
        )
        await self.db.commit()
        return updated

    async def list_sessions(self, customer_user_id: uuid.UUID, **page) -> tuple[list[ChatSession], int]:
        return await self.store.list_sessions(customer_user_id, **page)

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    async def _require_admin_user(self, admin_id: uuid.UUID) -> User:
        result = await self.db.execute(select(User).where(User.id == admin_id))
        admin = result.scalar_one_or_none()
        if admin is None:
            raise NotFoundException(f"User {admin_id} not found")
        if admin.role != UserRole.ADMIN or not admin.is_active:
            raise ValidationException(f"User {admin_id} is not an active admin")
        return admin

    async def transition_status(
        self,
        ticket_id: uuid.UUID,
        new_status: TicketStatus,
        actor_id: uuid.UUID,
        reason: str | None = None,
    ) -> SupportTicket:
        if new_status == TicketStatus.RESOLVED:
            return await self.resolve(ticket_id, actor_id, reason)
        ticket, message = await self._ticket_event(
            ticket_id,
            lambda: self.store.transition_status(ticket_id, new_status, actor_id, reason),
        )
        await self._notify(lambda notifier: notifier.ticket_status_changed(ticket, message))
        return ticket

    async def assign(
        self, ticket_id: uuid.UUID, admin_id: uuid.UUID | None, actor_id: uuid.UUID
    ) -> SupportTicket:
        """Assign to ``admin_id``, or to the acting admin when omitted."""
        assignee = admin_id or actor_id
        await self._require_admin_user(assignee)
        ticket, message = await self._ticket_event(
            ticket_id, lambda: self.store.assign_ticket(ticket_id, assignee, actor_id)
        )
        await self._notify(lambda notifier: notifier.ticket_assigned(ticket, message, actor_id))
        return ticket

    async def escalate(self, ticket_id: uuid.UUID, actor_id: uuid.UUID, reason: str) -> SupportTicket:
        ticket, message = await self._ticket_event(
            ticket_id, lambda: self.store.escalate_ticket(ticket_id, actor_id, reason)
        )
        await self._notify(lambda notifier: notifier.ticket_escalated(ticket, message, actor_id))
        return ticket

    async def resolve(
        self, ticket_id: uuid.UUID, actor_id: uuid.UUID, notes: str | None = None
    ) -> SupportTicket:
        ticket, message = await self._ticket_event(
            ticket_id, lambda: self.store.resolve_ticket(ticket_id, actor_id, notes)
        )
        await self._notify(lambda notifier: notifier.ticket_resolved(ticket, message))
        return ticket

    async def change_priority(
        self, ticket_id: uuid.UUID, priority: TicketPriority
    ) -> SupportTicket:
        ticket = await self.store.change_priority(ticket_id, priority)
        await self.db.commit()
        return ticket

    async def list_tickets(self, **filters) -> tuple[list[SupportTicket], int]:
        return await self.store.list_tickets(**filters)
