"""Conversation store — durable sessions, tickets and their ordered transcripts.

The store is the single source of truth for conversation and message state.
It has no network awareness; callers own the transaction (``flush`` only,
never ``commit``).
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config import settings
from src.exceptions import ConflictException, NotFoundException, ValidationException
from src.models.chat_message import ChatMessage
from src.models.chat_session import ChatSession
from src.models.enums import MessageKind, SessionStatus, TicketPriority, TicketStatus
from src.models.support_ticket import SupportTicket
from src.models.ticket_transition import TicketTransition
from src.modules.conversation.constants import (
    DEFAULT_PAGE_LIMIT,
    DEFAULT_TICKET_CATEGORY,
    SESSION_STATUSES_REJECTING_MESSAGES,
    TICKET_NUMBER_DIGITS,
    TICKET_STATUSES_FINAL,
    TICKET_STATUSES_REJECTING_MESSAGES,
    VALID_SESSION_TRANSITIONS,
    VALID_TICKET_TRANSITIONS,
)
from src.modules.conversation.schemas import CustomerIdentity, TicketFields

logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    """A resolved conversation reference: a session, a ticket, or both once promoted."""

    session: ChatSession | None = None
    ticket: SupportTicket | None = None
    # Reached through the guessable ticket number rather than an id
    by_ticket_number: bool = False

    @property
    def thread_id(self) -> uuid.UUID:
        if self.ticket is not None:
            return self.ticket.thread_id
        return self.session.id

    @property
    def session_id(self) -> uuid.UUID | None:
        return self.session.id if self.session is not None else None

    @property
    def ticket_id(self) -> uuid.UUID | None:
        return self.ticket.id if self.ticket is not None else None

    @property
    def assigned_admin_id(self) -> uuid.UUID | None:
        return self.ticket.assigned_admin_id if self.ticket is not None else None

    @property
    def customer_user_id(self) -> uuid.UUID | None:
        owner = self.ticket or self.session
        return owner.customer_user_id

    @property
    def customer_email(self) -> str | None:
        owner = self.ticket or self.session
        return owner.customer_email

    @property
    def customer_name(self) -> str | None:
        owner = self.ticket or self.session
        return owner.customer_name

    @property
    def label(self) -> str:
        if self.ticket is not None:
            return f"{self.ticket.ticket_number}: {self.ticket.subject}"
        return f"chat with {self.customer_name or self.customer_email or 'guest'}"

    @property
    def accepts_messages(self) -> bool:
        # A promoted session follows its ticket's lifecycle
        if self.ticket is not None:
            return self.ticket.status not in TICKET_STATUSES_REJECTING_MESSAGES
        return self.session.status not in SESSION_STATUSES_REJECTING_MESSAGES


def _validate_customer(customer: CustomerIdentity) -> None:
    if not (customer.email and customer.email.strip()) and customer.user_id is None:
        raise ValidationException(
            "Customer identity requires an email address or a linked user id",
            details=[{"field": "customer_email", "message": "email or user id required"}],
        )


class ConversationStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    async def get_session(self, session_id: uuid.UUID) -> ChatSession:
        session = await self.db.get(ChatSession, session_id)
        if session is None:
            raise NotFoundException(f"Chat session {session_id} not found")
        return session

    async def get_ticket(self, ticket_id: uuid.UUID) -> SupportTicket:
        ticket = await self.db.get(SupportTicket, ticket_id)
        if ticket is None:
            raise NotFoundException(f"Support ticket {ticket_id} not found")
        return ticket

    async def get_ticket_with_transitions(self, ticket_id: uuid.UUID) -> SupportTicket:
        result = await self.db.execute(
            select(SupportTicket)
            .options(selectinload(SupportTicket.transitions))
            .where(SupportTicket.id == ticket_id)
        )
        ticket = result.scalar_one_or_none()
        if ticket is None:
            raise NotFoundException(f"Support ticket {ticket_id} not found")
        return ticket

    async def resolve(self, ref: str | uuid.UUID) -> Conversation:
        """Resolve a session id, ticket id or ticket number to a conversation.

        Promoted sessions and their tickets resolve to the same pair.
        """
        ticket: SupportTicket | None = None
        session: ChatSession | None = None

        try:
            ref_id = ref if isinstance(ref, uuid.UUID) else uuid.UUID(str(ref))
        except ValueError:
            ref_id = None

        if ref_id is not None:
            session = await self.db.get(ChatSession, ref_id)
            if session is None:
                ticket = await self.db.get(SupportTicket, ref_id)
        else:
            result = await self.db.execute(
                select(SupportTicket).where(SupportTicket.ticket_number == str(ref))
            )
            ticket = result.scalar_one_or_none()

        if session is None and ticket is None:
            raise NotFoundException(f"Conversation {ref} not found")

        if session is not None and session.ticket_id is not None:
            ticket = await self.db.get(SupportTicket, session.ticket_id)
        elif ticket is not None and ticket.source_session_id is not None:
            session = await self.db.get(ChatSession, ticket.source_session_id)

        return Conversation(session=session, ticket=ticket, by_ticket_number=ref_id is None)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_session(
        self, customer: CustomerIdentity, metadata: dict | None = None
    ) -> ChatSession:
        """Create an ephemeral guest conversation in ACTIVE status."""
        _validate_customer(customer)
        session = ChatSession(
            customer_email=customer.email,
            customer_name=customer.name,
            customer_user_id=customer.user_id,
            status=SessionStatus.ACTIVE,
            metadata_extra=metadata,
        )
        self.db.add(session)
        await self.db.flush()
        logger.info("Created chat session %s", session.id)
        return session

    def _generate_ticket_number(self) -> str:
        year = datetime.now(UTC).year
        serial = secrets.randbelow(10**TICKET_NUMBER_DIGITS)
        return f"{settings.ticket_number_prefix}-{year}-{serial:0{TICKET_NUMBER_DIGITS}d}"

    async def create_ticket(
        self,
        subject: str,
        category: str | None,
        priority: TicketPriority | None,
        customer: CustomerIdentity,
        description: str = "",
        source_session_id: uuid.UUID | None = None,
    ) -> SupportTicket:
        """Create a durable ticket in OPEN status with a unique ticket number."""
        _validate_customer(customer)
        if not subject or not subject.strip():
            raise ValidationException("Ticket subject is required")

        for attempt in range(1, settings.ticket_number_max_attempts + 1):
            ticket = SupportTicket(
                ticket_number=self._generate_ticket_number(),
                subject=subject.strip(),
                description=description or "",
                category=category or DEFAULT_TICKET_CATEGORY,
                priority=priority or TicketPriority.MEDIUM,
                status=TicketStatus.OPEN,
                customer_email=customer.email,
                customer_name=customer.name,
                customer_user_id=customer.user_id,
                source_session_id=source_session_id,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(ticket)
            except IntegrityError:
                logger.warning(
                    "Ticket number collision on attempt %d, regenerating", attempt
                )
                continue

            self.db.add(
                TicketTransition(
                    ticket_id=ticket.id,
                    from_status=TicketStatus.OPEN,
                    to_status=TicketStatus.OPEN,
                    transitioned_by=customer.user_id,
                    reason="Ticket created",
                )
            )
            await self.db.flush()
            logger.info("Created ticket %s (%s)", ticket.id, ticket.ticket_number)
            return ticket

        raise ConflictException("Could not allocate a unique ticket number")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _next_sequence(self, thread_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(ChatMessage.sequence), 0)).where(
                ChatMessage.thread_id == thread_id
            )
        )
        return int(result.scalar() or 0) + 1

    async def _touch(self, conversation: Conversation, now: datetime) -> None:
        # The UPDATE takes the conversation's row lock, serialising appenders
        # per conversation on PostgreSQL.
        if conversation.ticket is not None:
            conversation.ticket.last_activity_at = now
        if conversation.session is not None:
            conversation.session.last_activity_at = now
        await self.db.flush()

    async def _insert_message(
        self,
        conversation: Conversation,
        body: str,
        is_customer: bool,
        sender_user_id: uuid.UUID | None,
        kind: MessageKind,
        attachment_urls: Sequence[str] | None = None,
    ) -> ChatMessage:
        now = datetime.now(UTC)
        await self._touch(conversation, now)

        for attempt in range(1, settings.message_append_max_attempts + 1):
            message = ChatMessage(
                thread_id=conversation.thread_id,
                sequence=await self._next_sequence(conversation.thread_id),
                session_id=conversation.session_id,
                ticket_id=conversation.ticket_id,
                body=body,
                is_customer=is_customer,
                sender_user_id=sender_user_id,
                kind=kind,
                attachment_urls=list(attachment_urls or []),
                is_read=False,
                created_at=now,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(message)
            except IntegrityError:
                logger.warning(
                    "Sequence collision on thread %s (attempt %d), retrying",
                    conversation.thread_id,
                    attempt,
                )
                continue
            return message

        raise ConflictException(
            f"Could not append message to conversation {conversation.thread_id}; "
            "too many concurrent writers"
        )

    async def append_message(
        self,
        ref: str | uuid.UUID | Conversation,
        body: str | None,
        is_customer: bool,
        sender_user_id: uuid.UUID | None = None,
        kind: MessageKind = MessageKind.TEXT,
        attachment_urls: Sequence[str] | None = None,
    ) -> ChatMessage:
        """Persist a message at the end of the conversation's transcript."""
        conversation = ref if isinstance(ref, Conversation) else await self.resolve(ref)

        text_body = (body or "").strip()
        if not text_body:
            raise ValidationException(
                "Message is required",
                details=[{"field": "message", "message": "must not be blank"}],
            )
        if not conversation.accepts_messages:
            raise ConflictException(
                f"Conversation {conversation.thread_id} is closed and no longer accepts messages"
            )

        return await self._insert_message(
            conversation, text_body, is_customer, sender_user_id, kind, attachment_urls
        )

    async def list_messages(self, ref: str | uuid.UUID | Conversation) -> list[ChatMessage]:
        """Return the full transcript, oldest first."""
        conversation = ref if isinstance(ref, Conversation) else await self.resolve(ref)
        result = await self.db.execute(
            select(ChatMessage)
            .where(ChatMessage.thread_id == conversation.thread_id)
            .order_by(ChatMessage.sequence.asc())
        )
        return list(result.scalars().all())

    async def mark_messages_read(
        self, ref: str | uuid.UUID | Conversation, reader_is_customer: bool
    ) -> int:
        """Mark every message sent by the other party as read."""
        conversation = ref if isinstance(ref, Conversation) else await self.resolve(ref)
        result = await self.db.execute(
            update(ChatMessage)
            .where(
                ChatMessage.thread_id == conversation.thread_id,
                ChatMessage.is_customer.is_(not reader_is_customer),
                ChatMessage.is_read.is_(False),
            )
            .values(is_read=True)
        )
        await self.db.flush()
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Ticket state transitions
    # ------------------------------------------------------------------

    def _validate_transition(self, current: TicketStatus, target: TicketStatus) -> None:
        allowed = VALID_TICKET_TRANSITIONS.get(current, [])
        if target not in allowed:
            raise ConflictException(
                f"Cannot transition from '{current.value}' to '{target.value}'. "
                f"Allowed transitions: {[s.value for s in allowed]}"
            )

    async def _apply_transition(
        self,
        ticket: SupportTicket,
        new_status: TicketStatus,
        actor_id: uuid.UUID | None,
        reason: str | None,
        kind: MessageKind,
        notice: str,
    ) -> ChatMessage:
        old_status = ticket.status
        self._validate_transition(old_status, new_status)

        ticket.status = new_status
        self.db.add(
            TicketTransition(
                ticket_id=ticket.id,
                from_status=old_status,
                to_status=new_status,
                transitioned_by=actor_id,
                reason=reason,
            )
        )
        await self.db.flush()

        conversation = await self.resolve(ticket.id)
        message = await self._insert_message(
            conversation, notice, is_customer=False, sender_user_id=actor_id, kind=kind
        )
        logger.info(
            "Ticket %s transitioned %s -> %s by %s",
            ticket.ticket_number,
            old_status.value,
            new_status.value,
            actor_id,
        )
        return message

    async def transition_status(
        self,
        ticket_id: uuid.UUID,
        new_status: TicketStatus,
        actor_id: uuid.UUID | None,
        reason: str | None = None,
    ) -> ChatMessage:
        """Move a ticket through its state machine; returns the system message recorded."""
        ticket = await self.get_ticket(ticket_id)
        notice = (
            f"Ticket status changed from {ticket.status.value.replace('_', ' ')} "
            f"to {new_status.value.replace('_', ' ')}"
        )
        if reason:
            notice = f"{notice}: {reason}"
        return await self._apply_transition(
            ticket, new_status, actor_id, reason, MessageKind.SYSTEM, notice
        )

    async def resolve_ticket(
        self, ticket_id: uuid.UUID, actor_id: uuid.UUID, notes: str | None = None
    ) -> ChatMessage:
        ticket = await self.get_ticket(ticket_id)
        self._validate_transition(ticket.status, TicketStatus.RESOLVED)
        ticket.resolved_at = datetime.now(UTC)
        ticket.resolved_by = actor_id
        ticket.resolution_notes = notes
        notice = "Ticket resolved" + (f": {notes}" if notes else "")
        return await self._apply_transition(
            ticket,
            TicketStatus.RESOLVED,
            actor_id,
            notes or "Resolved",
            MessageKind.RESOLUTION_NOTICE,
            notice,
        )

    async def escalate_ticket(
        self, ticket_id: uuid.UUID, actor_id: uuid.UUID, reason: str
    ) -> ChatMessage:
        """Flag a ticket as escalated; priority becomes urgent, status is unchanged."""
        ticket = await self.get_ticket(ticket_id)
        if ticket.status in TICKET_STATUSES_FINAL:
            raise ConflictException(
                f"Cannot escalate a ticket in '{ticket.status.value}' status"
            )
        if not reason or not reason.strip():
            raise ValidationException("Escalation reason is required")

        ticket.escalated_at = datetime.now(UTC)
        ticket.escalated_by = actor_id
        ticket.escalation_reason = reason.strip()
        ticket.priority = TicketPriority.URGENT
        await self.db.flush()

        conversation = await self.resolve(ticket.id)
        logger.info("Ticket %s escalated by %s", ticket.ticket_number, actor_id)
        return await self._insert_message(
            conversation,
            f"Ticket escalated: {reason.strip()}",
            is_customer=False,
            sender_user_id=actor_id,
            kind=MessageKind.ESCALATION_NOTICE,
        )

    async def assign_ticket(
        self, ticket_id: uuid.UUID, admin_id: uuid.UUID, actor_id: uuid.UUID
    ) -> ChatMessage:
        ticket = await self.get_ticket(ticket_id)
        if ticket.status == TicketStatus.CLOSED:
            raise ConflictException("Cannot assign a closed ticket")
        ticket.assigned_admin_id = admin_id
        await self.db.flush()

        conversation = await self.resolve(ticket.id)
        logger.info("Ticket %s assigned to %s", ticket.ticket_number, admin_id)
        return await self._insert_message(
            conversation,
            "Ticket assigned to a support specialist",
            is_customer=False,
            sender_user_id=actor_id,
            kind=MessageKind.SYSTEM,
        )

    async def change_priority(
        self, ticket_id: uuid.UUID, priority: TicketPriority
    ) -> SupportTicket:
        ticket = await self.get_ticket(ticket_id)
        ticket.priority = priority
        await self.db.flush()
        return ticket

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def end_session(self, session_id: uuid.UUID) -> ChatSession:
        session = await self.get_session(session_id)
        if session.status == SessionStatus.ENDED:
            return session
        if SessionStatus.ENDED not in VALID_SESSION_TRANSITIONS[session.status]:
            raise ConflictException(
                f"Cannot end a chat session in '{session.status.value}' status"
            )
        session.status = SessionStatus.ENDED
        await self.db.flush()
        return session

    async def promote_session_to_ticket(
        self, session_id: uuid.UUID, fields: TicketFields
    ) -> SupportTicket:
        """Promote a session to a ticket. Idempotent: returns the existing ticket."""
        session = await self.get_session(session_id)
        if session.ticket_id is not None:
            return await self.get_ticket(session.ticket_id)

        ticket = await self.create_ticket(
            subject=fields.subject,
            category=fields.category,
            priority=fields.priority,
            customer=CustomerIdentity(
                email=session.customer_email,
                name=session.customer_name,
                user_id=session.customer_user_id,
            ),
            description=fields.description,
            source_session_id=session.id,
        )
        session.ticket_id = ticket.id
        session.status = SessionStatus.TRANSFERRED
        await self.db.flush()

        await self._insert_message(
            Conversation(session=session, ticket=ticket),
            f"Conversation transferred to ticket {ticket.ticket_number}",
            is_customer=False,
            sender_user_id=None,
            kind=MessageKind.SYSTEM,
        )
        logger.info("Promoted session %s to ticket %s", session.id, ticket.ticket_number)
        return ticket

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_tickets(
        self,
        status: TicketStatus | None = None,
        assigned_admin_id: uuid.UUID | None = None,
        customer_email: str | None = None,
        customer_user_id: uuid.UUID | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> tuple[list[SupportTicket], int]:
        """List tickets, most recently active first (paginated)."""
        query = select(SupportTicket)
        count_query = select(func.count()).select_from(SupportTicket)

        filters = []
        if status is not None:
            filters.append(SupportTicket.status == status)
        if assigned_admin_id is not None:
            filters.append(SupportTicket.assigned_admin_id == assigned_admin_id)
        if customer_email is not None and customer_user_id is not None:
            filters.append(
                (SupportTicket.customer_email == customer_email)
                | (SupportTicket.customer_user_id == customer_user_id)
            )
        elif customer_email is not None:
            filters.append(SupportTicket.customer_email == customer_email)
        elif customer_user_id is not None:
            filters.append(SupportTicket.customer_user_id == customer_user_id)

        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        query = query.order_by(SupportTicket.last_activity_at.desc()).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_sessions(
        self,
        customer_user_id: uuid.UUID,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> tuple[list[ChatSession], int]:
        """A signed-in customer's chat sessions, most recently active first."""
        condition = ChatSession.customer_user_id == customer_user_id
        total_result = await self.db.execute(
            select(func.count()).select_from(ChatSession).where(condition)
        )
        total = total_result.scalar() or 0

        result = await self.db.execute(
            select(ChatSession)
            .where(condition)
            .order_by(ChatSession.last_activity_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total
