"""Decides who must hear about a conversation event and addresses them.

Message events notify only intended recipients who are not live on the
conversation; structural events (new ticket, assignment, escalation,
resolution, status change) always notify. Every notification carries a
dedup key derived from the triggering record, so one event yields at most
one notification per recipient.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from src.models.chat_message import ChatMessage
from src.models.enums import (
    NotificationMethod,
    NotificationPriority,
    NotificationType,
    TicketPriority,
    TicketStatus,
)
from src.models.notification import Notification
from src.models.support_ticket import SupportTicket
from src.modules.conversation.store import Conversation
from src.modules.identity.auth import ChatIdentity
from src.modules.notification.constants import (
    ADMIN_CHAT_LINK,
    ADMIN_TICKET_LINK,
    CUSTOMER_CHAT_LINK,
    CUSTOMER_TICKET_LINK,
)
from src.modules.notification.dispatcher import NotificationDispatcher, Recipient

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 140


class LiveView(Protocol):
    def is_admin_live(self, thread_id: uuid.UUID) -> bool: ...

    def is_user_live(self, thread_id: uuid.UUID, user_id: uuid.UUID) -> bool: ...

    def is_customer_live(self, thread_id: uuid.UUID) -> bool: ...


def _preview(body: str) -> str:
    if len(body) <= PREVIEW_LENGTH:
        return body
    return body[: PREVIEW_LENGTH - 1].rstrip() + "…"


def _admin_link(conversation: Conversation) -> str:
    if conversation.ticket_id is not None:
        return ADMIN_TICKET_LINK.format(ticket_id=conversation.ticket_id)
    return ADMIN_CHAT_LINK.format(session_id=conversation.session_id)


def _customer_link(conversation: Conversation) -> str:
    if conversation.ticket_id is not None:
        return CUSTOMER_TICKET_LINK.format(ticket_id=conversation.ticket_id)
    return CUSTOMER_CHAT_LINK.format(session_id=conversation.session_id)


def _customer_recipient(owner: Conversation | SupportTicket) -> Recipient | None:
    if owner.customer_user_id is None and not owner.customer_email:
        return None
    return Recipient.customer(user_id=owner.customer_user_id, email=owner.customer_email)


class ConversationNotifier:
    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def message_posted(
        self,
        conversation: Conversation,
        message: ChatMessage,
        sender: ChatIdentity,
        live: LiveView,
    ) -> list[Notification]:
        """Notify the intended recipients of ``message`` that are not live."""
        thread_id = conversation.thread_id
        dedup_key = f"message:{message.id}"
        common = {
            "ticket_id": conversation.ticket_id,
            "session_id": conversation.session_id,
            "dedup_key": dedup_key,
        }

        if sender.is_admin:
            recipient = _customer_recipient(conversation)
            if recipient is None or live.is_customer_live(thread_id):
                return []
            notification = await self.dispatcher.notify(
                recipient,
                NotificationType.SUPPORT_RESPONSE,
                f"New reply on {conversation.label}",
                _preview(message.body),
                link=_customer_link(conversation),
                method=NotificationMethod.EMAIL if recipient.email else NotificationMethod.NONE,
                **common,
            )
            return [notification] if notification is not None else []

        assignee = conversation.assigned_admin_id
        if assignee is not None:
            if live.is_user_live(thread_id, assignee):
                return []
            notification = await self.dispatcher.notify(
                Recipient.admin(assignee),
                NotificationType.CUSTOMER_RESPONSE,
                f"Customer replied on {conversation.label}",
                _preview(message.body),
                link=_admin_link(conversation),
                action_required=True,
                **common,
            )
            return [notification] if notification is not None else []

        if live.is_admin_live(thread_id):
            return []
        notification_type = (
            NotificationType.CUSTOMER_RESPONSE
            if conversation.ticket_id is not None
            else NotificationType.NEW_CHAT
        )
        return await self.dispatcher.fan_out_to_all_admins(
            notification_type,
            f"New message in {conversation.label}",
            _preview(message.body),
            link=_admin_link(conversation),
            action_required=True,
            **common,
        )

    # ------------------------------------------------------------------
    # Structural events
    # ------------------------------------------------------------------

    async def ticket_created(self, ticket: SupportTicket) -> list[Notification]:
        urgent = ticket.priority == TicketPriority.URGENT
        return await self.dispatcher.fan_out_to_all_admins(
            NotificationType.NEW_TICKET,
            f"New support ticket {ticket.ticket_number}",
            f"{ticket.customer_name or ticket.customer_email or 'A customer'}: {ticket.subject}",
            link=ADMIN_TICKET_LINK.format(ticket_id=ticket.id),
            ticket_id=ticket.id,
            session_id=ticket.source_session_id,
            priority=NotificationPriority.URGENT if urgent else NotificationPriority.NORMAL,
            action_required=True,
            dedup_key=f"new_ticket:{ticket.id}",
        )

    async def ticket_assigned(
        self, ticket: SupportTicket, event: ChatMessage, actor_id: uuid.UUID | None
    ) -> Notification | None:
        if ticket.assigned_admin_id is None or ticket.assigned_admin_id == actor_id:
            return None
        return await self.dispatcher.notify(
            Recipient.admin(ticket.assigned_admin_id),
            NotificationType.ASSIGNMENT,
            f"Ticket {ticket.ticket_number} assigned to you",
            ticket.subject,
            link=ADMIN_TICKET_LINK.format(ticket_id=ticket.id),
            ticket_id=ticket.id,
            priority=(
                NotificationPriority.URGENT
                if ticket.priority == TicketPriority.URGENT
                else NotificationPriority.NORMAL
            ),
            action_required=True,
            dedup_key=f"assignment:{event.id}",
        )

    async def ticket_escalated(
        self, ticket: SupportTicket, event: ChatMessage, actor_id: uuid.UUID
    ) -> list[Notification]:
        return await self.dispatcher.fan_out_to_all_admins(
            NotificationType.ESCALATION,
            f"Ticket {ticket.ticket_number} escalated",
            ticket.escalation_reason or ticket.subject,
            exclude=[actor_id],
            link=ADMIN_TICKET_LINK.format(ticket_id=ticket.id),
            ticket_id=ticket.id,
            priority=NotificationPriority.URGENT,
            action_required=True,
            dedup_key=f"escalation:{event.id}",
        )

    async def ticket_resolved(
        self, ticket: SupportTicket, event: ChatMessage
    ) -> Notification | None:
        recipient = _customer_recipient(ticket)
        if recipient is None:
            return None
        message = f"Your ticket '{ticket.subject}' has been resolved."
        if ticket.resolution_notes:
            message = f"{message}\n\n{ticket.resolution_notes}"
        return await self.dispatcher.notify(
            recipient,
            NotificationType.RESOLUTION,
            f"Ticket {ticket.ticket_number} resolved",
            message,
            link=CUSTOMER_TICKET_LINK.format(ticket_id=ticket.id),
            ticket_id=ticket.id,
            method=NotificationMethod.EMAIL if recipient.email else NotificationMethod.NONE,
            dedup_key=f"resolution:{event.id}",
        )

    async def ticket_status_changed(
        self, ticket: SupportTicket, event: ChatMessage
    ) -> Notification | None:
        recipient = _customer_recipient(ticket)
        if recipient is None:
            return None
        waiting = ticket.status == TicketStatus.WAITING_CUSTOMER
        return await self.dispatcher.notify(
            recipient,
            NotificationType.STATUS_UPDATE,
            f"Ticket {ticket.ticket_number} is now {ticket.status.value.replace('_', ' ')}",
            event.body,
            link=CUSTOMER_TICKET_LINK.format(ticket_id=ticket.id),
            ticket_id=ticket.id,
            action_required=waiting,
            dedup_key=f"status_update:{event.id}",
        )
