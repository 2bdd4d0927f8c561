"""Conversation state machines and message-acceptance rules."""

from __future__ import annotations

from src.models.enums import SessionStatus, TicketStatus

# Valid transitions: from_status -> [allowed to_statuses]
# in_progress and waiting_customer may alternate freely until resolved/closed.
VALID_TICKET_TRANSITIONS: dict[TicketStatus, list[TicketStatus]] = {
    TicketStatus.OPEN: [
        TicketStatus.IN_PROGRESS,
        TicketStatus.WAITING_CUSTOMER,
        TicketStatus.RESOLVED,
        TicketStatus.CLOSED,
    ],
    TicketStatus.IN_PROGRESS: [
        TicketStatus.WAITING_CUSTOMER,
        TicketStatus.RESOLVED,
        TicketStatus.CLOSED,
    ],
    TicketStatus.WAITING_CUSTOMER: [
        TicketStatus.IN_PROGRESS,
        TicketStatus.RESOLVED,
        TicketStatus.CLOSED,
    ],
    TicketStatus.RESOLVED: [TicketStatus.CLOSED],
    TicketStatus.CLOSED: [],
}

VALID_SESSION_TRANSITIONS: dict[SessionStatus, list[SessionStatus]] = {
    SessionStatus.ACTIVE: [SessionStatus.ENDED, SessionStatus.TRANSFERRED],
    SessionStatus.ENDED: [SessionStatus.TRANSFERRED],
    SessionStatus.TRANSFERRED: [],
}

# Statuses in which a conversation no longer accepts new messages
TICKET_STATUSES_REJECTING_MESSAGES: set[TicketStatus] = {TicketStatus.CLOSED}
SESSION_STATUSES_REJECTING_MESSAGES: set[SessionStatus] = {SessionStatus.ENDED}

# Statuses that can no longer be escalated
TICKET_STATUSES_FINAL: set[TicketStatus] = {TicketStatus.RESOLVED, TicketStatus.CLOSED}

DEFAULT_TICKET_CATEGORY = "general"
TICKET_NUMBER_DIGITS = 6

MAX_MESSAGE_LENGTH = 10_000
DEFAULT_PAGE_LIMIT = 50
