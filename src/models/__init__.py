# Import all models so SQLAlchemy metadata is populated for Alembic autogenerate
from src.models.chat_message import ChatMessage
from src.models.chat_session import ChatSession
from src.models.enums import (
    MessageKind,
    NotificationAudience,
    NotificationMethod,
    NotificationPriority,
    NotificationType,
    SessionStatus,
    TicketPriority,
    TicketStatus,
    UserRole,
)
from src.models.notification import Notification
from src.models.support_ticket import SupportTicket
from src.models.ticket_transition import TicketTransition
from src.models.user import User

__all__ = [
    "ChatMessage",
    "ChatSession",
    "MessageKind",
    "Notification",
    "NotificationAudience",
    "NotificationMethod",
    "NotificationPriority",
    "NotificationType",
    "SessionStatus",
    "SupportTicket",
    "TicketPriority",
    "TicketStatus",
    "TicketTransition",
    "User",
]
