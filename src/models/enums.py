import enum


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    ENDED = "ended"
    TRANSFERRED = "transferred"


class TicketStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING_CUSTOMER = "waiting_customer"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageKind(str, enum.Enum):
    TEXT = "text"
    SYSTEM = "system"
    ESCALATION_NOTICE = "escalation_notice"
    RESOLUTION_NOTICE = "resolution_notice"


class NotificationAudience(str, enum.Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"


class NotificationType(str, enum.Enum):
    NEW_TICKET = "new_ticket"
    NEW_CHAT = "new_chat"
    CUSTOMER_RESPONSE = "customer_response"
    SUPPORT_RESPONSE = "support_response"
    ASSIGNMENT = "assignment"
    ESCALATION = "escalation"
    RESOLUTION = "resolution"
    STATUS_UPDATE = "status_update"


class NotificationPriority(str, enum.Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class NotificationMethod(str, enum.Enum):
    NONE = "none"
    EMAIL = "email"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum *values* (lowercase wire strings) rather than member names."""
    return [member.value for member in enum_cls]
