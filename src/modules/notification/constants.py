"""Notification module constants."""

from src.models.enums import NotificationType

# Relative links; the dispatcher prefixes settings.app_base_url
ADMIN_TICKET_LINK = "/admin/support-tickets/{ticket_id}"
ADMIN_CHAT_LINK = "/admin/support-chat/{session_id}"
CUSTOMER_TICKET_LINK = "/support/tickets/{ticket_id}"
CUSTOMER_CHAT_LINK = "/support/chat/{session_id}"

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200

RESPONSE_ACTIONS = frozenset({"acknowledge", "accept", "decline", "reply"})

# E-mail sweep: undelivered e-mail notifications older than this are re-enqueued
EMAIL_RETRY_AFTER_MINUTES = 10
EMAIL_SWEEP_BATCH_SIZE = 100

EMAIL_SUBJECT_PREFIX = {
    NotificationType.SUPPORT_RESPONSE: "New reply from support",
    NotificationType.RESOLUTION: "Your ticket has been resolved",
    NotificationType.STATUS_UPDATE: "Ticket status update",
}
