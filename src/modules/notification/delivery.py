"""Delivery backends for notifications whose method is not ``none``.

Delivery happens after the notification row is committed and never affects
it: the record exists whether or not the e-mail is sent.
"""

import logging
import uuid
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationDelivery(Protocol):
    def deliver(self, notification_ids: list[uuid.UUID]) -> None: ...


class CeleryNotificationDelivery:
    """Enqueues one e-mail task per notification on the ``notifications`` queue."""

    def deliver(self, notification_ids: list[uuid.UUID]) -> None:
        from src.modules.notification.tasks import send_notification_email

        for notification_id in notification_ids:
            send_notification_email.delay(str(notification_id))
        logger.debug("Enqueued e-mail delivery for %d notification(s)", len(notification_ids))


class NullNotificationDelivery:
    """Used when no mail server is configured."""

    def deliver(self, notification_ids: list[uuid.UUID]) -> None:
        logger.debug(
            "E-mail delivery disabled; %d notification(s) left undelivered", len(notification_ids)
        )
