"""Celery tasks for notification e-mail delivery."""

import logging
import smtplib
import uuid

from celery_app import celery
from src.modules.notification.emailer import NotificationEmailer

logger = logging.getLogger(__name__)


@celery.task(
    name="src.modules.notification.tasks.send_notification_email",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def send_notification_email(self, notification_id: str):
    """Send one notification e-mail; SMTP failures are retried."""
    emailer = NotificationEmailer()
    try:
        return emailer.send(uuid.UUID(notification_id))
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("E-mail delivery of %s failed: %s", notification_id, exc)
        raise self.retry(exc=exc)


@celery.task(name="src.modules.notification.tasks.sweep_undelivered_emails")
def sweep_undelivered_emails():
    """Re-enqueue e-mail notifications that were never delivered."""
    emailer = NotificationEmailer()
    if not emailer.enabled:
        return 0
    pending = emailer.undelivered_ids()
    for notification_id in pending:
        send_notification_email.delay(str(notification_id))
    return len(pending)
