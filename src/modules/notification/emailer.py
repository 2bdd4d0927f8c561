"""NotificationEmailer — synchronous e-mail delivery for Celery workers."""

import logging
import smtplib
import uuid
from datetime import UTC, datetime, timedelta
from email.message import EmailMessage

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.config import settings
from src.database.engine import sync_engine
from src.models.enums import NotificationMethod
from src.models.notification import Notification
from src.modules.notification.constants import (
    EMAIL_RETRY_AFTER_MINUTES,
    EMAIL_SUBJECT_PREFIX,
    EMAIL_SWEEP_BATCH_SIZE,
)

logger = logging.getLogger(__name__)


def build_email(notification: Notification) -> EmailMessage:
    subject = EMAIL_SUBJECT_PREFIX.get(notification.type)
    email = EmailMessage()
    email["Subject"] = f"{subject}: {notification.title}" if subject else notification.title
    email["From"] = settings.smtp_from_address
    email["To"] = notification.recipient_email
    body = notification.message
    if notification.link_url:
        body = f"{body}\n\n{notification.link_url}"
    email.set_content(body)
    return email


class NotificationEmailer:
    """Sends notification e-mails and stamps ``delivered_at`` on success.

    Uses sync sessions; SMTP errors propagate so the Celery task can retry.
    """

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or (lambda: Session(sync_engine))

    @property
    def enabled(self) -> bool:
        return bool(settings.smtp_host)

    def _send(self, email: EmailMessage) -> None:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_username:
                smtp.login(settings.smtp_username, settings.smtp_password)
            smtp.send_message(email)

    def send(self, notification_id: uuid.UUID) -> bool:
        """Deliver one notification. Returns False when there is nothing to send."""
        if not self.enabled:
            logger.debug("SMTP not configured; skipping notification %s", notification_id)
            return False

        with self._session_factory() as session:
            notification = session.get(Notification, notification_id)
            if notification is None:
                logger.warning("Notification %s no longer exists", notification_id)
                return False
            if notification.delivered_at is not None or not notification.recipient_email:
                return False

            self._send(build_email(notification))
            notification.delivered_at = datetime.now(UTC)
            session.commit()

        logger.info("Delivered notification %s by e-mail", notification_id)
        return True

    def undelivered_ids(self) -> list[uuid.UUID]:
        """E-mail notifications still undelivered after the retry window."""
        cutoff = datetime.now(UTC) - timedelta(minutes=EMAIL_RETRY_AFTER_MINUTES)
        with self._session_factory() as session:
            rows = session.execute(
                select(Notification.id)
                .where(
                    Notification.notification_method == NotificationMethod.EMAIL,
                    Notification.delivered_at.is_(None),
                    Notification.recipient_email.is_not(None),
                    Notification.created_at < cutoff,
                )
                .order_by(Notification.created_at.asc())
                .limit(EMAIL_SWEEP_BATCH_SIZE)
            ).scalars()
            return list(rows)
