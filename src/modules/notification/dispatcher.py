"""Notification dispatcher — durable, recipient-addressed event records.

Creating a notification is best-effort relative to the business action that
triggered it: every create runs inside a savepoint, and any failure is logged
and swallowed so the caller's transaction is never rolled back.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.exceptions import ConflictException, NotFoundException, ValidationException
from src.models.enums import (
    NotificationAudience,
    NotificationMethod,
    NotificationPriority,
    NotificationType,
    UserRole,
)
from src.models.notification import Notification
from src.models.user import User
from src.modules.notification.constants import DEFAULT_LIST_LIMIT, RESPONSE_ACTIONS
from src.modules.notification.delivery import NotificationDelivery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    """One notification addressee: a user account, a bare e-mail, or both."""

    audience: NotificationAudience
    user_id: uuid.UUID | None = None
    email: str | None = None

    def __post_init__(self) -> None:
        if self.user_id is None and not self.email:
            raise ValueError("Recipient requires a user id or an e-mail address")

    @classmethod
    def admin(cls, user_id: uuid.UUID, email: str | None = None) -> Recipient:
        return cls(NotificationAudience.ADMIN, user_id=user_id, email=email)

    @classmethod
    def customer(cls, user_id: uuid.UUID | None = None, email: str | None = None) -> Recipient:
        return cls(NotificationAudience.CUSTOMER, user_id=user_id, email=email)

    @property
    def key(self) -> str:
        """Storage key; a linked account wins over the e-mail address."""
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"email:{self.email.strip().lower()}"

    @property
    def lookup_keys(self) -> list[str]:
        """Every key under which this recipient may have been addressed."""
        keys = []
        if self.user_id is not None:
            keys.append(f"user:{self.user_id}")
        if self.email:
            keys.append(f"email:{self.email.strip().lower()}")
        return keys


def absolute_link(path: str | None) -> str | None:
    if path is None:
        return None
    return settings.app_base_url.rstrip("/") + path


class NotificationDispatcher:
    def __init__(self, db: AsyncSession, delivery: NotificationDelivery | None = None) -> None:
        self.db = db
        self.delivery = delivery
        self._pending_delivery: list[uuid.UUID] = []

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def notify(
        self,
        recipient: Recipient,
        type: NotificationType,
        title: str,
        message: str,
        link: str | None = None,
        ticket_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        action_required: bool = False,
        method: NotificationMethod = NotificationMethod.NONE,
        dedup_key: str | None = None,
        metadata: dict | None = None,
    ) -> Notification | None:
        """Create one notification. Returns None if it was a duplicate or failed."""
        notification = Notification(
            audience=recipient.audience,
            recipient_user_id=recipient.user_id,
            recipient_email=recipient.email,
            recipient_key=recipient.key,
            type=type,
            title=title,
            message=message,
            link_url=absolute_link(link),
            ticket_id=ticket_id,
            session_id=session_id,
            priority=priority,
            action_required=action_required,
            notification_method=method,
            dedup_key=dedup_key,
            metadata_extra=metadata,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(notification)
        except IntegrityError:
            if dedup_key is not None:
                logger.info(
                    "Notification %s for %s already exists, skipping", dedup_key, recipient.key
                )
            else:
                logger.exception("Failed to create %s notification for %s", type.value, recipient.key)
            return None
        except Exception:
            logger.exception("Failed to create %s notification for %s", type.value, recipient.key)
            return None

        if method == NotificationMethod.EMAIL and recipient.email:
            self._pending_delivery.append(notification.id)

        logger.debug("Created %s notification %s for %s", type.value, notification.id, recipient.key)
        return notification

    async def admin_roster(self, exclude: Iterable[uuid.UUID] = ()) -> list[User]:
        """Active admins, resolved at call time."""
        excluded = set(exclude)
        result = await self.db.execute(
            select(User)
            .where(User.role == UserRole.ADMIN, User.is_active.is_(True))
            .order_by(User.created_at.asc())
        )
        return [admin for admin in result.scalars().all() if admin.id not in excluded]

    async def fan_out_to_all_admins(
        self,
        type: NotificationType,
        title: str,
        message: str,
        exclude: Iterable[uuid.UUID] = (),
        **kwargs,
    ) -> list[Notification]:
        """Create one notification per active admin (minus ``exclude``)."""
        try:
            admins = await self.admin_roster(exclude)
        except Exception:
            logger.exception("Failed to resolve admin roster for %s fan-out", type.value)
            return []

        created = []
        for admin in admins:
            notification = await self.notify(
                Recipient.admin(admin.id, admin.email), type, title, message, **kwargs
            )
            if notification is not None:
                created.append(notification)

        if not admins:
            logger.warning("No active admins to receive %s notification", type.value)
        return created

    # ------------------------------------------------------------------
    # Delivery hand-off
    # ------------------------------------------------------------------

    async def deliver_pending(self) -> None:
        """Hand queued e-mail notifications to the delivery backend.

        Call only after the creating transaction has committed.
        """
        if not self._pending_delivery:
            return
        pending, self._pending_delivery = self._pending_delivery, []
        if self.delivery is None:
            return
        try:
            self.delivery.deliver(pending)
        except Exception:
            logger.exception("Failed to enqueue delivery for %d notification(s)", len(pending))

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def _get_owned(self, notification_id: uuid.UUID, recipient: Recipient) -> Notification:
        result = await self.db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.recipient_key.in_(recipient.lookup_keys),
            )
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            raise NotFoundException(f"Notification {notification_id} not found")
        return notification

    async def list_for(
        self,
        recipient: Recipient,
        unread_only: bool = False,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> tuple[list[Notification], int]:
        filters = [Notification.recipient_key.in_(recipient.lookup_keys)]
        if unread_only:
            filters.append(Notification.read_at.is_(None))

        total_result = await self.db.execute(
            select(func.count()).select_from(Notification).where(*filters)
        )
        total = total_result.scalar() or 0

        result = await self.db.execute(
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def unread_count(self, recipient: Recipient) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Notification)
            .where(
                Notification.recipient_key.in_(recipient.lookup_keys),
                Notification.read_at.is_(None),
            )
        )
        return result.scalar() or 0

    async def summary(self, recipient: Recipient) -> dict:
        keys = recipient.lookup_keys
        unread = Notification.read_at.is_(None)
        result = await self.db.execute(
            select(
                func.count(),
                func.count().filter(unread),
                func.count().filter(unread, Notification.priority == NotificationPriority.URGENT),
                func.count().filter(
                    Notification.action_required.is_(True), Notification.responded_at.is_(None)
                ),
            ).where(Notification.recipient_key.in_(keys))
        )
        total, unread_count, urgent_unread, awaiting_action = result.one()
        return {
            "total": total,
            "unread": unread_count,
            "urgent_unread": urgent_unread,
            "awaiting_action": awaiting_action,
        }

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def mark_read(self, notification_id: uuid.UUID, recipient: Recipient) -> Notification:
        """Mark one notification read. Re-marking is a no-op."""
        notification = await self._get_owned(notification_id, recipient)
        if notification.read_at is None:
            notification.read_at = datetime.now(UTC)
            await self.db.flush()
        return notification

    async def mark_all_read(self, recipient: Recipient) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(
                Notification.recipient_key.in_(recipient.lookup_keys),
                Notification.read_at.is_(None),
            )
            .values(read_at=datetime.now(UTC))
        )
        await self.db.flush()
        return result.rowcount or 0

    async def respond(
        self,
        notification_id: uuid.UUID,
        recipient: Recipient,
        action: str,
        response: str | None = None,
    ) -> Notification:
        """Record the recipient's answer to an action-required notification."""
        notification = await self._get_owned(notification_id, recipient)
        if not notification.action_required:
            raise ValidationException("This notification does not accept a response")
        if action not in RESPONSE_ACTIONS:
            raise ValidationException(
                f"Unknown response action '{action}'",
                details=[{"field": "action", "allowed": sorted(RESPONSE_ACTIONS)}],
            )
        if notification.responded_at is not None:
            raise ConflictException("This notification has already been responded to")

        now = datetime.now(UTC)
        notification.response = response
        notification.response_action = action
        notification.responded_at = now
        if notification.read_at is None:
            notification.read_at = now
        await self.db.flush()
        logger.info("Notification %s responded with '%s'", notification.id, action)
        return notification
