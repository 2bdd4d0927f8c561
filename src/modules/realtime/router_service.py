"""Message router — the per-connection protocol state machine.

Connections move CONNECTED -> AUTHENTICATING -> READY -> CLOSED. Inbound
envelopes are validated at the boundary, persisted through the conversation
store, and only then broadcast to every live subscriber of the conversation
(the sender included). Intended recipients who are not live are notified.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
import weakref
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.exceptions import AppException, UnauthorizedException, ValidationException
from src.models.chat_message import ChatMessage
from src.modules.conversation.access import ensure_participant
from src.modules.conversation.schemas import CustomerIdentity
from src.modules.conversation.store import Conversation, ConversationStore
from src.modules.identity.auth import ChatIdentity, JWTIdentityProvider
from src.modules.notification.delivery import NotificationDelivery
from src.modules.notification.dispatcher import NotificationDispatcher
from src.modules.notification.notifier import ConversationNotifier
from src.modules.realtime.envelopes import (
    AuthenticatedOut,
    AuthenticateEnvelope,
    ChatMessageEnvelope,
    ChatMessageOut,
    Envelope,
    ErrorOut,
    SubscribedOut,
    SubscribeEnvelope,
    TypingEnvelope,
    TypingOut,
    UnsubscribedOut,
    UnsubscribeEnvelope,
    parse_inbound,
)
from src.modules.realtime.presence import PresenceRegistry

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSED = "closed"


class Connection(Protocol):
    async def send_json(self, data: dict) -> None: ...


class IdentityProvider(Protocol):
    def authenticate(
        self,
        token: str | None,
        claimed_user_id: uuid.UUID | None = None,
        claims_admin: bool = False,
    ) -> ChatIdentity: ...


class MessageRouter:
    def __init__(
        self,
        presence: PresenceRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        identity_provider: IdentityProvider | None = None,
        delivery: NotificationDelivery | None = None,
        greeting: str | None = None,
    ) -> None:
        self.presence = presence
        self.session_factory = session_factory
        self.identity_provider = identity_provider or JWTIdentityProvider()
        self.delivery = delivery
        self.greeting = settings.chat_greeting if greeting is None else greeting
        self._connections: dict[str, Connection] = {}
        self._states: dict[str, ConnectionState] = {}
        # ref as sent by the client -> thread id, per connection
        self._refs: dict[str, dict[str, uuid.UUID]] = {}
        self._thread_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def open(self, connection: Connection) -> str:
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = connection
        self._states[connection_id] = ConnectionState.CONNECTED
        self._refs[connection_id] = {}
        self.presence.register(connection_id)
        logger.debug("Connection %s opened", connection_id)
        return connection_id

    async def close(self, connection_id: str) -> None:
        """Forget a connection. Persisted messages are unaffected."""
        self.presence.unregister(connection_id)
        self._connections.pop(connection_id, None)
        self._refs.pop(connection_id, None)
        self._states.pop(connection_id, None)
        logger.debug("Connection %s closed", connection_id)

    def state_of(self, connection_id: str) -> ConnectionState:
        return self._states.get(connection_id, ConnectionState.CLOSED)

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    async def handle(self, connection_id: str, raw: str | bytes | dict) -> None:
        """Process one inbound frame. Errors become ``error`` envelopes."""
        state = self.state_of(connection_id)
        if state == ConnectionState.CLOSED:
            return

        try:
            envelope = parse_inbound(raw)
            if isinstance(envelope, AuthenticateEnvelope):
                await self._on_authenticate(connection_id, envelope)
                return

            if state == ConnectionState.AUTHENTICATING:
                raise UnauthorizedException(
                    "Authentication failed; send a valid authenticate envelope first"
                )
            if state == ConnectionState.CONNECTED:
                # Unauthenticated connections chat as anonymous customers
                self.presence.authenticate(connection_id, ChatIdentity.anonymous())
                self._states[connection_id] = ConnectionState.READY

            if isinstance(envelope, ChatMessageEnvelope):
                await self._on_chat_message(connection_id, envelope)
            elif isinstance(envelope, SubscribeEnvelope):
                await self._on_subscribe(connection_id, envelope)
            elif isinstance(envelope, UnsubscribeEnvelope):
                await self._on_unsubscribe(connection_id, envelope)
            elif isinstance(envelope, TypingEnvelope):
                await self._on_typing(connection_id, envelope)
        except AppException as exc:
            logger.warning(
                "Rejected envelope on connection %s: %s (%s)", connection_id, exc.message, exc.code
            )
            await self._send(
                connection_id, ErrorOut(message=exc.message, code=exc.code, details=exc.details)
            )
        except Exception:
            logger.exception("Unhandled error processing envelope on connection %s", connection_id)
            await self._send(
                connection_id, ErrorOut(message="Internal server error", code="INTERNAL_ERROR")
            )

    async def _on_authenticate(self, connection_id: str, envelope: AuthenticateEnvelope) -> None:
        try:
            identity = self.identity_provider.authenticate(
                envelope.token, envelope.user_id, envelope.is_admin
            )
        except UnauthorizedException:
            # A connection that was already READY keeps its previous identity
            if self.state_of(connection_id) != ConnectionState.READY:
                self._states[connection_id] = ConnectionState.AUTHENTICATING
            raise

        self.presence.authenticate(connection_id, identity)
        self._states[connection_id] = ConnectionState.READY
        logger.info(
            "Connection %s authenticated as %s",
            connection_id,
            "admin" if identity.is_admin else (identity.user_id or "anonymous customer"),
        )
        await self._send(
            connection_id, AuthenticatedOut(user_id=identity.user_id, is_admin=identity.is_admin)
        )
        if not identity.is_admin and self.greeting:
            await self._send(connection_id, ChatMessageOut.greeting(self.greeting))

    async def _on_chat_message(self, connection_id: str, envelope: ChatMessageEnvelope) -> None:
        sender = self.presence.get(connection_id).identity
        customer = None
        if envelope.customer_email or envelope.customer_name:
            customer = CustomerIdentity(
                email=envelope.customer_email or sender.email,
                name=envelope.customer_name or sender.name,
                user_id=sender.user_id,
            )
        async with self.session_factory() as db:
            message = await self.accept(
                db,
                sender,
                envelope.session_id,
                envelope.message,
                attachment_urls=envelope.attachment_urls,
                customer=customer,
                connection_id=connection_id,
            )
        refs = self._refs.get(connection_id)
        if refs is not None:
            refs[envelope.session_id or str(message.thread_id)] = message.thread_id

    async def _on_subscribe(self, connection_id: str, envelope: SubscribeEnvelope) -> None:
        identity = self.presence.get(connection_id).identity
        async with self.session_factory() as db:
            conversation = await ConversationStore(db).resolve(envelope.session_id)
        ensure_participant(conversation, identity)

        self.presence.subscribe(connection_id, conversation.thread_id)
        self._refs[connection_id][envelope.session_id] = conversation.thread_id
        await self._send(
            connection_id,
            SubscribedOut(session_id=envelope.session_id, thread_id=conversation.thread_id),
        )

    async def _on_unsubscribe(self, connection_id: str, envelope: UnsubscribeEnvelope) -> None:
        thread_id = self._refs[connection_id].pop(envelope.session_id, None)
        if thread_id is not None and thread_id not in self._refs[connection_id].values():
            self.presence.unsubscribe(connection_id, thread_id)
        await self._send(connection_id, UnsubscribedOut(session_id=envelope.session_id))

    async def _on_typing(self, connection_id: str, envelope: TypingEnvelope) -> None:
        thread_id = self._refs[connection_id].get(envelope.session_id)
        if thread_id is None:
            raise ValidationException(
                f"Subscribe to {envelope.session_id} before sending typing indicators"
            )
        sender = self.presence.get(connection_id).identity
        await self.publish(
            thread_id,
            TypingOut(
                session_id=envelope.session_id,
                thread_id=thread_id,
                is_typing=envelope.is_typing,
                is_customer=not sender.is_admin,
                user_id=sender.user_id,
            ),
            exclude=connection_id,
        )

    # ------------------------------------------------------------------
    # Message acceptance (shared with the fallback channel)
    # ------------------------------------------------------------------

    def thread_lock(self, thread_id: uuid.UUID) -> asyncio.Lock:
        """The lock that orders append, commit and broadcast on one thread.

        Anything that adds a transcript entry must hold it from the append
        until the broadcast, or subscribers can see sequences out of order.
        """
        lock = self._thread_locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._thread_locks[thread_id] = lock
        return lock

    async def accept(
        self,
        db: AsyncSession,
        sender: ChatIdentity,
        ref: str | uuid.UUID | None,
        body: str,
        *,
        attachment_urls: Sequence[str] | None = None,
        customer: CustomerIdentity | None = None,
        metadata: dict | None = None,
        connection_id: str | None = None,
    ) -> ChatMessage:
        """Persist a message, broadcast it, then notify offline recipients.

        ``ref`` None opens a new guest session for a customer sender. When
        ``connection_id`` is given, that connection is subscribed to the
        conversation before the broadcast so it receives the echo.
        """
        if not (body or "").strip():
            raise ValidationException(
                "Message is required",
                details=[{"field": "message", "message": "must not be blank"}],
            )

        store = ConversationStore(db)
        if ref is None:
            if sender.is_admin:
                raise ValidationException("sessionId is required for support replies")
            customer = customer or CustomerIdentity(
                email=sender.email, name=sender.name, user_id=sender.user_id
            )
            conversation = Conversation(session=await store.create_session(customer, metadata))
        else:
            conversation = await store.resolve(ref)
            ensure_participant(conversation, sender)

        thread_id = conversation.thread_id
        async with self.thread_lock(thread_id):
            message = await store.append_message(
                conversation,
                body,
                is_customer=not sender.is_admin,
                sender_user_id=sender.user_id,
                attachment_urls=attachment_urls,
            )
            await db.commit()
            if connection_id is not None and connection_id in self._connections:
                self.presence.subscribe(connection_id, thread_id)
            await self.publish_message(thread_id, message)

        await self._notify_message(db, conversation, message, sender)
        return message

    async def append_and_publish(
        self,
        db: AsyncSession,
        thread_id: uuid.UUID,
        append: Callable[[], Awaitable[ChatMessage | None]],
    ) -> ChatMessage | None:
        """Run ``append``, commit, and broadcast its entry under the thread lock."""
        async with self.thread_lock(thread_id):
            message = await append()
            await db.commit()
            if message is not None:
                await self.publish_message(thread_id, message)
        return message

    async def _notify_message(
        self,
        db: AsyncSession,
        conversation: Conversation,
        message: ChatMessage,
        sender: ChatIdentity,
    ) -> None:
        dispatcher = NotificationDispatcher(db, self.delivery)
        try:
            await ConversationNotifier(dispatcher).message_posted(
                conversation, message, sender, self.presence
            )
            await db.commit()
        except Exception:
            logger.exception("Failed to record notifications for message %s", message.id)
            await db.rollback()
            return
        await dispatcher.deliver_pending()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def publish_message(self, thread_id: uuid.UUID, message: ChatMessage) -> int:
        return await self.publish(thread_id, ChatMessageOut.from_message(message))

    async def publish(
        self, thread_id: uuid.UUID, envelope: Envelope, exclude: str | None = None
    ) -> int:
        """Send ``envelope`` to every live subscriber of a thread.

        Returns the number of connections that accepted the frame.
        """
        recipients = [
            cid for cid in self.presence.live_recipients_for(thread_id) if cid != exclude
        ]
        if not recipients:
            return 0
        payload = envelope.to_wire()
        results = await asyncio.gather(
            *(self._send_payload(cid, payload) for cid in recipients)
        )
        return sum(results)

    async def _send(self, connection_id: str, envelope: Envelope) -> bool:
        return await self._send_payload(connection_id, envelope.to_wire())

    async def _send_payload(self, connection_id: str, payload: dict) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.send_json(payload)
        except Exception as exc:
            # Closed or closing transport; the close handler cleans up
            logger.debug("Dropped frame to connection %s: %s", connection_id, exc)
            return False
        return True
