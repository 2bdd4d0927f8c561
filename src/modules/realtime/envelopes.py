"""Typed envelopes exchanged over the live transport.

Every inbound frame is validated into one of the inbound envelope types
before it reaches the message router; outbound envelopes are serialised with
camelCase keys.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from src.exceptions import ValidationException
from src.models.chat_message import ChatMessage
from src.models.enums import MessageKind
from src.modules.conversation.constants import MAX_MESSAGE_LENGTH


class Envelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


class AuthenticateEnvelope(Envelope):
    type: Literal["authenticate"]
    user_id: uuid.UUID | None = None
    is_admin: bool = False
    token: str | None = None


class ChatMessageEnvelope(Envelope):
    type: Literal["chat_message"]
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    # Conversation ref: session id, ticket id or ticket number. Omitted on a
    # customer's first message, which opens a new session.
    session_id: str | None = None
    customer_email: str | None = Field(None, max_length=255)
    customer_name: str | None = Field(None, max_length=255)
    attachment_urls: list[str] = Field(default_factory=list)


class SubscribeEnvelope(Envelope):
    type: Literal["subscribe"]
    session_id: str


class UnsubscribeEnvelope(Envelope):
    type: Literal["unsubscribe"]
    session_id: str


class TypingEnvelope(Envelope):
    type: Literal["typing"]
    session_id: str
    is_typing: bool = True


InboundEnvelope = Annotated[
    Union[
        AuthenticateEnvelope,
        ChatMessageEnvelope,
        SubscribeEnvelope,
        UnsubscribeEnvelope,
        TypingEnvelope,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundEnvelope] = TypeAdapter(InboundEnvelope)


def parse_inbound(raw: str | bytes | dict) -> InboundEnvelope:
    """Validate one inbound frame. Raises ValidationException when malformed."""
    try:
        if isinstance(raw, dict):
            return _inbound_adapter.validate_python(raw)
        return _inbound_adapter.validate_json(raw)
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors(include_url=False)
        ]
        raise ValidationException("Malformed envelope", details=details) from exc


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class AuthenticatedOut(Envelope):
    type: Literal["authenticated"] = "authenticated"
    user_id: uuid.UUID | None = None
    is_admin: bool = False


class ChatMessageOut(Envelope):
    type: Literal["chat_message"] = "chat_message"
    id: uuid.UUID | None
    message: str
    is_customer: bool
    timestamp: datetime
    session_id: uuid.UUID | None = None
    ticket_id: uuid.UUID | None = None
    kind: MessageKind = MessageKind.TEXT
    user_id: uuid.UUID | None = None
    sequence: int | None = None
    attachment_urls: list[str] = Field(default_factory=list)

    @classmethod
    def from_message(cls, message: ChatMessage) -> ChatMessageOut:
        return cls(
            id=message.id,
            message=message.body,
            is_customer=message.is_customer,
            timestamp=message.created_at,
            session_id=message.session_id,
            ticket_id=message.ticket_id,
            kind=message.kind,
            user_id=message.sender_user_id,
            sequence=message.sequence,
            attachment_urls=list(message.attachment_urls or []),
        )

    @classmethod
    def greeting(cls, text: str) -> ChatMessageOut:
        """Courtesy greeting; never persisted, so it has no id."""
        return cls(
            id=None,
            message=text,
            is_customer=False,
            timestamp=datetime.now(UTC),
            kind=MessageKind.SYSTEM,
        )


class SubscribedOut(Envelope):
    type: Literal["subscribed"] = "subscribed"
    session_id: str
    thread_id: uuid.UUID


class UnsubscribedOut(Envelope):
    type: Literal["unsubscribed"] = "unsubscribed"
    session_id: str


class TypingOut(Envelope):
    type: Literal["typing"] = "typing"
    session_id: str
    thread_id: uuid.UUID
    is_typing: bool
    is_customer: bool
    user_id: uuid.UUID | None = None


class ErrorOut(Envelope):
    type: Literal["error"] = "error"
    message: str
    code: str = "ERROR"
    details: list[dict] = Field(default_factory=list)
