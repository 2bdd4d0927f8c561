"""Pydantic v2 schemas for conversation (session / ticket / message) endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import MessageKind, SessionStatus, TicketPriority, TicketStatus
from src.modules.conversation.constants import DEFAULT_TICKET_CATEGORY, MAX_MESSAGE_LENGTH

# ---------------------------------------------------------------------------
# Customer identity
# ---------------------------------------------------------------------------


class CustomerIdentity(BaseModel):
    """Who the customer side of a conversation is. Email or user id is required."""

    email: str | None = Field(None, max_length=255)
    name: str | None = Field(None, max_length=255)
    user_id: uuid.UUID | None = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class SessionCreate(BaseModel):
    customer_email: str | None = Field(None, max_length=255)
    customer_name: str | None = Field(None, max_length=255)
    metadata: dict | None = None


class TicketFields(BaseModel):
    subject: str = Field(..., min_length=1, max_length=500)
    description: str = ""
    category: str = Field(DEFAULT_TICKET_CATEGORY, max_length=50)
    priority: TicketPriority = TicketPriority.MEDIUM


class TicketCreate(TicketFields):
    customer_email: str | None = Field(None, max_length=255)
    customer_name: str | None = Field(None, max_length=255)


class MessageCreate(BaseModel):
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    attachment_urls: list[str] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: TicketStatus
    reason: str | None = None


class AssignRequest(BaseModel):
    admin_id: uuid.UUID | None = None


class PriorityUpdateRequest(BaseModel):
    priority: TicketPriority


class EscalateRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ResolveRequest(BaseModel):
    resolution_notes: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ChatMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    thread_id: uuid.UUID
    sequence: int
    session_id: uuid.UUID | None = None
    ticket_id: uuid.UUID | None = None
    body: str
    is_customer: bool
    sender_user_id: uuid.UUID | None = None
    kind: MessageKind
    attachment_urls: list[str] = []
    is_read: bool
    created_at: datetime


class ChatSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_email: str | None = None
    customer_name: str | None = None
    customer_user_id: uuid.UUID | None = None
    status: SessionStatus
    ticket_id: uuid.UUID | None = None
    last_activity_at: datetime
    created_at: datetime


class TicketTransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    ticket_id: uuid.UUID
    from_status: TicketStatus
    to_status: TicketStatus
    transitioned_by: uuid.UUID | None = None
    reason: str | None = None
    created_at: datetime


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    ticket_number: str
    subject: str
    description: str
    category: str
    priority: TicketPriority
    status: TicketStatus
    customer_email: str | None = None
    customer_name: str | None = None
    customer_user_id: uuid.UUID | None = None
    assigned_admin_id: uuid.UUID | None = None
    source_session_id: uuid.UUID | None = None
    escalated_at: datetime | None = None
    escalation_reason: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    last_activity_at: datetime
    created_at: datetime
    updated_at: datetime


class ChatSessionListResponse(BaseModel):
    items: list[ChatSessionResponse]
    total: int
    limit: int
    offset: int


class MarkReadResponse(BaseModel):
    updated: int


class TicketListResponse(BaseModel):
    items: list[TicketResponse]
    total: int
    limit: int
    offset: int


class ChatConfigResponse(BaseModel):
    """Connection hints for clients; polling is the degraded mode."""

    websocket_path: str
    poll_interval_seconds: int


class TicketDetailResponse(TicketResponse):
    transitions: list[TicketTransitionResponse] = []
