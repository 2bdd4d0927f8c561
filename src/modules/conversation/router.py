"""Support conversation API — guest chat, tickets, and admin triage.

The ``/chat/{ref}/messages`` endpoints are the fallback channel for clients
that cannot hold a live connection; ``ref`` is a session id, ticket id or
ticket number.
"""

import uuid

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database.session import get_db
from src.models.enums import TicketStatus
from src.modules.conversation.constants import DEFAULT_PAGE_LIMIT
from src.modules.conversation.fallback import FallbackChannel, NewSessionRequest
from src.modules.conversation.schemas import (
    AssignRequest,
    ChatConfigResponse,
    ChatMessageResponse,
    ChatSessionListResponse,
    ChatSessionResponse,
    CustomerIdentity,
    EscalateRequest,
    MarkReadResponse,
    MessageCreate,
    PriorityUpdateRequest,
    ResolveRequest,
    SessionCreate,
    StatusUpdateRequest,
    TicketCreate,
    TicketDetailResponse,
    TicketFields,
    TicketListResponse,
    TicketResponse,
)
from src.modules.conversation.service import SupportService
from src.modules.identity.auth import (
    AuthenticatedUser,
    ChatIdentity,
    get_current_user,
    get_optional_user,
    require_admin,
)
from src.modules.realtime.router_service import MessageRouter
from src.modules.realtime.websocket import get_message_router

chat_router = APIRouter(prefix="/chat", tags=["support-chat"])
ticket_router = APIRouter(prefix="/support-tickets", tags=["support-tickets"])
admin_router = APIRouter(prefix="/admin/support-tickets", tags=["admin-support"])

limiter = Limiter(key_func=get_remote_address)


def _get_service(
    db: AsyncSession = Depends(get_db),
    message_router: MessageRouter = Depends(get_message_router),
) -> SupportService:
    return SupportService(db, message_router)


def _get_fallback(
    db: AsyncSession = Depends(get_db),
    message_router: MessageRouter = Depends(get_message_router),
) -> FallbackChannel:
    return FallbackChannel(db, message_router)


def _customer(
    user: AuthenticatedUser | None, email: str | None, name: str | None
) -> CustomerIdentity:
    return CustomerIdentity(
        email=email or (user.email if user else None),
        name=name or (user.name if user else None),
        user_id=user.id if user and not user.is_admin else None,
    )


# ---------------------------------------------------------------------------
# Chat sessions and the fallback message channel
# ---------------------------------------------------------------------------


@chat_router.get("/config", response_model=ChatConfigResponse)
async def chat_config():
    """Connection hints: live endpoint path and the degraded-mode poll interval."""
    return ChatConfigResponse(
        websocket_path="/ws", poll_interval_seconds=settings.chat_poll_interval_seconds
    )


@chat_router.post("/sessions", response_model=ChatSessionResponse, status_code=201)
@limiter.limit("20/minute")
async def create_session(
    request: Request,
    body: SessionCreate,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: SupportService = Depends(_get_service),
):
    """Open a guest chat session."""
    session = await service.create_session(
        _customer(user, body.customer_email, body.customer_name), body.metadata
    )
    return ChatSessionResponse.model_validate(session)


@chat_router.get("/sessions/mine", response_model=ChatSessionListResponse)
async def my_sessions(
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    service: SupportService = Depends(_get_service),
):
    """Chat sessions opened while signed in, most recently active first."""
    items, total = await service.list_sessions(user.id, limit=limit, offset=offset)
    return ChatSessionListResponse(
        items=[ChatSessionResponse.model_validate(s) for s in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@chat_router.post("/sessions/{session_id}/promote", response_model=TicketResponse)
async def promote_session(
    session_id: uuid.UUID,
    body: TicketFields,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: SupportService = Depends(_get_service),
):
    """Turn a chat session into a ticket. Repeated calls return the same ticket."""
    ticket = await service.promote_session(session_id, body, ChatIdentity.from_user(user))
    return TicketResponse.model_validate(ticket)


@chat_router.post("/sessions/{session_id}/end", response_model=ChatSessionResponse)
async def end_session(
    session_id: uuid.UUID,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: SupportService = Depends(_get_service),
):
    session = await service.end_session(session_id, ChatIdentity.from_user(user))
    return ChatSessionResponse.model_validate(session)


@chat_router.get("/{ref}/messages", response_model=list[ChatMessageResponse])
async def list_messages(
    ref: str,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: SupportService = Depends(_get_service),
):
    """Full transcript, oldest first. Safe to re-fetch."""
    messages = await service.list_messages(ref, ChatIdentity.from_user(user))
    return [ChatMessageResponse.model_validate(m) for m in messages]


@chat_router.post("/{ref}/messages", response_model=ChatMessageResponse, status_code=201)
@limiter.limit("60/minute")
async def post_message(
    request: Request,
    ref: str,
    body: MessageCreate,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    fallback: FallbackChannel = Depends(_get_fallback),
):
    """Post a message without a live connection."""
    message = await fallback.send(
        ref, body.message, ChatIdentity.from_user(user), attachment_urls=body.attachment_urls
    )
    return ChatMessageResponse.model_validate(message)


@chat_router.post("/{ref}/read", response_model=MarkReadResponse)
async def mark_read(
    ref: str,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: SupportService = Depends(_get_service),
):
    """Mark the other side's messages as read."""
    updated = await service.mark_read(ref, ChatIdentity.from_user(user))
    return MarkReadResponse(updated=updated)


@chat_router.post("/messages", response_model=ChatMessageResponse, status_code=201)
@limiter.limit("20/minute")
async def start_conversation(
    request: Request,
    body: MessageCreate,
    customer_email: str | None = Query(None, max_length=255),
    customer_name: str | None = Query(None, max_length=255),
    user: AuthenticatedUser | None = Depends(get_optional_user),
    fallback: FallbackChannel = Depends(_get_fallback),
):
    """Open a new guest session whose first entry is the posted message."""
    message = await fallback.send(
        NewSessionRequest(email=customer_email, name=customer_name),
        body.message,
        ChatIdentity.from_user(user),
        attachment_urls=body.attachment_urls,
    )
    return ChatMessageResponse.model_validate(message)


# ---------------------------------------------------------------------------
# Customer tickets
# ---------------------------------------------------------------------------


@ticket_router.post("", response_model=TicketResponse, status_code=201)
@limiter.limit("10/minute")
async def create_ticket(
    request: Request,
    body: TicketCreate,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: SupportService = Depends(_get_service),
):
    """Open a support ticket; every active admin is notified."""
    ticket = await service.create_ticket(
        body, _customer(user, body.customer_email, body.customer_name)
    )
    return TicketResponse.model_validate(ticket)


@ticket_router.get("/mine", response_model=TicketListResponse)
async def my_tickets(
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
    service: SupportService = Depends(_get_service),
):
    items, total = await service.list_tickets(
        customer_email=user.email, customer_user_id=user.id, limit=limit, offset=offset
    )
    return TicketListResponse(
        items=[TicketResponse.model_validate(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@ticket_router.get("/{ticket_id}", response_model=TicketDetailResponse)
async def get_ticket(
    ticket_id: uuid.UUID,
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: SupportService = Depends(_get_service),
):
    ticket = await service.get_ticket(ticket_id, ChatIdentity.from_user(user))
    return TicketDetailResponse.model_validate(ticket)


# ---------------------------------------------------------------------------
# Admin triage
# ---------------------------------------------------------------------------


@admin_router.get("", response_model=TicketListResponse)
async def list_all_tickets(
    status: TicketStatus | None = Query(None),
    assigned_admin_id: uuid.UUID | None = Query(None),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _admin: AuthenticatedUser = Depends(require_admin),
    service: SupportService = Depends(_get_service),
):
    items, total = await service.list_tickets(
        status=status, assigned_admin_id=assigned_admin_id, limit=limit, offset=offset
    )
    return TicketListResponse(
        items=[TicketResponse.model_validate(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@admin_router.patch("/{ticket_id}/status", response_model=TicketResponse)
async def update_status(
    ticket_id: uuid.UUID,
    body: StatusUpdateRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: SupportService = Depends(_get_service),
):
    """Move a ticket through its lifecycle."""
    ticket = await service.transition_status(ticket_id, body.status, admin.id, body.reason)
    return TicketResponse.model_validate(ticket)


@admin_router.patch("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: uuid.UUID,
    body: AssignRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: SupportService = Depends(_get_service),
):
    """Assign to an admin; omitting ``admin_id`` assigns the caller."""
    ticket = await service.assign(ticket_id, body.admin_id, admin.id)
    return TicketResponse.model_validate(ticket)


@admin_router.patch("/{ticket_id}/priority", response_model=TicketResponse)
async def change_priority(
    ticket_id: uuid.UUID,
    body: PriorityUpdateRequest,
    _admin: AuthenticatedUser = Depends(require_admin),
    service: SupportService = Depends(_get_service),
):
    ticket = await service.change_priority(ticket_id, body.priority)
    return TicketResponse.model_validate(ticket)


@admin_router.post("/{ticket_id}/escalate", response_model=TicketResponse)
async def escalate_ticket(
    ticket_id: uuid.UUID,
    body: EscalateRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: SupportService = Depends(_get_service),
):
    """Escalate to the rest of the support team; priority becomes urgent."""
    ticket = await service.escalate(ticket_id, admin.id, body.reason)
    return TicketResponse.model_validate(ticket)


@admin_router.post("/{ticket_id}/resolve", response_model=TicketResponse)
async def resolve_ticket(
    ticket_id: uuid.UUID,
    body: ResolveRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: SupportService = Depends(_get_service),
):
    ticket = await service.resolve(ticket_id, admin.id, body.resolution_notes)
    return TicketResponse.model_validate(ticket)


@admin_router.post("/{ticket_id}/respond", response_model=ChatMessageResponse, status_code=201)
async def respond_to_ticket(
    ticket_id: uuid.UUID,
    body: MessageCreate,
    admin: AuthenticatedUser = Depends(require_admin),
    fallback: FallbackChannel = Depends(_get_fallback),
):
    """Reply to the customer; they are notified when not connected."""
    message = await fallback.send(
        ticket_id, body.message, ChatIdentity.from_user(admin), attachment_urls=body.attachment_urls
    )
    return ChatMessageResponse.model_validate(message)
