"""Fallback channel — request/response message posting.

For clients that cannot hold a live connection. Messages go through the
same acceptance pipeline as live ``chat_message`` envelopes, so they are
persisted identically, reach any live subscribers, and notify the same
recipients.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.chat_message import ChatMessage
from src.modules.conversation.schemas import CustomerIdentity
from src.modules.identity.auth import ChatIdentity
from src.modules.realtime.router_service import MessageRouter


class NewSessionRequest(CustomerIdentity):
    """Open a new guest session with the posted message as its first entry."""

    metadata: dict | None = None


class FallbackChannel:
    def __init__(self, db: AsyncSession, router: MessageRouter) -> None:
        self.db = db
        self.router = router

    async def send(
        self,
        target: str | uuid.UUID | NewSessionRequest,
        body: str,
        sender: ChatIdentity,
        attachment_urls: Sequence[str] | None = None,
    ) -> ChatMessage:
        if isinstance(target, NewSessionRequest):
            return await self.router.accept(
                self.db,
                sender,
                None,
                body,
                attachment_urls=attachment_urls,
                customer=CustomerIdentity(
                    email=target.email or sender.email,
                    name=target.name or sender.name,
                    user_id=target.user_id or sender.user_id,
                ),
                metadata=target.metadata,
            )
        return await self.router.accept(
            self.db, sender, target, body, attachment_urls=attachment_urls
        )
