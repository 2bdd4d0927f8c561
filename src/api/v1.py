"""Centralized v1 API router — all module routers are included here."""

from fastapi import APIRouter

from src.modules.conversation.router import admin_router, chat_router, ticket_router
from src.modules.notification.router import router as notification_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(chat_router)
v1_router.include_router(ticket_router)
v1_router.include_router(admin_router)
v1_router.include_router(notification_router)
