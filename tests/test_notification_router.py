"""Tests for the notification API against an in-memory database."""

import uuid

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from src.app import register_exception_handlers
from src.database.session import get_db
from src.models.enums import NotificationType
from src.modules.identity.auth import AuthenticatedUser, get_current_user
from src.modules.notification.dispatcher import NotificationDispatcher, Recipient
from src.modules.notification.router import router


@pytest_asyncio.fixture
async def api(db, customer_user):
    app = FastAPI()
    app.include_router(router)
    register_exception_handlers(app)

    user = AuthenticatedUser(id=customer_user.id, email=customer_user.email)

    async def _override_get_db():
        yield db

    async def _override_get_current_user():
        return user

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_current_user] = _override_get_current_user

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def seeded(db, customer_user, admin_user):
    dispatcher = NotificationDispatcher(db)
    mine = Recipient.customer(user_id=customer_user.id)
    reply = await dispatcher.notify(mine, NotificationType.SUPPORT_RESPONSE, "New reply", "We found it")
    waiting = await dispatcher.notify(
        mine, NotificationType.STATUS_UPDATE, "Waiting on you", "Please confirm", action_required=True
    )
    by_email = await dispatcher.notify(
        Recipient.customer(email=customer_user.email), NotificationType.RESOLUTION, "Resolved", "Done"
    )
    await dispatcher.notify(Recipient.admin(admin_user.id), NotificationType.NEW_CHAT, "Admin only", "m")
    await db.commit()
    return {"reply": reply, "waiting": waiting, "by_email": by_email}


class TestNotificationRouter:
    @pytest.mark.asyncio
    async def test_list_returns_only_callers_notifications(self, api, seeded):
        response = await api.get("/notifications")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert {item["title"] for item in data["items"]} == {"New reply", "Waiting on you", "Resolved"}
        assert all(item["is_read"] is False for item in data["items"])

    @pytest.mark.asyncio
    async def test_count_and_summary(self, api, seeded):
        count = await api.get("/notifications/count")
        summary = await api.get("/notifications/summary")

        assert count.json() == {"unread": 3}
        assert summary.json() == {"total": 3, "unread": 3, "urgent_unread": 0, "awaiting_action": 1}

    @pytest.mark.asyncio
    async def test_mark_read_then_unread_only_filter(self, api, seeded):
        notification_id = seeded["reply"].id

        first = await api.patch(f"/notifications/{notification_id}/read")
        again = await api.patch(f"/notifications/{notification_id}/read")

        assert first.status_code == 200
        assert first.json()["is_read"] is True
        assert again.json()["read_at"] == first.json()["read_at"]

        unread = await api.get("/notifications", params={"unread_only": True})
        assert unread.json()["total"] == 2

    @pytest.mark.asyncio
    async def test_mark_all_read(self, api, seeded):
        response = await api.patch("/notifications/read-all")
        assert response.json() == {"updated": 3}
        assert (await api.get("/notifications/count")).json() == {"unread": 0}

    @pytest.mark.asyncio
    async def test_unknown_notification_is_404(self, api, seeded):
        response = await api.patch(f"/notifications/{uuid.uuid4()}/read")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_respond(self, api, seeded):
        notification_id = seeded["waiting"].id

        response = await api.post(
            f"/notifications/{notification_id}/respond",
            json={"action": "acknowledge", "response": "Confirmed"},
        )
        repeat = await api.post(
            f"/notifications/{notification_id}/respond", json={"action": "acknowledge"}
        )

        assert response.status_code == 200
        assert response.json()["response_action"] == "acknowledge"
        assert repeat.status_code == 409

    @pytest.mark.asyncio
    async def test_respond_to_informational_notification_is_rejected(self, api, seeded):
        response = await api.post(
            f"/notifications/{seeded['reply'].id}/respond", json={"action": "acknowledge"}
        )
        assert response.status_code == 422
