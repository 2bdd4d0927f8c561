"""Tests for the /ws live transport endpoint."""

from unittest.mock import MagicMock

from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.modules.realtime.presence import PresenceRegistry
from src.modules.realtime.router_service import MessageRouter
from src.modules.realtime.websocket import router


def _make_app() -> tuple[FastAPI, PresenceRegistry]:
    presence = PresenceRegistry()
    app = FastAPI()
    app.include_router(router)
    app.state.message_router = MessageRouter(
        presence=presence, session_factory=MagicMock(), greeting="Hi! How can we help?"
    )
    return app, presence


class TestChatSocket:
    def test_authenticate_and_greeting(self):
        app, presence = _make_app()
        client = TestClient(app)

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "authenticate"})
            authenticated = ws.receive_json()
            greeting = ws.receive_json()

            assert authenticated == {"type": "authenticated", "userId": None, "isAdmin": False}
            assert greeting["type"] == "chat_message"
            assert greeting["id"] is None
            assert greeting["message"] == "Hi! How can we help?"
            assert len(presence) == 1

    def test_malformed_frame_keeps_socket_open(self):
        app, _ = _make_app()
        client = TestClient(app)

        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "VALIDATION_ERROR"

            ws.send_json({"type": "authenticate"})
            assert ws.receive_json()["type"] == "authenticated"

    def test_binary_frame_is_parsed_as_an_envelope(self):
        app, presence = _make_app()
        client = TestClient(app)

        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b'{"type": "authenticate"}')
            assert ws.receive_json()["type"] == "authenticated"
            assert ws.receive_json()["type"] == "chat_message"
            assert len(presence) == 1

    def test_malformed_binary_frame_keeps_socket_open(self):
        app, presence = _make_app()
        client = TestClient(app)

        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b"\x00\x01not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "VALIDATION_ERROR"

            ws.send_json({"type": "authenticate"})
            assert ws.receive_json()["type"] == "authenticated"
            assert len(presence) == 1

    def test_disconnect_clears_presence(self):
        app, presence = _make_app()
        client = TestClient(app)

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "authenticate"})
            ws.receive_json()

        assert len(presence) == 0
