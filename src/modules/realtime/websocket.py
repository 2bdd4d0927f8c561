"""Live transport endpoint: one WebSocket per client connection."""

import logging

from fastapi import APIRouter, Request, WebSocket

from src.modules.realtime.router_service import MessageRouter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def get_message_router(request: Request) -> MessageRouter:
    """FastAPI dependency returning the process-wide message router."""
    return request.app.state.message_router


class WebSocketConnection:
    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send_json(self, data: dict) -> None:
        await self.websocket.send_json(data)


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    message_router: MessageRouter = websocket.app.state.message_router
    await websocket.accept()
    connection_id = message_router.open(WebSocketConnection(websocket))
    try:
        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                logger.debug(
                    "Connection %s disconnected (code %s)", connection_id, event.get("code")
                )
                break
            # Text and binary frames both carry a JSON envelope
            frame = event.get("text")
            if frame is None:
                frame = event.get("bytes") or b""
            await message_router.handle(connection_id, frame)
    finally:
        await message_router.close(connection_id)
