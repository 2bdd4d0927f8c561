"""Reconnecting support chat client.

Holds one live WebSocket connection when it can, and degrades to the HTTP
fallback channel (post + poll) when it cannot. Messages are delivered to the
caller exactly once each, de-duplicated by id, whichever path they arrive on.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
import websockets
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

MessageHandler = Callable[[dict], Any]


def _from_http(item: dict) -> dict:
    """Normalise a fallback API message to the live envelope shape."""
    return {
        "type": "chat_message",
        "id": item["id"],
        "message": item["body"],
        "isCustomer": item["is_customer"],
        "timestamp": item["created_at"],
        "sessionId": item.get("session_id"),
        "ticketId": item.get("ticket_id"),
        "kind": item.get("kind", "text"),
        "userId": item.get("sender_user_id"),
        "sequence": item.get("sequence"),
        "attachmentUrls": item.get("attachment_urls", []),
    }


class SupportChatClient:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        customer_email: str | None = None,
        customer_name: str | None = None,
        on_message: MessageHandler | None = None,
        on_typing: MessageHandler | None = None,
        on_error: MessageHandler | None = None,
        on_state: Callable[[str], Any] | None = None,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        backoff_factor: float = 1.5,
        typing_throttle: float = 3.0,
        max_live_failures: int = 3,
        http_client: httpx.AsyncClient | None = None,
        connect: Callable[..., Any] = websockets.connect,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.customer_email = customer_email
        self.customer_name = customer_name
        self.on_message = on_message
        self.on_typing = on_typing
        self.on_error = on_error
        self.on_state = on_state
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_factor = backoff_factor
        self.typing_throttle = typing_throttle
        self.max_live_failures = max_live_failures
        self.poll_interval = DEFAULT_POLL_INTERVAL

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, headers=headers)
        self._connect = connect
        self._clock = clock

        self.state = "disconnected"
        self._ws = None
        self._running = False
        self._live_failures = 0
        self._subscriptions: list[str] = []
        self._seen_ids: set[str] = set()
        self._greeted = False
        self._awaiting_session = False
        self._typing_sent_at: dict[str, float] = {}

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            return "wss://" + self.base_url[len("https://"):] + "/ws"
        if self.base_url.startswith("http://"):
            return "ws://" + self.base_url[len("http://"):] + "/ws"
        return self.base_url + "/ws"

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    @property
    def is_live(self) -> bool:
        return self._ws is not None and self.state == "live"

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        logger.debug("Support chat client %s -> %s", self.state, state)
        self.state = state
        if self.on_state is not None:
            self.on_state(state)

    async def _call(self, handler: MessageHandler | None, payload: dict) -> None:
        if handler is None:
            return
        result = handler(payload)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load_config(self) -> None:
        """Pick up the server's advertised poll interval."""
        try:
            response = await self._http.get("/api/v1/chat/config")
            response.raise_for_status()
            self.poll_interval = float(response.json()["poll_interval_seconds"])
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("Could not load chat config, polling every %ss: %s", self.poll_interval, exc)

    async def run(self) -> None:
        """Keep a live connection open, reconnecting with exponential backoff."""
        self._running = True
        await self.load_config()
        backoff = self.initial_backoff

        while self._running:
            self._set_state("connecting" if self._live_failures == 0 else "reconnecting")
            try:
                async with self._connect(self.ws_url) as ws:
                    self._ws = ws
                    await self._on_connected()
                    backoff = self.initial_backoff
                    self._live_failures = 0
                    await self._listen(ws)
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                if not self._running:
                    break
                self._live_failures += 1
                logger.warning(
                    "Support chat connection lost (%s). Reconnecting in %.1fs...", exc, backoff
                )
            finally:
                self._ws = None

            if not self._running:
                break
            await self._wait_before_reconnect(backoff)
            backoff = min(backoff * self.backoff_factor, self.max_backoff)

        self._set_state("disconnected")

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    async def aclose(self) -> None:
        await self.stop()
        await self._http.aclose()

    async def _on_connected(self) -> None:
        envelope: dict = {"type": "authenticate"}
        if self.token:
            envelope["token"] = self.token
        await self._send(envelope)
        for ref in self._subscriptions:
            await self._send({"type": "subscribe", "sessionId": ref})
        self._set_state("live")
        # Anything posted while we were away is fetched once; duplicates are dropped
        for ref in self._subscriptions:
            await self._backfill(ref)

    async def _wait_before_reconnect(self, delay: float) -> None:
        if self._live_failures < self.max_live_failures:
            await asyncio.sleep(delay)
            return

        # Degraded mode: poll the fallback channel until the next attempt
        self._set_state("fallback")
        deadline = self._clock() + delay
        while self._running:
            await self.poll_once()
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _listen(self, ws) -> None:
        async for frame in ws:
            try:
                envelope = json.loads(frame)
            except ValueError:
                logger.warning("Ignoring non-JSON frame from server")
                continue
            await self._dispatch(envelope)

    async def _dispatch(self, envelope: dict) -> None:
        kind = envelope.get("type")
        if kind == "chat_message":
            await self._deliver(envelope)
        elif kind == "typing":
            await self._call(self.on_typing, envelope)
        elif kind == "error":
            logger.warning("Server rejected envelope: %s", envelope.get("message"))
            await self._call(self.on_error, envelope)

    async def _deliver(self, envelope: dict) -> None:
        message_id = envelope.get("id")
        if message_id is None:
            # The greeting is never persisted and repeats on every reconnect
            if self._greeted:
                return
            self._greeted = True
        else:
            message_id = str(message_id)
            if message_id in self._seen_ids:
                return
            self._seen_ids.add(message_id)
            if self._awaiting_session and envelope.get("isCustomer") and envelope.get("sessionId"):
                self._awaiting_session = False
                self._remember(str(envelope["sessionId"]))
        await self._call(self.on_message, envelope)

    def _remember(self, ref: str) -> None:
        if ref not in self._subscriptions:
            self._subscriptions.append(ref)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, envelope: dict) -> None:
        await self._ws.send(json.dumps(envelope))

    async def subscribe(self, ref: str) -> None:
        self._remember(ref)
        if self.is_live:
            await self._send({"type": "subscribe", "sessionId": ref})
        await self._backfill(ref)

    async def unsubscribe(self, ref: str) -> None:
        if ref in self._subscriptions:
            self._subscriptions.remove(ref)
        if self.is_live:
            await self._send({"type": "unsubscribe", "sessionId": ref})

    async def send_message(self, body: str, ref: str | None = None) -> dict | None:
        """Send a message live when connected, otherwise through the fallback channel.

        Returns the persisted message for fallback sends; live sends are
        confirmed by the server's echo.
        """
        if self.is_live:
            envelope: dict = {"type": "chat_message", "message": body}
            if ref is not None:
                envelope["sessionId"] = ref
            else:
                self._awaiting_session = True
                if self.customer_email:
                    envelope["customerEmail"] = self.customer_email
                if self.customer_name:
                    envelope["customerName"] = self.customer_name
            try:
                await self._send(envelope)
                return None
            except (OSError, WebSocketException) as exc:
                self._awaiting_session = False
                logger.warning("Live send failed (%s); using the fallback channel", exc)

        return await self._post(body, ref)

    async def _post(self, body: str, ref: str | None) -> dict:
        if ref is None:
            params = {}
            if self.customer_email:
                params["customer_email"] = self.customer_email
            if self.customer_name:
                params["customer_name"] = self.customer_name
            response = await self._http.post(
                "/api/v1/chat/messages", json={"message": body}, params=params
            )
        else:
            response = await self._http.post(f"/api/v1/chat/{ref}/messages", json={"message": body})
        response.raise_for_status()
        message = _from_http(response.json())
        if ref is None and message["sessionId"]:
            self._remember(str(message["sessionId"]))
        await self._deliver(message)
        return message

    async def typing(self, ref: str, is_typing: bool = True) -> None:
        """Relay a typing indicator, at most one 'typing' per throttle window."""
        if not self.is_live:
            return
        now = self._clock()
        last = self._typing_sent_at.get(ref)
        if is_typing:
            if last is not None and now - last < self.typing_throttle:
                return
            self._typing_sent_at[ref] = now
        else:
            if last is None:
                return
            del self._typing_sent_at[ref]
        await self._send({"type": "typing", "sessionId": ref, "isTyping": is_typing})

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _backfill(self, ref: str) -> None:
        try:
            response = await self._http.get(f"/api/v1/chat/{ref}/messages")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch messages for %s: %s", ref, exc)
            return
        for item in response.json():
            await self._deliver(_from_http(item))

    async def poll_once(self) -> None:
        for ref in list(self._subscriptions):
            await self._backfill(ref)
