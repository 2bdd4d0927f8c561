"""Presence registry — the in-memory map of live connections.

Nothing here is persisted: the registry starts empty on every process start
and entries vanish when their connection closes. All reads and writes go
through one lock so a broadcast never sees a half-applied mutation.
"""

import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, replace

from src.modules.identity.auth import ChatIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    connection_id: str
    identity: ChatIdentity = field(default_factory=ChatIdentity.anonymous)
    authenticated: bool = False
    subscriptions: frozenset[uuid.UUID] = frozenset()

    @property
    def is_admin(self) -> bool:
        return self.identity.is_admin

    @property
    def user_id(self) -> uuid.UUID | None:
        return self.identity.user_id


class PresenceRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, PresenceEntry] = {}
        self._subscribers: dict[uuid.UUID, set[str]] = defaultdict(set)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _require(self, connection_id: str) -> PresenceEntry:
        try:
            return self._entries[connection_id]
        except KeyError:
            raise KeyError(f"Unknown connection {connection_id}") from None

    def register(self, connection_id: str) -> None:
        with self._lock:
            if connection_id in self._entries:
                raise ValueError(f"Connection {connection_id} is already registered")
            self._entries[connection_id] = PresenceEntry(connection_id)

    def authenticate(self, connection_id: str, identity: ChatIdentity) -> None:
        with self._lock:
            entry = self._require(connection_id)
            self._entries[connection_id] = replace(entry, identity=identity, authenticated=True)

    def subscribe(self, connection_id: str, thread_id: uuid.UUID) -> None:
        with self._lock:
            entry = self._require(connection_id)
            self._entries[connection_id] = replace(
                entry, subscriptions=entry.subscriptions | {thread_id}
            )
            self._subscribers[thread_id].add(connection_id)

    def unsubscribe(self, connection_id: str, thread_id: uuid.UUID) -> None:
        with self._lock:
            entry = self._require(connection_id)
            self._entries[connection_id] = replace(
                entry, subscriptions=entry.subscriptions - {thread_id}
            )
            self._discard_subscriber(thread_id, connection_id)

    def unregister(self, connection_id: str) -> None:
        """Drop a connection and every subscription it held. Idempotent."""
        with self._lock:
            entry = self._entries.pop(connection_id, None)
            if entry is None:
                return
            for thread_id in entry.subscriptions:
                self._discard_subscriber(thread_id, connection_id)

    def _discard_subscriber(self, thread_id: uuid.UUID, connection_id: str) -> None:
        subscribers = self._subscribers.get(thread_id)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._subscribers[thread_id]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, connection_id: str) -> PresenceEntry:
        with self._lock:
            return self._require(connection_id)

    def live_recipients_for(self, thread_id: uuid.UUID) -> frozenset[str]:
        with self._lock:
            return frozenset(self._subscribers.get(thread_id, ()))

    def live_entries_for(self, thread_id: uuid.UUID) -> list[PresenceEntry]:
        with self._lock:
            return [self._entries[cid] for cid in self._subscribers.get(thread_id, ())]

    def is_admin_live(self, thread_id: uuid.UUID) -> bool:
        return any(entry.is_admin for entry in self.live_entries_for(thread_id))

    def is_user_live(self, thread_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        return any(entry.user_id == user_id for entry in self.live_entries_for(thread_id))

    def is_customer_live(self, thread_id: uuid.UUID) -> bool:
        return any(not entry.is_admin for entry in self.live_entries_for(thread_id))
