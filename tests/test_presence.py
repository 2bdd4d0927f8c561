"""Tests for PresenceRegistry."""

import threading
import uuid

import pytest

from src.modules.identity.auth import ChatIdentity
from src.modules.realtime.presence import PresenceRegistry

ADMIN = ChatIdentity(user_id=uuid.uuid4(), is_admin=True, email="alice@support.test")
CUSTOMER = ChatIdentity(user_id=uuid.uuid4(), email="carol@example.com")


class TestRegistration:
    def test_register_starts_unauthenticated_without_subscriptions(self):
        registry = PresenceRegistry()
        registry.register("c1")

        entry = registry.get("c1")
        assert entry.authenticated is False
        assert entry.identity.is_anonymous
        assert entry.subscriptions == frozenset()
        assert len(registry) == 1

    def test_duplicate_registration_is_an_error(self):
        registry = PresenceRegistry()
        registry.register("c1")
        with pytest.raises(ValueError):
            registry.register("c1")

    def test_unknown_connection_raises_key_error(self):
        registry = PresenceRegistry()
        with pytest.raises(KeyError):
            registry.subscribe("missing", uuid.uuid4())
        with pytest.raises(KeyError):
            registry.authenticate("missing", ADMIN)

    def test_authenticate_replaces_identity(self):
        registry = PresenceRegistry()
        registry.register("c1")
        registry.authenticate("c1", ADMIN)

        entry = registry.get("c1")
        assert entry.authenticated is True
        assert entry.is_admin
        assert entry.user_id == ADMIN.user_id


class TestSubscriptions:
    def test_live_recipients_for_thread(self):
        registry = PresenceRegistry()
        thread = uuid.uuid4()
        other = uuid.uuid4()
        for cid in ("c1", "c2", "c3"):
            registry.register(cid)
        registry.subscribe("c1", thread)
        registry.subscribe("c2", thread)
        registry.subscribe("c3", other)

        assert registry.live_recipients_for(thread) == frozenset({"c1", "c2"})
        assert registry.live_recipients_for(uuid.uuid4()) == frozenset()

    def test_subscribe_is_idempotent(self):
        registry = PresenceRegistry()
        thread = uuid.uuid4()
        registry.register("c1")
        registry.subscribe("c1", thread)
        registry.subscribe("c1", thread)

        assert registry.get("c1").subscriptions == frozenset({thread})
        assert registry.live_recipients_for(thread) == frozenset({"c1"})

    def test_unsubscribe(self):
        registry = PresenceRegistry()
        thread = uuid.uuid4()
        registry.register("c1")
        registry.subscribe("c1", thread)
        registry.unsubscribe("c1", thread)

        assert registry.live_recipients_for(thread) == frozenset()
        assert registry.get("c1").subscriptions == frozenset()

    def test_unregister_removes_every_subscription(self):
        registry = PresenceRegistry()
        threads = [uuid.uuid4(), uuid.uuid4()]
        registry.register("c1")
        for thread in threads:
            registry.subscribe("c1", thread)

        registry.unregister("c1")
        registry.unregister("c1")

        assert len(registry) == 0
        assert all(registry.live_recipients_for(t) == frozenset() for t in threads)
        with pytest.raises(KeyError):
            registry.get("c1")


class TestLiveness:
    def test_admin_and_customer_liveness(self):
        registry = PresenceRegistry()
        thread = uuid.uuid4()
        registry.register("admin")
        registry.register("customer")
        registry.authenticate("admin", ADMIN)
        registry.authenticate("customer", CUSTOMER)

        assert not registry.is_admin_live(thread)
        assert not registry.is_customer_live(thread)

        registry.subscribe("admin", thread)
        assert registry.is_admin_live(thread)
        assert registry.is_user_live(thread, ADMIN.user_id)
        assert not registry.is_user_live(thread, CUSTOMER.user_id)
        assert not registry.is_customer_live(thread)

        registry.subscribe("customer", thread)
        assert registry.is_customer_live(thread)

    def test_concurrent_mutations_leave_consistent_state(self):
        registry = PresenceRegistry()
        thread = uuid.uuid4()

        def churn(index: int) -> None:
            cid = f"c{index}"
            registry.register(cid)
            registry.subscribe(cid, thread)
            if index % 2:
                registry.unregister(cid)

        workers = [threading.Thread(target=churn, args=(i,)) for i in range(50)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        expected = {f"c{i}" for i in range(50) if i % 2 == 0}
        assert registry.live_recipients_for(thread) == frozenset(expected)
        assert len(registry) == len(expected)
