"""Tests for ConversationStore — sessions, tickets and ordered transcripts."""

import re
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from src.exceptions import ConflictException, NotFoundException, ValidationException
from src.models.enums import MessageKind, SessionStatus, TicketPriority, TicketStatus
from src.models.ticket_transition import TicketTransition
from src.modules.conversation.schemas import CustomerIdentity, TicketFields
from src.modules.conversation.store import ConversationStore

GUEST = CustomerIdentity(email="guest@example.com", name="Guest")


async def _ticket(store: ConversationStore, subject: str = "Where's my gold?", **kwargs):
    return await store.create_ticket(
        subject=subject,
        category="delivery",
        priority=kwargs.pop("priority", TicketPriority.MEDIUM),
        customer=kwargs.pop("customer", GUEST),
        **kwargs,
    )


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_creates_active_session(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST, {"page": "/vault"})

        assert session.id is not None
        assert session.status == SessionStatus.ACTIVE
        assert session.customer_email == "guest@example.com"
        assert session.metadata_extra == {"page": "/vault"}
        assert session.ticket_id is None

    @pytest.mark.asyncio
    async def test_linked_user_without_email_is_enough(self, db, customer_user):
        store = ConversationStore(db)
        session = await store.create_session(CustomerIdentity(user_id=customer_user.id))
        assert session.customer_user_id == customer_user.id

    @pytest.mark.asyncio
    async def test_missing_identity_raises_validation(self, db):
        store = ConversationStore(db)
        with pytest.raises(ValidationException, match="email"):
            await store.create_session(CustomerIdentity(name="Nobody"))

    @pytest.mark.asyncio
    async def test_blank_email_counts_as_missing(self, db):
        store = ConversationStore(db)
        with pytest.raises(ValidationException):
            await store.create_session(CustomerIdentity(email="   "))


class TestCreateTicket:
    @pytest.mark.asyncio
    async def test_ticket_starts_open_with_readable_number(self, db):
        store = ConversationStore(db)
        ticket = await _ticket(store)

        assert ticket.status == TicketStatus.OPEN
        assert re.fullmatch(r"TKT-\d{4}-\d{6}", ticket.ticket_number)
        assert ticket.category == "delivery"
        assert ticket.thread_id == ticket.id

    @pytest.mark.asyncio
    async def test_ticket_number_collision_is_retried(self, db, monkeypatch):
        store = ConversationStore(db)
        first = await _ticket(store)

        numbers = iter([first.ticket_number, "TKT-2026-424242"])
        monkeypatch.setattr(store, "_generate_ticket_number", lambda: next(numbers))

        second = await _ticket(store, subject="Second ticket")
        assert second.ticket_number == "TKT-2026-424242"

    @pytest.mark.asyncio
    async def test_ticket_number_exhaustion_raises_conflict(self, db, monkeypatch):
        store = ConversationStore(db)
        first = await _ticket(store)
        monkeypatch.setattr(store, "_generate_ticket_number", lambda: first.ticket_number)

        with pytest.raises(ConflictException, match="ticket number"):
            await _ticket(store, subject="Doomed")

    @pytest.mark.asyncio
    async def test_missing_identity_raises_validation(self, db):
        store = ConversationStore(db)
        with pytest.raises(ValidationException):
            await _ticket(store, customer=CustomerIdentity())


class TestAppendMessage:
    @pytest.mark.asyncio
    async def test_append_assigns_increasing_sequence(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)

        first = await store.append_message(session.id, "Hello", is_customer=True)
        second = await store.append_message(session.id, "Anyone there?", is_customer=True)

        assert (first.sequence, second.sequence) == (1, 2)
        assert first.thread_id == session.id
        assert first.session_id == session.id
        assert first.ticket_id is None
        assert first.kind == MessageKind.TEXT

    @pytest.mark.asyncio
    async def test_body_is_trimmed(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        message = await store.append_message(session.id, "  Hello  ", is_customer=True)
        assert message.body == "Hello"

    @pytest.mark.asyncio
    async def test_blank_body_raises_validation(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        with pytest.raises(ValidationException, match="Message is required"):
            await store.append_message(session.id, "   \n", is_customer=True)

    @pytest.mark.asyncio
    async def test_unknown_conversation_raises_not_found(self, db):
        store = ConversationStore(db)
        with pytest.raises(NotFoundException):
            await store.append_message(uuid.uuid4(), "Hello", is_customer=True)

    @pytest.mark.asyncio
    async def test_unknown_ticket_number_raises_not_found(self, db):
        store = ConversationStore(db)
        with pytest.raises(NotFoundException):
            await store.append_message("TKT-1999-000000", "Hello", is_customer=True)

    @pytest.mark.asyncio
    async def test_append_touches_last_activity(self, db):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        stale = datetime.now(UTC) - timedelta(days=2)
        ticket.last_activity_at = stale

        await store.append_message(ticket.id, "Update please", is_customer=True)

        assert ticket.last_activity_at > stale

    @pytest.mark.asyncio
    async def test_resolve_by_ticket_number(self, db):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        message = await store.append_message(ticket.ticket_number, "By number", is_customer=True)
        assert message.ticket_id == ticket.id

    @pytest.mark.asyncio
    async def test_sequence_collision_is_retried(self, db, monkeypatch):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.append_message(session.id, "first", is_customer=True)

        real_next_sequence = store._next_sequence
        stale_values = iter([1])

        async def racing_next_sequence(thread_id):
            # Simulates a writer that read max(sequence) before another commit
            try:
                return next(stale_values)
            except StopIteration:
                return await real_next_sequence(thread_id)

        monkeypatch.setattr(store, "_next_sequence", racing_next_sequence)
        second = await store.append_message(session.id, "second", is_customer=True)

        assert second.sequence == 2
        bodies = [m.body for m in await store.list_messages(session.id)]
        assert bodies == ["first", "second"]

    @pytest.mark.asyncio
    async def test_persistent_sequence_collision_raises_conflict(self, db, monkeypatch):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.append_message(session.id, "first", is_customer=True)

        async def always_stale(thread_id):
            return 1

        monkeypatch.setattr(store, "_next_sequence", always_stale)
        with pytest.raises(ConflictException, match="concurrent"):
            await store.append_message(session.id, "second", is_customer=True)


class TestListMessages:
    @pytest.mark.asyncio
    async def test_oldest_first_and_isolated_per_conversation(self, db):
        store = ConversationStore(db)
        a = await store.create_session(GUEST)
        b = await store.create_session(CustomerIdentity(email="other@example.com"))

        for i in range(3):
            await store.append_message(a.id, f"a{i}", is_customer=True)
            await store.append_message(b.id, f"b{i}", is_customer=False)

        a_messages = await store.list_messages(a.id)
        b_messages = await store.list_messages(b.id)
        assert [m.body for m in a_messages] == ["a0", "a1", "a2"]
        assert [m.body for m in b_messages] == ["b0", "b1", "b2"]
        assert [m.sequence for m in a_messages] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_listing_is_restartable(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.append_message(session.id, "one", is_customer=True)

        first_read = [m.id for m in await store.list_messages(session.id)]
        second_read = [m.id for m in await store.list_messages(session.id)]
        assert first_read == second_read


class TestTransitionStatus:
    @pytest.mark.asyncio
    async def test_allowed_transition_records_audit_and_system_message(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)

        message = await store.transition_status(ticket.id, TicketStatus.IN_PROGRESS, admin_user.id)

        assert ticket.status == TicketStatus.IN_PROGRESS
        assert message.kind == MessageKind.SYSTEM
        assert "open" in message.body and "in progress" in message.body
        assert message.is_customer is False

        count = await db.execute(
            select(func.count())
            .select_from(TicketTransition)
            .where(
                TicketTransition.ticket_id == ticket.id,
                TicketTransition.to_status == TicketStatus.IN_PROGRESS,
            )
        )
        assert count.scalar() == 1

    @pytest.mark.asyncio
    async def test_in_progress_and_waiting_customer_alternate(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        for status in (
            TicketStatus.IN_PROGRESS,
            TicketStatus.WAITING_CUSTOMER,
            TicketStatus.IN_PROGRESS,
            TicketStatus.WAITING_CUSTOMER,
        ):
            await store.transition_status(ticket.id, status, admin_user.id)
        assert ticket.status == TicketStatus.WAITING_CUSTOMER

    @pytest.mark.asyncio
    async def test_resolved_cannot_return_to_open(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        await store.transition_status(ticket.id, TicketStatus.RESOLVED, admin_user.id)

        with pytest.raises(ConflictException, match="Cannot transition"):
            await store.transition_status(ticket.id, TicketStatus.OPEN, admin_user.id)
        with pytest.raises(ConflictException):
            await store.transition_status(ticket.id, TicketStatus.IN_PROGRESS, admin_user.id)

    @pytest.mark.asyncio
    async def test_closed_is_terminal(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        await store.transition_status(ticket.id, TicketStatus.CLOSED, admin_user.id)

        with pytest.raises(ConflictException):
            await store.transition_status(ticket.id, TicketStatus.RESOLVED, admin_user.id)

    @pytest.mark.asyncio
    async def test_unknown_ticket_raises_not_found(self, db, admin_user):
        store = ConversationStore(db)
        with pytest.raises(NotFoundException):
            await store.transition_status(uuid.uuid4(), TicketStatus.CLOSED, admin_user.id)


class TestMessageAcceptance:
    @pytest.mark.asyncio
    async def test_closed_ticket_rejects_messages(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        await store.transition_status(ticket.id, TicketStatus.CLOSED, admin_user.id)

        with pytest.raises(ConflictException, match="no longer accepts"):
            await store.append_message(ticket.id, "Hello?", is_customer=True)

    @pytest.mark.asyncio
    async def test_resolved_ticket_still_accepts_messages(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        await store.resolve_ticket(ticket.id, admin_user.id, "Shipped")

        message = await store.append_message(ticket.id, "Thanks!", is_customer=True)
        assert message.ticket_id == ticket.id

    @pytest.mark.asyncio
    async def test_ended_session_rejects_messages(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.end_session(session.id)

        with pytest.raises(ConflictException):
            await store.append_message(session.id, "Still there?", is_customer=True)

    @pytest.mark.asyncio
    async def test_end_session_is_idempotent(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.end_session(session.id)
        again = await store.end_session(session.id)
        assert again.status == SessionStatus.ENDED


class TestPromotion:
    @pytest.mark.asyncio
    async def test_promotion_is_idempotent_and_shares_transcript(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.append_message(session.id, "My bar is missing", is_customer=True)
        fields = TicketFields(subject="Missing bar", priority=TicketPriority.HIGH)

        ticket = await store.promote_session_to_ticket(session.id, fields)
        again = await store.promote_session_to_ticket(session.id, fields)

        assert again.id == ticket.id
        assert session.ticket_id == ticket.id
        assert session.status == SessionStatus.TRANSFERRED
        assert ticket.source_session_id == session.id
        assert ticket.thread_id == session.id
        assert ticket.customer_email == "guest@example.com"

        messages = await store.list_messages(ticket.id)
        assert [m.kind for m in messages] == [MessageKind.TEXT, MessageKind.SYSTEM]
        assert ticket.ticket_number in messages[1].body

    @pytest.mark.asyncio
    async def test_messages_after_promotion_carry_both_ids(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        ticket = await store.promote_session_to_ticket(session.id, TicketFields(subject="Help"))

        via_session = await store.append_message(session.id, "via session", is_customer=True)
        via_ticket = await store.append_message(ticket.ticket_number, "via ticket", is_customer=False)

        for message in (via_session, via_ticket):
            assert message.session_id == session.id
            assert message.ticket_id == ticket.id
        assert via_ticket.sequence == via_session.sequence + 1

    @pytest.mark.asyncio
    async def test_ended_session_can_still_be_promoted(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.end_session(session.id)

        ticket = await store.promote_session_to_ticket(session.id, TicketFields(subject="Follow up"))

        assert ticket.status == TicketStatus.OPEN
        # The ticket's lifecycle now governs the shared conversation
        message = await store.append_message(session.id, "Reopened via ticket", is_customer=True)
        assert message.ticket_id == ticket.id


class TestTicketActions:
    @pytest.mark.asyncio
    async def test_escalation_sets_urgent_and_records_notice(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)

        notice = await store.escalate_ticket(ticket.id, admin_user.id, "VIP customer")

        assert ticket.priority == TicketPriority.URGENT
        assert ticket.escalated_by == admin_user.id
        assert ticket.escalation_reason == "VIP customer"
        assert ticket.status == TicketStatus.OPEN
        assert notice.kind == MessageKind.ESCALATION_NOTICE

    @pytest.mark.asyncio
    async def test_cannot_escalate_resolved_ticket(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        await store.resolve_ticket(ticket.id, admin_user.id)

        with pytest.raises(ConflictException, match="escalate"):
            await store.escalate_ticket(ticket.id, admin_user.id, "Too late")

    @pytest.mark.asyncio
    async def test_resolution_records_notes_and_notice(self, db, admin_user):
        store = ConversationStore(db)
        ticket = await _ticket(store)

        notice = await store.resolve_ticket(ticket.id, admin_user.id, "Refund issued")

        assert ticket.status == TicketStatus.RESOLVED
        assert ticket.resolved_by == admin_user.id
        assert ticket.resolved_at is not None
        assert ticket.resolution_notes == "Refund issued"
        assert notice.kind == MessageKind.RESOLUTION_NOTICE
        assert "Refund issued" in notice.body

    @pytest.mark.asyncio
    async def test_assignment(self, db, admin_user, second_admin):
        store = ConversationStore(db)
        ticket = await _ticket(store)

        message = await store.assign_ticket(ticket.id, second_admin.id, admin_user.id)

        assert ticket.assigned_admin_id == second_admin.id
        assert message.kind == MessageKind.SYSTEM

    @pytest.mark.asyncio
    async def test_change_priority(self, db):
        store = ConversationStore(db)
        ticket = await _ticket(store)
        updated = await store.change_priority(ticket.id, TicketPriority.LOW)
        assert updated.priority == TicketPriority.LOW


class TestReadState:
    @pytest.mark.asyncio
    async def test_marks_only_the_other_partys_messages(self, db):
        store = ConversationStore(db)
        session = await store.create_session(GUEST)
        await store.append_message(session.id, "customer 1", is_customer=True)
        await store.append_message(session.id, "customer 2", is_customer=True)
        await store.append_message(session.id, "support", is_customer=False)

        updated = await store.mark_messages_read(session.id, reader_is_customer=False)
        assert updated == 2

        messages = await store.list_messages(session.id)
        assert [m.is_read for m in messages] == [True, True, False]
        assert await store.mark_messages_read(session.id, reader_is_customer=False) == 0


class TestListTickets:
    @pytest.mark.asyncio
    async def test_filters(self, db, admin_user):
        store = ConversationStore(db)
        mine = await _ticket(store, subject="Mine")
        other = await _ticket(
            store, subject="Other", customer=CustomerIdentity(email="someone@example.com")
        )
        await store.assign_ticket(other.id, admin_user.id, admin_user.id)
        await store.transition_status(other.id, TicketStatus.IN_PROGRESS, admin_user.id)

        items, total = await store.list_tickets(status=TicketStatus.OPEN)
        assert total == 1 and items[0].id == mine.id

        items, total = await store.list_tickets(assigned_admin_id=admin_user.id)
        assert total == 1 and items[0].id == other.id

        items, total = await store.list_tickets(customer_email="guest@example.com")
        assert [t.id for t in items] == [mine.id]

        items, total = await store.list_tickets(limit=1)
        assert total == 2 and len(items) == 1
