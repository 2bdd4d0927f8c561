"""Support messaging tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19

Creates: users, chat_sessions, support_tickets, ticket_transitions,
         chat_messages, notifications
Enums: userrole, sessionstatus, ticketstatus, ticketpriority, messagekind,
       notificationaudience, notificationtype, notificationpriority,
       notificationmethod
"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto";')

    # ── 1. Create enum types ──────────────────────────────────────────────
    op.execute("CREATE TYPE userrole AS ENUM ('user', 'admin');")
    op.execute("CREATE TYPE sessionstatus AS ENUM ('active', 'ended', 'transferred');")
    op.execute("""
        CREATE TYPE ticketstatus AS ENUM (
            'open', 'in_progress', 'waiting_customer', 'resolved', 'closed'
        );
    """)
    op.execute("CREATE TYPE ticketpriority AS ENUM ('low', 'medium', 'high', 'urgent');")
    op.execute("""
        CREATE TYPE messagekind AS ENUM (
            'text', 'system', 'escalation_notice', 'resolution_notice'
        );
    """)
    op.execute("CREATE TYPE notificationaudience AS ENUM ('admin', 'customer');")
    op.execute("""
        CREATE TYPE notificationtype AS ENUM (
            'new_ticket', 'new_chat', 'customer_response', 'support_response',
            'assignment', 'escalation', 'resolution', 'status_update'
        );
    """)
    op.execute("CREATE TYPE notificationpriority AS ENUM ('normal', 'urgent');")
    op.execute("CREATE TYPE notificationmethod AS ENUM ('none', 'email');")

    # ── 2. users ──────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(255) NOT NULL,
            first_name VARCHAR(100),
            last_name VARCHAR(100),
            role userrole NOT NULL DEFAULT 'user',
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_users_email UNIQUE (email)
        );
    """)
    op.execute("CREATE INDEX ix_users_role ON users (role);")

    # ── 3. chat_sessions / support_tickets (mutually referencing) ─────────
    op.execute("""
        CREATE TABLE chat_sessions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            customer_email VARCHAR(255),
            customer_name VARCHAR(255),
            customer_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            status sessionstatus NOT NULL DEFAULT 'active',
            ticket_id UUID,
            metadata_extra JSONB,
            last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_chat_sessions_ticket_id UNIQUE (ticket_id)
        );
    """)
    op.execute("CREATE INDEX ix_chat_sessions_customer_email ON chat_sessions (customer_email);")
    op.execute("CREATE INDEX ix_chat_sessions_status ON chat_sessions (status);")

    op.execute("""
        CREATE TABLE support_tickets (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            ticket_number VARCHAR(30) NOT NULL,
            subject VARCHAR(500) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            category VARCHAR(50) NOT NULL DEFAULT 'general',
            priority ticketpriority NOT NULL DEFAULT 'medium',
            status ticketstatus NOT NULL DEFAULT 'open',

            -- Customer identity
            customer_email VARCHAR(255),
            customer_name VARCHAR(255),
            customer_user_id UUID REFERENCES users(id) ON DELETE SET NULL,

            assigned_admin_id UUID REFERENCES users(id) ON DELETE SET NULL,
            source_session_id UUID REFERENCES chat_sessions(id) ON DELETE SET NULL,

            -- Escalation
            escalated_at TIMESTAMPTZ,
            escalated_by UUID,
            escalation_reason TEXT,

            -- Resolution
            resolved_at TIMESTAMPTZ,
            resolved_by UUID,
            resolution_notes TEXT,

            last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_support_tickets_ticket_number UNIQUE (ticket_number),
            CONSTRAINT uq_support_tickets_source_session_id UNIQUE (source_session_id)
        );
    """)
    op.execute("CREATE INDEX ix_support_tickets_status ON support_tickets (status);")
    op.execute(
        "CREATE INDEX ix_support_tickets_assigned_admin_id ON support_tickets (assigned_admin_id);"
    )
    op.execute("CREATE INDEX ix_support_tickets_customer_email ON support_tickets (customer_email);")
    op.execute("""
        ALTER TABLE chat_sessions
            ADD CONSTRAINT fk_chat_sessions_ticket_id
            FOREIGN KEY (ticket_id) REFERENCES support_tickets(id) ON DELETE SET NULL;
    """)

    # ── 4. ticket_transitions ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE ticket_transitions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            ticket_id UUID NOT NULL REFERENCES support_tickets(id) ON DELETE CASCADE,
            from_status ticketstatus NOT NULL,
            to_status ticketstatus NOT NULL,
            transitioned_by UUID,
            reason TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_ticket_transitions_ticket_id ON ticket_transitions (ticket_id);")

    # ── 5. chat_messages ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE chat_messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            thread_id UUID NOT NULL,
            sequence INTEGER NOT NULL,
            session_id UUID REFERENCES chat_sessions(id) ON DELETE CASCADE,
            ticket_id UUID REFERENCES support_tickets(id) ON DELETE CASCADE,
            body TEXT NOT NULL,
            is_customer BOOLEAN NOT NULL DEFAULT TRUE,
            sender_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            kind messagekind NOT NULL DEFAULT 'text',
            attachment_urls JSONB NOT NULL DEFAULT '[]'::jsonb,
            is_read BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_chat_messages_thread_sequence UNIQUE (thread_id, sequence),
            CONSTRAINT ck_chat_messages_has_conversation
                CHECK (session_id IS NOT NULL OR ticket_id IS NOT NULL)
        );
    """)
    op.execute("CREATE INDEX ix_chat_messages_session_id ON chat_messages (session_id);")
    op.execute("CREATE INDEX ix_chat_messages_ticket_id ON chat_messages (ticket_id);")

    # ── 6. notifications ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            audience notificationaudience NOT NULL,
            recipient_user_id UUID REFERENCES users(id) ON DELETE CASCADE,
            recipient_email VARCHAR(255),
            recipient_key VARCHAR(300) NOT NULL,

            type notificationtype NOT NULL,
            title VARCHAR(255) NOT NULL,
            message TEXT NOT NULL,
            link_url VARCHAR(500),
            ticket_id UUID REFERENCES support_tickets(id) ON DELETE SET NULL,
            session_id UUID REFERENCES chat_sessions(id) ON DELETE SET NULL,
            priority notificationpriority NOT NULL DEFAULT 'normal',
            action_required BOOLEAN NOT NULL DEFAULT FALSE,
            notification_method notificationmethod NOT NULL DEFAULT 'none',
            metadata_extra JSONB,
            dedup_key VARCHAR(255),

            delivered_at TIMESTAMPTZ,
            read_at TIMESTAMPTZ,

            response TEXT,
            response_action VARCHAR(50),
            responded_at TIMESTAMPTZ,

            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_notifications_recipient_event UNIQUE (recipient_key, dedup_key)
        );
    """)
    op.execute("CREATE INDEX ix_notifications_recipient_key ON notifications (recipient_key);")
    op.execute("CREATE INDEX ix_notifications_unread ON notifications (recipient_key, read_at);")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notifications;")
    op.execute("DROP TABLE IF EXISTS chat_messages;")
    op.execute("DROP TABLE IF EXISTS ticket_transitions;")
    op.execute("ALTER TABLE chat_sessions DROP CONSTRAINT IF EXISTS fk_chat_sessions_ticket_id;")
    op.execute("DROP TABLE IF EXISTS support_tickets;")
    op.execute("DROP TABLE IF EXISTS chat_sessions;")
    op.execute("DROP TABLE IF EXISTS users;")
    for enum_name in (
        "notificationmethod",
        "notificationpriority",
        "notificationtype",
        "notificationaudience",
        "messagekind",
        "ticketpriority",
        "ticketstatus",
        "sessionstatus",
        "userrole",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name};")
