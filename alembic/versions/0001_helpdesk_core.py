"""Helpdesk core schema: tickets, messages, SLA, counters, mailboxes, jobs.

Revision ID: 0001_helpdesk_core
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic
revision = "0001_helpdesk_core"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "mailboxes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("polling_interval", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_checked_at", nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
    )

    op.create_table(
        "tickets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("ticket_number", sa.String(50), nullable=False, unique=True),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(32), nullable=False, server_default="normal"),
        sa.Column(
            "customer_id",
            sa.Uuid(),
            sa.ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "assigned_to",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "mailbox_id",
            sa.Uuid(),
            sa.ForeignKey("mailboxes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("last_activity_at"),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_tickets_status", "tickets", ["status"])
    op.create_index("idx_tickets_customer", "tickets", ["customer_id"])
    op.create_index("idx_tickets_last_activity", "tickets", ["last_activity_at"])

    op.create_table(
        "ticket_tags",
        sa.Column(
            "ticket_id",
            sa.Uuid(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id",
            sa.Uuid(),
            sa.ForeignKey("tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "ticket_id",
            sa.Uuid(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(32), nullable=False, server_default="reply"),
        sa.Column("sender_type", sa.String(32), nullable=False),
        sa.Column(
            "sender_user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "sender_customer_id",
            sa.Uuid(),
            sa.ForeignKey("customers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("body_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("message_id", sa.String(998), nullable=True),
        sa.Column("in_reply_to", sa.String(998), nullable=True),
        sa.Column("references", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint(
            "(sender_type = 'agent' AND sender_user_id IS NOT NULL AND sender_customer_id IS NULL)"
            " OR (sender_type = 'customer' AND sender_customer_id IS NOT NULL"
            " AND sender_user_id IS NULL)",
            name="ck_messages_single_sender",
        ),
    )
    op.create_index("idx_messages_ticket_created", "messages", ["ticket_id", "created_at"])
    op.create_index("idx_messages_message_id", "messages", ["message_id"])

    op.create_table(
        "attachments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "message_id",
            sa.Uuid(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("path", sa.String(1024), nullable=False),
        sa.Column("mime_type", sa.String(255), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_attachments_message_id", "attachments", ["message_id"])

    op.create_table(
        "sla_policies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("priority", sa.String(32), nullable=False),
        sa.Column("first_response_hours", sa.Numeric(8, 2), nullable=False),
        sa.Column("resolution_hours", sa.Numeric(8, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.CheckConstraint("first_response_hours > 0", name="ck_sla_first_response_positive"),
        sa.CheckConstraint("resolution_hours > 0", name="ck_sla_resolution_positive"),
    )
    # At most one active policy per priority.
    op.create_index(
        "uq_sla_policies_active_priority",
        "sla_policies",
        ["priority"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "sla_timers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "ticket_id",
            sa.Uuid(),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "sla_policy_id",
            sa.Uuid(),
            sa.ForeignKey("sla_policies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _ts("first_response_due_at", nullable=True),
        _ts("first_responded_at", nullable=True),
        _ts("resolution_due_at", nullable=True),
        _ts("resolved_at", nullable=True),
        _ts("paused_at", nullable=True),
        sa.Column("total_paused_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "first_response_breached", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("resolution_breached", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("cancelled_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_sla_timers_sla_policy_id", "sla_timers", ["sla_policy_id"])
    op.create_index(
        "idx_sla_timers_first_response_due", "sla_timers", ["first_response_due_at"]
    )
    op.create_index("idx_sla_timers_resolution_due", "sla_timers", ["resolution_due_at"])

    op.create_table(
        "ticket_counters",
        sa.Column("name", sa.String(50), primary_key=True),
        sa.Column("current_value", sa.BigInteger(), nullable=False),
        _ts("updated_at"),
    )

    op.create_table(
        "settings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("key", sa.String(100), nullable=False, unique=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("group", sa.String(50), nullable=False, server_default="general"),
        _ts("updated_at"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column(
            "payload",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        _ts("run_at"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("completed_at", nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
    )
    op.create_index("idx_jobs_pending", "jobs", ["status", "run_at"])
    op.create_index(
        "uq_job_idempotency",
        "jobs",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
        sqlite_where=sa.text("idempotency_key IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_table("jobs")
    op.drop_table("settings")
    op.drop_table("ticket_counters")
    op.drop_table("sla_timers")
    op.drop_table("sla_policies")
    op.drop_table("attachments")
    op.drop_table("messages")
    op.drop_table("ticket_tags")
    op.drop_table("tickets")
    op.drop_table("tags")
    op.drop_table("mailboxes")
    op.drop_table("customers")
    op.drop_table("users")
