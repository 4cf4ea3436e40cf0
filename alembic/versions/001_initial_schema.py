"""Initial schema - sequence engine tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(30)),
        sa.Column("company", sa.String(255)),
        sa.Column("source", sa.String(50)),
        sa.Column("status", sa.String(30), nullable=False, server_default="new"),
        sa.Column("notes", sa.Text),
        sa.Column("last_contacted_at", sa.DateTime(timezone=True)),
        sa.Column("converted_at", sa.DateTime(timezone=True)),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leads_email", "leads", ["email"])
    op.create_index("ix_leads_phone", "leads", ["phone"])
    op.create_index("ix_leads_status", "leads", ["status"])
    op.create_index("ix_leads_created_at", "leads", ["created_at"])

    # Sequences
    op.create_table(
        "sequences",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(50), nullable=False, unique=True),
        sa.Column("description", sa.Text),
        sa.Column("trigger_type", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Sequence steps
    op.create_table(
        "sequence_steps",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sequence_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_order", sa.Integer, nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("delay_value", sa.Integer, nullable=False),
        sa.Column("delay_unit", sa.String(20), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("template_key", sa.String(100)),
        sa.Column("content_pool", sa.String(50)),
        sa.Column("email_subject", sa.String(255)),
        sa.Column("email_body", sa.Text),
        sa.Column("whatsapp_message", sa.Text),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("sequence_id", "step_order", name="uq_sequence_steps_order"),
    )
    op.create_index("ix_sequence_steps_sequence", "sequence_steps", ["sequence_id", "step_order"])

    # Enrollments
    op.create_table(
        "lead_sequences",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="active"),
        sa.Column("current_step", sa.Integer, nullable=False, server_default="0"),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("paused_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("converted_at", sa.DateTime(timezone=True)),
        sa.Column("meeting_time", sa.DateTime(timezone=True)),
        sa.Column("enrolled_by", sa.String(50), server_default="system"),
        sa.Column("cancel_reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("lead_id", "sequence_id", name="uq_lead_sequences_lead_sequence"),
    )
    op.create_index("ix_lead_sequences_lead", "lead_sequences", ["lead_id"])
    op.create_index("ix_lead_sequences_status", "lead_sequences", ["status"])

    # Message queue
    op.create_table(
        "message_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("lead_sequence_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("lead_sequences.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence_step_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("sequence_steps.id", ondelete="CASCADE"), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "lead_sequence_id", "sequence_step_id", "channel",
            name="uq_message_queue_enrollment_step_channel",
        ),
    )
    op.create_index(
        "ix_message_queue_pending", "message_queue", ["status", "scheduled_for"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index("ix_message_queue_lead", "message_queue", ["lead_id"])

    # Sent message ledger (never updated or deleted by the engine)
    op.create_table(
        "sent_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("lead_sequence_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("lead_sequences.id", ondelete="SET NULL")),
        sa.Column("sequence_step_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("sequence_steps.id"), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("message_type", sa.String(50), nullable=False, server_default="sequence"),
        sa.Column("content_id", sa.String(100)),
        sa.Column("subject", sa.String(255)),
        sa.Column("body", sa.Text),
        sa.Column("provider_message_id", sa.String(255)),
        sa.Column("sender_identity", sa.String(50)),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "lead_id", "sequence_step_id", "channel",
            name="uq_sent_messages_lead_step_channel",
        ),
    )
    op.create_index("ix_sent_messages_lead", "sent_messages", ["lead_id"])
    op.create_index("ix_sent_messages_sent_at", "sent_messages", ["sent_at"])

    # Newsletter
    op.create_table(
        "newsletter_subscribers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("leads.id", ondelete="SET NULL")),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("source", sa.String(50)),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True)),
    )

    # Event log
    op.create_table(
        "event_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("leads.id", ondelete="SET NULL")),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="success"),
        sa.Column("message", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_lead_id", "event_logs", ["lead_id"])
    op.create_index("ix_events_action", "event_logs", ["action"])
    op.create_index("ix_events_created_at", "event_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("event_logs")
    op.drop_table("newsletter_subscribers")
    op.drop_table("sent_messages")
    op.drop_table("message_queue")
    op.drop_table("lead_sequences")
    op.drop_table("sequence_steps")
    op.drop_table("sequences")
    op.drop_table("leads")
