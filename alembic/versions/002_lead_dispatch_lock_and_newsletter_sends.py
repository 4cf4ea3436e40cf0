"""Lead dispatch lock and newsletter send log

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "leads",
        sa.Column("dispatch_claimed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "newsletter_sends",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("broadcast_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscriber_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("newsletter_subscribers.id", ondelete="SET NULL")),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("leads.id", ondelete="SET NULL")),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("provider_message_id", sa.String(255)),
        sa.Column("error_message", sa.Text),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_newsletter_sends_broadcast_id", "newsletter_sends", ["broadcast_id"])
    op.create_index("ix_newsletter_sends_lead_id", "newsletter_sends", ["lead_id"])


def downgrade() -> None:
    op.drop_index("ix_newsletter_sends_lead_id", table_name="newsletter_sends")
    op.drop_index("ix_newsletter_sends_broadcast_id", table_name="newsletter_sends")
    op.drop_table("newsletter_sends")
    op.drop_column("leads", "dispatch_claimed_at")
