"""
Sent message ledger - immutable proof that a (lead, step, channel) was dispatched.
CRITICAL: unique per (lead_id, sequence_step_id, channel) forever. This row is
the deduplication source of truth; the engine never updates or deletes it.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from nurture.database import Base, UTCDateTime, utcnow


class SentMessage(Base):
    __tablename__ = "sent_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    lead_sequence_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("lead_sequences.id", ondelete="SET NULL")
    )
    sequence_step_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sequence_steps.id"), nullable=False
    )

    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # email, whatsapp
    message_type: Mapped[str] = mapped_column(
        String(50), default="sequence", nullable=False
    )  # sequence, manual

    # Resolved content (content_id drives rotation bookkeeping)
    content_id: Mapped[Optional[str]] = mapped_column(String(100))
    subject: Mapped[Optional[str]] = mapped_column(String(255))
    body: Mapped[Optional[str]] = mapped_column(Text)

    # Provider tracking
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    sender_identity: Mapped[Optional[str]] = mapped_column(String(50))

    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "lead_id", "sequence_step_id", "channel",
            name="uq_sent_messages_lead_step_channel",
        ),
        Index("ix_sent_messages_lead", "lead_id"),
        Index("ix_sent_messages_sent_at", "sent_at"),
    )

    def __repr__(self) -> str:
        return f"<SentMessage {self.channel} content={self.content_id}>"
