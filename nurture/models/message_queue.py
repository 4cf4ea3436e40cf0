"""
Message queue entry - one scheduled, undelivered step for one lead on one channel.
Status: pending → processing (claimed) → sent | pending (retry) | failed.
Pending entries of a cancelled enrollment are flipped to cancelled.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, Integer, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from nurture.database import Base, UTCDateTime, utcnow


class MessageQueue(Base):
    __tablename__ = "message_queue"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    lead_sequence_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("lead_sequences.id", ondelete="CASCADE"), nullable=False
    )
    sequence_step_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sequence_steps.id", ondelete="CASCADE"), nullable=False
    )

    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # email, whatsapp
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, processing, sent, cancelled, failed

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    enrollment: Mapped["LeadSequence"] = relationship(lazy="select")
    step: Mapped["SequenceStep"] = relationship(lazy="select")

    __table_args__ = (
        UniqueConstraint(
            "lead_sequence_id", "sequence_step_id", "channel",
            name="uq_message_queue_enrollment_step_channel",
        ),
        Index(
            "ix_message_queue_pending", "status", "scheduled_for",
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_message_queue_lead", "lead_id"),
    )

    def __repr__(self) -> str:
        return f"<MessageQueue {self.channel} status={self.status} attempts={self.attempts}>"
