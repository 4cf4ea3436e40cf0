"""
Lead sequence enrollment - a lead's participation in one sequence.
One row per (lead, sequence); cancelled/completed rows are reactivated on
re-enrollment so the history (cancel_reason, timestamps) is never deleted.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, Integer, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from nurture.database import Base, UTCDateTime, utcnow


class LeadSequence(Base):
    __tablename__ = "lead_sequences"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(30), default="active", nullable=False
    )  # active, paused, completed, cancelled, converted
    current_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    enrolled_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    paused_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    converted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Anchor override for event-relative sequences (meeting time)
    anchor_at: Mapped[Optional[datetime]] = mapped_column("meeting_time", UTCDateTime)

    enrolled_by: Mapped[str] = mapped_column(
        String(50), default="system"
    )  # system, manual, webhook
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    lead: Mapped["Lead"] = relationship(back_populates="enrollments")
    sequence: Mapped["Sequence"] = relationship(lazy="select")

    __table_args__ = (
        UniqueConstraint("lead_id", "sequence_id", name="uq_lead_sequences_lead_sequence"),
        Index("ix_lead_sequences_lead", "lead_id"),
        Index("ix_lead_sequences_status", "status"),
    )

    @property
    def anchor(self) -> datetime:
        """Reference instant step delays are measured from."""
        return self.anchor_at or self.enrolled_at

    def __repr__(self) -> str:
        return f"<LeadSequence lead={str(self.lead_id)[:8]} status={self.status} step={self.current_step}>"
