"""
Sequence catalog models - named campaigns and their ordered steps.
Steps carry a signed delay relative to the enrollment anchor (negative = before
a meeting), a channel (email, whatsapp, both) and a content reference.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from nurture.database import Base, UTCDateTime, utcnow


class Sequence(Base):
    __tablename__ = "sequences"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    trigger_type: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # new_lead, meeting_booked, no_show, newsletter
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    steps: Mapped[list["SequenceStep"]] = relationship(
        back_populates="sequence", lazy="select", order_by="SequenceStep.step_order"
    )

    def __repr__(self) -> str:
        return f"<Sequence {self.slug}>"


class SequenceStep(Base):
    __tablename__ = "sequence_steps"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Timing (relative to enrollment time or meeting time)
    delay_value: Mapped[int] = mapped_column(Integer, nullable=False)
    delay_unit: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # minutes, hours, days
    channel: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # email, whatsapp, both

    # Content reference: a fixed template key, or a rotating pool name
    template_key: Mapped[Optional[str]] = mapped_column(String(100))
    content_pool: Mapped[Optional[str]] = mapped_column(String(50))

    # Administrative overrides (win over the template when set)
    email_subject: Mapped[Optional[str]] = mapped_column(String(255))
    email_body: Mapped[Optional[str]] = mapped_column(Text)
    whatsapp_message: Mapped[Optional[str]] = mapped_column(Text)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    sequence: Mapped["Sequence"] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("sequence_id", "step_order", name="uq_sequence_steps_order"),
        Index("ix_sequence_steps_sequence", "sequence_id", "step_order"),
    )

    @property
    def is_rotating(self) -> bool:
        return bool(self.content_pool)

    def __repr__(self) -> str:
        return f"<SequenceStep #{self.step_order} {self.name} channel={self.channel}>"
