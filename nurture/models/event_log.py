"""
Event log model - audit trail for enrollments, transitions and dispatches.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from nurture.database import Base, UTCDateTime, utcnow


class EventLog(Base):
    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="SET NULL")
    )

    # Event details
    action: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # sequence_enrolled, meeting_booked, no_show, message_sent, dispatch_failed, ...
    status: Mapped[str] = mapped_column(
        String(20), default="success"
    )  # success, failure, skipped
    message: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Context data
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_events_lead_id", "lead_id"),
        Index("ix_events_action", "action"),
        Index("ix_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.action} status={self.status}>"
