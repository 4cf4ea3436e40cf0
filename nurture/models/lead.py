"""
Lead model - the people being nurtured.
Status moves new → contacted → qualified → converted (or lost).
The sequence engine writes back status, last_contacted_at and converted_at.
"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from nurture.database import Base, UTCDateTime, utcnow


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Contact info
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(30))
    company: Mapped[Optional[str]] = mapped_column(String(255))

    # Lifecycle
    source: Mapped[Optional[str]] = mapped_column(
        String(50)
    )  # meta_ads, website, ebook, manual
    status: Mapped[str] = mapped_column(
        String(30), default="new", nullable=False
    )  # new, contacted, qualified, converted, lost
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Contact tracking
    last_contacted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    converted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Held by the queue pass currently delivering this lead's entries
    dispatch_claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Metadata
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    # Relationships
    enrollments: Mapped[list["LeadSequence"]] = relationship(
        back_populates="lead", lazy="select"
    )

    __table_args__ = (
        Index("ix_leads_email", "email"),
        Index("ix_leads_phone", "phone"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<Lead {masked} status={self.status}>"
