"""
Request/response schemas for the sequence admin and event endpoints.
"""
import uuid
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class EnrollRequest(BaseModel):
    lead_id: uuid.UUID
    sequence_slug: str
    anchor_at: Optional[datetime] = None
    enrolled_by: str = "manual"


class CancelRequest(BaseModel):
    lead_id: uuid.UUID
    sequence_slug: Optional[str] = Field(
        default=None, description="Omit to cancel every active enrollment of the lead"
    )
    reason: str = "manual"


class LeadEventRequest(BaseModel):
    lead_id: uuid.UUID


class MeetingEventRequest(BaseModel):
    lead_id: uuid.UUID
    meeting_time: datetime


class ManualSendRequest(BaseModel):
    lead_id: uuid.UUID
    step_id: uuid.UUID


class EnrollmentSummary(BaseModel):
    id: str
    lead_id: str
    sequence_id: str
    status: str
    current_step: int
    enrolled_at: datetime
    anchor_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


class StepSummary(BaseModel):
    id: str
    step_order: int
    name: str
    delay_value: int
    delay_unit: str
    channel: str
    template_key: Optional[str] = None
    content_pool: Optional[str] = None
    is_active: bool


class SequenceSummary(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    trigger_type: str
    is_active: bool
    steps: list[StepSummary] = Field(default_factory=list)


class SentMessageSummary(BaseModel):
    id: str
    channel: str
    message_type: str
    step_name: Optional[str] = None
    sequence_name: Optional[str] = None
    content_id: Optional[str] = None
    subject: Optional[str] = None
    sent_at: datetime


class NewsletterSendRequest(BaseModel):
    subject: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1)
