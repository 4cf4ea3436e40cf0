"""
Dispatch schemas - adapter results and per-channel outcomes.
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel


class SendResult(BaseModel):
    """What a channel adapter reports back for one send."""
    success: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


class DispatchOutcome(str, Enum):
    SENT = "sent"
    ALREADY_SENT = "already_sent"
    IN_PROGRESS = "in_progress"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


class ChannelResult(BaseModel):
    channel: str
    outcome: DispatchOutcome
    error: Optional[str] = None


class ManualSendResult(BaseModel):
    lead_id: str
    step_id: str
    results: list[ChannelResult]


class TickSummary(BaseModel):
    """Counts from one queue-processor pass."""
    claimed: int = 0
    sent: int = 0
    duplicates: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    stale_failed: int = 0


class NewsletterResult(BaseModel):
    """Counts from one newsletter broadcast."""
    broadcast_id: str
    sent: int = 0
    failed: int = 0
    total: int = 0
