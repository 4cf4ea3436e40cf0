"""
Sequence API - admin views and lifecycle event endpoints over the sequence engine.
Engine errors are mapped to HTTP by the app's exception handlers
(NotFoundError → 404, InvalidTransitionError → 409).
"""
import logging
import uuid
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.database import get_db
from nurture.models.enrollment import LeadSequence
from nurture.schemas.api import (
    CancelRequest,
    EnrollmentSummary,
    EnrollRequest,
    LeadEventRequest,
    ManualSendRequest,
    MeetingEventRequest,
    NewsletterSendRequest,
    SentMessageSummary,
    SequenceSummary,
    StepSummary,
)
from nurture.schemas.dispatch import ManualSendResult, NewsletterResult, TickSummary
from nurture.schemas.sequence_catalog import StepUpdate
from nurture.services.catalog import list_sequences
from nurture.services.reporting import (
    get_lead_messages,
    get_lead_sequence_board,
    get_sequence_dashboard,
)
from nurture.services.sequence_engine import SequenceEngine, get_engine
from nurture.utils.clock import SystemClock

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sequences", tags=["sequences"])


def _enrollment_summary(enrollment: LeadSequence) -> EnrollmentSummary:
    return EnrollmentSummary(
        id=str(enrollment.id),
        lead_id=str(enrollment.lead_id),
        sequence_id=str(enrollment.sequence_id),
        status=enrollment.status,
        current_step=enrollment.current_step,
        enrolled_at=enrollment.enrolled_at,
        anchor_at=enrollment.anchor_at,
        cancel_reason=enrollment.cancel_reason,
    )


def _step_summary(step) -> StepSummary:
    return StepSummary(
        id=str(step.id),
        step_order=step.step_order,
        name=step.name,
        delay_value=step.delay_value,
        delay_unit=step.delay_unit,
        channel=step.channel,
        template_key=step.template_key,
        content_pool=step.content_pool,
        is_active=step.is_active,
    )


# === CATALOG ===

@router.get("", response_model=list[SequenceSummary])
async def sequences_list(db: AsyncSession = Depends(get_db)):
    """All sequences with their steps."""
    return [
        SequenceSummary(
            id=str(sequence.id),
            name=sequence.name,
            slug=sequence.slug,
            description=sequence.description,
            trigger_type=sequence.trigger_type,
            is_active=sequence.is_active,
            steps=[_step_summary(s) for s in steps],
        )
        for sequence, steps in await list_sequences(db)
    ]


@router.put("/steps/{step_id}", response_model=StepSummary)
async def step_update(
    step_id: uuid.UUID,
    payload: StepUpdate,
    engine: SequenceEngine = Depends(get_engine),
):
    step = await engine.update_step(step_id, payload)
    return _step_summary(step)


# === REPORTING ===

@router.get("/dashboard")
async def sequences_dashboard(db: AsyncSession = Depends(get_db)):
    return await get_sequence_dashboard(db, SystemClock().now())


@router.get("/board/{sequence_slug}")
async def sequence_board(
    sequence_slug: str,
    status: Optional[str] = "active",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Leads enrolled in one sequence, newest first."""
    return await get_lead_sequence_board(db, sequence_slug, page=page, limit=limit, status=status)


@router.get("/leads/{lead_id}/messages", response_model=list[SentMessageSummary])
async def lead_messages(lead_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await get_lead_messages(db, lead_id)


# === ENROLLMENT ===

@router.post("/enroll", response_model=EnrollmentSummary)
async def enroll(payload: EnrollRequest, engine: SequenceEngine = Depends(get_engine)):
    enrollment = await engine.enroll(
        payload.lead_id, payload.sequence_slug,
        anchor_at=payload.anchor_at, enrolled_by=payload.enrolled_by,
    )
    return _enrollment_summary(enrollment)


@router.post("/cancel", response_model=list[EnrollmentSummary])
async def cancel(payload: CancelRequest, engine: SequenceEngine = Depends(get_engine)):
    cancelled = await engine.cancel(payload.lead_id, payload.sequence_slug, reason=payload.reason)
    return [_enrollment_summary(e) for e in cancelled]


# === LIFECYCLE EVENTS ===

@router.post("/events/meeting-booked", response_model=EnrollmentSummary)
async def meeting_booked(payload: MeetingEventRequest, engine: SequenceEngine = Depends(get_engine)):
    return _enrollment_summary(await engine.on_meeting_booked(payload.lead_id, payload.meeting_time))


@router.post("/events/no-show", response_model=EnrollmentSummary)
async def no_show(payload: LeadEventRequest, engine: SequenceEngine = Depends(get_engine)):
    return _enrollment_summary(await engine.on_no_show(payload.lead_id))


@router.post("/events/meeting-completed", response_model=list[EnrollmentSummary])
async def meeting_completed(payload: LeadEventRequest, engine: SequenceEngine = Depends(get_engine)):
    cancelled = await engine.on_meeting_completed(payload.lead_id)
    return [_enrollment_summary(e) for e in cancelled]


@router.post("/events/reschedule", response_model=EnrollmentSummary)
async def reschedule(payload: MeetingEventRequest, engine: SequenceEngine = Depends(get_engine)):
    return _enrollment_summary(await engine.on_reschedule(payload.lead_id, payload.meeting_time))


@router.post("/events/cancellation", response_model=list[EnrollmentSummary])
async def cancellation(payload: LeadEventRequest, engine: SequenceEngine = Depends(get_engine)):
    cancelled = await engine.on_cancellation(payload.lead_id)
    return [_enrollment_summary(e) for e in cancelled]


# === QUEUE ===

@router.post("/send", response_model=ManualSendResult)
async def manual_send(payload: ManualSendRequest, engine: SequenceEngine = Depends(get_engine)):
    """Send a step to a lead immediately. Already-delivered channels report already_sent."""
    return await engine.manual_send_step(payload.lead_id, payload.step_id)


@router.post("/process-queue", response_model=TickSummary)
async def process_queue(engine: SequenceEngine = Depends(get_engine)):
    """Run one queue pass now instead of waiting for the poll loop."""
    return await engine.process_queue()


# === NEWSLETTER ===

@router.post("/newsletter/send", response_model=NewsletterResult)
async def newsletter_send(payload: NewsletterSendRequest, engine: SequenceEngine = Depends(get_engine)):
    """Email every active newsletter subscriber. {{first_name}} style placeholders are filled per subscriber."""
    return await engine.send_newsletter(payload.subject, payload.body)
