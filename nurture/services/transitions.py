"""
Transition coordinator - moves leads between sequences on business events.

    new_lead (nurture) → meeting_booked | no_show → newsletter (converted)
                                                   → back to nurture

Each handler flushes its changes and writes an EventLog row; the caller commits
once so a transition is all-or-nothing, then kicks a queue pass.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.exceptions import NotFoundError
from nurture.models.enrollment import LeadSequence
from nurture.models.event_log import EventLog
from nurture.models.lead import Lead
from nurture.models.newsletter import NewsletterSubscriber
from nurture.services.catalog import require_sequence
from nurture.services.enrollment import (
    cancel_enrollments,
    complete_if_finished,
    enroll_lead,
    get_enrollment,
)
from nurture.services.scheduling import schedule_enrollment
from nurture.utils.logging import short_id

logger = logging.getLogger(__name__)

NURTURE_SEQUENCE = "new_lead"
BOOKED_SEQUENCE = "meeting_booked"
NO_SHOW_SEQUENCE = "no_show"


async def _require_lead(db: AsyncSession, lead_id: uuid.UUID) -> Lead:
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise NotFoundError(f"Lead not found: {lead_id}")
    return lead


def _log_event(db: AsyncSession, lead_id: uuid.UUID, action: str, message: str, data: Optional[dict] = None) -> None:
    db.add(EventLog(lead_id=lead_id, action=action, status="success", message=message, data=data))


async def _active_booking(db: AsyncSession, lead_id: uuid.UUID) -> Optional[LeadSequence]:
    sequence = await require_sequence(db, BOOKED_SEQUENCE)
    enrollment = await get_enrollment(db, lead_id, sequence.id)
    if enrollment and enrollment.status == "active":
        return enrollment
    return None


async def _reanchor(
    db: AsyncSession,
    enrollment: LeadSequence,
    meeting_time: datetime,
    now: datetime,
) -> int:
    enrollment.anchor_at = meeting_time
    scheduled = await schedule_enrollment(db, enrollment)
    await complete_if_finished(db, enrollment.id, now)
    return scheduled


async def on_meeting_booked(
    db: AsyncSession,
    lead_id: uuid.UUID,
    meeting_time: datetime,
    now: datetime,
) -> LeadSequence:
    """
    Stop nurture/no-show outreach and start confirmation + reminders anchored
    to the meeting time. A booking already active for another time is rescheduled.
    """
    lead = await _require_lead(db, lead_id)

    await cancel_enrollments(db, lead_id, now, NURTURE_SEQUENCE, reason="meeting_booked")
    await cancel_enrollments(db, lead_id, now, NO_SHOW_SEQUENCE, reason="meeting_booked")

    booking = await _active_booking(db, lead_id)
    if booking is not None:
        if booking.anchor_at != meeting_time:
            await _reanchor(db, booking, meeting_time, now)
            logger.info(
                "Lead %s re-booked while a booking was active, moved to %s",
                short_id(lead_id), meeting_time.isoformat(),
            )
    else:
        booking, _ = await enroll_lead(
            db, lead_id, BOOKED_SEQUENCE, now,
            anchor_at=meeting_time, enrolled_by="webhook",
        )

    lead.status = "qualified"
    _log_event(
        db, lead_id, "meeting_booked",
        f"Meeting booked for {meeting_time.isoformat()}",
        {"enrollment_id": str(booking.id), "meeting_time": meeting_time.isoformat()},
    )
    await db.flush()
    logger.info("Lead %s meeting booked for %s", short_id(lead_id), meeting_time.isoformat())
    return booking


async def on_no_show(db: AsyncSession, lead_id: uuid.UUID, now: datetime) -> LeadSequence:
    """Stop reminders and start the rebooking sequence anchored at now."""
    lead = await _require_lead(db, lead_id)

    await cancel_enrollments(db, lead_id, now, BOOKED_SEQUENCE, reason="no_show")
    enrollment, _ = await enroll_lead(db, lead_id, NO_SHOW_SEQUENCE, now, enrolled_by="webhook")

    lead.status = "contacted"
    _log_event(db, lead_id, "no_show", "Lead missed meeting, rebooking sequence started",
               {"enrollment_id": str(enrollment.id)})
    await db.flush()
    logger.info("Lead %s no-show, enrolled in %s", short_id(lead_id), NO_SHOW_SEQUENCE)
    return enrollment


async def on_meeting_completed(db: AsyncSession, lead_id: uuid.UUID, now: datetime) -> list[LeadSequence]:
    """Stop all outreach, subscribe to the newsletter, mark the lead converted."""
    lead = await _require_lead(db, lead_id)

    cancelled = await cancel_enrollments(db, lead_id, now, reason="meeting_completed")
    await add_to_newsletter(db, lead, source="meeting_completed")

    lead.status = "converted"
    lead.converted_at = now
    _log_event(db, lead_id, "meeting_completed", "Meeting completed, lead converted",
               {"cancelled_enrollments": len(cancelled)})
    await db.flush()
    logger.info("Lead %s meeting completed, added to newsletter", short_id(lead_id))
    return cancelled


async def on_reschedule(
    db: AsyncSession,
    lead_id: uuid.UUID,
    new_meeting_time: datetime,
    now: datetime,
) -> LeadSequence:
    """
    Move the active booking's anchor and re-time its unsent reminders.
    Without an active booking this is handled as a fresh booking.
    """
    await _require_lead(db, lead_id)

    booking = await _active_booking(db, lead_id)
    if booking is None:
        logger.info("Reschedule for lead %s without active booking, treating as new booking", short_id(lead_id))
        return await on_meeting_booked(db, lead_id, new_meeting_time, now)

    previous = booking.anchor_at
    retimed = await _reanchor(db, booking, new_meeting_time, now)
    _log_event(
        db, lead_id, "meeting_rescheduled",
        f"Meeting moved to {new_meeting_time.isoformat()}",
        {
            "enrollment_id": str(booking.id),
            "previous_meeting_time": previous.isoformat() if previous else None,
            "meeting_time": new_meeting_time.isoformat(),
            "entries_retimed": retimed,
        },
    )
    await db.flush()
    logger.info("Lead %s meeting rescheduled to %s", short_id(lead_id), new_meeting_time.isoformat())
    return booking


async def on_cancellation(db: AsyncSession, lead_id: uuid.UUID, now: datetime) -> list[LeadSequence]:
    """Cancel the booking and its pending reminders. Nurture is not restarted."""
    await _require_lead(db, lead_id)

    cancelled = await cancel_enrollments(db, lead_id, now, BOOKED_SEQUENCE, reason="meeting_cancelled")
    _log_event(db, lead_id, "meeting_cancelled", "Meeting cancelled",
               {"cancelled_enrollments": len(cancelled)})
    await db.flush()
    logger.info("Lead %s meeting cancelled", short_id(lead_id))
    return cancelled


async def add_to_newsletter(
    db: AsyncSession,
    lead: Lead,
    source: str,
) -> Optional[NewsletterSubscriber]:
    """Upsert the lead into the newsletter list by email. Leads without email are skipped."""
    if not lead.email:
        logger.info("Lead %s has no email, not added to newsletter", short_id(lead.id))
        return None

    result = await db.execute(
        select(NewsletterSubscriber).where(NewsletterSubscriber.email == lead.email)
    )
    subscriber = result.scalar_one_or_none()
    if subscriber:
        subscriber.lead_id = lead.id
        subscriber.first_name = lead.first_name or subscriber.first_name
        subscriber.last_name = lead.last_name or subscriber.last_name
        subscriber.status = "active"
        subscriber.unsubscribed_at = None
    else:
        subscriber = NewsletterSubscriber(
            lead_id=lead.id,
            email=lead.email,
            first_name=lead.first_name,
            last_name=lead.last_name,
            source=source,
        )
        db.add(subscriber)

    await db.flush()
    return subscriber
