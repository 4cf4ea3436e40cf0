"""
Enrollment manager - a lead's participation in a sequence.

One row per (lead, sequence). Re-enrolling reactivates the existing row instead
of inserting a new one, so cancel reasons and timestamps stay in the audit trail.

Status transitions:
    active    → cancelled | completed | converted | paused
    paused    → active | cancelled
    cancelled → active   (reactivation via enroll_lead)
    completed → active   (reactivation via enroll_lead)
    converted → (terminal)
"""
import logging
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.exceptions import InvalidTransitionError, NotFoundError
from nurture.models.enrollment import LeadSequence
from nurture.models.lead import Lead
from nurture.models.message_queue import MessageQueue
from nurture.models.sequence import Sequence
from nurture.services.catalog import require_sequence
from nurture.services.scheduling import schedule_enrollment
from nurture.utils.logging import short_id

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "active": frozenset({"cancelled", "completed", "converted", "paused"}),
    "paused": frozenset({"active", "cancelled"}),
    "cancelled": frozenset({"active"}),
    "completed": frozenset({"active"}),
    "converted": frozenset(),
}


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def apply_transition(
    enrollment: LeadSequence,
    requested: str,
    now: datetime,
    reason: Optional[str] = None,
) -> None:
    """Move an enrollment to a new status, stamping the matching timestamp."""
    if not can_transition(enrollment.status, requested):
        raise InvalidTransitionError(enrollment.status, requested)

    enrollment.status = requested
    if requested == "cancelled":
        enrollment.cancelled_at = now
        enrollment.cancel_reason = reason
    elif requested == "completed":
        enrollment.completed_at = now
    elif requested == "converted":
        enrollment.converted_at = now
    elif requested == "paused":
        enrollment.paused_at = now


def _reactivate(
    enrollment: LeadSequence,
    now: datetime,
    anchor_at: Optional[datetime],
    enrolled_by: str,
) -> None:
    """Restart a cancelled or completed enrollment from its first step."""
    apply_transition(enrollment, "active", now)
    enrollment.current_step = 0
    enrollment.enrolled_at = now
    enrollment.enrolled_by = enrolled_by
    enrollment.paused_at = None
    enrollment.completed_at = None
    enrollment.cancelled_at = None
    enrollment.cancel_reason = None
    if anchor_at is not None:
        enrollment.anchor_at = anchor_at


def _resume(enrollment: LeadSequence, now: datetime) -> None:
    """Paused → active. Progress, anchor and the queued schedule are kept as they were."""
    apply_transition(enrollment, "active", now)
    enrollment.paused_at = None


async def complete_if_finished(db: AsyncSession, enrollment_id: uuid.UUID, now: datetime) -> bool:
    """An active enrollment with no queue entry left unsent becomes completed."""
    remaining = await db.execute(
        select(func.count(MessageQueue.id)).where(
            MessageQueue.lead_sequence_id == enrollment_id,
            MessageQueue.status != "sent",
        )
    )
    if remaining.scalar() > 0:
        return False

    enrollment = await db.get(LeadSequence, enrollment_id, populate_existing=True)
    if enrollment is None or enrollment.status != "active":
        return False
    apply_transition(enrollment, "completed", now)
    logger.info("Enrollment %s completed", short_id(enrollment_id))
    return True


async def get_enrollment(
    db: AsyncSession,
    lead_id: uuid.UUID,
    sequence_id: uuid.UUID,
) -> Optional[LeadSequence]:
    result = await db.execute(
        select(LeadSequence).where(
            LeadSequence.lead_id == lead_id,
            LeadSequence.sequence_id == sequence_id,
        )
    )
    return result.scalar_one_or_none()


async def get_active_enrollments(
    db: AsyncSession,
    lead_id: uuid.UUID,
    sequence_slug: Optional[str] = None,
) -> list[LeadSequence]:
    query = select(LeadSequence).where(
        LeadSequence.lead_id == lead_id,
        LeadSequence.status == "active",
    )
    if sequence_slug:
        query = query.join(Sequence, Sequence.id == LeadSequence.sequence_id).where(
            Sequence.slug == sequence_slug
        )
    result = await db.execute(query)
    return list(result.scalars().all())


async def enroll_lead(
    db: AsyncSession,
    lead_id: uuid.UUID,
    sequence_slug: str,
    now: datetime,
    anchor_at: Optional[datetime] = None,
    enrolled_by: str = "system",
) -> tuple[LeadSequence, bool]:
    """
    Enroll a lead in a sequence and schedule its steps.
    A paused enrollment is resumed where it left off; cancelled and completed
    ones restart from the first step.

    Returns (enrollment, changed). changed is False when an active enrollment
    already existed and was returned untouched. Caller commits.
    """
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise NotFoundError(f"Lead not found: {lead_id}")
    sequence = await require_sequence(db, sequence_slug)

    enrollment = await get_enrollment(db, lead_id, sequence.id)

    if enrollment and enrollment.status == "active":
        logger.info(
            "Lead %s already active in %s, enrollment unchanged",
            short_id(lead_id), sequence_slug,
        )
        return enrollment, False

    if enrollment and enrollment.status == "paused":
        _resume(enrollment, now)
        await db.flush()
        logger.info(
            "Resumed enrollment %s for lead %s in %s at step %d",
            short_id(enrollment.id), short_id(lead_id), sequence_slug, enrollment.current_step,
        )
        await complete_if_finished(db, enrollment.id, now)
        return enrollment, True

    if enrollment:
        previous = enrollment.status
        _reactivate(enrollment, now, anchor_at, enrolled_by)
        logger.info(
            "Reactivated enrollment %s (%s → active) for lead %s in %s",
            short_id(enrollment.id), previous, short_id(lead_id), sequence_slug,
        )
    else:
        enrollment = LeadSequence(
            lead_id=lead_id,
            sequence_id=sequence.id,
            status="active",
            current_step=0,
            enrolled_at=now,
            anchor_at=anchor_at,
            enrolled_by=enrolled_by,
        )
        try:
            async with db.begin_nested():
                db.add(enrollment)
                await db.flush()
        except IntegrityError:
            # A concurrent enroll won the unique (lead, sequence) race
            logger.info(
                "Concurrent enrollment detected for lead %s in %s, using existing row",
                short_id(lead_id), sequence_slug,
            )
            existing = await get_enrollment(db, lead_id, sequence.id)
            if existing is None:
                raise
            return existing, False
        logger.info(
            "Enrolled lead %s in %s (enrollment %s)",
            short_id(lead_id), sequence_slug, short_id(enrollment.id),
        )

    await schedule_enrollment(db, enrollment)
    await complete_if_finished(db, enrollment.id, now)
    return enrollment, True


async def cancel_enrollments(
    db: AsyncSession,
    lead_id: uuid.UUID,
    now: datetime,
    sequence_slug: Optional[str] = None,
    reason: str = "manual",
) -> list[LeadSequence]:
    """
    Soft-cancel the lead's active enrollments (one sequence, or all when slug is None)
    and flip their pending queue entries to cancelled. Processing entries are left
    to finish; sent records are never touched. Caller commits.
    """
    if sequence_slug:
        await require_sequence(db, sequence_slug)

    enrollments = await get_active_enrollments(db, lead_id, sequence_slug)
    if not enrollments:
        return []

    for enrollment in enrollments:
        apply_transition(enrollment, "cancelled", now, reason=reason)

    result = await db.execute(
        update(MessageQueue)
        .where(
            MessageQueue.lead_sequence_id.in_([e.id for e in enrollments]),
            MessageQueue.status == "pending",
        )
        .values(status="cancelled", updated_at=now)
    )
    await db.flush()

    logger.info(
        "Cancelled %d enrollment(s) for lead %s (reason=%s), %d pending entries cancelled",
        len(enrollments), short_id(lead_id), reason, result.rowcount,
    )
    return enrollments


async def pause_enrollment(
    db: AsyncSession,
    lead_id: uuid.UUID,
    sequence_slug: str,
    now: datetime,
) -> LeadSequence:
    """Pause an active enrollment. Its pending entries stay queued but are not picked up."""
    sequence = await require_sequence(db, sequence_slug)
    enrollment = await get_enrollment(db, lead_id, sequence.id)
    if not enrollment:
        raise NotFoundError(f"Lead {lead_id} is not enrolled in {sequence_slug}")
    apply_transition(enrollment, "paused", now)
    await db.flush()
    return enrollment


async def convert_enrollment(
    db: AsyncSession,
    lead_id: uuid.UUID,
    sequence_slug: str,
    now: datetime,
) -> LeadSequence:
    """Mark an active enrollment converted and cancel whatever is still pending."""
    sequence = await require_sequence(db, sequence_slug)
    enrollment = await get_enrollment(db, lead_id, sequence.id)
    if not enrollment:
        raise NotFoundError(f"Lead {lead_id} is not enrolled in {sequence_slug}")

    apply_transition(enrollment, "converted", now)
    await db.execute(
        update(MessageQueue)
        .where(
            MessageQueue.lead_sequence_id == enrollment.id,
            MessageQueue.status == "pending",
        )
        .values(status="cancelled", updated_at=now)
    )
    await db.flush()
    logger.info("Enrollment %s converted", short_id(enrollment.id))
    return enrollment
