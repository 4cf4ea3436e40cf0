"""
Sequence reporting - dashboard counts, per-sequence board, and per-lead history.
"""
import logging
import math
import uuid
from datetime import datetime, time, timezone
from typing import Optional
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.exceptions import NotFoundError
from nurture.models.enrollment import LeadSequence
from nurture.models.lead import Lead
from nurture.models.message_queue import MessageQueue
from nurture.models.newsletter import NewsletterSubscriber
from nurture.models.sent_message import SentMessage
from nurture.models.sequence import Sequence, SequenceStep
from nurture.services.catalog import require_sequence

logger = logging.getLogger(__name__)

ENROLLMENT_STATUSES = ("active", "paused", "completed", "cancelled", "converted")


async def get_sequence_dashboard(db: AsyncSession, now: datetime) -> dict:
    """Enrollment counts per sequence, today's sends per channel, queue and newsletter size."""
    status_columns = [
        func.count(case((LeadSequence.status == status, LeadSequence.id))).label(status)
        for status in ENROLLMENT_STATUSES
    ]
    enrollment_result = await db.execute(
        select(Sequence.name, Sequence.slug, *status_columns)
        .outerjoin(LeadSequence, LeadSequence.sequence_id == Sequence.id)
        .group_by(Sequence.id, Sequence.name, Sequence.slug)
        .order_by(Sequence.name)
    )
    sequences = [
        {"sequence_name": row.name, "slug": row.slug,
         **{status: getattr(row, status) for status in ENROLLMENT_STATUSES}}
        for row in enrollment_result.all()
    ]

    start_of_day = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    today_result = await db.execute(
        select(SentMessage.channel, func.count(SentMessage.id))
        .where(SentMessage.sent_at >= start_of_day)
        .group_by(SentMessage.channel)
    )
    today_messages = {channel: count for channel, count in today_result.all()}

    pending_result = await db.execute(
        select(func.count(MessageQueue.id)).where(MessageQueue.status == "pending")
    )
    failed_result = await db.execute(
        select(func.count(MessageQueue.id)).where(MessageQueue.status == "failed")
    )
    newsletter_result = await db.execute(
        select(func.count(NewsletterSubscriber.id)).where(NewsletterSubscriber.status == "active")
    )

    return {
        "sequences": sequences,
        "today_messages": today_messages,
        "pending_count": pending_result.scalar() or 0,
        "failed_count": failed_result.scalar() or 0,
        "newsletter_count": newsletter_result.scalar() or 0,
    }


async def get_lead_sequence_board(
    db: AsyncSession,
    sequence_slug: str,
    page: int = 1,
    limit: int = 50,
    status: Optional[str] = "active",
) -> dict:
    """Paginated enrollments of one sequence with per-enrollment sent/pending counts."""
    sequence = await require_sequence(db, sequence_slug)

    sent_count = (
        select(func.count(SentMessage.id))
        .where(SentMessage.lead_sequence_id == LeadSequence.id)
        .correlate(LeadSequence)
        .scalar_subquery()
    )
    pending_count = (
        select(func.count(MessageQueue.id))
        .where(
            MessageQueue.lead_sequence_id == LeadSequence.id,
            MessageQueue.status == "pending",
        )
        .correlate(LeadSequence)
        .scalar_subquery()
    )

    filters = [LeadSequence.sequence_id == sequence.id]
    if status:
        filters.append(LeadSequence.status == status)

    total = (await db.execute(select(func.count(LeadSequence.id)).where(*filters))).scalar() or 0

    result = await db.execute(
        select(LeadSequence, Lead, sent_count.label("sent"), pending_count.label("pending"))
        .join(Lead, Lead.id == LeadSequence.lead_id)
        .where(*filters)
        .order_by(LeadSequence.enrolled_at.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )

    leads = []
    for enrollment, lead, sent, pending in result.all():
        leads.append({
            "enrollment_id": str(enrollment.id),
            "lead_id": str(lead.id),
            "first_name": lead.first_name,
            "last_name": lead.last_name,
            "source": lead.source,
            "status": enrollment.status,
            "current_step": enrollment.current_step,
            "enrolled_at": enrollment.enrolled_at.isoformat(),
            "messages_sent": sent,
            "messages_pending": pending,
        })

    return {
        "leads": leads,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
        },
    }


async def get_lead_messages(db: AsyncSession, lead_id: uuid.UUID) -> list[dict]:
    """Every sent record for a lead with its step name, newest first."""
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise NotFoundError(f"Lead not found: {lead_id}")

    result = await db.execute(
        select(SentMessage, SequenceStep.name, Sequence.name)
        .outerjoin(SequenceStep, SequenceStep.id == SentMessage.sequence_step_id)
        .outerjoin(Sequence, Sequence.id == SequenceStep.sequence_id)
        .where(SentMessage.lead_id == lead_id)
        .order_by(SentMessage.sent_at.desc())
    )
    return [
        {
            "id": str(sent.id),
            "channel": sent.channel,
            "message_type": sent.message_type,
            "step_name": step_name,
            "sequence_name": sequence_name,
            "content_id": sent.content_id,
            "subject": sent.subject,
            "sent_at": sent.sent_at,
        }
        for sent, step_name, sequence_name in result.all()
    ]
