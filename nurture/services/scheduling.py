"""
Scheduler - expands sequence steps into time-stamped queue entries.

scheduled_for = anchor + signed delay, where the anchor is the enrollment's
override (e.g. a meeting time) or its enrolled_at. Negative delays fire before
the anchor. A step on channel "both" fans out into one entry per channel.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.models.enrollment import LeadSequence
from nurture.models.message_queue import MessageQueue
from nurture.models.sent_message import SentMessage
from nurture.models.sequence import SequenceStep
from nurture.services.catalog import get_sequence_steps
from nurture.utils.logging import short_id

logger = logging.getLogger(__name__)

DELAY_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}

CHANNEL_FANOUT = {
    "email": ("email",),
    "whatsapp": ("whatsapp",),
    "both": ("email", "whatsapp"),
}

# Queue entries in these states are re-timed when an enrollment is rescheduled
# or reactivated. Anything else is in flight or finished and is left alone.
RESCHEDULABLE_STATUSES = ("pending", "cancelled")


@dataclass(frozen=True)
class DispatchIntent:
    """One channel of one step, with its concrete fire time."""
    step_id: uuid.UUID
    step_order: int
    channel: str
    scheduled_for: datetime


def delay_to_timedelta(value: int, unit: str) -> timedelta:
    if unit not in DELAY_UNITS:
        raise ValueError(f"Unknown delay unit: {unit}")
    return DELAY_UNITS[unit] * value


def calculate_scheduled_time(anchor: datetime, delay_value: int, delay_unit: str) -> datetime:
    return anchor + delay_to_timedelta(delay_value, delay_unit)


def expand_step(step: SequenceStep, anchor: datetime) -> list[DispatchIntent]:
    """Pure fan-out of a step into dispatch intents. Inactive steps yield nothing."""
    if not step.is_active:
        return []
    if step.channel not in CHANNEL_FANOUT:
        raise ValueError(f"Unknown channel: {step.channel}")

    scheduled_for = calculate_scheduled_time(anchor, step.delay_value, step.delay_unit)
    return [
        DispatchIntent(
            step_id=step.id,
            step_order=step.step_order,
            channel=channel,
            scheduled_for=scheduled_for,
        )
        for channel in CHANNEL_FANOUT[step.channel]
    ]


def expand_steps(steps: Iterable[SequenceStep], anchor: datetime) -> list[DispatchIntent]:
    intents = []
    for step in steps:
        intents.extend(expand_step(step, anchor))
    return intents


async def schedule_enrollment(
    db: AsyncSession,
    enrollment: LeadSequence,
    steps: Optional[list[SequenceStep]] = None,
) -> int:
    """
    Create or re-time queue entries for every active step of the enrollment's sequence.

    - A sent record for (lead, step, channel) means the intent is skipped.
    - An existing pending/cancelled entry is re-timed and set pending again.
    - Processing/sent/failed entries are left alone.
    Returns the number of entries inserted or re-timed. Caller commits.
    """
    if steps is None:
        steps = await get_sequence_steps(db, enrollment.sequence_id, active_only=True)
    intents = expand_steps(steps, enrollment.anchor)
    if not intents:
        return 0

    step_ids = list({i.step_id for i in intents})

    sent_result = await db.execute(
        select(SentMessage.sequence_step_id, SentMessage.channel).where(
            SentMessage.lead_id == enrollment.lead_id,
            SentMessage.sequence_step_id.in_(step_ids),
        )
    )
    already_sent = {(row[0], row[1]) for row in sent_result.all()}

    queue_result = await db.execute(
        select(MessageQueue).where(
            MessageQueue.lead_sequence_id == enrollment.id,
            MessageQueue.sequence_step_id.in_(step_ids),
        )
    )
    existing = {(e.sequence_step_id, e.channel): e for e in queue_result.scalars().all()}

    scheduled = 0
    for intent in intents:
        key = (intent.step_id, intent.channel)
        if key in already_sent:
            continue

        entry = existing.get(key)
        if entry is not None:
            if entry.status not in RESCHEDULABLE_STATUSES:
                continue
            entry.scheduled_for = intent.scheduled_for
            entry.status = "pending"
            entry.attempts = 0
            entry.error_message = None
            entry.claimed_at = None
            scheduled += 1
            continue

        db.add(MessageQueue(
            lead_id=enrollment.lead_id,
            lead_sequence_id=enrollment.id,
            sequence_step_id=intent.step_id,
            channel=intent.channel,
            scheduled_for=intent.scheduled_for,
            status="pending",
        ))
        scheduled += 1

    await db.flush()
    logger.info(
        "Scheduled %d queue entries for enrollment %s (anchor=%s)",
        scheduled, short_id(enrollment.id), enrollment.anchor.isoformat(),
    )
    return scheduled
