"""
Dispatch-and-record - the single path from a claimed queue entry to a sent record.

Both the poll loop and the administrative manual send call dispatch_and_record()
after claiming an entry (status=processing). The sent_messages unique constraint
on (lead, step, channel) is the last line of defense against double delivery.
"""
import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.exceptions import (
    ConfigurationError,
    DuplicateSendPrevented,
    NotFoundError,
    TerminalDispatchFailure,
    TransientDispatchError,
)
from nurture.models.enrollment import LeadSequence
from nurture.models.event_log import EventLog
from nurture.models.lead import Lead
from nurture.models.message_queue import MessageQueue
from nurture.models.sent_message import SentMessage
from nurture.models.sequence import Sequence, SequenceStep
from nurture.schemas.dispatch import DispatchOutcome, SendResult
from nurture.services.content import (
    build_variables,
    get_seen_content_ids,
    resolve_content,
    substitute_variables,
)
from nurture.services.enrollment import complete_if_finished
from nurture.utils.alerting import AlertType, send_alert
from nurture.utils.logging import short_id

logger = logging.getLogger(__name__)

# The first touch of the nurture sequence goes out from the "initial" WhatsApp
# number; every other message uses the follow-up number.
INITIAL_IDENTITY_SEQUENCE = "new_lead"
INITIAL_IDENTITY_STEP = 1


class EmailAdapter(Protocol):
    async def send(self, to: str, subject: str, body: str) -> SendResult: ...


class WhatsAppAdapter(Protocol):
    async def send(self, recipient: str, text: str, identity: str = "followup") -> SendResult: ...


@dataclass
class ChannelAdapters:
    email: EmailAdapter
    whatsapp: WhatsAppAdapter


@dataclass
class DispatchPolicy:
    calendar_link: str = ""
    timeout_seconds: float = 15.0
    max_attempts: int = 3
    rng: random.Random = field(default_factory=random.Random)


def select_sender_identity(sequence_slug: Optional[str], step_order: int) -> str:
    if sequence_slug == INITIAL_IDENTITY_SEQUENCE and step_order == INITIAL_IDENTITY_STEP:
        return "initial"
    return "followup"


async def claim_entry(
    db: AsyncSession,
    entry_id: uuid.UUID,
    now: datetime,
    from_statuses: tuple[str, ...] = ("pending",),
) -> bool:
    """
    Atomically move an entry to processing. Committed immediately.
    Returns False when another worker got there first (zero rows updated).
    """
    result = await db.execute(
        update(MessageQueue)
        .where(
            MessageQueue.id == entry_id,
            MessageQueue.status.in_(from_statuses),
        )
        .values(status="processing", claimed_at=now, updated_at=now)
    )
    await db.commit()
    return result.rowcount == 1


async def claim_lead(
    db: AsyncSession,
    lead_id: uuid.UUID,
    now: datetime,
    stale_after: timedelta,
) -> bool:
    """
    Take the lead's dispatch lock. Committed immediately.
    One pass at a time delivers a lead's entries, so content rotation always
    sees every earlier send. A lock older than stale_after is taken over.
    """
    result = await db.execute(
        update(Lead)
        .where(
            Lead.id == lead_id,
            or_(
                Lead.dispatch_claimed_at.is_(None),
                Lead.dispatch_claimed_at < now - stale_after,
            ),
        )
        .values(dispatch_claimed_at=now)
    )
    await db.commit()
    return result.rowcount == 1


async def release_lead(db: AsyncSession, lead_id: uuid.UUID, claimed_at: datetime) -> None:
    """Drop the lock taken by claim_lead(), unless another pass has since taken it over."""
    await db.execute(
        update(Lead)
        .where(Lead.id == lead_id, Lead.dispatch_claimed_at == claimed_at)
        .values(dispatch_claimed_at=None)
    )
    await db.commit()


async def dispatch_and_record(
    db: AsyncSession,
    entry_id: uuid.UUID,
    adapters: ChannelAdapters,
    policy: DispatchPolicy,
    now: datetime,
    message_type: str = "sequence",
) -> DispatchOutcome:
    """
    Deliver one claimed entry and record the result. Commits.

    Outcomes:
    - SENT: adapter accepted the message, sent record written.
    - ALREADY_SENT: a sent record already existed (or won the race); entry marked sent.
    - RETRY_SCHEDULED: transient failure, entry back to pending.
    - FAILED: attempt cap reached or an unrecoverable problem; entry failed.
    """
    entry = await db.get(MessageQueue, entry_id, populate_existing=True)
    if entry is None:
        raise NotFoundError(f"Queue entry not found: {entry_id}")

    # Duplicate guard
    existing = await db.execute(
        select(SentMessage.id).where(
            SentMessage.lead_id == entry.lead_id,
            SentMessage.sequence_step_id == entry.sequence_step_id,
            SentMessage.channel == entry.channel,
        )
    )
    if existing.scalar_one_or_none() is not None:
        entry.status = "sent"
        entry.error_message = None
        await db.commit()
        logger.info(
            "Entry %s already delivered, marked sent",
            short_id(entry.id), extra={"entry_id": str(entry.id)},
        )
        return DispatchOutcome.ALREADY_SENT

    try:
        lead, step, sequence_slug = await _load_context(db, entry)
        recipient = _recipient_for(lead, entry.channel)

        seen = await get_seen_content_ids(db, lead.id)
        resolved = resolve_content(step, entry.channel, seen, policy.rng)
        variables = build_variables(lead, policy.calendar_link)
        subject = substitute_variables(resolved.subject, variables) if resolved.subject else None
        body = substitute_variables(resolved.body, variables)
        identity = None

        if entry.channel == "email":
            send_coro = adapters.email.send(recipient, subject, body)
        else:
            identity = select_sender_identity(sequence_slug, step.step_order)
            send_coro = adapters.whatsapp.send(recipient, body, identity=identity)

        result = await send_with_timeout(send_coro, policy.timeout_seconds)
    except (NotFoundError, TerminalDispatchFailure) as e:
        return await record_failure(db, entry_id, str(e), now, policy.max_attempts, terminal=True)
    except ConfigurationError as e:
        await send_alert(
            AlertType.CHANNEL_NOT_CONFIGURED,
            f"{entry.channel} channel is not configured: {e}",
            extra={"entry_id": str(entry_id)},
            dedup_key=entry.channel,
        )
        return await record_failure(db, entry_id, str(e), now, policy.max_attempts)
    except TransientDispatchError as e:
        return await record_failure(db, entry_id, str(e), now, policy.max_attempts)

    try:
        await _record_success(
            db, entry, lead, step, resolved.content_id, subject, body,
            result.provider_id, identity, message_type, now,
        )
    except DuplicateSendPrevented as e:
        await db.execute(
            update(MessageQueue)
            .where(MessageQueue.id == entry_id)
            .values(status="sent", error_message=None, updated_at=now)
        )
        await db.commit()
        logger.warning("%s", str(e), extra={"entry_id": str(entry_id)})
        return DispatchOutcome.ALREADY_SENT

    logger.info(
        "Sent %s step %d to lead %s (content=%s)",
        entry.channel, step.step_order, short_id(lead.id), resolved.content_id,
        extra={"lead_id": str(lead.id), "entry_id": str(entry.id), "channel": entry.channel},
    )
    return DispatchOutcome.SENT


async def _load_context(db: AsyncSession, entry: MessageQueue) -> tuple[Lead, SequenceStep, Optional[str]]:
    lead = await db.get(Lead, entry.lead_id)
    if not lead:
        raise NotFoundError(f"Lead not found: {entry.lead_id}")
    step = await db.get(SequenceStep, entry.sequence_step_id)
    if not step:
        raise NotFoundError(f"Sequence step not found: {entry.sequence_step_id}")
    sequence = await db.get(Sequence, step.sequence_id)
    return lead, step, sequence.slug if sequence else None


def _recipient_for(lead: Lead, channel: str) -> str:
    if channel == "email":
        if not lead.email:
            raise TerminalDispatchFailure("Lead has no email address")
        return lead.email
    if channel == "whatsapp":
        if not lead.phone:
            raise TerminalDispatchFailure("Lead has no phone number")
        return lead.phone
    raise TerminalDispatchFailure(f"Unknown channel: {channel}")


async def send_with_timeout(send_coro, timeout_seconds: float) -> SendResult:
    try:
        result = await asyncio.wait_for(send_coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise TransientDispatchError(f"Dispatch timed out after {timeout_seconds:g}s")
    except (ConfigurationError, TransientDispatchError, TerminalDispatchFailure):
        raise
    except Exception as e:
        raise TransientDispatchError(f"Dispatch error: {e}") from e

    if not result.success:
        raise TransientDispatchError(result.error or "Provider rejected the message")
    return result


async def _record_success(
    db: AsyncSession,
    entry: MessageQueue,
    lead: Lead,
    step: SequenceStep,
    content_id: str,
    subject: Optional[str],
    body: str,
    provider_id: Optional[str],
    identity: Optional[str],
    message_type: str,
    now: datetime,
) -> None:
    # Sent record first: it is the durability boundary
    sent = SentMessage(
        lead_id=lead.id,
        lead_sequence_id=entry.lead_sequence_id,
        sequence_step_id=step.id,
        channel=entry.channel,
        message_type=message_type,
        content_id=content_id,
        subject=subject,
        body=body,
        provider_message_id=provider_id,
        sender_identity=identity,
        sent_at=now,
    )
    duplicate_message = (
        f"Sent record for lead {short_id(lead.id)} step {step.step_order} "
        f"{entry.channel} already exists"
    )
    db.add(sent)
    try:
        await db.flush()
    except IntegrityError:
        # The sent record is the first write of this transaction
        await db.rollback()
        raise DuplicateSendPrevented(duplicate_message)

    entry.status = "sent"
    entry.error_message = None
    entry.last_attempt_at = now
    lead.last_contacted_at = now

    # current_step only moves forward
    await db.execute(
        update(LeadSequence)
        .where(
            LeadSequence.id == entry.lead_sequence_id,
            LeadSequence.current_step < step.step_order,
        )
        .values(current_step=step.step_order)
    )

    db.add(EventLog(
        lead_id=lead.id,
        action="message_sent",
        status="success",
        message=f"{entry.channel} step {step.step_order}: {step.name}",
        data={"entry_id": str(entry.id), "content_id": content_id, "message_type": message_type},
    ))
    await db.flush()

    await complete_if_finished(db, entry.lead_sequence_id, now)
    await db.commit()


async def record_failure(
    db: AsyncSession,
    entry_id: uuid.UUID,
    error: str,
    now: datetime,
    max_attempts: int,
    terminal: bool = False,
) -> DispatchOutcome:
    """
    Count a failed attempt. Below the cap the entry goes back to pending;
    at the cap (or for terminal errors) it is failed for good and an alert fires.
    """
    entry = await db.get(MessageQueue, entry_id, populate_existing=True)
    if entry is None:
        raise NotFoundError(f"Queue entry not found: {entry_id}")

    entry.attempts += 1
    entry.last_attempt_at = now
    entry.error_message = error[:1000]

    if not terminal and entry.attempts < max_attempts:
        entry.status = "pending"
        await db.commit()
        logger.warning(
            "Dispatch attempt %d/%d failed for entry %s: %s",
            entry.attempts, max_attempts, short_id(entry_id), error,
            extra={"entry_id": str(entry_id), "channel": entry.channel},
        )
        return DispatchOutcome.RETRY_SCHEDULED

    entry.status = "failed"
    db.add(EventLog(
        lead_id=entry.lead_id,
        action="dispatch_failed",
        status="failure",
        message=f"{entry.channel} entry failed after {entry.attempts} attempt(s)",
        error_message=error[:1000],
        data={"entry_id": str(entry_id), "step_id": str(entry.sequence_step_id)},
    ))
    await db.commit()
    logger.error(
        "Entry %s failed permanently after %d attempt(s): %s",
        short_id(entry_id), entry.attempts, error,
        extra={"entry_id": str(entry_id), "channel": entry.channel},
    )

    await send_alert(
        AlertType.DISPATCH_FAILED_TERMINAL,
        f"{entry.channel} message for lead {short_id(entry.lead_id)} failed: {error[:200]}",
        extra={"entry_id": str(entry_id), "attempts": entry.attempts},
        dedup_key=str(entry_id),
    )
    return DispatchOutcome.FAILED
