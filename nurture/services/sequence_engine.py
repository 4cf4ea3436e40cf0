"""
Sequence engine - the entry point for enrollments, lifecycle events and manual sends.

Every dependency (session factory, channel adapters, clock) is passed in, so
tests can run the whole engine against SQLite with fake adapters and a manual
clock. build_default_engine() wires the production pieces from settings.

Each operation runs in its own session and commits once. Operations that can
create due entries then trigger one queue pass so zero-delay steps go out
without waiting for the next poll.
"""
import logging
from functools import lru_cache
import uuid
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select

from nurture.exceptions import NotFoundError
from nurture.models.enrollment import LeadSequence
from nurture.models.lead import Lead
from nurture.models.message_queue import MessageQueue
from nurture.schemas.dispatch import (
    ChannelResult,
    DispatchOutcome,
    ManualSendResult,
    NewsletterResult,
    TickSummary,
)
from nurture.schemas.sequence_catalog import StepUpdate
from nurture.services import catalog, enrollment as enrollment_service, newsletter, transitions
from nurture.services.dispatch import (
    ChannelAdapters,
    DispatchPolicy,
    claim_entry,
    claim_lead,
    dispatch_and_record,
    record_failure,
    release_lead,
)
from nurture.services.scheduling import CHANNEL_FANOUT
from nurture.utils.clock import Clock, SystemClock, ensure_utc
from nurture.utils.logging import short_id
from nurture.workers.queue_processor import QueueProcessor

logger = logging.getLogger(__name__)

# A manual send may re-claim entries the poll loop gave up on or that were cancelled
MANUAL_CLAIMABLE_STATUSES = ("pending", "cancelled", "failed")


class SequenceEngine:
    def __init__(
        self,
        session_factory,
        processor: QueueProcessor,
        clock: Optional[Clock] = None,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.clock = clock or processor.clock or SystemClock()

    @property
    def adapters(self) -> ChannelAdapters:
        return self.processor.adapters

    @property
    def policy(self) -> DispatchPolicy:
        return self.processor.policy

    async def _kick(self) -> None:
        """Run one queue pass. Failures are logged; the poll loop will pick the entries up."""
        try:
            await self.processor.run_once()
        except Exception as e:
            logger.error("Immediate queue pass failed: %s", str(e), exc_info=True)

    # === Enrollment ===

    async def enroll(
        self,
        lead_id: uuid.UUID,
        sequence_slug: str,
        anchor_at: Optional[datetime] = None,
        enrolled_by: str = "system",
    ) -> LeadSequence:
        now = self.clock.now()
        async with self.session_factory() as db:
            enrollment, changed = await enrollment_service.enroll_lead(
                db, lead_id, sequence_slug, now,
                anchor_at=ensure_utc(anchor_at) if anchor_at else None,
                enrolled_by=enrolled_by,
            )
            await db.commit()

        if changed:
            await self._kick()
        return enrollment

    async def cancel(
        self,
        lead_id: uuid.UUID,
        sequence_slug: Optional[str] = None,
        reason: str = "manual",
    ) -> list[LeadSequence]:
        """Cancel one sequence for the lead, or every active one when slug is None."""
        now = self.clock.now()
        async with self.session_factory() as db:
            cancelled = await enrollment_service.cancel_enrollments(
                db, lead_id, now, sequence_slug, reason=reason,
            )
            await db.commit()
        return cancelled

    async def convert(self, lead_id: uuid.UUID, sequence_slug: str) -> LeadSequence:
        now = self.clock.now()
        async with self.session_factory() as db:
            enrollment = await enrollment_service.convert_enrollment(db, lead_id, sequence_slug, now)
            await db.commit()
        return enrollment

    async def pause(self, lead_id: uuid.UUID, sequence_slug: str) -> LeadSequence:
        now = self.clock.now()
        async with self.session_factory() as db:
            enrollment = await enrollment_service.pause_enrollment(db, lead_id, sequence_slug, now)
            await db.commit()
        return enrollment

    # === Lifecycle events ===

    async def on_meeting_booked(self, lead_id: uuid.UUID, meeting_time: datetime) -> LeadSequence:
        now = self.clock.now()
        async with self.session_factory() as db:
            booking = await transitions.on_meeting_booked(db, lead_id, ensure_utc(meeting_time), now)
            await db.commit()
        await self._kick()
        return booking

    async def on_no_show(self, lead_id: uuid.UUID) -> LeadSequence:
        now = self.clock.now()
        async with self.session_factory() as db:
            enrollment = await transitions.on_no_show(db, lead_id, now)
            await db.commit()
        await self._kick()
        return enrollment

    async def on_meeting_completed(self, lead_id: uuid.UUID) -> list[LeadSequence]:
        now = self.clock.now()
        async with self.session_factory() as db:
            cancelled = await transitions.on_meeting_completed(db, lead_id, now)
            await db.commit()
        await self._kick()
        return cancelled

    async def on_reschedule(self, lead_id: uuid.UUID, new_meeting_time: datetime) -> LeadSequence:
        now = self.clock.now()
        async with self.session_factory() as db:
            booking = await transitions.on_reschedule(db, lead_id, ensure_utc(new_meeting_time), now)
            await db.commit()
        await self._kick()
        return booking

    async def on_cancellation(self, lead_id: uuid.UUID) -> list[LeadSequence]:
        now = self.clock.now()
        async with self.session_factory() as db:
            cancelled = await transitions.on_cancellation(db, lead_id, now)
            await db.commit()
        await self._kick()
        return cancelled

    # === Queue ===

    async def process_queue(self) -> TickSummary:
        return await self.processor.run_once()

    async def manual_send_step(self, lead_id: uuid.UUID, step_id: uuid.UUID) -> ManualSendResult:
        """
        Send one step to one lead now, ignoring its schedule.
        Never re-sends: a step already delivered on a channel reports already_sent.
        """
        now = self.clock.now()

        async with self.session_factory() as db:
            lead = await db.get(Lead, lead_id)
            if not lead:
                raise NotFoundError(f"Lead not found: {lead_id}")
            step = await catalog.get_step(db, step_id)
            if not step:
                raise NotFoundError(f"Sequence step not found: {step_id}")
            enrollment = await enrollment_service.get_enrollment(db, lead_id, step.sequence_id)
            if not enrollment:
                raise NotFoundError(f"Lead {lead_id} is not enrolled in the step's sequence")

            entry_ids: dict[str, uuid.UUID] = {}
            for channel in CHANNEL_FANOUT[step.channel]:
                result = await db.execute(
                    select(MessageQueue).where(
                        MessageQueue.lead_sequence_id == enrollment.id,
                        MessageQueue.sequence_step_id == step.id,
                        MessageQueue.channel == channel,
                    )
                )
                entry = result.scalar_one_or_none()
                if entry is None:
                    entry = MessageQueue(
                        lead_id=lead_id,
                        lead_sequence_id=enrollment.id,
                        sequence_step_id=step.id,
                        channel=channel,
                        scheduled_for=now,
                        status="pending",
                    )
                    db.add(entry)
                    await db.flush()
                entry_ids[channel] = entry.id
            await db.commit()

        results = []
        for channel, entry_id in entry_ids.items():
            results.append(await self._manual_send_entry(channel, entry_id, lead_id, now))

        logger.info(
            "Manual send of step %s to lead %s: %s",
            short_id(step_id), short_id(lead_id),
            ", ".join(f"{r.channel}={r.outcome.value}" for r in results),
        )
        return ManualSendResult(lead_id=str(lead_id), step_id=str(step_id), results=results)

    async def _manual_send_entry(self, channel: str, entry_id: uuid.UUID, lead_id: uuid.UUID,
                                 now: datetime) -> ChannelResult:
        stale_after = timedelta(minutes=self.processor.stale_claim_minutes)
        async with self.session_factory() as db:
            if not await claim_lead(db, lead_id, now, stale_after):
                return ChannelResult(channel=channel, outcome=DispatchOutcome.IN_PROGRESS)
            try:
                return await self._manual_dispatch(db, channel, entry_id, now)
            finally:
                await release_lead(db, lead_id, now)

    async def _manual_dispatch(self, db, channel: str, entry_id: uuid.UUID, now: datetime) -> ChannelResult:
        if not await claim_entry(db, entry_id, now, from_statuses=MANUAL_CLAIMABLE_STATUSES):
            entry = await db.get(MessageQueue, entry_id, populate_existing=True)
            if entry.status == "sent":
                return ChannelResult(channel=channel, outcome=DispatchOutcome.ALREADY_SENT)
            return ChannelResult(channel=channel, outcome=DispatchOutcome.IN_PROGRESS)

        try:
            outcome = await dispatch_and_record(
                db, entry_id, self.adapters, self.policy, now, message_type="manual",
            )
        except Exception as e:
            logger.error(
                "Unexpected manual send error for entry %s: %s",
                short_id(entry_id), str(e), exc_info=True,
                extra={"entry_id": str(entry_id), "channel": channel},
            )
            await db.rollback()
            outcome = await record_failure(
                db, entry_id, f"Unexpected error: {e}", now, self.policy.max_attempts,
            )

        error = None
        if outcome in (DispatchOutcome.RETRY_SCHEDULED, DispatchOutcome.FAILED):
            entry = await db.get(MessageQueue, entry_id, populate_existing=True)
            error = entry.error_message
        return ChannelResult(channel=channel, outcome=outcome, error=error)

    # === Newsletter ===

    async def send_newsletter(self, subject: str, body: str) -> NewsletterResult:
        """Broadcast one email to every active newsletter subscriber."""
        now = self.clock.now()
        async with self.session_factory() as db:
            return await newsletter.send_newsletter(
                db, self.adapters.email, subject, body, now,
                calendar_link=self.policy.calendar_link,
                timeout_seconds=self.policy.timeout_seconds,
            )

    # === Catalog ===

    async def seed_catalog(self) -> int:
        async with self.session_factory() as db:
            inserted = await catalog.seed_catalog(db)
            await db.commit()
        return inserted

    async def update_step(self, step_id: uuid.UUID, updates: StepUpdate):
        async with self.session_factory() as db:
            step = await catalog.update_sequence_step(db, step_id, updates)
            await db.commit()
        return step


def build_default_engine() -> SequenceEngine:
    """Production wiring: SendGrid + Evolution API adapters, settings-driven policy."""
    from nurture.config import get_settings
    from nurture.database import _get_session_factory
    from nurture.services.email import SendGridEmailAdapter
    from nurture.services.whatsapp import EvolutionWhatsAppAdapter, SenderIdentity

    settings = get_settings()
    adapters = ChannelAdapters(
        email=SendGridEmailAdapter(
            api_key=settings.sendgrid_api_key,
            from_email=settings.sendgrid_from_email,
            from_name=settings.sendgrid_from_name,
        ),
        whatsapp=EvolutionWhatsAppAdapter(
            api_url=settings.evolution_api_url,
            identities={
                "initial": SenderIdentity(
                    settings.evolution_instance_initial, settings.evolution_api_key_initial,
                ),
                "followup": SenderIdentity(
                    settings.evolution_instance_followup, settings.evolution_api_key_followup,
                ),
            },
            default_country_code=settings.whatsapp_default_country_code,
        ),
    )
    policy = DispatchPolicy(
        calendar_link=settings.calendar_link,
        timeout_seconds=settings.dispatch_timeout_seconds,
        max_attempts=settings.queue_max_attempts,
    )
    clock = SystemClock()
    processor = QueueProcessor(
        session_factory=_get_session_factory(),
        adapters=adapters,
        policy=policy,
        clock=clock,
        batch_size=settings.queue_batch_size,
        concurrency=settings.queue_concurrency,
        stale_claim_minutes=settings.queue_stale_claim_minutes,
        poll_interval_seconds=settings.queue_poll_interval_seconds,
    )
    return SequenceEngine(_get_session_factory(), processor, clock)


@lru_cache()
def get_engine() -> SequenceEngine:
    """Process-wide engine shared by the API routes and the queue worker."""
    return build_default_engine()
