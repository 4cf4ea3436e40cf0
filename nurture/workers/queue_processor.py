"""
Queue processor - delivers due message queue entries.
Runs every 60 seconds. Each tick:
1. Fails stale claims (processing for too long, outcome unknown - never re-sent)
2. Fetches a bounded batch of due pending entries of active enrollments
3. Processes leads concurrently (bounded), each lead's entries in order

Two conditional updates keep overlapping passes apart. The lead claim lets only
one pass at a time work through a lead's entries, so content rotation never
reads a stale view of what was sent. The entry claim (pending → processing)
delivers each entry once, even against a manual send.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select, update

from nurture.models.enrollment import LeadSequence
from nurture.models.message_queue import MessageQueue
from nurture.schemas.dispatch import DispatchOutcome, TickSummary
from nurture.services.dispatch import (
    ChannelAdapters,
    DispatchPolicy,
    claim_entry,
    claim_lead,
    dispatch_and_record,
    record_failure,
    release_lead,
)
from nurture.utils.alerting import AlertType, send_alert
from nurture.utils.clock import Clock, SystemClock
from nurture.utils.logging import generate_correlation_id, set_correlation_id, short_id

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
BATCH_SIZE = 50
CONCURRENCY = 5
STALE_CLAIM_MINUTES = 30
HEARTBEAT_KEY = "nurture:worker_health:queue_processor"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from nurture.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, SystemClock().now().isoformat(), ex=300)
    except Exception as e:
        logger.debug("Queue processor heartbeat failed: %s", str(e))


class QueueProcessor:
    """Polls the message queue and funnels each claimed entry through dispatch_and_record()."""

    def __init__(
        self,
        session_factory,
        adapters: ChannelAdapters,
        policy: Optional[DispatchPolicy] = None,
        clock: Optional[Clock] = None,
        batch_size: int = BATCH_SIZE,
        concurrency: int = CONCURRENCY,
        stale_claim_minutes: int = STALE_CLAIM_MINUTES,
        poll_interval_seconds: int = POLL_INTERVAL_SECONDS,
    ):
        self.session_factory = session_factory
        self.adapters = adapters
        self.policy = policy or DispatchPolicy()
        self.clock = clock or SystemClock()
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.stale_claim_minutes = stale_claim_minutes
        self.poll_interval_seconds = poll_interval_seconds

    async def run_forever(self) -> None:
        """Main loop - one tick per poll interval, errors logged and never fatal."""
        logger.info("Queue processor started (poll every %ds)", self.poll_interval_seconds)

        while True:
            set_correlation_id(generate_correlation_id())
            try:
                summary = await self.run_once()
                if summary.claimed or summary.stale_failed:
                    logger.info("Queue tick: %s", summary.model_dump())
            except Exception as e:
                logger.error("Queue processor error: %s", str(e), exc_info=True)
                await send_alert(AlertType.QUEUE_TICK_FAILED, f"Queue tick failed: {e}")

            await _heartbeat()
            await asyncio.sleep(self.poll_interval_seconds)

    async def run_once(self) -> TickSummary:
        """One tick. Returns counts of what happened."""
        now = self.clock.now()
        summary = TickSummary()

        summary.stale_failed = await self.fail_stale_claims(now)

        due = await self.fetch_due_entries(now)
        if not due:
            return summary

        by_lead: "OrderedDict[uuid.UUID, list[uuid.UUID]]" = OrderedDict()
        for entry_id, lead_id in due:
            by_lead.setdefault(lead_id, []).append(entry_id)

        logger.info("Processing %d due queue entries for %d leads", len(due), len(by_lead))

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(lead_id: uuid.UUID, entry_ids: list[uuid.UUID]) -> None:
            async with semaphore:
                await self._process_lead(lead_id, entry_ids, now, summary)

        await asyncio.gather(*(_bounded(lead_id, ids) for lead_id, ids in by_lead.items()))
        return summary

    async def fail_stale_claims(self, now: datetime) -> int:
        """
        Entries stuck in processing past the stale window crashed mid-dispatch.
        The provider may or may not have delivered, so they are failed, not retried.
        """
        cutoff = now - timedelta(minutes=self.stale_claim_minutes)
        async with self.session_factory() as db:
            result = await db.execute(
                update(MessageQueue)
                .where(
                    MessageQueue.status == "processing",
                    MessageQueue.claimed_at < cutoff,
                )
                .values(
                    status="failed",
                    error_message=(
                        f"Claim expired after {self.stale_claim_minutes} minutes; "
                        "delivery outcome unknown"
                    ),
                    updated_at=now,
                )
            )
            await db.commit()

        count = result.rowcount or 0
        if count:
            logger.warning("Failed %d stale processing entries", count)
            await send_alert(
                AlertType.STALE_CLAIMS_FOUND,
                f"{count} queue entries were stuck in processing and have been failed",
                severity="warning",
            )
        return count

    async def fetch_due_entries(self, now: datetime) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """(entry_id, lead_id) of due pending entries whose enrollment is active."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(MessageQueue.id, MessageQueue.lead_id)
                .join(LeadSequence, LeadSequence.id == MessageQueue.lead_sequence_id)
                .where(
                    MessageQueue.status == "pending",
                    MessageQueue.scheduled_for <= now,
                    LeadSequence.status == "active",
                )
                .order_by(MessageQueue.scheduled_for)
                .limit(self.batch_size)
            )
            return [(row[0], row[1]) for row in result.all()]

    async def _process_lead(
        self,
        lead_id: uuid.UUID,
        entry_ids: list[uuid.UUID],
        now: datetime,
        summary: TickSummary,
    ) -> None:
        stale_after = timedelta(minutes=self.stale_claim_minutes)
        async with self.session_factory() as db:
            if not await claim_lead(db, lead_id, now, stale_after):
                logger.debug(
                    "Lead %s is being delivered by another pass, skipping %d entries",
                    short_id(lead_id), len(entry_ids), extra={"lead_id": str(lead_id)},
                )
                summary.skipped += len(entry_ids)
                return

        try:
            for entry_id in entry_ids:
                try:
                    await self._process_entry(entry_id, now, summary)
                except Exception as e:
                    logger.error(
                        "Queue entry %s could not be processed: %s",
                        short_id(entry_id), str(e), exc_info=True,
                        extra={"entry_id": str(entry_id)},
                    )
        finally:
            async with self.session_factory() as db:
                await release_lead(db, lead_id, now)

    async def _process_entry(
        self,
        entry_id: uuid.UUID,
        now: datetime,
        summary: TickSummary,
    ) -> Optional[DispatchOutcome]:
        async with self.session_factory() as db:
            if not await claim_entry(db, entry_id, now):
                summary.skipped += 1
                return None
            summary.claimed += 1

            try:
                outcome = await dispatch_and_record(db, entry_id, self.adapters, self.policy, now)
            except Exception as e:
                logger.error(
                    "Unexpected dispatch error for entry %s: %s",
                    short_id(entry_id), str(e), exc_info=True,
                    extra={"entry_id": str(entry_id)},
                )
                await db.rollback()
                outcome = await record_failure(
                    db, entry_id, f"Unexpected error: {e}", now, self.policy.max_attempts,
                )

        _count(summary, outcome)
        return outcome


def _count(summary: TickSummary, outcome: DispatchOutcome) -> None:
    if outcome == DispatchOutcome.SENT:
        summary.sent += 1
    elif outcome == DispatchOutcome.ALREADY_SENT:
        summary.duplicates += 1
    elif outcome == DispatchOutcome.RETRY_SCHEDULED:
        summary.retried += 1
    elif outcome == DispatchOutcome.FAILED:
        summary.failed += 1


async def run_queue_processor():
    """Entry point used by the app lifespan."""
    from nurture.services.sequence_engine import get_engine
    engine = get_engine()
    await engine.processor.run_forever()
