"""
Tests for nurture/services/enrollment.py - enroll, reactivate, cancel, convert.
"""
import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from conftest import T0, make_lead
from nurture.exceptions import InvalidTransitionError, NotFoundError
from nurture.models.enrollment import LeadSequence
from nurture.models.message_queue import MessageQueue
from nurture.models.sent_message import SentMessage
from nurture.services import enrollment as enrollment_service
from nurture.services.enrollment import (
    apply_transition,
    can_transition,
    cancel_enrollments,
    convert_enrollment,
    enroll_lead,
    pause_enrollment,
)


async def _add_lead(db, **overrides):
    lead = make_lead(**overrides)
    db.add(lead)
    await db.flush()
    return lead


async def _queue_statuses(db, enrollment_id):
    result = await db.execute(
        select(MessageQueue.status).where(MessageQueue.lead_sequence_id == enrollment_id)
    )
    return list(result.scalars().all())


async def _schedule(db, enrollment_id):
    result = await db.execute(
        select(MessageQueue.id, MessageQueue.scheduled_for, MessageQueue.status)
        .where(MessageQueue.lead_sequence_id == enrollment_id)
    )
    return sorted(result.all())


class TestTransitionTable:
    @pytest.mark.parametrize("current,requested", [
        ("active", "cancelled"), ("active", "completed"), ("active", "converted"),
        ("active", "paused"), ("paused", "active"), ("paused", "cancelled"),
        ("cancelled", "active"), ("completed", "active"),
    ])
    def test_allowed(self, current, requested):
        assert can_transition(current, requested)

    @pytest.mark.parametrize("current,requested", [
        ("cancelled", "completed"), ("completed", "cancelled"),
        ("converted", "active"), ("converted", "cancelled"), ("active", "active"),
    ])
    def test_disallowed(self, current, requested):
        assert not can_transition(current, requested)

    def test_apply_sets_timestamp_and_reason(self):
        enrollment = LeadSequence(status="active")
        apply_transition(enrollment, "cancelled", T0, reason="meeting_booked")
        assert enrollment.status == "cancelled"
        assert enrollment.cancelled_at == T0
        assert enrollment.cancel_reason == "meeting_booked"

    def test_apply_rejects_invalid(self):
        enrollment = LeadSequence(status="cancelled")
        with pytest.raises(InvalidTransitionError) as exc:
            apply_transition(enrollment, "completed", T0)
        assert exc.value.current == "cancelled"
        assert exc.value.requested == "completed"


class TestEnrollLead:
    async def test_creates_enrollment_and_entries(self, seeded_db):
        lead = await _add_lead(seeded_db)
        enrollment, changed = await enroll_lead(seeded_db, lead.id, "new_lead", T0)

        assert changed is True
        assert enrollment.status == "active"
        assert enrollment.current_step == 0
        assert enrollment.enrolled_at == T0
        assert len(await _queue_statuses(seeded_db, enrollment.id)) == 25

    async def test_second_enroll_returns_same_row_untouched(self, seeded_db):
        lead = await _add_lead(seeded_db)
        first, _ = await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        first.current_step = 4
        await seeded_db.flush()

        second, changed = await enroll_lead(seeded_db, lead.id, "new_lead", T0 + timedelta(hours=5))

        assert changed is False
        assert second.id == first.id
        assert second.current_step == 4
        assert second.enrolled_at == T0
        assert len(await _queue_statuses(seeded_db, first.id)) == 25

    async def test_unknown_sequence_writes_nothing(self, seeded_db):
        lead = await _add_lead(seeded_db)
        with pytest.raises(NotFoundError):
            await enroll_lead(seeded_db, lead.id, "does_not_exist", T0)
        result = await seeded_db.execute(select(LeadSequence))
        assert result.scalars().all() == []

    async def test_unknown_lead(self, seeded_db):
        with pytest.raises(NotFoundError):
            await enroll_lead(seeded_db, uuid.uuid4(), "new_lead", T0)

    async def test_reactivates_cancelled_enrollment(self, seeded_db):
        lead = await _add_lead(seeded_db)
        enrollment, _ = await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        enrollment.current_step = 3
        await cancel_enrollments(seeded_db, lead.id, T0 + timedelta(hours=1), "new_lead", reason="manual")

        later = T0 + timedelta(days=2)
        again, changed = await enroll_lead(seeded_db, lead.id, "new_lead", later)

        assert changed is True
        assert again.id == enrollment.id
        assert again.status == "active"
        assert again.current_step == 0
        assert again.enrolled_at == later
        assert again.cancelled_at is None
        assert again.cancel_reason is None

        result = await seeded_db.execute(
            select(MessageQueue).where(MessageQueue.lead_sequence_id == enrollment.id)
        )
        entries = result.scalars().all()
        assert len(entries) == 25
        assert all(e.status == "pending" for e in entries)
        assert min(e.scheduled_for for e in entries) == later

    async def test_reactivation_keeps_previous_anchor(self, seeded_db):
        lead = await _add_lead(seeded_db)
        meeting = T0 + timedelta(days=3)
        await enroll_lead(seeded_db, lead.id, "meeting_booked", T0, anchor_at=meeting)
        await cancel_enrollments(seeded_db, lead.id, T0, "meeting_booked")

        again, _ = await enroll_lead(seeded_db, lead.id, "meeting_booked", T0 + timedelta(hours=1))
        assert again.anchor_at == meeting

    async def test_reactivation_does_not_reschedule_sent_steps(self, seeded_db):
        lead = await _add_lead(seeded_db)
        enrollment, _ = await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        welcome = (await seeded_db.execute(
            select(MessageQueue).where(
                MessageQueue.lead_sequence_id == enrollment.id,
                MessageQueue.channel == "whatsapp",
            )
        )).scalar_one()
        welcome.status = "sent"
        seeded_db.add(SentMessage(
            lead_id=lead.id, lead_sequence_id=enrollment.id,
            sequence_step_id=welcome.sequence_step_id, channel="whatsapp",
            content_id="welcome_calendar", sent_at=T0,
        ))
        await cancel_enrollments(seeded_db, lead.id, T0, "new_lead")

        await enroll_lead(seeded_db, lead.id, "new_lead", T0 + timedelta(days=1))

        assert welcome.status == "sent"
        statuses = await _queue_statuses(seeded_db, enrollment.id)
        assert statuses.count("pending") == 24

    async def test_lost_create_race_returns_winning_row(self, seeded_db):
        lead = await _add_lead(seeded_db)
        winner, _ = await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        real_get_enrollment = enrollment_service.get_enrollment
        lookups = []

        async def _lookup_before_winner_committed(db, lead_id, sequence_id):
            lookups.append(sequence_id)
            if len(lookups) == 1:
                return None
            return await real_get_enrollment(db, lead_id, sequence_id)

        with patch(
            "nurture.services.enrollment.get_enrollment",
            side_effect=_lookup_before_winner_committed,
        ):
            again, changed = await enroll_lead(seeded_db, lead.id, "new_lead", T0 + timedelta(hours=1))

        assert changed is False
        assert again.id == winner.id
        assert len(lookups) == 2
        rows = (await seeded_db.execute(select(LeadSequence))).scalars().all()
        assert len(rows) == 1
        assert len(await _queue_statuses(seeded_db, winner.id)) == 25

    async def test_sequence_without_steps_completes_at_once(self, seeded_db):
        lead = await _add_lead(seeded_db)

        enrollment, changed = await enroll_lead(seeded_db, lead.id, "newsletter", T0)

        assert changed is True
        assert enrollment.status == "completed"
        assert enrollment.completed_at == T0
        assert await _queue_statuses(seeded_db, enrollment.id) == []

    async def test_reactivation_with_every_step_sent_completes(self, seeded_db):
        lead = await _add_lead(seeded_db)
        meeting = T0 + timedelta(days=2)
        enrollment, _ = await enroll_lead(seeded_db, lead.id, "meeting_booked", T0, anchor_at=meeting)
        entries = (await seeded_db.execute(
            select(MessageQueue).where(MessageQueue.lead_sequence_id == enrollment.id)
        )).scalars().all()
        for entry in entries:
            entry.status = "sent"
            seeded_db.add(SentMessage(
                lead_id=lead.id, lead_sequence_id=enrollment.id,
                sequence_step_id=entry.sequence_step_id, channel=entry.channel,
                content_id="booking", sent_at=T0,
            ))
        apply_transition(enrollment, "completed", meeting)
        await seeded_db.flush()

        again, changed = await enroll_lead(
            seeded_db, lead.id, "meeting_booked", meeting + timedelta(hours=1),
            anchor_at=meeting + timedelta(days=3),
        )

        assert changed is True
        assert again.status == "completed"
        assert again.completed_at == meeting + timedelta(hours=1)
        assert set(await _queue_statuses(seeded_db, enrollment.id)) == {"sent"}

    async def test_converted_cannot_be_reactivated(self, seeded_db):
        lead = await _add_lead(seeded_db)
        await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        await convert_enrollment(seeded_db, lead.id, "new_lead", T0)

        with pytest.raises(InvalidTransitionError):
            await enroll_lead(seeded_db, lead.id, "new_lead", T0 + timedelta(days=1))


class TestCancelEnrollments:
    async def test_flips_pending_entries_and_keeps_sent_records(self, seeded_db):
        lead = await _add_lead(seeded_db)
        enrollment, _ = await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        entries = (await seeded_db.execute(
            select(MessageQueue).where(MessageQueue.lead_sequence_id == enrollment.id)
        )).scalars().all()
        entries[0].status = "sent"
        entries[1].status = "processing"
        seeded_db.add(SentMessage(
            lead_id=lead.id, lead_sequence_id=enrollment.id,
            sequence_step_id=entries[0].sequence_step_id, channel=entries[0].channel,
            sent_at=T0,
        ))
        await seeded_db.flush()

        cancelled = await cancel_enrollments(seeded_db, lead.id, T0, "new_lead", reason="unsubscribed")

        assert [e.id for e in cancelled] == [enrollment.id]
        assert enrollment.status == "cancelled"
        assert enrollment.cancel_reason == "unsubscribed"

        statuses = await _queue_statuses(seeded_db, enrollment.id)
        assert statuses.count("sent") == 1
        assert statuses.count("processing") == 1
        assert statuses.count("cancelled") == 23
        assert statuses.count("pending") == 0

        sent = (await seeded_db.execute(select(SentMessage))).scalars().all()
        assert len(sent) == 1

    async def test_cancel_all_sequences(self, seeded_db):
        lead = await _add_lead(seeded_db)
        await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        await enroll_lead(seeded_db, lead.id, "no_show", T0)

        cancelled = await cancel_enrollments(seeded_db, lead.id, T0, reason="opted_out")
        assert len(cancelled) == 2

    async def test_nothing_active_returns_empty(self, seeded_db):
        lead = await _add_lead(seeded_db)
        assert await cancel_enrollments(seeded_db, lead.id, T0, "new_lead") == []

    async def test_unknown_sequence(self, seeded_db):
        lead = await _add_lead(seeded_db)
        with pytest.raises(NotFoundError):
            await cancel_enrollments(seeded_db, lead.id, T0, "nope")


class TestPauseAndConvert:
    async def test_pause_then_resume_through_enroll(self, seeded_db):
        lead = await _add_lead(seeded_db)
        enrollment, _ = await enroll_lead(seeded_db, lead.id, "new_lead", T0)
        enrollment.current_step = 5
        await seeded_db.flush()
        schedule_before = await _schedule(seeded_db, enrollment.id)

        paused = await pause_enrollment(seeded_db, lead.id, "new_lead", T0 + timedelta(hours=1))
        assert paused.status == "paused"
        assert paused.paused_at == T0 + timedelta(hours=1)

        resumed, changed = await enroll_lead(
            seeded_db, lead.id, "new_lead", T0 + timedelta(days=3),
            anchor_at=T0 + timedelta(days=3),
        )
        assert changed is True
        assert resumed.id == enrollment.id
        assert resumed.status == "active"
        assert resumed.paused_at is None
        assert resumed.current_step == 5
        assert resumed.enrolled_at == T0
        assert resumed.anchor_at is None
        assert await _schedule(seeded_db, enrollment.id) == schedule_before

    async def test_convert_cancels_pending(self, seeded_db):
        lead = await _add_lead(seeded_db)
        enrollment, _ = await enroll_lead(seeded_db, lead.id, "new_lead", T0)

        converted = await convert_enrollment(seeded_db, lead.id, "new_lead", T0)

        assert converted.status == "converted"
        assert converted.converted_at == T0
        assert set(await _queue_statuses(seeded_db, enrollment.id)) == {"cancelled"}

    async def test_convert_requires_enrollment(self, seeded_db):
        lead = await _add_lead(seeded_db)
        with pytest.raises(NotFoundError):
            await convert_enrollment(seeded_db, lead.id, "new_lead", T0)
