"""
Tests for lifecycle transitions through the SequenceEngine - booked, no-show,
completed, reschedule, cancellation.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import T0, make_lead
from nurture.exceptions import NotFoundError
from nurture.models.enrollment import LeadSequence
from nurture.models.event_log import EventLog
from nurture.models.lead import Lead
from nurture.models.message_queue import MessageQueue
from nurture.models.newsletter import NewsletterSubscriber
from nurture.models.sequence import Sequence
from nurture.services.transitions import add_to_newsletter


async def _enrollment(session_factory, lead_id, slug):
    async with session_factory() as db:
        result = await db.execute(
            select(LeadSequence)
            .join(Sequence, Sequence.id == LeadSequence.sequence_id)
            .where(LeadSequence.lead_id == lead_id, Sequence.slug == slug)
        )
        return result.scalar_one_or_none()


async def _entries(session_factory, enrollment_id):
    async with session_factory() as db:
        result = await db.execute(
            select(MessageQueue).where(MessageQueue.lead_sequence_id == enrollment_id)
        )
        return list(result.scalars().all())


async def _lead(session_factory, lead_id):
    async with session_factory() as db:
        return await db.get(Lead, lead_id)


class TestMeetingBooked:
    async def test_nurture_to_booked_end_to_end(self, engine, session_factory, lead_factory,
                                                clock, email_adapter, whatsapp_adapter):
        lead = await lead_factory()
        await engine.enroll(lead.id, "new_lead")
        assert email_adapter.calls == 1
        assert whatsapp_adapter.calls == 1

        clock.advance(hours=2)
        booking = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))

        nurture = await _enrollment(session_factory, lead.id, "new_lead")
        assert nurture.status == "cancelled"
        assert nurture.cancel_reason == "meeting_booked"
        assert nurture.cancelled_at == T0 + timedelta(hours=2)

        nurture_statuses = [e.status for e in await _entries(session_factory, nurture.id)]
        assert nurture_statuses.count("sent") == 2
        assert nurture_statuses.count("cancelled") == 23
        assert "pending" not in nurture_statuses

        booked_entries = await _entries(session_factory, booking.id)
        assert len(booked_entries) == 8
        assert {e.scheduled_for for e in booked_entries} == {
            T0 + timedelta(hours=48),
            T0 + timedelta(hours=24),
            T0 + timedelta(hours=42),
            T0 + timedelta(hours=47),
        }
        assert {e.status for e in booked_entries} == {"pending"}

        # Nothing from the booking is due yet; the nurture value email was cancelled, not sent
        assert email_adapter.calls == 1
        assert (await _lead(session_factory, lead.id)).status == "qualified"

    async def test_reminders_go_out_as_the_meeting_nears(self, engine, lead_factory, clock,
                                                         email_adapter):
        lead = await lead_factory()
        await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))

        clock.set(T0 + timedelta(hours=24))
        await engine.process_queue()

        assert [m["subject"] for m in email_adapter.sent] == [
            "Reminder: your automation consultation is tomorrow",
        ]

    async def test_same_time_twice_is_a_noop(self, engine, session_factory, lead_factory):
        lead = await lead_factory()
        first = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))
        second = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))

        assert second.id == first.id
        assert len(await _entries(session_factory, first.id)) == 8

    async def test_new_time_while_booked_reschedules(self, engine, session_factory, lead_factory):
        lead = await lead_factory()
        first = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))
        second = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=72))

        assert second.id == first.id
        entries = await _entries(session_factory, first.id)
        assert len(entries) == 8
        assert min(e.scheduled_for for e in entries) == T0 + timedelta(hours=48)
        assert max(e.scheduled_for for e in entries) == T0 + timedelta(hours=72)

    async def test_rebooking_after_no_show_reactivates_booking(self, engine, session_factory,
                                                               lead_factory, clock):
        lead = await lead_factory()
        first = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))
        clock.set(T0 + timedelta(hours=49))
        await engine.on_no_show(lead.id)

        clock.set(T0 + timedelta(hours=50))
        rebooked = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=120))

        assert rebooked.id == first.id
        assert rebooked.status == "active"
        no_show = await _enrollment(session_factory, lead.id, "no_show")
        assert no_show.status == "cancelled"
        assert no_show.cancel_reason == "meeting_booked"

        pending = [e for e in await _entries(session_factory, first.id) if e.status == "pending"]
        assert len(pending) == 8
        assert min(e.scheduled_for for e in pending) == T0 + timedelta(hours=96)

    async def test_rebooking_a_finished_booking_completes_it_again(self, engine, session_factory,
                                                                  lead_factory, clock, email_adapter):
        lead = await lead_factory()
        first = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))
        clock.set(T0 + timedelta(hours=48))
        await engine.process_queue()
        assert (await _enrollment(session_factory, lead.id, "meeting_booked")).status == "completed"
        calls_before = email_adapter.calls

        clock.set(T0 + timedelta(hours=50))
        rebooked = await engine.on_meeting_booked(lead.id, T0 + timedelta(days=5))

        assert rebooked.id == first.id
        assert rebooked.status == "completed"
        assert rebooked.completed_at == T0 + timedelta(hours=50)
        assert {e.status for e in await _entries(session_factory, first.id)} == {"sent"}

        clock.set(T0 + timedelta(days=10))
        await engine.process_queue()
        assert email_adapter.calls == calls_before
        stored = await _enrollment(session_factory, lead.id, "meeting_booked")
        assert stored.status == "completed"

    async def test_unknown_lead(self, engine):
        with pytest.raises(NotFoundError):
            await engine.on_meeting_booked(uuid.uuid4(), T0)


class TestNoShow:
    async def test_starts_rebooking_sequence(self, engine, session_factory, lead_factory, clock,
                                             email_adapter, whatsapp_adapter):
        lead = await lead_factory()
        booking = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))

        clock.set(T0 + timedelta(hours=49))
        enrollment = await engine.on_no_show(lead.id)

        booked = await _enrollment(session_factory, lead.id, "meeting_booked")
        assert booked.status == "cancelled"
        assert booked.cancel_reason == "no_show"
        assert {e.status for e in await _entries(session_factory, booking.id)} == {"cancelled"}

        assert enrollment.status == "active"
        assert enrollment.anchor_at is None
        assert [m["subject"] for m in email_adapter.sent] == ["Missed automation consultation"]
        assert whatsapp_adapter.calls == 1
        assert (await _lead(session_factory, lead.id)).status == "contacted"


class TestMeetingCompleted:
    async def test_converts_and_subscribes(self, engine, session_factory, lead_factory, clock):
        lead = await lead_factory()
        await engine.enroll(lead.id, "new_lead")
        await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))

        clock.set(T0 + timedelta(hours=49))
        cancelled = await engine.on_meeting_completed(lead.id)

        assert len(cancelled) == 1
        booked = await _enrollment(session_factory, lead.id, "meeting_booked")
        assert booked.status == "cancelled"
        assert booked.cancel_reason == "meeting_completed"

        refreshed = await _lead(session_factory, lead.id)
        assert refreshed.status == "converted"
        assert refreshed.converted_at == T0 + timedelta(hours=49)

        async with session_factory() as db:
            subscriber = (await db.execute(select(NewsletterSubscriber))).scalar_one()
            assert subscriber.email == "dana@example.com"
            assert subscriber.lead_id == lead.id
            assert subscriber.source == "meeting_completed"

    async def test_lead_without_email_still_converted(self, engine, session_factory, lead_factory):
        lead = await lead_factory(email=None)
        await engine.on_meeting_completed(lead.id)

        assert (await _lead(session_factory, lead.id)).status == "converted"
        async with session_factory() as db:
            assert (await db.execute(select(NewsletterSubscriber))).scalars().all() == []


class TestAddToNewsletter:
    async def test_resubscribes_existing_email(self, db):
        lead = make_lead()
        db.add(lead)
        db.add(NewsletterSubscriber(
            email="dana@example.com", first_name="D", status="unsubscribed",
            source="import", unsubscribed_at=T0,
        ))
        await db.flush()

        subscriber = await add_to_newsletter(db, lead, source="meeting_completed")

        assert subscriber.status == "active"
        assert subscriber.unsubscribed_at is None
        assert subscriber.first_name == "Dana"
        assert subscriber.lead_id == lead.id
        assert subscriber.source == "import"
        assert len((await db.execute(select(NewsletterSubscriber))).scalars().all()) == 1


class TestReschedule:
    async def test_moves_unsent_reminders(self, engine, session_factory, lead_factory):
        lead = await lead_factory()
        booking = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))

        moved = await engine.on_reschedule(lead.id, T0 + timedelta(hours=72))

        assert moved.id == booking.id
        assert moved.anchor_at == T0 + timedelta(hours=72)
        assert {e.scheduled_for for e in await _entries(session_factory, booking.id)} == {
            T0 + timedelta(hours=72),
            T0 + timedelta(hours=48),
            T0 + timedelta(hours=66),
            T0 + timedelta(hours=71),
        }
        async with session_factory() as db:
            event = (await db.execute(
                select(EventLog).where(EventLog.action == "meeting_rescheduled")
            )).scalar_one()
            assert event.data["entries_retimed"] == 8

    async def test_sent_reminders_are_not_moved(self, engine, session_factory, lead_factory,
                                                email_adapter):
        lead = await lead_factory()
        booking = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=10))
        # 24h reminder was already due and went out
        assert email_adapter.calls == 1

        await engine.on_reschedule(lead.id, T0 + timedelta(hours=30))

        entries = await _entries(session_factory, booking.id)
        sent = [e for e in entries if e.status == "sent"]
        assert len(sent) == 2
        assert {e.scheduled_for for e in sent} == {T0 - timedelta(hours=14)}
        pending = [e for e in entries if e.status == "pending"]
        assert {e.scheduled_for for e in pending} == {
            T0 + timedelta(hours=30),
            T0 + timedelta(hours=24),
            T0 + timedelta(hours=29),
        }
        assert email_adapter.calls == 1

    async def test_without_booking_acts_as_booking(self, engine, session_factory, lead_factory):
        lead = await lead_factory()
        booking = await engine.on_reschedule(lead.id, T0 + timedelta(hours=48))

        assert booking.status == "active"
        assert booking.anchor_at == T0 + timedelta(hours=48)
        assert len(await _entries(session_factory, booking.id)) == 8


class TestCancellation:
    async def test_cancels_booking_without_restarting_nurture(self, engine, session_factory,
                                                              lead_factory):
        lead = await lead_factory()
        await engine.enroll(lead.id, "new_lead")
        booking = await engine.on_meeting_booked(lead.id, T0 + timedelta(hours=48))

        cancelled = await engine.on_cancellation(lead.id)

        assert [e.id for e in cancelled] == [booking.id]
        assert {e.status for e in await _entries(session_factory, booking.id)} == {"cancelled"}
        nurture = await _enrollment(session_factory, lead.id, "new_lead")
        assert nurture.status == "cancelled"

    async def test_nothing_to_cancel(self, engine, lead_factory):
        lead = await lead_factory()
        assert await engine.on_cancellation(lead.id) == []
