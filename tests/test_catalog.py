"""
Tests for nurture/services/catalog.py and the step definition schemas.
"""
import uuid

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from nurture.exceptions import NotFoundError
from nurture.models.sequence import Sequence, SequenceStep
from nurture.schemas.sequence_catalog import SequenceDefinition, StepDefinition, StepUpdate
from nurture.services.catalog import (
    get_sequence_steps,
    list_sequences,
    require_sequence,
    seed_catalog,
    update_sequence_step,
)
from nurture.utils.templates import DEFAULT_SEQUENCES


class TestStepDefinition:
    def test_requires_exactly_one_content_reference(self):
        with pytest.raises(ValidationError):
            StepDefinition(step_order=1, name="x", delay_value=0, delay_unit="hours", channel="email")
        with pytest.raises(ValidationError):
            StepDefinition(
                step_order=1, name="x", delay_value=0, delay_unit="hours", channel="email",
                template_key="welcome_calendar", content_pool="value",
            )

    def test_rejects_unknown_unit_and_channel(self):
        with pytest.raises(ValidationError):
            StepDefinition(step_order=1, name="x", delay_value=1, delay_unit="weeks",
                           channel="email", template_key="a")
        with pytest.raises(ValidationError):
            StepDefinition(step_order=1, name="x", delay_value=1, delay_unit="days",
                           channel="sms", template_key="a")

    def test_duplicate_orders_rejected(self):
        step = {"step_order": 1, "name": "x", "delay_value": 0, "delay_unit": "hours",
                "channel": "email", "template_key": "a"}
        with pytest.raises(ValidationError):
            SequenceDefinition(name="S", slug="s", trigger_type="manual", steps=[step, step])

    def test_default_catalog_is_valid(self):
        for raw in DEFAULT_SEQUENCES:
            SequenceDefinition(**raw)


class TestSeedCatalog:
    async def test_seeds_defaults(self, db):
        inserted = await seed_catalog(db)

        assert inserted == 24 + 4 + 9
        slugs = set((await db.execute(select(Sequence.slug))).scalars().all())
        assert slugs == {"new_lead", "meeting_booked", "no_show", "newsletter"}

    async def test_reseed_is_idempotent_and_keeps_edits(self, seeded_db):
        sequence = await require_sequence(seeded_db, "new_lead")
        first = (await get_sequence_steps(seeded_db, sequence.id))[0]
        first.name = "Edited"
        await seeded_db.flush()

        assert await seed_catalog(seeded_db) == 0
        assert (await get_sequence_steps(seeded_db, sequence.id))[0].name == "Edited"
        count = (await seeded_db.execute(select(func.count(SequenceStep.id)))).scalar()
        assert count == 37

    async def test_seeds_custom_definitions(self, db):
        inserted = await seed_catalog(db, [{
            "name": "Webinar", "slug": "webinar", "trigger_type": "manual",
            "steps": [{"step_order": 1, "name": "Invite", "delay_value": 0,
                       "delay_unit": "minutes", "channel": "email", "template_key": "welcome_calendar"}],
        }])
        assert inserted == 1
        assert (await require_sequence(db, "webinar")).trigger_type == "manual"


class TestCatalogReads:
    async def test_steps_ordered_and_filtered(self, seeded_db):
        sequence = await require_sequence(seeded_db, "meeting_booked")
        steps = await get_sequence_steps(seeded_db, sequence.id)
        assert [s.step_order for s in steps] == [1, 2, 3, 4]

        steps[1].is_active = False
        await seeded_db.flush()
        active = await get_sequence_steps(seeded_db, sequence.id, active_only=True)
        assert [s.step_order for s in active] == [1, 3, 4]

    async def test_require_sequence_unknown(self, seeded_db):
        with pytest.raises(NotFoundError):
            await require_sequence(seeded_db, "missing")

    async def test_list_sequences_sorted_by_name(self, seeded_db):
        names = [sequence.name for sequence, _ in await list_sequences(seeded_db)]
        assert names == sorted(names)


class TestUpdateSequenceStep:
    async def test_only_set_fields_written(self, seeded_db):
        sequence = await require_sequence(seeded_db, "new_lead")
        step = (await get_sequence_steps(seeded_db, sequence.id))[0]

        updated = await update_sequence_step(
            seeded_db, step.id, StepUpdate(email_subject="A new subject"),
        )

        assert updated.email_subject == "A new subject"
        assert updated.name == "Welcome + Calendar"
        assert updated.is_active is True

    async def test_unknown_step(self, seeded_db):
        with pytest.raises(NotFoundError):
            await update_sequence_step(seeded_db, uuid.uuid4(), StepUpdate(name="x"))
