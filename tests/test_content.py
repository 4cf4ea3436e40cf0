"""
Tests for nurture/services/content.py - template resolution, rotation and substitution.
"""
import random
import uuid

import pytest
from pydantic import ValidationError

from conftest import T0, make_lead
from nurture.exceptions import NotFoundError
from nurture.models.sent_message import SentMessage
from nurture.models.sequence import SequenceStep
from nurture.services.content import (
    TemplateVariables,
    build_variables,
    get_seen_content_ids,
    resolve_content,
    strip_html,
    substitute_variables,
)
from nurture.utils.templates import OPERATIONAL_EMAILS, VALUE_EMAILS, WHATSAPP_MESSAGES


def _fixed_step(template_key="meeting_confirmation", **overrides):
    return SequenceStep(
        id=uuid.uuid4(), sequence_id=uuid.uuid4(), step_order=1, name="Fixed",
        delay_value=0, delay_unit="minutes", channel="both",
        template_key=template_key, is_active=True, **overrides,
    )


def _rotating_step(pool="value"):
    return SequenceStep(
        id=uuid.uuid4(), sequence_id=uuid.uuid4(), step_order=2, name="Value",
        delay_value=1, delay_unit="hours", channel="email",
        content_pool=pool, is_active=True,
    )


class TestSubstituteVariables:
    def test_replaces_known_placeholders(self):
        variables = TemplateVariables(first_name="Dana", calendar_link="https://cal.example.com")
        text = substitute_variables("Hi {{first_name}}, book at {{calendar_link}}", variables)
        assert text == "Hi Dana, book at https://cal.example.com"

    def test_case_insensitive_and_whitespace_tolerant(self):
        variables = TemplateVariables(first_name="Dana")
        assert substitute_variables("Hi {{ FIRST_NAME }}", variables) == "Hi Dana"

    def test_unknown_placeholder_left_in_place(self):
        assert substitute_variables("{{coupon}}", TemplateVariables()) == "{{coupon}}"

    def test_first_name_defaults_to_there(self):
        assert substitute_variables("Hi {{first_name}}", TemplateVariables()) == "Hi there"

    def test_empty_text(self):
        assert substitute_variables(None, TemplateVariables()) == ""

    def test_unrecognised_keys_rejected(self):
        with pytest.raises(ValidationError):
            TemplateVariables(favourite_colour="blue")

    def test_build_variables_from_lead(self):
        lead = make_lead(first_name=None, company="Acme")
        variables = build_variables(lead, "https://cal.example.com")
        assert variables.first_name == "there"
        assert variables.company == "Acme"
        assert variables.calendar_link == "https://cal.example.com"


class TestStripHtml:
    def test_links_become_label_and_url(self):
        text = strip_html('Go <a href="https://x.example" style="a">Book here</a> now')
        assert text == "Go Book here: https://x.example now"

    def test_tags_and_entities_removed(self):
        assert strip_html("<strong>Bold</strong> &amp; <br/>next") == "Bold & \nnext"


class TestResolveFixed:
    def test_email_uses_operational_template(self):
        resolved = resolve_content(_fixed_step(), "email", set())
        assert resolved.content_id == "meeting_confirmation"
        assert resolved.subject == OPERATIONAL_EMAILS["meeting_confirmation"]["subject"]

    def test_whatsapp_uses_whatsapp_template(self):
        resolved = resolve_content(_fixed_step(), "whatsapp", set())
        assert resolved.subject is None
        assert resolved.body == WHATSAPP_MESSAGES["meeting_confirmation"]

    def test_whatsapp_falls_back_to_stripped_email(self):
        resolved = resolve_content(_fixed_step("schedule_meeting_cta"), "whatsapp", set())
        assert "<a" not in resolved.body
        assert "{{calendar_link}}" in resolved.body

    def test_overrides_win(self):
        step = _fixed_step(email_subject="Custom", email_body="Body {{first_name}}",
                           whatsapp_message="WA {{first_name}}")
        assert resolve_content(step, "email", set()).subject == "Custom"
        assert resolve_content(step, "whatsapp", set()).body == "WA {{first_name}}"

    def test_unknown_template_is_not_found(self):
        with pytest.raises(NotFoundError):
            resolve_content(_fixed_step("does_not_exist"), "email", set())


class TestResolveRotating:
    def test_never_repeats_before_exhaustion(self):
        rng = random.Random(7)
        step = _rotating_step()
        seen: set[str] = set()
        for _ in range(len(VALUE_EMAILS)):
            resolved = resolve_content(step, "email", seen, rng)
            assert resolved.content_id not in seen
            seen.add(resolved.content_id)
        assert seen == {item["id"] for item in VALUE_EMAILS}

    def test_exhausted_pool_falls_back_to_full_pool(self):
        seen = {item["id"] for item in VALUE_EMAILS}
        resolved = resolve_content(_rotating_step(), "email", seen, random.Random(1))
        assert resolved.content_id in seen

    def test_only_unseen_candidate_is_picked(self):
        seen = {item["id"] for item in VALUE_EMAILS[1:]}
        for seed in range(5):
            resolved = resolve_content(_rotating_step(), "email", seen, random.Random(seed))
            assert resolved.content_id == VALUE_EMAILS[0]["id"]

    def test_unknown_pool_is_not_found(self):
        with pytest.raises(NotFoundError):
            resolve_content(_rotating_step("nope"), "email", set())


class TestSeenContent:
    async def test_collects_content_ids_for_lead(self, db):
        lead = make_lead()
        other = make_lead(email="other@example.com")
        db.add_all([lead, other])
        await db.flush()
        for lead_id, content_id in ((lead.id, "value_01"), (lead.id, "value_02"), (other.id, "value_03")):
            db.add(SentMessage(
                lead_id=lead_id, sequence_step_id=uuid.uuid4(), channel="email",
                content_id=content_id, sent_at=T0,
            ))
        await db.flush()

        assert await get_seen_content_ids(db, lead.id) == {"value_01", "value_02"}
