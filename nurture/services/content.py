"""
Content resolver - turns a step + channel into concrete subject/body text.

Fixed steps resolve their template_key (administrative overrides on the step win).
Rotating steps pick uniformly at random from their content pool, excluding content
this lead has already received; once the pool is exhausted the full pool is used again.
"""
import html
import logging
import random
import re
import uuid
from dataclasses import dataclass
from typing import Optional
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.exceptions import NotFoundError
from nurture.models.lead import Lead
from nurture.models.sent_message import SentMessage
from nurture.models.sequence import SequenceStep
from nurture.utils.templates import CONTENT_POOLS, OPERATIONAL_EMAILS, WHATSAPP_MESSAGES

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class TemplateVariables(BaseModel):
    """The complete set of substitutable placeholders."""
    model_config = ConfigDict(extra="forbid")

    first_name: str = "there"
    last_name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    calendar_link: str = ""


@dataclass
class ResolvedContent:
    content_id: str
    subject: Optional[str]
    body: str


def build_variables(lead: Lead, calendar_link: str) -> TemplateVariables:
    return TemplateVariables(
        first_name=lead.first_name or "there",
        last_name=lead.last_name or "",
        email=lead.email or "",
        phone=lead.phone or "",
        company=lead.company or "",
        calendar_link=calendar_link,
    )


def substitute_variables(text: Optional[str], variables: TemplateVariables) -> str:
    """
    Replace {{name}} placeholders (case-insensitive).
    Unknown placeholders are left in place so a typo is visible rather than silently blanked.
    """
    if not text:
        return ""
    values = variables.model_dump()

    def _replace(match: re.Match) -> str:
        key = match.group(1).lower()
        if key in values:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, text)


def strip_html(text: str) -> str:
    """Plain-text rendition of an HTML-ish template body."""
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r'<a\s[^>]*href="([^"]+)"[^>]*>(.*?)</a>', r"\2: \1", text,
                  flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


async def get_seen_content_ids(db: AsyncSession, lead_id: uuid.UUID) -> set[str]:
    """Content ids already delivered to this lead on any channel."""
    result = await db.execute(
        select(SentMessage.content_id).where(
            SentMessage.lead_id == lead_id,
            SentMessage.content_id.isnot(None),
        )
    )
    return set(result.scalars().all())


def resolve_content(
    step: SequenceStep,
    channel: str,
    seen_content_ids: set[str],
    rng: Optional[random.Random] = None,
) -> ResolvedContent:
    """Resolve unsubstituted content for one channel of a step."""
    if step.is_rotating:
        return _resolve_rotating(step, channel, seen_content_ids, rng or random.Random())
    return _resolve_fixed(step, channel)


def _resolve_fixed(step: SequenceStep, channel: str) -> ResolvedContent:
    key = step.template_key
    email = OPERATIONAL_EMAILS.get(key)

    if channel == "whatsapp":
        if step.whatsapp_message:
            return ResolvedContent(content_id=key, subject=None, body=step.whatsapp_message)
        if key in WHATSAPP_MESSAGES:
            return ResolvedContent(content_id=key, subject=None, body=WHATSAPP_MESSAGES[key])
        if email:
            return ResolvedContent(content_id=key, subject=None, body=strip_html(email["body"]))
        raise NotFoundError(f"No WhatsApp content for template {key}")

    subject = step.email_subject or (email or {}).get("subject")
    body = step.email_body or (email or {}).get("body")
    if not subject or not body:
        raise NotFoundError(f"No email content for template {key}")
    return ResolvedContent(content_id=key, subject=subject, body=body)


def _resolve_rotating(
    step: SequenceStep,
    channel: str,
    seen_content_ids: set[str],
    rng: random.Random,
) -> ResolvedContent:
    pool = CONTENT_POOLS.get(step.content_pool)
    if not pool:
        raise NotFoundError(f"Unknown content pool: {step.content_pool}")

    candidates = [item for item in pool if item["id"] not in seen_content_ids]
    if not candidates:
        logger.info("Content pool %s exhausted, reusing full pool", step.content_pool)
        candidates = pool

    item = rng.choice(candidates)
    if channel == "whatsapp":
        return ResolvedContent(content_id=item["id"], subject=None, body=strip_html(item["body"]))
    return ResolvedContent(content_id=item["id"], subject=item["subject"], body=item["body"])
