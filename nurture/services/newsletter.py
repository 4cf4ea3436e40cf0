"""
Newsletter broadcast - one email to every active subscriber.

Subscribers are sent to one at a time through the same email adapter the
sequences use. Every attempt, sent or failed, is written to newsletter_sends
and committed before the next subscriber, so a broadcast that dies halfway
still shows exactly who got it.
"""
import logging
import uuid
from datetime import datetime
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.exceptions import ConfigurationError, TerminalDispatchFailure, TransientDispatchError
from nurture.models.newsletter import NewsletterSend, NewsletterSubscriber
from nurture.schemas.dispatch import NewsletterResult
from nurture.services.content import TemplateVariables, substitute_variables
from nurture.services.dispatch import EmailAdapter, send_with_timeout
from nurture.utils.logging import mask_address, short_id

logger = logging.getLogger(__name__)


async def get_active_subscribers(db: AsyncSession) -> list[NewsletterSubscriber]:
    result = await db.execute(
        select(NewsletterSubscriber)
        .where(NewsletterSubscriber.status == "active")
        .order_by(NewsletterSubscriber.subscribed_at)
    )
    return list(result.scalars().all())


async def send_newsletter(
    db: AsyncSession,
    email: EmailAdapter,
    subject: str,
    body: str,
    now: datetime,
    calendar_link: str = "",
    timeout_seconds: float = 15.0,
) -> NewsletterResult:
    """Send subject/body ({{first_name}} etc. substituted) to all active subscribers. Commits."""
    subscribers = await get_active_subscribers(db)
    broadcast_id = uuid.uuid4()
    sent = 0
    failed = 0

    for subscriber in subscribers:
        variables = TemplateVariables(
            first_name=subscriber.first_name or "there",
            last_name=subscriber.last_name or "",
            email=subscriber.email,
            calendar_link=calendar_link,
        )
        record = NewsletterSend(
            broadcast_id=broadcast_id,
            subscriber_id=subscriber.id,
            lead_id=subscriber.lead_id,
            email=subscriber.email,
            subject=substitute_variables(subject, variables),
            body=substitute_variables(body, variables),
            sent_at=now,
        )

        try:
            result = await send_with_timeout(
                email.send(subscriber.email, record.subject, record.body), timeout_seconds,
            )
        except (TransientDispatchError, TerminalDispatchFailure, ConfigurationError) as e:
            record.status = "failed"
            record.error_message = str(e)[:1000]
            failed += 1
            logger.warning(
                "Newsletter to %s failed: %s", mask_address(subscriber.email), str(e),
                extra={"lead_id": str(subscriber.lead_id), "channel": "email"},
            )
        else:
            record.status = "sent"
            record.provider_message_id = result.provider_id
            sent += 1

        db.add(record)
        await db.commit()

    logger.info(
        "Newsletter broadcast %s: %d sent, %d failed of %d subscribers",
        short_id(broadcast_id), sent, failed, len(subscribers),
    )
    return NewsletterResult(
        broadcast_id=str(broadcast_id), sent=sent, failed=failed, total=len(subscribers),
    )
