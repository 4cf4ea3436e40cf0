"""
Email channel adapter - SendGrid.
The SendGrid SDK is synchronous, so the send is offloaded to the default executor.
Bodies are authored as lightly formatted text; the adapter builds html + plain parts.
"""
import asyncio
import logging
from typing import Optional

from nurture.exceptions import ConfigurationError
from nurture.schemas.dispatch import SendResult
from nurture.services.content import strip_html
from nurture.utils.logging import mask_address

logger = logging.getLogger(__name__)

HTML_WRAPPER = (
    '<div style="font-family: -apple-system, BlinkMacSystemFont, \'Segoe UI\', Roboto, sans-serif; '
    'max-width: 600px; margin: 0 auto; padding: 24px; color: #333; font-size: 15px; line-height: 1.6;">'
    "{content}</div>"
)


def render_html(body: str) -> str:
    return HTML_WRAPPER.format(content=body.replace("\n", "<br>"))


class SendGridEmailAdapter:
    """Sends sequence email through SendGrid."""

    def __init__(self, api_key: str, from_email: str, from_name: Optional[str] = None):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        if not self.api_key:
            raise ConfigurationError("SendGrid API key not configured")

        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Content, Email, Mail, To

        message = Mail(
            from_email=Email(self.from_email, self.from_name),
            to_emails=To(to),
            subject=subject,
        )
        message.content = [
            Content("text/plain", strip_html(body)),
            Content("text/html", render_html(body)),
        ]

        try:
            sg = SendGridAPIClient(api_key=self.api_key)
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, lambda: sg.send(message))
        except Exception as e:
            logger.error(
                "SendGrid send failed: to=%s error=%s", mask_address(to), str(e),
                extra={"provider": "sendgrid"},
            )
            return SendResult(success=False, error=str(e))

        if response.status_code >= 300:
            error = f"SendGrid returned {response.status_code}"
            logger.error("%s for %s", error, mask_address(to), extra={"provider": "sendgrid"})
            return SendResult(success=False, error=error)

        message_id = response.headers.get("X-Message-Id") or None
        logger.info(
            "Email sent: to=%s subject=%s", mask_address(to), subject[:40],
            extra={"provider": "sendgrid"},
        )
        return SendResult(success=True, provider_id=message_id)
