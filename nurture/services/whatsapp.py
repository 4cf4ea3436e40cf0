"""
WhatsApp channel adapter - Evolution API.

POST {api_url}/message/sendText/{instance} with an `apikey` header.
Two sender identities are configured: "initial" (the number that makes first
contact) and "followup" (every later message).
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from nurture.exceptions import ConfigurationError
from nurture.schemas.dispatch import SendResult
from nurture.utils.logging import mask_address

logger = logging.getLogger(__name__)

TIMEOUT = 10.0


@dataclass(frozen=True)
class SenderIdentity:
    instance: str
    api_key: str


def format_phone_number(phone: str, default_country_code: str = "1") -> str:
    """Digits only; a bare 10-digit number gets the default country code."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 10:
        digits = default_country_code + digits
    return digits


class EvolutionWhatsAppAdapter:
    """Sends WhatsApp text messages through an Evolution API server."""

    def __init__(
        self,
        api_url: str,
        identities: dict[str, SenderIdentity],
        default_country_code: str = "1",
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/") if api_url else ""
        self.identities = identities
        self.default_country_code = default_country_code
        self.timeout = timeout
        self._transport = transport

    def _identity(self, name: str) -> SenderIdentity:
        identity = self.identities.get(name)
        if not identity or not identity.instance or not identity.api_key:
            raise ConfigurationError(f"WhatsApp sender identity '{name}' not configured")
        return identity

    async def send(self, recipient: str, text: str, identity: str = "followup") -> SendResult:
        if not self.api_url:
            raise ConfigurationError("Evolution API URL not configured")
        sender = self._identity(identity)

        number = format_phone_number(recipient, self.default_country_code)
        if not number:
            return SendResult(success=False, error="Invalid phone number")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/message/sendText/{sender.instance}",
                    headers={"apikey": sender.api_key, "Content-Type": "application/json"},
                    json={"number": number, "text": text},
                )
        except httpx.HTTPError as e:
            logger.error(
                "WhatsApp send failed: to=%s error=%s", mask_address(number), str(e),
                extra={"provider": "evolution"},
            )
            return SendResult(success=False, error=str(e))

        try:
            data = response.json()
        except ValueError:
            data = {}

        message_id = (data.get("key") or {}).get("id") if isinstance(data, dict) else None
        if response.is_success and message_id:
            logger.info(
                "WhatsApp sent: to=%s instance=%s", mask_address(number), sender.instance,
                extra={"provider": "evolution"},
            )
            return SendResult(success=True, provider_id=message_id)

        error = (data.get("message") if isinstance(data, dict) else None) or f"HTTP {response.status_code}"
        logger.error(
            "WhatsApp rejected: to=%s error=%s", mask_address(number), error,
            extra={"provider": "evolution"},
        )
        return SendResult(success=False, error=str(error))
