"""
WhatsApp client - plain text messages through the Gupshup gateway.
"""

import json
import logging
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import get_settings

logger = logging.getLogger(__name__)


class WhatsAppNotConfiguredError(RuntimeError):
    """Raised when a message is sent without gateway credentials."""


def normalize_phone(phone: str) -> str:
    """Gateway destination format: digits only, no leading '+'."""
    return "".join(ch for ch in phone if ch.isdigit())


class WhatsAppClient:
    """
    Client for the WhatsApp messaging gateway.

    Sends are retried on transport and HTTP status errors; the caller
    decides what a final failure means.
    """

    def __init__(self):
        settings = get_settings()
        self.api_url = settings.WHATSAPP_API_URL
        self.api_key = settings.WHATSAPP_API_TOKEN
        self.app_name = settings.WHATSAPP_APP_NAME
        self.source = settings.WHATSAPP_SOURCE

        self.headers = {
            "apikey": self.api_key,
            "Content-Type": "application/x-www-form-urlencoded",
        }

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.app_name)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def send_text(self, phone: str, message: str) -> dict[str, Any]:
        """
        Send a text message.

        Args:
            phone: E.164 phone number (leading '+' optional)
            message: Message body

        Raises:
            WhatsAppNotConfiguredError: Gateway credentials missing
            ValueError: Phone number has no digits
            httpx.HTTPError: After retries are exhausted
        """
        if not self.configured:
            raise WhatsAppNotConfiguredError("WhatsApp gateway is not configured")

        destination = normalize_phone(phone or "")
        if not destination:
            raise ValueError(f"Invalid phone number: {phone!r}")

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.api_url,
                data={
                    "channel": "whatsapp",
                    "source": self.source,
                    "destination": destination,
                    "src.name": self.app_name,
                    "message": json.dumps({"type": "text", "text": message}, ensure_ascii=False),
                },
                headers=self.headers,
                timeout=10.0,
            )
            response.raise_for_status()

        logger.info(f"WhatsApp message sent to {destination}")
        return response.json() if response.content else {}


_whatsapp_client: Optional[WhatsAppClient] = None


def get_whatsapp_client() -> WhatsAppClient:
    global _whatsapp_client
    if _whatsapp_client is None:
        _whatsapp_client = WhatsAppClient()
    return _whatsapp_client
