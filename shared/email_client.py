"""
Email client - transactional email through Resend.

The Resend SDK is synchronous, so sends run in the default executor to keep
the event loop free.
"""

import asyncio
import logging
import re
from typing import Any, Optional

import resend

from shared.config import get_settings

logger = logging.getLogger(__name__)


class EmailNotConfiguredError(RuntimeError):
    """Raised when an email is sent without a Resend API key."""


def html_to_text(html_content: str) -> str:
    """Plain-text alternative for an HTML body."""
    text = re.sub(r"<br\s*/?>|</p>", "\n", html_content)
    text = re.sub(r"<[^>]+>", "", text)
    text = re.sub(r"[ \t]+", " ", text)
    return "\n".join(line.strip() for line in text.splitlines() if line.strip())


class EmailClient:
    """Thin async wrapper around ``resend.Emails.send``."""

    def __init__(self):
        settings = get_settings()
        self.api_key = settings.RESEND_API_KEY
        self.from_email = settings.EMAIL_FROM

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Send one email.

        Raises:
            EmailNotConfiguredError: No API key configured
            Exception: Whatever the Resend SDK raises
        """
        if not self.configured:
            raise EmailNotConfiguredError("RESEND_API_KEY is not configured")

        email_data = {
            "from": self.from_email,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
            "text": text_content or html_to_text(html_content),
        }

        def send():
            resend.api_key = self.api_key
            return resend.Emails.send(email_data)

        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, send)

        logger.info(f"Email sent to {to_email} - Subject: {subject}")
        return response


_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
