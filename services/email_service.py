"""
Verification Email Delivery.

Sends the "verify your email" message over SMTP with implicit TLS. `smtplib`
is blocking, so each send runs in a worker thread and never stalls the event
loop. When SMTP is not configured (local development, tests) the verification
link is logged instead of sent.
"""

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional
from urllib.parse import quote

from core.config import Settings
from core.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)

VERIFICATION_SUBJECT = "Verify Your Email Address"


class EmailService:
    """SMTP sender for account emails"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.sent_count = 0

    def verification_url(self, token: str) -> str:
        return f"{self.settings.app_url.rstrip('/')}/verify-email?token={quote(token)}"

    def build_verification_email(self, recipient: str, token: str) -> EmailMessage:
        url = self.verification_url(token)
        ttl = self.settings.verification_token_ttl_minutes

        message = EmailMessage()
        message["Subject"] = VERIFICATION_SUBJECT
        message["From"] = self.settings.email_sender
        message["To"] = recipient
        message.set_content(
            f"Open this link to verify your email:\n{url}\n\n"
            f"This link expires in {ttl} minutes."
        )
        message.add_alternative(
            f"<p>Click below to verify your email:</p>"
            f'<a href="{url}">Verify Email</a>'
            f"<p>This link expires in {ttl} minutes.</p>",
            subtype="html",
        )
        return message

    async def send_verification_email(self, recipient: str, token: str) -> bool:
        """
        Returns:
            bool: True if an email was handed to the SMTP server
        """
        if not self.settings.smtp_configured:
            logger.info(
                f"SMTP not configured; verification link for {recipient}: "
                f"{self.verification_url(token)}"
            )
            return False

        message = self.build_verification_email(recipient, token)
        try:
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send verification email to {recipient}: {e}")
            raise ServiceUnavailableError("smtp", str(e))

        self.sent_count += 1
        logger.info(f"Verification email sent to {recipient}")
        return True

    def _send(self, message: EmailMessage, context: Optional[ssl.SSLContext] = None):
        context = context or ssl.create_default_context()
        with smtplib.SMTP_SSL(
            self.settings.smtp_host, self.settings.smtp_port, context=context, timeout=30
        ) as client:
            client.login(self.settings.smtp_user, self.settings.smtp_password)
            client.send_message(message)
