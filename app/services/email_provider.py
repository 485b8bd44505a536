"""Outbound mail transport selection.

Exactly one SMTP transport is built per process, chosen by ``EMAIL_PROVIDER``.
Missing credentials are not an error: the factory returns no transport and
the email service runs disabled.
"""

import asyncio
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable, List, Optional, Tuple

from app.config import Settings
from app.core.exceptions import EmailDeliveryError
from app.core.logging import logger
from app.models.email_delivery import EmailProvider

SENDGRID_HOST = "smtp.sendgrid.net"
SENDGRID_PORT = 587
DEFAULT_FROM_ADDRESS = {
    EmailProvider.SENDGRID: "noreply@stablecoin.com",
    EmailProvider.MAILGUN: "noreply@stablecoin.com",
}


class SMTPTransport:
    """Connection parameters for one provider plus blocking smtplib calls run off the event loop.

    The instance holds no connection between calls, so it can be shared by
    concurrent senders without locking.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        secure: bool = False,
        timeout: float = 10,
        smtp_factory: Optional[Callable] = None,
        smtp_ssl_factory: Optional[Callable] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.secure = secure
        self.timeout = timeout
        self.smtp_factory = smtp_factory or smtplib.SMTP
        self.smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    def _connect(self):
        context = ssl.create_default_context()
        if self.secure:
            # Port 465: implicit TLS
            smtp = self.smtp_ssl_factory(self.host, self.port, timeout=self.timeout, context=context)
        else:
            smtp = self.smtp_factory(self.host, self.port, timeout=self.timeout)
        try:
            if not self.secure:
                smtp.ehlo()
                smtp.starttls(context=context)
                smtp.ehlo()
            smtp.login(self.username, self.password)
        except Exception:
            smtp.close()
            raise
        return smtp

    def _run(self, operation: Callable):
        smtp = None
        try:
            smtp = self._connect()
            return operation(smtp)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(f"SMTP error talking to {self.host}:{self.port}: {e}") from e
        finally:
            if smtp is not None:
                try:
                    smtp.quit()
                except (smtplib.SMTPException, OSError) as e:
                    logger.debug("Error closing SMTP connection", host=self.host, error=str(e))

    async def verify(self) -> None:
        """Connect, negotiate TLS and authenticate; raises EmailDeliveryError on failure."""
        await asyncio.to_thread(self._run, lambda smtp: smtp.noop())

    async def send(self, sender: str, to: str, subject: str, html: str) -> str:
        message = EmailMessage()
        message["From"] = sender
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or None)
        message.set_content("This message requires an HTML-capable email client.")
        message.add_alternative(html, subtype="html")

        await asyncio.to_thread(self._run, lambda smtp: smtp.send_message(message))
        return message["Message-ID"]


def get_provider(settings: Settings) -> EmailProvider:
    value = (settings.EMAIL_PROVIDER or EmailProvider.SENDGRID.value).strip().lower()
    try:
        return EmailProvider(value)
    except ValueError:
        logger.warning("Unknown email provider, falling back to SendGrid", email_provider=value)
        return EmailProvider.SENDGRID


def missing_credentials(settings: Settings, provider: EmailProvider) -> List[str]:
    if provider == EmailProvider.MAILGUN:
        required = {"MAILGUN_USER": settings.MAILGUN_USER, "MAILGUN_PASSWORD": settings.MAILGUN_PASSWORD}
    else:
        required = {"SENDGRID_API_KEY": settings.SENDGRID_API_KEY}
    return [name for name, value in required.items() if not value]


def create_transport(settings: Settings) -> Tuple[Optional[SMTPTransport], EmailProvider]:
    provider = get_provider(settings)
    missing = missing_credentials(settings, provider)
    if missing:
        logger.warning("Email provider credentials not configured", email_provider=provider.value, missing=missing)
        return None, provider

    if provider == EmailProvider.MAILGUN:
        transport = SMTPTransport(
            host=settings.MAILGUN_HOST,
            port=settings.MAILGUN_PORT,
            username=settings.MAILGUN_USER,
            password=settings.MAILGUN_PASSWORD,
            secure=settings.MAILGUN_PORT == 465,
            timeout=settings.EMAIL_TIMEOUT_SECONDS,
        )
    else:
        transport = SMTPTransport(
            host=SENDGRID_HOST,
            port=SENDGRID_PORT,
            username=settings.SENDGRID_USER,
            password=settings.SENDGRID_API_KEY,
            secure=False,
            timeout=settings.EMAIL_TIMEOUT_SECONDS,
        )

    logger.info("Email transport created", email_provider=provider.value, host=transport.host, port=transport.port)
    return transport, provider


def resolve_from_address(settings: Settings, provider: Optional[EmailProvider]) -> str:
    if settings.EMAIL_FROM:
        return settings.EMAIL_FROM
    return DEFAULT_FROM_ADDRESS.get(provider, "noreply@stablecoin.com")


def log_diagnostics(settings: Settings, provider: EmailProvider) -> None:
    """Setup guidance for the configured provider, naming what is missing."""
    missing = missing_credentials(settings, provider)
    if provider == EmailProvider.MAILGUN:
        guidance = [
            "EMAIL_PROVIDER=mailgun",
            "MAILGUN_USER=your-mailgun-username",
            "MAILGUN_PASSWORD=your-mailgun-password",
            "MAILGUN_HOST=smtp.mailgun.org (default)",
            "MAILGUN_PORT=587 (default)",
        ]
    else:
        guidance = [
            "EMAIL_PROVIDER=sendgrid",
            "SENDGRID_API_KEY=your-sendgrid-api-key",
            "SENDGRID_USER=apikey (default)",
        ]
    logger.warning(
        "Email provider configuration status",
        email_provider=provider.value,
        missing=missing,
        setup=guidance,
    )
