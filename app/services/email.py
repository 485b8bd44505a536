from datetime import timedelta
from typing import Any, Callable, Dict, Optional
from jinja2 import TemplateError
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.future import select
from app.config import Settings, settings as default_settings
from app.core.logging import logger
from app.models.base import utcnow
from app.models.email_delivery import EmailDelivery, EmailProvider
from app.schemas.events import TransactionEmailData
from app.services.email_provider import (
    create_transport,
    get_provider,
    log_diagnostics,
    resolve_from_address,
)
from app.services.email_templates import (
    generate_transaction_confirmed_email,
    generate_transaction_pending_email,
    generate_transaction_rejected_email,
    get_transaction_email_subject,
    render_transaction_template,
)
from app.utils.retry import CircuitBreaker


class EmailService:
    """Templated email dispatch with a delivery record per logical send.

    ``initialize()`` runs once at startup and fixes whether sending is enabled.
    Every public send method degrades to ``False`` instead of raising.
    """

    def __init__(self, session_factory: Callable, settings: Settings = default_settings, transport_factory: Callable = create_transport):
        self.session_factory = session_factory
        self.settings = settings
        self.transport_factory = transport_factory
        self.transport = None
        self.provider: Optional[EmailProvider] = None
        self.enabled = False
        self.max_retries = settings.EMAIL_MAX_RETRIES
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.EMAIL_CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout=settings.EMAIL_CIRCUIT_RESET_SECONDS,
            service="SMTP",
        )

    async def initialize(self) -> None:
        provider = get_provider(self.settings)
        logger.info("Initializing email provider", email_provider=provider.value)

        transport, configured_provider = self.transport_factory(self.settings)
        self.provider = configured_provider
        if transport is None:
            logger.warning("Email transport could not be created. Email sending will be disabled.")
            log_diagnostics(self.settings, configured_provider)
            self.enabled = False
            return

        self.transport = transport
        try:
            await transport.verify()
        except Exception as e:
            logger.error("Email provider connection verification failed", email_provider=configured_provider.value, error=str(e))
            logger.warning("Email sending will be disabled until the email provider is properly configured.")
            self.enabled = False
            return

        self.enabled = True
        logger.info("Email provider connection verified", email_provider=configured_provider.value)

    def is_ready(self) -> bool:
        return self.enabled and self.transport is not None

    async def _save_record(self, user_id: str, template_name: str, template_variables: Dict[str, Any], recipient: str, subject: str) -> str:
        async with self.session_factory() as db:
            record = EmailDelivery(
                user_id=user_id,
                template_name=template_name,
                template_variables=template_variables,
                email_provider=(self.provider or EmailProvider.SENDGRID).value,
                recipient=recipient,
                subject=subject,
                is_sent=False,
                retry=0,
            )
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return record.id

    async def _update_record(self, record_id: str, is_sent: bool, retry: int) -> None:
        try:
            async with self.session_factory() as db:
                record = await db.get(EmailDelivery, record_id)
                if record is None:
                    return
                record.is_sent = is_sent
                record.retry = retry
                record.updated_at = utcnow()
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Error updating email record", email_id=record_id, error=str(e))

    async def _deliver(self, to: str, subject: str, html: str) -> str:
        sender = resolve_from_address(self.settings, self.provider)
        return await self.circuit_breaker(self.transport.send)(sender, to, subject, html)

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        user_id: Optional[str] = None,
        template_name: Optional[str] = None,
        template_variables: Optional[Dict[str, Any]] = None,
    ) -> bool:
        record_id = None
        if user_id and template_name:
            try:
                record_id = await self._save_record(user_id, template_name, template_variables or {}, to, subject)
            except SQLAlchemyError as e:
                logger.warning("Failed to save email record, continuing with send attempt", user_id=user_id, error=str(e))

        if not self.is_ready():
            logger.warning("Email sending is disabled. Skipping email", to=to)
            if record_id:
                await self._update_record(record_id, False, 0)
            return False

        retry_count = 0
        try:
            message_id = await self._deliver(to, subject, html)
        except Exception as e:
            logger.error("Error sending email", to=to, error=str(e), error_type=type(e).__name__)
            if record_id:
                await self._update_record(record_id, False, min(retry_count + 1, self.max_retries))
            return False

        logger.info("Email sent successfully", to=to, message_id=message_id)
        if record_id:
            await self._update_record(record_id, True, retry_count)
        return True

    async def _send_transaction_email(self, status: str, template_name: str, generator: Callable, data: TransactionEmailData, user_email: str) -> bool:
        if not self.enabled:
            logger.warning("Email sending is disabled. Skipping transaction email", template_name=template_name, to=user_email)
            return False
        try:
            subject = get_transaction_email_subject(data.transaction_type, status)
            html = generator(data)
        except TemplateError as e:
            logger.error("Error rendering transaction email", template_name=template_name, error=str(e))
            return False
        return await self.send_email(
            user_email,
            subject,
            html,
            data.user_id,
            template_name,
            data.template_variables(),
        )

    async def send_transaction_pending_email(self, data: TransactionEmailData, user_email: str) -> bool:
        return await self._send_transaction_email("pending", "transaction-pending", generate_transaction_pending_email, data, user_email)

    async def send_transaction_confirmed_email(self, data: TransactionEmailData, user_email: str) -> bool:
        return await self._send_transaction_email("confirmed", "transaction-confirmed", generate_transaction_confirmed_email, data, user_email)

    async def send_transaction_rejected_email(self, data: TransactionEmailData, user_email: str) -> bool:
        return await self._send_transaction_email("rejected", "transaction-rejected", generate_transaction_rejected_email, data, user_email)

    async def retry_unsent_emails(self) -> int:
        """Resend delivery records that are unsent and below the retry cap. Never raises."""
        if not self.is_ready():
            logger.info("Email sending is disabled, skipping resend of unsent emails")
            return 0

        logger.info("Attempting to resend unsent emails...")
        resent = 0
        # records touched recently may still be in flight in send_email
        settled_before = utcnow() - timedelta(seconds=self.settings.EMAIL_RETRY_MIN_AGE_SECONDS)
        try:
            async with self.session_factory() as db:
                stmt = select(EmailDelivery).filter(
                    EmailDelivery.is_sent.is_(False),
                    EmailDelivery.retry < self.max_retries,
                    EmailDelivery.recipient.isnot(None),
                    EmailDelivery.updated_at <= settled_before,
                ).order_by(EmailDelivery.created_at).limit(self.settings.EMAIL_RETRY_BATCH_SIZE)
                result = await db.execute(stmt)
                records = result.scalars().all()

                for record in records:
                    try:
                        rendered = render_transaction_template(record.template_name, record.template_variables or {})
                    except (ValidationError, TemplateError) as e:
                        logger.critical("Stored email can not be rendered, giving up", email_id=record.id, template_name=record.template_name, error=str(e))
                        record.retry = self.max_retries
                        record.updated_at = utcnow()
                        await db.commit()
                        continue
                    if rendered is None:
                        logger.warning("Template is not resendable, giving up", email_id=record.id, template_name=record.template_name)
                        record.retry = self.max_retries
                        record.updated_at = utcnow()
                        await db.commit()
                        continue

                    try:
                        await self._deliver(record.recipient, rendered["subject"], rendered["html"])
                    except Exception as e:
                        record.retry = min(record.retry + 1, self.max_retries)
                        logger.error("Failed to resend email", email_id=record.id, retry=record.retry, error=str(e))
                        if record.retry >= self.max_retries:
                            logger.critical("Email permanently failed after max retries", email_id=record.id, user_id=record.user_id, template_name=record.template_name)
                    else:
                        record.is_sent = True
                        resent += 1
                        logger.info("Email successfully resent", email_id=record.id, retry=record.retry)
                    record.updated_at = utcnow()
                    await db.commit()
        except SQLAlchemyError as e:
            logger.error("Error while resending unsent emails", error=str(e))

        logger.info("Finished attempting to resend unsent emails.", resent=resent)
        return resent
