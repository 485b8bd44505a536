"""RabbitMQ consumers for the three inbound queues.

Messages are acknowledged manually once the handler chain has finished.
Nothing is ever requeued: a message that fails is rejected (dead-lettered
if the broker is configured for it) so a transient error can not turn into
duplicate emails or duplicate notifications on redelivery.
"""

import json
from functools import partial
from typing import Any, Awaitable, Callable, Dict

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractRobustConnection
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings
from app.core.exceptions import MalformedMessageError
from app.core.logging import logger
from app.schemas.events import CustomNotificationEvent, EmailRequest, TransactionEvent
from app.services.email import EmailService
from app.services.email_templates import render_fallback_email
from app.services.notification import NotificationService
from app.services.socket_publisher import SOCKET_NOTIFICATION_QUEUE, SocketEventPublisher
from app.utils.retry import async_retry

EMAIL_QUEUE = "email-notifications"
TRANSACTION_QUEUE = "transaction-events"
NOTIFICATION_QUEUE = "notification-events"

ACKED = "acked"
REJECTED = "rejected"

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


async def connect_rabbitmq(settings: Settings) -> AbstractRobustConnection:
    @async_retry(
        tries=settings.RABBITMQ_CONNECT_TRIES,
        delay=settings.RABBITMQ_CONNECT_DELAY,
        backoff=2,
        exceptions=(aio_pika.exceptions.AMQPConnectionError, ConnectionError, OSError),
        service="RabbitMQ",
    )
    async def _connect():
        return await aio_pika.connect_robust(settings.RABBITMQ_URL)

    connection = await _connect()
    logger.info("Connected to RabbitMQ")
    return connection


class QueueConsumer:
    def __init__(self, email_service: EmailService, publisher: SocketEventPublisher, session_factory: Callable):
        self.email_service = email_service
        self.publisher = publisher
        self.session_factory = session_factory

    def routes(self) -> Dict[str, Handler]:
        return {
            EMAIL_QUEUE: self.handle_generic_email,
            TRANSACTION_QUEUE: self.handle_transaction_event,
            NOTIFICATION_QUEUE: self.handle_notification_event,
        }

    async def start(self, channel: AbstractChannel) -> None:
        await channel.declare_queue(SOCKET_NOTIFICATION_QUEUE, durable=True)
        for queue_name, handler in self.routes().items():
            queue = await channel.declare_queue(queue_name, durable=True)
            await queue.consume(partial(self.process_message, queue_name, handler), no_ack=False)
        logger.info("RabbitMQ consumers started", queues=list(self.routes()))

    async def process_message(self, queue_name: str, handler: Handler, message: AbstractIncomingMessage) -> str:
        with structlog.contextvars.bound_contextvars(queue=queue_name, message_id=message.message_id):
            try:
                payload = json.loads(message.body)
            except (ValueError, UnicodeDecodeError) as e:
                logger.error("Message body is not valid JSON, rejecting", error=str(e))
                await message.reject(requeue=False)
                return REJECTED
            if not isinstance(payload, dict):
                logger.error("Message body is not a JSON object, rejecting", body_type=type(payload).__name__)
                await message.reject(requeue=False)
                return REJECTED

            try:
                await handler(payload)
            except (MalformedMessageError, ValidationError) as e:
                logger.warning("Malformed message dropped", error=str(e))
                await message.ack()
                return ACKED
            except Exception:
                logger.exception("Error processing message, rejecting without requeue")
                await message.reject(requeue=False)
                return REJECTED

            await message.ack()
            return ACKED

    async def handle_generic_email(self, payload: Dict[str, Any]) -> None:
        request = EmailRequest.model_validate(payload)
        html = request.html
        if not html and request.template:
            html = render_fallback_email(request.template, request.data)
        if not html:
            html = "<p>No content provided</p>"

        if await self.email_service.send_email(request.to, request.subject, html):
            logger.info("Email sent", to=request.to, subject=request.subject)

    async def handle_transaction_event(self, payload: Dict[str, Any]) -> None:
        event = TransactionEvent.model_validate(payload)
        if not event.user_email:
            raise MalformedMessageError(f"transaction event {event.transaction_id} has no userEmail")

        status = event.status.lower()
        email_sent = False
        if status == "pending":
            email_sent = await self.email_service.send_transaction_pending_email(event, event.user_email)
        elif status in ("confirmed", "approved"):
            email_sent = await self.email_service.send_transaction_confirmed_email(event, event.user_email)
        elif status in ("rejected", "failed"):
            email_sent = await self.email_service.send_transaction_rejected_email(event, event.user_email)
        else:
            logger.warning("Unknown transaction status, no email sent", status=event.status, transaction_id=event.transaction_id)

        if email_sent:
            logger.info("Transaction email sent", status=status, transaction_id=event.transaction_id, to=event.user_email)

        # independent of the email outcome; store errors propagate and reject the message
        async with self.session_factory() as db:
            await NotificationService(db, self.publisher).create_transaction_notification(
                user_id=event.user_id,
                transaction_id=event.transaction_id,
                transaction_type=event.transaction_type,
                transaction_status=event.status,
                amount=event.amount,
                currency=event.currency,
                tx_hash=event.tx_hash,
                reason=event.reason,
            )
        logger.info("In-app notification created for transaction", transaction_id=event.transaction_id, user_id=event.user_id)

    async def handle_notification_event(self, payload: Dict[str, Any]) -> None:
        try:
            event = CustomNotificationEvent.model_validate(payload)
            async with self.session_factory() as db:
                await NotificationService(db, self.publisher).create_notification(
                    user_id=event.user_id,
                    title=event.title,
                    message=event.message,
                    type=event.type,
                    priority=event.priority,
                    metadata=event.metadata,
                )
        except ValidationError as e:
            logger.warning("Invalid custom notification event", error=str(e))
            return
        except SQLAlchemyError as e:
            logger.error("Error creating custom notification", error=str(e))
            return
        logger.info("Custom notification created", user_id=event.user_id)
