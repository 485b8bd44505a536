import aio_pika
from app.core.logging import logger
from app.schemas.notification import NotificationSocketEvent

SOCKET_NOTIFICATION_QUEUE = "socket-notification-events"


class SocketEventPublisher:
    """Hand-off to the real-time delivery layer through a durable queue."""

    def __init__(self, channel=None, queue_name: str = SOCKET_NOTIFICATION_QUEUE):
        self.channel = channel
        self.queue_name = queue_name

    def attach(self, channel) -> None:
        self.channel = channel

    def is_available(self) -> bool:
        return self.channel is not None and not self.channel.is_closed

    async def publish(self, event: NotificationSocketEvent) -> bool:
        if not self.is_available():
            logger.warning("RabbitMQ channel not available. Cannot publish to socket service.", event_type=event.event_type.value, user_id=event.user_id)
            return False

        message = aio_pika.Message(
            body=event.model_dump_json(by_alias=True).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self.channel.default_exchange.publish(message, routing_key=self.queue_name)
        except Exception as e:
            logger.error("Error publishing to socket service", event_type=event.event_type.value, user_id=event.user_id, error=str(e))
            return False

        logger.debug("Published notification event to socket service queue", event_type=event.event_type.value, user_id=event.user_id)
        return True
