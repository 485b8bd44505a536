from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from app.config import settings
from app.core.logging import configure_logging, logger
from app.consumers.rabbitmq import QueueConsumer, connect_rabbitmq
from app.database import AsyncSessionLocal, engine
from app.models.base import Base
from app.models import email_delivery, notification  # noqa: F401  register tables on Base.metadata
from app.routers import notifications
from app.services.email import EmailService
from app.services.socket_publisher import SocketEventPublisher

# Configure logging
configure_logging()


def log_configuration_status() -> None:
    """Which integrations are configured; never logs the values themselves."""
    logger.info(
        "Configuration status",
        email_provider=settings.EMAIL_PROVIDER or "sendgrid (default)",
        sendgrid_api_key="set" if settings.SENDGRID_API_KEY else "not set",
        mailgun_user="set" if settings.MAILGUN_USER else "not set",
        mailgun_password="set" if settings.MAILGUN_PASSWORD else "not set",
        rabbitmq_url="set" if settings.RABBITMQ_URL else "not set",
    )


async def start_messaging(app: FastAPI) -> None:
    if not settings.RABBITMQ_URL:
        logger.warning("RABBITMQ_URL not configured. Queue consumption and socket events are disabled.")
        return
    connection = None
    try:
        connection = await connect_rabbitmq(settings)
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=settings.RABBITMQ_PREFETCH_COUNT)
        await app.state.consumer.start(channel)
    except Exception as e:
        logger.error("Failed to connect to RabbitMQ, continuing without messaging", error=str(e))
        app.state.socket_publisher.attach(None)
        if connection is not None:
            try:
                await connection.close()
            except Exception as close_error:
                logger.warning("Error closing RabbitMQ connection", error=str(close_error))
        return
    # the publisher only goes live once consumption has started
    app.state.socket_publisher.attach(channel)
    app.state.rabbitmq_connection = connection


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Notification service starting up...")
    log_configuration_status()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured.")

    email_service = EmailService(AsyncSessionLocal, settings)
    await email_service.initialize()
    app.state.email_service = email_service
    app.state.consumer = QueueConsumer(email_service, app.state.socket_publisher, AsyncSessionLocal)
    await start_messaging(app)

    scheduler = AsyncIOScheduler()
    if settings.EMAIL_RETRY_INTERVAL_MINUTES > 0:
        scheduler.add_job(
            email_service.retry_unsent_emails,
            IntervalTrigger(minutes=settings.EMAIL_RETRY_INTERVAL_MINUTES),
            id="retry_unsent_emails_job",
            name="Retry Unsent Emails",
            misfire_grace_time=60  # seconds
        )
        scheduler.start()
        logger.info("Scheduler started.", interval_minutes=settings.EMAIL_RETRY_INTERVAL_MINUTES)
    app.state.scheduler = scheduler

    yield

    logger.info("Notification service shutting down...")
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down.")

    if app.state.rabbitmq_connection is not None:
        await app.state.rabbitmq_connection.close()
        app.state.rabbitmq_connection = None
        logger.info("RabbitMQ connection closed.")
    app.state.socket_publisher.attach(None)

    await engine.dispose()


app = FastAPI(lifespan=lifespan, title="Notification Service", version="1.0.0")
app.state.socket_publisher = SocketEventPublisher()
app.state.email_service = None
app.state.rabbitmq_connection = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(notifications.router)


@app.get("/health")
async def health_check():
    email_service = app.state.email_service
    return {
        "status": "ok",
        "email": {
            "ready": bool(email_service and email_service.is_ready()),
            "provider": email_service.provider.value if email_service and email_service.provider else None,
        },
        "rabbitmq": {"connected": app.state.socket_publisher.is_available()},
    }
