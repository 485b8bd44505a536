from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.services.notification import NotificationService
from app.services.socket_publisher import SocketEventPublisher


def get_publisher(request: Request) -> SocketEventPublisher:
    return request.app.state.socket_publisher


async def get_notification_service(
    db: AsyncSession = Depends(get_db),
    publisher: SocketEventPublisher = Depends(get_publisher),
) -> NotificationService:
    return NotificationService(db, publisher)
