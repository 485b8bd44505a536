from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional
from app.models.notification import Notification, NotificationType, NotificationPriority


class NotificationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    type: Optional[NotificationType] = None
    priority: Optional[NotificationPriority] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SocketEventType(str, Enum):
    NOTIFICATION_CREATED = "NOTIFICATION_CREATED"
    NOTIFICATION_UPDATED = "NOTIFICATION_UPDATED"
    NOTIFICATION_DELETED = "NOTIFICATION_DELETED"


class NotificationSocketEvent(BaseModel):
    """Message placed on the socket-notification-events queue."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    # None signals a bulk change; clients refetch
    notification: Optional[Dict[str, Any]] = None
    unread_count: int = Field(alias="unreadCount")
    event_type: SocketEventType = Field(alias="eventType")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    """Wire representation shared by the REST responses and socket events."""
    return {
        "_id": notification.id,
        "userId": notification.user_id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.type,
        "status": notification.status,
        "priority": notification.priority,
        "metadata": notification.metadata_ or {},
        "readAt": _isoformat(notification.read_at),
        "createdAt": _isoformat(notification.created_at),
        "updatedAt": _isoformat(notification.updated_at),
    }
