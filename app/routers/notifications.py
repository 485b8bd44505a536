from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from app.core.logging import logger
from app.dependencies.services import get_notification_service
from app.models.notification import NotificationPriority, NotificationStatus, NotificationType
from app.schemas.notification import NotificationCreate, serialize_notification
from app.services.notification import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def _user_id_required():
    return {"success": False, "message": "userId is required"}


def _not_found():
    return {"success": False, "message": "Notification not found"}


@router.get("")
async def get_notifications(
    user_id: Optional[str] = Query(None, alias="userId"),
    status_filter: Optional[NotificationStatus] = Query(None, alias="status"),
    type: Optional[NotificationType] = Query(None),
    priority: Optional[NotificationPriority] = Query(None),
    limit: Optional[int] = Query(None),
    offset: Optional[int] = Query(None),
    service: NotificationService = Depends(get_notification_service),
):
    """List a user's notifications, newest first."""
    if not user_id:
        return _user_id_required()

    limit = min(max(limit, 1), MAX_LIMIT) if limit is not None else DEFAULT_LIMIT
    offset = max(offset or 0, 0)
    result = await service.get_notifications(user_id, status_filter, type, priority, limit, offset)
    return {
        "success": True,
        "data": [serialize_notification(n) for n in result["items"]],
        "pagination": {"total": result["total"], "limit": limit, "offset": offset},
        "unreadCount": result["unread_count"],
    }


@router.get("/unread-count")
async def get_unread_count(
    user_id: Optional[str] = Query(None, alias="userId"),
    service: NotificationService = Depends(get_notification_service),
):
    if not user_id:
        return _user_id_required()
    return {"success": True, "unreadCount": await service.get_unread_count(user_id)}


@router.get("/{notification_id}")
async def get_notification(
    notification_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    service: NotificationService = Depends(get_notification_service),
):
    if not user_id:
        return _user_id_required()
    notification = await service.get_notification_by_id(notification_id, user_id)
    if notification is None:
        return _not_found()
    return {"success": True, "data": serialize_notification(notification)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    notification: NotificationCreate,
    service: NotificationService = Depends(get_notification_service),
):
    """Create an in-app notification; the socket event is published best-effort."""
    try:
        created = await service.create_notification(
            user_id=notification.user_id,
            title=notification.title,
            message=notification.message,
            type=notification.type,
            priority=notification.priority,
            metadata=notification.metadata,
        )
    except SQLAlchemyError as e:
        logger.error("Error creating notification", user_id=notification.user_id, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Failed to create notification"},
        )
    return {"success": True, "data": serialize_notification(created), "message": "Notification created successfully"}


@router.patch("/mark-all-read")
async def mark_all_as_read(
    user_id: Optional[str] = Query(None, alias="userId"),
    service: NotificationService = Depends(get_notification_service),
):
    if not user_id:
        return _user_id_required()
    count = await service.mark_all_as_read(user_id)
    return {"success": True, "count": count, "message": f"Marked {count} notifications as read"}


@router.patch("/{notification_id}/read")
async def mark_as_read(
    notification_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    service: NotificationService = Depends(get_notification_service),
):
    if not user_id:
        return _user_id_required()
    notification = await service.mark_as_read(notification_id, user_id)
    if notification is None:
        return _not_found()
    return {"success": True, "data": serialize_notification(notification), "message": "Notification marked as read"}


@router.patch("/{notification_id}/archive")
async def archive_notification(
    notification_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    service: NotificationService = Depends(get_notification_service),
):
    if not user_id:
        return _user_id_required()
    notification = await service.archive_notification(notification_id, user_id)
    if notification is None:
        return _not_found()
    return {"success": True, "data": serialize_notification(notification), "message": "Notification archived"}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    service: NotificationService = Depends(get_notification_service),
):
    if not user_id:
        return _user_id_required()
    if not await service.delete_notification(notification_id, user_id):
        return _not_found()
    return {"success": True, "message": "Notification deleted successfully"}
