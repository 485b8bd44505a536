from typing import Any, Dict, List, Optional
from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from app.core.logging import logger
from app.models.base import utcnow
from app.models.notification import (
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from app.schemas.notification import NotificationSocketEvent, SocketEventType, serialize_notification
from app.services.socket_publisher import SocketEventPublisher


def _value(member, default) -> str:
    if member is None:
        return default.value
    return member.value if hasattr(member, "value") else str(member)


class NotificationService:
    """In-app notification state machine, scoped to one user per call.

    Each successful mutation is followed by a best-effort socket event; a
    failed publish never undoes or fails the mutation. Archiving publishes
    nothing.
    """

    def __init__(self, db: AsyncSession, publisher: SocketEventPublisher):
        self.db = db
        self.publisher = publisher

    async def _publish(self, user_id: str, notification: Optional[Dict[str, Any]], event_type: SocketEventType) -> None:
        try:
            unread_count = await self.get_unread_count(user_id)
            await self.publisher.publish(
                NotificationSocketEvent(
                    user_id=user_id,
                    notification=notification,
                    unread_count=unread_count,
                    event_type=event_type,
                )
            )
        except Exception as e:
            logger.warning("Failed to publish notification event to RabbitMQ", user_id=user_id, event_type=event_type.value, error=str(e))

    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        type: Optional[NotificationType] = None,
        priority: Optional[NotificationPriority] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        now = utcnow()
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=_value(type, NotificationType.OTHER),
            priority=_value(priority, NotificationPriority.MEDIUM),
            metadata_=metadata or {},
            status=NotificationStatus.UNREAD.value,
            read_at=None,
            created_at=now,
            updated_at=now,
        )
        self.db.add(notification)
        await self.db.commit()
        await self.db.refresh(notification)
        logger.info("Notification created", notification_id=notification.id, user_id=user_id, type=notification.type)

        await self._publish(user_id, serialize_notification(notification), SocketEventType.NOTIFICATION_CREATED)
        return notification

    async def _count_unread(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(Notification).filter(
            Notification.user_id == user_id,
            Notification.status == NotificationStatus.UNREAD.value,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def get_notifications(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        type: Optional[NotificationType] = None,
        priority: Optional[NotificationPriority] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        filters = [Notification.user_id == user_id]
        if status:
            filters.append(Notification.status == _value(status, NotificationStatus.UNREAD))
        if type:
            filters.append(Notification.type == _value(type, NotificationType.OTHER))
        if priority:
            filters.append(Notification.priority == _value(priority, NotificationPriority.MEDIUM))

        query = (
            select(Notification)
            .filter(*filters)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        items: List[Notification] = list(result.scalars().all())

        total_result = await self.db.execute(select(func.count()).select_from(Notification).filter(*filters))
        total = total_result.scalar_one()

        # bell-icon count: global for the user, independent of the filters above
        unread_count = await self._count_unread(user_id)
        return {"items": items, "total": total, "unread_count": unread_count}

    async def get_notification_by_id(self, notification_id: str, user_id: str) -> Optional[Notification]:
        result = await self.db.execute(
            select(Notification).filter(Notification.id == notification_id, Notification.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_read(self, notification_id: str, user_id: str) -> Optional[Notification]:
        notification = await self.get_notification_by_id(notification_id, user_id)
        if notification is None:
            return None

        now = utcnow()
        notification.status = NotificationStatus.READ.value
        notification.read_at = now
        notification.updated_at = now
        await self.db.commit()
        await self.db.refresh(notification)
        logger.info("Notification marked as read", notification_id=notification_id, user_id=user_id)

        await self._publish(user_id, serialize_notification(notification), SocketEventType.NOTIFICATION_UPDATED)
        return notification

    async def mark_all_as_read(self, user_id: str) -> int:
        now = utcnow()
        stmt = (
            update(Notification)
            .where(Notification.user_id == user_id, Notification.status == NotificationStatus.UNREAD.value)
            .values(status=NotificationStatus.READ.value, read_at=now, updated_at=now)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        modified = result.rowcount or 0
        logger.info("Marked notifications as read", user_id=user_id, count=modified)

        if modified > 0:
            await self._publish(user_id, None, SocketEventType.NOTIFICATION_UPDATED)
        return modified

    async def archive_notification(self, notification_id: str, user_id: str) -> Optional[Notification]:
        notification = await self.get_notification_by_id(notification_id, user_id)
        if notification is None:
            return None

        notification.status = NotificationStatus.ARCHIVED.value
        notification.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(notification)
        logger.info("Notification archived", notification_id=notification_id, user_id=user_id)
        return notification

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            delete(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
        )
        await self.db.commit()
        if not result.rowcount:
            return False
        logger.info("Notification deleted", notification_id=notification_id, user_id=user_id)

        now = utcnow().isoformat()
        snapshot = {
            "_id": notification_id,
            "userId": user_id,
            "title": "",
            "message": "",
            "type": NotificationType.OTHER.value,
            "status": NotificationStatus.UNREAD.value,
            "priority": NotificationPriority.MEDIUM.value,
            "metadata": {},
            "readAt": None,
            "createdAt": now,
            "updatedAt": now,
        }
        await self._publish(user_id, snapshot, SocketEventType.NOTIFICATION_DELETED)
        return True

    async def get_unread_count(self, user_id: str) -> int:
        try:
            return await self._count_unread(user_id)
        except SQLAlchemyError as e:
            logger.error("Error getting unread count", user_id=user_id, error=str(e))
            return 0

    async def create_transaction_notification(
        self,
        user_id: str,
        transaction_id: str,
        transaction_type: str,
        transaction_status: str,
        amount: Optional[str] = None,
        currency: Optional[str] = None,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Notification:
        status = transaction_status.lower()
        if status == "pending":
            title = f"Transaction {transaction_type} Pending"
            message = f"Your {transaction_type} transaction is pending confirmation."
            priority = NotificationPriority.MEDIUM
        elif status in ("confirmed", "completed"):
            title = f"Transaction {transaction_type} Confirmed"
            message = f"Your {transaction_type} transaction has been confirmed successfully."
            priority = NotificationPriority.LOW
        elif status in ("rejected", "failed"):
            title = f"Transaction {transaction_type} Rejected"
            message = reason or f"Your {transaction_type} transaction has been rejected."
            priority = NotificationPriority.HIGH
        else:
            title = f"Transaction {transaction_type} Update"
            message = f"Your {transaction_type} transaction status has been updated."
            priority = NotificationPriority.MEDIUM

        if amount and currency:
            message += f" Amount: {amount} {currency}"

        return await self.create_notification(
            user_id=user_id,
            title=title,
            message=message,
            type=NotificationType.TRANSACTION,
            priority=priority,
            metadata={
                "transactionId": transaction_id,
                "transactionType": transaction_type,
                "transactionStatus": transaction_status,
                "amount": amount,
                "currency": currency,
                "txHash": tx_hash,
                "reason": reason,
                "actionUrl": f"/transactions/{transaction_id}",
            },
        )
