from sqlalchemy import Column, String, Text, TIMESTAMP, Index
from app.models.base import Base, JSONType, utcnow
import enum
import uuid


class NotificationType(str, enum.Enum):
    TRANSACTION = "transaction"
    SYSTEM = "system"
    SECURITY = "security"
    ACCOUNT = "account"
    WALLET = "wallet"
    OTHER = "other"


class NotificationStatus(str, enum.Enum):
    UNREAD = "unread"
    READ = "read"
    ARCHIVED = "archived"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_status_created", "user_id", "status", "created_at"),
        Index("ix_notifications_user_type_created", "user_id", "type", "created_at"),
        Index("ix_notifications_user_priority_created", "user_id", "priority", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default=NotificationType.OTHER.value)
    status = Column(String(20), nullable=False, default=NotificationStatus.UNREAD.value)
    priority = Column(String(20), nullable=False, default=NotificationPriority.MEDIUM.value)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    read_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Notification(id='{self.id}', user_id='{self.user_id}', type='{self.type}', status='{self.status}')>"
