from sqlalchemy import Column, String, Integer, Boolean, TIMESTAMP, Index
from app.models.base import Base, JSONType, utcnow
import enum
import uuid


class EmailProvider(str, enum.Enum):
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"


class EmailDelivery(Base):
    """One row per logical "send this templated email to this user" request."""

    __tablename__ = "emails"
    __table_args__ = (
        Index("ix_emails_user_created", "user_id", "created_at"),
        Index("ix_emails_sent_created", "is_sent", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    template_name = Column(String(100), nullable=False, index=True)
    template_variables = Column(JSONType, nullable=False, default=dict)
    email_provider = Column(String(20), nullable=False, default=EmailProvider.SENDGRID.value)
    recipient = Column(String(320), nullable=True)
    subject = Column(String(255), nullable=True)
    is_sent = Column(Boolean, nullable=False, default=False)
    retry = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<EmailDelivery(id='{self.id}', user_id='{self.user_id}', template='{self.template_name}', is_sent={self.is_sent}, retry={self.retry})>"
