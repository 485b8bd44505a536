"""Payloads carried on the inbound queues."""

from datetime import datetime, timezone
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Dict, Optional
from app.models.notification import NotificationType, NotificationPriority


class EmailRequest(BaseModel):
    """`email-notifications` queue."""

    to: str = Field(min_length=1)
    subject: str
    html: Optional[str] = None
    template: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or {}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TransactionEmailData(BaseModel):
    """Normalised transaction event; also stored as the template variables of a delivery record."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(
        "N/A",
        validation_alias=AliasChoices("transactionId", "id", "transaction_id"),
        serialization_alias="transactionId",
    )
    user_id: str = Field(
        validation_alias=AliasChoices("userId", "user_id"),
        serialization_alias="userId",
        min_length=1,
    )
    amount: str = "0"
    currency: str = "USD"
    transaction_type: str = Field(
        "deposit",
        validation_alias=AliasChoices("transactionType", "type", "transaction_type"),
        serialization_alias="transactionType",
    )
    status: str = "pending"
    tx_hash: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("txHash", "transactionHash", "tx_hash"),
        serialization_alias="txHash",
    )
    reason: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("reason", "rejectionReason"),
    )
    timestamp: str = Field(
        default_factory=_now_iso,
        validation_alias=AliasChoices("timestamp", "createdAt"),
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_blank_fields(cls, data):
        # publishers send null or "" for absent fields; let the defaults apply
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None and value != ""}
        return data

    @field_validator("transaction_id", "user_id", "amount", mode="before")
    @classmethod
    def _stringify(cls, value):
        return str(value) if isinstance(value, (int, float)) else value

    def template_variables(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class TransactionEvent(TransactionEmailData):
    """`transaction-events` queue; the publisher must include the recipient address."""

    user_email: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("userEmail", "email"),
        exclude=True,
    )


class CustomNotificationEvent(BaseModel):
    """`notification-events` queue."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    type: Optional[NotificationType] = None
    priority: Optional[NotificationPriority] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or {}
