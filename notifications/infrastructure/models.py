from datetime import UTC, datetime
from typing import Any, Dict, List

from sqlmodel import JSON, Column, Field, SQLModel

from ..domain.entities import NotificationSeverity, NotificationStatus


def _naive_utcnow() -> datetime:
    return datetime.now(tz=UTC).replace(tzinfo=None)


class Notification(SQLModel, table=True):
    """SQLModel table representation for the Notification entity.

    Timestamps are stored as naive UTC values.

    Attributes
    ----------
    id : str
        Primary key, UUID string
    tenant_id : str
        Owning tenant
    type : str
        Notification type, prefix-classified (`system_`, `security_`, ...)
    severity : str
        Severity level (stored as string)
    title : str
        Brief title of the notification
    message : str
        Detailed notification message
    notification_metadata : Dict[str, Any]
        Additional JSON data, including failure and escalation history
    channels : List[str]
        Ordered delivery channels
    status : str
        Lifecycle status (stored as string)
    scheduled_at : datetime
        When the notification becomes due
    expires_at, sent_at, delivered_at, failed_at, read_at : datetime | None
        Lifecycle timestamps
    related_entity_type, related_entity_id : str | None
        Reference to the originating business object
    user_id : str | None
        Recipient, nullable for broadcasts
    retry_count, max_retries : int
        Retry bookkeeping
    is_active : bool
        False once the notification has been deleted
    created_at, updated_at : datetime
        Audit timestamps
    """

    id: str = Field(primary_key=True)
    tenant_id: str = Field(nullable=False, index=True)
    type: str = Field(nullable=False, index=True)
    severity: str = Field(default=NotificationSeverity.MEDIUM.value, index=True)
    title: str = Field(nullable=False)
    message: str = Field(nullable=False)
    notification_metadata: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )
    channels: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = Field(default=NotificationStatus.PENDING.value, index=True)
    scheduled_at: datetime = Field(default_factory=_naive_utcnow, index=True)
    expires_at: datetime | None = Field(default=None, index=True)
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = Field(default=None, index=True)
    read_at: datetime | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    user_id: str | None = Field(default=None, nullable=True, index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_naive_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_naive_utcnow)
