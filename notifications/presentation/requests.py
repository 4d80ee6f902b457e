from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from ..domain.entities import NotificationChannel, NotificationSeverity


class CreateNotificationRequest(BaseModel):
    """Request model for creating a new notification.

    Attributes
    ----------
    type : str
        Notification type, e.g. `system_outage` or `ticket_assigned`
    title : str
        Title template; `{{key}}` placeholders are filled from `variables`
    message : str
        Message template; `{{key}}` placeholders are filled from `variables`
    severity : NotificationSeverity
        Urgency level of the notification
    channels : List[NotificationChannel] | None
        Explicit delivery channels; chosen by channel policy when omitted
    user_preferences : List[NotificationChannel] | None
        Recipient channel preferences, used for types without a channel rule
    variables : Dict[str, Any]
        Template variables
    scheduled_at : datetime | None
        Earliest delivery time, now when omitted
    expires_at : datetime | None
        Delivery deadline
    metadata : Dict[str, Any]
        Additional data associated with the notification
    related_entity_type : str | None
        Type of the originating business object
    related_entity_id : str | None
        ID of the originating business object
    user_id : str | None
        Recipient, None for broadcast
    max_retries : int
        Retries allowed after the first failed attempt
    """

    type: str = Field(min_length=1, max_length=100)
    title: str
    message: str
    severity: NotificationSeverity = NotificationSeverity.MEDIUM
    channels: List[NotificationChannel] | None = None
    user_preferences: List[NotificationChannel] | None = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = None
    expires_at: datetime | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    user_id: str | None = None
    max_retries: int = Field(default=3, ge=0, le=10)


class MarkNotificationsReadRequest(BaseModel):
    """Request model for marking several notifications as read."""

    notification_ids: List[str] = Field(min_length=1, max_length=500)
    user_id: str | None = None


class ProcessNotificationsRequest(BaseModel):
    """Request model for a manually triggered processing pass."""

    limit: int = Field(default=100, ge=1, le=1000)
    urgent_only: bool = False
