from datetime import datetime
from typing import Any, Dict, List

from fastapi import status
from pydantic import BaseModel, Field


class StandardResponse(BaseModel):
    """Base response model for all API operations.

    Attributes
    ----------
    success: bool, default=True
        Boolean indicating if API request was successful.
    data: Any, default=None
        Actual response data payload.
    """

    success: bool = True
    data: Any = None


class SuccessResponse(StandardResponse):
    """Standard response model for successful API operations (HTTP 200 OK)."""

    message: str = "Resource action successful"
    status_code: int = status.HTTP_200_OK


class CreatedResponse(StandardResponse):
    """Response model for successful resource creation (HTTP 201 Created)."""

    message: str = "Resource creation successful"
    status_code: int = status.HTTP_201_CREATED


class NotificationResponse(BaseModel):
    """Response model for a single notification.

    Attributes
    ----------
    id : str
        Unique identifier of the notification
    tenant_id : str
        Owning tenant
    type : str
        Notification type
    severity : str
        Urgency level
    status : str
        Lifecycle status
    title : str
        Brief title of the notification
    message : str
        Detailed notification message
    channels : List[str]
        Delivery channels
    metadata : Dict[str, Any]
        Additional data, including failure and escalation history
    retry_count : int
        Failed delivery attempts so far
    max_retries : int
        Retries allowed
    is_read : bool
        Whether the notification has been read
    """

    id: str
    tenant_id: str
    type: str
    severity: str
    status: str
    title: str
    message: str
    channels: List[str]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    retry_count: int
    max_retries: int
    is_read: bool
    scheduled_at: datetime
    expires_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    read_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class NotificationListResponse(BaseModel):
    """Response model for a page of notifications."""

    notifications: List[NotificationResponse]
    total: int
    limit: int
    offset: int


class NotificationStatsResponse(BaseModel):
    """Response model for aggregated notification statistics."""

    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_severity: Dict[str, int]
    by_channel: Dict[str, int]
    recent_activity: Dict[str, int]


class DispatchDetailResponse(BaseModel):
    notification_id: str
    status: str
    reason: str | None = None
    channels: List[str] = Field(default_factory=list)


class DispatchSummaryResponse(BaseModel):
    """Response model for the outcome of a processing pass."""

    tenant_id: str
    urgent_only: bool
    processed: int
    sent: int
    failed: int
    expired: int
    escalated: int
    skipped: int
    details: List[DispatchDetailResponse]
