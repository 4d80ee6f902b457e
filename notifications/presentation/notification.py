from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query, status

from ..application.rules import (
    CreateNotificationRule,
    DeleteNotificationRule,
    GetNotificationRule,
    GetNotificationStatsRule,
    GetNotificationsRule,
    MarkNotificationsReadRule,
    ProcessNotificationsRule,
)
from ..domain.entities import Notification as DomainNotification
from ..domain.entities import (
    NotificationFilters,
    NotificationSeverity,
    NotificationStatus,
)
from ..infrastructure.factory import (
    get_current_tenant_id,
    get_notification_dispatcher,
    get_notification_repository,
)
from .requests import (
    CreateNotificationRequest,
    MarkNotificationsReadRequest,
    ProcessNotificationsRequest,
)
from .responses import (
    CreatedResponse,
    DispatchDetailResponse,
    DispatchSummaryResponse,
    NotificationListResponse,
    NotificationResponse,
    NotificationStatsResponse,
    SuccessResponse,
)

router = APIRouter(prefix="/notifications")


def _to_response(notification: DomainNotification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        tenant_id=notification.tenant_id,
        type=notification.type,
        severity=str(notification.severity),
        status=str(notification.status),
        title=notification.title,
        message=notification.message,
        channels=[str(channel) for channel in notification.channels],
        metadata=notification.metadata,
        user_id=notification.user_id,
        related_entity_type=notification.related_entity_type,
        related_entity_id=notification.related_entity_id,
        retry_count=notification.retry_count,
        max_retries=notification.max_retries,
        is_read=notification.read_at is not None,
        scheduled_at=notification.scheduled_at,
        expires_at=notification.expires_at,
        sent_at=notification.sent_at,
        delivered_at=notification.delivered_at,
        failed_at=notification.failed_at,
        read_at=notification.read_at,
        created_at=notification.created_at,
        updated_at=notification.updated_at,
    )


@router.post("/", response_model=CreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: CreateNotificationRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    notification_repository=Depends(get_notification_repository),
):
    """Create a new notification.

    The notification is stored `pending`, or `scheduled` when `scheduled_at`
    lies in the future, and is picked up by the next processing pass.

    Parameters
    ----------
    request : CreateNotificationRequest
        Notification creation request data
    tenant_id : str
        Tenant resolved from the `X-Tenant-ID` header
    notification_repository
        Dependency-injected notification repository

    Returns
    -------
    CreatedResponse
        Response containing the created notification
    """
    create_notification_rule = CreateNotificationRule(
        tenant_id=tenant_id,
        notification_type=request.type,
        title=request.title,
        message=request.message,
        severity=request.severity,
        channels=request.channels,
        user_preferences=request.user_preferences,
        variables=request.variables,
        scheduled_at=request.scheduled_at,
        expires_at=request.expires_at,
        metadata=request.metadata,
        related_entity_type=request.related_entity_type,
        related_entity_id=request.related_entity_id,
        user_id=request.user_id,
        max_retries=request.max_retries,
        notification_repository=notification_repository,
    )

    created_notification = await create_notification_rule.execute()

    return CreatedResponse(
        data=_to_response(created_notification),
        message="Notification created successfully",
    )


@router.get("/", response_model=SuccessResponse, status_code=status.HTTP_200_OK)
async def get_notifications(
    status_filter: List[NotificationStatus] | None = Query(default=None, alias="status"),
    type_filter: List[str] | None = Query(default=None, alias="type"),
    severity: List[NotificationSeverity] | None = Query(default=None),
    user_id: str | None = None,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_current_tenant_id),
    notification_repository=Depends(get_notification_repository),
):
    """List notifications for the tenant.

    Supports filtering by status, type, severity, recipient, related entity
    and creation date range, with pagination.

    Returns
    -------
    SuccessResponse
        Response containing one page of notifications and the total count
    """
    get_notifications_rule = GetNotificationsRule(
        tenant_id=tenant_id,
        notification_repository=notification_repository,
        filters=NotificationFilters(
            status=status_filter,
            type=type_filter,
            severity=severity,
            user_id=user_id,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            created_after=date_from,
            created_before=date_to,
            unread_only=unread_only,
        ),
        limit=limit,
        offset=offset,
    )

    notifications, total = await get_notifications_rule.execute()

    return SuccessResponse(
        data=NotificationListResponse(
            notifications=[_to_response(n) for n in notifications],
            total=total,
            limit=limit,
            offset=offset,
        ),
        message="Notifications retrieved successfully",
    )


@router.get("/stats", response_model=SuccessResponse, status_code=status.HTTP_200_OK)
async def get_notification_stats(
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    tenant_id: str = Depends(get_current_tenant_id),
    notification_repository=Depends(get_notification_repository),
):
    """Aggregate notification counts by status, type, severity and channel."""
    stats = await GetNotificationStatsRule(
        tenant_id=tenant_id,
        notification_repository=notification_repository,
        date_from=date_from,
        date_to=date_to,
    ).execute()

    return SuccessResponse(
        data=NotificationStatsResponse(
            total=stats.total,
            by_status=stats.by_status,
            by_type=stats.by_type,
            by_severity=stats.by_severity,
            by_channel=stats.by_channel,
            recent_activity=stats.recent_activity,
        ),
        message="Notification statistics retrieved successfully",
    )


@router.post("/process", response_model=SuccessResponse, status_code=status.HTTP_200_OK)
async def process_notifications(
    request: ProcessNotificationsRequest | None = None,
    tenant_id: str = Depends(get_current_tenant_id),
    dispatcher=Depends(get_notification_dispatcher),
):
    """Run one processing pass for the tenant immediately.

    Parameters
    ----------
    request : ProcessNotificationsRequest | None
        Optional pass limit and urgent-only flag
    tenant_id : str
        Tenant resolved from the `X-Tenant-ID` header
    dispatcher
        Dependency-injected notification dispatcher

    Returns
    -------
    SuccessResponse
        Response containing the pass summary
    """
    request = request or ProcessNotificationsRequest()
    summary = await ProcessNotificationsRule(
        tenant_id=tenant_id,
        dispatcher=dispatcher,
        limit=request.limit,
        urgent_only=request.urgent_only,
    ).execute()

    return SuccessResponse(
        data=DispatchSummaryResponse(
            tenant_id=summary.tenant_id,
            urgent_only=summary.urgent_only,
            processed=summary.processed,
            sent=summary.sent,
            failed=summary.failed,
            expired=summary.expired,
            escalated=summary.escalated,
            skipped=summary.skipped,
            details=[
                DispatchDetailResponse(
                    notification_id=detail.notification_id,
                    status=detail.status,
                    reason=detail.reason,
                    channels=detail.channels,
                )
                for detail in summary.details
            ],
        ),
        message="Notifications processed successfully",
    )


@router.put(
    "/read/{notification_id}",
    response_model=SuccessResponse,
    status_code=status.HTTP_200_OK,
)
async def mark_notification_read(
    notification_id: str,
    user_id: str | None = None,
    tenant_id: str = Depends(get_current_tenant_id),
    notification_repository=Depends(get_notification_repository),
):
    """Mark a specific notification as read.

    Parameters
    ----------
    notification_id : str
        ID of the notification to mark as read
    user_id : str | None
        Recipient for ownership verification
    tenant_id : str
        Tenant resolved from the `X-Tenant-ID` header
    notification_repository
        Dependency-injected notification repository

    Returns
    -------
    SuccessResponse
        Response indicating whether the notification was marked
    """
    updated = await MarkNotificationsReadRule(
        notification_ids=[notification_id],
        tenant_id=tenant_id,
        user_id=user_id,
        notification_repository=notification_repository,
    ).execute()

    return SuccessResponse(
        data={"marked_as_read": bool(updated)},
        message=(
            "Notification marked as read"
            if updated
            else "Notification was already read or does not exist"
        ),
    )


@router.put("/read", response_model=SuccessResponse, status_code=status.HTTP_200_OK)
async def mark_notifications_read(
    request: MarkNotificationsReadRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    notification_repository=Depends(get_notification_repository),
):
    """Mark several notifications as read at once."""
    updated = await MarkNotificationsReadRule(
        notification_ids=request.notification_ids,
        tenant_id=tenant_id,
        user_id=request.user_id,
        notification_repository=notification_repository,
    ).execute()

    return SuccessResponse(
        data={"marked_as_read": updated},
        message=f"{updated} notifications marked as read",
    )


@router.get(
    "/{notification_id}", response_model=SuccessResponse, status_code=status.HTTP_200_OK
)
async def get_notification(
    notification_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    notification_repository=Depends(get_notification_repository),
):
    """Retrieve a single notification by ID."""
    notification = await GetNotificationRule(
        notification_id=notification_id,
        tenant_id=tenant_id,
        notification_repository=notification_repository,
    ).execute()

    return SuccessResponse(
        data=_to_response(notification),
        message="Notification retrieved successfully",
    )


@router.delete(
    "/{notification_id}", response_model=SuccessResponse, status_code=status.HTTP_200_OK
)
async def delete_notification(
    notification_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    notification_repository=Depends(get_notification_repository),
):
    """Delete a notification. Deleted notifications disappear from every query."""
    await DeleteNotificationRule(
        notification_id=notification_id,
        tenant_id=tenant_id,
        notification_repository=notification_repository,
    ).execute()

    return SuccessResponse(
        data={"deleted": True},
        message="Notification deleted successfully",
    )
