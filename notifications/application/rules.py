from datetime import datetime
from typing import Any, Dict, List, Tuple

from loguru import logger

from core.infrastructure.factory import get_data_sanitizer

from ..domain.entities import DispatchSummary
from ..domain.entities import Notification as DomainNotification
from ..domain.entities import (
    NotificationChannel,
    NotificationFilters,
    NotificationSeverity,
    NotificationStats,
)
from ..domain.exceptions import InvalidNotification, NotificationNotFound
from ..domain.policies import determine_channels, render, validate
from .dispatcher import NotificationDispatcher
from .ports import NotificationRepository


class CreateNotificationRule:
    """Business logic for creating notifications.

    Renders template variables into the title and message, picks channels from
    the channel policy when none are given, and rejects notifications that
    break any policy rule before storing them.
    """

    def __init__(
        self,
        tenant_id: str,
        notification_type: str,
        title: str,
        message: str,
        notification_repository: NotificationRepository,
        severity: NotificationSeverity = NotificationSeverity.MEDIUM,
        channels: List[NotificationChannel] | None = None,
        user_preferences: List[NotificationChannel] | None = None,
        variables: Dict[str, Any] | None = None,
        scheduled_at: datetime | None = None,
        expires_at: datetime | None = None,
        metadata: Dict[str, Any] | None = None,
        related_entity_type: str | None = None,
        related_entity_id: str | None = None,
        user_id: str | None = None,
        max_retries: int = 3,
    ) -> None:
        self.tenant_id = tenant_id
        self.notification_type = notification_type
        self.title = title
        self.message = message
        self.notification_repository = notification_repository
        self.severity = severity
        self.channels = channels
        self.user_preferences = user_preferences
        self.variables = variables or {}
        self.scheduled_at = scheduled_at
        self.expires_at = expires_at
        self.metadata = metadata or {}
        self.related_entity_type = related_entity_type
        self.related_entity_id = related_entity_id
        self.user_id = user_id
        self.max_retries = max_retries

    async def execute(self) -> DomainNotification:
        """Execute the notification creation process.

        Returns
        -------
        DomainNotification
            Created notification entity.

        Raises
        ------
        InvalidNotification
            If the notification violates an invariant or a policy rule.
        """
        title, message = render(self.title, self.message, self.variables)
        channels = self.channels or determine_channels(
            self.notification_type, self.severity, self.user_preferences
        )

        notification = DomainNotification.create(
            tenant_id=self.tenant_id,
            notification_type=self.notification_type,
            title=title,
            message=message,
            channels=channels,
            severity=self.severity,
            scheduled_at=self.scheduled_at,
            expires_at=self.expires_at,
            metadata=self.metadata,
            related_entity_type=self.related_entity_type,
            related_entity_id=self.related_entity_id,
            user_id=self.user_id,
            max_retries=self.max_retries,
        )

        violations = validate(notification)
        if violations:
            raise InvalidNotification(violations)

        created_notification = await self.notification_repository.create(notification)

        sanitizer = await get_data_sanitizer()
        logger.info(
            sanitizer.sanitize_for_logging(
                f"Created {created_notification.status} notification {created_notification.id} "
                f"({created_notification.type}, {created_notification.severity}) "
                f"for tenant {created_notification.tenant_id}: {created_notification.title}"
            )
        )
        return created_notification


class GetNotificationsRule:
    """Business logic for listing notifications."""

    def __init__(
        self,
        tenant_id: str,
        notification_repository: NotificationRepository,
        filters: NotificationFilters | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> None:
        self.tenant_id = tenant_id
        self.notification_repository = notification_repository
        self.filters = filters or NotificationFilters()
        self.limit = limit
        self.offset = offset

    async def execute(self) -> Tuple[List[DomainNotification], int]:
        """Execute the notification retrieval process.

        Returns
        -------
        Tuple[List[DomainNotification], int]
            One page of notifications and the total number matching the filters.
        """
        notifications_list = await self.notification_repository.find_many(
            filters=self.filters,
            tenant_id=self.tenant_id,
            limit=self.limit,
            offset=self.offset,
        )
        total = await self.notification_repository.count(
            filters=self.filters, tenant_id=self.tenant_id
        )
        return notifications_list, total


class GetNotificationRule:
    """Business logic for retrieving a single notification."""

    def __init__(
        self,
        notification_id: str,
        tenant_id: str,
        notification_repository: NotificationRepository,
    ) -> None:
        self.notification_id = notification_id
        self.tenant_id = tenant_id
        self.notification_repository = notification_repository

    async def execute(self) -> DomainNotification:
        notification = await self.notification_repository.find_by_id(
            self.notification_id, self.tenant_id
        )
        if notification is None:
            raise NotificationNotFound(self.notification_id, self.tenant_id)
        return notification


class GetNotificationStatsRule:
    """Business logic for aggregating notification statistics."""

    def __init__(
        self,
        tenant_id: str,
        notification_repository: NotificationRepository,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.notification_repository = notification_repository
        self.date_from = date_from
        self.date_to = date_to

    async def execute(self) -> NotificationStats:
        return await self.notification_repository.get_stats(
            tenant_id=self.tenant_id, date_from=self.date_from, date_to=self.date_to
        )


class MarkNotificationsReadRule:
    """Business logic for marking one or many notifications as read."""

    def __init__(
        self,
        notification_ids: List[str],
        tenant_id: str,
        notification_repository: NotificationRepository,
        user_id: str | None = None,
    ) -> None:
        self.notification_ids = notification_ids
        self.tenant_id = tenant_id
        self.notification_repository = notification_repository
        self.user_id = user_id

    async def execute(self) -> int:
        """Execute the mark as read process.

        Returns
        -------
        int
            Number of notifications newly marked as read.
        """
        updated = await self.notification_repository.mark_as_read(
            notification_ids=self.notification_ids,
            tenant_id=self.tenant_id,
            user_id=self.user_id,
        )
        logger.info(f"Marked {updated} notifications as read for tenant {self.tenant_id}")
        return updated


class DeleteNotificationRule:
    """Business logic for deleting a notification."""

    def __init__(
        self,
        notification_id: str,
        tenant_id: str,
        notification_repository: NotificationRepository,
    ) -> None:
        self.notification_id = notification_id
        self.tenant_id = tenant_id
        self.notification_repository = notification_repository

    async def execute(self) -> None:
        deleted = await self.notification_repository.delete(
            self.notification_id, self.tenant_id
        )
        if not deleted:
            raise NotificationNotFound(self.notification_id, self.tenant_id)
        logger.info(f"Deleted notification {self.notification_id}")


class ProcessNotificationsRule:
    """Business logic for triggering a processing pass on demand."""

    def __init__(
        self,
        tenant_id: str,
        dispatcher: NotificationDispatcher,
        limit: int = 100,
        urgent_only: bool = False,
    ) -> None:
        self.tenant_id = tenant_id
        self.dispatcher = dispatcher
        self.limit = limit
        self.urgent_only = urgent_only

    async def execute(self) -> DispatchSummary:
        logger.info(
            f"Manual {'urgent ' if self.urgent_only else ''}processing pass requested for tenant {self.tenant_id}"
        )
        return await self.dispatcher.process_tenant(
            self.tenant_id, limit=self.limit, urgent_only=self.urgent_only
        )
