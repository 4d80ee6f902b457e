from abc import ABC, abstractmethod
from datetime import datetime
from typing import List

from ..domain.entities import ChannelCapabilities, DeliveryResult
from ..domain.entities import Notification as DomainNotification
from ..domain.entities import (
    NotificationChannel,
    NotificationFilters,
    NotificationStats,
    NotificationStatus,
)


class NotificationRepository(ABC):
    """Abstract base class for notification data management.

    Defines the tenant-scoped interface for storing notifications and for the
    lifecycle-aware queries the dispatcher runs on every pass. Implementations
    raise `StoreFailure` when the backing store cannot complete an operation.
    """

    @abstractmethod
    async def create(self, notification: DomainNotification) -> DomainNotification:
        """Store a new notification.

        Parameters
        ----------
        notification : DomainNotification
            Notification entity to create.

        Returns
        -------
        DomainNotification
            The stored notification.
        """
        pass

    @abstractmethod
    async def find_by_id(
        self, notification_id: str, tenant_id: str
    ) -> DomainNotification | None:
        """Retrieve a notification by ID within a tenant.

        Parameters
        ----------
        notification_id : str
            ID of the notification.
        tenant_id : str
            Owning tenant.

        Returns
        -------
        DomainNotification | None
            The notification, or None if it does not exist or was deleted.
        """
        pass

    @abstractmethod
    async def update(
        self,
        notification: DomainNotification,
        expected_status: NotificationStatus | None = None,
    ) -> DomainNotification:
        """Persist the current state of an existing notification.

        Parameters
        ----------
        notification : DomainNotification
            Notification carrying the new state.
        expected_status : NotificationStatus | None, optional
            Status the stored row must still have; the write is refused with
            `ConcurrentModification` otherwise.
        """
        pass

    @abstractmethod
    async def delete(self, notification_id: str, tenant_id: str) -> bool:
        """Soft-delete a notification.

        Returns
        -------
        bool
            True if a notification was deleted.
        """
        pass

    @abstractmethod
    async def find_many(
        self,
        filters: NotificationFilters,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DomainNotification]:
        """List notifications matching the filters, newest first.

        Parameters
        ----------
        filters : NotificationFilters
            Query filters.
        tenant_id : str
            Owning tenant.
        limit : int
            Maximum number of notifications to return.
        offset : int
            Number of notifications to skip.

        Returns
        -------
        List[DomainNotification]
            Matching notifications.
        """
        pass

    @abstractmethod
    async def count(self, filters: NotificationFilters, tenant_id: str) -> int:
        pass

    @abstractmethod
    async def find_pending_for_processing(
        self,
        tenant_id: str,
        limit: int = 100,
        min_priority: int | None = None,
        as_of: datetime | None = None,
    ) -> List[DomainNotification]:
        """Retrieve due pending/scheduled notifications in priority order.

        Parameters
        ----------
        tenant_id : str
            Owning tenant.
        limit : int
            Maximum number of notifications to return.
        min_priority : int | None, optional
            Priority floor; lower-scored notifications are left out.
        as_of : datetime | None, optional
            Reference time, defaults to now.

        Returns
        -------
        List[DomainNotification]
            Notifications with `scheduled_at <= as_of`, highest priority first.
        """
        pass

    @abstractmethod
    async def find_expired_notifications(
        self, tenant_id: str, as_of: datetime | None = None
    ) -> List[DomainNotification]:
        """Retrieve non-terminal notifications whose expiry has passed."""
        pass

    @abstractmethod
    async def find_notifications_requiring_escalation(
        self, tenant_id: str, as_of: datetime | None = None
    ) -> List[DomainNotification]:
        """Retrieve escalation candidates.

        Candidates are pending notifications due for at least five minutes and
        notifications that failed within the last hour. The final decision is
        left to the escalation policy.
        """
        pass

    @abstractmethod
    async def find_failed_notifications_for_retry(
        self, tenant_id: str, as_of: datetime | None = None
    ) -> List[DomainNotification]:
        """Retrieve failed notifications still inside the retry window and budget."""
        pass

    @abstractmethod
    async def mark_as_read(
        self, notification_ids: List[str], tenant_id: str, user_id: str | None = None
    ) -> int:
        """Mark notifications as read.

        Parameters
        ----------
        notification_ids : List[str]
            IDs of the notifications.
        tenant_id : str
            Owning tenant.
        user_id : str | None, optional
            When set, only that user's notifications are touched.

        Returns
        -------
        int
            Number of notifications newly marked as read.
        """
        pass

    @abstractmethod
    async def get_stats(
        self,
        tenant_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        as_of: datetime | None = None,
    ) -> NotificationStats:
        """Aggregate counts by status, type, severity and channel."""
        pass

    @abstractmethod
    async def list_tenant_ids(self) -> List[str]:
        """Distinct tenants that still have open notifications."""
        pass


class ChannelSender(ABC):
    """Abstract base class for delivering notifications through a channel."""

    @abstractmethod
    async def send(
        self,
        notification: DomainNotification,
        channel: NotificationChannel,
        tenant_id: str,
    ) -> DeliveryResult:
        """Attempt delivery of a notification through one channel.

        Parameters
        ----------
        notification : DomainNotification
            Notification to deliver.
        channel : NotificationChannel
            Channel to deliver through.
        tenant_id : str
            Owning tenant.

        Returns
        -------
        DeliveryResult
            Outcome of the attempt. Provider failures are reported here
            rather than raised.
        """
        pass

    @abstractmethod
    async def health_check(self, channel: NotificationChannel, tenant_id: str) -> bool:
        pass

    @abstractmethod
    def capabilities(self, channel: NotificationChannel) -> ChannelCapabilities:
        pass


class TenantRegistry(ABC):
    """Abstract base class for discovering the tenants the scheduler serves."""

    @abstractmethod
    async def list_tenant_ids(self) -> List[str]:
        pass
