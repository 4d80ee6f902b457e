from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, List

from loguru import logger
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import and_, desc, or_, select

from ..application.ports import NotificationRepository as DomainNotificationRepository
from ..domain.entities import Notification as DomainNotification
from ..domain.entities import (
    RETRY_WINDOW,
    NotificationChannel,
    NotificationFilters,
    NotificationSeverity,
    NotificationStats,
    NotificationStatus,
    ensure_utc,
    utcnow,
)
from ..domain.exceptions import (
    ConcurrentModification,
    NotificationError,
    NotificationNotFound,
    StoreFailure,
)
from ..domain.policies import calculate_priority
from .models import Notification

ESCALATION_PENDING_THRESHOLD = timedelta(minutes=5)

OPEN_STATUSES = [
    NotificationStatus.PENDING.value,
    NotificationStatus.SCHEDULED.value,
    NotificationStatus.FAILED.value,
]
EXPIRABLE_STATUSES = [
    NotificationStatus.PENDING.value,
    NotificationStatus.SCHEDULED.value,
    NotificationStatus.SENT.value,
    NotificationStatus.FAILED.value,
]


def _to_naive_utc(value: datetime | None) -> datetime | None:
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


class NotificationRepository(DomainNotificationRepository):
    """Concrete implementation of NotificationRepository for database-based notification management.

    Every operation opens its own short-lived session from the session factory,
    so concurrent dispatch passes never share a session. Any `SQLAlchemyError`
    rolls the session back and surfaces as `StoreFailure`.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the repository with a session factory.

        Parameters
        ----------
        session_factory : async_sessionmaker[AsyncSession]
            Factory producing asynchronous SQLAlchemy sessions
        """
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    f"📁 Notification store failed to {operation} -> {type(e).__name__}: {e}"
                )
                raise StoreFailure(f"Failed to {operation}") from e

    async def create(self, notification: DomainNotification) -> DomainNotification:
        """Create a new notification record in the database.

        Parameters
        ----------
        notification : DomainNotification
            Domain notification entity to be created

        Returns
        -------
        DomainNotification
            Created notification entity

        Raises
        ------
        StoreFailure
            If the record could not be written
        """
        pydantic_notification = self._to_pydantic_model(notification)

        async with self._session("create notification") as session:
            session.add(pydantic_notification)
            await session.commit()

        return notification

    async def find_by_id(
        self, notification_id: str, tenant_id: str
    ) -> DomainNotification | None:
        async with self._session("load notification") as session:
            result = await session.execute(
                select(Notification).where(
                    Notification.id == notification_id,
                    Notification.tenant_id == tenant_id,
                    Notification.is_active == True,  # noqa: E712
                )
            )
            pydantic_notification = result.scalars().first()

        if pydantic_notification is None:
            return None
        return self._to_domain_model(pydantic_notification)

    async def update(
        self,
        notification: DomainNotification,
        expected_status: NotificationStatus | None = None,
    ) -> DomainNotification:
        """Persist the lifecycle state of an existing notification.

        The write is a single conditional `UPDATE`, so a concurrent writer that
        moved the row away from `expected_status` wins and this write is refused.

        Parameters
        ----------
        notification : DomainNotification
            Notification carrying the new lifecycle state
        expected_status : NotificationStatus | None, optional
            Status the stored row must still have

        Raises
        ------
        NotificationNotFound
            If the notification does not exist for its tenant
        ConcurrentModification
            If the stored status no longer matches `expected_status`
        StoreFailure
            If the record could not be written
        """
        conditions = [
            Notification.id == notification.id,
            Notification.tenant_id == notification.tenant_id,
            Notification.is_active == True,  # noqa: E712
        ]
        if expected_status is not None:
            conditions.append(Notification.status == str(expected_status))

        async with self._session("update notification") as session:
            result = await session.execute(
                update(Notification)
                .where(*conditions)
                .values(**self._lifecycle_values(notification))
            )
            if result.rowcount == 0:
                await session.rollback()
                current = await session.get(Notification, notification.id)
                if (
                    current is None
                    or current.tenant_id != notification.tenant_id
                    or not current.is_active
                ):
                    raise NotificationNotFound(notification.id, notification.tenant_id)
                raise ConcurrentModification(
                    notification.id, str(expected_status), current.status
                )

            await session.commit()

        return notification

    async def delete(self, notification_id: str, tenant_id: str) -> bool:
        async with self._session("delete notification") as session:
            pydantic_notification = await session.get(Notification, notification_id)
            if (
                pydantic_notification is None
                or pydantic_notification.tenant_id != tenant_id
                or not pydantic_notification.is_active
            ):
                return False

            pydantic_notification.is_active = False
            pydantic_notification.updated_at = _to_naive_utc(utcnow())
            session.add(pydantic_notification)
            await session.commit()

        return True

    async def find_many(
        self,
        filters: NotificationFilters,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DomainNotification]:
        """Retrieve notifications for a tenant with filtering options.

        Parameters
        ----------
        filters : NotificationFilters
            Status, type, severity, recipient, entity and date filters
        tenant_id : str
            Owning tenant
        limit : int
            Maximum number of notifications to return
        offset : int
            Number of notifications to skip for pagination

        Returns
        -------
        List[DomainNotification]
            Notifications matching the criteria, newest first
        """
        query = (
            select(Notification)
            .where(*self._conditions(filters, tenant_id))
            .order_by(desc(Notification.created_at))
            .limit(limit)
            .offset(offset)
        )

        async with self._session("list notifications") as session:
            result = await session.execute(query)
            pydantic_notifications = result.scalars().all()

        return self._to_domain_models(pydantic_notifications)

    async def count(self, filters: NotificationFilters, tenant_id: str) -> int:
        query = (
            select(func.count())
            .select_from(Notification)
            .where(*self._conditions(filters, tenant_id))
        )

        async with self._session("count notifications") as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def find_pending_for_processing(
        self,
        tenant_id: str,
        limit: int = 100,
        min_priority: int | None = None,
        as_of: datetime | None = None,
    ) -> List[DomainNotification]:
        """Retrieve due notifications ordered by processing priority.

        Priority depends on the notification's age, so it is computed on the
        loaded rows rather than in SQL.
        """
        as_of = ensure_utc(as_of) or utcnow()
        query = select(Notification).where(
            Notification.tenant_id == tenant_id,
            Notification.is_active == True,  # noqa: E712
            Notification.status.in_(
                [NotificationStatus.PENDING.value, NotificationStatus.SCHEDULED.value]
            ),
            Notification.scheduled_at <= _to_naive_utc(as_of),
        )

        notifications_list = await self._fetch(query, "load pending notifications")
        scored = [
            (calculate_priority(notification, as_of), notification)
            for notification in notifications_list
        ]
        if min_priority is not None:
            scored = [item for item in scored if item[0] >= min_priority]

        scored.sort(key=lambda item: item[0], reverse=True)
        return [notification for _, notification in scored[:limit]]

    async def find_expired_notifications(
        self, tenant_id: str, as_of: datetime | None = None
    ) -> List[DomainNotification]:
        as_of = ensure_utc(as_of) or utcnow()
        query = select(Notification).where(
            Notification.tenant_id == tenant_id,
            Notification.is_active == True,  # noqa: E712
            Notification.expires_at.is_not(None),
            Notification.expires_at < _to_naive_utc(as_of),
            Notification.status.in_(EXPIRABLE_STATUSES),
        )
        return await self._fetch(query, "load expired notifications")

    async def find_notifications_requiring_escalation(
        self, tenant_id: str, as_of: datetime | None = None
    ) -> List[DomainNotification]:
        as_of = ensure_utc(as_of) or utcnow()
        query = select(Notification).where(
            Notification.tenant_id == tenant_id,
            Notification.is_active == True,  # noqa: E712
            or_(
                and_(
                    Notification.status == NotificationStatus.PENDING.value,
                    Notification.scheduled_at
                    <= _to_naive_utc(as_of - ESCALATION_PENDING_THRESHOLD),
                ),
                and_(
                    Notification.status == NotificationStatus.FAILED.value,
                    Notification.failed_at >= _to_naive_utc(as_of - RETRY_WINDOW),
                ),
            ),
        )
        return await self._fetch(query, "load escalation candidates")

    async def find_failed_notifications_for_retry(
        self, tenant_id: str, as_of: datetime | None = None
    ) -> List[DomainNotification]:
        as_of = ensure_utc(as_of) or utcnow()
        query = select(Notification).where(
            Notification.tenant_id == tenant_id,
            Notification.is_active == True,  # noqa: E712
            Notification.status == NotificationStatus.FAILED.value,
            Notification.failed_at > _to_naive_utc(as_of - RETRY_WINDOW),
            Notification.retry_count <= Notification.max_retries,
        )
        return await self._fetch(query, "load retryable notifications")

    async def mark_as_read(
        self, notification_ids: List[str], tenant_id: str, user_id: str | None = None
    ) -> int:
        """Mark notifications as read.

        Parameters
        ----------
        notification_ids : List[str]
            IDs of the notifications
        tenant_id : str
            Owning tenant
        user_id : str | None, optional
            Recipient for ownership verification; broadcasts always qualify

        Returns
        -------
        int
            Number of notifications newly marked as read
        """
        if not notification_ids:
            return 0

        conditions = [
            Notification.id.in_(notification_ids),
            Notification.tenant_id == tenant_id,
            Notification.is_active == True,  # noqa: E712
            Notification.read_at.is_(None),
        ]
        if user_id is not None:
            conditions.append(
                or_(Notification.user_id == user_id, Notification.user_id.is_(None))
            )

        now = _to_naive_utc(utcnow())
        async with self._session("mark notifications as read") as session:
            result = await session.execute(select(Notification).where(*conditions))
            pydantic_notifications = result.scalars().all()

            for pydantic_notification in pydantic_notifications:
                pydantic_notification.read_at = now
                pydantic_notification.updated_at = max(
                    pydantic_notification.updated_at, now
                )
                session.add(pydantic_notification)

            await session.commit()

        return len(pydantic_notifications)

    async def get_stats(
        self,
        tenant_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        as_of: datetime | None = None,
    ) -> NotificationStats:
        """Aggregate notification counts for a tenant.

        Returns
        -------
        NotificationStats
            Totals by status, type, severity and channel, plus the number of
            notifications created in the last hour, day and week
        """
        as_of = ensure_utc(as_of) or utcnow()
        query = select(Notification).where(
            Notification.tenant_id == tenant_id,
            Notification.is_active == True,  # noqa: E712
        )
        if date_from is not None:
            query = query.where(Notification.created_at >= _to_naive_utc(date_from))
        if date_to is not None:
            query = query.where(Notification.created_at <= _to_naive_utc(date_to))

        notifications_list = await self._fetch(query, "aggregate notification stats")

        by_channel = Counter(
            str(channel)
            for notification in notifications_list
            for channel in notification.channels
        )
        recent_windows = {
            "last_hour": timedelta(hours=1),
            "last_24_hours": timedelta(days=1),
            "last_7_days": timedelta(days=7),
        }

        return NotificationStats(
            total=len(notifications_list),
            by_status=dict(Counter(str(n.status) for n in notifications_list)),
            by_type=dict(Counter(n.type for n in notifications_list)),
            by_severity=dict(Counter(str(n.severity) for n in notifications_list)),
            by_channel=dict(by_channel),
            recent_activity={
                label: sum(
                    1 for n in notifications_list if n.created_at >= as_of - window
                )
                for label, window in recent_windows.items()
            },
        )

    async def list_tenant_ids(self) -> List[str]:
        query = (
            select(Notification.tenant_id)
            .where(
                Notification.is_active == True,  # noqa: E712
                Notification.status.in_(OPEN_STATUSES),
            )
            .distinct()
            .order_by(Notification.tenant_id)
        )

        async with self._session("list tenants") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _fetch(self, query, operation: str) -> List[DomainNotification]:
        async with self._session(operation) as session:
            result = await session.execute(query)
            pydantic_notifications = result.scalars().all()

        return self._to_domain_models(pydantic_notifications)

    def _conditions(self, filters: NotificationFilters, tenant_id: str) -> list:
        conditions = [
            Notification.tenant_id == tenant_id,
            Notification.is_active == True,  # noqa: E712
        ]

        if filters.status:
            conditions.append(
                Notification.status.in_([str(status) for status in filters.status])
            )
        if filters.type:
            conditions.append(Notification.type.in_(filters.type))
        if filters.severity:
            conditions.append(
                Notification.severity.in_(
                    [str(severity) for severity in filters.severity]
                )
            )
        if filters.user_id is not None:
            conditions.append(Notification.user_id == filters.user_id)
        if filters.related_entity_type is not None:
            conditions.append(
                Notification.related_entity_type == filters.related_entity_type
            )
        if filters.related_entity_id is not None:
            conditions.append(
                Notification.related_entity_id == filters.related_entity_id
            )
        if filters.scheduled_after is not None:
            conditions.append(
                Notification.scheduled_at >= _to_naive_utc(filters.scheduled_after)
            )
        if filters.scheduled_before is not None:
            conditions.append(
                Notification.scheduled_at <= _to_naive_utc(filters.scheduled_before)
            )
        if filters.created_after is not None:
            conditions.append(
                Notification.created_at >= _to_naive_utc(filters.created_after)
            )
        if filters.created_before is not None:
            conditions.append(
                Notification.created_at <= _to_naive_utc(filters.created_before)
            )
        if filters.unread_only:
            conditions.append(Notification.read_at.is_(None))

        return conditions

    def _lifecycle_values(self, domain_notification: DomainNotification) -> dict:
        """Column values for the mutable lifecycle fields of a domain entity."""
        return {
            "severity": str(domain_notification.severity),
            "status": str(domain_notification.status),
            "channels": [str(channel) for channel in domain_notification.channels],
            "notification_metadata": dict(domain_notification.metadata),
            "expires_at": _to_naive_utc(domain_notification.expires_at),
            "sent_at": _to_naive_utc(domain_notification.sent_at),
            "delivered_at": _to_naive_utc(domain_notification.delivered_at),
            "failed_at": _to_naive_utc(domain_notification.failed_at),
            "read_at": _to_naive_utc(domain_notification.read_at),
            "retry_count": domain_notification.retry_count,
            "max_retries": domain_notification.max_retries,
            "updated_at": _to_naive_utc(domain_notification.updated_at),
        }

    def _to_pydantic_model(
        self, domain_notification: DomainNotification
    ) -> Notification:
        """Convert a domain notification entity to a pydantic model.

        Parameters
        ----------
        domain_notification : DomainNotification
            Domain entity to convert

        Returns
        -------
        Notification
            Pydantic model instance
        """
        return Notification(
            id=domain_notification.id,
            tenant_id=domain_notification.tenant_id,
            type=domain_notification.type,
            severity=str(domain_notification.severity),
            title=domain_notification.title,
            message=domain_notification.message,
            notification_metadata=dict(domain_notification.metadata),
            channels=[str(channel) for channel in domain_notification.channels],
            status=str(domain_notification.status),
            scheduled_at=_to_naive_utc(domain_notification.scheduled_at),
            expires_at=_to_naive_utc(domain_notification.expires_at),
            sent_at=_to_naive_utc(domain_notification.sent_at),
            delivered_at=_to_naive_utc(domain_notification.delivered_at),
            failed_at=_to_naive_utc(domain_notification.failed_at),
            read_at=_to_naive_utc(domain_notification.read_at),
            related_entity_type=domain_notification.related_entity_type,
            related_entity_id=domain_notification.related_entity_id,
            user_id=domain_notification.user_id,
            retry_count=domain_notification.retry_count,
            max_retries=domain_notification.max_retries,
            created_at=_to_naive_utc(domain_notification.created_at),
            updated_at=_to_naive_utc(domain_notification.updated_at),
        )

    def _to_domain_models(
        self, pydantic_notifications: List[Notification]
    ) -> List[DomainNotification]:
        """Convert rows to domain entities, skipping rows that no longer load."""
        notifications_list = []
        for pydantic_notification in pydantic_notifications:
            try:
                notifications_list.append(self._to_domain_model(pydantic_notification))
            except (ValueError, TypeError, NotificationError) as e:
                logger.error(
                    f"📁 Skipping unreadable notification {pydantic_notification.id} "
                    f"for tenant {pydantic_notification.tenant_id} -> {type(e).__name__}: {e}"
                )
        return notifications_list

    def _to_domain_model(
        self, pydantic_notification: Notification
    ) -> DomainNotification:
        """Convert a pydantic notification model to a domain entity.

        Parameters
        ----------
        pydantic_notification : Notification
            Pydantic model to convert

        Returns
        -------
        DomainNotification
            Domain notification entity instance with aware UTC timestamps
        """
        return DomainNotification(
            id=pydantic_notification.id,
            tenant_id=pydantic_notification.tenant_id,
            type=pydantic_notification.type,
            severity=NotificationSeverity(pydantic_notification.severity),
            title=pydantic_notification.title,
            message=pydantic_notification.message,
            metadata=dict(pydantic_notification.notification_metadata or {}),
            channels=[
                NotificationChannel(channel) for channel in pydantic_notification.channels
            ],
            status=NotificationStatus(pydantic_notification.status),
            scheduled_at=ensure_utc(pydantic_notification.scheduled_at),
            expires_at=ensure_utc(pydantic_notification.expires_at),
            sent_at=ensure_utc(pydantic_notification.sent_at),
            delivered_at=ensure_utc(pydantic_notification.delivered_at),
            failed_at=ensure_utc(pydantic_notification.failed_at),
            read_at=ensure_utc(pydantic_notification.read_at),
            related_entity_type=pydantic_notification.related_entity_type,
            related_entity_id=pydantic_notification.related_entity_id,
            user_id=pydantic_notification.user_id,
            retry_count=pydantic_notification.retry_count,
            max_retries=pydantic_notification.max_retries,
            created_at=ensure_utc(pydantic_notification.created_at),
            updated_at=ensure_utc(pydantic_notification.updated_at),
        )
