"""In-memory stand-ins for the store, channel senders and Redis."""

import asyncio
import copy
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List

from notifications.application.ports import (
    ChannelSender,
    NotificationRepository,
    TenantRegistry,
)
from notifications.domain.entities import (
    RETRY_WINDOW,
    ChannelCapabilities,
    DeliveryResult,
    Notification,
    NotificationChannel,
    NotificationFilters,
    NotificationStats,
    NotificationStatus,
    ensure_utc,
    utcnow,
)
from notifications.domain.exceptions import (
    ConcurrentModification,
    NotificationNotFound,
    StoreFailure,
)
from notifications.domain.policies import calculate_priority


class InMemoryNotificationRepository(NotificationRepository):
    """Dictionary-backed repository that hands out copies, like a real store."""

    def __init__(self):
        self.rows: Dict[str, Notification] = {}
        self.deleted: set = set()
        self.fail_updates = False
        self.update_calls = 0

    def add(self, notification: Notification) -> Notification:
        self.rows[notification.id] = copy.deepcopy(notification)
        return notification

    def get(self, notification_id: str) -> Notification:
        return copy.deepcopy(self.rows[notification_id])

    def _live(self, tenant_id: str) -> List[Notification]:
        return [
            copy.deepcopy(n)
            for n in self.rows.values()
            if n.tenant_id == tenant_id and n.id not in self.deleted
        ]

    async def create(self, notification: Notification) -> Notification:
        return self.add(notification)

    async def find_by_id(self, notification_id: str, tenant_id: str):
        row = self.rows.get(notification_id)
        if row is None or row.tenant_id != tenant_id or notification_id in self.deleted:
            return None
        return copy.deepcopy(row)

    async def update(
        self, notification: Notification, expected_status=None
    ) -> Notification:
        self.update_calls += 1
        if self.fail_updates:
            raise StoreFailure("Failed to update notification")
        if notification.id not in self.rows or notification.id in self.deleted:
            raise NotificationNotFound(notification.id, notification.tenant_id)
        current = self.rows[notification.id].status
        if expected_status is not None and current != expected_status:
            raise ConcurrentModification(
                notification.id, str(expected_status), str(current)
            )
        self.rows[notification.id] = copy.deepcopy(notification)
        return notification

    async def delete(self, notification_id: str, tenant_id: str) -> bool:
        row = self.rows.get(notification_id)
        if row is None or row.tenant_id != tenant_id or notification_id in self.deleted:
            return False
        self.deleted.add(notification_id)
        return True

    def _matches(self, n: Notification, filters: NotificationFilters) -> bool:
        if filters.status and n.status not in filters.status:
            return False
        if filters.type and n.type not in filters.type:
            return False
        if filters.severity and n.severity not in filters.severity:
            return False
        if filters.user_id is not None and n.user_id != filters.user_id:
            return False
        if filters.unread_only and n.read_at is not None:
            return False
        if filters.created_after and n.created_at < ensure_utc(filters.created_after):
            return False
        if filters.created_before and n.created_at > ensure_utc(filters.created_before):
            return False
        return True

    async def find_many(self, filters, tenant_id, limit=50, offset=0):
        matching = [n for n in self._live(tenant_id) if self._matches(n, filters)]
        matching.sort(key=lambda n: n.created_at, reverse=True)
        return matching[offset : offset + limit]

    async def count(self, filters, tenant_id):
        return len([n for n in self._live(tenant_id) if self._matches(n, filters)])

    async def find_pending_for_processing(
        self, tenant_id, limit=100, min_priority=None, as_of=None
    ):
        as_of = ensure_utc(as_of) or utcnow()
        scored = [
            (calculate_priority(n, as_of), n)
            for n in self._live(tenant_id)
            if n.status in (NotificationStatus.PENDING, NotificationStatus.SCHEDULED)
            and n.scheduled_at <= as_of
        ]
        if min_priority is not None:
            scored = [item for item in scored if item[0] >= min_priority]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [n for _, n in scored[:limit]]

    async def find_expired_notifications(self, tenant_id, as_of=None):
        as_of = ensure_utc(as_of) or utcnow()
        return [
            n
            for n in self._live(tenant_id)
            if n.expires_at is not None
            and n.expires_at < as_of
            and n.status
            not in (NotificationStatus.DELIVERED, NotificationStatus.EXPIRED)
        ]

    async def find_notifications_requiring_escalation(self, tenant_id, as_of=None):
        as_of = ensure_utc(as_of) or utcnow()
        return [
            n
            for n in self._live(tenant_id)
            if (
                n.status == NotificationStatus.PENDING
                and n.scheduled_at <= as_of - timedelta(minutes=5)
            )
            or (
                n.status == NotificationStatus.FAILED
                and n.failed_at is not None
                and n.failed_at >= as_of - RETRY_WINDOW
            )
        ]

    async def find_failed_notifications_for_retry(self, tenant_id, as_of=None):
        as_of = ensure_utc(as_of) or utcnow()
        return [
            n
            for n in self._live(tenant_id)
            if n.status == NotificationStatus.FAILED
            and n.failed_at is not None
            and n.failed_at > as_of - RETRY_WINDOW
            and n.retry_count <= n.max_retries
        ]

    async def mark_as_read(self, notification_ids, tenant_id, user_id=None):
        updated = 0
        for notification_id in notification_ids:
            row = self.rows.get(notification_id)
            if row is None or row.tenant_id != tenant_id or notification_id in self.deleted:
                continue
            if user_id is not None and row.user_id not in (user_id, None):
                continue
            if row.mark_as_read():
                updated += 1
        return updated

    async def get_stats(self, tenant_id, date_from=None, date_to=None, as_of=None):
        rows = self._live(tenant_id)
        return NotificationStats(
            total=len(rows),
            by_status=dict(Counter(str(n.status) for n in rows)),
            by_type=dict(Counter(n.type for n in rows)),
            by_severity=dict(Counter(str(n.severity) for n in rows)),
            by_channel=dict(Counter(str(c) for n in rows for c in n.channels)),
            recent_activity={},
        )

    async def list_tenant_ids(self):
        return sorted(
            {
                n.tenant_id
                for n in self.rows.values()
                if n.id not in self.deleted
                and n.status
                in (
                    NotificationStatus.PENDING,
                    NotificationStatus.SCHEDULED,
                    NotificationStatus.FAILED,
                )
            }
        )


class RecordingSender(ChannelSender):
    """Channel sender that records every call and answers with a fixed outcome."""

    def __init__(
        self,
        success: bool = True,
        retryable: bool = True,
        error: str = "boom",
        delay: float = 0.0,
    ):
        self.success = success
        self.retryable = retryable
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def send(self, notification, channel, tenant_id) -> DeliveryResult:
        self.calls.append((notification.id, NotificationChannel(channel), tenant_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.success:
            return DeliveryResult(success=True, delivery_id=str(uuid.uuid4()))
        return DeliveryResult(success=False, error=self.error, retryable=self.retryable)

    async def health_check(self, channel, tenant_id) -> bool:
        return self.success

    def capabilities(self, channel) -> ChannelCapabilities:
        return ChannelCapabilities(
            supports_rich_content=True,
            max_content_length=1000,
            supports_batch=False,
            average_delivery_time=0.0,
        )


class FakeRedisService:
    """Captures pub/sub publishes instead of talking to Redis."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.published: List[tuple] = []

    async def publish(self, channel: str, payload: dict) -> int:
        if self.error is not None:
            raise self.error
        self.published.append((channel, payload))
        return 1

    async def ping(self) -> bool:
        if self.error is not None:
            raise self.error
        return True


class FakeTenantRegistry(TenantRegistry):
    def __init__(self, tenant_ids: List[str] | None = None, error: Exception | None = None):
        self.tenant_ids = tenant_ids or []
        self.error = error

    async def list_tenant_ids(self) -> List[str]:
        if self.error is not None:
            raise self.error
        return list(self.tenant_ids)


def make_notification(
    tenant_id: str = "tenant-a",
    notification_type: str = "ticket_assigned",
    severity: str = "medium",
    channels: List[str] | None = None,
    now: datetime | None = None,
    **kwargs,
) -> Notification:
    return Notification.create(
        tenant_id=tenant_id,
        notification_type=notification_type,
        title=kwargs.pop("title", "Ticket #42 assigned"),
        message=kwargs.pop("message", "You have been assigned ticket #42"),
        channels=channels or ["in_app"],
        severity=severity,
        now=now,
        **kwargs,
    )
