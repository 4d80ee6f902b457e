import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List

from loguru import logger

from ..domain.entities import (
    DeliveryResult,
    DispatchDetail,
    DispatchSummary,
)
from ..domain.entities import Notification as DomainNotification
from ..domain.entities import (
    NotificationChannel,
    NotificationSeverity,
    NotificationStatus,
    ensure_utc,
    utcnow,
)
from ..domain.exceptions import (
    ChannelDeliveryFailure,
    ConcurrentModification,
    NotificationError,
    StoreFailure,
)
from ..domain.policies import (
    EscalationDecision,
    calculate_priority,
    determine_channels,
    is_within_delivery_window,
    retry_strategy,
    severity_rank,
    should_escalate,
)
from .ports import ChannelSender, NotificationRepository


class ChannelSenderRegistry:
    """Lookup table from channel to the sender that delivers through it."""

    def __init__(
        self, senders: Dict[NotificationChannel, ChannelSender] | None = None
    ) -> None:
        self._senders: Dict[NotificationChannel, ChannelSender] = {}
        for channel, sender in (senders or {}).items():
            self.register(channel, sender)

    def register(self, channel: NotificationChannel | str, sender: ChannelSender) -> None:
        self._senders[NotificationChannel(channel)] = sender

    def get(self, channel: NotificationChannel | str) -> ChannelSender | None:
        return self._senders.get(NotificationChannel(channel))

    @property
    def channels(self) -> List[NotificationChannel]:
        return list(self._senders)


class NotificationDispatcher:
    """Runs processing passes over a tenant's notifications.

    One pass delivers due notifications (and failed ones whose backoff has
    elapsed) in priority order, then sweeps expired notifications and
    escalation candidates. Urgent passes only deliver notifications above
    the urgent priority floor and skip both sweeps.

    Passes for the same tenant are serialized, whoever starts them (scheduler,
    HTTP or CLI). Every write is conditional on the status the notification
    was loaded with, so a pass in another process cannot overwrite it.
    """

    def __init__(
        self,
        notification_repository: NotificationRepository,
        sender_registry: ChannelSenderRegistry,
        urgent_priority_floor: int = 1000,
        delivery_window_start: int = 8,
        delivery_window_end: int = 20,
        delivery_timezone: str = "UTC",
    ) -> None:
        self.notification_repository = notification_repository
        self.sender_registry = sender_registry
        self.urgent_priority_floor = urgent_priority_floor
        self.delivery_window_start = delivery_window_start
        self.delivery_window_end = delivery_window_end
        self.delivery_timezone = delivery_timezone

        self._tenant_locks: Dict[str, asyncio.Lock] = {}
        self._tenant_lock_holders: Dict[str, int] = {}

    @asynccontextmanager
    async def tenant_lock(self, tenant_id: str) -> AsyncIterator[None]:
        """Hold the tenant's pass lock; it is dropped once nobody holds or awaits it."""
        lock = self._tenant_locks.setdefault(tenant_id, asyncio.Lock())
        self._tenant_lock_holders[tenant_id] = self._tenant_lock_holders.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._tenant_lock_holders[tenant_id] -= 1
            if not self._tenant_lock_holders[tenant_id]:
                del self._tenant_lock_holders[tenant_id]
                del self._tenant_locks[tenant_id]

    async def process_tenant(
        self,
        tenant_id: str,
        limit: int = 100,
        urgent_only: bool = False,
        now: datetime | None = None,
    ) -> DispatchSummary:
        """Run one processing pass for a tenant.

        Parameters
        ----------
        tenant_id : str
            Tenant to process.
        limit : int
            Maximum number of notifications attempted in this pass.
        urgent_only : bool
            Restrict the pass to notifications above the urgent priority floor.
        now : datetime | None, optional
            Reference time, defaults to now.

        Returns
        -------
        DispatchSummary
            Counters and per-notification details for the pass.
        """
        now = ensure_utc(now) or utcnow()
        summary = DispatchSummary(tenant_id=tenant_id, urgent_only=urgent_only)

        async with self.tenant_lock(tenant_id):
            for notification in await self._collect_candidates(
                tenant_id, limit, urgent_only, now
            ):
                summary.processed += 1
                try:
                    await self._process_notification(notification, now, summary)
                except ConcurrentModification as e:
                    logger.info(f"Leaving notification {notification.id} alone: {e}")
                    self._skip(notification, "modified by another pass", summary)
                except NotificationError as e:
                    logger.error(
                        f"Failed to process notification {notification.id} for tenant {tenant_id}: {e}"
                    )
                    summary.details.append(
                        DispatchDetail(
                            notification_id=notification.id, status="error", reason=str(e)
                        )
                    )

            if not urgent_only:
                await self.expire_overdue(tenant_id, now=now, summary=summary)
                await self.escalate_overdue(tenant_id, now=now, summary=summary)

        if summary.processed or summary.expired or summary.escalated:
            logger.info(
                f"Processed {summary.processed} notifications for tenant {tenant_id}: "
                f"{summary.sent} sent, {summary.failed} failed, {summary.expired} expired, "
                f"{summary.escalated} escalated, {summary.skipped} skipped"
            )
        return summary

    async def expire_overdue(
        self,
        tenant_id: str,
        now: datetime | None = None,
        summary: DispatchSummary | None = None,
    ) -> int:
        """Move every overdue notification of a tenant to `expired`.

        Returns
        -------
        int
            Number of notifications expired.
        """
        now = ensure_utc(now) or utcnow()
        try:
            candidates = await self.notification_repository.find_expired_notifications(
                tenant_id, as_of=now
            )
        except StoreFailure as e:
            logger.error(f"Expiry sweep failed for tenant {tenant_id}: {e}")
            return 0

        expired = 0
        for notification in candidates:
            loaded_status = notification.status
            try:
                if notification.mark_as_expired(now):
                    await self.notification_repository.update(
                        notification, expected_status=loaded_status
                    )
                    expired += 1
                    if summary is not None:
                        summary.expired += 1
                        summary.details.append(
                            DispatchDetail(
                                notification_id=notification.id, status="expired"
                            )
                        )
            except NotificationError as e:
                logger.error(f"Failed to expire notification {notification.id}: {e}")

        if expired:
            logger.info(f"Expired {expired} notifications for tenant {tenant_id}")
        return expired

    async def escalate_overdue(
        self,
        tenant_id: str,
        now: datetime | None = None,
        summary: DispatchSummary | None = None,
    ) -> List[DomainNotification]:
        """Escalate every candidate the escalation policy selects.

        Each escalation creates a derived critical notification referencing the
        original, raises the original's severity when required and stamps the
        original so later sweeps leave it alone.

        Returns
        -------
        List[DomainNotification]
            The derived escalation notifications created.
        """
        now = ensure_utc(now) or utcnow()
        try:
            candidates = (
                await self.notification_repository.find_notifications_requiring_escalation(
                    tenant_id, as_of=now
                )
            )
        except StoreFailure as e:
            logger.error(f"Escalation sweep failed for tenant {tenant_id}: {e}")
            return []

        escalations = []
        for original in candidates:
            if original.is_escalated or original.is_escalation:
                continue

            decision = should_escalate(original, now)
            if not decision.should_escalate:
                continue

            try:
                escalation = await self._escalate(original, decision, now)
            except NotificationError as e:
                logger.error(f"Failed to escalate notification {original.id}: {e}")
                continue

            escalations.append(escalation)
            if summary is not None:
                summary.escalated += 1
                summary.details.append(
                    DispatchDetail(
                        notification_id=original.id,
                        status="escalated",
                        reason=decision.reason,
                    )
                )

        return escalations

    async def _collect_candidates(
        self, tenant_id: str, limit: int, urgent_only: bool, now: datetime
    ) -> List[DomainNotification]:
        min_priority = self.urgent_priority_floor if urgent_only else None

        try:
            pending = await self.notification_repository.find_pending_for_processing(
                tenant_id, limit=limit, min_priority=min_priority, as_of=now
            )
        except StoreFailure as e:
            logger.error(f"Failed to load pending notifications for tenant {tenant_id}: {e}")
            pending = []

        try:
            failed = await self.notification_repository.find_failed_notifications_for_retry(
                tenant_id, as_of=now
            )
        except StoreFailure as e:
            logger.error(f"Failed to load retryable notifications for tenant {tenant_id}: {e}")
            failed = []

        retries = [
            notification
            for notification in failed
            if notification.is_retryable(now)
            and (notification.next_retry_at is None or notification.next_retry_at <= now)
            and (
                min_priority is None
                or calculate_priority(notification, now) >= min_priority
            )
        ]

        candidates = {}
        for notification in [*pending, *retries]:
            candidates.setdefault(notification.id, notification)

        ordered = sorted(
            candidates.values(),
            key=lambda notification: calculate_priority(notification, now),
            reverse=True,
        )
        return ordered[:limit]

    async def _process_notification(
        self, notification: DomainNotification, now: datetime, summary: DispatchSummary
    ) -> None:
        loaded_status = notification.status

        if notification.is_expired(now):
            if notification.mark_as_expired(now):
                await self.notification_repository.update(
                    notification, expected_status=loaded_status
                )
                summary.expired += 1
                summary.details.append(
                    DispatchDetail(notification_id=notification.id, status="expired")
                )
            return

        if not self._is_within_window(notification, now):
            self._skip(notification, "outside delivery window", summary)
            return

        if notification.status == NotificationStatus.FAILED:
            notification.mark_for_retry(now)

        if not notification.can_be_sent(now):
            self._skip(notification, "not ready to be sent", summary)
            return

        await self._deliver(notification, loaded_status, now, summary)

    async def _deliver(
        self,
        notification: DomainNotification,
        loaded_status: NotificationStatus,
        now: datetime,
        summary: DispatchSummary,
    ) -> None:
        channels = list(notification.channels)
        results = await asyncio.gather(
            *(self._send_via(notification, channel) for channel in channels)
        )

        delivered = [
            str(channel) for channel, result in zip(channels, results) if result.success
        ]
        failures = {
            str(channel): result.error or "unknown error"
            for channel, result in zip(channels, results)
            if not result.success
        }

        if delivered:
            notification.mark_as_sent(now)
            if failures:
                notification.record_channel_failures(failures, now)
                logger.warning(
                    f"Notification {notification.id} partially delivered, failed channels: {failures}"
                )
            await self.notification_repository.update(
                notification, expected_status=loaded_status
            )

            summary.sent += 1
            summary.details.append(
                DispatchDetail(
                    notification_id=notification.id, status="sent", channels=delivered
                )
            )
            return

        reason = "; ".join(f"{channel}: {error}" for channel, error in failures.items())
        notification.mark_as_failed(reason, now)

        strategy = retry_strategy(
            notification.type, notification.severity, notification.retry_count
        )
        retryable = any(result.retryable for result in results)
        notification.schedule_retry(
            (
                now + timedelta(seconds=strategy.retry_after_seconds)
                if retryable and strategy.should_retry
                else None
            ),
            now,
        )
        await self.notification_repository.update(
            notification, expected_status=loaded_status
        )

        logger.warning(
            f"Notification {notification.id} failed on all channels "
            f"(attempt {notification.retry_count}): {reason}"
        )
        summary.failed += 1
        summary.details.append(
            DispatchDetail(
                notification_id=notification.id,
                status="failed",
                reason=reason,
                channels=list(failures),
            )
        )

    async def _send_via(
        self, notification: DomainNotification, channel: NotificationChannel
    ) -> DeliveryResult:
        sender = self.sender_registry.get(channel)
        if sender is None:
            return DeliveryResult(
                success=False,
                error=f"No sender registered for channel {channel}",
                retryable=False,
            )

        try:
            return await sender.send(notification, channel, notification.tenant_id)
        except ChannelDeliveryFailure as e:
            return DeliveryResult(success=False, error=e.reason, retryable=e.retryable)
        except Exception as e:
            logger.error(
                f"Sender for {channel} raised while delivering {notification.id}: {e}"
            )
            return DeliveryResult(success=False, error=str(e), retryable=True)

    async def _escalate(
        self,
        original: DomainNotification,
        decision: EscalationDecision,
        now: datetime,
    ) -> DomainNotification:
        loaded_status = original.status
        escalation_type = f"{original.type}_escalation"
        escalation = DomainNotification.create(
            tenant_id=original.tenant_id,
            notification_type=escalation_type,
            title=f"[ESCALATED] {original.title}",
            message=original.message,
            channels=determine_channels(
                escalation_type, NotificationSeverity.CRITICAL
            ),
            severity=NotificationSeverity.CRITICAL,
            metadata={
                "originalNotificationId": original.id,
                "escalationReason": decision.reason,
            },
            related_entity_type="notification",
            related_entity_id=original.id,
            user_id=original.user_id,
            now=now,
        )

        if decision.new_severity is not None:
            while severity_rank(original.severity) < severity_rank(
                decision.new_severity
            ) and original.escalate_severity(now):
                pass

        # The original is claimed before the derived notification is stored
        original.record_escalation(escalation.id, decision.reason, now)
        await self.notification_repository.update(original, expected_status=loaded_status)
        await self.notification_repository.create(escalation)

        logger.warning(
            f"Escalated notification {original.id} as {escalation.id}: {decision.reason}"
        )
        return escalation

    def _is_within_window(self, notification: DomainNotification, now: datetime) -> bool:
        return is_within_delivery_window(
            notification,
            now,
            start_hour=self.delivery_window_start,
            end_hour=self.delivery_window_end,
            timezone=self.delivery_timezone,
        )

    @staticmethod
    def _skip(
        notification: DomainNotification, reason: str, summary: DispatchSummary
    ) -> None:
        summary.skipped += 1
        summary.details.append(
            DispatchDetail(notification_id=notification.id, status="skipped", reason=reason)
        )
