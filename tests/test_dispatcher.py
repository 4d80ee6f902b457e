"""Tests for processing passes: delivery, retries, expiry and escalation."""

import asyncio
from datetime import timedelta

import pytest
from fakes import InMemoryNotificationRepository, RecordingSender, make_notification

from notifications.application.dispatcher import (
    ChannelSenderRegistry,
    NotificationDispatcher,
)
from notifications.domain.entities import (
    NotificationChannel,
    NotificationSeverity,
    NotificationStatus,
)

TENANT = "tenant-a"


def _dispatcher(repository, senders, **kwargs):
    return NotificationDispatcher(
        notification_repository=repository,
        sender_registry=ChannelSenderRegistry(senders),
        **kwargs,
    )


class ExplodingSender(RecordingSender):
    async def send(self, notification, channel, tenant_id):
        raise RuntimeError("provider SDK crashed")


class VanishingRepository(InMemoryNotificationRepository):
    """Store whose listed notifications are deleted before the pass writes back."""

    def __init__(self):
        super().__init__()
        self.vanishing_ids = set()

    def _vanish(self, notifications):
        self.deleted.update(self.vanishing_ids)
        return notifications

    async def find_pending_for_processing(self, *args, **kwargs):
        return self._vanish(await super().find_pending_for_processing(*args, **kwargs))

    async def find_expired_notifications(self, *args, **kwargs):
        return self._vanish(await super().find_expired_notifications(*args, **kwargs))


class RacingRepository(InMemoryNotificationRepository):
    """Store where another writer sends each listed notification right after the read."""

    def _race(self, notifications):
        for notification in notifications:
            self.rows[notification.id].mark_as_sent(notification.created_at)
        return notifications

    async def find_pending_for_processing(self, *args, **kwargs):
        return self._race(await super().find_pending_for_processing(*args, **kwargs))

    async def find_notifications_requiring_escalation(self, *args, **kwargs):
        return self._race(
            await super().find_notifications_requiring_escalation(*args, **kwargs)
        )


class TestDelivery:
    async def test_successful_pass_marks_sent(self, dispatcher, repository, sender, now):
        notification = repository.add(
            make_notification(now=now, channels=["in_app", "email"])
        )

        summary = await dispatcher.process_tenant(TENANT, now=now)

        stored = repository.get(notification.id)
        assert stored.status == NotificationStatus.SENT
        assert stored.sent_at == now
        assert summary.processed == 1
        assert summary.sent == 1
        assert summary.details[0].channels == ["in_app", "email"]
        assert [call[1] for call in sender.calls] == [
            NotificationChannel.IN_APP,
            NotificationChannel.EMAIL,
        ]

    async def test_other_tenants_are_untouched(self, dispatcher, repository, sender, now):
        other = repository.add(make_notification(tenant_id="tenant-b", now=now))

        summary = await dispatcher.process_tenant(TENANT, now=now)

        assert summary.processed == 0
        assert repository.get(other.id).status == NotificationStatus.PENDING
        assert sender.calls == []

    async def test_future_notifications_wait(self, dispatcher, repository, now):
        notification = repository.add(
            make_notification(now=now, scheduled_at=now + timedelta(minutes=30))
        )

        summary = await dispatcher.process_tenant(TENANT, now=now)

        assert summary.processed == 0
        assert repository.get(notification.id).status == NotificationStatus.SCHEDULED

        await dispatcher.process_tenant(TENANT, now=now + timedelta(minutes=30))
        assert repository.get(notification.id).status == NotificationStatus.SENT

    async def test_partial_failure_still_counts_as_sent(self, repository, now):
        dispatcher = _dispatcher(
            repository,
            {
                NotificationChannel.IN_APP: RecordingSender(),
                NotificationChannel.EMAIL: RecordingSender(success=False, error="smtp down"),
            },
        )
        notification = repository.add(
            make_notification(now=now, channels=["in_app", "email"])
        )

        summary = await dispatcher.process_tenant(TENANT, now=now)

        stored = repository.get(notification.id)
        assert summary.sent == 1
        assert stored.status == NotificationStatus.SENT
        assert stored.retry_count == 0
        assert stored.metadata["channelFailures"] == [
            {"channel": "email", "error": "smtp down", "failedAt": now.isoformat()}
        ]

    async def test_sender_exception_is_a_retryable_failure(self, repository, now):
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: ExplodingSender()})
        notification = repository.add(make_notification(now=now))

        summary = await dispatcher.process_tenant(TENANT, now=now)

        stored = repository.get(notification.id)
        assert summary.failed == 1
        assert stored.status == NotificationStatus.FAILED
        assert "provider SDK crashed" in stored.metadata["failureHistory"][0]["reason"]
        assert stored.metadata["retryable"] is True

    async def test_missing_sender_is_a_permanent_failure(self, repository, now):
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: RecordingSender()})
        notification = repository.add(make_notification(now=now, channels=["webhook"]))

        await dispatcher.process_tenant(TENANT, now=now)

        stored = repository.get(notification.id)
        assert stored.status == NotificationStatus.FAILED
        assert stored.metadata["retryable"] is False
        assert "nextRetryAt" not in stored.metadata

    async def test_outside_delivery_window_is_skipped(self, dispatcher, repository, now):
        evening = now.replace(hour=21)
        notification = repository.add(make_notification(now=evening))

        summary = await dispatcher.process_tenant(TENANT, now=evening)

        assert summary.skipped == 1
        assert summary.details[0].reason == "outside delivery window"
        assert repository.get(notification.id).status == NotificationStatus.PENDING

    async def test_store_failure_does_not_abort_the_pass(self, dispatcher, repository, now):
        first = repository.add(make_notification(now=now))
        second = repository.add(make_notification(now=now))
        repository.fail_updates = True

        summary = await dispatcher.process_tenant(TENANT, now=now)

        assert summary.processed == 2
        assert {detail.notification_id for detail in summary.details} == {
            first.id,
            second.id,
        }
        assert all(detail.status == "error" for detail in summary.details)


class TestRetries:
    async def test_retry_budget_is_initial_attempt_plus_max_retries(self, repository, now):
        failing = RecordingSender(success=False, error="gateway timeout")
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: failing})
        notification = repository.add(make_notification(now=now, max_retries=1))

        first = await dispatcher.process_tenant(TENANT, now=now)

        stored = repository.get(notification.id)
        assert first.failed == 1
        assert stored.status == NotificationStatus.FAILED
        assert stored.retry_count == 1
        assert stored.next_retry_at == now + timedelta(seconds=600)

        # Backoff not yet elapsed
        early = await dispatcher.process_tenant(TENANT, now=now + timedelta(minutes=5))
        assert early.processed == 0

        second = await dispatcher.process_tenant(TENANT, now=now + timedelta(minutes=11))
        stored = repository.get(notification.id)
        assert second.failed == 1
        assert stored.retry_count == 2
        assert len(stored.metadata["failureHistory"]) == 2

        third = await dispatcher.process_tenant(TENANT, now=now + timedelta(minutes=45))
        stored = repository.get(notification.id)
        assert third.processed == 0
        assert stored.status == NotificationStatus.FAILED
        assert stored.retry_count == 2
        assert len(failing.calls) == 2

    async def test_retry_succeeds_once_provider_recovers(self, repository, now):
        flaky = RecordingSender(success=False)
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: flaky})
        notification = repository.add(make_notification(now=now))

        await dispatcher.process_tenant(TENANT, now=now)
        flaky.success = True
        summary = await dispatcher.process_tenant(TENANT, now=now + timedelta(minutes=11))

        stored = repository.get(notification.id)
        assert summary.sent == 1
        assert stored.status == NotificationStatus.SENT
        assert stored.retry_count == 1

    async def test_permanent_failure_is_never_retried(self, repository, now):
        rejecting = RecordingSender(success=False, retryable=False, error="invalid number")
        dispatcher = _dispatcher(repository, {NotificationChannel.SMS: rejecting})
        notification = repository.add(make_notification(now=now, channels=["sms"]))

        await dispatcher.process_tenant(TENANT, now=now)
        summary = await dispatcher.process_tenant(TENANT, now=now + timedelta(minutes=30))

        assert summary.processed == 0
        assert repository.get(notification.id).metadata["retryable"] is False
        assert len(rejecting.calls) == 1

    async def test_retries_stop_after_the_window(self, repository, now):
        failing = RecordingSender(success=False)
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: failing})
        repository.add(make_notification(now=now))

        await dispatcher.process_tenant(TENANT, now=now)
        summary = await dispatcher.process_tenant(TENANT, now=now + timedelta(hours=1))

        assert summary.processed == 0
        assert len(failing.calls) == 1


class TestOrdering:
    async def test_highest_priority_first_and_limit_applies(
        self, dispatcher, repository, sender, now
    ):
        low = repository.add(make_notification(now=now, severity="low"))
        critical = repository.add(
            make_notification(
                now=now, notification_type="system_outage", severity="critical"
            )
        )
        security = repository.add(
            make_notification(
                now=now,
                notification_type="security_login",
                severity="high",
                related_entity_type="session",
                related_entity_id="s-1",
            )
        )

        summary = await dispatcher.process_tenant(TENANT, limit=2, now=now)

        assert summary.processed == 2
        assert [call[0] for call in sender.calls] == [critical.id, security.id]
        assert repository.get(low.id).status == NotificationStatus.PENDING

    async def test_urgent_pass_only_takes_urgent_notifications(
        self, dispatcher, repository, now
    ):
        routine = repository.add(make_notification(now=now))
        urgent = repository.add(
            make_notification(
                now=now, notification_type="system_outage", severity="critical"
            )
        )
        overdue = make_notification(
            now=now - timedelta(hours=2), expires_at=now - timedelta(minutes=1)
        )
        overdue.mark_as_sent(now - timedelta(hours=2))
        repository.add(overdue)

        summary = await dispatcher.process_tenant(TENANT, urgent_only=True, now=now)

        assert summary.urgent_only is True
        assert summary.processed == 1
        assert summary.expired == 0
        assert repository.get(urgent.id).status == NotificationStatus.SENT
        assert repository.get(routine.id).status == NotificationStatus.PENDING
        assert repository.get(overdue.id).status == NotificationStatus.SENT


class TestExpiry:
    async def test_due_but_expired_notification_is_expired_not_sent(
        self, dispatcher, repository, sender, now
    ):
        notification = repository.add(
            make_notification(now=now, expires_at=now + timedelta(minutes=5))
        )

        summary = await dispatcher.process_tenant(TENANT, now=now + timedelta(minutes=10))

        assert summary.expired == 1
        assert repository.get(notification.id).status == NotificationStatus.EXPIRED
        assert sender.calls == []

    async def test_sweep_expires_sent_notifications(self, dispatcher, repository, now):
        notification = make_notification(now=now, expires_at=now + timedelta(minutes=5))
        notification.mark_as_sent(now)
        repository.add(notification)

        expired = await dispatcher.expire_overdue(TENANT, now=now + timedelta(minutes=6))

        assert expired == 1
        assert repository.get(notification.id).status == NotificationStatus.EXPIRED

    async def test_delivered_notifications_never_expire(self, dispatcher, repository, now):
        notification = make_notification(now=now, expires_at=now + timedelta(minutes=5))
        notification.mark_as_sent(now)
        notification.mark_as_delivered(now)
        repository.add(notification)

        expired = await dispatcher.expire_overdue(TENANT, now=now + timedelta(minutes=6))

        assert expired == 0
        assert repository.get(notification.id).status == NotificationStatus.DELIVERED


class TestEscalation:
    async def test_stale_critical_system_notification_is_escalated(
        self, dispatcher, repository, now
    ):
        original = repository.add(
            make_notification(
                now=now,
                notification_type="system_outage",
                severity="critical",
                title="Database cluster down",
                user_id="ops-1",
            )
        )

        escalations = await dispatcher.escalate_overdue(
            TENANT, now=now + timedelta(minutes=20)
        )

        assert len(escalations) == 1
        escalation = repository.get(escalations[0].id)
        assert escalation.type == "system_outage_escalation"
        assert escalation.title == "[ESCALATED] Database cluster down"
        assert escalation.severity == NotificationSeverity.CRITICAL
        assert escalation.status == NotificationStatus.PENDING
        assert escalation.user_id == "ops-1"
        assert escalation.related_entity_type == "notification"
        assert escalation.related_entity_id == original.id
        assert escalation.metadata["originalNotificationId"] == original.id
        assert escalation.channels == [
            NotificationChannel.IN_APP,
            NotificationChannel.EMAIL,
            NotificationChannel.SMS,
            NotificationChannel.DASHBOARD,
        ]

        stored = repository.get(original.id)
        assert stored.metadata["escalationNotificationId"] == escalation.id
        assert stored.is_escalated

    async def test_escalation_happens_once(self, dispatcher, repository, now):
        repository.add(
            make_notification(
                now=now, notification_type="system_outage", severity="critical"
            )
        )

        await dispatcher.escalate_overdue(TENANT, now=now + timedelta(minutes=20))
        again = await dispatcher.escalate_overdue(TENANT, now=now + timedelta(minutes=40))

        assert again == []
        assert len(repository.rows) == 2

    async def test_escalation_raises_original_severity(self, dispatcher, repository, now):
        original = repository.add(
            make_notification(
                now=now,
                notification_type="security_login",
                severity="medium",
                related_entity_type="session",
                related_entity_id="s-1",
            )
        )

        await dispatcher.escalate_overdue(TENANT, now=now + timedelta(minutes=6))

        stored = repository.get(original.id)
        assert stored.severity == NotificationSeverity.CRITICAL
        assert (
            stored.metadata["escalationReason"]
            == "Security notification pending for more than 5 minutes"
        )

    async def test_recent_notifications_are_not_escalated(
        self, dispatcher, repository, now
    ):
        repository.add(
            make_notification(
                now=now, notification_type="system_outage", severity="critical"
            )
        )

        assert await dispatcher.escalate_overdue(TENANT, now=now + timedelta(minutes=3)) == []

    @pytest.mark.parametrize("retry_count", [2, 3])
    async def test_repeatedly_failed_critical_is_escalated(
        self, dispatcher, repository, now, retry_count
    ):
        notification = make_notification(now=now, severity="critical")
        for _ in range(retry_count):
            notification.mark_as_failed("down", now)
        repository.add(notification)

        escalations = await dispatcher.escalate_overdue(TENANT, now=now)

        assert len(escalations) == 1
        assert escalations[0].type == "ticket_assigned_escalation"


class TestConcurrentChanges:
    async def test_notification_deleted_mid_pass_does_not_abort(self, sender, now):
        repository = VanishingRepository()
        deleted = repository.add(make_notification(now=now, severity="critical"))
        remaining = repository.add(make_notification(now=now, severity="low"))
        repository.vanishing_ids = {deleted.id}
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: sender})

        summary = await dispatcher.process_tenant(TENANT, now=now)

        assert summary.processed == 2
        assert summary.sent == 1
        errors = [detail for detail in summary.details if detail.status == "error"]
        assert [detail.notification_id for detail in errors] == [deleted.id]
        assert repository.get(remaining.id).status == NotificationStatus.SENT

    async def test_expiry_sweep_survives_deleted_notification(self, now):
        repository = VanishingRepository()
        deleted = repository.add(
            make_notification(now=now, expires_at=now + timedelta(minutes=1))
        )
        remaining = repository.add(
            make_notification(now=now, expires_at=now + timedelta(minutes=1))
        )
        repository.vanishing_ids = {deleted.id}
        dispatcher = _dispatcher(repository, {})

        expired = await dispatcher.expire_overdue(TENANT, now=now + timedelta(hours=1))

        assert expired == 1
        assert repository.get(remaining.id).status == NotificationStatus.EXPIRED

    async def test_write_after_another_writer_is_refused(self, sender, now):
        repository = RacingRepository()
        notification = repository.add(make_notification(now=now))
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: sender})

        summary = await dispatcher.process_tenant(TENANT, now=now)

        assert summary.sent == 0
        assert summary.skipped == 1
        assert summary.details[0].reason == "modified by another pass"
        stored = repository.get(notification.id)
        assert stored.status == NotificationStatus.SENT
        assert stored.sent_at == notification.created_at

    async def test_escalation_is_not_created_when_original_changed(self, now):
        repository = RacingRepository()
        original = repository.add(
            make_notification(
                now=now, notification_type="system_outage", severity="critical"
            )
        )
        dispatcher = _dispatcher(repository, {})

        escalations = await dispatcher.escalate_overdue(
            TENANT, now=now + timedelta(minutes=20)
        )

        assert escalations == []
        assert list(repository.rows) == [original.id]
        assert not repository.get(original.id).is_escalated

    async def test_overlapping_passes_send_once(self, repository, now):
        slow = RecordingSender(delay=0.05)
        dispatcher = _dispatcher(repository, {NotificationChannel.IN_APP: slow})
        repository.add(make_notification(now=now))

        first, second = await asyncio.gather(
            dispatcher.process_tenant(TENANT, now=now),
            dispatcher.process_tenant(TENANT, now=now),
        )

        assert len(slow.calls) == 1
        assert first.sent + second.sent == 1

    async def test_tenant_locks_are_dropped_after_passes(self, dispatcher, repository, now):
        repository.add(make_notification(now=now))
        repository.add(make_notification(tenant_id="tenant-b", now=now))

        await asyncio.gather(
            dispatcher.process_tenant(TENANT, now=now),
            dispatcher.process_tenant(TENANT, urgent_only=True, now=now),
            dispatcher.process_tenant("tenant-b", now=now),
        )

        assert dispatcher._tenant_locks == {}
        assert dispatcher._tenant_lock_holders == {}
