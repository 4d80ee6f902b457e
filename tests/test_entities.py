"""Tests for the Notification entity: construction invariants and lifecycle."""

from datetime import UTC, datetime, timedelta

import pytest
from fakes import make_notification

from notifications.domain.entities import (
    DeliveryResult,
    Notification,
    NotificationChannel,
    NotificationSeverity,
    NotificationStatus,
)
from notifications.domain.exceptions import InvalidNotification, InvalidTransition

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)


class TestCreate:
    def test_due_notification_starts_pending(self):
        notification = make_notification(now=NOW)

        assert notification.status == NotificationStatus.PENDING
        assert notification.scheduled_at == NOW
        assert notification.created_at == NOW
        assert notification.retry_count == 0
        assert notification.id

    def test_future_notification_starts_scheduled(self):
        notification = make_notification(now=NOW, scheduled_at=NOW + timedelta(hours=1))

        assert notification.status == NotificationStatus.SCHEDULED

    def test_ids_are_unique(self):
        assert make_notification(now=NOW).id != make_notification(now=NOW).id

    def test_channels_are_deduplicated_in_order(self):
        notification = make_notification(now=NOW, channels=["email", "in_app", "email"])

        assert notification.channels == [
            NotificationChannel.EMAIL,
            NotificationChannel.IN_APP,
        ]

    def test_naive_datetimes_are_taken_as_utc(self):
        notification = make_notification(
            now=NOW, expires_at=datetime(2026, 3, 5, 12, 0)
        )

        assert notification.expires_at == datetime(2026, 3, 5, 12, 0, tzinfo=UTC)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"title": "   "},
            {"message": ""},
            {"tenant_id": ""},
            {"channels": []},
            {"max_retries": -1},
        ],
    )
    def test_rejects_invalid_fields(self, overrides):
        fields = {
            "tenant_id": "tenant-a",
            "notification_type": "ticket_assigned",
            "title": "Title",
            "message": "Message",
            "channels": ["in_app"],
            "now": NOW,
        }
        fields.update(overrides)

        with pytest.raises(InvalidNotification):
            Notification.create(**fields)

    def test_rejects_expiry_before_schedule(self):
        with pytest.raises(InvalidNotification) as exc:
            make_notification(now=NOW, expires_at=NOW - timedelta(minutes=1))

        assert "expires_at must be after scheduled_at" in exc.value.violations

    def test_unknown_severity_is_an_invalid_notification(self):
        with pytest.raises(InvalidNotification):
            make_notification(now=NOW, severity="urgent")

    def test_unknown_channel_is_an_invalid_notification(self):
        with pytest.raises(InvalidNotification):
            make_notification(now=NOW, channels=["carrier_pigeon"])


class TestPredicates:
    def test_can_be_sent_when_due(self):
        notification = make_notification(now=NOW)

        assert notification.can_be_sent(NOW)

    def test_cannot_be_sent_before_schedule(self):
        notification = make_notification(now=NOW, scheduled_at=NOW + timedelta(minutes=5))

        assert not notification.can_be_sent(NOW)
        assert notification.can_be_sent(NOW + timedelta(minutes=5))

    def test_cannot_be_sent_once_expired(self):
        notification = make_notification(now=NOW, expires_at=NOW + timedelta(minutes=5))

        assert notification.is_expired(NOW + timedelta(minutes=6))
        assert not notification.can_be_sent(NOW + timedelta(minutes=6))

    def test_requires_escalation_after_fifteen_minutes(self):
        notification = make_notification(now=NOW, severity="critical")

        assert not notification.requires_escalation(NOW + timedelta(minutes=14))
        assert notification.requires_escalation(NOW + timedelta(minutes=15))

    def test_non_critical_never_requires_escalation(self):
        notification = make_notification(now=NOW, severity="high")

        assert not notification.requires_escalation(NOW + timedelta(hours=2))

    def test_retryable_within_budget_and_window(self):
        notification = make_notification(now=NOW, max_retries=1)
        notification.mark_as_failed("down", NOW)

        assert notification.is_retryable(NOW + timedelta(minutes=10))
        assert not notification.should_retry(NOW + timedelta(minutes=10))
        assert not notification.is_retryable(NOW + timedelta(hours=1))

    def test_permanent_failure_is_not_retryable(self):
        notification = make_notification(now=NOW)
        notification.mark_as_failed("bad address", NOW)
        notification.schedule_retry(None, NOW)

        assert notification.metadata["retryable"] is False
        assert not notification.is_retryable(NOW + timedelta(minutes=1))


class TestTransitions:
    def test_send_then_deliver(self):
        notification = make_notification(now=NOW)

        notification.mark_as_sent(NOW + timedelta(seconds=1))
        notification.mark_as_delivered(NOW + timedelta(seconds=2))

        assert notification.status == NotificationStatus.DELIVERED
        assert notification.sent_at == NOW + timedelta(seconds=1)
        assert notification.delivered_at == NOW + timedelta(seconds=2)

    def test_delivered_is_terminal(self):
        notification = make_notification(now=NOW)
        notification.mark_as_sent(NOW)
        notification.mark_as_delivered(NOW)

        with pytest.raises(InvalidTransition):
            notification.mark_as_sent(NOW)
        with pytest.raises(InvalidTransition):
            notification.mark_as_failed("late", NOW)

    def test_cannot_deliver_before_sending(self):
        notification = make_notification(now=NOW)

        with pytest.raises(InvalidTransition):
            notification.mark_as_delivered(NOW)

    def test_failure_records_history(self):
        notification = make_notification(now=NOW)

        notification.mark_as_failed("smtp timeout", NOW)

        assert notification.status == NotificationStatus.FAILED
        assert notification.retry_count == 1
        assert notification.failed_at == NOW
        assert notification.metadata["failureHistory"] == [
            {"reason": "smtp timeout", "failedAt": NOW.isoformat(), "attempt": 1}
        ]

    def test_retry_returns_to_pending(self):
        notification = make_notification(now=NOW)
        notification.mark_as_failed("down", NOW)

        notification.mark_for_retry(NOW)

        assert notification.status == NotificationStatus.PENDING
        assert notification.retry_count == 1

    def test_retry_beyond_budget_is_rejected(self):
        notification = make_notification(now=NOW, max_retries=1)
        notification.mark_as_failed("down", NOW)
        notification.mark_for_retry(NOW)
        notification.mark_as_failed("down again", NOW)

        with pytest.raises(InvalidTransition):
            notification.mark_for_retry(NOW)

    def test_expire_only_after_deadline(self):
        notification = make_notification(now=NOW, expires_at=NOW + timedelta(minutes=5))

        assert notification.mark_as_expired(NOW) is False
        assert notification.mark_as_expired(NOW + timedelta(minutes=6)) is True
        assert notification.status == NotificationStatus.EXPIRED
        assert notification.mark_as_expired(NOW + timedelta(minutes=7)) is False

    def test_mark_as_read_is_idempotent(self):
        notification = make_notification(now=NOW)

        assert notification.mark_as_read(NOW) is True
        assert notification.mark_as_read(NOW + timedelta(minutes=1)) is False
        assert notification.read_at == NOW

    def test_escalate_severity_steps_once_and_stops_at_critical(self):
        notification = make_notification(now=NOW, severity="low")

        assert notification.escalate_severity(NOW) is True
        assert notification.severity == NotificationSeverity.MEDIUM

        notification.escalate_severity(NOW)
        notification.escalate_severity(NOW)
        assert notification.severity == NotificationSeverity.CRITICAL
        assert notification.escalate_severity(NOW) is False

    def test_updated_at_never_moves_backwards(self):
        notification = make_notification(now=NOW)
        notification.mark_as_sent(NOW + timedelta(minutes=10))

        notification.mark_as_delivered(NOW + timedelta(minutes=5))

        assert notification.updated_at == NOW + timedelta(minutes=10)

    def test_schedule_retry_stamps_next_attempt(self):
        notification = make_notification(now=NOW)
        notification.mark_as_failed("down", NOW)

        notification.schedule_retry(NOW + timedelta(minutes=10), NOW)

        assert notification.next_retry_at == NOW + timedelta(minutes=10)
        assert notification.metadata["retryable"] is True


def test_delivery_result_defaults_to_retryable():
    result = DeliveryResult(success=False, error="timeout")

    assert result.retryable is True
    assert result.delivery_id is None
