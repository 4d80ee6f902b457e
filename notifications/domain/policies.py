"""Stateless notification policies.

Channel selection, retry backoff, escalation triggers, validation, template
rendering, queue priority and the delivery window all live here as plain
functions of their inputs and never touch I/O.
"""

import re
from datetime import datetime, timedelta
from typing import Dict, Iterable, List
from zoneinfo import ZoneInfo

from pydantic import dataclasses

from .entities import (
    SEVERITY_SCALE,
    Notification,
    NotificationChannel,
    NotificationSeverity,
    NotificationStatus,
    ensure_utc,
    utcnow,
)

PLACEHOLDER_PATTERN = re.compile(r"\{\{(.+?)\}\}")

SYSTEM_PREFIX = "system_"
SECURITY_PREFIX = "security_"
FIELD_PREFIX = "field_"
TICKET_PREFIX = "ticket_"
TIMECARD_PREFIX = "timecard_"

SEVERITY_BASE_SCORE = {
    NotificationSeverity.CRITICAL: 1000,
    NotificationSeverity.HIGH: 500,
    NotificationSeverity.MEDIUM: 100,
    NotificationSeverity.LOW: 10,
}

TYPE_BONUS = {
    SYSTEM_PREFIX: 200,
    SECURITY_PREFIX: 150,
    FIELD_PREFIX: 100,
}

SYSTEM_PENDING_THRESHOLD = timedelta(minutes=15)
SECURITY_PENDING_THRESHOLD = timedelta(minutes=5)

DEFAULT_CHANNELS = [NotificationChannel.IN_APP, NotificationChannel.EMAIL]


@dataclasses.dataclass
class RetryStrategy:
    should_retry: bool
    retry_after_seconds: int
    max_retries: int


@dataclasses.dataclass
class EscalationDecision:
    should_escalate: bool
    reason: str | None = None
    new_severity: NotificationSeverity | None = None


def severity_rank(severity: NotificationSeverity | str) -> int:
    return SEVERITY_SCALE.index(NotificationSeverity(severity))


def determine_channels(
    notification_type: str,
    severity: NotificationSeverity | str,
    user_preferences: Iterable[NotificationChannel | str] | None = None,
) -> List[NotificationChannel]:
    """Pick the delivery channels for a type and severity.

    Parameters
    ----------
    notification_type : str
        Notification type; only its prefix matters.
    severity : NotificationSeverity | str
        Notification severity.
    user_preferences : Iterable[NotificationChannel | str] | None, optional
        Channels the recipient opted into. Honoured only for types without a
        class rule and only when the notification is not critical.

    Returns
    -------
    List[NotificationChannel]
        Ordered channel list.
    """
    severity = NotificationSeverity(severity)

    if notification_type.startswith(SYSTEM_PREFIX):
        if severity == NotificationSeverity.CRITICAL:
            return [
                NotificationChannel.IN_APP,
                NotificationChannel.EMAIL,
                NotificationChannel.SMS,
                NotificationChannel.DASHBOARD,
            ]
        if severity == NotificationSeverity.HIGH:
            return [
                NotificationChannel.IN_APP,
                NotificationChannel.EMAIL,
                NotificationChannel.DASHBOARD,
            ]
        return [NotificationChannel.IN_APP, NotificationChannel.DASHBOARD]

    if notification_type.startswith(SECURITY_PREFIX):
        return [
            NotificationChannel.IN_APP,
            NotificationChannel.EMAIL,
            NotificationChannel.SMS,
        ]
    if notification_type.startswith(FIELD_PREFIX):
        return [
            NotificationChannel.IN_APP,
            NotificationChannel.PUSH,
            NotificationChannel.SMS,
        ]
    if notification_type.startswith(TICKET_PREFIX):
        return [NotificationChannel.IN_APP, NotificationChannel.EMAIL]
    if notification_type.startswith(TIMECARD_PREFIX):
        return [NotificationChannel.IN_APP]

    if user_preferences and severity != NotificationSeverity.CRITICAL:
        preferred = [NotificationChannel(channel) for channel in user_preferences]
        return list(dict.fromkeys(preferred))

    return list(DEFAULT_CHANNELS)


def retry_strategy(
    notification_type: str,
    severity: NotificationSeverity | str,
    retry_count: int,
) -> RetryStrategy:
    """Compute the backoff for the next attempt after `retry_count` failures."""
    severity = NotificationSeverity(severity)

    if (
        notification_type.startswith(SYSTEM_PREFIX)
        and severity == NotificationSeverity.CRITICAL
    ):
        base, cap, max_retries = 30, 300, 5
    elif notification_type.startswith(SECURITY_PREFIX):
        base, cap, max_retries = 60, 600, 3
    elif notification_type.startswith(FIELD_PREFIX):
        return RetryStrategy(
            should_retry=retry_count < 2, retry_after_seconds=120, max_retries=2
        )
    else:
        base, cap, max_retries = 300, 1800, 3

    return RetryStrategy(
        should_retry=retry_count < max_retries,
        retry_after_seconds=min(base * 2**retry_count, cap),
        max_retries=max_retries,
    )


def should_escalate(
    notification: Notification, now: datetime | None = None
) -> EscalationDecision:
    """Decide whether a notification needs escalating and to which severity.

    `new_severity` is only set when the original's severity must be raised.
    """
    now = ensure_utc(now) or utcnow()
    status = NotificationStatus(notification.status)
    severity = NotificationSeverity(notification.severity)
    pending_for = now - notification.scheduled_at

    if (
        severity == NotificationSeverity.CRITICAL
        and status == NotificationStatus.FAILED
        and notification.retry_count >= 2
    ):
        return EscalationDecision(
            should_escalate=True,
            reason="Critical notification failed multiple times",
        )

    if (
        notification.type.startswith(SYSTEM_PREFIX)
        and status == NotificationStatus.PENDING
        and pending_for > SYSTEM_PENDING_THRESHOLD
    ):
        return EscalationDecision(
            should_escalate=True,
            reason="System notification pending for more than 15 minutes",
            new_severity=(
                NotificationSeverity.HIGH
                if severity_rank(severity) < severity_rank(NotificationSeverity.HIGH)
                else None
            ),
        )

    if (
        notification.type.startswith(SECURITY_PREFIX)
        and status == NotificationStatus.PENDING
        and pending_for > SECURITY_PENDING_THRESHOLD
    ):
        return EscalationDecision(
            should_escalate=True,
            reason="Security notification pending for more than 5 minutes",
            new_severity=(
                NotificationSeverity.CRITICAL
                if severity != NotificationSeverity.CRITICAL
                else None
            ),
        )

    if (
        notification.type.startswith(FIELD_PREFIX)
        and status == NotificationStatus.FAILED
    ):
        return EscalationDecision(
            should_escalate=True,
            reason="Field notification delivery failed",
            new_severity=(
                NotificationSeverity.HIGH
                if severity_rank(severity) < severity_rank(NotificationSeverity.HIGH)
                else None
            ),
        )

    if notification.requires_escalation(now):
        return EscalationDecision(
            should_escalate=True,
            reason="Critical notification pending beyond escalation threshold",
        )

    return EscalationDecision(should_escalate=False)


def validate(notification: Notification) -> List[str]:
    """Return every rule the notification violates; empty when valid."""
    violations = []

    if not notification.title or not notification.title.strip():
        violations.append("Title is required")
    if not notification.message or not notification.message.strip():
        violations.append("Message is required")
    if not notification.tenant_id or not notification.tenant_id.strip():
        violations.append("Tenant ID is required")
    if not notification.channels:
        violations.append("At least one delivery channel is required")
    if (
        notification.expires_at is not None
        and notification.expires_at <= notification.scheduled_at
    ):
        violations.append("Expiration date must be after scheduled date")
    if notification.max_retries < 0:
        violations.append("Max retries cannot be negative")

    severity = NotificationSeverity(notification.severity)
    if notification.type.startswith(SYSTEM_PREFIX) and severity not in (
        NotificationSeverity.HIGH,
        NotificationSeverity.CRITICAL,
    ):
        violations.append("System notifications must be high or critical severity")
    if notification.type.startswith(SECURITY_PREFIX) and not (
        notification.related_entity_type and notification.related_entity_id
    ):
        violations.append("Security notifications must reference a related entity")
    if notification.type.startswith(FIELD_PREFIX) and not notification.user_id:
        violations.append("Field notifications must target a user")

    return violations


def render(
    title_template: str, message_template: str, variables: Dict[str, object]
) -> tuple[str, str]:
    """Substitute `{{key}}` placeholders in one pass.

    Substituted values are never rescanned and unknown placeholders are left
    as-is.
    """

    def substitute(match: re.Match) -> str:
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)

    return (
        PLACEHOLDER_PATTERN.sub(substitute, title_template),
        PLACEHOLDER_PATTERN.sub(substitute, message_template),
    )


def calculate_priority(notification: Notification, now: datetime) -> int:
    """Processing-queue score; higher is processed first."""
    now = ensure_utc(now)
    score = SEVERITY_BASE_SCORE[NotificationSeverity(notification.severity)]

    for prefix, bonus in TYPE_BONUS.items():
        if notification.type.startswith(prefix):
            score += bonus
            break

    age_minutes = int((now - notification.created_at).total_seconds() // 60)
    score += 2 * max(age_minutes, 0)
    score -= 50 * notification.retry_count

    return max(score, 0)


def is_within_delivery_window(
    notification: Notification,
    now: datetime,
    start_hour: int = 8,
    end_hour: int = 20,
    timezone: str = "UTC",
) -> bool:
    """Whether the notification may be delivered at `now`.

    Critical, system and security notifications are never held back. Others
    go out only while the local hour in `timezone` is in [start_hour, end_hour).
    """
    if (
        notification.severity == NotificationSeverity.CRITICAL
        or notification.type.startswith(SYSTEM_PREFIX)
        or notification.type.startswith(SECURITY_PREFIX)
    ):
        return True

    local_hour = ensure_utc(now).astimezone(ZoneInfo(timezone)).hour
    return start_hour <= local_hour < end_hour
