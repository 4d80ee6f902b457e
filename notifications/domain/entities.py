import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Dict, List

from pydantic import Field, ValidationError, dataclasses

from .exceptions import InvalidNotification, InvalidTransition


class NotificationSeverity(StrEnum):
    """Ordered severity scale, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_SCALE: List[NotificationSeverity] = [
    NotificationSeverity.LOW,
    NotificationSeverity.MEDIUM,
    NotificationSeverity.HIGH,
    NotificationSeverity.CRITICAL,
]


class NotificationStatus(StrEnum):
    """Lifecycle states of a notification."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


class NotificationChannel(StrEnum):
    """Delivery media a notification can be routed through."""

    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"
    DASHBOARD = "dashboard"


SENDABLE_STATUSES = {NotificationStatus.PENDING, NotificationStatus.SCHEDULED}
TERMINAL_STATUSES = {NotificationStatus.DELIVERED, NotificationStatus.EXPIRED}

ESCALATION_THRESHOLD = timedelta(minutes=15)
RETRY_WINDOW = timedelta(hours=1)

_VALID_TRANSITIONS = {
    NotificationStatus.PENDING: {
        NotificationStatus.SENT,
        NotificationStatus.FAILED,
        NotificationStatus.EXPIRED,
    },
    NotificationStatus.SCHEDULED: {
        NotificationStatus.SENT,
        NotificationStatus.FAILED,
        NotificationStatus.EXPIRED,
    },
    NotificationStatus.SENT: {
        NotificationStatus.DELIVERED,
        NotificationStatus.FAILED,
        NotificationStatus.EXPIRED,
    },
    NotificationStatus.FAILED: {
        NotificationStatus.PENDING,  # retry
        NotificationStatus.FAILED,
        NotificationStatus.EXPIRED,
    },
    NotificationStatus.DELIVERED: set(),
    NotificationStatus.EXPIRED: set(),
}


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclasses.dataclass
class Notification:
    """Core domain entity representing one unit of outbound alerting content.

    Identity is fixed at construction; lifecycle state is mutated in place
    through the `mark_as_*` methods, which validate every move against the
    transition table and raise `InvalidTransition` on illegal ones.

    Attributes
    ----------
    tenant_id : str
        Tenant that owns the notification. Every operation is scoped by it.
    type : str
        Free-form category. Its prefix (`system_`, `security_`, `ticket_`,
        `field_`, `timecard_`) drives channel, retry and escalation policy.
    title : str
        Short, non-empty headline.
    message : str
        Non-empty body text.
    channels : List[NotificationChannel]
        Ordered, de-duplicated, non-empty list of delivery channels.
    severity : NotificationSeverity, default=MEDIUM
        Urgency on the ordered scale low < medium < high < critical.
    status : NotificationStatus, default=PENDING
        Current lifecycle state.
    metadata : Dict[str, Any]
        Open key-value map; accumulates `failureHistory`, retry and
        escalation bookkeeping.
    scheduled_at : datetime
        When the notification becomes eligible for delivery.
    expires_at : datetime | None, optional
        Deadline after which delivery is pointless. Must follow `scheduled_at`.
    sent_at, delivered_at, failed_at, read_at : datetime | None, optional
        Set by the matching transitions.
    related_entity_type, related_entity_id : str | None, optional
        Loose reference to the originating business object.
    user_id : str | None, optional
        Recipient. None means broadcast to the tenant.
    retry_count : int, default=0
        Number of failed delivery attempts so far.
    max_retries : int, default=3
        Retries allowed after the initial attempt.
    created_at, updated_at : datetime
        Audit timestamps; `updated_at` never moves backwards.
    id : str
        Opaque unique identifier.
    """

    tenant_id: str
    type: str
    title: str
    message: str
    channels: List[NotificationChannel]
    severity: NotificationSeverity = NotificationSeverity.MEDIUM
    status: NotificationStatus = NotificationStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    read_at: datetime | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    user_id: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        for name in (
            "scheduled_at",
            "expires_at",
            "sent_at",
            "delivered_at",
            "failed_at",
            "read_at",
            "created_at",
            "updated_at",
        ):
            setattr(self, name, ensure_utc(getattr(self, name)))

        self.channels = list(dict.fromkeys(self.channels))
        self._ensure_invariants()

    @classmethod
    def create(
        cls,
        tenant_id: str,
        notification_type: str,
        title: str,
        message: str,
        channels: List[NotificationChannel | str],
        severity: NotificationSeverity | str = NotificationSeverity.MEDIUM,
        scheduled_at: datetime | None = None,
        expires_at: datetime | None = None,
        metadata: Dict[str, Any] | None = None,
        related_entity_type: str | None = None,
        related_entity_id: str | None = None,
        user_id: str | None = None,
        max_retries: int = 3,
        now: datetime | None = None,
    ) -> "Notification":
        """Build a new notification in its initial lifecycle state.

        Status is `scheduled` when `scheduled_at` lies in the future and
        `pending` otherwise. Field-level validation errors (unknown severity or
        channel, malformed timestamps) surface as `InvalidNotification`.

        Raises
        ------
        InvalidNotification
            If any invariant is violated.
        """
        now = ensure_utc(now) or utcnow()
        scheduled_at = ensure_utc(scheduled_at) or now
        status = (
            NotificationStatus.SCHEDULED
            if scheduled_at > now
            else NotificationStatus.PENDING
        )

        try:
            return cls(
                tenant_id=tenant_id,
                type=notification_type,
                title=title,
                message=message,
                channels=list(channels),
                severity=severity,
                status=status,
                metadata=dict(metadata or {}),
                scheduled_at=scheduled_at,
                expires_at=expires_at,
                related_entity_type=related_entity_type,
                related_entity_id=related_entity_id,
                user_id=user_id,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise InvalidNotification(
                [
                    f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                    for error in e.errors()
                ]
            ) from e

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------
    def is_expired(self, now: datetime | None = None) -> bool:
        """True when an expiry is set and has already passed."""
        now = ensure_utc(now) or utcnow()
        return self.expires_at is not None and now > self.expires_at

    def can_be_sent(self, now: datetime | None = None) -> bool:
        """True when pending/scheduled, not expired and already due."""
        now = ensure_utc(now) or utcnow()
        return (
            self.status in SENDABLE_STATUSES
            and not self.is_expired(now)
            and self.scheduled_at <= now
        )

    def requires_escalation(self, now: datetime | None = None) -> bool:
        """True for a critical notification left pending for 15 minutes or more."""
        now = ensure_utc(now) or utcnow()
        return (
            self.severity == NotificationSeverity.CRITICAL
            and self.status == NotificationStatus.PENDING
            and now - self.scheduled_at >= ESCALATION_THRESHOLD
        )

    def should_retry(self, now: datetime | None = None) -> bool:
        """True while a failed notification still has retries left inside the window."""
        now = ensure_utc(now) or utcnow()
        return (
            self.status == NotificationStatus.FAILED
            and self.retry_count < self.max_retries
            and self.failed_at is not None
            and now - self.failed_at < RETRY_WINDOW
        )

    def is_retryable(self, now: datetime | None = None) -> bool:
        """True when the dispatcher may make another delivery attempt.

        The attempt budget is the initial attempt plus `max_retries` retries,
        so a notification whose `retry_count` equals `max_retries` still gets
        its final attempt.
        """
        now = ensure_utc(now) or utcnow()
        return (
            self.status == NotificationStatus.FAILED
            and self.metadata.get("retryable", True)
            and self.retry_count <= self.max_retries
            and self.failed_at is not None
            and now - self.failed_at < RETRY_WINDOW
        )

    @property
    def next_retry_at(self) -> datetime | None:
        value = self.metadata.get("nextRetryAt")
        return ensure_utc(datetime.fromisoformat(value)) if value else None

    @property
    def is_escalated(self) -> bool:
        return "escalatedAt" in self.metadata

    @property
    def is_escalation(self) -> bool:
        """True for notifications derived from another by escalation."""
        return "originalNotificationId" in self.metadata

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def mark_as_sent(self, now: datetime | None = None) -> None:
        now = ensure_utc(now) or utcnow()
        self._assert_can_transition(NotificationStatus.SENT)

        self.status = NotificationStatus.SENT
        self.sent_at = now
        self._touch(now)

    def mark_as_delivered(self, now: datetime | None = None) -> None:
        now = ensure_utc(now) or utcnow()
        self._assert_can_transition(NotificationStatus.DELIVERED)

        self.status = NotificationStatus.DELIVERED
        self.delivered_at = now
        self._touch(now)

    def mark_as_failed(self, reason: str, now: datetime | None = None) -> None:
        """Record a failed delivery attempt.

        Increments `retry_count` and appends the reason, timestamp and attempt
        number to `metadata["failureHistory"]`.
        """
        now = ensure_utc(now) or utcnow()
        self._assert_can_transition(NotificationStatus.FAILED)

        self.retry_count += 1
        self.status = NotificationStatus.FAILED
        self.failed_at = now

        history = list(self.metadata.get("failureHistory", []))
        history.append(
            {
                "reason": reason,
                "failedAt": now.isoformat(),
                "attempt": self.retry_count,
            }
        )
        self.metadata["failureHistory"] = history
        self._touch(now)

    def mark_as_expired(self, now: datetime | None = None) -> bool:
        """Move to `expired` if the deadline has passed; otherwise do nothing.

        Returns
        -------
        bool
            True if the status changed.
        """
        now = ensure_utc(now) or utcnow()
        if self.status in TERMINAL_STATUSES or not self.is_expired(now):
            return False

        self.status = NotificationStatus.EXPIRED
        self._touch(now)
        return True

    def mark_for_retry(self, now: datetime | None = None) -> None:
        """Return a failed notification to `pending` for another attempt."""
        now = ensure_utc(now) or utcnow()
        self._assert_can_transition(NotificationStatus.PENDING)
        if self.retry_count > self.max_retries:
            raise InvalidTransition(self.id, self.status, NotificationStatus.PENDING)

        self.status = NotificationStatus.PENDING
        self._touch(now)

    def mark_as_read(self, now: datetime | None = None) -> bool:
        now = ensure_utc(now) or utcnow()
        if self.read_at is not None:
            return False

        self.read_at = now
        self._touch(now)
        return True

    def escalate_severity(self, now: datetime | None = None) -> bool:
        """Raise severity one step; no-op at critical."""
        now = ensure_utc(now) or utcnow()
        position = SEVERITY_SCALE.index(NotificationSeverity(self.severity))
        if position == len(SEVERITY_SCALE) - 1:
            return False

        self.severity = SEVERITY_SCALE[position + 1]
        self._touch(now)
        return True

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def schedule_retry(
        self, retry_at: datetime | None, now: datetime | None = None
    ) -> None:
        """Stamp the earliest next attempt, or flag the failure as permanent."""
        now = ensure_utc(now) or utcnow()
        if retry_at is None:
            self.metadata["retryable"] = False
            self.metadata.pop("nextRetryAt", None)
        else:
            self.metadata["retryable"] = True
            self.metadata["nextRetryAt"] = ensure_utc(retry_at).isoformat()
        self._touch(now)

    def record_channel_failures(
        self, failures: Dict[str, str], now: datetime | None = None
    ) -> None:
        """Keep partial per-channel failures of an otherwise successful attempt."""
        if not failures:
            return

        now = ensure_utc(now) or utcnow()
        recorded = list(self.metadata.get("channelFailures", []))
        for channel, error in failures.items():
            recorded.append(
                {"channel": channel, "error": error, "failedAt": now.isoformat()}
            )
        self.metadata["channelFailures"] = recorded
        self._touch(now)

    def record_escalation(
        self, escalation_id: str, reason: str, now: datetime | None = None
    ) -> None:
        now = ensure_utc(now) or utcnow()
        self.metadata["escalatedAt"] = now.isoformat()
        self.metadata["escalationNotificationId"] = escalation_id
        self.metadata["escalationReason"] = reason
        self._touch(now)

    def _assert_can_transition(self, target: NotificationStatus) -> None:
        current = NotificationStatus(self.status)
        if target not in _VALID_TRANSITIONS[current]:
            raise InvalidTransition(self.id, current, target)

    def _touch(self, now: datetime) -> None:
        self.updated_at = max(self.updated_at, now)
        self._ensure_invariants()

    def _ensure_invariants(self) -> None:
        violations = []

        if not self.tenant_id or not self.tenant_id.strip():
            violations.append("tenant_id must not be empty")
        if not self.title or not self.title.strip():
            violations.append("title must not be empty")
        if not self.message or not self.message.strip():
            violations.append("message must not be empty")
        if not self.type or not self.type.strip():
            violations.append("type must not be empty")
        if not self.channels:
            violations.append("at least one channel is required")
        if self.expires_at is not None and self.expires_at <= self.scheduled_at:
            violations.append("expires_at must be after scheduled_at")
        if self.max_retries < 0:
            violations.append("max_retries must not be negative")
        if self.retry_count < 0:
            violations.append("retry_count must not be negative")

        if violations:
            raise InvalidNotification(violations)


@dataclasses.dataclass
class DeliveryResult:
    """Outcome of one delivery attempt on one channel."""

    success: bool
    delivery_id: str | None = None
    error: str | None = None
    retryable: bool = True


@dataclasses.dataclass
class ChannelCapabilities:
    """Static description of what a channel can carry.

    Attributes
    ----------
    supports_rich_content : bool
        Whether markup/attachments survive delivery.
    max_content_length : int
        Maximum message length in characters.
    supports_batch : bool
        Whether several notifications can be sent in one provider call.
    average_delivery_time : float
        Typical delivery latency in seconds.
    """

    supports_rich_content: bool
    max_content_length: int
    supports_batch: bool
    average_delivery_time: float


@dataclasses.dataclass
class DispatchDetail:
    """Per-notification outcome of a dispatch pass."""

    notification_id: str
    status: str
    reason: str | None = None
    channels: List[str] = Field(default_factory=list)


@dataclasses.dataclass
class DispatchSummary:
    """Counters and details reported by one dispatch pass for one tenant."""

    tenant_id: str
    urgent_only: bool = False
    processed: int = 0
    sent: int = 0
    failed: int = 0
    expired: int = 0
    escalated: int = 0
    skipped: int = 0
    details: List[DispatchDetail] = Field(default_factory=list)


@dataclasses.dataclass
class NotificationFilters:
    """Query filters for listing and counting notifications."""

    status: List[NotificationStatus] | None = None
    type: List[str] | None = None
    severity: List[NotificationSeverity] | None = None
    user_id: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    scheduled_after: datetime | None = None
    scheduled_before: datetime | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    unread_only: bool = False


@dataclasses.dataclass
class NotificationStats:
    """Aggregated counts for a tenant's notifications."""

    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    by_channel: Dict[str, int] = Field(default_factory=dict)
    recent_activity: Dict[str, int] = Field(default_factory=dict)
