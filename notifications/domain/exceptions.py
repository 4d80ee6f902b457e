from typing import List


class NotificationError(Exception):
    """Base class for every notification engine error."""


class InvalidNotification(NotificationError):
    """Raised when a notification violates a construction invariant.

    Attributes
    ----------
    violations : List[str]
        Human-readable description of every violated rule.
    """

    def __init__(self, violations: List[str] | str) -> None:
        if isinstance(violations, str):
            violations = [violations]
        self.violations = list(violations)
        super().__init__("; ".join(self.violations))


class InvalidTransition(NotificationError):
    """Raised when a lifecycle mutation is not legal from the current status."""

    def __init__(self, notification_id: str, current: str, target: str) -> None:
        self.notification_id = notification_id
        self.current = current
        self.target = target
        super().__init__(
            f"Notification {notification_id} cannot transition from '{current}' to '{target}'"
        )


class ChannelDeliveryFailure(NotificationError):
    """A single channel failed to deliver a notification."""

    def __init__(self, channel: str, reason: str, retryable: bool = True) -> None:
        self.channel = channel
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"{channel}: {reason}")


class StoreFailure(NotificationError):
    """The notification store could not complete an operation."""


class NotificationNotFound(NotificationError):
    """Raised when a notification does not exist for the given tenant."""

    def __init__(self, notification_id: str, tenant_id: str) -> None:
        self.notification_id = notification_id
        self.tenant_id = tenant_id
        super().__init__(f"Notification {notification_id} not found")


class SchedulerTenantFailure(NotificationError):
    """Wraps any exception raised while processing one tenant's pass."""

    def __init__(self, tenant_id: str, cause: BaseException) -> None:
        self.tenant_id = tenant_id
        self.cause = cause
        super().__init__(
            f"Dispatch pass failed for tenant {tenant_id}: {type(cause).__name__}: {cause}"
        )


class ConcurrentModification(NotificationError):
    """Raised when a notification changed status since it was loaded."""

    def __init__(self, notification_id: str, expected: str, actual: str) -> None:
        self.notification_id = notification_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Notification {notification_id} is '{actual}', expected '{expected}'"
        )
