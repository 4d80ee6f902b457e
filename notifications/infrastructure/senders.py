import uuid
from datetime import UTC, datetime
from typing import Any, Dict

import httpx
from loguru import logger
from redis.exceptions import RedisError

from core.infrastructure.services import DataSanitizer, RedisService

from ..application.ports import ChannelSender
from ..domain.entities import ChannelCapabilities, DeliveryResult
from ..domain.entities import Notification as DomainNotification
from ..domain.entities import NotificationChannel

CHANNEL_CAPABILITIES: Dict[NotificationChannel, ChannelCapabilities] = {
    NotificationChannel.IN_APP: ChannelCapabilities(
        supports_rich_content=True,
        max_content_length=10_000,
        supports_batch=True,
        average_delivery_time=0.1,
    ),
    NotificationChannel.EMAIL: ChannelCapabilities(
        supports_rich_content=True,
        max_content_length=100_000,
        supports_batch=True,
        average_delivery_time=5.0,
    ),
    NotificationChannel.SMS: ChannelCapabilities(
        supports_rich_content=False,
        max_content_length=160,
        supports_batch=False,
        average_delivery_time=2.0,
    ),
    NotificationChannel.PUSH: ChannelCapabilities(
        supports_rich_content=False,
        max_content_length=4_096,
        supports_batch=True,
        average_delivery_time=1.0,
    ),
    NotificationChannel.WEBHOOK: ChannelCapabilities(
        supports_rich_content=True,
        max_content_length=1_000_000,
        supports_batch=False,
        average_delivery_time=1.0,
    ),
    NotificationChannel.DASHBOARD: ChannelCapabilities(
        supports_rich_content=True,
        max_content_length=10_000,
        supports_batch=True,
        average_delivery_time=0.1,
    ),
}


def serialize_notification(
    notification: DomainNotification, channel: NotificationChannel
) -> Dict[str, Any]:
    """Build the outbound payload shared by every channel."""
    return {
        "id": notification.id,
        "tenant_id": notification.tenant_id,
        "type": notification.type,
        "severity": str(notification.severity),
        "title": notification.title,
        "message": notification.message,
        "user_id": notification.user_id,
        "related_entity_type": notification.related_entity_type,
        "related_entity_id": notification.related_entity_id,
        "metadata": notification.metadata,
        "channel": str(channel),
        "scheduled_at": notification.scheduled_at.isoformat(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }


def _unsupported(channel: NotificationChannel, sender: ChannelSender) -> DeliveryResult:
    return DeliveryResult(
        success=False,
        error=f"{type(sender).__name__} does not deliver through {channel}",
        retryable=False,
    )


class RedisChannelSender(ChannelSender):
    """Real-time delivery over Redis pub/sub for the in-app and dashboard channels.

    In-app notifications go to `notifications:<tenant>:user:<user_id>`, or to
    `notifications:<tenant>:broadcast` when they have no recipient. Dashboard
    notifications go to `notifications:<tenant>:dashboard`.
    """

    supported_channels = {NotificationChannel.IN_APP, NotificationChannel.DASHBOARD}

    def __init__(self, redis_service: RedisService):
        self.redis_service = redis_service

    @staticmethod
    def channel_name(notification: DomainNotification, channel: NotificationChannel) -> str:
        """Resolve the pub/sub channel for a notification.

        Parameters
        ----------
        notification : DomainNotification
            Notification being delivered
        channel : NotificationChannel
            Delivery channel, in-app or dashboard

        Returns
        -------
        str
            Redis pub/sub channel name
        """
        prefix = f"notifications:{notification.tenant_id}"
        if channel == NotificationChannel.DASHBOARD:
            return f"{prefix}:dashboard"
        if notification.user_id is not None:
            return f"{prefix}:user:{notification.user_id}"
        return f"{prefix}:broadcast"

    async def send(
        self,
        notification: DomainNotification,
        channel: NotificationChannel,
        tenant_id: str,
    ) -> DeliveryResult:
        if channel not in self.supported_channels:
            return _unsupported(channel, self)

        pubsub_channel = self.channel_name(notification, channel)
        try:
            receivers = await self.redis_service.publish(
                pubsub_channel, serialize_notification(notification, channel)
            )
        except RedisError as e:
            logger.warning(f"Redis publish to {pubsub_channel} failed: {e}")
            return DeliveryResult(success=False, error=str(e), retryable=True)

        logger.info(
            f"Published notification {notification.id} to {pubsub_channel} ({receivers} receivers)"
        )
        return DeliveryResult(success=True, delivery_id=str(uuid.uuid4()))

    async def health_check(self, channel: NotificationChannel, tenant_id: str) -> bool:
        if channel not in self.supported_channels:
            return False

        try:
            return await self.redis_service.ping()
        except RedisError:
            return False

    def capabilities(self, channel: NotificationChannel) -> ChannelCapabilities:
        return CHANNEL_CAPABILITIES[NotificationChannel(channel)]


class WebhookChannelSender(ChannelSender):
    """HTTP webhook delivery.

    Posts the notification payload as JSON to `metadata["webhookUrl"]`, or to
    the configured default URL. Server errors, rate limiting and transport
    errors are retryable; any other non-2xx response is permanent.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        default_url: str | None = None,
        timeout_seconds: float = 10.0,
    ):
        self.client = client
        self.default_url = default_url
        self.timeout_seconds = timeout_seconds

    async def send(
        self,
        notification: DomainNotification,
        channel: NotificationChannel,
        tenant_id: str,
    ) -> DeliveryResult:
        if channel != NotificationChannel.WEBHOOK:
            return _unsupported(channel, self)

        url = notification.metadata.get("webhookUrl") or self.default_url
        if not url:
            return DeliveryResult(
                success=False, error="No webhook URL configured", retryable=False
            )

        try:
            response = await self.client.post(
                url,
                json=serialize_notification(notification, channel),
                headers={
                    "X-Tenant-ID": tenant_id,
                    "X-Notification-ID": notification.id,
                },
                timeout=self.timeout_seconds,
            )
        except httpx.TransportError as e:
            logger.warning(f"Webhook delivery of {notification.id} failed: {type(e).__name__}")
            return DeliveryResult(
                success=False, error=f"{type(e).__name__}: {e}", retryable=True
            )

        if response.is_success:
            return DeliveryResult(
                success=True,
                delivery_id=response.headers.get("X-Delivery-ID", str(uuid.uuid4())),
            )

        retryable = (
            response.status_code == httpx.codes.TOO_MANY_REQUESTS
            or response.status_code >= 500
        )
        return DeliveryResult(
            success=False,
            error=f"Webhook responded with HTTP {response.status_code}",
            retryable=retryable,
        )

    async def health_check(self, channel: NotificationChannel, tenant_id: str) -> bool:
        return (
            channel == NotificationChannel.WEBHOOK
            and not self.client.is_closed
            and self.default_url is not None
        )

    def capabilities(self, channel: NotificationChannel) -> ChannelCapabilities:
        return CHANNEL_CAPABILITIES[NotificationChannel(channel)]


class LoggingChannelSender(ChannelSender):
    """Outbox for email, SMS and push that records each delivery in the log.

    Content is trimmed to the channel's maximum length and contact details are
    masked before logging.
    """

    supported_channels = {
        NotificationChannel.EMAIL,
        NotificationChannel.SMS,
        NotificationChannel.PUSH,
    }

    def __init__(self, sanitizer: DataSanitizer):
        self.sanitizer = sanitizer

    async def send(
        self,
        notification: DomainNotification,
        channel: NotificationChannel,
        tenant_id: str,
    ) -> DeliveryResult:
        if channel not in self.supported_channels:
            return _unsupported(channel, self)

        payload = serialize_notification(notification, channel)
        payload["message"] = notification.message[
            : self.capabilities(channel).max_content_length
        ]
        delivery_id = str(uuid.uuid4())

        logger.bind(channel=str(channel), delivery_id=delivery_id).info(
            f"📨 {channel} notification {notification.id} for tenant {tenant_id}: "
            f"{self.sanitizer.sanitize_for_logging(payload)}"
        )
        return DeliveryResult(success=True, delivery_id=delivery_id)

    async def health_check(self, channel: NotificationChannel, tenant_id: str) -> bool:
        return channel in self.supported_channels

    def capabilities(self, channel: NotificationChannel) -> ChannelCapabilities:
        return CHANNEL_CAPABILITIES[NotificationChannel(channel)]
