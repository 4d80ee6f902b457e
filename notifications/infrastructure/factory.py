import httpx
from fastapi import Header, HTTPException, status

from config.base import get_settings
from config.database import get_session_factory
from core.infrastructure.factory import get_data_sanitizer, get_redis_service

from ..application.dispatcher import ChannelSenderRegistry, NotificationDispatcher
from ..application.ports import TenantRegistry
from ..application.scheduler import NotificationScheduler
from ..domain.entities import NotificationChannel
from .repositories import NotificationRepository
from .senders import LoggingChannelSender, RedisChannelSender, WebhookChannelSender
from .tenants import RepositoryTenantRegistry, StaticTenantRegistry

_notification_repository = None
_http_client = None
_sender_registry = None
_notification_dispatcher = None
_notification_scheduler = None


async def get_current_tenant_id(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
) -> str:
    """Resolve the tenant a request acts on from the `X-Tenant-ID` header.

    Raises
    ------
    HTTPException
        400 if the header is missing or blank.
    """
    if x_tenant_id is None or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    return x_tenant_id.strip()


async def get_notification_repository() -> NotificationRepository:
    """Provide a singleton NotificationRepository instance.

    Returns
    -------
    NotificationRepository
        Instance of NotificationRepository
    """
    global _notification_repository

    if _notification_repository is None:
        session_factory = await get_session_factory()
        _notification_repository = NotificationRepository(session_factory)

    return _notification_repository


async def get_http_client() -> httpx.AsyncClient:
    """Provide the shared outbound HTTP client used for webhooks."""
    global _http_client

    if _http_client is None:
        _http_client = httpx.AsyncClient(follow_redirects=False)

    return _http_client


async def get_sender_registry() -> ChannelSenderRegistry:
    """Provide the singleton channel-to-sender lookup table.

    In-app and dashboard notifications go through Redis pub/sub, webhooks
    through HTTP, and email, SMS and push through the logging outbox.

    Returns
    -------
    ChannelSenderRegistry
        Registry with a sender for every channel
    """
    global _sender_registry

    if _sender_registry is None:
        settings = get_settings()
        redis_sender = RedisChannelSender(await get_redis_service())
        outbox_sender = LoggingChannelSender(await get_data_sanitizer())
        webhook_sender = WebhookChannelSender(
            await get_http_client(),
            default_url=settings.webhook_default_url,
            timeout_seconds=settings.webhook_timeout_seconds,
        )

        _sender_registry = ChannelSenderRegistry(
            {
                NotificationChannel.IN_APP: redis_sender,
                NotificationChannel.DASHBOARD: redis_sender,
                NotificationChannel.EMAIL: outbox_sender,
                NotificationChannel.SMS: outbox_sender,
                NotificationChannel.PUSH: outbox_sender,
                NotificationChannel.WEBHOOK: webhook_sender,
            }
        )

    return _sender_registry


async def get_notification_dispatcher() -> NotificationDispatcher:
    """Provide a singleton NotificationDispatcher instance.

    Returns
    -------
    NotificationDispatcher
        Dispatcher wired to the repository and sender registry
    """
    global _notification_dispatcher

    if _notification_dispatcher is None:
        settings = get_settings()
        _notification_dispatcher = NotificationDispatcher(
            notification_repository=await get_notification_repository(),
            sender_registry=await get_sender_registry(),
            urgent_priority_floor=settings.urgent_priority_floor,
            delivery_window_start=settings.delivery_window_start_hour,
            delivery_window_end=settings.delivery_window_end_hour,
            delivery_timezone=settings.delivery_timezone,
        )

    return _notification_dispatcher


async def get_tenant_registry() -> TenantRegistry:
    """Provide the tenant registry for the scheduler.

    Configured tenant ids take precedence; otherwise tenants are discovered
    from the notification store.
    """
    settings = get_settings()
    if settings.tenant_ids:
        return StaticTenantRegistry(settings.tenant_ids)

    return RepositoryTenantRegistry(await get_notification_repository())


async def get_notification_scheduler() -> NotificationScheduler:
    """Provide a singleton NotificationScheduler instance.

    Returns
    -------
    NotificationScheduler
        Scheduler configured from settings
    """
    global _notification_scheduler

    if _notification_scheduler is None:
        settings = get_settings()
        _notification_scheduler = NotificationScheduler(
            dispatcher=await get_notification_dispatcher(),
            tenant_registry=await get_tenant_registry(),
            interval_seconds=settings.scheduler_interval_seconds,
            urgent_interval_seconds=settings.scheduler_urgent_interval_seconds,
            batch_size=settings.scheduler_batch_size,
            urgent_batch_size=settings.scheduler_urgent_batch_size,
        )

    return _notification_scheduler


async def close_notification_services():
    """Stop the scheduler and release outbound clients."""
    global _notification_repository, _http_client, _sender_registry
    global _notification_dispatcher, _notification_scheduler

    if _notification_scheduler:
        await _notification_scheduler.stop()

    if _http_client:
        await _http_client.aclose()

    _notification_repository = None
    _http_client = None
    _sender_registry = None
    _notification_dispatcher = None
    _notification_scheduler = None
