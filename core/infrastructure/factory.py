"""Process-wide instances of the shared core services."""

from loguru import logger

from config.base import get_settings

from .services import DataSanitizer, RedisService

_data_sanitizer: DataSanitizer | None = None
_redis_service: RedisService | None = None


async def get_data_sanitizer() -> DataSanitizer:
    """Shared sanitizer for request logs, error envelopes and outbox deliveries."""
    global _data_sanitizer

    if _data_sanitizer is None:
        _data_sanitizer = DataSanitizer()

    return _data_sanitizer


async def get_redis_service() -> RedisService:
    """Shared Redis client behind the pub/sub channel senders.

    The underlying connection is opened lazily, so obtaining the service never
    touches the network; call `ping()` on it to check connectivity.

    Returns
    -------
    RedisService
        The process-wide service, built from the current settings.
    """
    global _redis_service

    if _redis_service is None:
        _redis_service = RedisService(get_settings())

    return _redis_service


async def close_redis_service() -> None:
    """Close the shared Redis client, if one was created."""
    global _redis_service

    if _redis_service is None:
        return

    redis_service, _redis_service = _redis_service, None
    await redis_service.close()
    logger.debug("🔌 Redis pub/sub client closed")
