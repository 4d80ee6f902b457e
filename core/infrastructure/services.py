import json
import re
from typing import Any, Dict, List, Pattern
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from redis.asyncio import Redis

from config.base import Settings


class DataSanitizer:
    """Mask sensitive information in notification payloads before logging.

    Notification content routinely carries recipient contact details and
    provider credentials (webhook secrets, API tokens). Values under sensitive
    keys are masked outright; emails, phone numbers and sensitive URL query
    parameters are masked wherever they appear in free text.
    """

    MASK = "***MASKED***"

    def __init__(self):
        self.sensitive_patterns: List[Pattern[str]] = [
            re.compile(pattern, re.IGNORECASE)
            for pattern in (
                r"password",
                r"passwd",
                r"secret",
                r"token",
                r"api[_-]?key",
                r"auth",
                r"credential",
                r"signature",
                r"session",
            )
        ]

        self.email_pattern = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
        self.phone_pattern = re.compile(
            r"(?<!\w)\+\d{1,3}[\s-]?(?:\(\d{1,4}\)[\s-]?)?\d{2,5}[\s-]?\d{3,4}[\s-]?\d{0,4}(?!\w)"
        )
        self.url_with_params_pattern = re.compile(r"https?://[^\s?]+\?[^\s]+")

    def sanitize_for_logging(self, data: Any) -> Any:
        """Sanitize data for logging purposes.

        Parameters
        ----------
        data: Any
            Data to be sanitized (string, dict, list, etc.).

        Returns
        -------
        Any
            Sanitized copy of the data.
        """
        return self._sanitize_value(data)

    def sanitize_exception_for_logging(self, exception: BaseException) -> str:
        """Render an exception as a sanitized `Type: message` string."""
        return f"{type(exception).__name__}: {self._sanitize_string(str(exception))}"

    def _is_sensitive_field(self, field_name: str) -> bool:
        return any(pattern.search(field_name) for pattern in self.sensitive_patterns)

    def _mask_email(self, email: str) -> str:
        """Mask an email address, keeping the first and last character of the local part.

        Returns
        -------
        str
            Masked email string (e.g., e****l@example.com).
        """
        local, domain = email.split("@", 1)
        if len(local) <= 2:
            masked_local = "*" * len(local)
        else:
            masked_local = local[0] + "*" * (len(local) - 2) + local[-1]
        return f"{masked_local}@{domain}"

    def _mask_phone(self, phone: str) -> str:
        digits = re.sub(r"\D", "", phone)
        return "*" * (len(digits) - 4) + digits[-4:]

    def _sanitize_url_with_params(self, url: str) -> str:
        parsed = urlparse(url)
        params = [
            (key, self.MASK if self._is_sensitive_field(key) else value)
            for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        ]
        return urlunparse(parsed._replace(query=urlencode(params, safe="*")))

    def _sanitize_string(self, text: str, max_length: int = 1000) -> str:
        if len(text) > max_length:
            text = text[:max_length] + "..."

        text = self.url_with_params_pattern.sub(
            lambda m: self._sanitize_url_with_params(m.group()), text
        )
        text = self.email_pattern.sub(lambda m: self._mask_email(m.group()), text)
        text = self.phone_pattern.sub(lambda m: self._mask_phone(m.group()), text)
        return text

    def _sanitize_dict(self, data: Dict[str, Any], max_depth: int) -> Dict[str, Any]:
        if max_depth <= 0:
            return {"<max_depth_reached>": "..."}

        return {
            key: (
                self.MASK
                if self._is_sensitive_field(str(key))
                else self._sanitize_value(value, max_depth - 1)
            )
            for key, value in data.items()
        }

    def _sanitize_value(self, value: Any, max_depth: int = 5) -> Any:
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, dict):
            return self._sanitize_dict(value, max_depth)
        if isinstance(value, (list, tuple)):
            if max_depth <= 0:
                return ["<max_depth_reached>"]
            return [self._sanitize_value(item, max_depth - 1) for item in value[:10]]
        return self._sanitize_string(str(value))


class RedisService:
    """Shared asynchronous Redis client used for real-time notification fan-out."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._redis: Redis | None = None

    async def _get_redis(self) -> Redis:
        """Establish and return an asynchronous Redis client instance.

        Returns
        -------
        Redis
            Asynchronous Redis client instance.
        """
        if self._redis is None:
            self._redis = Redis(
                host=self._settings.redis_host,
                port=self._settings.redis_port,
                db=self._settings.redis_db,
                password=self._settings.redis_password,
                decode_responses=True,
                socket_connect_timeout=self._settings.redis_socket_connect_timeout,
                socket_timeout=self._settings.redis_socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30,
                ssl=self._settings.redis_use_ssl,
                max_connections=10,
            )

        return self._redis

    async def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        """Publish a JSON payload on a pub/sub channel.

        Returns
        -------
        int
            Number of subscribers that received the message.
        """
        redis_client = await self._get_redis()
        return await redis_client.publish(channel, json.dumps(payload, default=str))

    async def ping(self) -> bool:
        redis_client = await self._get_redis()
        return bool(await redis_client.ping())

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
