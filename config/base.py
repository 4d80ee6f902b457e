from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings with environment variable integration.

    Attributes
    ----------
    debug: bool, default=False
        Enable/disable debug mode.
    logging_level: str, default="INFO"
        Logging verbosity: e.g., "INFO", "DEBUG".
    base_dir: Path, default=auto-detected
        Project base directory.
    environment: str, default="development"
        Application environment: "development", "production", "test", etc.
    logs_dir: Path, derived from base_dir
        Directory for log files.
    log_file: Path, derived from base_dir
        Main log file path.
    database_url: str | None, optional
        Async SQLAlchemy URL. Defaults to a SQLite file in `base_dir`.
    redis_host: str, default="localhost"
        Redis server hostname.
    redis_port: int, default=6379
        Redis server port.
    redis_db: int, default=0
        Redis database index.
    redis_password: str | None, optional
        Redis password.
    redis_socket_connect_timeout: int, default=5
        Redis socket connect timeout in seconds.
    redis_socket_timeout: int, default=5
        Redis socket read/write timeout in seconds.
    redis_use_ssl: bool, default=False
        Use SSL for Redis connection.
    scheduler_enabled: bool, default=True
        Start the background notification scheduler with the application.
    scheduler_interval_seconds: float, default=30.0
        Normal processing cadence.
    scheduler_urgent_interval_seconds: float, default=5.0
        Urgent processing cadence.
    scheduler_batch_size: int, default=100
        Maximum notifications attempted per tenant on the normal cadence.
    scheduler_urgent_batch_size: int, default=50
        Maximum notifications attempted per tenant on the urgent cadence.
    urgent_priority_floor: int, default=1000
        Minimum processing priority picked up by urgent passes.
    tenant_ids: List[str], default=[]
        Tenants served by the scheduler. When empty, tenants are discovered
        from the notification store.
    delivery_window_start_hour: int, default=8
        First local hour (inclusive) in which non-urgent notifications are sent.
    delivery_window_end_hour: int, default=20
        Local hour (exclusive) after which non-urgent notifications are held.
    delivery_timezone: str, default="UTC"
        IANA timezone the delivery window is evaluated in.
    webhook_default_url: str | None, optional
        Webhook endpoint used when a notification carries no `webhookUrl`.
    webhook_timeout_seconds: float, default=10.0
        Timeout for outbound webhook calls.
    ssl_certfile_path: Path | None, optional
        Path to SSL certificate for Uvicorn.
    ssl_keyfile_path: Path | None, optional
        Path to SSL key for Uvicorn.

    Notes
    -----
    Paths are resolved relative to the project root.
    Secrets such as the Redis password should always be provided via
    environment variables, never committed to version control.
    """

    debug: bool = False
    logging_level: str = "INFO"
    base_dir: Path = Path(__file__).resolve().parent.parent
    environment: str = "development"
    logs_dir: Path = base_dir / "logs"
    log_file: Path = logs_dir / "notifications.log"
    database_url: str | None = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    redis_socket_connect_timeout: int = 5
    redis_socket_timeout: int = 5
    redis_use_ssl: bool = False
    scheduler_enabled: bool = True
    scheduler_interval_seconds: float = 30.0
    scheduler_urgent_interval_seconds: float = 5.0
    scheduler_batch_size: int = 100
    scheduler_urgent_batch_size: int = 50
    urgent_priority_floor: int = 1000
    tenant_ids: List[str] = []
    delivery_window_start_hour: int = 8
    delivery_window_end_hour: int = 20
    delivery_timezone: str = "UTC"
    webhook_default_url: str | None = None
    webhook_timeout_seconds: float = 10.0
    ssl_certfile_path: Path | None = None
    ssl_keyfile_path: Path | None = None

    model_config = SettingsConfigDict(env_file=".env", extra="allow")


@lru_cache
def get_settings() -> Settings:
    """Create and cache singleton Settings instance for application use.

    Returns
    -------
    Settings
        Cached singleton instance of application settings with all
        configuration values loaded and validated.
    """
    return Settings()
