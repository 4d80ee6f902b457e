from .base import setup_logging
from .context import LoggingContext
from .middleware import RequestTrackingMiddleware

__all__ = ["setup_logging", "LoggingContext", "RequestTrackingMiddleware"]
