import time
import uuid
from typing import Callable

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from ..factory import get_data_sanitizer
from .context import LoggingContext

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-api-key",
    "x-auth-token",
    "x-csrf-token",
    "x-forwarded-for",
    "x-real-ip",
}


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Request tracking middleware that adds logging context to every API request.

    Each request gets a short request id, and its tenant (from `X-Tenant-ID`)
    is attached to every log line emitted while it is handled. The response
    carries the request id back in `X-Request-ID`.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        sanitizer = await get_data_sanitizer()

        request_context = {
            "client_ip": self._get_client_ip(request),
            "method": request.method,
            "path": str(request.url.path),
        }
        tenant_id = request.headers.get("X-Tenant-ID")
        if tenant_id:
            request_context["tenant_id"] = tenant_id

        async with LoggingContext(request_id=request_id, **request_context):
            logger.info(f"🔄 Incoming {request.method} request to {request.url.path} 🔄")

            if request.url.query:
                logger.debug(
                    sanitizer.sanitize_for_logging(
                        f"🔍 Query parameters: {request.url.query} 🔍"
                    )
                )
            logger.debug(
                f"Headers: {sanitizer.sanitize_for_logging(self._get_safe_headers(request.headers))}"
            )

            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    f"💥 Request failed: {sanitizer.sanitize_exception_for_logging(e)}"
                )
                raise

            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"✅ {request.method} {request.url.path} -> {response.status_code} "
                f"in {elapsed_ms:.1f}ms"
            )
            response.headers["X-Request-ID"] = request_id
            return response

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"

    def _get_safe_headers(self, headers) -> dict:
        return {
            name: value
            for name, value in headers.items()
            if name.lower() not in SENSITIVE_HEADERS
        }
