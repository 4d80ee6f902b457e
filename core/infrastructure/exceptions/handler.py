import traceback
from typing import Any, Dict, List

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifications.domain.exceptions import (
    InvalidNotification,
    InvalidTransition,
    NotificationNotFound,
    StoreFailure,
)

from ..factory import get_data_sanitizer

HTTP_ERROR_MESSAGES = {
    status.HTTP_400_BAD_REQUEST: "Bad request",
    status.HTTP_404_NOT_FOUND: "Resource not found",
    status.HTTP_409_CONFLICT: "Conflict occurred",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "Validation error",
    status.HTTP_429_TOO_MANY_REQUESTS: "Rate limit exceeded",
}


def normalize_error_detail(detail: Any) -> str | List[str] | Dict[str, Any]:
    """Normalize an error detail to a string, list of strings, or dictionary.

    Parameters
    ----------
    detail: Any
        Raw error detail (string, dictionary, or iterable).

    Returns
    -------
    str | List[str] | Dict[str, Any]
        Normalized representation suitable for API responses.
    """
    if isinstance(detail, str):
        return detail

    if isinstance(detail, dict):
        return {str(key): normalize_error_detail(value) for key, value in detail.items()}

    if hasattr(detail, "__iter__"):
        return [str(item) for item in detail]

    return str(detail)


def _error_response(
    payload: Dict[str, Any],
    status_code: int,
    message: str,
    errors: Dict[str, Any],
) -> JSONResponse:
    payload.update({"message": message, "errors": errors, "status_code": status_code})
    return JSONResponse(status_code=status_code, content=payload)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for the FastAPI application.

    Maps domain errors (invalid notifications, illegal lifecycle transitions,
    missing notifications, store outages) and framework errors (validation,
    HTTP, SQLAlchemy) to a consistent JSON envelope. Sensitive information is
    sanitized before anything is logged.

    Parameters
    ----------
    request: Request
        Incoming request.
    exc: Exception
        Exception that was raised.

    Returns
    -------
    JSONResponse
        Standardized error envelope with the matching HTTP status code.
    """
    sanitizer = await get_data_sanitizer()
    exc_msg = sanitizer.sanitize_exception_for_logging(exc)

    custom_response_data = {
        "success": False,
        "message": "An error occurred",
        "errors": {},
        "status_code": None,
        "path": str(request.url),
        "method": request.method,
    }

    if isinstance(exc, InvalidNotification):
        return _error_response(
            custom_response_data,
            status.HTTP_400_BAD_REQUEST,
            "Invalid notification",
            {"detail": exc.violations},
        )

    if isinstance(exc, InvalidTransition):
        return _error_response(
            custom_response_data,
            status.HTTP_409_CONFLICT,
            "Invalid notification state transition",
            {"detail": str(exc)},
        )

    if isinstance(exc, NotificationNotFound):
        return _error_response(
            custom_response_data,
            status.HTTP_404_NOT_FOUND,
            "Resource not found",
            {"detail": str(exc)},
        )

    if isinstance(exc, StoreFailure):
        logger.error(f"📁 StoreFailure -> {exc_msg}")
        return _error_response(
            custom_response_data,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Notification store unavailable",
            {"detail": "The notification store is temporarily unavailable"},
        )

    if isinstance(
        exc, (ValidationError, RequestValidationError, ResponseValidationError)
    ):
        errors = {}
        for error in exc.errors():
            field = ".".join(str(x) for x in error["loc"])
            errors["detail"] = f"{error['msg']} in {field}"

        return _error_response(
            custom_response_data,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            errors,
        )

    if isinstance(exc, ValueError):
        return _error_response(
            custom_response_data,
            status.HTTP_400_BAD_REQUEST,
            "Invalid field items",
            {"detail": str(exc)},
        )

    if isinstance(exc, IntegrityError):
        return _error_response(
            custom_response_data,
            status.HTTP_409_CONFLICT,
            "Database constraint violation",
            {"detail": str(exc.orig)},
        )

    if isinstance(exc, SQLAlchemyError):
        logger.error(f"📁 SQLAlchemyError -> {exc_msg}")
        return _error_response(
            custom_response_data,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Database error occurred",
            {"detail": "A database error occurred"},
        )

    if isinstance(exc, (HTTPException, StarletteHTTPException)):
        message = HTTP_ERROR_MESSAGES.get(exc.status_code, "HTTP error occurred")
        if exc.status_code >= 500:
            message = "Internal server error"

        return _error_response(
            custom_response_data,
            exc.status_code,
            message,
            {"detail": normalize_error_detail(exc.detail)},
        )

    tb = traceback.extract_tb(exc.__traceback__)
    if tb:
        last_frame = tb[-1]
        location = f'File "{last_frame.filename}", line {last_frame.lineno}, in {last_frame.name}'
    else:
        location = "No traceback available"

    logger.critical(f"☢️ Unhandled exception -> {exc_msg}\nLocation: {location}")

    return _error_response(
        custom_response_data,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        {"detail": "An unexpected error occurred"},
    )
