"""Engine error taxonomy and FastAPI exception handlers.

Every engine error derives from StockAlertException and is rendered as:

    {"error": {"code": "...", "message": "...", "details": {...}}}
"""

import logging
from typing import Union

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class StockAlertException(Exception):
    """Base exception for stock alert engine errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: Union[dict, list, None] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class SettingsValidationError(StockAlertException):
    """A threshold set or settings update is internally inconsistent."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__(
            message="Invalid alert settings: " + "; ".join(problems),
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_ERROR",
            details={"problems": problems},
        )


class PermissionDeniedError(StockAlertException):
    """Exception for permission denied."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="PERMISSION_DENIED",
        )


class AlertNotFoundError(StockAlertException):
    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(
            message=f"Alert not found: {alert_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


class PersistenceError(StockAlertException):
    """State backend read/write failure."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="PERSISTENCE_ERROR",
        )


class EvaluationError(StockAlertException):
    """A single inventory item could not be evaluated."""

    def __init__(self, item_id: str | None, reason: str):
        self.item_id = item_id
        self.reason = reason
        super().__init__(
            message=f"Cannot evaluate item {item_id!r}: {reason}",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="EVALUATION_ERROR",
        )


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error: dict = {"code": error_code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


async def stockalert_exception_handler(
    request: Request,
    exc: StockAlertException,
) -> JSONResponse:
    logger.warning(
        "%s %s rejected: %s - %s",
        request.method, request.url.path, exc.error_code, exc.message,
    )
    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    # 401 from the bearer scheme, 503 before the engine is loaded
    if exc.status_code >= 500:
        logger.error("%s %s: HTTP %d %s", request.method, request.url.path, exc.status_code, exc.detail)
    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Malformed request bodies or query parameters (unknown severity, bad threshold shape)."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"][1:]) or str(error["loc"][0]),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Invalid request",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    app.add_exception_handler(StockAlertException, stockalert_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
