from fastapi import Request
from fastapi.responses import JSONResponse
import logging
from typing import Dict, Any, Optional
from app.core.logging import log_request_context

logger = logging.getLogger(__name__)

class APIError(Exception):
    """Base API exception"""

    def __init__(self, message: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

class AuthenticationError(APIError):
    """Authentication related errors"""

    def __init__(self, message: str = "Authentication required", details: Dict[str, Any] = None):
        super().__init__(message, 401, details)

class AuthorizationError(APIError):
    """Authorization related errors"""

    def __init__(self, message: str = "Access denied", details: Dict[str, Any] = None):
        super().__init__(message, 403, details)

class NotFoundError(APIError):
    """Resource lookup errors"""

    def __init__(self, message: str = "Not found", details: Dict[str, Any] = None):
        super().__init__(message, 404, details)

class ValidationError(APIError):
    """Validation related errors"""

    def __init__(self, message: str = "Validation failed", details: Dict[str, Any] = None):
        super().__init__(message, 400, details)

class RateLimitError(APIError):
    """Too many attempts from one identity or IP"""

    def __init__(self, retry_after: int, message: str = "Too many requests", details: Dict[str, Any] = None):
        self.retry_after = retry_after
        super().__init__(message, 429, details)

class ServiceUnavailableError(APIError):
    """Transient backend failure surfaced to the caller"""

    def __init__(self, message: str = "Service temporarily unavailable", details: Dict[str, Any] = None):
        super().__init__(message, 503, details)


class StoreError(Exception):
    """Base class for persistence failures"""


class StoreConflict(StoreError):
    """Unique fingerprint collision on insert"""


class StoreUnavailable(StoreError):
    """Storage timed out or is unreachable after bounded retries"""

    def __init__(self, message: str = "Store unavailable", cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


async def api_exception_handler(request: Request, exc: APIError):
    """Handle custom API exceptions with logging"""

    correlation_id = getattr(request.state, 'correlation_id', None)
    context = log_request_context(correlation_id)
    context.update({
        "error_type": exc.__class__.__name__,
        "status_code": exc.status_code,
        "path": str(request.url.path),
        "method": request.method
    })

    if exc.status_code >= 500:
        logger.error(f"API Error: {exc.message}", extra={"context": context})
    else:
        logger.warning(f"API Error: {exc.message}", extra={"context": context})

    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "message": exc.message,
            "details": exc.details,
            "timestamp": context["timestamp"]
        },
        headers=headers
    )

async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    """Storage failures that escaped a service become 503"""
    return await api_exception_handler(
        request,
        ServiceUnavailableError(details={"reason": "Unavailable"})
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    correlation_id = getattr(request.state, 'correlation_id', None)
    context = log_request_context(correlation_id)
    context.update({
        "error_type": exc.__class__.__name__,
        "path": str(request.url.path),
        "method": request.method
    })

    logger.error(f"Unexpected error: {str(exc)}", extra={"context": context}, exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": True,
            "message": "Internal server error",
            "timestamp": context["timestamp"]
        }
    )
