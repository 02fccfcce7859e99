import hmac
import logging
from typing import Optional

from fastapi import Request

from app.config import settings
from app.core.exceptions import AuthenticationError, AuthorizationError, ServiceUnavailableError
from app.core.middleware import get_correlation_id, get_session_context
from app.core.security import get_client_ip
from app.models.invite import CallerIdentity

logger = logging.getLogger(__name__)

ROLLOUT_KEY_HEADER = "X-Rollout-Key"


def get_caller_identity(request: Request) -> CallerIdentity:
    """
    Dependency: who is calling. Anonymous callers carry only their IP,
    which is what rate limiting and rollout bucketing key on.
    """
    session = get_session_context(request)
    client_ip = get_client_ip(request)
    if not session.is_valid:
        return CallerIdentity(client_ip=client_ip)
    return CallerIdentity(
        user_id=str(session.user_id),
        email=session.email,
        email_verified=bool(session.email_verified),
        client_ip=client_ip
    )


def require_caller_identity(request: Request) -> CallerIdentity:
    """Same as get_caller_identity but requires a session"""
    if get_session_context(request).unavailable:
        raise ServiceUnavailableError("Session store unavailable", details={"reason": "Unavailable"})
    caller = get_caller_identity(request)
    if not caller.authenticated:
        raise AuthenticationError("Authentication required")
    return caller


def correlation_id(request: Request) -> str:
    return get_correlation_id(request)


def require_rollout_operator(request: Request) -> str:
    """
    Dependency for rollout write/inspection endpoints.
    Returns the operator label used as updated_by.
    """
    configured = settings.rollout_admin_key
    if not configured:
        raise ServiceUnavailableError("Rollout operator key not configured")

    provided: Optional[str] = request.headers.get(ROLLOUT_KEY_HEADER)
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), configured.encode("utf-8")):
        logger.warning(f"Rejected rollout operator request from {get_client_ip(request)}")
        raise AuthorizationError("Invalid rollout key")

    session = get_session_context(request)
    return f"operator:{session.user_id}" if session.is_valid else "operator"
