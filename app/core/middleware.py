import logging
import time
import uuid
from typing import Optional, Dict, Any
from fastapi import Request

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class SessionContext:
    """Session context object"""
    def __init__(self, session_data: Optional[Dict[str, Any]] = None, unavailable: bool = False):
        # session lookup failed (store outage); distinct from "no session"
        self.unavailable = unavailable
        if session_data:
            self.user_id = session_data['user_id']
            self.email = session_data['email']
            self.email_verified = session_data.get('email_verified', False)
            self.name = session_data.get('name')
            self.expires_at = session_data.get('expires_at')
            self.is_active = session_data.get('is_active', True)
            self.is_valid = True
        else:
            self.user_id = None
            self.email = None
            self.email_verified = False
            self.name = None
            self.expires_at = None
            self.is_active = False
            self.is_valid = False


async def correlation_id_middleware(request: Request, call_next):
    """Attach a correlation id (from the client header or a new uuid4) to request and response"""
    incoming = request.headers.get(CORRELATION_HEADER, "").strip()
    correlation_id = incoming[:64] if incoming else str(uuid.uuid4())
    request.state.correlation_id = correlation_id

    response = await call_next(request)
    response.headers[CORRELATION_HEADER] = correlation_id
    return response


async def session_validation_middleware(request: Request, call_next):
    """
    Middleware to read the session for every non-public endpoint
    Sets request.state.session_context for use in endpoints
    """
    path = request.url.path
    public_endpoints = ['/docs', '/redoc', '/openapi.json', '/health']

    if path == '/' or any(path.startswith(endpoint) for endpoint in public_endpoints):
        request.state.session_context = SessionContext()
        return await call_next(request)

    from app.core.exceptions import StoreUnavailable
    from app.core.security import get_session_from_request
    try:
        session_data = await get_session_from_request(request)
        request.state.session_context = SessionContext(session_data) if session_data else SessionContext()
    except StoreUnavailable as e:
        logger.warning(f"Session lookup unavailable for {path}: {e}")
        request.state.session_context = SessionContext(unavailable=True)

    return await call_next(request)


def get_session_context(request: Request) -> SessionContext:
    """Helper function to get session context from request"""
    return getattr(request.state, 'session_context', SessionContext())


def get_correlation_id(request: Request) -> str:
    correlation_id = getattr(request.state, 'correlation_id', None)
    if not correlation_id:
        correlation_id = str(uuid.uuid4())
        request.state.correlation_id = correlation_id
    return correlation_id


async def request_logging_middleware(request: Request, call_next):
    """Simple request logging middleware"""
    start_time = time.time()

    method = request.method
    path = request.url.path

    response = await call_next(request)

    duration = round((time.time() - start_time) * 1000, 2)

    session_context = getattr(request.state, 'session_context', None)
    user_id = getattr(session_context, 'user_id', None) if session_context else None
    user = f"{str(user_id)[:8]}..." if user_id else "anonymous"
    correlation_id = getattr(request.state, 'correlation_id', '-')

    logger.info(f"{method} {path} | {response.status_code} | {duration}ms | {user} | {correlation_id}")

    return response
