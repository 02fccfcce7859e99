import logging
from fastapi import Request
from typing import Optional

from app.config import settings

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session-token"


def get_session_token(request: Request) -> Optional[str]:
    """Session id from the session-token cookie or an Authorization: Bearer header (mobile)"""
    session_token = request.cookies.get(SESSION_COOKIE)
    if session_token:
        return session_token

    auth_header = request.headers.get("authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def get_client_ip(request: Request, trusted_proxies: Optional[int] = None) -> Optional[str]:
    """
    Client IP address used for rate limiting.

    X-Forwarded-For is only read when the app sits behind trusted proxies
    (TRUSTED_PROXY_COUNT). Each proxy appends the peer it saw, so the client
    is the entry the outermost trusted proxy wrote; anything to its left was
    sent by the client and is ignored.
    """
    trusted_proxies = settings.trusted_proxy_count if trusted_proxies is None else trusted_proxies
    peer = request.client.host if request.client else None
    if trusted_proxies <= 0:
        return peer

    forwarded_for = request.headers.get('x-forwarded-for')
    if not forwarded_for:
        return peer
    hops = [hop.strip() for hop in forwarded_for.split(',') if hop.strip()]
    if len(hops) < trusted_proxies:
        return peer
    return hops[-trusted_proxies]


async def _fetch_session(session_token: str) -> Optional[dict]:
    from app.database import get_db_connection

    async with get_db_connection(use_transaction=False) as conn:
        session_result = await conn.fetchrow("""
            SELECT s.user_id, s.expires_at, s.is_active,
                   p.email, p.email_verified, p.name
            FROM sessions s
            JOIN profiles p ON s.user_id = p.id
            WHERE s.id = $1
              AND s.expires_at > NOW()
              AND s.is_active = true
            LIMIT 1
        """, session_token)

        if not session_result:
            return None

        return {
            'user_id': str(session_result['user_id']),
            'email': session_result['email'],
            'email_verified': bool(session_result['email_verified']),
            'name': session_result['name'],
            'expires_at': session_result['expires_at'],
            'is_active': session_result['is_active']
        }


async def get_session_from_request(request: Request) -> Optional[dict]:
    """
    Get session data from request using session token.
    Sessions are created by the main application; this service only reads them.
    Returns session data with user_id, email, email_verified, or None when
    there is no such session.

    Raises:
        StoreUnavailable: the sessions table could not be read
    """
    from app.services.token_store import call_store

    session_token = get_session_token(request)
    if not session_token:
        return None

    return await call_store(lambda: _fetch_session(session_token))
