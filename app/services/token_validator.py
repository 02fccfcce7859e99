"""
Read-only validation of a raw invite token.

Validation is advisory: it never mutates the token. TokenAcceptor repeats
the same checks before its conditional write.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

from app.config import settings
from app.core.exceptions import StoreUnavailable
from app.models.invite import (
    CallerIdentity, InviteErrorKind, InviteStatus, InviteToken,
    ValidationResult, normalize_email
)
from app.services.abuse_guard import AbuseGuard
from app.services.token_codec import TokenCodec
from app.services.token_store import TokenStore, call_store, utc_now

logger = logging.getLogger(__name__)


def caller_matches(token: InviteToken, caller: CallerIdentity) -> bool:
    if not token.intended_email:
        return True
    if not caller.authenticated or not caller.email_verified:
        return False
    return normalize_email(caller.email) == token.intended_email


def check_token(
    token: Optional[InviteToken],
    caller: CallerIdentity,
    now: datetime
) -> Optional[InviteErrorKind]:
    """
    First failing check for a token, or None when it is usable by the caller.

    Order: not found, expired, revoked, capacity, wrong account.
    """
    if token is None:
        return InviteErrorKind.INVALID
    if token.is_expired(now):
        return InviteErrorKind.EXPIRED
    if token.status == InviteStatus.REVOKED:
        return InviteErrorKind.REVOKED
    if not token.has_capacity() or token.status == InviteStatus.EXHAUSTED:
        return InviteErrorKind.CAPACITY_REACHED
    if not caller_matches(token, caller):
        return InviteErrorKind.WRONG_ACCOUNT
    return None


def visible_reason(reason: InviteErrorKind, caller: CallerIdentity) -> InviteErrorKind:
    # unauthenticated callers must not learn that an email-bound token exists
    if reason == InviteErrorKind.WRONG_ACCOUNT and not caller.authenticated:
        return InviteErrorKind.INVALID
    return reason


class TokenValidator:
    def __init__(
        self,
        store: TokenStore,
        codec: TokenCodec,
        guard: AbuseGuard,
        clock: Callable[[], datetime] = utc_now,
        failure_floor_ms: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timer: Callable[[], float] = time.perf_counter
    ):
        self._store = store
        self._codec = codec
        self._guard = guard
        self._clock = clock
        self._failure_floor_ms = settings.invite_failure_floor_ms if failure_floor_ms is None else failure_floor_ms
        self._sleep = sleep
        self._timer = timer

    async def lookup(self, raw_token: str) -> Optional[InviteToken]:
        fingerprint = self._codec.fingerprint(raw_token)
        return await call_store(lambda: self._store.find_by_fingerprint(fingerprint))

    async def validate(self, raw_token: str, caller: CallerIdentity) -> ValidationResult:
        """
        Validate a raw token for a caller and build the property preview.

        Returns:
            ValidationResult with ok=True and preview, or ok=False and reason.
            Failures are padded to the same minimum latency.
        """
        started = self._timer()

        decision = self._guard.check_and_record(caller.rate_key, "validate")
        if not decision.allowed:
            return ValidationResult(
                ok=False, reason=InviteErrorKind.RATE_LIMITED, retry_after=decision.retry_after
            )

        try:
            result = await self._validate(raw_token, caller)
        except StoreUnavailable as e:
            logger.warning(f"Invite validation unavailable: {e}")
            result = ValidationResult(ok=False, reason=InviteErrorKind.UNAVAILABLE)

        if not result.ok:
            result.reason = visible_reason(result.reason, caller)
            if result.reason != InviteErrorKind.UNAVAILABLE:
                logger.debug(f"Invite validation failed: {result.reason.value}")
            await self._pad(started)
        return result

    async def _validate(self, raw_token: str, caller: CallerIdentity) -> ValidationResult:
        token = await self.lookup(raw_token)
        reason = check_token(token, caller, self._clock())
        if reason:
            return ValidationResult(ok=False, reason=reason, token=token)

        preview = await call_store(lambda: self._store.get_property_preview(token.property_id))
        if preview is None:
            logger.warning(f"Invite {token.id} points to missing property {token.property_id}")
            return ValidationResult(ok=False, reason=InviteErrorKind.INVALID)

        return ValidationResult(ok=True, token=token, preview=preview)

    async def _pad(self, started: float):
        remaining = self._failure_floor_ms / 1000.0 - (self._timer() - started)
        if remaining > 0:
            await self._sleep(remaining)
