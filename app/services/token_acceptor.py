"""
Accept an invite token: re-validate, consume one use, link tenant to property.

The validator's answer is advisory. The store's conditional consume is the
only thing that decides whether a use was taken; a lost race surfaces as
CapacityReached, not as an error.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from app.config import settings
from app.core.exceptions import AuthenticationError, StoreUnavailable
from app.models.invite import (
    AcceptResult, CallerIdentity, ConsumeOutcome, InviteErrorKind, InviteToken
)
from app.services.abuse_guard import AbuseGuard
from app.services.token_store import TokenStore, call_store, utc_now
from app.services.token_validator import TokenValidator, check_token

logger = logging.getLogger(__name__)


class TokenAcceptor:
    def __init__(
        self,
        store: TokenStore,
        validator: TokenValidator,
        guard: AbuseGuard,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: Optional[int] = None
    ):
        self._store = store
        self._validator = validator
        self._guard = guard
        self._clock = clock
        self._max_attempts = max_attempts or settings.invite_consume_attempts

    async def accept(self, raw_token: str, caller: CallerIdentity) -> AcceptResult:
        if not caller.authenticated:
            raise AuthenticationError("Debes iniciar sesion para aceptar la invitacion")

        decision = self._guard.check_and_record(caller.rate_key, "accept")
        if not decision.allowed:
            return AcceptResult(
                ok=False, reason=InviteErrorKind.RATE_LIMITED, retry_after=decision.retry_after
            )

        try:
            return await self._accept(raw_token, caller)
        except StoreUnavailable as e:
            logger.warning(f"Invite accept unavailable: {e}")
            return AcceptResult(ok=False, reason=InviteErrorKind.UNAVAILABLE)

    async def _accept(self, raw_token: str, caller: CallerIdentity) -> AcceptResult:
        user_id = caller.user_id
        token = await self._validator.lookup(raw_token)
        reason = check_token(token, caller, self._clock())
        if token is None or (reason and reason != InviteErrorKind.CAPACITY_REACHED):
            logger.debug(f"Invite accept refused: {reason.value}")
            return AcceptResult(ok=False, reason=reason, token_id=token.id if token else None)

        # an exhausted token still answers AlreadyLinked to the tenants it linked
        existing = await call_store(lambda: self._store.find_active_link(user_id, token.property_id))
        if existing:
            logger.info(f"User {user_id[:8]}... already linked to property {token.property_id}")
            return self._already_linked(token)

        # consumed earlier but the link was never written (request cancelled in between)
        if await call_store(lambda: self._store.has_redemption(token.id, user_id)):
            await self._link(token, caller)
            return self._already_linked(token)

        for attempt in range(1, self._max_attempts + 1):
            now = self._clock()
            reason = check_token(token, caller, now)
            if reason:
                logger.debug(f"Invite {token.id} accept refused: {reason.value}")
                return AcceptResult(ok=False, reason=reason, token_id=token.id)

            expected = token.use_count
            result = await call_store(
                lambda: self._store.try_consume(token.id, expected, user_id, now)
            )

            if result.outcome == ConsumeOutcome.UPDATED:
                logger.info(
                    f"Invite {token.id} consumed ({result.token.use_count}/{result.token.max_uses})"
                )
                return await self._link(result.token, caller)

            if result.outcome == ConsumeOutcome.CAPACITY_EXCEEDED:
                logger.info(f"Invite {token.id} capacity reached during accept")
                return AcceptResult(ok=False, reason=InviteErrorKind.CAPACITY_REACHED, token_id=token.id)

            if result.outcome == ConsumeOutcome.ALREADY_REDEEMED:
                return await self._link(result.token or token, caller)

            if result.outcome == ConsumeOutcome.NOT_FOUND:
                return AcceptResult(ok=False, reason=InviteErrorKind.INVALID)

            # STALE or NOT_USABLE: re-check against the fresh row
            token = result.token
            logger.debug(f"Invite {token.id} changed under accept (attempt {attempt}): {result.outcome.value}")

        logger.warning(f"Invite {token.id} accept gave up after {self._max_attempts} contended attempts")
        return AcceptResult(ok=False, reason=InviteErrorKind.UNAVAILABLE, token_id=token.id)

    async def _link(self, token: InviteToken, caller: CallerIdentity) -> AcceptResult:
        now = self._clock()
        link, created = await call_store(
            lambda: self._store.ensure_link(caller.user_id, token.property_id, token.id, now)
        )
        if not created:
            return self._already_linked(token)

        logger.info(f"User {caller.user_id[:8]}... linked to property {link.property_id} via invite {token.id}")
        return AcceptResult(ok=True, already_linked=False, property_id=link.property_id, token_id=token.id)

    def _already_linked(self, token: InviteToken) -> AcceptResult:
        return AcceptResult(ok=True, already_linked=True, property_id=token.property_id, token_id=token.id)
