"""
Service for issuing, listing and revoking property invite tokens
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from app.config import settings
from app.core.exceptions import (
    AuthenticationError, AuthorizationError, NotFoundError,
    RateLimitError, ServiceUnavailableError, StoreConflict, ValidationError
)
from app.models.invite import (
    CallerIdentity, InviteIssueRequest, InviteLegacyPath, InviteStatus,
    InviteSummary, InviteToken, IssuedInvite, RevokeOutcome, normalize_email
)
from app.services.abuse_guard import AbuseGuard
from app.services.rollout_gate import RolloutGate
from app.services.token_codec import TokenCodec
from app.services.token_store import TokenStore, call_store, utc_now

logger = logging.getLogger(__name__)


class TokenIssuer:
    def __init__(
        self,
        store: TokenStore,
        codec: TokenCodec,
        gate: RolloutGate,
        guard: AbuseGuard,
        clock: Callable[[], datetime] = utc_now,
        feature_name: Optional[str] = None
    ):
        self._store = store
        self._codec = codec
        self._gate = gate
        self._guard = guard
        self._clock = clock
        self.feature_name = feature_name or settings.rollout_feature_name

    async def _require_owner(self, issuer_id: str, property_id: str):
        owner_id = await call_store(lambda: self._store.get_property_owner(property_id))
        if owner_id is None:
            raise NotFoundError("Propiedad no encontrada")
        if str(owner_id) != str(issuer_id):
            logger.info(f"User {issuer_id[:8]}... tried to manage invites for property {property_id} it does not own")
            raise AuthorizationError("No tienes permisos sobre esta propiedad")

    async def issue(
        self,
        issuer: CallerIdentity,
        request: InviteIssueRequest
    ) -> Union[IssuedInvite, InviteLegacyPath]:
        """
        Issue a new invite token for a property.

        The raw token exists only in the returned IssuedInvite; the store
        keeps its fingerprint.

        Raises:
            AuthenticationError: no session
            RateLimitError: issuer exceeded the issue budget
            ValidationError: maxUses / expiresInDays out of bounds
            NotFoundError / AuthorizationError: property missing or not owned
            ServiceUnavailableError: store unavailable or collisions exhausted
        """
        if not issuer.authenticated:
            raise AuthenticationError()

        decision = self._guard.check_and_record(issuer.rate_key, "issue")
        if not decision.allowed:
            raise RateLimitError(decision.retry_after)

        if not settings.invite_min_uses <= request.max_uses <= settings.invite_max_uses:
            raise ValidationError(
                f"maxUses debe estar entre {settings.invite_min_uses} y {settings.invite_max_uses}",
                details={"field": "maxUses"}
            )

        expires_in_days = request.expires_in_days
        if expires_in_days is None:
            expires_in_days = settings.invite_default_expiry_days
        if not settings.invite_min_expiry_days <= expires_in_days <= settings.invite_max_expiry_days:
            raise ValidationError(
                f"expiresInDays debe estar entre {settings.invite_min_expiry_days} y {settings.invite_max_expiry_days}",
                details={"field": "expiresInDays"}
            )

        await self._require_owner(issuer.user_id, request.property_id)

        if not await self._gate.should_use_new_path(issuer.user_id, self.feature_name):
            logger.debug(f"Issuer {issuer.user_id[:8]}... outside {self.feature_name} rollout, legacy path")
            return InviteLegacyPath()

        now = self._clock()
        intended_email = normalize_email(request.intended_email)

        for attempt in range(1, settings.invite_issue_retries + 1):
            raw_token, fingerprint = self._codec.issue_raw()
            record = InviteToken(
                id=str(uuid.uuid4()),
                property_id=request.property_id,
                issuer_id=issuer.user_id,
                token_fingerprint=fingerprint,
                intended_email=intended_email,
                max_uses=request.max_uses,
                use_count=0,
                status=InviteStatus.ACTIVE,
                created_at=now,
                expires_at=now + timedelta(days=expires_in_days)
            )
            try:
                token = await call_store(lambda: self._store.create(record))
            except StoreConflict:
                logger.warning(f"Fingerprint collision issuing invite (attempt {attempt})")
                continue

            logger.info(
                f"Invite {token.id} issued for property {token.property_id} "
                f"(max_uses={token.max_uses}, expires_in_days={expires_in_days})"
            )
            return IssuedInvite(
                token_id=token.id,
                token=raw_token,
                invite_url=f"{settings.frontend_url}/invite?t={raw_token}",
                property_id=token.property_id,
                max_uses=token.max_uses,
                expires_at=token.expires_at,
                intended_email=token.intended_email
            )

        logger.error(f"Could not issue invite after {settings.invite_issue_retries} fingerprint collisions")
        raise ServiceUnavailableError("No se pudo generar la invitacion, intenta de nuevo")

    async def list_for_property(self, issuer: CallerIdentity, property_id: str) -> List[InviteSummary]:
        if not issuer.authenticated:
            raise AuthenticationError()

        await self._require_owner(issuer.user_id, property_id)
        tokens = await call_store(lambda: self._store.list_for_property(property_id, issuer.user_id))
        now = self._clock()
        return [
            InviteSummary(
                id=t.id,
                property_id=t.property_id,
                status=t.effective_status(now),
                use_count=t.use_count,
                max_uses=t.max_uses,
                intended_email=t.intended_email,
                created_at=t.created_at,
                expires_at=t.expires_at,
                revoked_at=t.revoked_at
            )
            for t in tokens
        ]

    async def revoke(self, issuer: CallerIdentity, token_id: str):
        """Revoke a token. Idempotent; only the issuing user may revoke."""
        if not issuer.authenticated:
            raise AuthenticationError()

        now = self._clock()
        outcome = await call_store(lambda: self._store.revoke(token_id, issuer.user_id, now))

        if outcome == RevokeOutcome.NOT_FOUND:
            raise NotFoundError("Invitacion no encontrada")
        if outcome == RevokeOutcome.FORBIDDEN:
            raise AuthorizationError("Solo el emisor puede revocar esta invitacion")

        logger.info(f"Invite {token_id} revoked by {issuer.user_id[:8]}...")
