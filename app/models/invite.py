"""
Invite token models: stored records, API payloads and service outcomes
"""
import unicodedata
from dataclasses import dataclass
from pydantic import BaseModel, EmailStr, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime
from enum import Enum


class InviteStatus(str, Enum):
    """Estados de un invite token"""
    ACTIVE = "active"
    REVOKED = "revoked"      # Revocado por el emisor, permanente
    EXHAUSTED = "exhausted"  # use_count == max_uses
    EXPIRED = "expired"      # Vista derivada, nunca se persiste


class InviteErrorKind(str, Enum):
    """Motivos de fallo visibles al cliente"""
    INVALID = "Invalid"
    EXPIRED = "Expired"
    REVOKED = "Revoked"
    CAPACITY_REACHED = "CapacityReached"
    WRONG_ACCOUNT = "WrongAccount"
    RATE_LIMITED = "RateLimited"
    CONFLICT = "Conflict"
    UNAVAILABLE = "Unavailable"


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Normalize an email for comparison (NFKC, trimmed, case-folded)."""
    if email is None:
        return None
    normalized = unicodedata.normalize("NFKC", email).strip().casefold()
    return normalized or None


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ============================================================================
# Stored records
# ============================================================================

class InviteToken(BaseModel):
    """Row of invite_tokens. The raw token is never part of it."""
    id: str
    property_id: str
    issuer_id: str
    token_fingerprint: str
    intended_email: Optional[str] = None
    max_uses: int = 1
    use_count: int = 0
    status: InviteStatus = InviteStatus.ACTIVE
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def is_expired(self, now: datetime) -> bool:
        return not now < self.expires_at

    def has_capacity(self) -> bool:
        return self.use_count < self.max_uses

    def effective_status(self, now: datetime) -> InviteStatus:
        if self.status == InviteStatus.REVOKED:
            return InviteStatus.REVOKED
        if not self.has_capacity() or self.status == InviteStatus.EXHAUSTED:
            return InviteStatus.EXHAUSTED
        if self.is_expired(now):
            return InviteStatus.EXPIRED
        return InviteStatus.ACTIVE


class TenantPropertyLink(BaseModel):
    """Row of tenant_property_links"""
    tenant_id: str
    property_id: str
    source_token_id: Optional[str] = None
    status: str = "active"
    created_at: datetime

    class Config:
        from_attributes = True


class PropertyPreview(CamelModel):
    """Safe subset of property data shown before accepting"""
    name: str
    address_summary: Optional[str] = None
    issuer_name: Optional[str] = None


# ============================================================================
# API payloads
# ============================================================================

class InviteIssueRequest(CamelModel):
    """Request para crear un invite"""
    property_id: str = Field(..., min_length=1, max_length=64)
    max_uses: int = Field(1, description="Numero de aceptaciones permitidas")
    expires_in_days: Optional[int] = Field(None, description="Dias de validez")
    intended_email: Optional[EmailStr] = Field(None, description="Solo esta cuenta puede aceptar")


class IssuedInvite(CamelModel):
    """Invite recien creado. El token se muestra una sola vez."""
    ok: bool = True
    token_id: str
    token: str
    invite_url: str
    property_id: str
    max_uses: int
    expires_at: datetime
    intended_email: Optional[str] = None


class InviteLegacyPath(CamelModel):
    """El emisor esta fuera del rollout y debe usar el flujo legacy"""
    ok: bool = False
    path: str = "legacy"


class InviteSummary(CamelModel):
    """Invite listado para el emisor (sin fingerprint)"""
    id: str
    property_id: str
    status: InviteStatus
    use_count: int
    max_uses: int
    intended_email: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None


class InviteTokenRequest(CamelModel):
    """Body con el token crudo (validate / accept)"""
    token: str = Field(..., min_length=1, max_length=128)


class InviteValidateResponse(CamelModel):
    ok: bool
    property: Optional[PropertyPreview] = None
    reason: Optional[InviteErrorKind] = None
    retry_after: Optional[int] = None


class InviteAcceptResponse(CamelModel):
    ok: bool
    already_linked: Optional[bool] = None
    property_id: Optional[str] = None
    reason: Optional[InviteErrorKind] = None
    retry_after: Optional[int] = None


class InviteRevokeRequest(CamelModel):
    token_id: str = Field(..., min_length=1, max_length=64)


class InviteRevokeResponse(CamelModel):
    ok: bool = True


class InviteEventRequest(CamelModel):
    """Evento de funnel reportado por el cliente movil"""
    event: str = Field(..., description="Solo invite_view")
    token: Optional[str] = Field(None, max_length=128)
    correlation_id: Optional[str] = Field(None, max_length=64)
    latency_ms: Optional[float] = Field(None, ge=0)


class InviteListResponse(CamelModel):
    ok: bool = True
    invites: List[InviteSummary]


# ============================================================================
# Service outcomes
# ============================================================================

@dataclass
class CallerIdentity:
    """Who is calling: an authenticated user, or just a client IP"""
    user_id: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool = False
    client_ip: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def rate_key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"ip:{self.client_ip or 'unknown'}"


class ConsumeOutcome(str, Enum):
    UPDATED = "updated"
    STALE = "stale"                    # use_count moved since it was read
    CAPACITY_EXCEEDED = "capacity_exceeded"
    NOT_USABLE = "not_usable"          # revoked or expired since it was read
    ALREADY_REDEEMED = "already_redeemed"
    NOT_FOUND = "not_found"


@dataclass
class ConsumeResult:
    outcome: ConsumeOutcome
    token: Optional[InviteToken] = None


class RevokeOutcome(str, Enum):
    REVOKED = "revoked"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


@dataclass
class ValidationResult:
    ok: bool
    reason: Optional[InviteErrorKind] = None
    token: Optional[InviteToken] = None
    preview: Optional[PropertyPreview] = None
    retry_after: Optional[int] = None


@dataclass
class AcceptResult:
    ok: bool
    already_linked: bool = False
    property_id: Optional[str] = None
    reason: Optional[InviteErrorKind] = None
    retry_after: Optional[int] = None
    token_id: Optional[str] = None
