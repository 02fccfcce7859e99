"""
Persistence for invite tokens, redemptions and tenant-property links.

The only write that touches capacity is try_consume, a single conditional
update (compare-and-set on use_count) that also records the redemption for
the consuming identity. Everything else is a plain read or an idempotent
insert.
"""
import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

import asyncpg

from app.config import settings
from app.core.exceptions import StoreConflict, StoreUnavailable
from app.database import get_db_connection
from app.models.invite import (
    ConsumeOutcome, ConsumeResult, InviteStatus, InviteToken,
    PropertyPreview, RevokeOutcome, TenantPropertyLink
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# profiles.role given to whoever accepts an invite; an existing role is kept
TENANT_ROLE = "tenant"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


TRANSIENT_ERRORS = (
    asyncio.TimeoutError,
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.QueryCanceledError,
)


async def call_store(
    operation: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    base_delay: Optional[float] = None
) -> T:
    """
    Run a store call with a per-attempt timeout and bounded exponential backoff.

    Raises:
        StoreUnavailable: when every attempt timed out or hit a transient error
    """
    attempts = attempts or settings.store_retry_attempts
    timeout = timeout or settings.store_timeout_seconds
    base_delay = settings.store_retry_base_delay if base_delay is None else base_delay

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except TRANSIENT_ERRORS as e:
            last_error = e
            logger.warning(f"Store call failed (attempt {attempt}/{attempts}): {type(e).__name__}")
            if attempt < attempts:
                await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

    raise StoreUnavailable(f"Store unavailable after {attempts} attempts", cause=last_error)


def classify_unconsumed(
    token: Optional[InviteToken],
    expected_use_count: int,
    now: datetime,
    redeemed: bool
) -> ConsumeResult:
    """Explain why a conditional consume matched no row."""
    if token is None:
        return ConsumeResult(ConsumeOutcome.NOT_FOUND)
    if redeemed:
        return ConsumeResult(ConsumeOutcome.ALREADY_REDEEMED, token)
    if token.status == InviteStatus.REVOKED or token.is_expired(now):
        return ConsumeResult(ConsumeOutcome.NOT_USABLE, token)
    if not token.has_capacity() or token.status == InviteStatus.EXHAUSTED:
        return ConsumeResult(ConsumeOutcome.CAPACITY_EXCEEDED, token)
    return ConsumeResult(ConsumeOutcome.STALE, token)


class TokenStore(ABC):
    """
    Abstract persistence interface.

    Implementations must make try_consume a single atomic conditional
    update; callers never read-modify-write use_count themselves.
    """

    @abstractmethod
    async def create(self, token: InviteToken) -> InviteToken:
        """Insert a new token; raises StoreConflict on fingerprint collision"""
        pass

    @abstractmethod
    async def find_by_fingerprint(self, fingerprint: str) -> Optional[InviteToken]:
        pass

    @abstractmethod
    async def get_by_id(self, token_id: str) -> Optional[InviteToken]:
        pass

    @abstractmethod
    async def try_consume(
        self,
        token_id: str,
        expected_use_count: int,
        consumer_id: str,
        now: datetime
    ) -> ConsumeResult:
        pass

    @abstractmethod
    async def revoke(self, token_id: str, issuer_id: str, now: datetime) -> RevokeOutcome:
        pass

    @abstractmethod
    async def has_redemption(self, token_id: str, tenant_id: str) -> bool:
        pass

    @abstractmethod
    async def find_active_link(self, tenant_id: str, property_id: str) -> Optional[TenantPropertyLink]:
        pass

    @abstractmethod
    async def ensure_link(
        self,
        tenant_id: str,
        property_id: str,
        source_token_id: str,
        now: datetime
    ) -> Tuple[TenantPropertyLink, bool]:
        """
        Create the active link unless one exists and give the tenant the
        tenant role if they have none. Returns (link, created).
        """
        pass

    @abstractmethod
    async def list_for_property(self, property_id: str, issuer_id: str) -> List[InviteToken]:
        pass

    @abstractmethod
    async def get_property_owner(self, property_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def get_property_preview(self, property_id: str) -> Optional[PropertyPreview]:
        pass


# ============================================================================
# In-memory store
# ============================================================================

@dataclass
class _Property:
    owner_id: str
    name: str
    address_summary: Optional[str] = None
    issuer_name: Optional[str] = None


class InMemoryTokenStore(TokenStore):
    """Process-local store for development and tests; one lock guards all writes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: Dict[str, InviteToken] = {}
        self._by_fingerprint: Dict[str, str] = {}
        self._redemptions: Set[Tuple[str, str]] = set()
        self._links: Dict[Tuple[str, str], TenantPropertyLink] = {}
        self._properties: Dict[str, _Property] = {}
        self._roles: Dict[str, Optional[str]] = {}

    def add_property(
        self,
        property_id: str,
        owner_id: str,
        name: str,
        address_summary: Optional[str] = None,
        issuer_name: Optional[str] = None
    ):
        self._properties[property_id] = _Property(owner_id, name, address_summary, issuer_name)

    def set_role(self, user_id: str, role: Optional[str]):
        self._roles[user_id] = role

    def role_of(self, user_id: str) -> Optional[str]:
        return self._roles.get(user_id)

    @property
    def links(self) -> List[TenantPropertyLink]:
        return list(self._links.values())

    @property
    def redemption_count(self) -> int:
        return len(self._redemptions)

    async def create(self, token: InviteToken) -> InviteToken:
        with self._lock:
            if token.token_fingerprint in self._by_fingerprint:
                raise StoreConflict("Fingerprint already exists")
            stored = token.model_copy(update={"id": token.id or str(uuid.uuid4())})
            self._tokens[stored.id] = stored
            self._by_fingerprint[stored.token_fingerprint] = stored.id
            return stored.model_copy()

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[InviteToken]:
        token_id = self._by_fingerprint.get(fingerprint)
        token = self._tokens.get(token_id) if token_id else None
        return token.model_copy() if token else None

    async def get_by_id(self, token_id: str) -> Optional[InviteToken]:
        token = self._tokens.get(token_id)
        return token.model_copy() if token else None

    async def try_consume(
        self,
        token_id: str,
        expected_use_count: int,
        consumer_id: str,
        now: datetime
    ) -> ConsumeResult:
        with self._lock:
            token = self._tokens.get(token_id)
            redeemed = (token_id, consumer_id) in self._redemptions
            if (
                token is None
                or redeemed
                or token.use_count != expected_use_count
                or not token.has_capacity()
                or token.status != InviteStatus.ACTIVE
                or token.is_expired(now)
            ):
                return classify_unconsumed(
                    token.model_copy() if token else None, expected_use_count, now, redeemed
                )

            use_count = token.use_count + 1
            status = InviteStatus.EXHAUSTED if use_count >= token.max_uses else token.status
            updated = token.model_copy(update={"use_count": use_count, "status": status})
            self._tokens[token_id] = updated
            self._redemptions.add((token_id, consumer_id))
            return ConsumeResult(ConsumeOutcome.UPDATED, updated.model_copy())

    async def revoke(self, token_id: str, issuer_id: str, now: datetime) -> RevokeOutcome:
        with self._lock:
            token = self._tokens.get(token_id)
            if token is None:
                return RevokeOutcome.NOT_FOUND
            if token.issuer_id != issuer_id:
                return RevokeOutcome.FORBIDDEN
            if token.status != InviteStatus.REVOKED:
                self._tokens[token_id] = token.model_copy(
                    update={"status": InviteStatus.REVOKED, "revoked_at": now}
                )
            return RevokeOutcome.REVOKED

    async def has_redemption(self, token_id: str, tenant_id: str) -> bool:
        return (token_id, tenant_id) in self._redemptions

    async def find_active_link(self, tenant_id: str, property_id: str) -> Optional[TenantPropertyLink]:
        link = self._links.get((tenant_id, property_id))
        return link.model_copy() if link and link.status == "active" else None

    async def ensure_link(
        self,
        tenant_id: str,
        property_id: str,
        source_token_id: str,
        now: datetime
    ) -> Tuple[TenantPropertyLink, bool]:
        with self._lock:
            self._roles[tenant_id] = self._roles.get(tenant_id) or TENANT_ROLE
            existing = self._links.get((tenant_id, property_id))
            if existing and existing.status == "active":
                return existing.model_copy(), False
            link = TenantPropertyLink(
                tenant_id=tenant_id,
                property_id=property_id,
                source_token_id=source_token_id,
                created_at=now
            )
            self._links[(tenant_id, property_id)] = link
            return link.model_copy(), True

    async def list_for_property(self, property_id: str, issuer_id: str) -> List[InviteToken]:
        tokens = [
            t.model_copy() for t in self._tokens.values()
            if t.property_id == property_id and t.issuer_id == issuer_id
        ]
        return sorted(tokens, key=lambda t: t.created_at, reverse=True)

    async def get_property_owner(self, property_id: str) -> Optional[str]:
        prop = self._properties.get(property_id)
        return prop.owner_id if prop else None

    async def get_property_preview(self, property_id: str) -> Optional[PropertyPreview]:
        prop = self._properties.get(property_id)
        if not prop:
            return None
        return PropertyPreview(
            name=prop.name,
            address_summary=prop.address_summary,
            issuer_name=prop.issuer_name
        )


# ============================================================================
# Postgres store
# ============================================================================

TOKEN_COLUMNS = """
    id, property_id, issuer_id, token_fingerprint, intended_email,
    max_uses, use_count, status, created_at, expires_at, revoked_at
"""


def _row_to_token(row) -> InviteToken:
    return InviteToken(
        id=str(row['id']),
        property_id=str(row['property_id']),
        issuer_id=str(row['issuer_id']),
        token_fingerprint=row['token_fingerprint'],
        intended_email=row['intended_email'],
        max_uses=row['max_uses'],
        use_count=row['use_count'],
        status=row['status'],
        created_at=row['created_at'],
        expires_at=row['expires_at'],
        revoked_at=row['revoked_at']
    )


def _row_to_link(row) -> TenantPropertyLink:
    return TenantPropertyLink(
        tenant_id=str(row['tenant_id']),
        property_id=str(row['property_id']),
        source_token_id=str(row['source_token_id']) if row['source_token_id'] else None,
        status=row['status'],
        created_at=row['created_at']
    )


class PostgresTokenStore(TokenStore):
    """asyncpg-backed store over the tables in sql/schema.sql."""

    async def create(self, token: InviteToken) -> InviteToken:
        try:
            async with get_db_connection() as conn:
                row = await conn.fetchrow(f"""
                    INSERT INTO invite_tokens (
                        id, property_id, issuer_id, token_fingerprint, intended_email,
                        max_uses, use_count, status, created_at, expires_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, 0, 'active', $7, $8)
                    RETURNING {TOKEN_COLUMNS}
                """,
                    token.id, token.property_id, token.issuer_id, token.token_fingerprint,
                    token.intended_email, token.max_uses, token.created_at, token.expires_at
                )
        except asyncpg.exceptions.UniqueViolationError as e:
            raise StoreConflict("Fingerprint already exists") from e
        return _row_to_token(row)

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[InviteToken]:
        async with get_db_connection(use_transaction=False) as conn:
            row = await conn.fetchrow(f"""
                SELECT {TOKEN_COLUMNS}
                FROM invite_tokens
                WHERE token_fingerprint = $1
            """, fingerprint)
            return _row_to_token(row) if row else None

    async def get_by_id(self, token_id: str) -> Optional[InviteToken]:
        async with get_db_connection(use_transaction=False) as conn:
            row = await conn.fetchrow(f"""
                SELECT {TOKEN_COLUMNS}
                FROM invite_tokens
                WHERE id = $1
            """, token_id)
            return _row_to_token(row) if row else None

    async def try_consume(
        self,
        token_id: str,
        expected_use_count: int,
        consumer_id: str,
        now: datetime
    ) -> ConsumeResult:
        try:
            async with get_db_connection() as conn:
                row = await conn.fetchrow(f"""
                    WITH consumed AS (
                        UPDATE invite_tokens
                        SET use_count = use_count + 1,
                            status = CASE WHEN use_count + 1 >= max_uses
                                          THEN 'exhausted' ELSE status END
                        WHERE id = $1
                          AND use_count = $2
                          AND use_count < max_uses
                          AND status = 'active'
                          AND expires_at > $3
                          AND NOT EXISTS (
                              SELECT 1 FROM invite_token_redemptions
                              WHERE token_id = $1 AND tenant_id = $4
                          )
                        RETURNING {TOKEN_COLUMNS}
                    ), redeemed AS (
                        INSERT INTO invite_token_redemptions (token_id, tenant_id, redeemed_at)
                        SELECT id, $4, $3 FROM consumed
                        RETURNING token_id
                    )
                    SELECT * FROM consumed
                """, token_id, expected_use_count, now, consumer_id)

                if row:
                    return ConsumeResult(ConsumeOutcome.UPDATED, _row_to_token(row))

                current = await conn.fetchrow(f"""
                    SELECT {TOKEN_COLUMNS}
                    FROM invite_tokens
                    WHERE id = $1
                """, token_id)
                redeemed = await conn.fetchval("""
                    SELECT EXISTS (
                        SELECT 1 FROM invite_token_redemptions
                        WHERE token_id = $1 AND tenant_id = $2
                    )
                """, token_id, consumer_id)
                return classify_unconsumed(
                    _row_to_token(current) if current else None,
                    expected_use_count, now, bool(redeemed)
                )
        except asyncpg.exceptions.UniqueViolationError:
            # concurrent accept by the same identity committed first
            return ConsumeResult(ConsumeOutcome.ALREADY_REDEEMED, await self.get_by_id(token_id))

    async def revoke(self, token_id: str, issuer_id: str, now: datetime) -> RevokeOutcome:
        async with get_db_connection() as conn:
            row = await conn.fetchrow("""
                SELECT issuer_id FROM invite_tokens WHERE id = $1 FOR UPDATE
            """, token_id)
            if not row:
                return RevokeOutcome.NOT_FOUND
            if str(row['issuer_id']) != issuer_id:
                return RevokeOutcome.FORBIDDEN

            await conn.execute("""
                UPDATE invite_tokens
                SET status = 'revoked', revoked_at = COALESCE(revoked_at, $2)
                WHERE id = $1
            """, token_id, now)
            return RevokeOutcome.REVOKED

    async def has_redemption(self, token_id: str, tenant_id: str) -> bool:
        async with get_db_connection(use_transaction=False) as conn:
            exists = await conn.fetchval("""
                SELECT EXISTS (
                    SELECT 1 FROM invite_token_redemptions
                    WHERE token_id = $1 AND tenant_id = $2
                )
            """, token_id, tenant_id)
            return bool(exists)

    async def find_active_link(self, tenant_id: str, property_id: str) -> Optional[TenantPropertyLink]:
        async with get_db_connection(use_transaction=False) as conn:
            row = await conn.fetchrow("""
                SELECT tenant_id, property_id, source_token_id, status, created_at
                FROM tenant_property_links
                WHERE tenant_id = $1 AND property_id = $2 AND status = 'active'
            """, tenant_id, property_id)
            return _row_to_link(row) if row else None

    async def ensure_link(
        self,
        tenant_id: str,
        property_id: str,
        source_token_id: str,
        now: datetime
    ) -> Tuple[TenantPropertyLink, bool]:
        async with get_db_connection() as conn:
            await conn.execute("""
                UPDATE profiles SET role = COALESCE(role, $2)
                WHERE id = $1
            """, tenant_id, TENANT_ROLE)

            row = await conn.fetchrow("""
                INSERT INTO tenant_property_links (
                    tenant_id, property_id, source_token_id, status, created_at
                )
                VALUES ($1, $2, $3, 'active', $4)
                ON CONFLICT (tenant_id, property_id) WHERE status = 'active'
                DO NOTHING
                RETURNING tenant_id, property_id, source_token_id, status, created_at
            """, tenant_id, property_id, source_token_id, now)
            if row:
                return _row_to_link(row), True

            existing = await conn.fetchrow("""
                SELECT tenant_id, property_id, source_token_id, status, created_at
                FROM tenant_property_links
                WHERE tenant_id = $1 AND property_id = $2 AND status = 'active'
            """, tenant_id, property_id)
            return _row_to_link(existing), False

    async def list_for_property(self, property_id: str, issuer_id: str) -> List[InviteToken]:
        async with get_db_connection(use_transaction=False) as conn:
            rows = await conn.fetch(f"""
                SELECT {TOKEN_COLUMNS}
                FROM invite_tokens
                WHERE property_id = $1 AND issuer_id = $2
                ORDER BY created_at DESC
            """, property_id, issuer_id)
            return [_row_to_token(row) for row in rows]

    async def get_property_owner(self, property_id: str) -> Optional[str]:
        async with get_db_connection(use_transaction=False) as conn:
            owner = await conn.fetchval("""
                SELECT landlord_id FROM properties WHERE id = $1
            """, property_id)
            return str(owner) if owner else None

    async def get_property_preview(self, property_id: str) -> Optional[PropertyPreview]:
        async with get_db_connection(use_transaction=False) as conn:
            row = await conn.fetchrow("""
                SELECT p.name, p.address_summary, prof.name AS issuer_name
                FROM properties p
                LEFT JOIN profiles prof ON prof.id = p.landlord_id
                WHERE p.id = $1
            """, property_id)
            if not row:
                return None
            return PropertyPreview(
                name=row['name'],
                address_summary=row['address_summary'],
                issuer_name=row['issuer_name']
            )
