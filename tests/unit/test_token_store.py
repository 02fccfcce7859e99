"""
Tests para la persistencia de invite tokens (memoria y Postgres).
"""
import asyncio
import pytest
import asyncpg
from datetime import timedelta

from app.core.exceptions import StoreConflict, StoreUnavailable
from app.models.invite import ConsumeOutcome, InviteStatus, RevokeOutcome
from app.services.token_store import InMemoryTokenStore, PostgresTokenStore, call_store
from tests.utils.factories import (
    BASE_TIME, LANDLORD_ID, PROPERTY_ID, TENANT_ID,
    InviteTokenFactory, LinkFactory, user_id
)
from tests.utils.mocks import MockDBConnection, create_db_mock


# ============================================================================
# In-memory store
# ============================================================================

class TestInMemoryCreate:

    @pytest.mark.asyncio
    async def test_create_and_lookup(self, token_store: InMemoryTokenStore):
        token = InviteTokenFactory.create()
        await token_store.create(token)

        found = await token_store.find_by_fingerprint(token.token_fingerprint)

        assert found.id == token.id
        assert await token_store.find_by_fingerprint("unknown") is None

    @pytest.mark.asyncio
    async def test_fingerprint_collision_is_conflict(self, token_store: InMemoryTokenStore):
        token = InviteTokenFactory.create()
        await token_store.create(token)

        with pytest.raises(StoreConflict):
            await token_store.create(InviteTokenFactory.create(token_fingerprint=token.token_fingerprint))

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, token_store: InMemoryTokenStore):
        """Mutar el objeto retornado no altera el store."""
        token = await token_store.create(InviteTokenFactory.create())
        token.use_count = 99

        stored = await token_store.get_by_id(token.id)

        assert stored.use_count == 0


class TestInMemoryConsume:

    @pytest.mark.asyncio
    async def test_consume_increments(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create(max_uses=2))

        result = await token_store.try_consume(token.id, 0, TENANT_ID, BASE_TIME)

        assert result.outcome == ConsumeOutcome.UPDATED
        assert result.token.use_count == 1
        assert result.token.status == InviteStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_last_use_marks_exhausted(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create(max_uses=1))

        result = await token_store.try_consume(token.id, 0, TENANT_ID, BASE_TIME)

        assert result.token.status == InviteStatus.EXHAUSTED

    @pytest.mark.asyncio
    async def test_stale_expected_count(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create(max_uses=3))
        await token_store.try_consume(token.id, 0, user_id(1), BASE_TIME)

        result = await token_store.try_consume(token.id, 0, user_id(2), BASE_TIME)

        assert result.outcome == ConsumeOutcome.STALE
        assert result.token.use_count == 1

    @pytest.mark.asyncio
    async def test_capacity_exceeded(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create(max_uses=1))
        await token_store.try_consume(token.id, 0, user_id(1), BASE_TIME)

        result = await token_store.try_consume(token.id, 1, user_id(2), BASE_TIME)

        assert result.outcome == ConsumeOutcome.CAPACITY_EXCEEDED

    @pytest.mark.asyncio
    async def test_expired_not_usable(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create())

        result = await token_store.try_consume(token.id, 0, TENANT_ID, token.expires_at)

        assert result.outcome == ConsumeOutcome.NOT_USABLE

    @pytest.mark.asyncio
    async def test_same_identity_consumes_once(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create(max_uses=5))
        await token_store.try_consume(token.id, 0, TENANT_ID, BASE_TIME)

        result = await token_store.try_consume(token.id, 1, TENANT_ID, BASE_TIME)

        assert result.outcome == ConsumeOutcome.ALREADY_REDEEMED
        assert token_store.redemption_count == 1

    @pytest.mark.asyncio
    async def test_missing_token(self, token_store: InMemoryTokenStore):
        result = await token_store.try_consume("missing", 0, TENANT_ID, BASE_TIME)

        assert result.outcome == ConsumeOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_parallel_consumes_never_exceed_capacity(self, token_store: InMemoryTokenStore):
        """50 consumos concurrentes con el mismo expected: solo uno gana."""
        token = await token_store.create(InviteTokenFactory.create(max_uses=3))

        results = await asyncio.gather(*[
            token_store.try_consume(token.id, 0, user_id(i), BASE_TIME) for i in range(50)
        ])

        assert sum(1 for r in results if r.outcome == ConsumeOutcome.UPDATED) == 1
        assert (await token_store.get_by_id(token.id)).use_count == 1


class TestInMemoryRevokeAndLinks:

    @pytest.mark.asyncio
    async def test_revoke_by_issuer(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create())

        assert await token_store.revoke(token.id, LANDLORD_ID, BASE_TIME) == RevokeOutcome.REVOKED
        stored = await token_store.get_by_id(token.id)
        assert stored.status == InviteStatus.REVOKED
        assert stored.revoked_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create())
        await token_store.revoke(token.id, LANDLORD_ID, BASE_TIME)

        later = BASE_TIME + timedelta(hours=1)
        assert await token_store.revoke(token.id, LANDLORD_ID, later) == RevokeOutcome.REVOKED
        assert (await token_store.get_by_id(token.id)).revoked_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_revoke_by_other_user_forbidden(self, token_store: InMemoryTokenStore):
        token = await token_store.create(InviteTokenFactory.create())

        assert await token_store.revoke(token.id, TENANT_ID, BASE_TIME) == RevokeOutcome.FORBIDDEN

    @pytest.mark.asyncio
    async def test_revoke_missing(self, token_store: InMemoryTokenStore):
        assert await token_store.revoke("missing", LANDLORD_ID, BASE_TIME) == RevokeOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_ensure_link_is_idempotent(self, token_store: InMemoryTokenStore):
        first, created = await token_store.ensure_link(TENANT_ID, PROPERTY_ID, "token-1", BASE_TIME)
        second, created_again = await token_store.ensure_link(TENANT_ID, PROPERTY_ID, "token-2", BASE_TIME)

        assert created is True
        assert created_again is False
        assert second.source_token_id == "token-1"
        assert len(token_store.links) == 1

    @pytest.mark.asyncio
    async def test_ensure_link_role_is_coalesced(self, token_store: InMemoryTokenStore):
        token_store.set_role(LANDLORD_ID, "landlord")

        await token_store.ensure_link(TENANT_ID, PROPERTY_ID, "token-1", BASE_TIME)
        await token_store.ensure_link(LANDLORD_ID, PROPERTY_ID, "token-1", BASE_TIME)

        assert token_store.role_of(TENANT_ID) == "tenant"
        assert token_store.role_of(LANDLORD_ID) == "landlord"

    @pytest.mark.asyncio
    async def test_property_lookups(self, token_store: InMemoryTokenStore):
        assert await token_store.get_property_owner(PROPERTY_ID) == LANDLORD_ID
        preview = await token_store.get_property_preview(PROPERTY_ID)
        assert preview.name == "Apartamento 301"
        assert await token_store.get_property_owner("missing") is None


# ============================================================================
# Postgres store (asyncpg mockeado)
# ============================================================================

class TestPostgresStore:

    @pytest.mark.asyncio
    async def test_create_inserts_fingerprint_only(self):
        token = InviteTokenFactory.create()
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return("INSERT INTO invite_tokens", InviteTokenFactory.create_row(
            id=token.id, token_fingerprint=token.token_fingerprint
        ))

        db_patch, conn = create_db_mock(mock_conn)
        with db_patch:
            created = await PostgresTokenStore().create(token)

        assert created.id == token.id
        _, query, args = conn.get_call_history()[0]
        assert token.token_fingerprint in args

    @pytest.mark.asyncio
    async def test_create_unique_violation_is_conflict(self):
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return(
            "INSERT INTO invite_tokens",
            asyncpg.exceptions.UniqueViolationError("duplicate key value")
        )

        db_patch, _ = create_db_mock(mock_conn)
        with db_patch:
            with pytest.raises(StoreConflict):
                await PostgresTokenStore().create(InviteTokenFactory.create())

    @pytest.mark.asyncio
    async def test_try_consume_single_conditional_statement(self):
        """El consumo es un solo UPDATE condicional con el insert de redención."""
        row = InviteTokenFactory.create_row(use_count=1, max_uses=2)
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return("WITH consumed AS", row)

        db_patch, conn = create_db_mock(mock_conn)
        with db_patch:
            result = await PostgresTokenStore().try_consume(str(row["id"]), 0, TENANT_ID, BASE_TIME)

        assert result.outcome == ConsumeOutcome.UPDATED
        _, query, args = conn.get_call_history()[0]
        assert "use_count = $2" in query
        assert "use_count < max_uses" in query
        assert "INSERT INTO invite_token_redemptions" in query
        assert args == (str(row["id"]), 0, BASE_TIME, TENANT_ID)

    @pytest.mark.asyncio
    async def test_try_consume_classifies_capacity(self):
        row = InviteTokenFactory.create_row(use_count=1, max_uses=1, status="exhausted")
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return("WITH consumed AS", None)
        mock_conn.set_fetchrow_return("FROM invite_tokens", row)
        mock_conn.set_fetchval_return("invite_token_redemptions", False)

        db_patch, _ = create_db_mock(mock_conn)
        with db_patch:
            result = await PostgresTokenStore().try_consume(str(row["id"]), 0, TENANT_ID, BASE_TIME)

        assert result.outcome == ConsumeOutcome.CAPACITY_EXCEEDED

    @pytest.mark.asyncio
    async def test_try_consume_classifies_stale(self):
        row = InviteTokenFactory.create_row(use_count=1, max_uses=3)
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return("WITH consumed AS", None)
        mock_conn.set_fetchrow_return("FROM invite_tokens", row)
        mock_conn.set_fetchval_return("invite_token_redemptions", False)

        db_patch, _ = create_db_mock(mock_conn)
        with db_patch:
            result = await PostgresTokenStore().try_consume(str(row["id"]), 0, TENANT_ID, BASE_TIME)

        assert result.outcome == ConsumeOutcome.STALE
        assert result.token.use_count == 1

    @pytest.mark.asyncio
    async def test_ensure_link_existing(self):
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return("INSERT INTO tenant_property_links", None)
        mock_conn.set_fetchrow_return("FROM tenant_property_links", LinkFactory.create_row())

        db_patch, _ = create_db_mock(mock_conn)
        with db_patch:
            link, created = await PostgresTokenStore().ensure_link(TENANT_ID, PROPERTY_ID, "token", BASE_TIME)

        assert created is False
        assert link.tenant_id == TENANT_ID

    @pytest.mark.asyncio
    async def test_ensure_link_sets_tenant_role_in_same_transaction(self):
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return("INSERT INTO tenant_property_links", LinkFactory.create_row())

        db_patch, conn = create_db_mock(mock_conn)
        with db_patch as get_conn:
            link, created = await PostgresTokenStore().ensure_link(TENANT_ID, PROPERTY_ID, "token", BASE_TIME)

        assert created is True
        assert get_conn.call_count == 1
        assert conn.was_called_with("execute", "COALESCE(role, $2)")
        role_call = next(c for c in conn.get_call_history() if c[0] == "execute")
        assert role_call[2] == (TENANT_ID, "tenant")

    @pytest.mark.asyncio
    async def test_revoke_checks_issuer(self):
        import uuid
        mock_conn = MockDBConnection()
        mock_conn.set_fetchrow_return("FOR UPDATE", {"issuer_id": uuid.UUID(LANDLORD_ID)})

        db_patch, conn = create_db_mock(mock_conn)
        with db_patch:
            forbidden = await PostgresTokenStore().revoke("token-id", TENANT_ID, BASE_TIME)
            revoked = await PostgresTokenStore().revoke("token-id", LANDLORD_ID, BASE_TIME)

        assert forbidden == RevokeOutcome.FORBIDDEN
        assert revoked == RevokeOutcome.REVOKED
        assert conn.was_called_with("execute", "SET status = 'revoked'")


# ============================================================================
# Timeouts y reintentos
# ============================================================================

class TestCallStore:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def operation():
            return 42

        assert await call_store(operation, attempts=1, timeout=1, base_delay=0) == 42

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionResetError("reset")
            return "ok"

        assert await call_store(flaky, attempts=3, timeout=1, base_delay=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_timeout_becomes_unavailable(self):
        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(StoreUnavailable):
            await call_store(slow, attempts=2, timeout=0.01, base_delay=0)

    @pytest.mark.asyncio
    async def test_non_transient_errors_propagate(self):
        async def broken():
            raise StoreConflict("collision")

        with pytest.raises(StoreConflict):
            await call_store(broken, attempts=3, timeout=1, base_delay=0)
