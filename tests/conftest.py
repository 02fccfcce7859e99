"""
Configuración global de pytest y fixtures compartidos.
"""
import pytest
from typing import AsyncGenerator, Dict
from httpx import AsyncClient, ASGITransport
from unittest.mock import patch
import sys
import os

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# El servicio corre en memoria durante los tests (antes de importar app)
os.environ.setdefault("INVITE_STORE_BACKEND", "memory")
os.environ.setdefault("INVITE_TOKEN_PEPPER", "test-pepper-not-for-production")
os.environ.setdefault("ROLLOUT_ADMIN_KEY", "test-rollout-key")
os.environ.setdefault("APP_ENV", "test")

from app.main import app
from app.config import settings
from app.models.invite import CallerIdentity, InviteIssueRequest, IssuedInvite
from app.services.abuse_guard import AbuseGuard
from app.services.flag_store import InMemoryFlagStore
from app.services.invite_service import InviteService, get_invite_service
from app.services.token_codec import TokenCodec
from app.services.token_store import InMemoryTokenStore

from tests.utils.factories import (
    LANDLORD_ID, OTHER_LANDLORD_ID, PROPERTY_ID, OTHER_PROPERTY_ID, SessionFactory
)
from tests.utils.mocks import FakeClock


# ============================================================================
# Reloj controlable
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    """Reloj falso compartido por store, guard y monitor."""
    return FakeClock()


# ============================================================================
# Servicio de invites en memoria
# ============================================================================

@pytest.fixture
def token_store() -> InMemoryTokenStore:
    """Store en memoria con dos propiedades de prueba."""
    store = InMemoryTokenStore()
    store.add_property(
        PROPERTY_ID, LANDLORD_ID, "Apartamento 301",
        address_summary="Calle 10 #20-30, Medellin", issuer_name="Laura Landlord"
    )
    store.add_property(
        OTHER_PROPERTY_ID, OTHER_LANDLORD_ID, "Casa Campestre",
        address_summary="Vereda El Tablazo", issuer_name="Otro Landlord"
    )
    return store


@pytest.fixture
def flag_store() -> InMemoryFlagStore:
    """Rollout al 100% por defecto: todos los emisores usan el flujo con token."""
    return InMemoryFlagStore({settings.rollout_feature_name: 100})


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec("test-pepper-not-for-production")


@pytest.fixture
def guard(clock) -> AbuseGuard:
    return AbuseGuard(clock=clock.monotonic)


@pytest.fixture
def invite_service(token_store, flag_store, codec, guard, clock) -> InviteService:
    """InviteService cableado con store en memoria y reloj falso."""
    return InviteService(
        token_store,
        flag_store,
        codec=codec,
        guard=guard,
        clock=clock.now,
        wall_clock=clock.monotonic,
        failure_floor_ms=0
    )


@pytest.fixture
def issue_invite(invite_service):
    """
    Emite un invite como el landlord dueño de PROPERTY_ID.

    Usage:
        issued = await issue_invite(max_uses=3)
        issued.token  # token crudo
    """
    landlord = CallerIdentity(user_id=LANDLORD_ID, email="laura@landlord.com", email_verified=True)

    async def _issue(**kwargs) -> IssuedInvite:
        kwargs.setdefault("property_id", PROPERTY_ID)
        return await invite_service.issuer.issue(landlord, InviteIssueRequest(**kwargs))

    return _issue


# ============================================================================
# Sesiones
# ============================================================================

@pytest.fixture(autouse=True)
def sessions() -> Dict[str, dict]:
    """
    Sesiones activas por session-token.
    Reemplaza la consulta a la tabla sessions del middleware.
    """
    active: Dict[str, dict] = {}

    async def fake_session_lookup(request):
        from app.core.security import get_session_token
        token = get_session_token(request)
        return active.get(token) if token else None

    with patch('app.core.security.get_session_from_request', side_effect=fake_session_lookup):
        yield active


@pytest.fixture
def login(sessions):
    """
    Crea una sesión y retorna los headers para usarla.

    Usage:
        headers = login(TENANT_ID, "tenant@test.com")
    """
    def _login(user_id: str, email: str = None, email_verified: bool = True) -> dict:
        session = SessionFactory.create(user_id=user_id, email=email, email_verified=email_verified)
        sessions[session["token"]] = session["data"]
        return {"Cookie": f"session-token={session['token']}"}

    return _login


@pytest.fixture
def landlord_headers(login) -> dict:
    return login(LANDLORD_ID, "laura@landlord.com")


@pytest.fixture
def operator_headers() -> dict:
    return {"X-Rollout-Key": settings.rollout_admin_key}


# ============================================================================
# Cliente HTTP Async
# ============================================================================

@pytest.fixture
async def client(invite_service) -> AsyncGenerator[AsyncClient, None]:
    """Cliente HTTP async para hacer requests al API."""
    app.dependency_overrides[get_invite_service] = lambda: invite_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
