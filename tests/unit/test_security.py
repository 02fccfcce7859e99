"""
Tests para la lectura de sesión y la IP del cliente.
"""
import pytest
from unittest.mock import patch
from starlette.requests import Request

from app.core.exceptions import StoreUnavailable
# referencia directa: el fixture autouse de conftest reemplaza el atributo del módulo
from app.core.security import get_client_ip, get_session_from_request


def make_request(headers: dict = None, client=("192.0.2.10", 50000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/invites/accept",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestClientIp:

    def test_forwarded_for_ignored_without_trusted_proxies(self):
        request = make_request({"X-Forwarded-For": "203.0.113.99"})

        assert get_client_ip(request, trusted_proxies=0) == "192.0.2.10"

    def test_rightmost_untrusted_hop_behind_one_proxy(self):
        """El cliente puede anteponer IPs falsas; solo cuenta la que escribió el proxy."""
        request = make_request({"X-Forwarded-For": "1.1.1.1, 2.2.2.2, 203.0.113.5"})

        assert get_client_ip(request, trusted_proxies=1) == "203.0.113.5"

    def test_two_trusted_proxies(self):
        request = make_request({"X-Forwarded-For": "1.1.1.1, 203.0.113.5, 10.0.0.2"})

        assert get_client_ip(request, trusted_proxies=2) == "203.0.113.5"

    def test_short_chain_falls_back_to_peer(self):
        request = make_request({"X-Forwarded-For": "203.0.113.5"})

        assert get_client_ip(request, trusted_proxies=2) == "192.0.2.10"

    def test_no_client(self):
        assert get_client_ip(make_request(client=None), trusted_proxies=0) is None


class TestSessionLookup:

    @pytest.mark.asyncio
    async def test_no_token_no_lookup(self):
        with patch("app.core.security._fetch_session") as fetch:
            assert await get_session_from_request(make_request()) is None

        fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_session_is_none(self):
        request = make_request({"Cookie": "session-token=abc"})

        with patch("app.core.security._fetch_session", return_value=None):
            assert await get_session_from_request(request) is None

    @pytest.mark.asyncio
    async def test_store_outage_raises(self):
        """Una caída del store no se confunde con 'sin sesión'."""
        request = make_request({"Authorization": "Bearer abc"})

        with patch("app.core.security._fetch_session", side_effect=OSError("connection refused")), \
                patch("app.services.token_store.asyncio.sleep"):
            with pytest.raises(StoreUnavailable):
                await get_session_from_request(request)
