"""
Mocks para servicios externos y dependencias.
"""
from unittest.mock import patch
from typing import Optional, List, Any
from datetime import datetime, timedelta

from tests.utils.factories import BASE_TIME


class MockDBConnection:
    """Mock de conexión a base de datos asyncpg."""

    def __init__(self):
        self.fetchrow_returns = {}
        self.fetch_returns = {}
        self.fetchval_returns = {}
        self.execute_returns = {}
        self._call_history = []

    def set_fetchrow_return(self, query_contains: str, value: Any):
        """Configura valor de retorno para fetchrow según query. Si es excepción, se lanza."""
        self.fetchrow_returns[query_contains] = value

    def set_fetch_return(self, query_contains: str, value: List[Any]):
        """Configura valor de retorno para fetch según query."""
        self.fetch_returns[query_contains] = value

    def set_fetchval_return(self, query_contains: str, value: Any):
        """Configura valor de retorno para fetchval según query."""
        self.fetchval_returns[query_contains] = value

    @staticmethod
    def _resolve(returns: dict, query: str, args: tuple, default: Any) -> Any:
        for key, value in returns.items():
            if key in query:
                if isinstance(value, BaseException):
                    raise value
                if callable(value):
                    return value(*args)
                return value
        return default

    async def fetchrow(self, query: str, *args) -> Optional[dict]:
        """Mock de fetchrow."""
        self._call_history.append(("fetchrow", query, args))
        return self._resolve(self.fetchrow_returns, query, args, None)

    async def fetch(self, query: str, *args) -> List[dict]:
        """Mock de fetch."""
        self._call_history.append(("fetch", query, args))
        return self._resolve(self.fetch_returns, query, args, [])

    async def fetchval(self, query: str, *args) -> Any:
        """Mock de fetchval."""
        self._call_history.append(("fetchval", query, args))
        return self._resolve(self.fetchval_returns, query, args, None)

    async def execute(self, query: str, *args) -> str:
        """Mock de execute."""
        self._call_history.append(("execute", query, args))
        return self._resolve(self.execute_returns, query, args, "UPDATE 1")

    def get_call_history(self) -> List[tuple]:
        """Retorna historial de llamadas."""
        return self._call_history

    def was_called_with(self, method: str, query_contains: str) -> bool:
        """Verifica si se llamó un método con cierta query."""
        for call in self._call_history:
            if call[0] == method and query_contains in call[1]:
                return True
        return False


class MockDBContextManager:
    """Context manager mock para get_db_connection."""

    def __init__(self, connection: MockDBConnection = None):
        self.connection = connection or MockDBConnection()

    async def __aenter__(self):
        return self.connection

    async def __aexit__(self, *args):
        pass


def create_db_mock(connection: MockDBConnection = None, target: str = 'app.services.token_store.get_db_connection'):
    """Crea un mock completo de base de datos para el módulo indicado."""
    conn = connection or MockDBConnection()
    ctx_manager = MockDBContextManager(conn)

    return patch(target, return_value=ctx_manager), conn


class FakeClock:
    """
    Reloj controlable.

    now() da la hora UTC (store, validator, acceptor) y monotonic() los
    segundos para ventanas de rate limit y el monitor; advance() mueve ambos.
    """

    def __init__(self, start: datetime = BASE_TIME, monotonic_start: float = 10_000.0):
        self.current = start
        self._monotonic = monotonic_start

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float = 0, **kwargs):
        delta = timedelta(seconds=seconds, **kwargs)
        self.current += delta
        self._monotonic += delta.total_seconds()


class MockDiscordNotifier:
    """Mock del notificador de Discord para eventos de rollout."""

    def __init__(self):
        self.sent = []

    async def send_rollout_event(self, title: str, message: str, severe: bool = False, context: dict = None) -> bool:
        self.sent.append({"title": title, "message": message, "severe": severe, "context": context})
        return True
