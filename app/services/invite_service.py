"""
Wiring for the invite subsystem and the entry points the routers call.

Validate/accept go through here so every attempt emits exactly one funnel
event with its latency and correlation id.
"""
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from app.config import settings
from app.models.invite import AcceptResult, CallerIdentity, ValidationResult
from app.models.rollout import InviteEventName
from app.services.abuse_guard import AbuseGuard, GuardDecision
from app.services.analytics_service import InviteAnalytics
from app.services.discord_service import DiscordOpsNotifier, build_ops_notifier
from app.services.flag_store import FlagStore, InMemoryFlagStore, PostgresFlagStore
from app.services.rollout_gate import RolloutConfigAccessor, RolloutGate
from app.services.rollout_monitor import RolloutMonitor
from app.services.token_acceptor import TokenAcceptor
from app.services.token_codec import TokenCodec, resolve_pepper
from app.services.token_issuer import TokenIssuer
from app.services.token_store import InMemoryTokenStore, PostgresTokenStore, TokenStore, utc_now
from app.services.token_validator import TokenValidator

logger = logging.getLogger(__name__)


class InviteService:
    def __init__(
        self,
        store: TokenStore,
        flag_store: FlagStore,
        codec: Optional[TokenCodec] = None,
        guard: Optional[AbuseGuard] = None,
        notifier: Optional[DiscordOpsNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
        wall_clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.perf_counter,
        failure_floor_ms: Optional[float] = None
    ):
        self.store = store
        self.flag_store = flag_store
        self.codec = codec or TokenCodec(resolve_pepper())
        self.guard = guard or AbuseGuard()
        self.feature_name = settings.rollout_feature_name
        self._timer = timer

        self.rollout_config = RolloutConfigAccessor(flag_store)
        self.gate = RolloutGate(self.rollout_config)
        self.monitor = RolloutMonitor(self.rollout_config, notifier=notifier, clock=wall_clock)
        self.analytics = InviteAnalytics(self.monitor, clock=wall_clock)

        self.issuer = TokenIssuer(store, self.codec, self.gate, self.guard, clock=clock)
        self.validator = TokenValidator(
            store, self.codec, self.guard, clock=clock,
            failure_floor_ms=failure_floor_ms, timer=timer
        )
        self.acceptor = TokenAcceptor(store, self.validator, self.guard, clock=clock)

    def _elapsed_ms(self, started: float) -> float:
        return (self._timer() - started) * 1000.0

    async def validate(self, raw_token: str, caller: CallerIdentity, correlation_id: str) -> ValidationResult:
        started = self._timer()
        result = await self.validator.validate(raw_token, caller)
        self.analytics.emit(
            InviteEventName.VALIDATE_SUCCESS if result.ok else InviteEventName.VALIDATE_FAIL,
            correlation_id,
            self._elapsed_ms(started),
            raw_token=raw_token,
            error_kind=result.reason
        )
        return result

    async def accept(self, raw_token: str, caller: CallerIdentity, correlation_id: str) -> AcceptResult:
        started = self._timer()
        result = await self.acceptor.accept(raw_token, caller)
        self.analytics.emit(
            InviteEventName.ACCEPT_SUCCESS if result.ok else InviteEventName.ACCEPT_FAIL,
            correlation_id,
            self._elapsed_ms(started),
            raw_token=raw_token,
            error_kind=result.reason
        )
        return result

    async def record_view(
        self,
        raw_token: Optional[str],
        caller: CallerIdentity,
        correlation_id: str,
        latency_ms: Optional[float] = None
    ) -> GuardDecision:
        """
        Count a client-reported invite_view.

        Views are rate limited like validate, only count for tokens that
        exist, and count once per token and caller inside the monitor window.
        """
        decision = self.guard.check_and_record(caller.rate_key, "view")
        if not decision.allowed:
            return decision

        token = await self.validator.lookup(raw_token) if raw_token else None
        if token is None:
            logger.debug("Ignoring invite_view for an unknown token")
            return decision

        self.analytics.emit(
            InviteEventName.VIEW, correlation_id, latency_ms or 0.0,
            raw_token=raw_token, dedupe_key=f"{token.id}:{caller.rate_key}"
        )
        return decision


def build_invite_service() -> InviteService:
    """Build the service from settings (postgres or in-memory backend)."""
    backend = settings.invite_store_backend.lower()
    if backend == "memory":
        store: TokenStore = InMemoryTokenStore()
        flag_store: FlagStore = InMemoryFlagStore({settings.rollout_feature_name: settings.rollout_initial_percent})
        logger.warning("Invite service running with in-memory store (data is not persisted)")
    elif backend == "postgres":
        store = PostgresTokenStore()
        flag_store = PostgresFlagStore()
    else:
        raise ValueError(f"Unknown INVITE_STORE_BACKEND: {settings.invite_store_backend}")

    return InviteService(store, flag_store, notifier=build_ops_notifier())


_invite_service: Optional[InviteService] = None


def get_invite_service() -> InviteService:
    """FastAPI dependency: process-wide invite service"""
    global _invite_service
    if _invite_service is None:
        _invite_service = build_invite_service()
    return _invite_service


def reset_invite_service():
    global _invite_service
    _invite_service = None
