"""
Percentage rollout gate for the tokenized invite flow.

Bucketing is a stable hash of (feature, identity) modulo 100, so an identity
keeps its bucket across requests and only crosses over when the percent
moves past it.
"""
import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from app.config import settings
from app.models.rollout import RolloutFlag, RolloutGateDecision
from app.services.flag_store import FlagStore

logger = logging.getLogger(__name__)


def bucket_for(identity: str, feature_name: str) -> int:
    digest = hashlib.sha256(f"{feature_name}:{identity}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def is_in_rollout(identity: str, feature_name: str, percent: int) -> bool:
    if percent >= 100:
        return True
    if percent <= 0:
        return False
    return bucket_for(identity, feature_name) < percent


class RolloutConfigAccessor:
    """Reads rollout flags through a short TTL cache."""

    def __init__(
        self,
        flag_store: FlagStore,
        ttl_seconds: Optional[float] = None,
        default_percent: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._store = flag_store
        self._ttl = settings.rollout_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._default_percent = settings.rollout_initial_percent if default_percent is None else default_percent
        self._clock = clock
        self._cache: Dict[str, Tuple[float, RolloutFlag]] = {}

    async def get(self, feature_name: str) -> RolloutFlag:
        now = self._clock()
        cached = self._cache.get(feature_name)
        if cached and now - cached[0] < self._ttl:
            return cached[1]

        flag = await self._store.get(feature_name)
        if flag is None:
            flag = RolloutFlag(
                feature_name=feature_name,
                percent=self._default_percent,
                updated_at=datetime.now(timezone.utc),
                updated_by="default"
            )
        self._cache[feature_name] = (now, flag)
        return flag

    async def set(self, feature_name: str, percent: int, updated_by: str) -> RolloutFlag:
        flag = await self._store.set(feature_name, percent, updated_by)
        self.invalidate(feature_name)
        return flag

    def invalidate(self, feature_name: Optional[str] = None):
        if feature_name is None:
            self._cache.clear()
        else:
            self._cache.pop(feature_name, None)


class RolloutGate:
    def __init__(self, accessor: RolloutConfigAccessor):
        self._accessor = accessor

    async def should_use_new_path(self, identity: str, feature_name: str) -> bool:
        flag = await self._accessor.get(feature_name)
        return is_in_rollout(identity, feature_name, flag.percent)

    async def decide(self, identity: str, feature_name: str) -> RolloutGateDecision:
        flag = await self._accessor.get(feature_name)
        return RolloutGateDecision(
            feature_name=feature_name,
            use_new_path=is_in_rollout(identity, feature_name, flag.percent),
            percent=flag.percent
        )
