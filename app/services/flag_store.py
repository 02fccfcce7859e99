"""
Storage for rollout flags (rollout_flags key-value table)
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from app.database import get_db_connection
from app.models.rollout import RolloutFlag

logger = logging.getLogger(__name__)


class FlagStore(ABC):

    @abstractmethod
    async def get(self, feature_name: str) -> Optional[RolloutFlag]:
        pass

    @abstractmethod
    async def set(self, feature_name: str, percent: int, updated_by: str) -> RolloutFlag:
        pass


class InMemoryFlagStore(FlagStore):

    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self._lock = threading.Lock()
        now = datetime.now(timezone.utc)
        self._flags: Dict[str, RolloutFlag] = {
            name: RolloutFlag(feature_name=name, percent=percent, updated_at=now, updated_by="seed")
            for name, percent in (initial or {}).items()
        }
        self.reads = 0

    async def get(self, feature_name: str) -> Optional[RolloutFlag]:
        self.reads += 1
        flag = self._flags.get(feature_name)
        return flag.model_copy() if flag else None

    async def set(self, feature_name: str, percent: int, updated_by: str) -> RolloutFlag:
        with self._lock:
            flag = RolloutFlag(
                feature_name=feature_name,
                percent=percent,
                updated_at=datetime.now(timezone.utc),
                updated_by=updated_by
            )
            self._flags[feature_name] = flag
            return flag.model_copy()


class PostgresFlagStore(FlagStore):

    async def get(self, feature_name: str) -> Optional[RolloutFlag]:
        async with get_db_connection(use_transaction=False) as conn:
            row = await conn.fetchrow("""
                SELECT feature_name, percent, updated_at, updated_by
                FROM rollout_flags
                WHERE feature_name = $1
            """, feature_name)
            return RolloutFlag(**dict(row)) if row else None

    async def set(self, feature_name: str, percent: int, updated_by: str) -> RolloutFlag:
        async with get_db_connection() as conn:
            row = await conn.fetchrow("""
                INSERT INTO rollout_flags (feature_name, percent, updated_at, updated_by)
                VALUES ($1, $2, NOW(), $3)
                ON CONFLICT (feature_name)
                DO UPDATE SET percent = EXCLUDED.percent,
                              updated_at = EXCLUDED.updated_at,
                              updated_by = EXCLUDED.updated_by
                RETURNING feature_name, percent, updated_at, updated_by
            """, feature_name, percent, updated_by)
            logger.info(f"Rollout flag {feature_name} set to {percent}% by {updated_by}")
            return RolloutFlag(**dict(row))
