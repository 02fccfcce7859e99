"""
Sliding-window rate limiting with exponential backoff for invite endpoints.

Every allowed attempt is recorded, whatever the outcome of the check that
follows, so successful calls cannot be used to reset an attacker's budget.
Refused attempts are not recorded and do not extend an active block: a
caller that waits out retry_after is evaluated normally.
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Tuple

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RatePolicy:
    max_attempts: int
    window_seconds: float
    backoff_base_seconds: float = 5.0
    backoff_ceiling_seconds: float = 900.0
    violation_reset_seconds: float = 1800.0


@dataclass
class GuardDecision:
    allowed: bool
    retry_after: int = 0


@dataclass
class _WindowState:
    attempts: Deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0
    violations: int = 0
    last_violation_at: float = 0.0


def default_policies() -> Dict[str, RatePolicy]:
    common = dict(
        backoff_base_seconds=settings.rate_backoff_base_seconds,
        backoff_ceiling_seconds=settings.rate_backoff_ceiling_seconds,
        violation_reset_seconds=settings.rate_violation_reset_seconds,
    )
    return {
        "validate": RatePolicy(settings.validate_rate_limit, settings.validate_rate_window_seconds, **common),
        "accept": RatePolicy(settings.accept_rate_limit, settings.accept_rate_window_seconds, **common),
        "issue": RatePolicy(settings.issue_rate_limit, settings.issue_rate_window_seconds, **common),
        "view": RatePolicy(settings.view_rate_limit, settings.view_rate_window_seconds, **common),
    }


class AbuseGuard:
    """Per (identity-or-IP, action) sliding window limiter."""

    def __init__(
        self,
        policies: Optional[Dict[str, RatePolicy]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._policies = policies or default_policies()
        self._clock = clock
        self._windows: Dict[Tuple[str, str], _WindowState] = {}
        self._lock = threading.Lock()

    def policy_for(self, action: str) -> RatePolicy:
        try:
            return self._policies[action]
        except KeyError:
            raise ValueError(f"No rate policy configured for action '{action}'")

    def check_and_record(self, key: str, action: str) -> GuardDecision:
        """
        Record one attempt for (key, action) if the budget allows it.

        Returns:
            GuardDecision(allowed=True) or GuardDecision(allowed=False, retry_after=seconds)
        """
        policy = self.policy_for(action)

        with self._lock:
            now = self._clock()
            state = self._windows.setdefault((key, action), _WindowState())

            if state.violations and now - state.last_violation_at > policy.violation_reset_seconds:
                state.violations = 0

            if now < state.blocked_until:
                return GuardDecision(False, _ceil_seconds(state.blocked_until - now))

            horizon = now - policy.window_seconds
            while state.attempts and state.attempts[0] <= horizon:
                state.attempts.popleft()

            if len(state.attempts) >= policy.max_attempts:
                state.violations += 1
                state.last_violation_at = now
                backoff = min(
                    policy.backoff_base_seconds * (2 ** (state.violations - 1)),
                    policy.backoff_ceiling_seconds
                )
                window_free_at = state.attempts[0] + policy.window_seconds
                state.blocked_until = max(window_free_at, now + backoff)
                retry_after = _ceil_seconds(state.blocked_until - now)
                logger.info(
                    f"Rate limit hit: action={action} key={_mask_key(key)} "
                    f"violations={state.violations} retry_after={retry_after}s"
                )
                return GuardDecision(False, retry_after)

            state.attempts.append(now)
            return GuardDecision(True)

    def prune(self) -> int:
        """Drop windows that no longer hold attempts, blocks or violations."""
        removed = 0
        with self._lock:
            now = self._clock()
            for (key, action), state in list(self._windows.items()):
                policy = self._policies.get(action)
                if policy is None:
                    continue
                horizon = now - policy.window_seconds
                while state.attempts and state.attempts[0] <= horizon:
                    state.attempts.popleft()
                violation_live = state.violations and now - state.last_violation_at <= policy.violation_reset_seconds
                if not state.attempts and now >= state.blocked_until and not violation_live:
                    del self._windows[(key, action)]
                    removed += 1
        if removed:
            logger.debug(f"Pruned {removed} rate limit windows")
        return removed


def _ceil_seconds(value: float) -> int:
    return max(1, int(math.ceil(value)))


def _mask_key(key: str) -> str:
    prefix, _, rest = key.partition(":")
    return f"{prefix}:{rest[:8]}..." if rest else key
