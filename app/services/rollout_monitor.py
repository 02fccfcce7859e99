"""
Funnel metrics and go/no-go evaluation for the staged invite rollout.

The monitor is the only component that changes RolloutFlag.percent on its
own: forward one stage when the funnel is healthy, straight down to the
rollback percent when it is not. Rollback checks always run first.
"""
import logging
import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from app.config import settings
from app.models.rollout import (
    FunnelMetrics, InviteEvent, InviteEventName,
    RolloutAction, RolloutDecision, RolloutFlag
)
from app.services.discord_service import DiscordOpsNotifier
from app.services.rollout_gate import RolloutConfigAccessor

logger = logging.getLogger(__name__)

AUTO_ACTOR = "rollout-monitor"


def percentile(values: List[float], pct: float) -> Optional[float]:
    """Nearest-rank percentile"""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, int(math.ceil(pct / 100.0 * len(ordered))))
    return ordered[rank - 1]


class RolloutMonitor:
    def __init__(
        self,
        accessor: RolloutConfigAccessor,
        feature_name: Optional[str] = None,
        stages: Optional[List[int]] = None,
        window_seconds: Optional[float] = None,
        min_events: Optional[int] = None,
        min_stage_seconds: Optional[float] = None,
        advance_min_conversion: Optional[float] = None,
        advance_max_error_rate: Optional[float] = None,
        rollback_min_conversion: Optional[float] = None,
        rollback_max_error_rate: Optional[float] = None,
        rollback_percent: Optional[int] = None,
        notifier: Optional[DiscordOpsNotifier] = None,
        clock: Callable[[], float] = time.time
    ):
        self._accessor = accessor
        self.feature_name = feature_name or settings.rollout_feature_name
        self.stages = sorted(stages or settings.rollout_stage_list)
        self.window_seconds = window_seconds or settings.rollout_window_seconds
        self.min_events = settings.rollout_min_events if min_events is None else min_events
        self.min_stage_seconds = settings.rollout_min_stage_seconds if min_stage_seconds is None else min_stage_seconds
        self.advance_min_conversion = _pick(advance_min_conversion, settings.rollout_advance_min_conversion)
        self.advance_max_error_rate = _pick(advance_max_error_rate, settings.rollout_advance_max_error_rate)
        self.rollback_min_conversion = _pick(rollback_min_conversion, settings.rollout_rollback_min_conversion)
        self.rollback_max_error_rate = _pick(rollback_max_error_rate, settings.rollout_rollback_max_error_rate)
        self.rollback_percent = settings.rollout_rollback_percent if rollback_percent is None else rollback_percent
        self._notifier = notifier
        self._clock = clock

        self._lock = threading.Lock()
        self._events: Deque[InviteEvent] = deque()
        self._seen: Dict[str, float] = {}
        self._stage_started_at = clock()
        self._stage_percent: Optional[int] = None

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def record(self, event: InviteEvent, dedupe_key: Optional[str] = None):
        """Add an event to the window. Events sharing a dedupe_key count once per window."""
        with self._lock:
            if event.occurred_at < self._stage_started_at:
                return
            self._trim(self._clock())
            if dedupe_key is not None:
                if dedupe_key in self._seen:
                    return
                self._seen[dedupe_key] = event.occurred_at
            self._events.append(event)

    def reset_stage(self, percent: Optional[int] = None):
        with self._lock:
            self._events.clear()
            self._seen.clear()
            self._stage_started_at = self._clock()
            self._stage_percent = percent

    def _trim(self, now: float):
        horizon = now - self.window_seconds
        while self._events and self._events[0].occurred_at < horizon:
            self._events.popleft()
        # insertion order is arrival order
        while self._seen:
            key = next(iter(self._seen))
            if self._seen[key] >= horizon:
                break
            del self._seen[key]

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> FunnelMetrics:
        with self._lock:
            self._trim(self._clock())
            events = list(self._events)

        m = FunnelMetrics()
        latencies: List[float] = []
        fail_kinds = {}
        for event in events:
            if event.name == InviteEventName.VIEW:
                m.views += 1
                continue
            latencies.append(event.latency_ms)
            if event.name == InviteEventName.VALIDATE_SUCCESS:
                m.validate_success += 1
            elif event.name == InviteEventName.VALIDATE_FAIL:
                m.validate_fail += 1
            elif event.name == InviteEventName.ACCEPT_SUCCESS:
                m.accept_success += 1
            elif event.name == InviteEventName.ACCEPT_FAIL:
                m.accept_fail += 1
            if event.error_kind:
                fail_kinds[event.error_kind] = fail_kinds.get(event.error_kind, 0) + 1

        attempts = m.validate_success + m.validate_fail + m.accept_success + m.accept_fail
        if m.views:
            m.view_to_validate = m.validate_success / m.views
        if m.validate_success:
            m.validate_to_accept = m.accept_success / m.validate_success
        if m.sample_size:
            m.conversion = min(1.0, m.accept_success / m.sample_size)
        if attempts:
            m.error_rate = (m.validate_fail + m.accept_fail) / attempts
            m.error_kind_rates = {kind: count / attempts for kind, count in fail_kinds.items()}

        m.latency_p50_ms = percentile(latencies, 50)
        m.latency_p95_ms = percentile(latencies, 95)
        m.latency_p99_ms = percentile(latencies, 99)
        return m

    # ------------------------------------------------------------------
    # Evaluation and control
    # ------------------------------------------------------------------

    def next_stage(self, percent: int) -> Optional[int]:
        for stage in self.stages:
            if stage > percent:
                return stage
        return None

    async def evaluate(self) -> RolloutDecision:
        flag = await self._accessor.get(self.feature_name)
        percent = flag.percent

        if self._stage_percent is None:
            self._stage_percent = percent
        elif self._stage_percent != percent:
            # percent moved outside this monitor (manual override or another instance)
            self.reset_stage(percent)

        def hold(reason: str) -> RolloutDecision:
            return RolloutDecision(action=RolloutAction.HOLD, from_percent=percent, to_percent=percent, reason=reason)

        if percent <= 0:
            return hold("rollout disabled")

        m = self.metrics()
        if m.sample_size < self.min_events:
            return hold(f"insufficient sample ({m.sample_size}/{self.min_events})")

        conversion = m.conversion or 0.0
        error_rate = m.error_rate or 0.0

        if conversion < self.rollback_min_conversion or error_rate > self.rollback_max_error_rate:
            if percent <= self.rollback_percent:
                return hold("already at rollback percent")
            return RolloutDecision(
                action=RolloutAction.ROLLBACK,
                from_percent=percent,
                to_percent=self.rollback_percent,
                reason=f"conversion={conversion:.2f} error_rate={error_rate:.2f}"
            )

        if percent >= 100:
            return hold("fully rolled out")

        stage_age = self._clock() - self._stage_started_at
        if stage_age < self.min_stage_seconds:
            return hold(f"stage age {stage_age:.0f}s below {self.min_stage_seconds:.0f}s")

        if conversion >= self.advance_min_conversion and error_rate < self.advance_max_error_rate:
            target = self.next_stage(percent)
            if target is not None:
                return RolloutDecision(
                    action=RolloutAction.ADVANCE,
                    from_percent=percent,
                    to_percent=target,
                    reason=f"conversion={conversion:.2f} error_rate={error_rate:.2f}"
                )

        return hold(f"conversion={conversion:.2f} error_rate={error_rate:.2f}")

    async def apply(self, decision: RolloutDecision) -> Optional[RolloutFlag]:
        """Apply Advance/Rollback. Repeated rollbacks are no-ops."""
        if decision.action == RolloutAction.HOLD:
            return None

        self._accessor.invalidate(self.feature_name)
        current = await self._accessor.get(self.feature_name)

        if decision.action == RolloutAction.ROLLBACK:
            if current.percent <= decision.to_percent:
                logger.debug(f"Rollback to {decision.to_percent}% already in effect for {self.feature_name}")
                return None
        elif current.percent != decision.from_percent:
            logger.info(
                f"Skipping advance for {self.feature_name}: percent changed "
                f"{decision.from_percent}% -> {current.percent}%"
            )
            return None

        flag = await self._accessor.set(self.feature_name, decision.to_percent, AUTO_ACTOR)
        self.reset_stage(flag.percent)

        if decision.action == RolloutAction.ROLLBACK:
            logger.warning(
                f"rollout.rollback: {self.feature_name} {current.percent}% -> {flag.percent}% ({decision.reason})"
            )
        else:
            logger.info(
                f"rollout.advance: {self.feature_name} {current.percent}% -> {flag.percent}% ({decision.reason})"
            )

        if self._notifier:
            await self._notifier.send_rollout_event(
                title=f"Rollout {decision.action.value}: {self.feature_name}",
                message=f"{current.percent}% -> {flag.percent}%",
                severe=decision.action == RolloutAction.ROLLBACK,
                context={"reason": decision.reason}
            )
        return flag

    async def run_once(self, auto_control: Optional[bool] = None) -> RolloutDecision:
        auto_control = settings.rollout_auto_control if auto_control is None else auto_control
        decision = await self.evaluate()
        logger.info(
            f"Rollout evaluation {self.feature_name}: {decision.action.value} "
            f"{decision.from_percent}% -> {decision.to_percent}% ({decision.reason})"
        )
        if auto_control:
            await self.apply(decision)
        return decision

    async def manual_override(self, percent: int, actor: str) -> RolloutFlag:
        flag = await self._accessor.set(self.feature_name, percent, actor)
        self.reset_stage(flag.percent)
        logger.warning(f"rollout.manual_override: {self.feature_name} set to {percent}% by {actor}")
        return flag


def _pick(value: Optional[float], default: float) -> float:
    return default if value is None else value
