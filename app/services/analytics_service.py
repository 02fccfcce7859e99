"""
Funnel analytics for the invite flow.

Each event is logged as one structured line and handed to the rollout
monitor. Raw tokens never reach this module's output; only redacted
previews are kept.
"""
import logging
import time
from typing import Callable, Optional

from app.core.logging import redact_token
from app.models.invite import InviteErrorKind
from app.models.rollout import InviteEvent, InviteEventName
from app.services.rollout_monitor import RolloutMonitor

logger = logging.getLogger(__name__)


class InviteAnalytics:

    def __init__(self, monitor: Optional[RolloutMonitor] = None, clock: Callable[[], float] = time.time):
        self._monitor = monitor
        self._clock = clock

    def emit(
        self,
        name: InviteEventName,
        correlation_id: str,
        latency_ms: float,
        raw_token: Optional[str] = None,
        error_kind: Optional[InviteErrorKind] = None,
        dedupe_key: Optional[str] = None
    ) -> InviteEvent:
        event = InviteEvent(
            name=name,
            correlation_id=correlation_id,
            latency_ms=round(latency_ms, 2),
            token_preview=redact_token(raw_token),
            occurred_at=self._clock(),
            error_kind=error_kind.value if error_kind else None
        )

        logger.info(
            f"{event.name.value} correlation_id={event.correlation_id} "
            f"latency_ms={event.latency_ms} token={event.token_preview or '-'}"
            + (f" reason={event.error_kind}" if event.error_kind else "")
        )

        if self._monitor:
            self._monitor.record(event, dedupe_key=dedupe_key)
        return event
