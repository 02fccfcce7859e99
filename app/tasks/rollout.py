import asyncio
import logging
from app.config import settings
from app.services.invite_service import InviteService

logger = logging.getLogger(__name__)

# Rate limit windows are pruned every 5 minutes
GUARD_PRUNE_INTERVAL = 5 * 60


async def evaluate_rollout(service: InviteService):
    """
    One pass of the rollout control loop.

    - Always logs the decision
    - Applies Advance/Rollback only when ROLLOUT_AUTO_CONTROL is on
    """
    return await service.monitor.run_once(settings.rollout_auto_control)


def prune_rate_limits(service: InviteService) -> int:
    return service.guard.prune()


async def run_rollout_loop(service: InviteService, tick_seconds: float = 60):
    """
    Main rollout loop that runs continuously.
    """
    logger.info(
        f"Starting rollout background tasks (auto_control={settings.rollout_auto_control}, "
        f"interval={settings.rollout_eval_interval_seconds}s)"
    )

    loop = asyncio.get_running_loop()
    last_evaluation = loop.time()
    last_prune = loop.time()

    while True:
        try:
            current_time = loop.time()

            if current_time - last_evaluation >= settings.rollout_eval_interval_seconds:
                await evaluate_rollout(service)
                last_evaluation = current_time

            if current_time - last_prune >= GUARD_PRUNE_INTERVAL:
                prune_rate_limits(service)
                last_prune = current_time

            await asyncio.sleep(tick_seconds)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in rollout loop: {e}", exc_info=True)
            await asyncio.sleep(tick_seconds)
