"""
Discord notifications for rollout operational events
Sends rollback / advance alerts to the operators' webhook
"""
import httpx
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging
from app.config import settings

logger = logging.getLogger(__name__)


class DiscordOpsNotifier:
    """Send operational notifications to a Discord webhook"""

    def __init__(self, webhook_url: str):
        self.webhook_url = webhook_url

    async def send_rollout_event(
        self,
        title: str,
        message: str,
        severe: bool = False,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Send rollout event to Discord. Returns True when Discord accepted it."""
        try:
            embed = {
                "title": title,
                "description": message[:2000],
                "color": 15158332 if severe else 3066993,  # Red / Green
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "fields": []
            }

            if context:
                embed["fields"] = [
                    {"name": k, "value": str(v)[:1024], "inline": True}
                    for k, v in context.items()
                ]

            embed["fields"].append({
                "name": "Entorno",
                "value": f"**Env:** {settings.app_env}",
                "inline": True
            })

            payload = {
                "embeds": [embed],
                "username": "Property Invites Rollout"
            }

            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.webhook_url, json=payload)
                if response.status_code in (200, 204):
                    logger.info(f"Rollout notification sent: {title}")
                    return True
                logger.warning(f"Discord rejected rollout notification: {response.status_code}")
                return False

        except httpx.HTTPError as e:
            logger.error(f"Failed to send rollout notification to Discord: {e}")
            return False


def build_ops_notifier() -> Optional[DiscordOpsNotifier]:
    if settings.discord_ops_webhook_url:
        return DiscordOpsNotifier(settings.discord_ops_webhook_url)
    return None
