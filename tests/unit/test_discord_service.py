"""
Tests para las notificaciones de rollout a Discord.
"""
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.services.discord_service import DiscordOpsNotifier, build_ops_notifier


WEBHOOK = "https://discord.test/api/webhooks/1/abc"


def mock_http_client(status_code: int = 204, error: Exception = None):
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    if error:
        client.post = AsyncMock(side_effect=error)
    else:
        client.post = AsyncMock(return_value=MagicMock(status_code=status_code))
    return client


class TestDiscordOpsNotifier:

    @pytest.mark.asyncio
    async def test_rollback_embed(self):
        client = mock_http_client()

        with patch('app.services.discord_service.httpx.AsyncClient', return_value=client):
            sent = await DiscordOpsNotifier(WEBHOOK).send_rollout_event(
                "Rollout Rollback: tokenized_invites", "25% -> 0%",
                severe=True, context={"reason": "conversion=0.30"}
            )

        assert sent is True
        url = client.post.call_args.args[0]
        embed = client.post.call_args.kwargs["json"]["embeds"][0]
        assert url == WEBHOOK
        assert embed["color"] == 15158332
        assert embed["fields"][0] == {"name": "reason", "value": "conversion=0.30", "inline": True}
        assert embed["fields"][-1]["name"] == "Entorno"

    @pytest.mark.asyncio
    async def test_rejected_by_discord(self):
        with patch('app.services.discord_service.httpx.AsyncClient', return_value=mock_http_client(429)):
            sent = await DiscordOpsNotifier(WEBHOOK).send_rollout_event("t", "m")

        assert sent is False

    @pytest.mark.asyncio
    async def test_network_error_is_not_raised(self):
        client = mock_http_client(error=httpx.ConnectError("down"))

        with patch('app.services.discord_service.httpx.AsyncClient', return_value=client):
            sent = await DiscordOpsNotifier(WEBHOOK).send_rollout_event("t", "m")

        assert sent is False

    def test_build_without_webhook(self):
        with patch('app.services.discord_service.settings') as mock_settings:
            mock_settings.discord_ops_webhook_url = None
            assert build_ops_notifier() is None

            mock_settings.discord_ops_webhook_url = WEBHOOK
            assert build_ops_notifier().webhook_url == WEBHOOK
