# services/staff_notifier.py
"""
Staff channel notifications through a Discord webhook.

Used for player reports and server status changes. Without
STAFF_WEBHOOK_URL the notifier only logs.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp
import discord

from services.collaborators import StaffNotifier

logger = logging.getLogger(__name__)


def build_staff_embed(title: str, message: str, color: Optional[discord.Color] = None) -> discord.Embed:
    """Build the embed posted to the staff channel."""
    embed = discord.Embed(
        title=title,
        description=message[:4096],
        color=color or discord.Color.orange(),
        timestamp=datetime.now(timezone.utc)
    )
    embed.set_footer(text="RCON Admin")
    return embed


class DiscordStaffNotifier(StaffNotifier):
    """Posts staff notifications to a Discord webhook."""

    def __init__(self, webhook_url: Optional[str] = None, username: str = "RCON Admin"):
        if webhook_url is None:
            from config.settings import STAFF_WEBHOOK_URL
            webhook_url = STAFF_WEBHOOK_URL
        self.webhook_url = webhook_url
        self.username = username

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def notify(self, title: str, message: str) -> bool:
        """
        Send a notification to the staff channel.

        Returns:
            True if the webhook accepted the message
        """
        logger.info(f"Staff notification: {title}: {message}")
        if not self.is_configured:
            return False

        try:
            async with aiohttp.ClientSession() as session:
                webhook = discord.Webhook.from_url(self.webhook_url, session=session)
                await webhook.send(embed=build_staff_embed(title, message), username=self.username)
            return True
        except (discord.HTTPException, aiohttp.ClientError, ValueError) as e:
            logger.error(f"Failed to send staff notification: {e}")
            return False
