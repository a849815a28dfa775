"""Discord notification adapter."""

from typing import Any, Optional

import httpx

from modportal_monitor.config import DiscordConfig
from modportal_monitor.core import DeliveryError, Notification, NotificationService

GREEN = 0x57F287
BLUE = 0x3498DB

TITLE_LIMIT = 256


class DiscordNotifier(NotificationService):
    """Post update embeds to Discord channels through the REST API."""

    def __init__(self, token: str, config: Optional[DiscordConfig] = None, author_base_url: str = "") -> None:
        """Initialize Discord notifier.

        Args:
            token: Bot token used for the Authorization header
            config: API URL and timeout
            author_base_url: Prefix for author profile links
        """
        self.token = token
        self.config = config or DiscordConfig()
        self.author_base_url = author_base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bot {self.token}",
            "Content-Type": "application/json",
        }

    def _author_field(self, author: str) -> str:
        if not self.author_base_url:
            return author
        return f"[{author}]({self.author_base_url}/{author})"

    def build_embed(self, notification: Notification) -> dict[str, Any]:
        """Build the embed payload for one notification."""
        title = notification.title
        if len(title) > TITLE_LIMIT:
            title = title[: TITLE_LIMIT - 3] + "..."

        embed: dict[str, Any] = {
            "title": title,
            "url": notification.link,
            "color": GREEN if notification.is_new else BLUE,
            "timestamp": notification.released_at,
        }

        author = self._author_field(notification.author)
        if notification.changelog:
            embed["description"] = notification.changelog
            embed["fields"] = [
                {"name": "", "value": f"**Author:** {author}", "inline": True},
                {"name": "", "value": f"**Version:** {notification.version}", "inline": True},
            ]
        else:
            embed["fields"] = [
                {"name": "Author:", "value": author, "inline": True},
                {"name": "Version:", "value": notification.version, "inline": True},
            ]

        if notification.thumbnail:
            embed["thumbnail"] = {"url": notification.thumbnail}

        return embed

    async def _post(self, channel: str, payload: dict[str, Any]) -> None:
        url = f"{self.config.api_url}/channels/{channel}/messages"
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            try:
                response = await client.post(url, headers=self._headers(), json=payload)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise DeliveryError(f"Could not send to channel {channel}: {e}") from e

    async def send(self, notification: Notification) -> None:
        """Send one update embed.

        Raises:
            DeliveryError: if Discord rejects the message or is unreachable
        """
        await self._post(notification.channel, {"embeds": [self.build_embed(notification)]})

    async def send_test(self, channel: str) -> None:
        await self._post(channel, {"embeds": [{"description": "Mod Update Test", "color": BLUE}]})
