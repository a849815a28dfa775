"""Notification adapters."""

from modportal_monitor.adapters.notifications.discord_notifier import DiscordNotifier

__all__ = ["DiscordNotifier"]
