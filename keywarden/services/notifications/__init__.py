"""Approval notification sinks for KeyWarden."""

from keywarden.config import DISCORD_WEBHOOK_URL
from keywarden.services.notifications.base import (
    ApprovalNotification,
    ApprovalNotifier,
    LogOnlyNotifier,
)
from keywarden.services.notifications.discord import DiscordApprovalNotifier


def create_notifier(webhook_url: str = DISCORD_WEBHOOK_URL) -> ApprovalNotifier:
    """Discord notifier when a webhook is configured, log-only otherwise."""
    if webhook_url:
        return DiscordApprovalNotifier(webhook_url)
    return LogOnlyNotifier()


__all__ = [
    "ApprovalNotification",
    "ApprovalNotifier",
    "DiscordApprovalNotifier",
    "LogOnlyNotifier",
    "create_notifier",
]
