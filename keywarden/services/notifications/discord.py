"""Discord webhook notifier for approval requests."""

import logging
from typing import Optional

import httpx

from keywarden.exceptions import SSRFProtectionError
from keywarden.services.notifications.base import ApprovalNotification, ApprovalNotifier
from keywarden.utils.url_validation import validate_url_for_ssrf

logger = logging.getLogger(__name__)

EMBED_COLOR = 0xFF9800  # Orange: action needed
MAX_FIELD_LENGTH = 1024


class DiscordApprovalNotifier(ApprovalNotifier):
    """Posts approval requests to a Discord channel webhook.

    Guardians are mentioned so the message pings them; they resolve the
    request with the bot's approve/deny commands or the decision endpoint.
    """

    service_name = "discord"

    def __init__(self, webhook_url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        """Initialize Discord notifier.

        Raises:
            SSRFProtectionError: If webhook URL fails SSRF validation
        """
        try:
            validate_url_for_ssrf(webhook_url, allowed_schemes=["https"])
        except SSRFProtectionError as e:
            logger.error(f"[discord] Webhook URL failed SSRF validation: {e}")
            raise

        self.webhook_url = webhook_url
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def close(self) -> None:
        await self.client.aclose()

    def build_payload(self, notification: ApprovalNotification) -> dict:
        mentions = " ".join(f"<@{user_id}>" for user_id in notification.guardian_ids)
        fields = [
            {"name": "Resource", "value": notification.resource_name[:MAX_FIELD_LENGTH], "inline": True},
            {"name": "Request ID", "value": f"`{notification.request_id}`", "inline": True},
        ]
        requester = notification.context.get("requester_id")
        if requester:
            fields.append({"name": "Requested by", "value": f"<@{requester}>", "inline": True})
        reason = notification.context.get("reason")
        if reason:
            fields.append({"name": "Reason", "value": str(reason)[:MAX_FIELD_LENGTH]})

        embed = {
            "title": "\U0001f510 Approval requested",
            "description": notification.summary,
            "color": EMBED_COLOR,
            "fields": fields,
            "footer": {"text": "KeyWarden"},
        }
        if notification.expires_at is not None:
            embed["timestamp"] = notification.expires_at.isoformat()

        return {
            "content": mentions or None,
            "embeds": [embed],
            "allowed_mentions": {"users": notification.guardian_ids},
        }

    async def notify(self, notification: ApprovalNotification) -> bool:
        try:
            response = await self.client.post(self.webhook_url, json=self.build_payload(notification))
            # Discord returns 204 No Content on success
            if response.status_code != 204:
                response.raise_for_status()
            logger.info(f"[discord] Sent approval request {notification.request_id}")
            return True
        except httpx.HTTPStatusError as e:
            logger.error(f"[discord] HTTP error: {e}")
            return False
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            logger.error(f"[discord] Connection error: {e}")
            return False
