"""Abstract base class for approval notifiers."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ApprovalNotification:
    """Everything a guardian needs to decide on a request."""

    request_id: str
    resource_id: str
    resource_name: str
    guardian_ids: List[str]
    context: Dict[str, Any] = field(default_factory=dict)
    summary: str = "Requesting access"
    expires_at: Optional[datetime] = None


class ApprovalNotifier(ABC):
    """Delivers new approval requests to a resource's guardians.

    Delivery is best effort: callers log failures and carry on, so a broken
    notifier never blocks the request that triggered it.
    """

    # Notifier identifier used in logging
    service_name: str = "base"

    @abstractmethod
    async def notify(self, notification: ApprovalNotification) -> bool:
        """Send one notification.

        Returns:
            True if delivered
        """
        pass

    async def close(self) -> None:
        """Clean up resources (close HTTP clients, etc.)."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


class LogOnlyNotifier(ApprovalNotifier):
    """Fallback when no delivery channel is configured: log and succeed."""

    service_name = "log"

    async def notify(self, notification: ApprovalNotification) -> bool:
        logger.info(
            "[log] Approval request %s for resource %s awaits %d guardian(s)",
            notification.request_id, notification.resource_id, len(notification.guardian_ids),
        )
        return True
