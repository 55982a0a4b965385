"""Append-only audit log of security-relevant actions."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.models.audit_event import AuditEvent
from keywarden.utils.error_handling import log_and_continue

logger = logging.getLogger(__name__)

# Action names
FIELD_ACCESSED = "FIELD_ACCESSED"
FIELD_UPDATED = "FIELD_UPDATED"
FIELD_DELETED = "FIELD_DELETED"
TOTP_ACCESSED = "TOTP_ACCESSED"
TOTP_LINKED = "TOTP_LINKED"
TOTP_UNLINKED = "TOTP_UNLINKED"
RATE_LIMITED = "RATE_LIMITED"
APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
APPROVAL_DECISION = "APPROVAL_DECISION"
GUARDIAN_ADDED = "GUARDIAN_ADDED"
GUARDIAN_REMOVED = "GUARDIAN_REMOVED"
API_KEY_ROTATED = "API_KEY_ROTATED"
API_KEY_REJECTED = "API_KEY_REJECTED"
DEVICE_LOGIN = "DEVICE_LOGIN"

# Status values
SUCCESS = "SUCCESS"
DENIED = "DENIED"
PENDING = "PENDING"
THROTTLED = "THROTTLED"
FAILED = "FAILED"


class AuditService:
    """Write and read audit events.

    There is deliberately no update or delete method.
    """

    @staticmethod
    async def log(
        db: AsyncSession,
        action: str,
        status: str,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        resolver_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """Record an event and commit it.

        A failing audit write is logged and swallowed so it never blocks the
        operation being audited. Callers commit their own changes first.

        Returns:
            The stored event, or None if the write failed
        """
        event = AuditEvent(
            action=action,
            status=status,
            resource_id=resource_id,
            actor_id=actor_id,
            resolver_id=resolver_id,
            context=context,
        )
        try:
            db.add(event)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            log_and_continue(logger, e, f"Failed to write audit event {action}")
            return None

        logger.debug(
            "Audit event logged: %s (status=%s, resource=%s)", action, status, resource_id
        )
        return event

    @staticmethod
    async def list_for_resource(
        db: AsyncSession, resource_id: str, limit: int = 100
    ) -> List[AuditEvent]:
        """Most recent events for a resource, newest first."""
        result = await db.execute(
            select(AuditEvent)
            .where(AuditEvent.resource_id == resource_id)
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
