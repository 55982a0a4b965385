"""Gated reads of sensitive values.

Every read follows the same path: rate limiter, then access policy, then
either a direct decrypt or the approval workflow, with an audit event for
each outcome.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.config import APPROVAL_EXPIRY_MINUTES
from keywarden.exceptions import (
    DecryptionError,
    PermissionDeniedError,
    RateLimitedError,
    ResourceNotFoundError,
)
from keywarden.models.approval_request import APPROVED, ApprovalRequest
from keywarden.models.resource import Resource
from keywarden.schemas.approval import AccessRequestContext
from keywarden.services import audit
from keywarden.services.approval import ApprovalCreated, ApprovalService
from keywarden.services.audit import AuditService
from keywarden.services.notifications.base import ApprovalNotification, ApprovalNotifier
from keywarden.services.policy import AccessAction, AccessDecision, evaluate_access
from keywarden.services.rate_limiter import RateLimiter
from keywarden.services.resources import ResourceService
from keywarden.services.totp import generate_code
from keywarden.utils.encryption import EnvelopeCipher
from keywarden.utils.error_handling import log_and_continue
from keywarden.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


@dataclass
class AccessOutcome:
    """Either the plaintext value, or the approval request the caller must wait on."""

    granted: bool
    value: Any = None
    request: Optional[ApprovalRequest] = None
    created: bool = False

    @property
    def pending(self) -> bool:
        return not self.granted and self.request is not None


def rate_limit_key(actor_id: str, resource_id: str, action: AccessAction) -> str:
    return f"{actor_id}:{resource_id}:{action.value}"


class AccessService:
    """Ties the limiter, policy, cipher, approvals and audit log together."""

    def __init__(
        self,
        db: AsyncSession,
        limiter: RateLimiter,
        cipher: EnvelopeCipher,
        notifier: Optional[ApprovalNotifier] = None,
        approval_expiry: timedelta = timedelta(minutes=APPROVAL_EXPIRY_MINUTES),
    ) -> None:
        self.db = db
        self.limiter = limiter
        self.cipher = cipher
        self.notifier = notifier
        self.approval_expiry = approval_expiry
        self.resources = ResourceService(db, cipher)
        self.approvals = ApprovalService(db)

    async def read_field(self, resource_id: str, field_name: str, actor_id: str) -> AccessOutcome:
        """Read a field value, directly or via approval.

        Raises:
            PermissionDeniedError: Anonymous caller
            RateLimitedError: Caller exhausted its bucket
            ResourceNotFoundError: Unknown resource or field
            DecryptionError: Stored value unreadable with the current key
        """
        resource = await self._admit(resource_id, actor_id, AccessAction.FIELD_READ)
        if not await self.resources.field_exists(resource_id, field_name):
            raise ResourceNotFoundError("Field not found")

        context = AccessRequestContext(
            type="FIELD_ACCESS", requester_id=actor_id, action="read", field_name=field_name
        )
        return await self._read(
            resource,
            actor_id,
            AccessAction.FIELD_READ,
            context,
            audit.FIELD_ACCESSED,
            lambda: self.resources.get_field(resource_id, field_name),
        )

    async def read_all_fields(self, resource_id: str, actor_id: str) -> AccessOutcome:
        """Read every field of a resource at once; ``value`` is a name to value dict.

        Gated like a single field read, under the same rate limit bucket.
        """
        resource = await self._admit(resource_id, actor_id, AccessAction.FIELD_READ)
        context = AccessRequestContext(
            type="FIELD_ACCESS", requester_id=actor_id, action="pull",
            reason="Requesting all fields",
        )
        return await self._read(
            resource,
            actor_id,
            AccessAction.FIELD_READ,
            context,
            audit.FIELD_ACCESSED,
            lambda: self.resources.get_all_fields(resource_id),
        )

    async def read_totp_code(self, resource_id: str, actor_id: str) -> AccessOutcome:
        """Generate the current code for the resource's linked TOTP credential.

        Raises:
            ResourceNotFoundError: Unknown resource or no credential linked
        """
        resource = await self._admit(resource_id, actor_id, AccessAction.TOTP_READ)
        credential = await self.resources.get_linked_totp(resource_id)
        if credential is None:
            raise ResourceNotFoundError("No 2FA account linked to this resource")

        async def current_code() -> str:
            return generate_code(self.cipher.decrypt(credential.secret))

        context = AccessRequestContext(type="TOTP_ACCESS", requester_id=actor_id, action="read")
        return await self._read(
            resource, actor_id, AccessAction.TOTP_READ, context, audit.TOTP_ACCESSED, current_code
        )

    async def _admit(self, resource_id: str, actor_id: str, action: AccessAction) -> Resource:
        if not actor_id:
            raise PermissionDeniedError()

        if not self.limiter.check(rate_limit_key(actor_id, resource_id, action)):
            await AuditService.log(
                self.db, audit.RATE_LIMITED, audit.THROTTLED,
                resource_id=resource_id, actor_id=actor_id, context={"action": action.value},
            )
            raise RateLimitedError(retry_after=self.limiter.window_seconds)

        resource = await self.db.get(Resource, resource_id)
        if resource is None:
            raise ResourceNotFoundError(f"Resource not found: {resource_id}")
        return resource

    async def _read(
        self,
        resource: Resource,
        actor_id: str,
        action: AccessAction,
        context: AccessRequestContext,
        audit_action: str,
        reveal: Callable[[], Any],
    ) -> AccessOutcome:
        guardians = await self.resources.list_guardians(resource.id)
        policy = evaluate_access(actor_id, guardians, action)
        audit_context: Dict[str, Any] = {"action": action.value}
        if context.field_name:
            audit_context["field"] = context.field_name

        if policy.decision is AccessDecision.DENY:
            await AuditService.log(
                self.db, audit_action, audit.DENIED,
                resource_id=resource.id, actor_id=actor_id, context=audit_context,
            )
            raise PermissionDeniedError()

        if policy.decision is AccessDecision.REQUIRE_APPROVAL:
            active = await self.approvals.find_active_request(resource.id, actor_id)
            if active is None or active.status != APPROVED:
                return await self._pending(resource, actor_id, context, active)
            audit_context["request_id"] = active.id

        try:
            value = await reveal()
        except DecryptionError:
            await AuditService.log(
                self.db, audit_action, audit.FAILED,
                resource_id=resource.id, actor_id=actor_id, context=audit_context,
            )
            logger.error("Stored value for resource %s could not be decrypted", resource.id)
            raise

        await AuditService.log(
            self.db, audit_action, audit.SUCCESS,
            resource_id=resource.id, actor_id=actor_id, context=audit_context,
        )
        return AccessOutcome(granted=True, value=value)

    async def _pending(
        self,
        resource: Resource,
        actor_id: str,
        context: AccessRequestContext,
        existing: Optional[ApprovalRequest],
    ) -> AccessOutcome:
        if existing is not None:
            return AccessOutcome(granted=False, request=existing, created=False)

        created = await self.approvals.create_request(
            resource.id, context, expires_in=self.approval_expiry
        )
        await AuditService.log(
            self.db, audit.APPROVAL_REQUESTED, audit.PENDING,
            resource_id=resource.id, actor_id=actor_id,
            context={"request_id": created.request.id, "type": context.type},
        )
        logger.info(
            "Access to resource %s by %s requires approval (request %s)",
            resource.id, sanitize_log_message(actor_id), created.request.id,
        )
        await notify_guardians(self.notifier, created)
        return AccessOutcome(granted=False, request=created.request, created=True)


async def notify_guardians(notifier: Optional[ApprovalNotifier], created: ApprovalCreated) -> bool:
    """Tell the guardians about a new request. Never raises."""
    if notifier is None:
        return False

    request = created.request
    context = AccessRequestContext.model_validate(request.context)
    notification = ApprovalNotification(
        request_id=request.id,
        resource_id=created.resource.id,
        resource_name=created.resource.name,
        guardian_ids=[g.user_id for g in created.guardians],
        context=request.context,
        summary=context.describe(),
        expires_at=request.expires_at,
    )
    try:
        return await notifier.notify(notification)
    except Exception as e:
        log_and_continue(logger, e, f"Failed to notify guardians of request {request.id}")
        return False
