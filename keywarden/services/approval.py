"""Approval request state machine.

States: ``PENDING`` -> ``APPROVED`` | ``DENIED``, plus ``EXPIRED`` which is
derived at read time for pending requests past their expiry and persisted
when a late decision arrives.

Quorum modes:
- ``ONE_OF_N``: the first guardian decision of either kind is terminal.
- ``REQUIRE_ALL``: a single denial is terminal; approval becomes terminal
  only once every current guardian has voted ``APPROVE``.

The terminal transition is a conditional ``UPDATE ... WHERE status =
'PENDING'``. When two decisions race, exactly one update matches; the other
observes zero rows and fails with ``AlreadyResolvedError``.

Every decision first takes the request row with a no-op conditional update,
so REQUIRE_ALL vote counts are serialized per request as well.

Every decision, accepted or rejected, is written to the audit log.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.config import APPROVAL_GRANT_MINUTES
from keywarden.exceptions import (
    AlreadyResolvedError,
    DuplicateError,
    NoGuardiansError,
    NotGuardianError,
    RequestExpiredError,
    RequestNotFoundError,
    ResourceNotFoundError,
)
from keywarden.models.approval_request import (
    APPROVED,
    DENIED,
    EXPIRED,
    PENDING,
    ApprovalDecision,
    ApprovalRequest,
    as_utc,
)
from keywarden.models.resource import Guardian, Resource
from keywarden.schemas.approval import AccessRequestContext
from keywarden.services import audit
from keywarden.services.audit import AuditService
from keywarden.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

APPROVE = "APPROVE"
DENY = "DENY"


@dataclass
class ApprovalCreated:
    """A new pending request plus what the notifier needs to reach guardians."""

    request: ApprovalRequest
    resource: Resource
    guardians: List[Guardian] = field(default_factory=list)


@dataclass
class DecisionResult:
    """Outcome of recording one guardian's decision."""

    request: ApprovalRequest
    decision: str
    terminal: bool
    approvals: int = 0
    required: int = 1
    callback_url: Optional[str] = None


class ApprovalService:
    """Owns the lifecycle of approval requests."""

    def __init__(
        self,
        db: AsyncSession,
        grant_ttl: timedelta = timedelta(minutes=APPROVAL_GRANT_MINUTES),
    ) -> None:
        self.db = db
        self.grant_ttl = grant_ttl

    async def _guardians(self, resource_id: str) -> List[Guardian]:
        result = await self.db.execute(
            select(Guardian).where(Guardian.resource_id == resource_id).order_by(Guardian.created_at)
        )
        return list(result.scalars().all())

    async def create_request(
        self,
        resource_id: str,
        context: Union[AccessRequestContext, Dict[str, Any], None] = None,
        expires_in: Optional[timedelta] = None,
        callback_url: Optional[str] = None,
    ) -> ApprovalCreated:
        """Create a ``PENDING`` request and return the guardians to notify.

        Raises:
            ResourceNotFoundError: If the resource does not exist
            NoGuardiansError: If the resource has no guardians configured
        """
        if context is None:
            context = AccessRequestContext()
        elif isinstance(context, dict):
            context = AccessRequestContext.model_validate(context)

        resource = await self.db.get(Resource, resource_id)
        if resource is None:
            raise ResourceNotFoundError(f"Resource not found: {resource_id}")

        guardians = await self._guardians(resource_id)
        if not guardians:
            raise NoGuardiansError("Resource has no guardians configured")

        now = datetime.now(UTC)
        request = ApprovalRequest(
            resource_id=resource_id,
            status=PENDING,
            context=context.model_dump(exclude_none=True),
            requester_id=context.requester_id,
            callback_url=callback_url,
            expires_at=now + expires_in if expires_in else None,
            created_at=now,
        )
        self.db.add(request)
        await self.db.commit()
        await self.db.refresh(request)

        logger.info(
            "Created approval request %s for resource %s (%d guardians)",
            request.id, resource.id, len(guardians),
        )
        return ApprovalCreated(request=request, resource=resource, guardians=guardians)

    async def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        """Fetch a request. Callers read ``effective_status()`` for lazy expiry."""
        return await self.db.get(ApprovalRequest, request_id)

    def _grant_active(self, request: ApprovalRequest, now: datetime) -> bool:
        resolved_at = as_utc(request.resolved_at)
        return resolved_at is not None and now < resolved_at + self.grant_ttl

    async def find_active_request(
        self, resource_id: str, requester_id: str
    ) -> Optional[ApprovalRequest]:
        """Most recent live request by ``requester_id`` for a resource.

        Live means ``PENDING`` and not yet expired, or ``APPROVED`` within
        the grant window. Used to reuse a pending request instead of
        creating duplicates, and to honour an approval on retry.
        """
        now = datetime.now(UTC)
        result = await self.db.execute(
            select(ApprovalRequest)
            .where(
                ApprovalRequest.resource_id == resource_id,
                ApprovalRequest.requester_id == requester_id,
                ApprovalRequest.status.in_([PENDING, APPROVED]),
            )
            .order_by(ApprovalRequest.created_at.desc())
        )
        for request in result.scalars():
            if request.status == PENDING and not request.is_expired(now):
                return request
            if request.status == APPROVED and self._grant_active(request, now):
                return request
        return None

    async def _transition(
        self, request: ApprovalRequest, new_status: str, resolver_id: Optional[str]
    ) -> bool:
        """Move a pending request to a terminal status. False if it was no longer pending."""
        result = await self.db.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request.id, ApprovalRequest.status == PENDING)
            .values(
                status=new_status,
                resolved_by=resolver_id,
                resolved_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _reject_resolved(self, request: ApprovalRequest) -> None:
        await self.db.rollback()
        await self.db.refresh(request)
        raise AlreadyResolvedError(request.id, request.status)

    async def _lock_pending(self, request: ApprovalRequest) -> bool:
        """Take the request's row lock with a no-op conditional update.

        Decisions on the same request queue here until the holder commits,
        so vote counting and the terminal transition see every earlier vote.
        False if the request is no longer pending.
        """
        result = await self.db.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request.id, ApprovalRequest.status == PENDING)
            .values(status=PENDING)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_decision(
        self, request_id: str, decision: str, resolver_id: str
    ) -> DecisionResult:
        """Record a guardian's decision and audit the outcome.

        Rejected decisions are audited as ``DENIED`` before the error
        propagates.

        Raises:
            RequestNotFoundError: Unknown request
            NotGuardianError: Resolver is not a guardian of the resource
            AlreadyResolvedError: Request is no longer pending
            RequestExpiredError: Request expired before the decision arrived
            DuplicateError: Guardian already voted on this (REQUIRE_ALL) request
            ValueError: Decision is not APPROVE or DENY
        """
        if decision not in (APPROVE, DENY):
            raise ValueError(f"Invalid decision: {decision}")

        request = await self.db.get(ApprovalRequest, request_id)
        if request is None:
            raise RequestNotFoundError(f"Request not found: {request_id}")

        # Captured up front: a rollback below expires the instance
        resource_id, requester_id = request.resource_id, request.requester_id
        audit_context: Dict[str, Any] = {"request_id": request_id, "decision": decision}

        try:
            result = await self._decide(request, decision, resolver_id)
        except (NotGuardianError, AlreadyResolvedError, RequestExpiredError, DuplicateError) as e:
            audit_context["reason"] = type(e).__name__
            await AuditService.log(
                self.db, audit.APPROVAL_DECISION, audit.DENIED,
                resource_id=resource_id, actor_id=requester_id, resolver_id=resolver_id,
                context=audit_context,
            )
            raise

        audit_context.update(
            status=result.request.status, approvals=result.approvals, required=result.required
        )
        await AuditService.log(
            self.db, audit.APPROVAL_DECISION, audit.SUCCESS,
            resource_id=resource_id, actor_id=requester_id, resolver_id=resolver_id,
            context=audit_context,
        )
        return result

    async def _decide(
        self, request: ApprovalRequest, decision: str, resolver_id: str
    ) -> DecisionResult:
        guardians = await self._guardians(request.resource_id)
        if resolver_id not in {g.user_id for g in guardians}:
            logger.warning(
                "Decision on %s rejected: %s is not a guardian",
                request.id, sanitize_log_message(resolver_id),
            )
            raise NotGuardianError()

        if request.status != PENDING:
            raise AlreadyResolvedError(request.id, request.status)

        if request.is_expired():
            if await self._transition(request, EXPIRED, None):
                await self.db.commit()
            await self.db.refresh(request)
            raise RequestExpiredError("Request has expired")

        if not await self._lock_pending(request):
            await self._reject_resolved(request)

        resource = await self.db.get(Resource, request.resource_id)

        existing_vote = await self.db.execute(
            select(ApprovalDecision.id).where(
                ApprovalDecision.request_id == request.id,
                ApprovalDecision.guardian_user_id == resolver_id,
            )
        )
        if existing_vote.scalar_one_or_none() is not None:
            await self.db.rollback()
            raise DuplicateError("Guardian has already voted on this request")

        self.db.add(
            ApprovalDecision(request_id=request.id, guardian_user_id=resolver_id, decision=decision)
        )
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateError("Guardian has already voted on this request")

        required = len(guardians) if resource.mode == "REQUIRE_ALL" else 1
        approvals = 0
        new_status: Optional[str]

        if decision == DENY:
            new_status = DENIED
        elif resource.mode == "REQUIRE_ALL":
            # Counted under the row lock, so concurrent final votes cannot both miss quorum
            votes = await self.db.execute(
                select(ApprovalDecision.guardian_user_id).where(
                    ApprovalDecision.request_id == request.id,
                    ApprovalDecision.decision == APPROVE,
                )
            )
            approvers = set(votes.scalars().all())
            guardian_ids = {g.user_id for g in guardians}
            approvals = len(approvers & guardian_ids)
            new_status = APPROVED if guardian_ids <= approvers else None
        else:
            approvals = 1
            new_status = APPROVED

        if new_status is not None and not await self._transition(request, new_status, resolver_id):
            await self._reject_resolved(request)

        await self.db.commit()
        await self.db.refresh(request)

        logger.info(
            "Recorded %s on approval request %s by %s (status: %s, approvals %d/%d)",
            decision, request.id, sanitize_log_message(resolver_id), request.status,
            approvals, required,
        )

        return DecisionResult(
            request=request,
            decision=decision,
            terminal=new_status is not None,
            approvals=approvals,
            required=required,
            callback_url=request.callback_url,
        )

    async def list_pending_for_guardian(self, user_id: str) -> List[ApprovalRequest]:
        """Pending, unexpired requests on resources the user guards."""
        now = datetime.now(UTC)
        result = await self.db.execute(
            select(ApprovalRequest)
            .join(Guardian, Guardian.resource_id == ApprovalRequest.resource_id)
            .where(Guardian.user_id == user_id, ApprovalRequest.status == PENDING)
            .order_by(ApprovalRequest.created_at.desc())
        )
        return [r for r in result.scalars().all() if not r.is_expired(now)]
