"""API endpoints for approval requests and guardian decisions."""

import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.db import get_db
from keywarden.dependencies import (
    get_current_user,
    get_notifier,
    get_optional_user,
    get_resource_service,
)
from keywarden.exceptions import PermissionDeniedError, RequestNotFoundError
from keywarden.models.approval_request import ApprovalRequest
from keywarden.models.resource import Resource
from keywarden.schemas.approval import (
    ApprovalRequestResponse,
    CreateApprovalRequest,
    DecisionBody,
)
from keywarden.services import audit
from keywarden.services.access import notify_guardians
from keywarden.services.approval import ApprovalService
from keywarden.services.audit import AuditService
from keywarden.services.notifications.base import ApprovalNotifier
from keywarden.services.notifications.callbacks import deliver_callback
from keywarden.services.resources import ResourceService
from keywarden.utils.security import constant_time_equals
from keywarden.utils.url_validation import validate_url_for_ssrf

logger = logging.getLogger(__name__)

router = APIRouter()


def to_response(request: ApprovalRequest) -> ApprovalRequestResponse:
    """Serialize a request with lazy expiry applied to its status."""
    return ApprovalRequestResponse(
        request_id=request.id,
        resource_id=request.resource_id,
        status=request.effective_status(),
        context=request.context or {},
        created_at=request.created_at,
        expires_at=request.expires_at,
        resolved_by=request.resolved_by,
        resolved_at=request.resolved_at,
    )


@router.post("/requests", response_model=ApprovalRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    body: CreateApprovalRequest,
    db: AsyncSession = Depends(get_db),
    resources: ResourceService = Depends(get_resource_service),
    notifier: Optional[ApprovalNotifier] = Depends(get_notifier),
) -> ApprovalRequestResponse:
    """Create an approval request on behalf of a machine caller.

    Authenticated by the resource's API key. Guardians are notified; the
    outcome can be polled or delivered to ``callback_url``.

    Raises:
        400: Callback URL points at an internal address
        403: Wrong API key or unknown resource
        422: Resource has no guardians
    """
    resource = await resources.verify_api_key(body.resource_id, body.api_key)

    callback_url = str(body.callback_url) if body.callback_url else None
    if callback_url:
        try:
            validate_url_for_ssrf(callback_url, allowed_schemes=["https"])
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    context = body.context
    if context.type == "MANUAL_REQUEST":
        context = context.model_copy(update={"type": "API_REQUEST"})

    expires_in = timedelta(seconds=body.expires_in_seconds) if body.expires_in_seconds else None
    created = await ApprovalService(db).create_request(
        resource.id, context, expires_in=expires_in, callback_url=callback_url
    )
    await AuditService.log(
        db, audit.APPROVAL_REQUESTED, audit.PENDING,
        resource_id=resource.id, actor_id=context.requester_id,
        context={"request_id": created.request.id, "type": context.type},
    )
    await notify_guardians(notifier, created)
    return to_response(created.request)


@router.get("/requests/pending", response_model=List[ApprovalRequestResponse])
async def list_pending(
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[ApprovalRequestResponse]:
    """Pending requests awaiting the caller's decision."""
    return [to_response(r) for r in await ApprovalService(db).list_pending_for_guardian(user_id)]


@router.get("/requests/{request_id}", response_model=ApprovalRequestResponse)
async def get_request(
    request_id: str,
    x_api_key: Optional[str] = Header(None),
    user_id: Optional[str] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    resources: ResourceService = Depends(get_resource_service),
) -> ApprovalRequestResponse:
    """Request status for its requester, a guardian, or the resource's API key holder."""
    request = await ApprovalService(db).get_request(request_id)
    if request is None:
        raise RequestNotFoundError(f"Request not found: {request_id}")

    if x_api_key:
        resource = await resources.get_resource(request.resource_id)
        if not constant_time_equals(resource.api_key, x_api_key):
            raise PermissionDeniedError()
        return to_response(request)

    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if user_id != request.requester_id and not await resources.is_guardian(request.resource_id, user_id):
        raise PermissionDeniedError()
    return to_response(request)


@router.post("/requests/{request_id}/decision", response_model=ApprovalRequestResponse)
async def decide(
    request_id: str,
    body: DecisionBody,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ApprovalRequestResponse:
    """Record the caller's approve/deny decision.

    Raises:
        403: Caller is not a guardian of the resource
        404: Unknown request
        409: Request already resolved, or caller already voted
        410: Request expired
    """
    result = await ApprovalService(db).record_decision(request_id, body.decision, user_id)
    request = result.request

    if result.terminal and result.callback_url:
        resource = await db.get(Resource, request.resource_id)
        background_tasks.add_task(deliver_callback, request, resource.api_key)

    return to_response(request)
