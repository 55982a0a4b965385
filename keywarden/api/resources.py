"""API endpoints for resources, guardians, fields and linked 2FA."""

import logging
from typing import List, Union

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.db import get_db
from keywarden.dependencies import get_access_service, get_current_user, get_resource_service
from keywarden.exceptions import PermissionDeniedError
from keywarden.schemas.approval import PendingAccessResponse
from keywarden.schemas.resource import (
    ApiKeyResponse,
    AuditEventResponse,
    FieldUpsert,
    FieldValueResponse,
    GuardianAdd,
    GuardianResponse,
    ResourceCreate,
    ResourceResponse,
    TOTPCodeResponse,
    TOTPCreate,
    TOTPCredentialResponse,
    TOTPLink,
)
from keywarden.services.access import AccessOutcome, AccessService
from keywarden.services.audit import AuditService
from keywarden.services.policy import can_manage_guardians
from keywarden.services.resources import ResourceService
from keywarden.utils.error_handling import safe_error_response
from keywarden.utils.validators import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


def pending_response(outcome: AccessOutcome) -> JSONResponse:
    """202 telling the caller to retry once a guardian has approved."""
    body = PendingAccessResponse(
        request_id=outcome.request.id,
        created=outcome.created,
        expires_at=outcome.request.expires_at,
    )
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(mode="json"))


# ============================================================================
# Resources
# ============================================================================


@router.post("/resources", response_model=ResourceResponse, status_code=status.HTTP_201_CREATED)
async def create_resource(
    body: ResourceCreate,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> ResourceResponse:
    """Register a resource. The caller becomes its owner.

    The API key is only ever returned here and on rotation.
    """
    try:
        resource, owner = await resources.create_resource(body.name, user_id, body.mode)
    except SQLAlchemyError as e:
        safe_error_response(logger, e, "Failed to create resource")
    return ResourceResponse(
        id=resource.id,
        name=resource.name,
        mode=resource.mode,
        role=owner.role,
        api_key=resource.api_key,
        created_at=resource.created_at,
    )


@router.get("/resources", response_model=List[ResourceResponse])
async def list_resources(
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> List[ResourceResponse]:
    """Resources the caller owns or guards."""
    return [
        ResourceResponse(
            id=resource.id, name=resource.name, mode=resource.mode, role=role,
            created_at=resource.created_at,
        )
        for resource, role in await resources.list_for_user(user_id)
    ]


@router.post("/resources/{resource_id}/api-key", response_model=ApiKeyResponse)
async def rotate_api_key(
    resource_id: str,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> ApiKeyResponse:
    """Replace the resource's API key (owner only)."""
    return ApiKeyResponse(api_key=await resources.rotate_api_key(resource_id, user_id))


# ============================================================================
# Guardians
# ============================================================================


@router.get("/resources/{resource_id}/guardians", response_model=List[GuardianResponse])
async def list_guardians(
    resource_id: str,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> List[GuardianResponse]:
    await resources.get_resource(resource_id)
    guardians = await resources.list_guardians(resource_id)
    if not any(g.user_id == user_id for g in guardians):
        raise PermissionDeniedError()
    return [GuardianResponse(user_id=g.user_id, role=g.role, created_at=g.created_at) for g in guardians]


@router.post(
    "/resources/{resource_id}/guardians",
    response_model=GuardianResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_guardian(
    resource_id: str,
    body: GuardianAdd,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> GuardianResponse:
    """Add a guardian (owner only).

    Raises:
        403: Caller is not the owner
        409: User already guards the resource
    """
    try:
        guardian = await resources.add_guardian(resource_id, body.user_id, user_id)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return GuardianResponse(user_id=guardian.user_id, role=guardian.role, created_at=guardian.created_at)


@router.delete(
    "/resources/{resource_id}/guardians/{guardian_user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_guardian(
    resource_id: str,
    guardian_user_id: str,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> Response:
    await resources.remove_guardian(resource_id, guardian_user_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Fields
# ============================================================================


@router.get("/resources/{resource_id}/fields", response_model=List[str])
async def list_fields(
    resource_id: str,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> List[str]:
    """Field names only; values are never listed."""
    return await resources.list_field_names(resource_id, user_id)


@router.post(
    "/resources/{resource_id}/fields",
    response_model=List[str],
    status_code=status.HTTP_201_CREATED,
)
async def upsert_field(
    resource_id: str,
    body: FieldUpsert,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> List[str]:
    """Create or replace a field (guardians only). Returns the field names."""
    try:
        await resources.upsert_field(resource_id, body.name, body.value, user_id)
    except SQLAlchemyError as e:
        safe_error_response(logger, e, "Failed to store field")
    return await resources.list_field_names(resource_id, user_id)


@router.get(
    "/resources/{resource_id}/fields/{name}",
    response_model=FieldValueResponse,
    responses={202: {"model": PendingAccessResponse}},
)
async def read_field(
    resource_id: str,
    name: str,
    user_id: str = Depends(get_current_user),
    access: AccessService = Depends(get_access_service),
) -> Union[FieldValueResponse, JSONResponse]:
    """Read a field value.

    Guardians get the value directly. Anyone else gets 202 with an approval
    request ID; retrying after a guardian approves returns the value.

    Raises:
        404: Unknown resource or field, or a value that cannot be decrypted
        429: Rate limited
    """
    outcome = await access.read_field(resource_id, name, user_id)
    if outcome.pending:
        return pending_response(outcome)
    return FieldValueResponse(name=name, value=outcome.value)


@router.delete("/resources/{resource_id}/fields/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_field(
    resource_id: str,
    name: str,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> Response:
    await resources.delete_field(resource_id, name, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# 2FA
# ============================================================================


@router.post("/totp", response_model=TOTPCredentialResponse, status_code=status.HTTP_201_CREATED)
async def create_totp_credential(
    body: TOTPCreate,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> TOTPCredentialResponse:
    """Register a TOTP account owned by the caller."""
    try:
        credential = await resources.create_totp_credential(
            user_id,
            uri=body.uri,
            account_name=body.account_name,
            secret=body.secret,
            issuer=body.issuer,
            backup_key=body.backup_key,
            shared=body.shared,
        )
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return TOTPCredentialResponse(
        id=credential.id,
        account_name=credential.account_name,
        issuer=credential.issuer,
        shared=credential.shared,
        created_at=credential.created_at,
    )


@router.get(
    "/resources/{resource_id}/2fa",
    response_model=TOTPCodeResponse,
    responses={202: {"model": PendingAccessResponse}},
)
async def read_totp_code(
    resource_id: str,
    user_id: str = Depends(get_current_user),
    access: AccessService = Depends(get_access_service),
) -> Union[TOTPCodeResponse, JSONResponse]:
    """Current code of the linked TOTP account, gated like field reads."""
    outcome = await access.read_totp_code(resource_id, user_id)
    if outcome.pending:
        return pending_response(outcome)
    return TOTPCodeResponse(code=outcome.value)


@router.post("/resources/{resource_id}/2fa/link", status_code=status.HTTP_204_NO_CONTENT)
async def link_totp(
    resource_id: str,
    body: TOTPLink,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> Response:
    await resources.link_totp(resource_id, body.totp_credential_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/resources/{resource_id}/2fa/link", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_totp(
    resource_id: str,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
) -> Response:
    await resources.unlink_totp(resource_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Audit
# ============================================================================


@router.get("/resources/{resource_id}/audit", response_model=List[AuditEventResponse])
async def list_audit_events(
    resource_id: str,
    limit: int = 100,
    user_id: str = Depends(get_current_user),
    resources: ResourceService = Depends(get_resource_service),
    db: AsyncSession = Depends(get_db),
) -> List[AuditEventResponse]:
    """Most recent audit events for a resource (owner only)."""
    await resources.get_resource(resource_id)
    if not can_manage_guardians(await resources.list_guardians(resource_id), user_id):
        raise PermissionDeniedError()

    events = await AuditService.list_for_resource(db, resource_id, limit=min(max(limit, 1), 500))
    return [
        AuditEventResponse(
            action=e.action,
            status=e.status,
            actor_id=e.actor_id,
            resolver_id=e.resolver_id,
            context=e.context,
            created_at=e.created_at,
        )
        for e in events
    ]
