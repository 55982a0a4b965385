"""Pydantic schemas for API validation."""

from keywarden.schemas.approval import (
    AccessRequestContext,
    ApprovalRequestResponse,
    CreateApprovalRequest,
    DecisionBody,
    PendingAccessResponse,
)
from keywarden.schemas.auth import DeviceCodeResponse, TokenRequest, TokenResponse
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

__all__ = [
    "AccessRequestContext",
    "ApprovalRequestResponse",
    "CreateApprovalRequest",
    "DecisionBody",
    "PendingAccessResponse",
    "DeviceCodeResponse",
    "TokenRequest",
    "TokenResponse",
    "ApiKeyResponse",
    "AuditEventResponse",
    "FieldUpsert",
    "FieldValueResponse",
    "GuardianAdd",
    "GuardianResponse",
    "ResourceCreate",
    "ResourceResponse",
    "TOTPCodeResponse",
    "TOTPCreate",
    "TOTPCredentialResponse",
    "TOTPLink",
]
