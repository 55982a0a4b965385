"""Schemas for resources, guardians, fields and 2FA links."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ResourceCreate(BaseModel):
    """Schema for registering a new resource."""

    name: str = Field(..., min_length=1, max_length=255)
    mode: Literal["ONE_OF_N", "REQUIRE_ALL"] = "ONE_OF_N"


class ResourceResponse(BaseModel):
    """Resource summary; the API key is only returned on creation."""

    id: str
    name: str
    mode: str
    role: Optional[str] = None
    api_key: Optional[str] = None
    created_at: Optional[datetime] = None


class GuardianAdd(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)


class GuardianResponse(BaseModel):
    user_id: str
    role: str
    created_at: Optional[datetime] = None


class FieldUpsert(BaseModel):
    """Schema for creating or replacing a field value."""

    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    value: str = Field(..., max_length=10240)


class FieldValueResponse(BaseModel):
    name: str
    value: str


class TOTPLink(BaseModel):
    totp_credential_id: str = Field(..., min_length=1)


class TOTPCodeResponse(BaseModel):
    code: str


class AuditEventResponse(BaseModel):
    action: str
    status: str
    actor_id: Optional[str] = None
    resolver_id: Optional[str] = None
    context: Optional[dict] = None
    created_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    api_key: str


class TOTPCreate(BaseModel):
    """Register a TOTP account from an otpauth URI or a raw base32 secret."""

    uri: Optional[str] = Field(None, max_length=2048)
    account_name: Optional[str] = Field(None, min_length=1, max_length=255)
    secret: Optional[str] = Field(None, max_length=256)
    issuer: Optional[str] = Field(None, max_length=255)
    backup_key: Optional[str] = Field(None, max_length=1024)
    shared: bool = False


class TOTPCredentialResponse(BaseModel):
    id: str
    account_name: str
    issuer: Optional[str] = None
    shared: bool
    created_at: Optional[datetime] = None
