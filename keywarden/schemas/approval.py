"""Schemas for approval requests and their context payload."""

import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

AccessRequestType = Literal["FIELD_ACCESS", "TOTP_ACCESS", "MANUAL_REQUEST", "API_REQUEST"]

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


class AccessRequestContext(BaseModel):
    """Closed structure describing who is asking for what, and why.

    ``opaque`` carries base64-encoded bytes from callers whose context does
    not fit the known fields.
    """

    model_config = ConfigDict(extra="forbid")

    type: AccessRequestType = "MANUAL_REQUEST"
    requester_id: Optional[str] = Field(None, max_length=64)
    action: Optional[str] = Field(None, max_length=64)
    reason: Optional[str] = Field(None, max_length=1024)
    field_name: Optional[str] = Field(None, max_length=64)
    opaque: Optional[str] = Field(None, max_length=8192)

    @field_validator("opaque")
    @classmethod
    def validate_opaque(cls, v: Optional[str]) -> Optional[str]:
        """Opaque payloads must be base64 text."""
        if v is not None and not _BASE64_RE.match(v):
            raise ValueError("opaque must be base64-encoded")
        return v

    def describe(self) -> str:
        """Human-readable one-liner for notifications."""
        if self.type == "FIELD_ACCESS" and self.field_name:
            return f'Requesting access to field "{self.field_name}"'
        if self.type == "TOTP_ACCESS":
            return "Requesting a 2FA code"
        return self.reason or "Requesting access"


class CreateApprovalRequest(BaseModel):
    """Body of ``POST /api/requests`` (machine callers authenticated by API key)."""

    resource_id: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1)
    context: AccessRequestContext = Field(default_factory=AccessRequestContext)
    callback_url: Optional[HttpUrl] = None
    expires_in_seconds: Optional[int] = Field(None, gt=0, le=7 * 24 * 3600)


class DecisionBody(BaseModel):
    """Body of ``POST /api/requests/{id}/decision``."""

    decision: Literal["APPROVE", "DENY"]


class ApprovalRequestResponse(BaseModel):
    """Approval request as returned to callers."""

    request_id: str
    resource_id: str
    status: str
    context: dict
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class PendingAccessResponse(BaseModel):
    """202 body returned when access needs guardian approval."""

    status: Literal["pending_approval"] = "pending_approval"
    request_id: str
    created: bool
    expires_at: Optional[datetime] = None
    message: str = "Approval required. Retry once a guardian has approved the request."
