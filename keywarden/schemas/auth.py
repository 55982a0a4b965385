"""Device authorization flow schemas (OAuth2 device grant, RFC 8628 shape)."""

from typing import Optional

from pydantic import BaseModel

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"


class DeviceCodeResponse(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


class TokenRequest(BaseModel):
    grant_type: Optional[str] = None
    device_code: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class DeviceFlowErrorResponse(BaseModel):
    error: str
    interval: Optional[int] = None
