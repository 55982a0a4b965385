"""Device authorization endpoints used by the command-line client."""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.db import get_db
from keywarden.exceptions import InvalidGrantError, UnsupportedGrantTypeError
from keywarden.schemas.auth import (
    DEVICE_CODE_GRANT_TYPE,
    DeviceCodeResponse,
    TokenRequest,
    TokenResponse,
)
from keywarden.services.device_auth import DeviceAuthService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/auth/device/code", response_model=DeviceCodeResponse, status_code=status.HTTP_200_OK)
async def request_device_code(db: AsyncSession = Depends(get_db)) -> DeviceCodeResponse:
    """Start a device login.

    The user code is shown to the human, who approves it out of band; the
    device code is what the client polls with.
    """
    code = await DeviceAuthService(db).initiate()
    return DeviceCodeResponse(
        device_code=code.device_code,
        user_code=code.user_code,
        verification_uri=code.verification_uri,
        expires_in=code.expires_in,
        interval=code.interval,
    )


@router.post("/auth/token", response_model=TokenResponse, status_code=status.HTTP_200_OK)
async def exchange_token(
    body: TokenRequest,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    """Exchange an approved device code for a bearer token.

    Raises:
        400: ``{"error": ...}`` with one of ``authorization_pending``,
            ``slow_down``, ``access_denied``, ``expired_token``,
            ``invalid_grant`` or ``unsupported_grant_type``
    """
    if body.grant_type and body.grant_type != DEVICE_CODE_GRANT_TYPE:
        raise UnsupportedGrantTypeError()
    if not body.device_code:
        raise InvalidGrantError("device_code is required")

    issued = await DeviceAuthService(db).exchange(body.device_code)
    return TokenResponse(access_token=issued.access_token, expires_in=issued.expires_in)
