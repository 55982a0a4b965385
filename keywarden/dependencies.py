"""Shared FastAPI dependencies for route handlers."""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.db import get_db
from keywarden.services.access import AccessService
from keywarden.services.device_auth import DeviceAuthService
from keywarden.services.notifications.base import ApprovalNotifier
from keywarden.services.projects import ProjectService
from keywarden.services.rate_limiter import RateLimiter
from keywarden.services.resources import ResourceService
from keywarden.utils.encryption import EnvelopeCipher

logger = logging.getLogger(__name__)

# HTTP Bearer token
security = HTTPBearer(auto_error=False)


def get_cipher(request: Request) -> EnvelopeCipher:
    """Process-wide cipher created at startup."""
    return request.app.state.cipher


def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def get_notifier(request: Request) -> Optional[ApprovalNotifier]:
    return getattr(request.app.state, "notifier", None)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Optional[str]:
    """User ID for a valid bearer token, None when absent or invalid."""
    if credentials is None or not credentials.credentials:
        return None
    api_token = await DeviceAuthService(db).validate_token(credentials.credentials)
    return api_token.user_id if api_token else None


async def get_current_user(
    request: Request,
    user_id: Optional[str] = Depends(get_optional_user),
) -> str:
    """Resolve the bearer token to a user ID.

    Raises:
        HTTPException 401: If the token is missing, unknown or expired
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if user_id is None:
        logger.warning("Missing or invalid bearer token - %s %s", request.method, request.url.path)
        raise credentials_exception

    return user_id


def get_resource_service(
    db: AsyncSession = Depends(get_db),
    cipher: EnvelopeCipher = Depends(get_cipher),
) -> ResourceService:
    return ResourceService(db, cipher)


def get_access_service(
    db: AsyncSession = Depends(get_db),
    cipher: EnvelopeCipher = Depends(get_cipher),
    limiter: RateLimiter = Depends(get_limiter),
    notifier: Optional[ApprovalNotifier] = Depends(get_notifier),
) -> AccessService:
    return AccessService(db, limiter, cipher, notifier)


def get_project_service(
    db: AsyncSession = Depends(get_db),
    cipher: EnvelopeCipher = Depends(get_cipher),
) -> ProjectService:
    return ProjectService(db, cipher)
