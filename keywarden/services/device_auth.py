"""OAuth2 device authorization grant for the command-line client.

1. The CLI calls ``initiate()`` and shows the user code to the human.
2. The human approves (or denies) the code out of band, e.g. with the
   chat bot's ``cli-login`` command, which calls ``approve_session()``.
3. Meanwhile the CLI polls ``exchange()`` every ``interval`` seconds until
   it receives a bearer token or a terminal error.

A device code mints at most one token: a successful exchange moves the
session to ``consumed`` with a conditional update, so concurrent polls
cannot both succeed.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.config import (
    API_TOKEN_TTL_DAYS,
    DEVICE_CODE_EXPIRES_SECONDS,
    DEVICE_POLL_INTERVAL_SECONDS,
    DEVICE_VERIFICATION_URI,
)
from keywarden.exceptions import (
    AccessDeniedError,
    AuthorizationPendingError,
    ExpiredTokenError,
    InvalidGrantError,
    SlowDownError,
)
from keywarden.models.approval_request import as_utc
from keywarden.models.device_auth import ApiToken, DeviceAuthSession
from keywarden.services import audit
from keywarden.services.audit import AuditService
from keywarden.utils.security import hash_token, mask_sensitive, sanitize_log_message

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "kw_"
SLOW_DOWN_INCREMENT = 5

# Session statuses
SESSION_PENDING = "pending"
SESSION_APPROVED = "approved"
SESSION_DENIED = "denied"
SESSION_EXPIRED = "expired"
SESSION_CONSUMED = "consumed"


@dataclass
class DeviceCode:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


@dataclass
class IssuedToken:
    """A freshly minted token. ``access_token`` is the only plaintext copy."""

    access_token: str
    user_id: str
    expires_at: datetime
    expires_in: int


def generate_user_code() -> str:
    """Eight hex characters grouped for reading aloud, e.g. ``3FA9-0C1D``."""
    raw = secrets.token_hex(4).upper()
    return f"{raw[:4]}-{raw[4:]}"


def generate_token() -> str:
    return TOKEN_PREFIX + secrets.token_hex(32)


class DeviceAuthService:
    """Device grant sessions and the API tokens they produce."""

    def __init__(
        self,
        db: AsyncSession,
        expires_in: int = DEVICE_CODE_EXPIRES_SECONDS,
        interval: int = DEVICE_POLL_INTERVAL_SECONDS,
        token_ttl: timedelta = timedelta(days=API_TOKEN_TTL_DAYS),
        verification_uri: str = DEVICE_VERIFICATION_URI,
    ) -> None:
        self.db = db
        self.expires_in = expires_in
        self.interval = interval
        self.token_ttl = token_ttl
        self.verification_uri = verification_uri

    async def initiate(self) -> DeviceCode:
        """Start a device flow session."""
        session = DeviceAuthSession(
            device_code=str(uuid.uuid4()),
            user_code=generate_user_code(),
            status=SESSION_PENDING,
            interval=self.interval,
            expires_at=datetime.now(UTC) + timedelta(seconds=self.expires_in),
        )
        self.db.add(session)
        await self.db.commit()

        logger.info("Started device authorization session %s", session.user_code)
        return DeviceCode(
            device_code=session.device_code,
            user_code=session.user_code,
            verification_uri=self.verification_uri,
            expires_in=self.expires_in,
            interval=session.interval,
        )

    async def _session_by_user_code(self, user_code: str) -> Optional[DeviceAuthSession]:
        result = await self.db.execute(
            select(DeviceAuthSession).where(DeviceAuthSession.user_code == user_code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def _resolve(self, user_code: str, user_id: str, status: str) -> bool:
        session = await self._session_by_user_code(user_code)
        if session is None or session.status != SESSION_PENDING:
            return False
        if session.is_expired():
            session.status = SESSION_EXPIRED
            await self.db.commit()
            return False

        session.status = status
        session.user_id = user_id
        await self.db.commit()
        logger.info(
            "Device session %s %s by %s", session.user_code, status, sanitize_log_message(user_id)
        )
        return True

    async def approve_session(self, user_code: str, user_id: str) -> bool:
        """Bind a pending session to ``user_id``. False if unknown, not pending or expired."""
        return await self._resolve(user_code, user_id, SESSION_APPROVED)

    async def deny_session(self, user_code: str, user_id: str) -> bool:
        return await self._resolve(user_code, user_id, SESSION_DENIED)

    async def exchange(self, device_code: str) -> IssuedToken:
        """Exchange an approved device code for a bearer token.

        Raises:
            InvalidGrantError: Unknown or already consumed device code
            AuthorizationPendingError: Not yet approved
            SlowDownError: Polled faster than the session interval
            AccessDeniedError: The human denied the request
            ExpiredTokenError: The session expired before approval
        """
        result = await self.db.execute(
            select(DeviceAuthSession).where(DeviceAuthSession.device_code == device_code)
        )
        session = result.scalar_one_or_none()
        if session is None or session.status == SESSION_CONSUMED:
            raise InvalidGrantError()

        now = datetime.now(UTC)

        if session.status == SESSION_DENIED:
            raise AccessDeniedError()

        # An approved code that was never exchanged expires like a pending one
        if session.status == SESSION_EXPIRED or (
            session.status in (SESSION_PENDING, SESSION_APPROVED) and session.is_expired(now)
        ):
            if session.status != SESSION_EXPIRED:
                session.status = SESSION_EXPIRED
                await self.db.commit()
            raise ExpiredTokenError()

        if session.status == SESSION_PENDING:
            last_polled = as_utc(session.last_polled_at)
            session.last_polled_at = now
            if last_polled is not None and now - last_polled < timedelta(seconds=session.interval):
                session.interval += SLOW_DOWN_INCREMENT
                await self.db.commit()
                raise SlowDownError()
            await self.db.commit()
            raise AuthorizationPendingError()

        # Approved: consume the session exactly once
        consumed = await self.db.execute(
            update(DeviceAuthSession)
            .where(
                DeviceAuthSession.id == session.id,
                DeviceAuthSession.status == SESSION_APPROVED,
            )
            .values(status=SESSION_CONSUMED, last_polled_at=now)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            await self.db.rollback()
            raise InvalidGrantError()

        plaintext = generate_token()
        expires_at = now + self.token_ttl
        self.db.add(
            ApiToken(
                token_hash=hash_token(plaintext),
                user_id=session.user_id,
                name=f"CLI Device Flow {session.user_code}",
                expires_at=expires_at,
            )
        )
        await self.db.commit()

        await AuditService.log(
            self.db, audit.DEVICE_LOGIN, audit.SUCCESS,
            actor_id=session.user_id, context={"user_code": session.user_code},
        )
        logger.info("Issued API token %s to %s", mask_sensitive(plaintext), session.user_id)

        return IssuedToken(
            access_token=plaintext,
            user_id=session.user_id,
            expires_at=expires_at,
            expires_in=int(self.token_ttl.total_seconds()),
        )

    async def validate_token(self, token: str) -> Optional[ApiToken]:
        """Look up a bearer token; None if unknown or expired."""
        if not token or not token.startswith(TOKEN_PREFIX):
            return None

        result = await self.db.execute(
            select(ApiToken).where(ApiToken.token_hash == hash_token(token))
        )
        api_token = result.scalar_one_or_none()
        if api_token is None or api_token.is_expired():
            return None

        api_token.last_used_at = datetime.now(UTC)
        await self.db.commit()
        return api_token
