"""Device authorization sessions and API tokens."""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from keywarden.db import Base
from keywarden.models.approval_request import as_utc
from keywarden.models.resource import new_id


class DeviceAuthSession(Base):
    """OAuth2 device-grant session binding a CLI to an approved identity.

    Status is ``pending`` until a human approves or denies it; a successful
    exchange moves it to ``consumed`` so the device code cannot mint a
    second token.
    """

    __tablename__ = "device_auth_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    device_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    user_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    interval: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("idx_device_auth_sessions_expires_at", "expires_at"),)

    def __repr__(self):
        return f"<DeviceAuthSession(user_code={self.user_code}, status={self.status})>"

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return bool(now > as_utc(self.expires_at))


class ApiToken(Base):
    """Long-lived CLI bearer token, stored as a SHA-256 hash.

    ``expires_at`` is mandatory; tokens are never issued without one.
    """

    __tablename__ = "api_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return bool(now > as_utc(self.expires_at))
