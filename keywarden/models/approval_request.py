"""Approval request models."""

from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from keywarden.db import Base
from keywarden.models.resource import new_id

PENDING = "PENDING"
APPROVED = "APPROVED"
DENIED = "DENIED"
EXPIRED = "EXPIRED"
TERMINAL_STATUSES = (APPROVED, DENIED, EXPIRED)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to timezone-naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ApprovalRequest(Base):
    """A request for access to a resource, resolved by its guardians.

    Created ``PENDING``; transitions exactly once to ``APPROVED``, ``DENIED``
    or ``EXPIRED`` and is immutable afterwards. A pending request past
    ``expires_at`` reads as ``EXPIRED`` without any background sweep.
    """

    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    resource_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    requester_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    callback_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_approval_requests_resource_status", "resource_id", "status"),
        Index("idx_approval_requests_requester", "resource_id", "requester_id"),
    )

    def __repr__(self):
        return f"<ApprovalRequest(id={self.id}, resource_id={self.resource_id}, status={self.status})>"

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether a pending request has passed its expiry."""
        if self.status != PENDING or self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return bool(now > as_utc(self.expires_at))

    def effective_status(self, now: datetime | None = None) -> str:
        """Status as seen by readers, with lazy expiry applied."""
        return EXPIRED if self.is_expired(now) else self.status


class ApprovalDecision(Base):
    """One guardian's vote on a request.

    Accumulated votes are the transition guard for ``REQUIRE_ALL`` resources.
    """

    __tablename__ = "approval_decisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    request_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    guardian_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    decision: Mapped[str] = mapped_column(String(8), nullable=False)  # APPROVE or DENY
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("request_id", "guardian_user_id", name="uq_approval_decisions_request_guardian"),
    )
