"""Append-only audit event model."""

from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from keywarden.db import Base


class AuditEvent(Base):
    """Audit trail of security-relevant actions.

    Rows are only ever inserted; nothing in KeyWarden updates or deletes them.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolver_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_audit_events_resource_created", "resource_id", "created_at"),)

    def __repr__(self):
        return f"<AuditEvent(action={self.action}, status={self.status}, resource_id={self.resource_id})>"
