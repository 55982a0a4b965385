"""Resource and guardian models."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from keywarden.db import Base

APPROVAL_MODES = ("ONE_OF_N", "REQUIRE_ALL")
GUARDIAN_ROLES = ("OWNER", "GUARDIAN")


def new_id() -> str:
    return str(uuid.uuid4())


class Resource(Base):
    """A named group of protected secrets with one approval mode.

    ``mode`` is ``ONE_OF_N`` (any single guardian decision resolves a request)
    or ``REQUIRE_ALL`` (every guardian must approve). ``api_key`` authenticates
    machine callers; rotated keys are replaced, never reissued.
    """

    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="ONE_OF_N")
    api_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    totp_credential_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("totp_credentials.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self):
        return f"<Resource(id={self.id}, name='{self.name}', mode={self.mode})>"


class Guardian(Base):
    """Binding of an external identity to a resource.

    Owners manage other guardians; both roles get direct access and may
    resolve approval requests.
    """

    __tablename__ = "guardians"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    resource_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="GUARDIAN")
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("resource_id", "user_id", name="uq_guardians_resource_user"),
        Index("idx_guardians_resource_id", "resource_id"),
    )

    def __repr__(self):
        return f"<Guardian(resource_id={self.resource_id}, user_id={self.user_id}, role={self.role})>"
