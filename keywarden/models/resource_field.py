"""Encrypted key/value pairs scoped to a resource."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from keywarden.db import Base
from keywarden.models.resource import new_id


class ResourceField(Base):
    """One secret value on a resource, stored as a versioned ciphertext envelope."""

    __tablename__ = "resource_fields"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    resource_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # Encrypted
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("resource_id", "name", name="uq_resource_fields_resource_name"),
    )

    def __repr__(self):
        return f"<ResourceField(resource_id={self.resource_id}, name='{self.name}')>"
