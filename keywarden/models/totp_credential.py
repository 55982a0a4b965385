"""TOTP credential model."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from keywarden.db import Base
from keywarden.models.resource import new_id


class TOTPCredential(Base):
    """A TOTP account whose secret (and optional backup code) is encrypted at rest.

    ``shared`` controls whether identities other than the owner may see it
    when it is not linked to a resource.
    """

    __tablename__ = "totp_credentials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    issuer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    secret: Mapped[str] = mapped_column(Text, nullable=False)  # Encrypted
    backup_key: Mapped[str | None] = mapped_column(Text, nullable=True)  # Encrypted
    shared: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<TOTPCredential(id={self.id}, account_name='{self.account_name}', shared={self.shared})>"
