"""Schemas for projects, environments and members."""

import re
from datetime import datetime
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

_FIELD_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2048)


class ProjectResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    owner_id: str
    role: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EnvironmentCreate(BaseModel):
    """``slug`` is the short name used on the command line, e.g. ``prod``."""

    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_-]*$")


class EnvironmentResponse(BaseModel):
    id: str
    project_id: str
    name: str
    slug: str
    resource_id: str
    created_at: Optional[datetime] = None


class MemberAdd(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    role: Literal["READER", "WRITER"] = "READER"


class MemberResponse(BaseModel):
    user_id: str
    role: str
    added_by: str
    created_at: Optional[datetime] = None


class SecretsBody(BaseModel):
    """Secrets pushed to an environment; existing names are replaced."""

    secrets: Dict[str, str] = Field(..., max_length=500)

    @field_validator("secrets")
    @classmethod
    def validate_names(cls, v: Dict[str, str]) -> Dict[str, str]:
        for name, value in v.items():
            if not _FIELD_NAME_RE.match(name):
                raise ValueError(f"Invalid secret name: {name!r}")
            if len(value) > 10240:
                raise ValueError(f"Secret {name!r} is too long")
        return v


class SecretsResponse(BaseModel):
    secrets: Dict[str, str]
