"""Schemas for the kind-specific fields of inbound controller commands."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DomainCommand(BaseModel):
    model_config = ConfigDict(extra="ignore")

    domain: str = Field(..., description="Fully qualified site domain")

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("domain must not be empty")
        if value.startswith("-") or any(ch.isspace() for ch in value):
            raise ValueError(f"invalid domain: {value!r}")
        return value


class CreateSiteCommand(DomainCommand):
    options: dict = Field(default_factory=dict, description="Site creation flags")


class KeyRotationCommand(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # Optional here so that a missing key is reported as a failed rotation
    new_key: Optional[str] = Field(default=None, alias="newKey")

    @field_validator("new_key")
    @classmethod
    def _check_key(cls, value: Optional[str]) -> Optional[str]:
        # The key ends up unquoted in .env and in a request header
        if value and any(ch.isspace() or not ch.isprintable() for ch in value):
            raise ValueError("newKey must not contain whitespace or control characters")
        return value


class RollbackCommand(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # Optional here so that a missing commit id is reported as a failed rollback
    commit_id: Optional[str] = Field(default=None, alias="commitId")
