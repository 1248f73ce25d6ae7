"""Request/response schemas for admin endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import EmailStr, Field, computed_field, field_validator

from citadel.auth.roles import Role
from citadel.auth.schemas import CamelModel

# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class GenerateApiKeyRequest(CamelModel):
    platform: Literal["ios", "android", "web", "admin_panel"]


class ApiKeyResponse(CamelModel):
    """Key metadata. Never includes the secret."""

    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    revoked_at: datetime | None = None
    created_by: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> str:
        return "revoked" if self.revoked_at else "active"


class ApiKeyCreatedResponse(CamelModel):
    """Returned exactly once, when a secret is minted."""

    key: ApiKeyResponse
    plain_key: str


class ApiKeyStats(CamelModel):
    total: int
    active: int
    revoked: int


# ---------------------------------------------------------------------------
# Authorized admins
# ---------------------------------------------------------------------------


class AuthorizedAdminCreate(CamelModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Normalize email to lowercase."""
        return v.lower().strip()


class AuthorizedAdminResponse(CamelModel):
    id: int
    email: str
    created_at: datetime
    created_by: int | None = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class RoleUpdateRequest(CamelModel):
    role: Role


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int = Field(..., ge=0)
