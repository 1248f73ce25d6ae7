"""Request/response schemas for authentication endpoints.

Bodies are camelCase on the wire; snake_case is accepted on input as well.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from citadel.auth.roles import Role


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(CamelModel):
    """User as returned by auth and profile endpoints."""

    id: int
    email: str
    name: str | None = None
    avatar: str | None = None
    role: Role
    created_at: datetime | None = None
    last_login_at: datetime | None = None


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class AuthResponse(TokenResponse):
    """Tokens plus the signed-in user."""

    user: UserResponse


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(CamelModel):
    refresh_token: str | None = None
    logout_all: bool = False


class SessionResponse(CamelModel):
    id: str
    family_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None


# ---------------------------------------------------------------------------
# Provider linking
# ---------------------------------------------------------------------------


class ExistingUserSummary(CamelModel):
    id: int
    email: str
    name: str | None = None
    providers: list[str]


class LinkingResponse(CamelModel):
    """Sent instead of tokens when a new provider reports a known email."""

    requires_linking: bool = True
    linking_token: str
    existing_user: ExistingUserSummary
    new_provider: str


class LinkProviderRequest(CamelModel):
    linking_token: str = Field(..., min_length=1)
    confirm: bool


# ---------------------------------------------------------------------------
# Mobile sign-in
# ---------------------------------------------------------------------------


class GoogleMobileRequest(CamelModel):
    id_token: str = Field(..., min_length=1)


class AppleMobileRequest(CamelModel):
    identity_token: str = Field(..., min_length=1)
    name: str | None = Field(None, max_length=255)


AuthResponse.model_rebuild()
