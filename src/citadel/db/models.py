"""ORM models for the credential store.

Foreign keys carry the ownership rules: deleting a user cascades to its
provider accounts, refresh tokens, preferences, and the API keys and allowlist
entries it created.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from citadel.auth.roles import Provider, Role
from citadel.db.base import Base, BigIntPK, UTCDateTime, utcnow


def _enum_values(enum_cls: type[Role] | type[Provider]) -> list[str]:
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Admin panel account. Emails are stored lower-cased."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[Role] = mapped_column(
        Enum(Role, name="user_role", native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=Role.USER,
    )
    primary_provider_account_id: Mapped[int | None] = mapped_column(
        BigIntPK,
        ForeignKey("provider_accounts.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class ProviderAccount(Base):
    """One OAuth identity attached to a user."""

    __tablename__ = "provider_accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_id", name="uq_provider_accounts_provider_identity"),
        UniqueConstraint("user_id", "provider", name="uq_provider_accounts_user_provider"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[Provider] = mapped_column(
        Enum(Provider, name="oauth_provider", native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
    )
    provider_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    linked_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class UserPreferences(Base):
    """Per-user UI preferences, created alongside the user."""

    __tablename__ = "user_preferences"

    user_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    language: Mapped[str] = mapped_column(String(16), nullable=False, default="pt-BR")
    settings: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict
    )
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Auth: Refresh tokens
# ---------------------------------------------------------------------------


class RefreshToken(Base):
    """Issued refresh token. ``id`` doubles as the JWT ``jti``."""

    __tablename__ = "refresh_tokens"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    family_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), nullable=False, index=True)
    is_revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    replaced_by: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("refresh_tokens.id", ondelete="SET NULL"), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)


# ---------------------------------------------------------------------------
# Auth: Platform API keys and admin allowlist
# ---------------------------------------------------------------------------


class ApiKey(Base):
    """Platform API key. Only the argon2 hash is stored."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    key_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_by: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


class AuthorizedAdmin(Base):
    """Email allowlist; matching emails become ``admin`` at account creation."""

    __tablename__ = "authorized_admins"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    created_by: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


class SetupStatus(Base):
    """Singleton row (``id = 1``) tracking first-run setup."""

    __tablename__ = "setup_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_setup_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


SETUP_STATUS_ID = 1
