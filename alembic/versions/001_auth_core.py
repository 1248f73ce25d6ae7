"""Auth core: users, provider accounts, refresh tokens, API keys, setup.

Creates every table of the credential store and seeds the singleton
setup_status row.

Revision ID: 001_auth_core
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "001_auth_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    """Create the credential store."""
    # --- users (primary provider FK added after provider_accounts) ---
    op.create_table(
        "users",
        sa.Column("id", _ID, nullable=False, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("avatar", sa.Text(), nullable=True),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("primary_provider_account_id", _ID, nullable=True),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("updated_at", _TS, nullable=False),
        sa.Column("last_login_at", _TS, nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    # --- provider_accounts ---
    op.create_table(
        "provider_accounts",
        sa.Column("id", _ID, nullable=False, autoincrement=True),
        sa.Column("user_id", _ID, nullable=False),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("provider_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("avatar", sa.Text(), nullable=True),
        sa.Column("linked_at", _TS, nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_provider_accounts"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_provider_accounts_user_id_users", ondelete="CASCADE"
        ),
        sa.UniqueConstraint("provider", "provider_id", name="uq_provider_accounts_provider_identity"),
        sa.UniqueConstraint("user_id", "provider", name="uq_provider_accounts_user_provider"),
    )
    op.create_index("ix_provider_accounts_user_id", "provider_accounts", ["user_id"])

    with op.batch_alter_table("users") as batch_op:
        batch_op.create_foreign_key(
            "fk_users_primary_provider_account_id_provider_accounts",
            "provider_accounts",
            ["primary_provider_account_id"],
            ["id"],
            ondelete="SET NULL",
        )

    # --- user_preferences ---
    op.create_table(
        "user_preferences",
        sa.Column("user_id", _ID, nullable=False),
        sa.Column("language", sa.String(16), nullable=False),
        sa.Column("settings", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=False),
        sa.Column("updated_at", _TS, nullable=False),
        sa.PrimaryKeyConstraint("user_id", name="pk_user_preferences"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_user_preferences_user_id_users", ondelete="CASCADE"
        ),
    )

    # --- refresh_tokens ---
    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Uuid(as_uuid=False), nullable=False),
        sa.Column("user_id", _ID, nullable=False),
        sa.Column("token_hash", sa.String(128), nullable=False),
        sa.Column("family_id", sa.Uuid(as_uuid=False), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_used", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("replaced_by", sa.Uuid(as_uuid=False), nullable=True),
        sa.Column("expires_at", _TS, nullable=False),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("used_at", _TS, nullable=True),
        sa.Column("revoked_at", _TS, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_refresh_tokens"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_refresh_tokens_user_id_users", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["replaced_by"],
            ["refresh_tokens.id"],
            name="fk_refresh_tokens_replaced_by_refresh_tokens",
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint("token_hash", name="uq_refresh_tokens_token_hash"),
    )
    op.create_index("ix_refresh_tokens_user_id", "refresh_tokens", ["user_id"])
    op.create_index("ix_refresh_tokens_family_id", "refresh_tokens", ["family_id"])

    # --- api_keys ---
    op.create_table(
        "api_keys",
        sa.Column("id", sa.Uuid(as_uuid=False), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("key_hash", sa.String(256), nullable=False),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("updated_at", _TS, nullable=False),
        sa.Column("revoked_at", _TS, nullable=True),
        sa.Column("created_by", _ID, nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_api_keys"),
        sa.ForeignKeyConstraint(
            ["created_by"], ["users.id"], name="fk_api_keys_created_by_users", ondelete="CASCADE"
        ),
        sa.UniqueConstraint("name", name="uq_api_keys_name"),
    )

    # --- authorized_admins ---
    op.create_table(
        "authorized_admins",
        sa.Column("id", _ID, nullable=False, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("created_by", _ID, nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_authorized_admins"),
        sa.ForeignKeyConstraint(
            ["created_by"], ["users.id"], name="fk_authorized_admins_created_by_users", ondelete="CASCADE"
        ),
        sa.UniqueConstraint("email", name="uq_authorized_admins_email"),
    )

    # --- setup_status (singleton) ---
    setup_status = op.create_table(
        "setup_status",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("is_setup_complete", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("completed_at", _TS, nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_setup_status"),
    )
    op.bulk_insert(setup_status, [{"id": 1, "is_setup_complete": False, "completed_at": None}])


def downgrade() -> None:
    """Drop the credential store."""
    op.drop_table("setup_status")
    op.drop_table("authorized_admins")
    op.drop_table("api_keys")
    op.drop_index("ix_refresh_tokens_family_id", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_user_id", table_name="refresh_tokens")
    op.drop_table("refresh_tokens")
    op.drop_table("user_preferences")
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_constraint("fk_users_primary_provider_account_id_provider_accounts", type_="foreignkey")
    op.drop_index("ix_provider_accounts_user_id", table_name="provider_accounts")
    op.drop_table("provider_accounts")
    op.drop_table("users")
