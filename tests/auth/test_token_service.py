"""Tests for refresh token issue, rotation, reuse detection and revocation."""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import Update, select, update

from citadel.auth.jwt import create_refresh_token, verify_token
from citadel.auth.service import (
    cleanup_expired_tokens,
    hash_token,
    issue_tokens,
    list_sessions,
    revoke_all_sessions,
    revoke_refresh_token,
    revoke_session,
    rotate_refresh_token,
)
from citadel.database import get_session_factory
from citadel.db.models import RefreshToken
from citadel.errors import InvalidTokenError, NotFoundError, TokenExpiredError, TokenReuseError
from tests.helpers import reload


async def _issue(db, user):
    pair = await issue_tokens(db, user, ip_address="10.0.0.1", user_agent="pytest")
    await db.commit()
    return pair


class TestIssue:
    async def test_stores_hash_not_plaintext(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        row = await reload(db_session, RefreshToken, pair.token_id)
        assert row.token_hash == hash_token(pair.refresh_token)
        assert row.token_hash != pair.refresh_token
        assert row.family_id == pair.family_id
        assert row.ip_address == "10.0.0.1"
        assert not row.is_used
        assert not row.is_revoked

    async def test_each_login_starts_new_family(self, db_session, superadmin):
        first = await _issue(db_session, superadmin)
        second = await _issue(db_session, superadmin)
        assert first.family_id != second.family_id

    async def test_refresh_jti_is_row_id(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        payload = verify_token(pair.refresh_token, expected_type="refresh")
        assert payload["jti"] == pair.token_id
        assert payload["fam"] == pair.family_id


class TestRotate:
    async def test_rotation_issues_successor_in_same_family(self, db_session, superadmin):
        original = await _issue(db_session, superadmin)
        rotated = await rotate_refresh_token(db_session, original.refresh_token)

        assert rotated.family_id == original.family_id
        assert rotated.refresh_token != original.refresh_token
        old = await reload(db_session, RefreshToken, original.token_id)
        assert old.is_used
        assert old.used_at is not None
        assert old.replaced_by == rotated.token_id

    async def test_three_sequential_rotations(self, db_session, superadmin):
        user_id = superadmin.id
        pair = await _issue(db_session, superadmin)
        family_id = pair.family_id
        for _ in range(3):
            pair = await rotate_refresh_token(db_session, pair.refresh_token)
            assert pair.family_id == family_id

        live = await list_sessions(db_session, user_id)
        assert [row.id for row in live] == [pair.token_id]
        rows = (
            await db_session.execute(
                select(RefreshToken)
                .where(RefreshToken.family_id == family_id)
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        assert len(rows) == 4
        assert sum(1 for row in rows if row.is_used) == 3

    async def test_reuse_revokes_whole_family(self, db_session, superadmin):
        first = await _issue(db_session, superadmin)
        second = await rotate_refresh_token(db_session, first.refresh_token)

        with pytest.raises(TokenReuseError):
            await rotate_refresh_token(db_session, first.refresh_token)

        successor = await reload(db_session, RefreshToken, second.token_id)
        assert successor.is_revoked
        assert successor.revoked_at is not None
        with pytest.raises(TokenReuseError):
            await rotate_refresh_token(db_session, second.refresh_token)

    async def test_reuse_leaves_other_families_alone(self, db_session, superadmin):
        victim = await _issue(db_session, superadmin)
        other = await _issue(db_session, superadmin)
        await rotate_refresh_token(db_session, victim.refresh_token)

        with pytest.raises(TokenReuseError):
            await rotate_refresh_token(db_session, victim.refresh_token)

        untouched = await reload(db_session, RefreshToken, other.token_id)
        assert not untouched.is_revoked

    async def test_revoked_token_cannot_rotate(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        await revoke_session(db_session, pair.token_id)
        await db_session.commit()
        with pytest.raises(TokenReuseError):
            await rotate_refresh_token(db_session, pair.refresh_token)

    async def test_expired_token_rejected_and_not_consumed(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        await db_session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == pair.token_id)
            .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        )
        await db_session.commit()

        with pytest.raises(TokenExpiredError):
            await rotate_refresh_token(db_session, pair.refresh_token)
        await db_session.rollback()
        row = await reload(db_session, RefreshToken, pair.token_id)
        assert not row.is_used

    async def test_unknown_token_rejected(self, db_session, superadmin):
        forged = create_refresh_token(superadmin.id, token_id="00000000-0000-0000-0000-000000000000", family_id="x")
        with pytest.raises(InvalidTokenError):
            await rotate_refresh_token(db_session, forged)

    async def test_access_token_is_not_a_refresh_token(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        with pytest.raises(InvalidTokenError):
            await rotate_refresh_token(db_session, pair.access_token)

    async def test_rotation_losing_the_race_revokes_family(self, db_session, superadmin, monkeypatch):
        pair = await _issue(db_session, superadmin)
        factory = get_session_factory()
        rival = []

        async with factory() as db:
            execute = db.execute

            async def execute_after_rival(statement, *args, **kwargs):
                # Another request consumes the token between our read and our conditional update.
                if isinstance(statement, Update) and not rival:
                    async with factory() as other:
                        rival.append(await rotate_refresh_token(other, pair.refresh_token))
                return await execute(statement, *args, **kwargs)

            monkeypatch.setattr(db, "execute", execute_after_rival)
            with pytest.raises(TokenReuseError):
                await rotate_refresh_token(db, pair.refresh_token)

        assert len(rival) == 1
        assert (await reload(db_session, RefreshToken, pair.token_id)).is_used
        assert (await reload(db_session, RefreshToken, rival[0].token_id)).is_revoked
        assert await list_sessions(db_session, superadmin.id) == []

    @pytest.mark.skipif(
        not os.environ.get("CITADEL_TEST_DATABASE_URL"),
        reason="row-level locking needs PostgreSQL",
    )
    async def test_concurrent_rotation_has_one_winner(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        factory = get_session_factory()

        async def attempt():
            async with factory() as db:
                return await rotate_refresh_token(db, pair.refresh_token)

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], TokenReuseError)


class TestRevoke:
    async def test_revoke_session_is_idempotent(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        await revoke_session(db_session, pair.token_id, superadmin.id)
        await revoke_session(db_session, pair.token_id, superadmin.id)
        await db_session.commit()
        assert (await reload(db_session, RefreshToken, pair.token_id)).is_revoked

    async def test_revoke_session_of_other_user_not_found(self, db_session, superadmin, admin):
        pair = await _issue(db_session, superadmin)
        with pytest.raises(NotFoundError):
            await revoke_session(db_session, pair.token_id, admin.id)

    async def test_revoke_by_presented_token(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        assert await revoke_refresh_token(db_session, pair.refresh_token, superadmin.id)
        assert not await revoke_refresh_token(db_session, "unknown-token", superadmin.id)

    async def test_revoke_all_sessions(self, db_session, superadmin):
        for _ in range(3):
            await _issue(db_session, superadmin)
        assert await revoke_all_sessions(db_session, superadmin.id) == 3
        await db_session.commit()
        assert await list_sessions(db_session, superadmin.id) == []


class TestRetention:
    async def test_cleanup_deletes_expired_used_or_revoked(self, db_session, superadmin):
        used = await _issue(db_session, superadmin)
        successor = await rotate_refresh_token(db_session, used.refresh_token)
        revoked = await _issue(db_session, superadmin)
        await revoke_session(db_session, revoked.token_id, superadmin.id)
        unconsumed = await _issue(db_session, superadmin)
        live_revoked = await _issue(db_session, superadmin)
        await revoke_session(db_session, live_revoked.token_id, superadmin.id)
        await db_session.execute(
            update(RefreshToken)
            .where(RefreshToken.id.in_([used.token_id, revoked.token_id, unconsumed.token_id]))
            .values(expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        )
        await db_session.commit()

        assert await cleanup_expired_tokens(db_session) == 2
        await db_session.commit()
        remaining = (await db_session.execute(select(RefreshToken.id))).scalars().all()
        assert sorted(remaining) == sorted([successor.token_id, unconsumed.token_id, live_revoked.token_id])

    async def test_expired_unconsumed_token_survives_and_fails_as_expired(self, db_session, superadmin):
        pair = await _issue(db_session, superadmin)
        await db_session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == pair.token_id)
            .values(expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        )
        await db_session.commit()

        assert await cleanup_expired_tokens(db_session) == 0
        await db_session.commit()
        with pytest.raises(TokenExpiredError):
            await rotate_refresh_token(db_session, pair.refresh_token)
