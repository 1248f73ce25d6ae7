"""Tests for OAuth identity resolution and provider linking."""

import pytest
from sqlalchemy import select

from citadel.auth.identity import (
    LinkingChallenge,
    OAuthProfile,
    ResolvedIdentity,
    clean_avatar_url,
    confirm_linking,
    create_provider_account,
    get_user_provider_accounts,
    resolve_identity,
)
from citadel.auth.jwt import create_linking_token
from citadel.auth.roles import Provider, Role
from citadel.db.models import AuthorizedAdmin, ProviderAccount, User, UserPreferences
from citadel.errors import ConflictError, InvalidTokenError, NotFoundError, ValidationError
from tests.helpers import apple_profile, google_profile, reload


async def _resolve(db, profile):
    outcome = await resolve_identity(db, profile)
    await db.commit()
    return outcome


class TestNewUsers:
    async def test_first_user_becomes_superadmin(self, db_session):
        outcome = await _resolve(db_session, google_profile("First@Example.com"))
        assert isinstance(outcome, ResolvedIdentity)
        assert outcome.created
        assert outcome.user.role is Role.SUPERADMIN
        assert outcome.user.email == "first@example.com"

    async def test_first_user_is_superadmin_even_when_allowlisted(self, db_session):
        db_session.add(AuthorizedAdmin(email="first@example.com"))
        await db_session.commit()
        outcome = await _resolve(db_session, google_profile("first@example.com"))
        assert outcome.user.role is Role.SUPERADMIN

    async def test_creation_writes_account_preferences_and_primary(self, db_session):
        outcome = await _resolve(db_session, google_profile("first@example.com", sub="g-42"))
        user = outcome.user
        accounts = await get_user_provider_accounts(db_session, user.id)
        assert [(a.provider, a.provider_id) for a in accounts] == [(Provider.GOOGLE, "g-42")]
        assert user.primary_provider_account_id == accounts[0].id
        prefs = await reload(db_session, UserPreferences, user.id)
        assert prefs.language == "pt-BR"
        assert user.last_login_at is not None

    async def test_later_users_are_plain_users(self, db_session, superadmin):
        outcome = await _resolve(db_session, google_profile("someone@example.com"))
        assert outcome.user.role is Role.USER

    async def test_allowlisted_email_becomes_admin(self, db_session, superadmin):
        db_session.add(AuthorizedAdmin(email="helper@example.com", created_by=superadmin.id))
        await db_session.commit()
        outcome = await _resolve(db_session, apple_profile("Helper@example.com"))
        assert outcome.user.role is Role.ADMIN

    async def test_avatar_is_cleaned(self, db_session):
        profile = OAuthProfile(
            email="pic@example.com",
            provider=Provider.GOOGLE,
            provider_id="g-9",
            avatar="https://lh3.example.com/a/photo.jpg?sz=96#frag",
        )
        outcome = await _resolve(db_session, profile)
        assert outcome.user.avatar == "https://lh3.example.com/a/photo.jpg"


class TestReturningUsers:
    async def test_known_identity_returns_same_user(self, db_session):
        created = await _resolve(db_session, google_profile("back@example.com", sub="g-1"))
        again = await _resolve(db_session, google_profile("back@example.com", sub="g-1"))
        assert isinstance(again, ResolvedIdentity)
        assert not again.created
        assert again.user.id == created.user.id

    async def test_known_identity_wins_over_changed_email(self, db_session):
        created = await _resolve(db_session, google_profile("old@example.com", sub="g-1"))
        again = await _resolve(db_session, google_profile("new@example.com", sub="g-1"))
        assert again.user.id == created.user.id
        count = (await db_session.execute(select(User.id))).scalars().all()
        assert len(count) == 1

    async def test_same_provider_different_identity_conflicts(self, db_session):
        await _resolve(db_session, google_profile("dup@example.com", sub="g-1"))
        with pytest.raises(ConflictError):
            await resolve_identity(db_session, google_profile("dup@example.com", sub="g-2"))


class TestLinking:
    async def test_new_provider_for_known_email_requires_linking(self, db_session):
        created = await _resolve(db_session, google_profile("link@example.com", sub="g-1"))
        outcome = await _resolve(db_session, apple_profile("LINK@example.com", sub="a-1"))

        assert isinstance(outcome, LinkingChallenge)
        assert outcome.user_id == created.user.id
        assert outcome.new_provider is Provider.APPLE
        assert outcome.existing_providers == ["google"]
        accounts = await get_user_provider_accounts(db_session, created.user.id)
        assert len(accounts) == 1

    async def test_confirm_links_provider(self, db_session):
        created = await _resolve(db_session, google_profile("link@example.com", sub="g-1"))
        user_id = created.user.id
        challenge = await _resolve(db_session, apple_profile("link@example.com", sub="a-1"))

        resolved = await confirm_linking(db_session, challenge.linking_token, confirm=True)
        await db_session.commit()

        assert resolved.user.id == user_id
        accounts = await get_user_provider_accounts(db_session, user_id)
        assert sorted(a.provider.value for a in accounts) == ["apple", "google"]
        user = await reload(db_session, User, user_id)
        google = next(a for a in accounts if a.provider is Provider.GOOGLE)
        assert user.primary_provider_account_id == google.id

        again = await _resolve(db_session, apple_profile("link@example.com", sub="a-1"))
        assert isinstance(again, ResolvedIdentity)
        assert again.user.id == user_id

    async def test_decline_links_nothing(self, db_session):
        created = await _resolve(db_session, google_profile("link@example.com", sub="g-1"))
        challenge = await _resolve(db_session, apple_profile("link@example.com", sub="a-1"))

        assert await confirm_linking(db_session, challenge.linking_token, confirm=False) is None
        accounts = await get_user_provider_accounts(db_session, created.user.id)
        assert len(accounts) == 1

    async def test_linking_token_for_deleted_user(self, db_session):
        token = create_linking_token(9999, apple_profile("ghost@example.com").to_claims())
        with pytest.raises(NotFoundError):
            await confirm_linking(db_session, token, confirm=True)

    async def test_linking_token_email_mismatch(self, db_session, superadmin):
        token = create_linking_token(superadmin.id, apple_profile("someone-else@example.com").to_claims())
        with pytest.raises(ValidationError):
            await confirm_linking(db_session, token, confirm=True)

    async def test_access_token_is_not_a_linking_token(self, db_session, superadmin):
        from citadel.auth.jwt import create_access_token

        token = create_access_token(superadmin.id, superadmin.email, superadmin.role)
        with pytest.raises(InvalidTokenError):
            await confirm_linking(db_session, token, confirm=True)

    async def test_identity_owned_by_other_user_conflicts(self, db_session, superadmin, admin):
        profile = OAuthProfile(
            email=admin.email,
            provider=Provider.GOOGLE,
            provider_id=f"google-{superadmin.email}",
        )
        with pytest.raises(ConflictError) as exc_info:
            await create_provider_account(db_session, admin, profile)
        assert exc_info.value.code == "PROVIDER_ALREADY_LINKED"
        owned = (
            await db_session.execute(select(ProviderAccount).where(ProviderAccount.user_id == admin.id))
        ).scalars().all()
        assert len(owned) == 1


class TestProfileClaims:
    def test_round_trip_through_claims(self):
        profile = apple_profile("A@Example.com", sub="a-7", name="Ann")
        assert OAuthProfile.from_claims(profile.to_claims()) == profile

    def test_bad_claims_rejected(self):
        with pytest.raises(InvalidTokenError):
            OAuthProfile.from_claims({"email": "x@example.com", "provider": "myspace", "provider_id": "1"})


class TestCleanAvatarUrl:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("https://cdn.example.com/a.png?size=200", "https://cdn.example.com/a.png"),
            ("http://cdn.example.com/a.png#x", "http://cdn.example.com/a.png"),
            ("javascript:alert(1)", None),
            ("ftp://cdn.example.com/a.png", None),
            ("not a url", None),
            ("", None),
            (None, None),
        ],
    )
    def test_clean(self, raw, expected):
        assert clean_avatar_url(raw) == expected
