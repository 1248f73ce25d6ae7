"""Tests for the /api/profile endpoints."""

from httpx import AsyncClient

from citadel.auth.roles import Provider, Role
from citadel.db.models import ProviderAccount, User
from tests.helpers import admin_headers, bearer, create_user, reload


async def _link_apple(db, user) -> None:
    db.add(
        ProviderAccount(
            user_id=user.id,
            provider=Provider.APPLE,
            provider_id=f"apple-{user.email}",
            email=user.email,
        )
    )
    await db.commit()


class TestProfile:
    async def test_requires_api_key(self, client: AsyncClient, regular_user):
        response = await client.get("/api/profile", headers=bearer(regular_user))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "API_KEY_MISSING"

    async def test_get_profile(self, client: AsyncClient, regular_user, admin_panel_key):
        response = await client.get("/api/profile", headers=admin_headers(regular_user, admin_panel_key))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "user@example.com"
        assert data["user"]["role"] == "user"
        assert data["preferences"] == {"language": "pt-BR", "settings": {}}
        assert [(p["provider"], p["isPrimary"]) for p in data["providers"]] == [("apple", True)]

    async def test_patch_profile(self, client: AsyncClient, regular_user, admin_panel_key):
        headers = admin_headers(regular_user, admin_panel_key)
        await client.patch("/api/profile", json={"settings": {"theme": "dark"}}, headers=headers)
        response = await client.patch(
            "/api/profile",
            json={
                "name": "Renamed",
                "avatar": "https://cdn.example.com/me.png?v=2",
                "language": "en-US",
                "settings": {"notifications": False},
            },
            headers=headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["name"] == "Renamed"
        assert data["user"]["avatar"] == "https://cdn.example.com/me.png"
        assert data["preferences"] == {"language": "en-US", "settings": {"theme": "dark", "notifications": False}}

    async def test_patch_rejects_bad_language(self, client: AsyncClient, regular_user, admin_panel_key):
        response = await client.patch(
            "/api/profile", json={"language": "x"}, headers=admin_headers(regular_user, admin_panel_key)
        )
        assert response.status_code == 422


class TestProviders:
    async def test_list_in_link_order(self, client: AsyncClient, db_session, admin, admin_panel_key):
        await _link_apple(db_session, admin)
        response = await client.get("/api/profile/providers", headers=admin_headers(admin, admin_panel_key))
        providers = response.json()["data"]
        assert [(p["provider"], p["isPrimary"]) for p in providers] == [("google", True), ("apple", False)]
        assert providers[1]["email"] == "admin@example.com"

    async def test_cannot_unlink_last_provider(self, client: AsyncClient, regular_user, admin_panel_key):
        response = await client.delete(
            "/api/profile/providers/apple", headers=admin_headers(regular_user, admin_panel_key)
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "LAST_PROVIDER"

    async def test_unlink_unknown_provider(self, client: AsyncClient, regular_user, admin_panel_key):
        response = await client.delete(
            "/api/profile/providers/google", headers=admin_headers(regular_user, admin_panel_key)
        )
        assert response.status_code == 404

    async def test_unlinking_primary_promotes_remaining(
        self, client: AsyncClient, db_session, admin, admin_panel_key
    ):
        await _link_apple(db_session, admin)
        response = await client.delete("/api/profile/providers/google", headers=admin_headers(admin, admin_panel_key))
        assert response.status_code == 200
        assert [(p["provider"], p["isPrimary"]) for p in response.json()["data"]] == [("apple", True)]

    async def test_set_primary(self, client: AsyncClient, db_session, admin, admin_panel_key):
        await _link_apple(db_session, admin)
        response = await client.put(
            "/api/profile/providers/apple/primary", headers=admin_headers(admin, admin_panel_key)
        )
        assert response.status_code == 200
        primary = {p["provider"]: p["isPrimary"] for p in response.json()["data"]}
        assert primary == {"google": False, "apple": True}

    async def test_unknown_provider_name(self, client: AsyncClient, admin, admin_panel_key):
        response = await client.put(
            "/api/profile/providers/myspace/primary", headers=admin_headers(admin, admin_panel_key)
        )
        assert response.status_code == 422


class TestDeleteAccount:
    async def test_delete_own_account(self, client: AsyncClient, db_session, regular_user, admin_panel_key):
        user_id = regular_user.id
        headers = admin_headers(regular_user, admin_panel_key)
        response = await client.delete("/api/profile", headers=headers)
        assert response.status_code == 200
        assert await reload(db_session, User, user_id) is None

        after = await client.get("/api/profile", headers=headers)
        assert after.status_code == 401

    async def test_last_superadmin_cannot_leave(self, client: AsyncClient, superadmin, admin_panel_key):
        response = await client.delete("/api/profile", headers=admin_headers(superadmin, admin_panel_key))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "LAST_SUPERADMIN"

    async def test_superadmin_can_leave_when_another_remains(
        self, client: AsyncClient, db_session, superadmin, admin_panel_key
    ):
        await create_user(db_session, email="co-owner@example.com", role=Role.SUPERADMIN)
        response = await client.delete("/api/profile", headers=admin_headers(superadmin, admin_panel_key))
        assert response.status_code == 200
