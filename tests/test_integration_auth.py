"""Integration tests for the auth endpoints and the authorization gate."""

import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from admincore import app as app_module
from admincore.service.runtime import get_runtime
from admincore.service.tokens import TokenService


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client, email, password):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


@pytest.fixture
def registered_user(client):
    unique_email = f"member_{uuid.uuid4().hex[:8]}@example.com"
    response = client.post(
        "/v1/auth/register",
        json={"email": unique_email, "password": "MemberPassword123!"},
    )
    assert response.status_code == 201, f"Register failed: {response.text}"
    return {
        "user_id": response.json()["data"]["id"],
        "email": unique_email,
        "password": "MemberPassword123!",
    }


class TestLogin:
    """Tests for POST /v1/auth/login."""

    def test_login_returns_token_pair(self, client):
        response = _login(client, "admin@example.com", "admin123")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["tokenType"] == "Bearer"
        assert data["accessToken"] and data["refreshToken"]
        assert data["expiresIn"] == get_runtime().settings.access_token_expiry_ms
        assert data["user"]["email"] == "admin@example.com"
        assert "ROLE_ADMIN" in data["user"]["roles"]

    def test_wrong_password(self, client):
        response = _login(client, "user@example.com", "wrong-password")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_email_same_response(self, client):
        unknown = _login(client, "ghost@example.com", "wrong-password")
        wrong = _login(client, "user@example.com", "wrong-password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_lockout_after_repeated_failures(self, client):
        attempts = get_runtime().settings.max_login_attempts
        codes = [
            _login(client, "user@example.com", "wrong-password").json()["error"]["code"]
            for _ in range(attempts)
        ]

        assert codes[:-1] == ["invalid_credentials"] * (attempts - 1)
        assert codes[-1] == "account_locked"
        locked = _login(client, "user@example.com", "user123")
        assert locked.status_code == 403
        assert locked.json()["error"]["code"] == "account_locked"

    def test_disabled_account(self, client):
        runtime = get_runtime()
        user = runtime.store.get_user_by_email("user@example.com")
        runtime.users.deactivate_user(user.id)

        response = _login(client, "user@example.com", "user123")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_disabled"

    def test_malformed_email_is_validation_error(self, client):
        response = _login(client, "not-an-email", "whatever")

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_request_id_echoed(self, client):
        response = client.post(
            "/v1/auth/login",
            json={"email": "ghost@example.com", "password": "x"},
            headers={"X-Request-ID": "trace-42"},
        )

        assert response.headers["X-Request-ID"] == "trace-42"
        assert response.json()["request_id"] == "trace-42"


class TestRegisterAndRefresh:
    """Tests for registration and token refresh."""

    def test_registered_user_can_log_in(self, client, registered_user):
        response = _login(client, registered_user["email"], registered_user["password"])

        assert response.status_code == 200
        assert response.json()["data"]["user"]["roles"] == ["ROLE_USER"]

    def test_duplicate_registration(self, client, registered_user):
        response = client.post(
            "/v1/auth/register",
            json={"email": registered_user["email"], "password": "AnotherPassword1!"},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "weak@example.com", "password": "short"}
        )

        assert response.status_code == 400

    def test_registration_disabled(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "allow_signup", False)

        response = client.post(
            "/v1/auth/register",
            json={"email": "late@example.com", "password": "LatePassword1!"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_refresh_accepts_camel_case(self, client):
        login = _login(client, "user@example.com", "user123").json()["data"]

        response = client.post(
            "/v1/auth/refresh", json={"refreshToken": login["refreshToken"]}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refreshToken"] == login["refreshToken"]
        assert data["accessToken"]

    def test_refresh_picks_up_new_role(self, client):
        runtime = get_runtime()
        login = _login(client, "user@example.com", "user123").json()["data"]
        user = runtime.store.get_user_by_email("user@example.com")
        manager = runtime.store.get_role_by_name("ROLE_MANAGER")
        runtime.rbac.assign_role_to_user(user.id, manager.id)

        refreshed = client.post(
            "/v1/auth/refresh", json={"refresh_token": login["refreshToken"]}
        ).json()["data"]
        me = client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {refreshed['accessToken']}"}
        )

        assert "ROLE_MANAGER" in me.json()["data"]["roles"]

    def test_refresh_with_access_token_rejected(self, client):
        login = _login(client, "user@example.com", "user123").json()["data"]

        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": login["accessToken"]}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"


class TestBearerGate:
    """Tests for bearer token handling on protected routes."""

    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_non_bearer_scheme(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Basic abc"})

        assert response.status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer a.b.c"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_expired_token(self, client):
        runtime = get_runtime()
        user = runtime.store.get_user_by_email("user@example.com")
        issuer = TokenService(
            runtime.settings, clock=lambda: datetime(2000, 1, 1, tzinfo=timezone.utc)
        )
        expired = issuer.issue_access(user.id, user.email, ["ROLE_USER"], [])

        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {expired}"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"

    def test_me_returns_token_claims(self, client):
        token = _login(client, "user@example.com", "user123").json()["data"]["accessToken"]

        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})

        data = response.json()["data"]
        assert data["email"] == "user@example.com"
        assert data["roles"] == ["ROLE_USER"]
        assert data["permissions"] == ["SYSTEM_VIEW"]

    def test_permission_check(self, client):
        token = _login(client, "user@example.com", "user123").json()["data"]["accessToken"]

        response = client.post(
            "/v1/auth/permissions/check",
            json={
                "checks": [
                    {"resource": "SYSTEM", "action": "VIEW"},
                    {"resource": "SYSTEM", "action": "DELETE"},
                ]
            },
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.json()["data"] == {"SYSTEM:VIEW": True, "SYSTEM:DELETE": False}


class TestUserMenus:
    """Tests for the signed-in user's menu endpoints."""

    @pytest.fixture
    def headers(self, client):
        token = _login(client, "user@example.com", "user123").json()["data"]["accessToken"]
        return {"Authorization": f"Bearer {token}"}

    def _menu_id(self, name):
        return next(m.id for m in get_runtime().store.list_menus() if m.name == name)

    def test_menu_tree(self, client, headers):
        response = client.get("/v1/menus/tree", headers=headers)

        tree = response.json()["data"]
        assert [node["name"] for node in tree] == ["dashboard", "system"]
        system_children = [child["name"] for child in tree[1]["children"]]
        assert "settings" not in system_children
        assert tree[0]["permissions"]["can_access"] is True

    def test_accessible_filter_by_type(self, client, headers):
        response = client.get("/v1/menus/accessible?menu_type=group", headers=headers)

        assert [m["name"] for m in response.json()["data"]] == ["system"]

    def test_accessible_unknown_type(self, client, headers):
        response = client.get("/v1/menus/accessible?menu_type=sidebar", headers=headers)

        assert response.status_code == 400

    def test_url_access(self, client, headers):
        allowed = client.get("/v1/menus/access?url=/dashboard", headers=headers)
        denied = client.get("/v1/menus/access?url=/system/settings", headers=headers)

        assert allowed.json()["data"]["allowed"] is True
        assert denied.json()["data"]["allowed"] is False

    def test_by_level(self, client, headers):
        response = client.get("/v1/menus/by-level", headers=headers)

        data = response.json()["data"]
        assert set(data) == {"ADMIN", "EDITABLE", "ACCESSIBLE", "VIEW_ONLY"}
        assert data["ADMIN"] == []

    def test_favorites_toggle(self, client, headers):
        menu_id = self._menu_id("dashboard")

        first = client.post(f"/v1/menus/{menu_id}/favorite", headers=headers)
        favorites = client.get("/v1/menus/favorites", headers=headers)

        assert first.json()["data"]["is_favorite"] is True
        assert [m["id"] for m in favorites.json()["data"]] == [menu_id]

    def test_menu_permissions(self, client, headers):
        menu_id = self._menu_id("settings")

        response = client.get(f"/v1/menus/{menu_id}/permissions", headers=headers)

        data = response.json()["data"]
        assert data["menu_id"] == menu_id
        assert data["can_view"] is False

    def test_unknown_menu_permissions_not_revealed(self, client, headers):
        response = client.get("/v1/menus/missing/permissions", headers=headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "insufficient_permission"

    def test_favorite_requires_view(self, client, headers):
        settings_id = self._menu_id("settings")

        response = client.post(f"/v1/menus/{settings_id}/favorite", headers=headers)

        assert response.status_code == 403
        body = response.json()
        assert body["error"]["code"] == "insufficient_permission"
        assert body["error"]["details"] == {"menu_id": settings_id, "action": "VIEW"}
        assert get_runtime().menus.list_favorites(
            get_runtime().store.get_user_by_email("user@example.com").id
        ) == []

    def test_favorite_unknown_menu_not_revealed(self, client, headers):
        response = client.post("/v1/menus/missing/favorite", headers=headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "insufficient_permission"

    def test_favorite_allowed_after_role_grant(self, client, headers):
        runtime = get_runtime()
        settings_id = self._menu_id("settings")
        runtime.menus.grant_role_menu_permission(
            runtime.store.get_role_by_name("ROLE_USER").id, settings_id, {"can_view": True}
        )

        response = client.post(f"/v1/menus/{settings_id}/favorite", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["is_favorite"] is True


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["database"]["catalog"]["menus"] == 6
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["API-Version"] == app_module.__version__
