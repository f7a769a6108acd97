"""
tests/test_api_routes.py -- Integration tests for the auth and account routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> AuthEngine/AccountService -> SQLite -> response model serialization. Unit
tests of the engine would miss the middleware, the exception handlers, and the
error envelope, so the HTTP contract is tested here end to end.

Coverage:
  - register/login/refresh/logout happy paths and their 401/409/422 failures
  - GET /auth/me with access, refresh, malformed, and stale credentials
  - admin-only /accounts CRUD, 401 without a token, 403 for a user token
  - domain and storage errors mapped onto the {"error": {...}} envelope

Fixtures used (from conftest.py):
  - api_client: (client, admin_token, admin_id) -- one isolated database per module.
    Every test registers its own email address so tests stay independent.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.errors import StorageUnavailable

PASSWORD = "Passw0rd!"


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register(client: TestClient, email: str, password: str = PASSWORD):
    return client.post("/api/v1/auth/register", json={"email": email, "password": password})


def _login(client: TestClient, email: str, password: str = PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _tokens(client: TestClient, email: str) -> dict:
    assert _register(client, email).status_code == 201
    resp = _login(client, email)
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestRegisterAndLogin:
    def test_register_returns_account(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = _register(client, "reg@x.com")
        assert resp.status_code == 201
        data = resp.json()
        assert data["email"] == "reg@x.com"
        assert data["role"] == "user"
        assert "password_hash" not in data

    def test_register_duplicate_email(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        assert _register(client, "dup@x.com").status_code == 201
        resp = _register(client, "dup@x.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_exists"

    def test_register_weak_password(self, api_client: tuple[TestClient, str, int]) -> None:
        """Passes the length check in the request model but fails the account policy."""
        client, _token, _uid = api_client
        resp = _register(client, "weak@x.com", "Password1")
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_account_data"

    def test_register_password_over_bcrypt_limit(self, api_client: tuple[TestClient, str, int]) -> None:
        """60 characters, but well over 72 bytes once encoded."""
        client, _token, _uid = api_client
        resp = _register(client, "long@x.com", "Pässwörd1!" + "é" * 50)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_account_data"
        assert _login(client, "long@x.com", "Pässwörd1!" + "é" * 50).status_code == 401

    def test_register_invalid_email(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = _register(client, "not-an-email")
        assert resp.status_code == 422

    def test_register_disabled(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        original = client.app.state.settings
        client.app.state.settings = original.model_copy(update={"self_registration_enabled": False})
        try:
            resp = _register(client, "closed@x.com")
        finally:
            client.app.state.settings = original
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "registration_disabled"

    def test_login_returns_token_pair(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        _register(client, "login@x.com")
        resp = _login(client, "login@x.com")
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["access_token"] != data["refresh_token"]

    def test_login_failures_are_indistinguishable(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        _register(client, "same@x.com")
        wrong_password = _login(client, "same@x.com", "Wrong-passw0rd")
        unknown_email = _login(client, "nobody@x.com")
        assert wrong_password.status_code == 401
        assert unknown_email.status_code == 401
        assert wrong_password.json() == unknown_email.json()
        assert wrong_password.json()["error"]["code"] == "invalid_credentials"

    def test_login_missing_field(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "a@x.com"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRefreshAndLogout:
    def test_refresh_rotates(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        tokens = _tokens(client, "rotate@x.com")

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        rotated = resp.json()
        assert rotated["refresh_token"] != tokens["refresh_token"]

        replay = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_refresh_token"

        me = client.get("/api/v1/auth/me", headers=_auth(rotated["access_token"]))
        assert me.status_code == 200
        assert me.json()["email"] == "rotate@x.com"

    def test_refresh_garbage(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_refresh_token"

    def test_logout(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        tokens = _tokens(client, "logout@x.com")
        body = {"refresh_token": tokens["refresh_token"]}

        assert client.post("/api/v1/auth/logout", json=body).status_code == 204
        assert client.post("/api/v1/auth/logout", json=body).status_code == 401
        assert client.post("/api/v1/auth/refresh", json=body).status_code == 401


class TestMe:
    def test_me_with_access_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, uid = api_client
        resp = client.get("/api/v1/auth/me", headers=_auth(token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == uid
        assert data["role"] == "admin"

    def test_me_unauthenticated(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_refresh_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        tokens = _tokens(client, "me-refresh@x.com")
        resp = client.get("/api/v1/auth/me", headers=_auth(tokens["refresh_token"]))
        assert resp.status_code == 401

    def test_me_rejects_malformed_header(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Token {token}"})
        assert resp.status_code == 401


class TestAccountRoutes:
    def test_requires_authentication(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        assert client.get("/api/v1/accounts/1").status_code == 401
        assert client.post("/api/v1/accounts", json={"email": "x@x.com", "password": PASSWORD}).status_code == 401

    def test_requires_admin(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        tokens = _tokens(client, "plain-user@x.com")
        resp = client.get("/api/v1/accounts/1", headers=_auth(tokens["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_create_and_lookup(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.post(
            "/api/v1/accounts",
            json={"email": "second-admin@x.com", "password": PASSWORD, "role": "admin"},
            headers=_auth(token),
        )
        assert resp.status_code == 201
        created = resp.json()
        assert created["role"] == "admin"

        by_id = client.get(f"/api/v1/accounts/{created['id']}", headers=_auth(token))
        assert by_id.status_code == 200
        assert by_id.json()["email"] == "second-admin@x.com"

        by_email = client.get("/api/v1/accounts", params={"email": "second-admin@x.com"}, headers=_auth(token))
        assert by_email.status_code == 200
        assert by_email.json()["id"] == created["id"]

    def test_unknown_account(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/v1/accounts/999999", headers=_auth(token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "account_not_found"

    def test_invalid_role(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.post(
            "/api/v1/accounts",
            json={"email": "root@x.com", "password": PASSWORD, "role": "superuser"},
            headers=_auth(token),
        )
        assert resp.status_code == 422

    def test_update_email(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        account_id = _register(client, "old-mail@x.com").json()["id"]
        _register(client, "taken-mail@x.com")

        resp = client.put(f"/api/v1/accounts/{account_id}/email", json={"email": "new-mail@x.com"}, headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json()["email"] == "new-mail@x.com"

        conflict = client.put(
            f"/api/v1/accounts/{account_id}/email", json={"email": "taken-mail@x.com"}, headers=_auth(token)
        )
        assert conflict.status_code == 409

    def test_update_password(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        account_id = _register(client, "pw-change@x.com").json()["id"]
        resp = client.put(
            f"/api/v1/accounts/{account_id}/password", json={"password": "N3w-passw0rd"}, headers=_auth(token)
        )
        assert resp.status_code == 204
        assert _login(client, "pw-change@x.com").status_code == 401
        assert _login(client, "pw-change@x.com", "N3w-passw0rd").status_code == 200

    def test_delete_account(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        tokens = _tokens(client, "doomed@x.com")
        me = client.get("/api/v1/auth/me", headers=_auth(tokens["access_token"])).json()

        resp = client.delete(f"/api/v1/accounts/{me['id']}", headers=_auth(token))
        assert resp.status_code == 204

        assert client.get(f"/api/v1/accounts/{me['id']}", headers=_auth(token)).status_code == 404
        assert client.get("/api/v1/auth/me", headers=_auth(tokens["access_token"])).status_code == 401
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401
        assert _login(client, "doomed@x.com").status_code == 401

    def test_admin_cannot_delete_self(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, uid = api_client
        resp = client.delete(f"/api/v1/accounts/{uid}", headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deletion"


class TestErrorMapping:
    def test_storage_failure_is_a_generic_500(self, api_client: tuple[TestClient, str, int], monkeypatch) -> None:
        client, _token, _uid = api_client

        def broken_login(email: str, password: str):
            raise StorageUnavailable("disk on fire")

        monkeypatch.setattr(client.app.state.auth_engine, "login", broken_login)
        resp = _login(client, "admin@x.com")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "internal_error"
        assert "disk on fire" not in resp.text
