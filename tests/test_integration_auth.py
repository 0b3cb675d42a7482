"""Integration tests for the access-token endpoints.

Tests the complete flow over HTTP:
- Signup and login
- Token type gate on protected routes
- Refresh in both orders and replay rejection
- Logout
- Uniform rejection body and store outages
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from pairauth import app as app_module
from pairauth.config import reset_settings_cache
from pairauth.service.errors import Revoked, StoreUnavailable
from pairauth.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


@pytest.fixture
def registered_user(client, test_user_email, test_user_password):
    response = client.post(
        "/users", json={"email": test_user_email, "password": test_user_password}
    )
    assert response.status_code == 201
    return response.json()["data"]


@pytest.fixture
def token_pair(client, registered_user, test_user_email, test_user_password):
    response = client.post(
        "/access-tokens", json={"email": test_user_email, "password": test_user_password}
    )
    assert response.status_code == 200
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class WriteFailingStore:
    """Revocation store that answers reads but cannot record revocations."""

    async def set_if_absent(self, key, value, ttl_seconds):
        raise StoreUnavailable("redis down")

    async def exists(self, key):
        return False

    async def ttl(self, key):
        return None


class TestSignup:
    def test_signup_creates_user(self, client, test_user_email, test_user_password):
        response = client.post(
            "/users", json={"email": test_user_email, "password": test_user_password}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["email"] == test_user_email
        assert "id" in data["data"]

    def test_signup_rejects_duplicate_email(self, client, registered_user, test_user_password):
        response = client.post(
            "/users", json={"email": "TestUser@example.com", "password": test_user_password}
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_signup_validates_email_format(self, client, test_user_password):
        response = client.post(
            "/users", json={"email": "invalid-email", "password": test_user_password}
        )

        assert response.status_code == 422

    def test_signup_validates_password_length(self, client, test_user_email):
        response = client.post("/users", json={"email": test_user_email, "password": "short"})

        assert response.status_code == 422

    def test_signup_can_be_disabled(self, client, monkeypatch, test_user_email, test_user_password):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_settings_cache()

        response = client.post(
            "/users", json={"email": test_user_email, "password": test_user_password}
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestLogin:
    def test_login_returns_bearer_pair(self, token_pair):
        assert set(token_pair) == {"accessToken", "refreshToken", "tokenType"}
        assert token_pair["tokenType"] == "bearer"
        assert token_pair["accessToken"] != token_pair["refreshToken"]

    def test_login_pair_shares_pairing(self, token_pair):
        codec = get_runtime().codec
        access = codec.verify(token_pair["accessToken"])
        refresh = codec.verify(token_pair["refreshToken"])

        assert access.pairing_id == refresh.pairing_id
        assert access.subject_id == refresh.subject_id

    def test_login_rejects_wrong_password(self, client, registered_user, test_user_email):
        response = client.post(
            "/access-tokens", json={"email": test_user_email, "password": "WrongPassword1!"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_login_rejects_unknown_user(self, client, test_user_password):
        response = client.post(
            "/access-tokens",
            json={"email": "nobody@example.com", "password": test_user_password},
        )

        assert response.status_code == 401


class TestProtectedResource:
    def test_access_token_is_accepted(self, client, token_pair, test_user_email):
        response = client.get("/protected-resource", headers=_auth(token_pair["accessToken"]))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == test_user_email

    def test_refresh_token_is_refused(self, client, token_pair):
        response = client.get("/protected-resource", headers=_auth(token_pair["refreshToken"]))

        assert response.status_code == 401

    def test_missing_header_is_refused(self, client):
        response = client.get("/protected-resource")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_rejections_share_one_body(self, client, token_pair):
        rejected = [
            client.get("/protected-resource"),
            client.get("/protected-resource", headers=_auth("garbage")),
            client.get("/protected-resource", headers=_auth(token_pair["refreshToken"])),
        ]
        client.delete("/access-tokens", headers=_auth(token_pair["accessToken"]))
        rejected.append(
            client.get("/protected-resource", headers=_auth(token_pair["accessToken"]))
        )

        bodies = [r.json() for r in rejected]
        assert all(r.status_code == 401 for r in rejected)
        assert all(body["error"] == bodies[0]["error"] for body in bodies)
        assert bodies[0]["error"] == {
            "code": "unauthorized",
            "message": "missing or invalid credentials",
            "details": None,
        }


class TestRefresh:
    def test_refresh_with_access_in_header(self, client, token_pair):
        response = client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": token_pair["refreshToken"]},
        )

        assert response.status_code == 200
        new_pair = response.json()["data"]
        assert new_pair["accessToken"] != token_pair["accessToken"]
        check = client.get("/protected-resource", headers=_auth(new_pair["accessToken"]))
        assert check.status_code == 200

    def test_refresh_with_refresh_in_header(self, client, token_pair):
        response = client.put(
            "/access-tokens",
            headers=_auth(token_pair["refreshToken"]),
            json={"token": token_pair["accessToken"]},
        )

        assert response.status_code == 200

    def test_originals_are_revoked_after_refresh(self, client, token_pair):
        client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": token_pair["refreshToken"]},
        )

        old_access = client.get("/protected-resource", headers=_auth(token_pair["accessToken"]))
        assert old_access.status_code == 401
        with pytest.raises(Revoked):
            asyncio.run(
                get_runtime().auth.authenticate(
                    f"Bearer {token_pair['refreshToken']}", allow_refresh=True
                )
            )

    def test_replayed_refresh_is_rejected(self, client, token_pair):
        first = client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": token_pair["refreshToken"]},
        )
        replay = client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": token_pair["refreshToken"]},
        )

        assert first.status_code == 200
        assert replay.status_code == 401

    def test_same_type_refresh_is_rejected_and_retires_pairing(self, client, token_pair):
        response = client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": token_pair["accessToken"]},
        )

        assert response.status_code == 401
        retry = client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": token_pair["refreshToken"]},
        )
        assert retry.status_code == 401

    def test_cross_subject_refresh_is_rejected(self, client, token_pair, test_user_password):
        client.post("/users", json={"email": "other@example.com", "password": test_user_password})
        other = client.post(
            "/access-tokens",
            json={"email": "other@example.com", "password": test_user_password},
        ).json()["data"]

        response = client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": other["refreshToken"]},
        )

        assert response.status_code == 401
        # The other subject's pairing was not presented as primary and survives
        check = client.get("/protected-resource", headers=_auth(other["accessToken"]))
        assert check.status_code == 200

    @pytest.mark.parametrize(
        "request_kwargs",
        [
            {"json": {}},
            {"json": {"token": ""}},
            {"json": {"token": "x" * 5000}},
            {"json": {"token": 123}},
            {"json": ["not", "an", "object"]},
            {"content": b"{not json", "headers": {"Content-Type": "application/json"}},
            {},
        ],
    )
    def test_unusable_body_retires_pairing(self, client, token_pair, request_kwargs):
        request_kwargs = dict(request_kwargs)
        headers = {**_auth(token_pair["accessToken"]), **request_kwargs.pop("headers", {})}
        response = client.put("/access-tokens", headers=headers, **request_kwargs)

        assert response.status_code == 401
        retry = client.put(
            "/access-tokens",
            headers=_auth(token_pair["accessToken"]),
            json={"token": token_pair["refreshToken"]},
        )
        assert retry.status_code == 401


class TestLogout:
    def test_logout_with_access_token(self, client, token_pair):
        response = client.delete("/access-tokens", headers=_auth(token_pair["accessToken"]))

        assert response.status_code == 204
        assert response.content == b""
        check = client.get("/protected-resource", headers=_auth(token_pair["accessToken"]))
        assert check.status_code == 401

    def test_logout_with_refresh_token_retires_whole_pair(self, client, token_pair):
        response = client.delete("/access-tokens", headers=_auth(token_pair["refreshToken"]))

        assert response.status_code == 204
        check = client.get("/protected-resource", headers=_auth(token_pair["accessToken"]))
        assert check.status_code == 401

    def test_logout_after_logout_is_rejected(self, client, token_pair):
        client.delete("/access-tokens", headers=_auth(token_pair["accessToken"]))
        response = client.delete("/access-tokens", headers=_auth(token_pair["accessToken"]))

        assert response.status_code == 401

    def test_logout_requires_token(self, client):
        response = client.delete("/access-tokens")

        assert response.status_code == 401

    def test_logout_store_outage_is_503(self, client, token_pair):
        get_runtime().guard.store = WriteFailingStore()

        response = client.delete("/access-tokens", headers=_auth(token_pair["accessToken"]))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"


class TestEndToEnd:
    def test_expire_refresh_and_revoke(self, client, token_pair):
        runtime = get_runtime()
        old_access = token_pair["accessToken"]
        old_pairing = runtime.codec.verify(old_access).pairing_id

        assert client.get("/protected-resource", headers=_auth(old_access)).status_code == 200

        # Move the token clock past the access lifetime
        skew = runtime.settings.access_token_ttl_seconds + 1
        runtime.codec.clock = lambda: time.time() + skew
        assert client.get("/protected-resource", headers=_auth(old_access)).status_code == 401

        response = client.put(
            "/access-tokens",
            headers=_auth(old_access),
            json={"token": token_pair["refreshToken"]},
        )
        assert response.status_code == 200
        new_access = response.json()["data"]["accessToken"]
        assert runtime.codec.verify(new_access).pairing_id != old_pairing

        assert client.get("/protected-resource", headers=_auth(new_access)).status_code == 200
        with pytest.raises(Revoked):
            asyncio.run(
                runtime.auth.authenticate(f"Bearer {old_access}", allow_expired=True)
            )


class TestServiceEndpoints:
    def test_ping(self, client):
        response = client.get("/ping")

        assert response.status_code == 200
        assert response.text == "pong"

    def test_request_id_is_echoed(self, client):
        response = client.get("/ping", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/ping")

        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
