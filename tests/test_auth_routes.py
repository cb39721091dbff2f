"""
tests/test_auth_routes.py -- Integration tests for the /auth contract.

OAuth provider traffic is faked at two seams: the authlib registry on
app.state.oauth (conftest.oauth) and fetch_oauth_profile, patched per test
through provider_returns. Everything between them -- session state, linking
marker, reconciliation, token issuance -- runs for real.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
from authlib.integrations.starlette_client import OAuthError
from fastapi.testclient import TestClient

from auth.models import OAuthProfile
from auth.reconcile import EMAIL_NOT_LINKED, LAST_METHOD

PASSWORD = "correct-horse-42"


@pytest.fixture()
def provider_returns(monkeypatch) -> Callable[..., None]:
    """Choose the profile the next OAuth callbacks will see."""

    def _set(email: str | None, provider: str = "github", provider_id: str = "gh-1", name: str = "Octo") -> None:
        profile = OAuthProfile(provider=provider, provider_id=provider_id, email=email, display_name=name)
        monkeypatch.setattr("api.routes.v1.auth.fetch_oauth_profile", AsyncMock(return_value=profile))

    return _set


def _register(client: TestClient, email: str, username: str = "alice42", **extra):
    return client.post("/auth/register", json={"username": username, "email": email, "password": PASSWORD, **extra})


def _redirect_params(resp) -> dict[str, str]:
    assert resp.status_code == 302
    return {k: v[0] for k, v in parse_qs(urlparse(resp.headers["location"]).query).items()}


# ---------------------------------------------------------------------------
# Password flows
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_returns_token_and_user(self, client, tokens) -> None:
        resp = _register(client, "alice@example.com")
        assert resp.status_code == 201
        assert resp.headers["cache-control"] == "no-store"
        body = resp.json()
        assert tokens.verify_access(body["accessToken"]).subject == body["user"]["id"]
        assert body["user"]["email"] == "alice@example.com"
        assert body["user"]["roles"] == ["user"]
        assert body["user"]["providers"] == []
        assert "hashedPassword" not in body["user"]

    def test_duplicate_email_is_conflict(self, client, store) -> None:
        assert _register(client, "dup@example.com").status_code == 201
        resp = _register(client, "DUP@example.com", username="other1")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        assert len(store.list_users(include_deleted=True)) == 1

    def test_role_outside_registration_roles(self, client, store) -> None:
        resp = _register(client, "sneaky@example.com", role="admin")
        assert resp.status_code == 400
        assert store.find_user_by_email("sneaky@example.com") is None

    def test_explicit_default_role(self, client) -> None:
        resp = _register(client, "explicit@example.com", role="user")
        assert resp.status_code == 201
        assert resp.json()["user"]["roles"] == ["user"]

    @pytest.mark.parametrize(
        "body",
        [
            {"username": "ab", "email": "a@example.com", "password": PASSWORD},
            {"username": "has space", "email": "a@example.com", "password": PASSWORD},
            {"username": "alice42", "email": "not-an-email", "password": PASSWORD},
            {"username": "alice42", "email": "a@b..c", "password": PASSWORD},
            {"username": "alice42", "email": "x@-.-", "password": PASSWORD},
            {"username": "alice42", "email": "a@.example.com", "password": PASSWORD},
            {"username": "alice42", "email": "a@example.com.", "password": PASSWORD},
            {"username": "alice42", "email": "a@example.com", "password": "short"},
            {"username": "alice42", "email": "a@example.com"},
        ],
    )
    def test_invalid_body_is_400(self, client, store, body: dict) -> None:
        resp = client.post("/auth/register", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        assert store.list_users(include_deleted=True) == []


class TestLogin:
    def test_login_returns_token_pair(self, client, make_user, tokens) -> None:
        user = make_user("bob@example.com")
        resp = client.post("/auth/login", json={"email": "bob@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        body = resp.json()
        assert tokens.verify_access(body["accessToken"]).subject == user.id
        assert tokens.verify_refresh(body["refreshToken"]).subject == user.id

    @pytest.mark.parametrize(
        ("email", "password"),
        [
            ("bob@example.com", "wrong-password"),
            ("nobody@example.com", PASSWORD),
            ("oauth-only@example.com", PASSWORD),
        ],
    )
    def test_failures_share_one_message(self, client, make_user, email: str, password: str) -> None:
        make_user("bob@example.com")
        make_user("oauth-only@example.com", password=None, provider=("github", "1"))
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 401
        assert resp.json() == {"error": {"code": "unauthorized", "message": "Invalid email or password."}}

    def test_soft_deleted_user_cannot_log_in(self, client, make_user, store) -> None:
        user = make_user("gone@example.com")
        store.soft_delete_user(user.id)
        resp = client.post("/auth/login", json={"email": "gone@example.com", "password": PASSWORD})
        assert resp.status_code == 401

    def test_missing_field_is_400(self, client) -> None:
        assert client.post("/auth/login", json={"email": "bob@example.com"}).status_code == 400


class TestRefresh:
    def test_refresh_mints_access_token(self, client, make_user, tokens) -> None:
        user = make_user("r@example.com")
        resp = client.post("/auth/refresh", json={"refreshToken": tokens.issue_refresh(user.id)})
        assert resp.status_code == 200
        access = resp.json()["accessToken"]
        assert tokens.verify_access(access).subject == user.id
        me = client.get("/auth/me", headers={"Authorization": f"Bearer {access}"})
        assert me.status_code == 200
        assert me.json()["email"] == "r@example.com"

    def test_access_token_cannot_refresh(self, client, make_user, tokens) -> None:
        user = make_user("r@example.com")
        resp = client.post("/auth/refresh", json={"refreshToken": tokens.issue_access(user.id)})
        assert resp.status_code == 401

    def test_refresh_for_deleted_user(self, client, make_user, tokens, store) -> None:
        user = make_user("r@example.com")
        refresh = tokens.issue_refresh(user.id)
        store.soft_delete_user(user.id)
        assert client.post("/auth/refresh", json={"refreshToken": refresh}).status_code == 401

    def test_missing_refresh_token_is_400(self, client) -> None:
        assert client.post("/auth/refresh", json={}).status_code == 400


class TestMe:
    def test_me_lists_roles_and_providers(self, client, make_user, bearer) -> None:
        user = make_user("me@example.com", roles=("admin", "user"), provider=("google", "g-1"))
        body = client.get("/auth/me", headers=bearer(user)).json()
        assert body["id"] == user.id
        assert body["roles"] == ["admin", "user"]
        assert body["providers"] == ["google"]

    def test_me_requires_token(self, client) -> None:
        assert client.get("/auth/me").status_code == 401


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuthStart:
    def test_providers_lists_configured_ones(self, client) -> None:
        names = {p["name"] for p in client.get("/auth/providers").json()}
        assert {"github", "google"} <= names
        assert "facebook" not in names

    def test_unknown_provider(self, client) -> None:
        resp = client.get("/auth/myspace")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_login_redirect(self, client, oauth) -> None:
        resp = client.get("/auth/github")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://provider.example/")
        args, kwargs = oauth.create_client.return_value.authorize_redirect.call_args
        assert args[1].endswith("/auth/github/callback")
        assert "state" not in kwargs

    def test_linking_redirect_carries_token_as_state(self, client, oauth, make_user, tokens) -> None:
        token = tokens.issue_access(make_user("l@example.com").id)
        resp = client.get("/auth/github", params={"linking": "true", "token": token})
        assert resp.status_code == 302
        _, kwargs = oauth.create_client.return_value.authorize_redirect.call_args
        assert kwargs["state"] == token

    @pytest.mark.parametrize("token", [None, "garbage"])
    def test_linking_requires_valid_token(self, client, oauth, token: str | None) -> None:
        params = {"linking": "true"}
        if token:
            params["token"] = token
        resp = client.get("/auth/github", params=params)
        assert resp.status_code == 401
        oauth.create_client.return_value.authorize_redirect.assert_not_called()


class TestOAuthCallback:
    def test_new_identity_registers_and_redirects(self, client, provider_returns, tokens, store) -> None:
        provider_returns("octo@example.com", name="Octo")
        params = _redirect_params(client.get("/auth/github/callback", params={"code": "c", "state": "s"}))
        user = store.find_user_by_email("octo@example.com")
        assert tokens.verify_access(params["token"]).subject == user.id
        assert json.loads(params["user"]) == {"id": user.id, "username": "Octo"}
        assert user.role_names == ["user"]

    def test_returning_identity_logs_in(self, client, provider_returns, make_user, tokens) -> None:
        user = make_user("octo@example.com", password=None, provider=("github", "gh-1"))
        provider_returns("octo@example.com")
        params = _redirect_params(client.get("/auth/github/callback", params={"code": "c", "state": "s"}))
        assert tokens.verify_access(params["token"]).subject == user.id

    def test_register_then_oauth_with_same_email_is_conflict(self, client, provider_returns, store) -> None:
        assert _register(client, "x@example.com", username="xuser").status_code == 201
        provider_returns("x@example.com")
        resp = client.get("/auth/github/callback", params={"code": "c", "state": "s"})
        assert resp.status_code == 409
        assert resp.json()["error"]["message"] == EMAIL_NOT_LINKED
        user = store.find_user_by_email("x@example.com")
        assert user.providers == []

    def test_missing_verified_email(self, client, provider_returns) -> None:
        provider_returns(None)
        assert client.get("/auth/github/callback", params={"code": "c", "state": "s"}).status_code == 400

    def test_token_exchange_failure(self, client, oauth) -> None:
        oauth.create_client.return_value.authorize_access_token = AsyncMock(
            side_effect=OAuthError(error="mismatching_state")
        )
        resp = client.get("/auth/github/callback", params={"code": "c", "state": "s"})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "OAuth authentication failed."

    def test_profile_fetch_failure(self, client, monkeypatch) -> None:
        monkeypatch.setattr(
            "api.routes.v1.auth.fetch_oauth_profile", AsyncMock(side_effect=ValueError("no id"))
        )
        assert client.get("/auth/github/callback", params={"code": "c", "state": "s"}).status_code == 401


class TestLinkingFlow:
    def _start(self, client: TestClient, token: str) -> None:
        assert client.get("/auth/github", params={"linking": "true", "token": token}).status_code == 302

    def test_link_success_reuses_linking_token(self, client, provider_returns, make_user, tokens, store) -> None:
        user = make_user("link@example.com")
        token = tokens.issue_access(user.id)
        self._start(client, token)
        provider_returns("link@example.com")
        params = _redirect_params(client.get("/auth/github/callback", params={"code": "c", "state": token}))
        assert params["token"] == token
        assert store.find_provider_link(user.id, "github").provider_id == "gh-1"

    def test_link_with_different_email_is_conflict(self, client, provider_returns, make_user, tokens, store) -> None:
        user = make_user("link@example.com")
        token = tokens.issue_access(user.id)
        self._start(client, token)
        provider_returns("different@example.com")
        resp = client.get("/auth/github/callback", params={"code": "c", "state": token})
        assert resp.status_code == 409
        assert store.list_provider_links(user.id) == []
        assert store.find_user_by_email("different@example.com") is None

    def test_state_without_session_marker_is_not_linking(
        self, client, provider_returns, make_user, tokens, store
    ) -> None:
        """A valid access token echoed as state does not link unless this session started linking."""
        user = make_user("link@example.com")
        provider_returns("link@example.com")
        resp = client.get("/auth/github/callback", params={"code": "c", "state": tokens.issue_access(user.id)})
        assert resp.status_code == 409
        assert resp.json()["error"]["message"] == EMAIL_NOT_LINKED
        assert store.list_provider_links(user.id) == []

    def test_marker_is_single_use(self, client, provider_returns, make_user, tokens, store) -> None:
        user = make_user("link@example.com")
        token = tokens.issue_access(user.id)
        self._start(client, token)
        provider_returns("link@example.com")
        assert client.get("/auth/github/callback", params={"code": "c", "state": token}).status_code == 302
        # Replaying the callback is now an ordinary login for a linked identity.
        params = _redirect_params(client.get("/auth/github/callback", params={"code": "c", "state": token}))
        assert tokens.verify_access(params["token"]).subject == user.id
        assert store.count_provider_links(user.id) == 1


class TestUnlink:
    def test_unlink_last_method_is_refused(self, client, make_user, bearer, store) -> None:
        user = make_user("solo@example.com", password=None, provider=("github", "gh-1"))
        resp = client.delete("/auth/unlink/github", headers=bearer(user))
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == LAST_METHOD
        assert store.find_provider_link(user.id, "github") is not None

    def test_unlink_with_password(self, client, make_user, bearer, store) -> None:
        user = make_user("pw@example.com", provider=("github", "gh-1"))
        resp = client.delete("/auth/unlink/github", headers=bearer(user))
        assert resp.status_code == 200
        assert resp.json() == {"message": "github account unlinked successfully."}
        assert store.find_provider_link(user.id, "github") is None

    def test_unlink_missing_link(self, client, make_user, bearer) -> None:
        user = make_user("pw@example.com")
        assert client.delete("/auth/unlink/google", headers=bearer(user)).status_code == 404

    def test_unlink_requires_auth(self, client) -> None:
        assert client.delete("/auth/unlink/github").status_code == 401
