"""
tests/conftest.py -- Shared test fixtures for Forge.

This module provides:
  - store:     isolated in-memory IdentityStore with the admin and user roles
  - tokens:    TokenService with fixed test secrets
  - limiter:   RateLimiter over a fresh MemoryStorage with generous quotas
  - oauth:     MagicMock standing in for the authlib registry
  - client:    TestClient over the real app with a patched lifespan
  - make_user / bearer: helpers for building principals

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture instance gets a uuid suffix so tests never see each other's rows.

DEBUG and the OAuth client credentials must be set before any api/auth/core
import so get_settings() generates dev secrets and reports github and google
as enabled providers.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: set before any project import so the cached Settings see them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("GITHUB_CLIENT_ID", "test-github-client")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "test-github-secret")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-secret")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient
from limits.storage import MemoryStorage

from api.limiter import IP_POLICIES, Quota, RateLimiter
from api.main import app
from auth.models import User
from auth.reconcile import ReconciliationEngine
from auth.store import IdentityStore
from auth.tokens import TokenService, hash_password

ACCESS_SECRET = "test-access-secret-" + "a" * 32
REFRESH_SECRET = "test-refresh-secret-" + "b" * 32
PASSWORD = "correct-horse-42"

GENEROUS = Quota(limit=10_000, window=3600)


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def memory_db_url(name: str = "forge") -> str:
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def build_limiter(
    policies: dict[str, Quota] | None = None,
    role_quotas: dict[str, Quota] | None = None,
    default_quota: Quota = GENEROUS,
    allowlist: tuple[str, ...] = (),
) -> RateLimiter:
    """RateLimiter over a private MemoryStorage; unspecified policies are generous."""
    merged = {name: GENEROUS for name in IP_POLICIES}
    merged.update(policies or {})
    return RateLimiter(
        storage=MemoryStorage(),
        policies=merged,
        role_quotas=role_quotas or {"admin": GENEROUS, "user": GENEROUS},
        default_quota=default_quota,
        allowlist=allowlist,
    )


@pytest.fixture()
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore(db_url=memory_db_url())
    s.create_role("admin")
    s.create_role("user")
    yield s
    s.close()


@pytest.fixture()
def tokens() -> TokenService:
    return TokenService(ACCESS_SECRET, REFRESH_SECRET, access_lifetime=900, refresh_lifetime=3600)


@pytest.fixture()
def limiter() -> RateLimiter:
    return build_limiter()


@pytest.fixture()
def limiter_factory() -> Callable[..., RateLimiter]:
    """build_limiter for tests that need their own quotas."""
    return build_limiter


@pytest.fixture()
def engine(store: IdentityStore, tokens: TokenService) -> ReconciliationEngine:
    return ReconciliationEngine(store, tokens, default_role="user")


@pytest.fixture()
def make_user(store: IdentityStore) -> Callable[..., User]:
    """Create a user and return it loaded with roles and providers.

    make_user("a@ex.com")                                 -- password user, role "user"
    make_user("b@ex.com", password=None, provider=("github", "42"))
    make_user("c@ex.com", roles=("admin",))
    make_user("d@ex.com", roles=())                       -- roleless
    """

    def _make(
        email: str,
        password: str | None = PASSWORD,
        roles: tuple[str, ...] = ("user",),
        provider: tuple[str, str] | None = None,
        username: str | None = None,
    ) -> User:
        role_ids = [store.find_role_by_name(r).id for r in roles]
        user_id = store.create_user(
            User(
                email=email,
                username=username or email.split("@")[0].replace(".", ""),
                hashed_password=hash_password(password) if password else None,
            ),
            role_ids=role_ids,
            provider=provider,
        )
        return store.find_user_by_id(user_id)

    return _make


@pytest.fixture()
def bearer(tokens: TokenService) -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {tokens.issue_access(user.id)}"}

    return _headers


# ---------------------------------------------------------------------------
# OAuth registry double
# ---------------------------------------------------------------------------


@pytest.fixture()
def oauth() -> MagicMock:
    """Stand-in for the authlib registry.

    create_client() returns the same client for every provider.
    authorize_redirect answers with a 302 to a fake provider URL;
    authorize_access_token returns an empty token dict. Tests patch
    api.routes.v1.auth.fetch_oauth_profile to choose the profile.
    """
    registry = MagicMock()
    client = MagicMock()
    client.authorize_redirect = AsyncMock(
        side_effect=lambda *args, **kwargs: RedirectResponse("https://provider.example/authorize", status_code=302)
    )
    client.authorize_access_token = AsyncMock(return_value={})
    registry.create_client.return_value = client
    return registry


# ---------------------------------------------------------------------------
# App client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: IdentityStore, tokens: TokenService, limiter: RateLimiter, oauth: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test services into app.state so TestClient routes see isolated
    test DBs and counters instead of building them from Settings.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.tokens = tokens
        app.state.limiter = limiter
        app.state.oauth = oauth
        app.state.reconciler = ReconciliationEngine(store, tokens, default_role="user")
        yield

    return test_lifespan


@pytest.fixture()
def client(
    store: IdentityStore, tokens: TokenService, limiter: RateLimiter, oauth: MagicMock
) -> Generator[TestClient, None, None]:
    """TestClient over the real app.

    follow_redirects=False so OAuth tests can assert on Location headers.
    Tests that need tighter quotas replace app.state.limiter after startup.
    """
    app.router.lifespan_context = _patch_lifespan(store, tokens, limiter, oauth)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c
