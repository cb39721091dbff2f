"""
api/routes/v1/auth.py -- Authentication endpoints.

Routes:
  POST   /auth/login                  -- password login; access + refresh token
  POST   /auth/register               -- create a password account; 201
  POST   /auth/refresh                -- refresh token -> new access token
  GET    /auth/providers              -- list enabled OAuth providers (public)
  GET    /auth/me                     -- current user info (requires auth)
  GET    /auth/{provider}             -- start OAuth login, or linking with ?linking=true&token=...
  GET    /auth/{provider}/callback    -- finish OAuth; 302 to FRONTEND_URL?token=...&user=...
  DELETE /auth/unlink/{provider}      -- remove a provider link (requires auth)

Security:
  [H2] Every route is behind the generic IP policy (router dependency) plus
       the policy for its route class (login, registration, refresh,
       oauth_login, oauth_link, oauth_unlink).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a token.
  [L1] Linking state: the caller's access token travels as the OAuth state.
       The redirect also stores it in the signed session under a per-provider
       marker. The callback treats the returned state as a linking token only
       when it matches that marker, so an ordinary login (where authlib picks a
       random state) is never mistaken for a linking attempt.
"""

from __future__ import annotations

import json
import logging
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from api.limiter import IP, LOGIN, OAUTH_LINK, OAUTH_LOGIN, OAUTH_UNLINK, REFRESH, REGISTRATION, limit_ip
from api.models import (
    AccessTokenResponse,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPair,
    UserResponse,
)
from auth.dependencies import AuthContext, authenticate
from auth.models import User
from auth.oauth import fetch_oauth_profile, get_enabled_providers, is_enabled_provider
from auth.reconcile import LinkResult, ReconcileError
from auth.store import ConstraintViolation, IdentityStore
from auth.tokens import authenticate_user, hash_password
from core.config import get_settings
from core.errors import AuthenticationError, ConflictError, UnexpectedError, ValidationError

logger = logging.getLogger("forge.api.auth")

# Auth policy:
# - POST   /auth/login, /auth/register, /auth/refresh:  public
# - GET    /auth/providers:                            public -- login page renders buttons from it
# - GET    /auth/{provider}, /auth/{provider}/callback: public; linking needs a valid access token
# - GET    /auth/me:                                   requires auth (authenticate)
# - DELETE /auth/unlink/{provider}:                    requires auth (authenticate)
router = APIRouter(dependencies=[Depends(limit_ip(IP))])

_BAD_CREDENTIALS = "Invalid email or password."
_OAUTH_FAILED = "OAuth authentication failed."


def _link_marker(provider: str) -> str:
    return f"forge_link_{provider}"


def _require_provider(provider: str) -> None:
    if not is_enabled_provider(provider):
        logger.warning("Rejected request for unsupported OAuth provider %r", provider)
        raise ValidationError(f"Unsupported OAuth provider: {provider}")


# ---------------------------------------------------------------------------
# Password authentication
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenPair, dependencies=[Depends(limit_ip(LOGIN))])
def login(request: Request, body: LoginRequest, response: Response) -> TokenPair:
    """Authenticate with email and password; return an access/refresh pair.

    The same 401 is returned for an unknown email, an OAuth-only account and a
    wrong password, so the endpoint does not reveal which emails are
    registered [C1].
    """
    user_store: IdentityStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        logger.info("Failed login attempt from %s", get_remote_address(request))
        raise AuthenticationError(_BAD_CREDENTIALS)

    tokens = request.app.state.tokens
    response.headers["Cache-Control"] = "no-store"  # [M5]
    logger.info("User %s logged in", user.id)
    return TokenPair(access_token=tokens.issue_access(user.id), refresh_token=tokens.issue_refresh(user.id))


@router.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(limit_ip(REGISTRATION))],
)
def register(request: Request, body: RegisterRequest, response: Response) -> RegisterResponse:
    """Create a password account with one role and return an access token.

    A caller may only request one of REGISTRATION_ROLES; anything else is a
    400 rather than a silent downgrade.
    """
    cfg = get_settings()
    user_store: IdentityStore = request.app.state.user_store

    role_name = body.role or cfg.default_role
    if body.role is not None and body.role.lower() not in {r.lower() for r in cfg.registration_roles}:
        raise ValidationError(f"Role '{body.role}' cannot be chosen at registration.")
    role = user_store.find_role_by_name(role_name)
    if role is None:
        logger.error("Registration role %r not found", role_name)
        raise UnexpectedError()

    if user_store.find_user_by_email(body.email) is not None:
        raise ConflictError("User already exists with provided email address.")

    try:
        user_id = user_store.create_user(
            User(email=body.email, username=body.username, hashed_password=hash_password(body.password)),
            role_ids=[role.id],
        )
    except ConstraintViolation as exc:
        # Lost a race against a concurrent registration for the same email.
        raise ConflictError("User already exists with provided email address.") from exc

    created = user_store.find_user_by_id(user_id)
    logger.info("New user %s registered with role %s", user_id, role.name)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return RegisterResponse(
        access_token=request.app.state.tokens.issue_access(user_id),
        user=UserResponse.from_user(created),
    )


@router.post("/auth/refresh", response_model=AccessTokenResponse, dependencies=[Depends(limit_ip(REFRESH))])
def refresh(request: Request, body: RefreshRequest, response: Response) -> AccessTokenResponse:
    """Exchange a refresh token for a new access token.

    The refresh token itself is not rotated; it stays valid until it expires.
    """
    tokens = request.app.state.tokens
    check = tokens.verify_refresh(body.refresh_token)
    if not check.ok:
        logger.warning("Refresh token rejected: %s", check.failure.value)
        raise AuthenticationError("Invalid or expired refresh token.")

    user = request.app.state.user_store.find_user_by_id(check.subject)
    if user is None:
        logger.warning("Refresh token subject %s not found or deleted", check.subject)
        raise AuthenticationError("Invalid or expired refresh token.")

    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AccessTokenResponse(access_token=tokens.issue_access(user.id))


# ---------------------------------------------------------------------------
# Session introspection
#
# Registered before /auth/{provider} so "providers" and "me" are not taken
# as provider names.
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers; empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/me", response_model=UserResponse)
def me(ctx: AuthContext = Depends(authenticate)) -> UserResponse:
    """Return the authenticated user with roles and linked providers."""
    return UserResponse.from_user(ctx.user)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _oauth_start_limit(request: Request, linking: bool = False) -> None:
    policy = OAUTH_LINK if linking else OAUTH_LOGIN
    request.app.state.limiter.check_ip(policy, get_remote_address(request))


@router.get("/auth/{provider}", dependencies=[Depends(_oauth_start_limit)])
async def oauth_start(request: Request, provider: str, linking: bool = False, token: str | None = None):
    """Redirect the browser to the provider's authorization page.

    With ?linking=true&token=<access token>, the flow links the provider to
    the token's user instead of logging in [L1]. The token is checked here
    so a bad one fails before the user is sent to the provider.
    """
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    marker = _link_marker(provider)
    request.session.pop(marker, None)

    if not linking:
        return await client.authorize_redirect(request, redirect_uri)

    if not token:
        raise AuthenticationError("A valid access token is required to link a provider.")
    check = request.app.state.tokens.verify_access(token)
    if not check.ok:
        logger.warning("Linking start for %s rejected: %s", provider, check.failure.value)
        raise AuthenticationError("Invalid or expired token.")

    logger.info("User %s started linking provider %s", check.subject, provider)
    request.session[marker] = token
    return await client.authorize_redirect(request, redirect_uri, state=token)


@router.get("/auth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the OAuth flow and hand a session token to the frontend.

    Flow:
      1. Exchange the authorization code (authlib checks state against the session).
      2. Normalize the provider profile; only verified emails survive [H1].
      3. Decide login / registration / linking in the reconciliation engine.
      4. Redirect to FRONTEND_URL?token=...&user={"id","username"}.
    Refusals from step 3 are returned as the JSON error envelope.
    """
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc.error)
        raise AuthenticationError(_OAUTH_FAILED) from exc

    try:
        profile = await fetch_oauth_profile(client, provider, token)
    except (ValueError, httpx.HTTPError) as exc:
        logger.warning("OAuth profile fetch failed for provider %r: %s", provider, exc)
        raise AuthenticationError(_OAUTH_FAILED) from exc

    state = request.query_params.get("state")
    marker = request.session.pop(_link_marker(provider), None)
    linking_token = state if marker is not None and marker == state else None

    outcome = await run_in_threadpool(request.app.state.reconciler.reconcile, profile, linking_token)
    if isinstance(outcome, ReconcileError):
        if outcome.reason:
            logger.info("Reconciliation refused (%s): %s", outcome.reason, outcome.message)
        raise outcome.error

    if isinstance(outcome, LinkResult):
        session_token = outcome.session_token
    else:
        session_token = request.app.state.tokens.issue_access(outcome.user.id)

    user_json = json.dumps({"id": outcome.user.id, "username": outcome.user.username}, separators=(",", ":"))
    query = urlencode({"token": session_token, "user": user_json})
    resp = RedirectResponse(f"{get_settings().frontend_url}?{query}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.delete(
    "/auth/unlink/{provider}",
    response_model=MessageResponse,
    dependencies=[Depends(limit_ip(OAUTH_UNLINK))],
)
def unlink_provider(request: Request, provider: str, ctx: AuthContext = Depends(authenticate)) -> MessageResponse:
    """Remove the caller's link to provider.

    Refused with 400 when it is the caller's last way to sign in (no password
    and no other provider); 404 when no such link exists.
    """
    request.app.state.reconciler.unlink(ctx.user, provider)
    return MessageResponse(message=f"{provider} account unlinked successfully.")
