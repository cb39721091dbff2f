"""
auth/oauth.py -- Authlib OAuth provider registry and profile normalization.

build_oauth_registry() registers only the providers with both client ID and
secret configured. get_enabled_providers() reports the same set so routes can
reject unknown provider names before redirecting anywhere.

Security notes:
  [H1] Only verified emails are trusted. The email is what the reconciliation
       engine matches accounts on, so an unverified address (GitHub lets a
       user add any address without confirming it) is reported as None.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. The session stores the state between the authorization
  redirect and the callback. For linking flows the state value is the caller's
  access token (see api/routes/v1/auth.py).

Supported providers:
  github   -- Authorization code flow; static endpoints.
  google   -- Authorization code flow; OIDC discovery.
  facebook -- Authorization code flow; Graph API.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProfile
from core.config import Settings, get_settings

logger = logging.getLogger("forge.auth.oauth")

_LABELS = {"github": "GitHub", "google": "Google", "facebook": "Facebook"}

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def _credentials(cfg: Settings, provider: str) -> tuple[str, str]:
    return getattr(cfg, f"{provider}_client_id"), getattr(cfg, f"{provider}_client_secret")


def build_oauth_registry(cfg: Settings) -> OAuth:
    """Create an authlib registry holding every configured provider."""
    oauth = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    client_id, client_secret = _credentials(cfg, "github")
    if client_id and client_secret:
        oauth.register(
            name="github",
            client_id=client_id,
            client_secret=client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    client_id, client_secret = _credentials(cfg, "google")
    if client_id and client_secret:
        oauth.register(
            name="google",
            client_id=client_id,
            client_secret=client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # Facebook -- Graph API
    client_id, client_secret = _credentials(cfg, "facebook")
    if client_id and client_secret:
        oauth.register(
            name="facebook",
            client_id=client_id,
            client_secret=client_secret,
            access_token_url="https://graph.facebook.com/v19.0/oauth/access_token",  # noqa: S106 -- URL
            authorize_url="https://www.facebook.com/v19.0/dialog/oauth",
            api_base_url="https://graph.facebook.com/v19.0/",
            client_kwargs={"scope": "email public_profile"},
        )
        logger.info("Facebook OAuth provider registered")

    return oauth


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    cfg = get_settings()
    providers: list[dict] = []
    for name, label in _LABELS.items():
        client_id, client_secret = _credentials(cfg, name)
        if client_id and client_secret:
            providers.append({"name": name, "label": label})
    return providers


def is_enabled_provider(provider: str) -> bool:
    return provider in {p["name"] for p in get_enabled_providers()}


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def fetch_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Build an OAuthProfile from a provider token response.

    Args:
        client:   The authlib OAuth client for this provider.
        provider: "github", "google", or "facebook".
        token:    The token dict returned by authlib after code exchange.

    Raises:
        ValueError: If the provider is unknown or returns no stable subject ID.
    """
    if provider == "github":
        return await _github_profile(client, token)
    elif provider == "google":
        return _google_profile(token)
    elif provider == "facebook":
        return await _facebook_profile(client, token)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _github_profile(client, token: dict) -> OAuthProfile:
    """GitHub needs two calls: GET /user for the ID, GET /user/emails for the
    primary verified address.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    if "id" not in profile:
        raise ValueError("GitHub OAuth: profile has no id")

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    return OAuthProfile(
        provider="github",
        provider_id=str(profile["id"]),
        email=email,
        display_name=profile.get("name") or profile.get("login") or "",
    )


def _google_profile(token: dict) -> OAuthProfile:
    """Google returns an id_token; authlib parses its claims into "userinfo"."""
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("sub"):
        raise ValueError("google OAuth: no userinfo in token response")

    email = userinfo.get("email") if userinfo.get("email_verified", False) else None
    return OAuthProfile(
        provider="google",
        provider_id=str(userinfo["sub"]),
        email=email,
        display_name=userinfo.get("name") or "",
    )


async def _facebook_profile(client, token: dict) -> OAuthProfile:
    # The Graph API only returns confirmed addresses; email is absent otherwise.
    resp = await client.get("me?fields=id,name,email", token=token)
    resp.raise_for_status()
    profile = resp.json()
    if "id" not in profile:
        raise ValueError("Facebook OAuth: profile has no id")
    return OAuthProfile(
        provider="facebook",
        provider_id=str(profile["id"]),
        email=profile.get("email"),
        display_name=profile.get("name") or "",
    )
