"""
auth/dependencies.py -- FastAPI Depends() helpers for the protected-route chain.

A protected route runs, in order:
  1. authenticate()    -- Bearer access token -> AuthContext (user + roles)
  2. rate_limited()    -- role-derived quota keyed by user id
  3. require_roles()   -- role authorization gate
and receives the AuthContext as a plain argument. Nothing is attached to the
request object; each stage gets the context from the one before it through
FastAPI's dependency graph (which also caches authenticate() per request).

Every authentication failure produces the same client-facing 401. The
specific reason (missing header, expired, bad signature, deleted user...) is
logged server-side only, so the API is not an oracle on token structure.

Layer rule: no imports from api/. The rate limiter is reached through
request.app.state.limiter, the same way the store is.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi import Depends, Request

from auth.models import User
from core.errors import AuthenticationError, AuthorizationError

logger = logging.getLogger("forge.auth")

_UNAUTHORIZED = "Unauthorized, please log in."


@dataclass(frozen=True)
class AuthContext:
    """Request-scoped result of authentication, passed to downstream stages."""

    user: User
    role_names: tuple[str, ...]
    client_ip: str | None = None

    @property
    def user_id(self) -> str:
        return self.user.id

    def has_role(self, name: str) -> bool:
        return name.lower() in {r.lower() for r in self.role_names}


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def authenticate(request: Request) -> AuthContext:
    """Resolve the Bearer access token into an AuthContext or raise 401."""
    token = _bearer_token(request)
    if token is None:
        logger.warning("Unauthorized access: no bearer token on %s", request.url.path)
        raise AuthenticationError(_UNAUTHORIZED)

    check = request.app.state.tokens.verify_access(token)
    if not check.ok:
        logger.warning("Access token rejected on %s: %s", request.url.path, check.failure.value)
        raise AuthenticationError(_UNAUTHORIZED)

    user = request.app.state.user_store.find_user_by_id(check.subject)
    if user is None:
        # Deleted (soft or hard) after the token was issued.
        logger.warning("Token subject %s not found or deleted", check.subject)
        raise AuthenticationError(_UNAUTHORIZED)

    return AuthContext(
        user=user,
        role_names=tuple(user.role_names),
        client_ip=request.client.host if request.client else None,
    )


def rate_limited(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
    """Apply the role-derived rate-limit policy to an authenticated request."""
    request.app.state.limiter.check_roles(ctx.user_id, ctx.role_names, ip=ctx.client_ip)
    return ctx


def allow(required_roles: Iterable[str], user_roles: Iterable[str]) -> bool:
    """Role authorization gate.

    A user without roles is always denied, even where no specific role is
    required. Otherwise an empty requirement allows any user, and a non-empty
    one needs at least one role in common (case-insensitive).
    """
    held = {r.lower() for r in user_roles}
    if not held:
        return False
    required = {r.lower() for r in required_roles}
    if not required:
        return True
    return bool(required & held)


def require_roles(*roles: str) -> Callable[..., AuthContext]:
    """Build a dependency running the full protected chain for the given roles.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        def route(ctx: AuthContext = Depends(require_roles("admin"))): ...
    """

    def dependency(ctx: AuthContext = Depends(rate_limited)) -> AuthContext:
        if not allow(roles, ctx.role_names):
            if not ctx.role_names:
                logger.info("Access denied: user %s has no roles assigned", ctx.user_id)
            else:
                logger.info("Access denied: user %s has insufficient permissions", ctx.user_id)
            raise AuthorizationError("Access denied.")
        logger.debug("User %s authorized with roles: %s", ctx.user_id, ", ".join(ctx.role_names))
        return ctx

    return dependency
