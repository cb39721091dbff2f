"""
api/limiter.py -- Adaptive rate limiter.

Two families of policies share one counter store:

  Fixed-window IP policies, one per route class (generic traffic, login,
  registration, refresh, OAuth login, OAuth link, OAuth unlink). Applied with
  the limit_ip(policy) dependency before the handler runs.

  A role-derived policy keyed by user id. The quota comes from the
  highest-priority role the user holds (admin > user > default) and is
  applied by auth.dependencies.rate_limited() once the user is resolved.

An IP on the allow-list bypasses every policy. A rejected request raises
RateLimitError carrying the seconds left in the window; api/main.py turns
that into 429 + Retry-After. Nothing is retried server-side.

Counter store: any limits storage, injected into RateLimiter. memory:// is
process-local; pointing RATE_LIMIT_STORAGE_URI at e.g. redis:// shares the
counters across processes without code changes. This is the same engine
slowapi drives, used directly so one limiter can key by IP or by user id.

Atomicity: limits' memory storage increments under a lock but reads the new
value back outside it, so two threads racing on the same key can both see
the post-race count. hit() therefore runs under a striped lock keyed by
(policy, key), which makes check-and-increment exact within a process.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi import Request
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter
from slowapi.util import get_remote_address

from core.config import Settings
from core.errors import AuthorizationError, RateLimitError

logger = logging.getLogger("forge.api.limiter")

# Route-class policies keyed by client IP.
IP = "ip"
LOGIN = "login"
REGISTRATION = "registration"
REFRESH = "refresh"
OAUTH_LOGIN = "oauth_login"
OAUTH_LINK = "oauth_link"
OAUTH_UNLINK = "oauth_unlink"

IP_POLICIES = (IP, LOGIN, REGISTRATION, REFRESH, OAUTH_LOGIN, OAUTH_LINK, OAUTH_UNLINK)

# Highest priority first. Roles not listed here fall through to the default quota.
ROLE_PRIORITY = ("admin", "user")

_LOCK_STRIPES = 64


@dataclass(frozen=True)
class Quota:
    """limit requests per window seconds."""

    limit: int
    window: int

    def item(self) -> RateLimitItem:
        return RateLimitItemPerSecond(self.limit, self.window)


class RateLimiter:
    """Per-key fixed-window counters over an injected limits Storage.

    Usage:
        limiter = RateLimiter.from_settings(get_settings())
        limiter.check_ip("login", "203.0.113.7")          # raises RateLimitError
        limiter.check_roles(user_id, ["admin"], ip=...)   # role-derived quota
    """

    def __init__(
        self,
        storage: Storage,
        policies: dict[str, Quota],
        role_quotas: dict[str, Quota],
        default_quota: Quota,
        allowlist: Iterable[str] = (),
    ) -> None:
        self.storage = storage
        self._strategy = FixedWindowRateLimiter(storage)
        self._policies = {name: quota.item() for name, quota in policies.items()}
        self._roles = {name.lower(): quota.item() for name, quota in role_quotas.items()}
        self._default = default_quota.item()
        self.allowlist = frozenset(allowlist)
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @classmethod
    def from_settings(cls, cfg: Settings, storage: Storage | None = None) -> RateLimiter:
        return cls(
            storage=storage if storage is not None else storage_from_string(cfg.rate_limit_storage_uri),
            policies={
                name: Quota(getattr(cfg, f"{name}_rate_limit"), getattr(cfg, f"{name}_rate_window"))
                for name in IP_POLICIES
            },
            role_quotas={
                "admin": Quota(cfg.admin_rate_limit, cfg.admin_rate_window),
                "user": Quota(cfg.user_rate_limit, cfg.user_rate_window),
            },
            default_quota=Quota(cfg.default_rate_limit, cfg.default_rate_window),
            allowlist=cfg.rate_limit_allowlist,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check(self, policy: str, key: str) -> None:
        """Count one request for key under policy; raise RateLimitError past the ceiling."""
        self._hit(self._policies[policy], policy, key)

    def check_ip(self, policy: str, ip: str) -> None:
        if ip in self.allowlist:
            return
        self.check(policy, ip)

    def role_for(self, role_names: Iterable[str]) -> str | None:
        """Return the highest-priority known role, or None for the default quota."""
        held = {r.lower() for r in role_names}
        for role in ROLE_PRIORITY:
            if role in held and role in self._roles:
                return role
        return None

    def check_roles(self, user_id: str, role_names: Iterable[str], ip: str | None = None) -> None:
        """Apply the role-derived quota to an authenticated user.

        A user without any role is refused outright (403) rather than being
        given the default quota.
        """
        if ip is not None and ip in self.allowlist:
            return
        role_names = list(role_names)
        if not role_names:
            logger.info("Rate limiter refused user %s: no roles assigned", user_id)
            raise AuthorizationError("Access denied: User has no roles assigned.")
        role = self.role_for(role_names)
        item = self._roles[role] if role is not None else self._default
        self._hit(item, f"role:{role or 'default'}", user_id)

    def _hit(self, item: RateLimitItem, policy: str, key: str) -> None:
        with self._locks[hash((policy, key)) % _LOCK_STRIPES]:
            allowed = self._strategy.hit(item, policy, key)
        if allowed:
            return
        reset_time, _remaining = self._strategy.get_window_stats(item, policy, key)
        retry_after = max(1, math.ceil(reset_time - time.time()))
        logger.warning("Rate limit %s exceeded for %s (retry in %ds)", policy, key, retry_after)
        raise RateLimitError(retry_after=retry_after)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def limit_ip(policy: str) -> Callable[[Request], None]:
    """Build a dependency applying an IP-keyed policy.

    Use on a route or router:
        @router.post("/auth/login", dependencies=[Depends(limit_ip(LOGIN))])
    """

    def dependency(request: Request) -> None:
        request.app.state.limiter.check_ip(policy, get_remote_address(request))

    return dependency
