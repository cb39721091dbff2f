"""
auth/reconcile.py -- OAuth reconciliation engine.

Decides what a verified OAuth profile means for the local identity graph:
log an existing user in, register a new user, or link the provider to the
user who started the flow. The decision is returned as a tagged outcome
(LoginResult | LinkResult | ReconcileError) instead of being raised, so the
callback route maps it to a response in exactly one place.

Decision procedure, evaluated in order:

  1. Linking token present (the caller started the flow while logged in):
       token must verify against the access secret           else 401
       referenced user must exist and not be deleted          else 404
       user must not already have a link for this provider    else 409
       OAuth email must equal the user's stored email         else 409
     then the link is created and the linking token is handed back as the
     session token, so a mid-session link does not rotate the session.

  2. No linking token:
       profile must carry a verified email                    else 400
       email unknown            -> create user + link + default role
       email known, linked      -> login
       email known, not linked  -> 409 -- never auto-merge by email

Cross-account merging is never done, even for a plausible same-human match:
merging on email alone would let anyone who controls a provider account with
a matching email take over an unrelated password account.

Concurrency: the existence checks are not locked. Two concurrent requests can
both pass them; the store's unique constraints then reject the loser, and the
resulting ConstraintViolation is reported as 409 like the friendly path.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from auth.models import OAuthProfile, ProviderLink, User
from auth.store import ConstraintViolation, IdentityStore
from auth.tokens import TokenService
from core.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServiceError,
    UnexpectedError,
    ValidationError,
)

logger = logging.getLogger("forge.auth.reconcile")

EMAIL_NOT_LINKED = "An account exists with this email, but this provider is not linked."
LAST_METHOD = "cannot unlink the last authentication method"

# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginResult:
    """The profile belongs to user. created is True for a fresh registration."""

    user: User
    created: bool = False


@dataclass(frozen=True)
class LinkResult:
    """The provider was linked to user; session_token is the linking token."""

    user: User
    session_token: str


@dataclass(frozen=True)
class ReconcileError:
    """A refused reconciliation. reason is a log-only detail, never sent to clients."""

    error: ServiceError
    reason: str = ""

    @property
    def status_code(self) -> int:
        return self.error.status_code

    @property
    def message(self) -> str:
        return self.error.message


ReconcileOutcome = Union[LoginResult, LinkResult, ReconcileError]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Stateless decision logic over an IdentityStore.

    Usage:
        engine = ReconciliationEngine(store, tokens, default_role="user")
        outcome = engine.reconcile(profile, linking_token=state_or_none)
    """

    def __init__(self, store: IdentityStore, tokens: TokenService, default_role: str = "user") -> None:
        self.store = store
        self.tokens = tokens
        self.default_role = default_role

    def reconcile(self, profile: OAuthProfile, linking_token: str | None = None) -> ReconcileOutcome:
        logger.info("Reconciling %s identity (linking=%s)", profile.provider, bool(linking_token))
        if linking_token:
            return self._link(profile, linking_token)
        return self._login_or_register(profile)

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    def _link(self, profile: OAuthProfile, linking_token: str) -> ReconcileOutcome:
        check = self.tokens.verify_access(linking_token)
        if not check.ok:
            logger.warning("Rejected linking token during %s callback: %s", profile.provider, check.failure.value)
            return ReconcileError(
                AuthenticationError("Invalid or expired linking token."),
                reason=check.failure.value,
            )

        user_id = check.subject
        user = self.store.find_user_by_id(user_id)
        if user is None:
            logger.warning("Linking requested for unknown user %s", user_id)
            return ReconcileError(NotFoundError("User not found."))

        if self.store.find_provider_link(user.id, profile.provider) is not None:
            logger.warning("User %s tried to link an already linked provider: %s", user.id, profile.provider)
            return ReconcileError(ConflictError("This provider is already linked to your account."))

        if profile.email is None or profile.email.strip().lower() != user.email:
            logger.warning("User %s tried to link a %s account with a different email", user.id, profile.provider)
            return ReconcileError(
                ConflictError(
                    "The OAuth account that you are trying to link has a different email than your account."
                )
            )

        try:
            self.store.create_provider_link(
                ProviderLink(user_id=user.id, provider_name=profile.provider, provider_id=profile.provider_id)
            )
        except ConstraintViolation:
            logger.warning("Link %s -> %s lost a uniqueness race or identity is taken", profile.provider, user.id)
            return ReconcileError(ConflictError("This provider account is already linked."))

        logger.info("User %s successfully linked provider: %s", user.id, profile.provider)
        return LinkResult(user=self.store.find_user_by_id(user.id), session_token=linking_token)

    # ------------------------------------------------------------------
    # Login / registration
    # ------------------------------------------------------------------

    def _login_or_register(self, profile: OAuthProfile) -> ReconcileOutcome:
        if not profile.email:
            logger.warning("%s profile %s has no verified email", profile.provider, profile.provider_id)
            return ReconcileError(ValidationError("The provider did not return a verified email address."))

        user = self.store.find_user_by_email(profile.email)
        if user is None:
            return self._register(profile)

        link = next((p for p in user.providers if p.provider_name == profile.provider), None)
        if link is None:
            logger.warning("Email conflict during %s authentication for user %s", profile.provider, user.id)
            return ReconcileError(ConflictError(EMAIL_NOT_LINKED))
        if link.provider_id != profile.provider_id:
            logger.warning("User %s is linked to a different %s identity", user.id, profile.provider)
            return ReconcileError(ConflictError("This provider is linked to a different account."))
        if user.is_deleted:
            logger.warning("OAuth login refused for deleted user %s", user.id)
            return ReconcileError(AuthenticationError("Account is disabled."))

        logger.info("OAuth login successful for user: %s", user.id)
        return LoginResult(user=user)

    def _register(self, profile: OAuthProfile) -> ReconcileOutcome:
        role = self.store.find_role_by_name(self.default_role)
        if role is None:
            # Checked at startup; reaching this means the role was deleted since.
            logger.error("Default role %r not found", self.default_role)
            return ReconcileError(UnexpectedError(), reason="default_role_missing")

        username = profile.display_name or profile.email.split("@", 1)[0]
        try:
            user_id = self.store.create_user(
                User(email=profile.email, username=username),
                role_ids=[role.id],
                provider=(profile.provider, profile.provider_id),
            )
        except ConstraintViolation:
            logger.warning("Concurrent %s registration for the same identity", profile.provider)
            return ReconcileError(ConflictError("An account with this email or provider identity already exists."))

        logger.info("New user %s created via OAuth with provider: %s, role: %s", user_id, profile.provider, role.name)
        return LoginResult(user=self.store.find_user_by_id(user_id), created=True)

    # ------------------------------------------------------------------
    # Unlinking
    # ------------------------------------------------------------------

    def unlink(self, user: User, provider: str) -> None:
        """Remove user's link to provider.

        Raises NotFoundError if no such link exists and ValidationError if the
        link is the user's last way to authenticate (no password, no other
        provider).
        """
        link = self.store.find_provider_link(user.id, provider)
        if link is None:
            raise NotFoundError(f"No linked {provider} account found for this user.")

        others = self.store.count_provider_links(user.id, excluding_provider=provider)
        if user.hashed_password is None and others == 0:
            logger.info("User %s tried to unlink their last authentication method (%s)", user.id, provider)
            raise ValidationError(LAST_METHOD)

        self.store.delete_provider_link(link.id)
        logger.info("User %s unlinked provider: %s", user.id, provider)
