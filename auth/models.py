"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic beyond convenience
properties). Stores and routes do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Role:
    """A named permission bucket. Names are unique case-insensitively."""

    name: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class ProviderLink:
    """An edge recording that a user can authenticate via an external identity.

    (provider_name, provider_id) identifies exactly one local user, and a user
    holds at most one link per provider. Both are enforced by the store's
    unique constraints.
    """

    user_id: str
    provider_name: str  # "github", "google", "facebook"
    provider_id: str  # provider's stable user ID
    id: str | None = None
    created_at: str | None = None


@dataclass
class User:
    """Represents a principal.

    email is the identity key used to reconcile OAuth logins.
    hashed_password is None for OAuth-only users; such a user always holds at
    least one ProviderLink. deleted_at is set when the account is soft-deleted;
    soft-deleted users cannot authenticate.

    roles and providers are populated by the store when the user is loaded
    "with relations" and are empty lists otherwise.
    """

    email: str
    username: str
    id: str | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None
    roles: list[Role] = field(default_factory=list)
    providers: list[ProviderLink] = field(default_factory=list)

    @property
    def role_names(self) -> list[str]:
        return [r.name for r in self.roles]

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-independent view of an OAuth identity after code exchange.

    email is None when the provider did not return a verified address.
    """

    provider: str
    provider_id: str
    email: str | None
    display_name: str
