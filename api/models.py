"""
API request and response models for the Forge REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (accessToken, refreshToken, createdAt, ...). Handlers
may still construct models with snake_case names (populate_by_name=True), and
FastAPI serializes response_model output by alias.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Role, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9]+$"

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)
_RESPONSE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    model_config = _REQUEST_CONFIG

    email: EmailStr
    password: str = Field(min_length=8, max_length=128)


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register.

    role is optional; when omitted the configured default role is assigned.
    Which roles a caller may request is checked by the route, not here.
    """

    model_config = _REQUEST_CONFIG

    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    role: Optional[str] = Field(default=None, min_length=1, max_length=50)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""

    model_config = _REQUEST_CONFIG

    refresh_token: str = Field(min_length=1)


class UserCreate(BaseModel):
    """Request body for POST /api/users (admin only)."""

    model_config = _REQUEST_CONFIG

    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    role: Optional[str] = Field(default=None, min_length=1, max_length=50)


class UserUpdate(BaseModel):
    """Request body for PUT /api/users/{id}. Every field is optional."""

    model_config = _REQUEST_CONFIG

    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    role: Optional[str] = Field(default=None, min_length=1, max_length=50)


class RoleCreate(BaseModel):
    """Request body for POST /api/roles and PUT /api/roles/{id}."""

    model_config = _REQUEST_CONFIG

    name: str = Field(min_length=2, max_length=50)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        """Role names are stored lowercase; uniqueness is case-insensitive anyway."""
        return value.lower()


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPair(BaseModel):
    """Response for POST /auth/login."""

    model_config = _RESPONSE_CONFIG

    access_token: str
    refresh_token: str


class AccessTokenResponse(BaseModel):
    """Response for POST /auth/refresh."""

    model_config = _RESPONSE_CONFIG

    access_token: str


class RoleResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    id: str
    name: str
    created_at: Optional[str] = None

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(id=role.id, name=role.name, created_at=role.created_at)


class RoleDetailResponse(RoleResponse):
    """Response for GET /api/roles/{id}: the role plus usernames holding it."""

    users: list[str] = Field(default_factory=list)


class UserResponse(BaseModel):
    """Public view of a user. The password hash never leaves the store layer."""

    model_config = _RESPONSE_CONFIG

    id: str
    username: str
    email: str
    roles: list[str] = Field(default_factory=list)
    providers: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    deleted_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build a UserResponse from a store-loaded User (with relations)."""
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            roles=user.role_names,
            providers=[p.provider_name for p in user.providers],
            created_at=user.created_at,
            updated_at=user.updated_at,
            deleted_at=user.deleted_at,
        )


class RegisterResponse(BaseModel):
    """Response for POST /auth/register."""

    model_config = _RESPONSE_CONFIG

    access_token: str
    user: UserResponse


class RoleDeletedResponse(BaseModel):
    """Response for DELETE /api/roles/{id}."""

    model_config = _RESPONSE_CONFIG

    message: str
    detached_users: int


class MessageResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    message: str


class OAuthProviderInfo(BaseModel):
    """One entry in GET /auth/providers."""

    model_config = _RESPONSE_CONFIG

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
