"""
api/routes/v1/users.py -- User administration endpoints.

Routes (mounted under /api):
  GET    /users                   -- list active users (admin)
  GET    /users/all               -- list users including soft-deleted (admin)
  GET    /users/all/{id}          -- one user including soft-deleted (admin)
  GET    /users/{id}              -- one active user (admin, user)
  POST   /users                   -- create a password user (admin)
  PUT    /users/{id}              -- update a user (admin: anyone; user: self only)
  DELETE /users/{id}              -- soft delete (admin)
  PUT    /users/{id}/restore      -- undo a soft delete (admin)
  DELETE /users/{id}/permanently  -- hard delete with links and role assignments (admin)

Every route runs the full protected chain through require_roles():
authentication, the role-derived rate limit, then the role gate.

Security:
  [M4] A caller can never change their own roles, admin or not.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.limiter import IP, limit_ip
from api.models import MessageResponse, UserCreate, UserResponse, UserUpdate
from auth.dependencies import AuthContext, require_roles
from auth.models import User
from auth.store import ConstraintViolation, IdentityStore
from auth.tokens import hash_password
from core.config import get_settings
from core.errors import AuthorizationError, ConflictError, NotFoundError, UnexpectedError, ValidationError

logger = logging.getLogger("forge.api.users")

router = APIRouter(dependencies=[Depends(limit_ip(IP))])

_USER_NOT_FOUND = "User not found."


def _store(request: Request) -> IdentityStore:
    return request.app.state.user_store


def _get_or_404(store: IdentityStore, user_id: str, include_deleted: bool = False) -> User:
    user = store.find_user_by_id(user_id, include_deleted=include_deleted)
    if user is None:
        logger.info("User %s not found (include_deleted=%s)", user_id, include_deleted)
        raise NotFoundError(_USER_NOT_FOUND)
    return user


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, ctx: AuthContext = Depends(require_roles("admin"))) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in _store(request).list_users()]


@router.get("/users/all", response_model=list[UserResponse])
def list_all_users(request: Request, ctx: AuthContext = Depends(require_roles("admin"))) -> list[UserResponse]:
    """Like GET /users but soft-deleted accounts are included."""
    return [UserResponse.from_user(u) for u in _store(request).list_users(include_deleted=True)]


@router.get("/users/all/{user_id}", response_model=UserResponse)
def get_any_user(
    request: Request, user_id: str, ctx: AuthContext = Depends(require_roles("admin"))
) -> UserResponse:
    return UserResponse.from_user(_get_or_404(_store(request), user_id, include_deleted=True))


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request, user_id: str, ctx: AuthContext = Depends(require_roles("admin", "user"))
) -> UserResponse:
    return UserResponse.from_user(_get_or_404(_store(request), user_id))


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request, body: UserCreate, ctx: AuthContext = Depends(require_roles("admin"))
) -> UserResponse:
    """Create a password account. role defaults to DEFAULT_ROLE."""
    store = _store(request)
    role_name = body.role or get_settings().default_role
    role = store.find_role_by_name(role_name)
    if role is None:
        if body.role is None:
            logger.error("Default role %r not found", role_name)
            raise UnexpectedError()
        raise NotFoundError("Role does not exist.")

    if store.find_user_by_email(body.email) is not None:
        raise ConflictError("User already exists with provided email address.")
    try:
        user_id = store.create_user(
            User(email=body.email, username=body.username, hashed_password=hash_password(body.password)),
            role_ids=[role.id],
        )
    except ConstraintViolation as exc:
        raise ConflictError("User already exists with provided email address.") from exc

    logger.info("Admin %s created user %s with role %s", ctx.user_id, user_id, role.name)
    return UserResponse.from_user(_get_or_404(store, user_id))


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    ctx: AuthContext = Depends(require_roles("admin", "user")),
) -> UserResponse:
    """Update profile fields, password and (admins only, never on self) roles.

    A role in the body is added to the target's roles; existing roles are kept.
    """
    store = _store(request)
    target = _get_or_404(store, user_id)
    is_admin = ctx.has_role("admin")
    is_self = target.id == ctx.user_id

    if not is_admin and not is_self:
        logger.info("User %s tried to update user %s without permission", ctx.user_id, user_id)
        raise AuthorizationError(
            "You do not have permission to update this user. Please contact an admin for additional help."
        )

    role = None
    if body.role is not None:
        if is_self:
            logger.info("User %s tried to update their own role", ctx.user_id)
            raise AuthorizationError("Self role update is not allowed.")
        role = store.find_role_by_name(body.role)
        if role is None:
            raise NotFoundError("Role does not exist.")

    updates: dict = {}
    if body.username is not None:
        updates["username"] = body.username
    if body.email is not None:
        updates["email"] = body.email
    if body.password is not None:
        updates["hashed_password"] = hash_password(body.password)

    if not updates and role is None:
        raise ValidationError("No fields to update.")

    try:
        if updates:
            store.update_user(user_id, **updates)
        if role is not None and store.find_user_role(user_id, role.id) is None:
            store.create_user_role(user_id, role.id)
    except ConstraintViolation as exc:
        raise ConflictError("User already exists with provided email address.") from exc

    logger.info("User %s updated user %s (%s)", ctx.user_id, user_id, ", ".join(sorted(updates)) or "roles")
    return UserResponse.from_user(_get_or_404(store, user_id))


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request, user_id: str, ctx: AuthContext = Depends(require_roles("admin"))
) -> MessageResponse:
    store = _store(request)
    user = _get_or_404(store, user_id, include_deleted=True)
    if user.is_deleted:
        raise ValidationError("User is already deleted.")
    store.soft_delete_user(user_id)
    logger.info("Admin %s soft-deleted user %s", ctx.user_id, user_id)
    return MessageResponse(message="User deleted successfully.")


@router.put("/users/{user_id}/restore", response_model=MessageResponse)
def restore_user(
    request: Request, user_id: str, ctx: AuthContext = Depends(require_roles("admin"))
) -> MessageResponse:
    store = _store(request)
    user = _get_or_404(store, user_id, include_deleted=True)
    if not user.is_deleted:
        raise ValidationError("User is not soft-deleted.")
    store.restore_user(user_id)
    logger.info("Admin %s restored user %s", ctx.user_id, user_id)
    return MessageResponse(message="User restored successfully.")


@router.delete("/users/{user_id}/permanently", response_model=MessageResponse)
def permanently_delete_user(
    request: Request, user_id: str, ctx: AuthContext = Depends(require_roles("admin"))
) -> MessageResponse:
    if not _store(request).hard_delete_user(user_id):
        raise NotFoundError(_USER_NOT_FOUND)
    logger.info("Admin %s permanently deleted user %s", ctx.user_id, user_id)
    return MessageResponse(message="User permanently deleted successfully.")
