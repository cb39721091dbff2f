"""
api/routes/v1/roles.py -- Role administration endpoints (admin only).

Routes (mounted under /api):
  POST   /roles        -- create; 409 if the name exists in any letter case
  GET    /roles        -- list
  GET    /roles/{id}   -- one role with the usernames holding it
  PUT    /roles/{id}   -- rename
  DELETE /roles/{id}   -- delete; users holding it are detached first

The default role cannot be renamed or deleted: OAuth registration and
POST /auth/register depend on it existing.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.limiter import IP, limit_ip
from api.models import RoleCreate, RoleDeletedResponse, RoleDetailResponse, RoleResponse
from auth.dependencies import AuthContext, require_roles
from auth.store import ConstraintViolation, IdentityStore
from core.config import get_settings
from core.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger("forge.api.roles")

router = APIRouter(dependencies=[Depends(limit_ip(IP))])

_admin = require_roles("admin")


def _store(request: Request) -> IdentityStore:
    return request.app.state.user_store


def _guard_default_role(store: IdentityStore, role_id: str) -> None:
    role = store.find_role_by_id(role_id)
    if role is None:
        raise NotFoundError("Role not found.")
    if role.name.lower() == get_settings().default_role.lower():
        raise ValidationError("The default role cannot be renamed or deleted.")


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, ctx: AuthContext = Depends(_admin)) -> RoleResponse:
    try:
        role = _store(request).create_role(body.name)
    except ConstraintViolation as exc:
        raise ConflictError("Role name already exists.") from exc
    logger.info("Admin %s created role %s", ctx.user_id, role.name)
    return RoleResponse.from_role(role)


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, ctx: AuthContext = Depends(_admin)) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in _store(request).list_roles()]


@router.get("/roles/{role_id}", response_model=RoleDetailResponse)
def get_role(request: Request, role_id: str, ctx: AuthContext = Depends(_admin)) -> RoleDetailResponse:
    store = _store(request)
    role = store.find_role_by_id(role_id)
    if role is None:
        raise NotFoundError("Role not found.")
    members = store.list_role_members(role_id)
    return RoleDetailResponse(
        id=role.id,
        name=role.name,
        created_at=role.created_at,
        users=[u.username for u in members],
    )


@router.put("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request, role_id: str, body: RoleCreate, ctx: AuthContext = Depends(_admin)
) -> RoleResponse:
    store = _store(request)
    _guard_default_role(store, role_id)
    try:
        role = store.update_role(role_id, body.name)
    except ConstraintViolation as exc:
        raise ConflictError("Role name already exists.") from exc
    if role is None:
        raise NotFoundError("Role not found.")
    logger.info("Admin %s renamed role %s to %s", ctx.user_id, role_id, role.name)
    return RoleResponse.from_role(role)


@router.delete("/roles/{role_id}", response_model=RoleDeletedResponse)
def delete_role(request: Request, role_id: str, ctx: AuthContext = Depends(_admin)) -> RoleDeletedResponse:
    store = _store(request)
    _guard_default_role(store, role_id)
    detached = store.delete_role(role_id)
    if detached is None:
        raise NotFoundError("Role not found.")
    logger.info("Admin %s deleted role %s (%d users detached)", ctx.user_id, role_id, detached)
    return RoleDeletedResponse(message="Role deleted successfully.", detached_users=detached)
