"""
api/routes/v1/protected.py -- Protected landing route.

GET /api/ accepts any authenticated user who holds at least one role. It
exists so clients can check that their token, rate-limit budget and roles
all pass the protected chain without touching any data.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.limiter import IP, limit_ip
from auth.dependencies import AuthContext, require_roles

router = APIRouter(dependencies=[Depends(limit_ip(IP))])


@router.get("/")
def welcome(ctx: AuthContext = Depends(require_roles())) -> dict:
    return {
        "message": f"Welcome to the secret club, {ctx.user.username}!",
        "userinfo": {"id": ctx.user_id, "username": ctx.user.username},
    }
