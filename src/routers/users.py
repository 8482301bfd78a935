# src/routers/users.py

from fastapi import APIRouter, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.core.config import RATE_LIMIT_ENABLED, RATE_LIMIT_DEFAULT
from src.core.models import UserCreate, UserUpdate, MeUpdate
from src.core.dependencies import (
    parse_body,
    get_acting_user,
    require_positive_id,
)
from src.services.users import (
    register_user,
    update_profile,
    get_profile_user,
    get_public_profile,
)

router = APIRouter(prefix="/api", tags=["users"])

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


@router.post("/users", status_code=201)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def create_user(request: Request):
    """Register a creator or customer."""
    body = await parse_body(request, UserCreate, "user")
    user = await register_user(body)
    return {"user": user}


@router.patch("/users/{user_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def patch_user(request: Request, user_id: int):
    """Partially update a user."""
    require_positive_id(user_id, "user id")
    body = await parse_body(request, UserUpdate, "user")
    await get_profile_user(user_id)
    user = await update_profile(user_id, body.to_update_dict())
    return {"user": user}


@router.get("/me")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_me(request: Request):
    """Current user."""
    user = await get_acting_user(request)
    return {"user": user}


@router.patch("/me")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def patch_me(request: Request):
    """Update the current user's name, photo or handle."""
    user = await get_acting_user(request)
    body = await parse_body(request, MeUpdate, "profile")
    updated = await update_profile(user["id"], body.to_update_dict())
    return {"user": updated}


@router.get("/u/{handle}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def public_profile(request: Request, handle: str):
    """Public page for a creator handle."""
    return await get_public_profile(handle)
