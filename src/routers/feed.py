# src/routers/feed.py

from fastapi import APIRouter, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.core.config import RATE_LIMIT_ENABLED, RATE_LIMIT_DEFAULT
from src.core.models import EventCreate
from src.core.dependencies import parse_body, require_positive_id
from src.services.feed import get_inbox, get_profile, get_kfactor, record_event

router = APIRouter(prefix="/api", tags=["feed"])

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


@router.get("/inbox/{user_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def inbox(request: Request, user_id: int):
    """Events addressed to a user."""
    require_positive_id(user_id, "user id")
    events = await get_inbox(user_id)
    return {"events": events}


@router.get("/profile/{user_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def profile(request: Request, user_id: int):
    """Creator profile with score and offers."""
    require_positive_id(user_id, "user id")
    return await get_profile(user_id)


@router.get("/metrics/kfactor/{user_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def kfactor(request: Request, user_id: int):
    """Referral k-factor for a user."""
    require_positive_id(user_id, "user id")
    return await get_kfactor(user_id)


@router.post("/events")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def post_event(request: Request):
    """Record a client-side event such as an offer view."""
    body = await parse_body(request, EventCreate, "event")
    await record_event(body.user_id, body.type, body.ref_id, body.metadata)
    return {"ok": True}
