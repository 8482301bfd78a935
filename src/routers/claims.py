# src/routers/claims.py

import logging
from fastapi import APIRouter, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.core.config import RATE_LIMIT_ENABLED, RATE_LIMIT_DEFAULT, RATE_LIMIT_CLAIM
from src.core.models import ClaimCreate, ClaimReference, SessionInitRequest
from src.core.dependencies import (
    parse_body,
    get_acting_user,
    require_positive_id,
)
from src.services.claims import create_claim
from src.services.redemptions import redeem, create_redemption
from src.services.sessions import init_session, list_sessions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["claims"])

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


@router.post("/claims", status_code=201)
@limiter.limit(RATE_LIMIT_CLAIM)
async def create_claim_endpoint(request: Request):
    """Claim an offer, optionally against a slot."""
    body = await parse_body(request, ClaimCreate, "claim")

    claim, payment_mode = await create_claim(
        offer_id=body.offer_id,
        user_id=body.user_id,
        slot_id=body.slot_id,
        address=body.address,
        referral_code=body.referral_code,
    )
    return {"claim": claim, "payment_mode": payment_mode}


@router.post("/redemptions", status_code=201)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def create_redemption_endpoint(request: Request):
    """Record a redemption for a claim."""
    body = await parse_body(request, ClaimReference, "redemption")
    redemption = await create_redemption(body.claim_id)
    return {"redemption": redemption}


@router.post("/sessions/init", status_code=201)
@limiter.limit(RATE_LIMIT_CLAIM)
async def init_session_endpoint(request: Request):
    """Open a walk-up session with a host."""
    body = await parse_body(request, SessionInitRequest, "session")
    return await init_session(body.host_handle, body.amount_cents)


@router.post("/sessions/{claim_id}/redeem")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def redeem_session(request: Request, claim_id: int):
    """Redeem a session as its host."""
    require_positive_id(claim_id, "session id")
    user = await get_acting_user(request)
    return await redeem(claim_id, user["id"])


@router.get("/sessions")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_sessions(request: Request, status: str | None = None):
    """List sessions on the acting host's offers."""
    user = await get_acting_user(request)
    sessions = await list_sessions(user["id"], status)
    return {"sessions": sessions}
