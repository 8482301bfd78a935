# src/routers/offers.py

from fastapi import APIRouter, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.core.config import RATE_LIMIT_ENABLED, RATE_LIMIT_DEFAULT
from src.core.models import OfferCreate, ReferralCreate
from src.core.dependencies import parse_body, require_positive_id
from src.services.offers import create_offer, get_offer_detail, create_referral

router = APIRouter(prefix="/api", tags=["offers"])

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


@router.post("/offers", status_code=201)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def create_offer_endpoint(request: Request):
    """Publish an offer with optional slots."""
    body = await parse_body(request, OfferCreate, "offer")
    offer = await create_offer(body)
    return {"offer": offer}


@router.get("/offers/{offer_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_offer_endpoint(request: Request, offer_id: int):
    """Offer detail with slots and recent activity."""
    require_positive_id(offer_id, "offer id")
    return await get_offer_detail(offer_id)


@router.post("/referrals", status_code=201)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def create_referral_endpoint(request: Request):
    """Issue a referral code for an offer."""
    body = await parse_body(request, ReferralCreate, "referral")
    code = await create_referral(body.inviter_id, body.offer_id)
    return {"code": code}
