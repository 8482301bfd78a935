# src/services/offers.py

import logging
import secrets
import string

from src.core.config import (
    OFFER_ACTIVITY_LIMIT,
    REFERRAL_CODE_LENGTH,
    REFERRAL_CODE_ATTEMPTS,
)
from src.core.db import (
    connection,
    transaction,
    get_user,
    get_offer,
    insert_offer,
    insert_slot,
    list_slots,
    list_for_offer,
    insert_referral_link,
    append_event,
)
from src.core.errors import UserNotFound, OfferNotFound, Conflict
from src.core.models import OfferCreate

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


async def create_offer(payload: OfferCreate) -> dict:
    """Create an offer with its slots and announce it on the creator's feed."""
    async with transaction() as conn:
        if not await get_user(conn, payload.creator_id):
            raise UserNotFound("Creator not found")

        offer = await insert_offer(
            conn,
            creator_id=payload.creator_id,
            title=payload.title,
            price_cents=payload.price_cents,
            deposit_cents=payload.deposit_cents,
            payment_mode=payload.resolved_payment_mode,
            capacity=payload.capacity,
            location_text=payload.location_text,
            description=payload.description,
            image_url=payload.image_url,
        )

        for slot in payload.slots:
            # 開始・終了時刻のないスロットは無視
            if slot.start_at is None or slot.end_at is None:
                continue
            remaining = slot.remaining_capacity if slot.remaining_capacity is not None else payload.capacity
            await insert_slot(
                conn,
                offer_id=offer["id"],
                start_at=slot.start_at,
                end_at=slot.end_at,
                remaining_capacity=remaining,
            )

        await append_event(
            conn,
            user_id=payload.creator_id,
            type="OFFER_CREATED",
            ref_id=offer["id"],
            metadata={"title": offer["title"]},
        )

    logger.info(f"Creator {payload.creator_id} created offer {offer['id']}")
    return offer


async def get_offer_detail(offer_id: int) -> dict:
    """Offer with its slots and recent activity."""
    async with connection() as conn:
        offer = await get_offer(conn, offer_id)
        if not offer:
            raise OfferNotFound()
        slots = await list_slots(conn, offer_id)
        activity = await list_for_offer(conn, offer_id, OFFER_ACTIVITY_LIMIT)
    return {"offer": offer, "slots": slots, "activity": activity}


def generate_referral_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


async def create_referral(inviter_id: int, offer_id: int) -> str:
    """Issue a referral code for an offer and log the invite on the inviter's feed."""
    async with transaction() as conn:
        if not await get_user(conn, inviter_id):
            raise UserNotFound("Inviter not found")
        if not await get_offer(conn, offer_id):
            raise OfferNotFound()

        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            if await insert_referral_link(conn, code=code, inviter_id=inviter_id, offer_id=offer_id):
                break
        else:
            raise Conflict("Could not allocate a referral code", code="referral_code_exhausted")

        await append_event(
            conn,
            user_id=inviter_id,
            type="REFERRAL_INVITE_SENT",
            ref_id=offer_id,
            metadata={"code": code},
        )

    logger.info(f"User {inviter_id} created referral code {code} for offer {offer_id}")
    return code
