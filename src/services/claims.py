# src/services/claims.py

import logging

from src.core.db import (
    transaction,
    get_offer,
    get_user,
    reserve_slot_unit,
    SlotReservation,
    insert_claim,
    append_event,
    get_referral_link,
)
from src.core.errors import (
    InvalidRequest,
    OfferNotFound,
    UserNotFound,
    SlotNotFound,
    SlotFull,
)

logger = logging.getLogger(__name__)


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


async def create_claim(
    offer_id: int,
    user_id: int,
    slot_id: int | None = None,
    address: str | None = None,
    referral_code: str | None = None,
) -> tuple[dict, str]:
    """
    Claim an offer, optionally against a slot.
    Slot decrement, claim insert and events commit together or not at all.
    Returns (claim, payment_mode).
    """
    if not _is_positive_int(offer_id) or not _is_positive_int(user_id):
        raise InvalidRequest("Invalid claim payload")
    if slot_id is not None and not _is_positive_int(slot_id):
        raise InvalidRequest("Invalid slot id")

    async with transaction() as conn:
        offer = await get_offer(conn, offer_id)
        if not offer:
            raise OfferNotFound()

        if not await get_user(conn, user_id):
            raise UserNotFound()

        if slot_id is not None:
            reservation = await reserve_slot_unit(conn, slot_id, offer_id)
            if reservation is SlotReservation.NOT_FOUND:
                raise SlotNotFound()
            if reservation is SlotReservation.EXHAUSTED:
                raise SlotFull()

        claim = await insert_claim(
            conn,
            offer_id=offer_id,
            user_id=user_id,
            slot_id=slot_id,
            address=address,
            deposit_cents=offer["deposit_cents"],
        )

        await append_event(
            conn,
            user_id=offer["creator_id"],
            type="OFFER_CLAIMED",
            ref_id=claim["id"],
            metadata={"offer_id": offer_id, "user_id": user_id, "slot_id": slot_id},
        )

        if referral_code:
            code = referral_code.strip().upper()
            link = await get_referral_link(conn, code)
            if link:
                await append_event(
                    conn,
                    user_id=link["inviter_id"],
                    type="REFERRAL_CONVERTED",
                    ref_id=claim["id"],
                    metadata={"code": code, "offer_id": offer_id},
                )
            else:
                logger.info(f"Unknown referral code {code!r} on claim {claim['id']}, ignoring")

    logger.info(f"User {user_id} claimed offer {offer_id} (claim {claim['id']}, slot {slot_id})")
    return claim, offer["payment_mode"]
