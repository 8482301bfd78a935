# src/services/redemptions.py

import logging

from src.core.config import SETTLED_PAYMENT_STATUSES
from src.core.db import (
    transaction,
    get_claim_context,
    get_latest_payment,
    mark_redeemed,
    insert_redemption,
    append_event,
    get_last_paid_amount,
)
from src.core.errors import (
    ClaimNotFound,
    Forbidden,
    PaymentRequired,
    PaymentPending,
)

logger = logging.getLogger(__name__)


def check_settled(price_cents: int, latest_payment: dict | None) -> None:
    """
    Raise unless the claim may be redeemed: free claims always may, priced ones
    need their most recent payment to be settled.
    """
    if price_cents <= 0:
        return
    if latest_payment is None:
        raise PaymentRequired()
    if latest_payment["status"] not in SETTLED_PAYMENT_STATUSES:
        raise PaymentPending()


async def redeem(claim_id: int, acting_user_id: int) -> dict:
    """
    Redeem a claim as its offer's creator.
    Idempotent: a second call succeeds without a second redemption row.
    """
    async with transaction() as conn:
        claim = await get_claim_context(conn, claim_id, for_update=True)
        if not claim:
            raise ClaimNotFound()

        if claim["creator_id"] != acting_user_id:
            raise Forbidden()

        check_settled(claim["price_cents"], await get_latest_payment(conn, claim_id))

        updated = await mark_redeemed(conn, claim_id)
        _, created = await insert_redemption(conn, claim_id)
        if created:
            await append_event(
                conn,
                user_id=claim["creator_id"],
                type="REDEMPTION_COMPLETED",
                ref_id=claim_id,
                metadata={"offer_id": claim["offer_id"]},
            )
            logger.info(f"Claim {claim_id} redeemed by creator {acting_user_id}")
        else:
            logger.info(f"Claim {claim_id} was already redeemed")

        last_paid_amount_cents = await get_last_paid_amount(conn, claim["creator_id"])

    return {
        "session": {
            "id": claim_id,
            "amount_cents": claim["price_cents"],
            "status": updated["status"],
            "redeemed_at": updated["redeemed_at"],
        },
        "last_paid_amount_cents": last_paid_amount_cents,
    }


async def create_redemption(claim_id: int) -> dict:
    """Record a redemption for a claim, returning the existing row on repeat calls."""
    async with transaction() as conn:
        claim = await get_claim_context(conn, claim_id)
        if not claim:
            raise ClaimNotFound()

        redemption, created = await insert_redemption(conn, claim_id)
        if created:
            await append_event(
                conn,
                user_id=claim["creator_id"],
                type="REDEMPTION_COMPLETED",
                ref_id=claim_id,
                metadata={"offer_id": claim["offer_id"]},
            )
    return redemption
