# src/services/reconciliation.py

import logging
from enum import Enum

import asyncpg

from src.core.config import SETTLED_PAYMENT_STATUSES
from src.core.db import (
    get_claim_context,
    get_payment_by_ref,
    insert_payment,
    set_payment_status,
    mark_deposit_paid,
    mark_redeemed,
    insert_redemption,
    append_event,
    expire_pending_payments,
)

logger = logging.getLogger(__name__)


class RecordOutcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_RECORDED = "already_recorded"
    IGNORED = "ignored"


async def record_deposit_payment(
    conn: asyncpg.Connection,
    *,
    claim_id: int,
    provider: str,
    provider_ref: str,
    amount_cents: int | None,
    payment_intent_id: str | None = None,
) -> RecordOutcome:
    """
    Record a completed hosted-checkout payment for a claim.
    Must run inside a transaction. The payment row keyed by provider_ref is the
    idempotency key shared by the webhook and the pull-based confirmation, so
    only the first caller flips the claim and appends DEPOSIT_PAID.
    """
    claim = await get_claim_context(conn, claim_id, for_update=True)
    if not claim:
        logger.warning(f"Payment {provider_ref} references unknown claim {claim_id}, ignoring")
        return RecordOutcome.IGNORED

    payment = await get_payment_by_ref(conn, provider_ref, for_update=True)
    if payment is None:
        inserted = await insert_payment(
            conn,
            claim_id=claim_id,
            amount_cents=amount_cents or 0,
            status="paid",
            provider=provider,
            provider_ref=provider_ref,
        )
        if inserted is not None:
            await _apply_deposit(conn, claim, provider, provider_ref, inserted["amount_cents"], payment_intent_id)
            return RecordOutcome.INSERTED

        # 並行して挿入された行を読み直す
        payment = await get_payment_by_ref(conn, provider_ref, for_update=True)

    if payment["claim_id"] != claim_id:
        logger.warning(
            f"Payment {provider_ref} belongs to claim {payment['claim_id']}, not {claim_id}, ignoring"
        )
        return RecordOutcome.IGNORED

    if payment["status"] in SETTLED_PAYMENT_STATUSES:
        logger.info(f"Payment {provider_ref} for claim {claim_id} already recorded")
        return RecordOutcome.ALREADY_RECORDED

    await set_payment_status(conn, payment["id"], "paid")
    await _apply_deposit(conn, claim, provider, provider_ref, payment["amount_cents"], payment_intent_id)
    return RecordOutcome.INSERTED


async def _apply_deposit(
    conn: asyncpg.Connection,
    claim: dict,
    provider: str,
    provider_ref: str,
    amount_cents: int,
    payment_intent_id: str | None,
) -> None:
    await mark_deposit_paid(conn, claim["id"], payment_intent_id)
    # 同じ申込の他のチェックアウトは引換を妨げない
    expired = await expire_pending_payments(conn, claim["id"], except_ref=provider_ref)
    if expired:
        logger.info(f"Expired {expired} abandoned pending payment(s) for claim {claim['id']}")
    await append_event(
        conn,
        user_id=claim["creator_id"],
        type="DEPOSIT_PAID",
        ref_id=claim["id"],
        metadata={
            "offer_id": claim["offer_id"],
            "amount_cents": amount_cents,
            "provider": provider,
            "provider_ref": provider_ref,
        },
    )
    logger.info(f"Recorded {provider} payment {provider_ref} for claim {claim['id']}")


async def record_balance_payment(
    conn: asyncpg.Connection,
    *,
    claim_id: int,
    payment_intent_id: str,
    amount_cents: int | None,
) -> RecordOutcome:
    """
    Record an in-person balance payment: the claim becomes redeemed.
    Must run inside a transaction; keyed by the payment intent id.
    """
    claim = await get_claim_context(conn, claim_id, for_update=True)
    if not claim:
        logger.warning(f"Balance payment {payment_intent_id} references unknown claim {claim_id}, ignoring")
        return RecordOutcome.IGNORED

    if await get_payment_by_ref(conn, payment_intent_id, for_update=True):
        logger.info(f"Balance payment {payment_intent_id} for claim {claim_id} already recorded")
        return RecordOutcome.ALREADY_RECORDED

    inserted = await insert_payment(
        conn,
        claim_id=claim_id,
        amount_cents=amount_cents or 0,
        status="paid",
        provider="stripe_terminal",
        provider_ref=payment_intent_id,
    )
    if inserted is None:
        return RecordOutcome.ALREADY_RECORDED

    await mark_redeemed(conn, claim_id, payment_intent_id)
    await insert_redemption(conn, claim_id)
    await append_event(
        conn,
        user_id=claim["creator_id"],
        type="REDEEMED_IRL",
        ref_id=claim_id,
        metadata={
            "offer_id": claim["offer_id"],
            "amount_cents": inserted["amount_cents"],
            "payment_intent_id": payment_intent_id,
        },
    )
    logger.info(f"Recorded balance payment {payment_intent_id}; claim {claim_id} redeemed")
    return RecordOutcome.INSERTED
