# src/services/feed.py

import logging

from src.core.config import INBOX_LIMIT
from src.core.db import (
    connection,
    transaction,
    get_user,
    list_for_user,
    list_offers_with_claim_counts,
    count_creator_redemptions,
    count_events,
    append_event,
)
from src.core.errors import UserNotFound

logger = logging.getLogger(__name__)


async def get_inbox(user_id: int) -> list[dict]:
    """Events addressed to a user, newest first."""
    async with connection() as conn:
        return await list_for_user(conn, user_id, INBOX_LIMIT)


async def get_profile(user_id: int) -> dict:
    """Creator profile: the user, a redemption score and offers with claim counts."""
    async with connection() as conn:
        user = await get_user(conn, user_id)
        if not user:
            raise UserNotFound()
        score = await count_creator_redemptions(conn, user_id)
        offers = await list_offers_with_claim_counts(conn, user_id)
    return {"user": user, "score": score, "offers": offers}


async def get_kfactor(user_id: int) -> dict:
    """Referral conversions per invite sent."""
    async with connection() as conn:
        invites = await count_events(conn, user_id, "REFERRAL_INVITE_SENT")
        conversions = await count_events(conn, user_id, "REFERRAL_CONVERTED")

    k_factor = 0 if invites == 0 else round(conversions / invites, 2)
    return {"invites": invites, "conversions": conversions, "k_factor": k_factor}


async def record_event(user_id: int, type: str, ref_id: int | None = None, metadata: dict | None = None) -> dict:
    """Append a client-reported event (e.g. an offer view)."""
    async with transaction() as conn:
        if not await get_user(conn, user_id):
            raise UserNotFound()
        return await append_event(conn, user_id=user_id, type=type, ref_id=ref_id, metadata=metadata)
