# src/services/sessions.py

import logging
import secrets
from urllib.parse import quote, urlencode

from src.core.config import PUBLIC_BASE_URL
from src.core.db import (
    connection,
    transaction,
    get_user_by_username,
    get_payment_account,
    insert_user,
    insert_offer,
    insert_claim,
    insert_payment,
    append_event,
    list_host_sessions,
)
from src.core.errors import UserNotFound, NotConnected
from src.services.checkout import payment_metadata
from src.services.stripe_service import create_checkout_session

logger = logging.getLogger(__name__)

SESSION_TITLE = "Session"
SESSION_LOCATION = "In person"


async def init_session(host_handle: str, amount_cents: int) -> dict:
    """
    Open a walk-up session with a host: guest customer, single-use offer and claim.
    Priced sessions also get a hosted checkout on the host's connected account.
    """
    host_handle = host_handle.strip().lstrip("@")
    async with transaction() as conn:
        host = await get_user_by_username(conn, host_handle)
        if not host:
            raise UserNotFound("Host not found", code="host_not_found")

        account = await get_payment_account(conn, host["id"])
        if amount_cents > 0 and account is None:
            raise NotConnected("Host has not connected a payment account", code="host_not_connected")

        guest = await insert_user(
            conn,
            name="Guest",
            role="customer",
            username=f"guest-{secrets.token_hex(5)}",
        )
        offer = await insert_offer(
            conn,
            creator_id=host["id"],
            title=SESSION_TITLE,
            price_cents=amount_cents,
            deposit_cents=0,
            payment_mode="full",
            capacity=1,
            location_text=SESSION_LOCATION,
        )
        claim = await insert_claim(
            conn,
            offer_id=offer["id"],
            user_id=guest["id"],
            slot_id=None,
            address=None,
            deposit_cents=0,
        )
        await append_event(
            conn,
            user_id=host["id"],
            type="OFFER_CLAIMED",
            ref_id=claim["id"],
            metadata={"offer_id": offer["id"], "user_id": guest["id"]},
        )

        if amount_cents == 0:
            await insert_payment(conn, claim_id=claim["id"], amount_cents=0, status="zero", provider="none")

    logger.info(f"Session {claim['id']} opened with host {host['id']} for {amount_cents} cents")

    if amount_cents == 0:
        return {"session_id": claim["id"], "amount_cents": 0, "status": "zero"}

    host_path = f"{PUBLIC_BASE_URL}/{quote(host_handle)}"
    context = {"id": claim["id"], "offer_id": offer["id"], "creator_id": host["id"]}
    session = await create_checkout_session(
        account.access_token,
        amount_cents=amount_cents,
        product_name=SESSION_TITLE,
        metadata=payment_metadata(context, "payment"),
        success_url=f"{host_path}?{urlencode({'paid': 1, 'claim': claim['id']})}",
        cancel_url=f"{host_path}?{urlencode({'cancel': 1})}",
    )

    async with transaction() as conn:
        await insert_payment(
            conn,
            claim_id=claim["id"],
            amount_cents=amount_cents,
            status="pending",
            provider="stripe",
            provider_ref=session["id"],
        )

    return {"session_id": claim["id"], "amount_cents": amount_cents, "checkout_url": session["url"]}


async def list_sessions(creator_id: int, status: str | None = None) -> list[dict]:
    """Claims on the host's offers, newest first."""
    if status not in ("pending", "redeemed"):
        status = None
    async with connection() as conn:
        return await list_host_sessions(conn, creator_id, status)
