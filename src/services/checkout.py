# src/services/checkout.py

import logging
from urllib.parse import urlencode

from src.core.config import PUBLIC_BASE_URL
from src.core.db import (
    connection,
    transaction,
    get_claim_context,
    get_user,
    get_payment_account,
    get_open_payment,
    get_latest_payment,
    insert_payment,
    set_payment_status,
)
from src.core.errors import (
    ClaimNotFound,
    UserNotFound,
    NotConnected,
    BalanceNotDue,
    AlreadyPaid,
)
from src.services.reconciliation import record_deposit_payment
from src.services.stripe_service import (
    create_checkout_session,
    retrieve_checkout_session,
    create_connection_token,
    create_balance_payment_intent,
)

logger = logging.getLogger(__name__)


def amount_due_now(claim: dict) -> int:
    """Amount charged through hosted checkout: the full price, or the deposit snapshot."""
    if claim["payment_mode"] == "full":
        return claim["price_cents"]
    return claim["deposit_cents"]


def balance_due(claim: dict) -> int:
    """Amount collected in person at redemption time."""
    if claim["payment_mode"] in ("full", "pay_in_person"):
        return claim["price_cents"]
    return max(0, claim["price_cents"] - claim["deposit_cents"])


def sanitize_return_path(return_path: str | None) -> str:
    """Keep only a same-site absolute path; anything else falls back to '/'."""
    raw = return_path if isinstance(return_path, str) else "/"
    path = raw.split("?")[0].split("#")[0]
    if not path.startswith("/") or path.startswith("//") or "://" in path or "\\" in path:
        return "/"
    return path


def build_return_urls(return_path: str | None, claim_id: int) -> tuple[str, str]:
    base = f"{PUBLIC_BASE_URL}{sanitize_return_path(return_path)}"
    success_url = f"{base}?{urlencode({'claim': claim_id, 'paid': 1})}"
    cancel_url = f"{base}?{urlencode({'claim': claim_id, 'cancel': 1})}"
    return success_url, cancel_url


def payment_metadata(claim: dict, purpose: str) -> dict:
    return {
        "claim_id": str(claim["id"]),
        "offer_id": str(claim["offer_id"]),
        "creator_id": str(claim["creator_id"]),
        "purpose": purpose,
    }


async def create_checkout_for_claim(claim_id: int, return_path: str | None = None) -> dict:
    """
    Start hosted checkout for a claim on the creator's connected account.
    A pending payment row keyed by the checkout session id is stored for reconciliation.
    A session that is still open for the claim is handed out again instead of a new one.
    """
    async with connection() as conn:
        claim = await get_claim_context(conn, claim_id)
        if not claim:
            raise ClaimNotFound()
        account = await get_payment_account(conn, claim["creator_id"])
        open_payment = await get_open_payment(conn, claim_id, "stripe")

    if claim["status"] != "pending":
        raise AlreadyPaid()

    amount_cents = amount_due_now(claim)
    if amount_cents <= 0:
        await _record_zero_payment(claim_id)
        return {"url": None, "status": "zero"}

    if account is None:
        raise NotConnected()

    if open_payment:
        url = await _resume_checkout(claim_id, open_payment, account.access_token)
        if url:
            return {"url": url}

    success_url, cancel_url = build_return_urls(return_path, claim_id)
    session = await create_checkout_session(
        account.access_token,
        amount_cents=amount_cents,
        product_name=claim["title"],
        metadata=payment_metadata(claim, "deposit"),
        success_url=success_url,
        cancel_url=cancel_url,
    )

    async with transaction() as conn:
        await insert_payment(
            conn,
            claim_id=claim_id,
            amount_cents=amount_cents,
            status="pending",
            provider="stripe",
            provider_ref=session["id"],
        )

    logger.info(f"Created checkout session {session['id']} for claim {claim_id} ({amount_cents} cents)")
    return {"url": session["url"]}


async def _record_zero_payment(claim_id: int) -> None:
    async with transaction() as conn:
        await get_claim_context(conn, claim_id, for_update=True)
        latest = await get_latest_payment(conn, claim_id)
        if latest and latest["status"] == "zero":
            logger.info(f"Claim {claim_id} already has a zero payment")
            return
        await insert_payment(
            conn,
            claim_id=claim_id,
            amount_cents=0,
            status="zero",
            provider="none",
        )
    logger.info(f"Claim {claim_id} has nothing due at checkout; recorded zero payment")


async def _resume_checkout(claim_id: int, payment: dict, api_key: str) -> str | None:
    """
    Returns the URL of the claim's previous checkout session while it is still open.
    A session that was already paid is recorded and raises AlreadyPaid; any other
    session has its row expired so a fresh one replaces it.
    """
    session = await retrieve_checkout_session(payment["provider_ref"], api_key)

    if session["payment_status"] == "paid":
        async with transaction() as conn:
            await record_deposit_payment(
                conn,
                claim_id=claim_id,
                provider="stripe",
                provider_ref=session["id"],
                amount_cents=session["amount_total"],
                payment_intent_id=session["payment_intent"],
            )
        raise AlreadyPaid()

    if session.get("status") == "open" and session.get("url"):
        logger.info(f"Reusing open checkout session {session['id']} for claim {claim_id}")
        return session["url"]

    async with transaction() as conn:
        await set_payment_status(conn, payment["id"], "expired")
    logger.info(f"Checkout session {session['id']} for claim {claim_id} is {session.get('status')}; replacing it")
    return None


async def create_terminal_connection_token(user_id: int) -> dict:
    """Connection token for the creator's card reader."""
    async with connection() as conn:
        user = await get_user(conn, user_id)
        if not user:
            raise UserNotFound()
        account = await get_payment_account(conn, user_id)

    if account is None:
        raise NotConnected()

    secret = await create_connection_token(account.access_token)
    return {"secret": secret}


async def create_terminal_payment_intent(claim_id: int) -> dict:
    """Card-present payment intent for the balance still owed on a claim."""
    async with connection() as conn:
        claim = await get_claim_context(conn, claim_id)
        if not claim:
            raise ClaimNotFound()
        account = await get_payment_account(conn, claim["creator_id"])

    if account is None:
        raise NotConnected()

    amount_cents = balance_due(claim)
    if amount_cents <= 0:
        raise BalanceNotDue()

    intent = await create_balance_payment_intent(
        account.access_token,
        amount_cents=amount_cents,
        metadata=payment_metadata(claim, "balance"),
    )
    logger.info(f"Created balance payment intent {intent['id']} for claim {claim_id} ({amount_cents} cents)")
    return {"client_secret": intent["client_secret"], "id": intent["id"]}
