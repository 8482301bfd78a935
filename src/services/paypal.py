# src/services/paypal.py

import logging

import httpx
from cachetools import TTLCache

from src.core.config import (
    PAYPAL_CLIENT_ID,
    PAYPAL_CLIENT_SECRET,
    PAYPAL_API_BASE,
    CURRENCY,
    SETTLED_PAYMENT_STATUSES,
)
from src.core.db import (
    connection,
    transaction,
    get_claim_context,
    get_payment_by_ref,
    insert_payment,
)
from src.core.errors import (
    ClaimNotFound,
    NotFound,
    AlreadyPaid,
    BalanceNotDue,
    UpstreamFailure,
)
from src.services.checkout import amount_due_now
from src.services.reconciliation import RecordOutcome, record_deposit_payment

logger = logging.getLogger(__name__)

# PayPal access tokens live for hours; refresh well before that.
_token_cache: TTLCache = TTLCache(maxsize=1, ttl=300)


def _format_amount(amount_cents: int) -> str:
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


async def _request(client: httpx.AsyncClient, method: str, path: str, **kwargs) -> httpx.Response:
    try:
        return await client.request(method, f"{PAYPAL_API_BASE}{path}", **kwargs)
    except httpx.HTTPError as e:
        logger.error(f"PayPal request {method} {path} failed: {e}")
        raise UpstreamFailure() from e


async def get_access_token(client: httpx.AsyncClient) -> str:
    """Client-credentials token for the platform's PayPal app."""
    if "token" in _token_cache:
        return _token_cache["token"]

    if not PAYPAL_CLIENT_ID or not PAYPAL_CLIENT_SECRET:
        raise UpstreamFailure("PayPal not configured", code="paypal_not_configured")

    res = await _request(
        client,
        "POST",
        "/v1/oauth2/token",
        data={"grant_type": "client_credentials"},
        auth=(PAYPAL_CLIENT_ID, PAYPAL_CLIENT_SECRET),
    )
    if res.status_code != 200:
        logger.error(f"PayPal token request failed: status={res.status_code}")
        raise UpstreamFailure()

    token = res.json()["access_token"]
    _token_cache["token"] = token
    return token


async def create_order_for_claim(client: httpx.AsyncClient, claim_id: int) -> dict:
    """
    Create a CAPTURE order for the amount due on a claim.
    A pending payment row keyed by the order id is stored for reconciliation.
    """
    async with connection() as conn:
        claim = await get_claim_context(conn, claim_id)
    if not claim:
        raise ClaimNotFound()
    if claim["status"] != "pending":
        raise AlreadyPaid()

    amount_cents = amount_due_now(claim)
    if amount_cents <= 0:
        raise BalanceNotDue("Nothing is due for this claim")

    token = await get_access_token(client)
    res = await _request(
        client,
        "POST",
        "/v2/checkout/orders",
        json={
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(claim_id),
                    "custom_id": str(claim_id),
                    "description": claim["title"],
                    "amount": {
                        "currency_code": CURRENCY.upper(),
                        "value": _format_amount(amount_cents),
                    },
                }
            ],
        },
        headers={"Authorization": f"Bearer {token}", "Prefer": "return=representation"},
    )
    if res.status_code not in (200, 201):
        logger.error(f"PayPal order creation failed for claim {claim_id}: status={res.status_code}")
        raise UpstreamFailure()

    order = res.json()
    order_id = order["id"]
    approve_url = next(
        (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
        None,
    )

    async with transaction() as conn:
        await insert_payment(
            conn,
            claim_id=claim_id,
            amount_cents=amount_cents,
            status="pending",
            provider="paypal",
            provider_ref=order_id,
        )

    logger.info(f"Created PayPal order {order_id} for claim {claim_id} ({amount_cents} cents)")
    return {"id": order_id, "approve_url": approve_url}


async def capture_order(client: httpx.AsyncClient, order_id: str) -> dict:
    """
    Capture an approved order and record it exactly once.
    Returns {"status": "inserted" | "already_recorded" | "not_paid"}.
    """
    async with connection() as conn:
        payment = await get_payment_by_ref(conn, order_id)
    if not payment or payment["provider"] != "paypal":
        raise NotFound("Order not found", code="order_not_found")

    if payment["status"] in SETTLED_PAYMENT_STATUSES:
        return {"status": RecordOutcome.ALREADY_RECORDED.value}

    token = await get_access_token(client)
    headers = {"Authorization": f"Bearer {token}"}
    res = await _request(client, "POST", f"/v2/checkout/orders/{order_id}/capture", json={}, headers=headers)

    if res.status_code == 422:
        # 既にキャプチャ済みなどの場合は注文の現状を確認する
        res = await _request(client, "GET", f"/v2/checkout/orders/{order_id}", headers=headers)

    if res.status_code not in (200, 201):
        logger.error(f"PayPal capture failed for order {order_id}: status={res.status_code}")
        raise UpstreamFailure()

    if res.json().get("status") != "COMPLETED":
        return {"status": "not_paid"}

    async with transaction() as conn:
        outcome = await record_deposit_payment(
            conn,
            claim_id=payment["claim_id"],
            provider="paypal",
            provider_ref=order_id,
            amount_cents=payment["amount_cents"],
        )

    logger.info(f"PayPal order {order_id} captured: {outcome.value}")
    return {"status": outcome.value}
