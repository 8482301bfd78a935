# src/services/stripe_service.py

import asyncio
import logging
import stripe
from cachetools import TTLCache

from src.core.config import (
    STRIPE_API_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_STATUS_CACHE_TTL,
    CURRENCY,
)
from src.core.db import (
    connection,
    transaction,
    claim_event,
    get_payment_by_ref,
    get_claim_context,
    get_payment_account,
)
from src.core.dependencies import parse_positive_id
from src.core.errors import InvalidRequest, ClaimNotFound, UpstreamFailure
from src.services.reconciliation import (
    RecordOutcome,
    record_deposit_payment,
    record_balance_payment,
)

logger = logging.getLogger(__name__)

# Initialize Stripe
stripe.api_key = STRIPE_API_KEY

# Connected account status cache
_account_status_cache: TTLCache = TTLCache(maxsize=500, ttl=STRIPE_STATUS_CACHE_TTL)


def _field(obj, *path):
    """Walk attribute path on a Stripe object, returning None when any step is missing."""
    for name in path:
        if obj is None:
            return None
        obj = getattr(obj, name, None)
    return obj


def _object_id(value) -> str | None:
    """Expandable Stripe fields are either an id string or an object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def _metadata_value(metadata, key: str):
    if not metadata:
        return None
    try:
        return metadata[key]
    except KeyError:
        return None


async def _call_stripe(description: str, func, *args, **kwargs):
    """Run a blocking Stripe SDK call off the event loop and map its errors."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except stripe.InvalidRequestError as e:
        logger.warning(f"Stripe rejected {description}: {e}")
        raise InvalidRequest("Payment service rejected the request", code="payment_request_rejected") from e
    except stripe.StripeError as e:
        logger.error(f"Stripe error during {description}: {e}")
        raise UpstreamFailure() from e


async def create_checkout_session(
    api_key: str,
    *,
    amount_cents: int,
    product_name: str,
    metadata: dict,
    success_url: str,
    cancel_url: str,
) -> dict:
    """
    Create a hosted checkout session on a connected account.
    Uses asyncio.to_thread to avoid blocking the event loop.
    """
    session = await _call_stripe(
        "checkout session creation",
        stripe.checkout.Session.create,
        api_key=api_key,
        mode="payment",
        success_url=success_url,
        cancel_url=cancel_url,
        line_items=[
            {
                "quantity": 1,
                "price_data": {
                    "currency": CURRENCY,
                    "unit_amount": amount_cents,
                    "product_data": {"name": product_name},
                },
            },
        ],
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
    )
    return {"id": session.id, "url": session.url}


async def retrieve_checkout_session(session_id: str, api_key: str | None = None) -> dict:
    """Fetch a checkout session and flatten the fields reconciliation needs."""
    kwargs = {"api_key": api_key} if api_key else {}
    session = await _call_stripe(
        "checkout session retrieval",
        stripe.checkout.Session.retrieve,
        session_id,
        **kwargs,
    )
    return {
        "id": session.id,
        "payment_status": _field(session, "payment_status"),
        "amount_total": _field(session, "amount_total"),
        "payment_intent": _object_id(_field(session, "payment_intent")),
        "claim_id": parse_positive_id(_metadata_value(_field(session, "metadata"), "claim_id")),
        "status": _field(session, "status"),
        "url": _field(session, "url"),
    }


async def create_connection_token(api_key: str) -> str:
    """Create a card-reader connection token on a connected account."""
    token = await _call_stripe(
        "terminal connection token creation",
        stripe.terminal.ConnectionToken.create,
        api_key=api_key,
    )
    return token.secret


async def create_balance_payment_intent(api_key: str, *, amount_cents: int, metadata: dict) -> dict:
    """Create a card-present payment intent for the in-person balance."""
    intent = await _call_stripe(
        "terminal payment intent creation",
        stripe.PaymentIntent.create,
        api_key=api_key,
        amount=amount_cents,
        currency=CURRENCY,
        payment_method_types=["card_present"],
        capture_method="automatic",
        metadata=metadata,
    )
    return {"id": intent.id, "client_secret": intent.client_secret}


async def exchange_oauth_code(code: str) -> dict:
    """Exchange a Connect authorization code for account credentials."""
    response = await _call_stripe(
        "OAuth code exchange",
        stripe.OAuth.token,
        grant_type="authorization_code",
        code=code,
    )
    return {
        "account_id": _field(response, "stripe_user_id"),
        "access_token": _field(response, "access_token"),
        "refresh_token": _field(response, "refresh_token"),
        "publishable_key": _field(response, "stripe_publishable_key"),
    }


async def retrieve_account(account_id: str) -> dict:
    """Fetch a connected account and pick out its profile and capability fields."""
    account = await _call_stripe("account retrieval", stripe.Account.retrieve, account_id)

    individual_name = " ".join(
        part for part in (_field(account, "individual", "first_name"), _field(account, "individual", "last_name")) if part
    ).strip()
    return {
        "name": _field(account, "business_profile", "name")
        or _field(account, "company", "name")
        or individual_name
        or None,
        "phone": _field(account, "business_profile", "support_phone")
        or _field(account, "company", "phone")
        or _field(account, "individual", "phone"),
        "email": _field(account, "email")
        or _field(account, "business_profile", "support_email")
        or _field(account, "individual", "email"),
        "url": _field(account, "business_profile", "url") or _field(account, "business_profile", "support_url"),
        "details_submitted": bool(_field(account, "details_submitted")),
        "charges_enabled": bool(_field(account, "charges_enabled")),
        "payouts_enabled": bool(_field(account, "payouts_enabled")),
    }


async def get_account_status(account_id: str) -> dict:
    """Connected account capability flags, cached briefly."""
    if account_id in _account_status_cache:
        return _account_status_cache[account_id]

    account = await retrieve_account(account_id)
    status = {
        "details_submitted": account["details_submitted"],
        "charges_enabled": account["charges_enabled"],
        "payouts_enabled": account["payouts_enabled"],
    }
    _account_status_cache[account_id] = status
    return status


def clear_account_status_cache() -> None:
    """Clear the connected account status cache."""
    _account_status_cache.clear()


def verify_webhook_signature(payload: bytes, sig_header: str) -> dict:
    """
    Verify Stripe webhook signature against the raw body and return the event.
    Raises ValueError or stripe.SignatureVerificationError on failure.
    """
    event = stripe.Webhook.construct_event(
        payload, sig_header, STRIPE_WEBHOOK_SECRET
    ).to_dict()
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValueError("Malformed event payload")
    return event


async def handle_checkout_completed(conn, session_data: dict) -> RecordOutcome:
    """
    Handle checkout.session.completed: the deposit (or full payment) leg.
    Returns the recording outcome.
    """
    metadata = session_data.get("metadata") or {}
    claim_id = parse_positive_id(metadata.get("claim_id"))
    session_id = session_data.get("id")

    logger.info(f"Processing checkout.session.completed: session={session_id}, claim_id={claim_id}")

    if not claim_id or not session_id:
        logger.warning("Missing claim_id or session id in checkout session, ignoring")
        return RecordOutcome.IGNORED

    payment_status = session_data.get("payment_status", "paid")
    if payment_status != "paid":
        logger.info(f"Checkout session {session_id} completed with payment_status={payment_status}, waiting")
        return RecordOutcome.IGNORED

    return await record_deposit_payment(
        conn,
        claim_id=claim_id,
        provider="stripe",
        provider_ref=session_id,
        amount_cents=session_data.get("amount_total"),
        payment_intent_id=_object_id(session_data.get("payment_intent")),
    )


async def handle_payment_intent_succeeded(conn, intent_data: dict) -> RecordOutcome:
    """
    Handle payment_intent.succeeded: only the in-person balance leg is recorded here.
    Returns the recording outcome.
    """
    metadata = intent_data.get("metadata") or {}
    if metadata.get("purpose") != "balance":
        return RecordOutcome.IGNORED

    claim_id = parse_positive_id(metadata.get("claim_id"))
    intent_id = intent_data.get("id")

    logger.info(f"Processing payment_intent.succeeded: intent={intent_id}, claim_id={claim_id}")

    if not claim_id or not intent_id:
        logger.warning("Missing claim_id or intent id in balance payment intent, ignoring")
        return RecordOutcome.IGNORED

    return await record_balance_payment(
        conn,
        claim_id=claim_id,
        payment_intent_id=intent_id,
        amount_cents=intent_data.get("amount_received") or intent_data.get("amount"),
    )


async def process_webhook_event(event: dict) -> dict:
    """
    Process a verified Stripe webhook event.
    The event id is claimed inside the same transaction as its effects.
    """
    event_id = event["id"]
    event_type = event["type"]
    data_object = (event.get("data") or {}).get("object") or {}

    logger.info(f"Stripe Webhook received: {event_type} (id: {event_id})")

    async with transaction() as conn:
        if not await claim_event(conn, event_id, event_type):
            logger.info(f"Event {event_id} already processed, skipping.")
            return {"received": True}

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            outcome = await handle_checkout_completed(conn, data_object)
        elif event_type == "payment_intent.succeeded":
            outcome = await handle_payment_intent_succeeded(conn, data_object)
        else:
            outcome = RecordOutcome.IGNORED

    logger.info(f"Stripe event {event_id} ({event_type}) -> {outcome.value}")
    return {"received": True}


async def confirm_session(session_id: str | None) -> str:
    """
    Pull-based confirmation of a checkout session, for when the webhook is late or lost.
    Returns "not_paid", "already_recorded" or "inserted".
    """
    if not session_id:
        raise InvalidRequest("session_id is required", code="missing_session_id")

    api_key = None
    async with connection() as conn:
        pending = await get_payment_by_ref(conn, session_id)
        if pending and pending["provider"] != "stripe":
            raise ClaimNotFound("No Stripe checkout session with this id")
        if pending:
            claim = await get_claim_context(conn, pending["claim_id"])
            account = await get_payment_account(conn, claim["creator_id"]) if claim else None
            api_key = account.access_token if account else None

    session = await retrieve_checkout_session(session_id, api_key)
    if session["payment_status"] != "paid":
        return "not_paid"

    claim_id = pending["claim_id"] if pending else session["claim_id"]
    if not claim_id:
        raise ClaimNotFound("Checkout session is not linked to a claim")

    async with transaction() as conn:
        outcome = await record_deposit_payment(
            conn,
            claim_id=claim_id,
            provider="stripe",
            provider_ref=session["id"],
            amount_cents=session["amount_total"],
            payment_intent_id=session["payment_intent"],
        )

    if outcome is RecordOutcome.IGNORED:
        raise ClaimNotFound()
    logger.info(f"Checkout session {session_id} confirmed: {outcome.value}")
    return outcome.value
