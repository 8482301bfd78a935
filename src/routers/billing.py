# src/routers/billing.py

import logging
import stripe
from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.core.config import (
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_PAYMENT,
    RATE_LIMIT_WEBHOOK,
)
from src.core.models import CheckoutSessionRequest, ClaimReference, UserReference
from src.core.dependencies import (
    parse_body,
    get_http_client,
    get_acting_user_id,
)
from src.core.errors import InvalidRequest, MarketplaceError
from src.services.checkout import (
    create_checkout_for_claim,
    create_terminal_connection_token,
    create_terminal_payment_intent,
)
from src.services.connect import build_connect_url, complete_connect, get_connect_status
from src.services.paypal import create_order_for_claim, capture_order
from src.services.stripe_service import (
    verify_webhook_signature,
    process_webhook_event,
    confirm_session,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


@router.post("/checkout/session")
@limiter.limit(RATE_LIMIT_PAYMENT)  # 決済は厳しく制限
async def create_checkout_session_endpoint(request: Request):
    """Create a hosted checkout session for the amount due on a claim."""
    body = await parse_body(request, CheckoutSessionRequest, "checkout")
    return await create_checkout_for_claim(body.claim_id, body.return_path)


@router.get("/checkout/confirm")
@limiter.limit(RATE_LIMIT_PAYMENT)
async def confirm_checkout(request: Request, session_id: str | None = None):
    """Confirm a checkout session when the webhook has not arrived yet."""
    status = await confirm_session(session_id)
    return {"ok": True, "status": status}


@router.post("/stripe/webhook")
@limiter.limit(RATE_LIMIT_WEBHOOK)  # Webhookは適度に制限
async def stripe_webhook(request: Request):
    """Handle Stripe webhook events."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise InvalidRequest("Missing signature", code="missing_signature")

    try:
        event = verify_webhook_signature(payload, sig_header)
    except ValueError as e:
        logger.error("Webhook error: Invalid payload")
        raise InvalidRequest("Invalid payload", code="invalid_payload") from e
    except stripe.SignatureVerificationError as e:
        logger.error("Webhook error: Invalid signature")
        raise InvalidRequest("Invalid signature", code="invalid_signature") from e

    try:
        return await process_webhook_event(event)
    except MarketplaceError:
        raise
    except Exception as e:
        logger.error(f"Error processing webhook event {event.get('id')}: {e}")
        raise MarketplaceError("Webhook processing error", code="webhook_processing_error") from e


@router.post("/terminal/connection-token")
@limiter.limit(RATE_LIMIT_PAYMENT)
async def terminal_connection_token(request: Request):
    """Connection token for the creator's card reader."""
    body = await parse_body(request, UserReference, "terminal")
    return await create_terminal_connection_token(body.user_id)


@router.post("/terminal/payment-intent")
@limiter.limit(RATE_LIMIT_PAYMENT)
async def terminal_payment_intent(request: Request):
    """Card-present payment intent for the balance owed on a claim."""
    body = await parse_body(request, ClaimReference, "terminal")
    return await create_terminal_payment_intent(body.claim_id)


@router.post("/stripe/connect_link")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def stripe_connect_link(request: Request):
    """Stripe Connect authorize URL for a user."""
    body = await parse_body(request, UserReference, "connect")
    return {"url": build_connect_url(body.user_id)}


@router.get("/stripe/connect")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def stripe_connect(request: Request):
    """Redirect the acting user to Stripe Connect."""
    user_id = get_acting_user_id(request)
    return RedirectResponse(build_connect_url(user_id))


@router.get("/stripe/callback")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def stripe_callback(request: Request, code: str | None = None, state: str | None = None):
    """Stripe Connect OAuth callback."""
    redirect_url = await complete_connect(code, state)
    return RedirectResponse(redirect_url)


@router.get("/stripe/status")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def stripe_status(request: Request):
    """Capability flags of the user's connected account."""
    user_id = get_acting_user_id(request)
    return await get_connect_status(user_id)


@router.post("/paypal/orders")
@limiter.limit(RATE_LIMIT_PAYMENT)
async def create_paypal_order(request: Request):
    """Create a PayPal order for the amount due on a claim."""
    body = await parse_body(request, ClaimReference, "paypal order")
    client = get_http_client(request)
    return await create_order_for_claim(client, body.claim_id)


@router.post("/paypal/orders/{order_id}/capture")
@limiter.limit(RATE_LIMIT_PAYMENT)
async def capture_paypal_order(request: Request, order_id: str):
    """Capture an approved PayPal order."""
    client = get_http_client(request)
    return await capture_order(client, order_id)
