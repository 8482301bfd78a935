# src/services/connect.py

import logging
from urllib.parse import urlencode

import asyncpg

from src.core.config import (
    STRIPE_CLIENT_ID,
    STRIPE_REDIRECT_BASE_URL,
    PUBLIC_BASE_URL,
    DEFAULT_CREATOR_NAME,
)
from src.core.db import (
    connection,
    transaction,
    get_user,
    get_payment_account,
    save_payment_account,
    update_user,
)
from src.core.dependencies import encode_state, decode_state
from src.core.errors import InvalidRequest, UserNotFound, NotConnected, UpstreamFailure
from src.services.stripe_service import (
    exchange_oauth_code,
    retrieve_account,
    get_account_status,
)

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://connect.stripe.com/oauth/authorize"


def build_connect_url(user_id: int) -> str:
    """Stripe Connect OAuth URL carrying a signed state for the user."""
    if not STRIPE_CLIENT_ID:
        raise UpstreamFailure("Stripe client id not configured", code="stripe_not_configured")

    params = {
        "response_type": "code",
        "client_id": STRIPE_CLIENT_ID,
        "scope": "read_write",
        "redirect_uri": f"{STRIPE_REDIRECT_BASE_URL}/api/stripe/callback",
        "state": encode_state(user_id),
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def _profile_updates(user: dict, account: dict) -> dict:
    """Fill empty profile fields from the connected account."""
    updates = {}
    current_name = user.get("name") or ""
    if (not current_name or current_name == DEFAULT_CREATOR_NAME) and account["name"]:
        updates["name"] = account["name"]
    if not user.get("phone") and account["phone"]:
        updates["phone"] = account["phone"]
    if not user.get("bio") and account["url"]:
        updates["bio"] = account["url"]
    if not user.get("username"):
        source = account["name"] or updates.get("name") or current_name
        if source and source.split():
            updates["username"] = source.split()[0].lower()
    return updates


async def complete_connect(code: str | None, state: str | None) -> str:
    """
    Finish the OAuth round-trip and return the frontend redirect URL.
    Invalid callbacks raise; provider failures redirect with connected=0.
    """
    if not code or not state:
        raise InvalidRequest("Invalid stripe callback")

    user_id = decode_state(state)
    if user_id is None:
        raise InvalidRequest("Invalid state", code="invalid_state")

    try:
        credentials = await exchange_oauth_code(code)
        account = await retrieve_account(credentials["account_id"])
    except (UpstreamFailure, InvalidRequest) as e:
        logger.error(f"Stripe Connect failed for user {user_id}: {e}")
        return f"{PUBLIC_BASE_URL}/?{urlencode({'connected': 0, 'user_id': user_id})}"

    async with transaction() as conn:
        user = await get_user(conn, user_id)
        if not user:
            raise UserNotFound()

        await save_payment_account(
            conn,
            user_id,
            account_id=credentials["account_id"],
            access_token=credentials["access_token"],
            refresh_token=credentials["refresh_token"],
            publishable_key=credentials["publishable_key"],
            account_email=account["email"],
        )

        updates = _profile_updates(user, account)
        if updates:
            try:
                async with conn.transaction():
                    await update_user(conn, user_id, updates)
            except asyncpg.UniqueViolationError:
                # ハンドルが既に使われている場合はハンドル以外を反映
                updates.pop("username", None)
                await update_user(conn, user_id, updates)

    logger.info(f"User {user_id} connected Stripe account {credentials['account_id']}")
    return f"{PUBLIC_BASE_URL}/?{urlencode({'connected': 1, 'user_id': user_id})}"


async def get_connect_status(user_id: int) -> dict:
    """Capability flags of the user's connected account."""
    async with connection() as conn:
        if not await get_user(conn, user_id):
            raise UserNotFound()
        account = await get_payment_account(conn, user_id)

    if account is None:
        raise NotConnected("Stripe account not connected", code="stripe_not_connected")

    return await get_account_status(account.account_id)
