import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone

from src.core import db


def generate_stripe_signature(payload: str, secret: str, timestamp: int | None = None) -> str:
    timestamp = str(timestamp if timestamp is not None else int(time.time()))
    signed_payload = f"{timestamp}.{payload}"
    signature = hmac.new(
        secret.encode(),
        signed_payload.encode(),
        hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


async def create_user(name: str = "Ada Host", role: str = "creator", username: str | None = None) -> dict:
    async with db.transaction() as conn:
        return await db.insert_user(conn, name=name, role=role, username=username)


async def create_offer(
    creator_id: int,
    *,
    price_cents: int = 5000,
    deposit_cents: int = 1000,
    payment_mode: str = "deposit",
    capacity: int = 1,
) -> dict:
    async with db.transaction() as conn:
        return await db.insert_offer(
            conn,
            creator_id=creator_id,
            title="Portrait session",
            price_cents=price_cents,
            deposit_cents=deposit_cents,
            payment_mode=payment_mode,
            capacity=capacity,
            location_text="Studio 4",
        )


async def create_slot(offer_id: int, remaining_capacity: int = 1) -> dict:
    start_at = datetime.now(timezone.utc) + timedelta(days=1)
    async with db.transaction() as conn:
        return await db.insert_slot(
            conn,
            offer_id=offer_id,
            start_at=start_at,
            end_at=start_at + timedelta(hours=1),
            remaining_capacity=remaining_capacity,
        )


async def add_payment(claim_id: int, status: str, amount_cents: int = 1000, provider_ref: str | None = None) -> dict:
    async with db.transaction() as conn:
        return await db.insert_payment(
            conn,
            claim_id=claim_id,
            amount_cents=amount_cents,
            status=status,
            provider="stripe",
            provider_ref=provider_ref,
        )


async def fetch_all(query: str, *args) -> list[dict]:
    async with db.connection() as conn:
        return [dict(r) for r in await conn.fetch(query, *args)]


async def fetch_value(query: str, *args):
    async with db.connection() as conn:
        return await conn.fetchval(query, *args)
