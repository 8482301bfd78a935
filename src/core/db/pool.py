# src/core/db/pool.py

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None
_init_lock = asyncio.Lock()

SCHEMA = """
CREATE TABLE IF NOT EXISTS users
(
    id                      BIGSERIAL PRIMARY KEY,
    name                    TEXT        NOT NULL,
    role                    TEXT        NOT NULL DEFAULT 'creator'
        CHECK (role IN ('creator', 'customer')),
    bio                     TEXT        NOT NULL DEFAULT '',
    phone                   TEXT        NOT NULL DEFAULT '',
    image_url               TEXT,
    username                TEXT,
    payment_account_id      TEXT,
    payment_access_token    TEXT,
    payment_refresh_token   TEXT,
    payment_publishable_key TEXT,
    payment_account_email   TEXT,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_users_username_lower
    ON users (LOWER(username));

CREATE TABLE IF NOT EXISTS offers
(
    id            BIGSERIAL PRIMARY KEY,
    creator_id    BIGINT      NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    title         TEXT        NOT NULL,
    price_cents   INTEGER     NOT NULL CHECK (price_cents >= 0),
    deposit_cents INTEGER     NOT NULL DEFAULT 0 CHECK (deposit_cents >= 0),
    payment_mode  TEXT        NOT NULL DEFAULT 'deposit'
        CHECK (payment_mode IN ('deposit', 'full', 'pay_in_person')),
    capacity      INTEGER     NOT NULL CHECK (capacity > 0),
    location_text TEXT        NOT NULL DEFAULT '',
    description   TEXT        NOT NULL DEFAULT '',
    image_url     TEXT,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_offers_creator_id ON offers (creator_id);

CREATE TABLE IF NOT EXISTS offer_slots
(
    id                 BIGSERIAL PRIMARY KEY,
    offer_id           BIGINT      NOT NULL REFERENCES offers (id) ON DELETE CASCADE,
    start_at           TIMESTAMPTZ NOT NULL,
    end_at             TIMESTAMPTZ NOT NULL,
    remaining_capacity INTEGER     NOT NULL CHECK (remaining_capacity >= 0)
);

CREATE INDEX IF NOT EXISTS idx_offer_slots_offer_id ON offer_slots (offer_id);

CREATE TABLE IF NOT EXISTS claims
(
    id                        BIGSERIAL PRIMARY KEY,
    offer_id                  BIGINT      NOT NULL REFERENCES offers (id) ON DELETE CASCADE,
    user_id                   BIGINT      NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    slot_id                   BIGINT REFERENCES offer_slots (id) ON DELETE SET NULL,
    address                   TEXT,
    deposit_cents             INTEGER     NOT NULL DEFAULT 0,
    status                    TEXT        NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'deposit_paid', 'redeemed')),
    deposit_payment_intent_id TEXT,
    balance_payment_intent_id TEXT,
    redeemed_at               TIMESTAMPTZ,
    created_at                TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_claims_offer_id ON claims (offer_id);
CREATE INDEX IF NOT EXISTS idx_claims_user_id ON claims (user_id);

CREATE TABLE IF NOT EXISTS payments
(
    id           BIGSERIAL PRIMARY KEY,
    claim_id     BIGINT      NOT NULL REFERENCES claims (id) ON DELETE CASCADE,
    amount_cents INTEGER     NOT NULL CHECK (amount_cents >= 0),
    status       TEXT        NOT NULL
        CHECK (status IN ('pending', 'paid', 'succeeded', 'zero', 'expired')),
    provider     TEXT        NOT NULL,
    provider_ref TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_provider_ref
    ON payments (provider_ref) WHERE provider_ref IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_payments_claim_id ON payments (claim_id, created_at DESC);

-- 放棄されたチェックアウトの行は expired にする
DO $$
BEGIN
    IF NOT EXISTS (SELECT 1
                   FROM pg_constraint
                   WHERE conname = 'payments_status_check'
                     AND pg_get_constraintdef(oid) LIKE '%expired%') THEN
        ALTER TABLE payments DROP CONSTRAINT IF EXISTS payments_status_check;
        ALTER TABLE payments ADD CONSTRAINT payments_status_check
            CHECK (status IN ('pending', 'paid', 'succeeded', 'zero', 'expired'));
    END IF;
END $$;

CREATE TABLE IF NOT EXISTS redemptions
(
    id          BIGSERIAL PRIMARY KEY,
    claim_id    BIGINT      NOT NULL UNIQUE REFERENCES claims (id) ON DELETE CASCADE,
    redeemed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS events
(
    id         BIGSERIAL PRIMARY KEY,
    user_id    BIGINT      NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    type       TEXT        NOT NULL,
    ref_id     BIGINT,
    metadata   JSONB       NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_events_user_id ON events (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_events_ref_id ON events (ref_id);

CREATE TABLE IF NOT EXISTS referral_links
(
    code       TEXT PRIMARY KEY,
    inviter_id BIGINT      NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    offer_id   BIGINT      NOT NULL REFERENCES offers (id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS processed_stripe_events
(
    event_id     TEXT PRIMARY KEY,
    event_type   TEXT,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

# テスト用に全テーブルを空にする順序
TABLES = (
    "processed_stripe_events",
    "referral_links",
    "events",
    "redemptions",
    "payments",
    "claims",
    "offer_slots",
    "offers",
    "users",
)


def _require_pool() -> asyncpg.Pool:
    """プールが初期化されていることを確認して返す"""
    if _pool is None:
        raise RuntimeError("Database pool is not initialized. Call init_db() on startup.")
    return _pool


async def init_db(database_url: str, *, min_size: int = 1, max_size: int = 10) -> None:
    """Initialize asyncpg pool and ensure required tables exist."""
    global _pool

    if _pool is not None:
        return

    async with _init_lock:
        if _pool is not None:
            return

        pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
        try:
            async with pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except BaseException:
            await pool.close()
            raise

        _pool = pool
        logger.info("Database initialized successfully.")


async def close_db() -> None:
    """Close asyncpg pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database connection closed.")


@asynccontextmanager
async def connection() -> AsyncIterator[asyncpg.Connection]:
    """プールから接続を借りる（読み取り用）"""
    pool = _require_pool()
    async with pool.acquire() as conn:
        yield conn


@asynccontextmanager
async def transaction() -> AsyncIterator[asyncpg.Connection]:
    """トランザクション付きの接続を借りる。例外時はロールバックされる"""
    pool = _require_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


async def healthcheck() -> dict[str, Any]:
    """Simple DB healthcheck helper."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        value = await conn.fetchval("SELECT 1")
    return {"ok": value == 1}
