# src/core/db/offers.py

from __future__ import annotations

import asyncpg

OFFER_COLUMNS = (
    "id, creator_id, title, price_cents, deposit_cents, payment_mode, capacity, "
    "location_text, description, image_url, created_at"
)


async def insert_offer(
    conn: asyncpg.Connection,
    *,
    creator_id: int,
    title: str,
    price_cents: int,
    deposit_cents: int,
    payment_mode: str,
    capacity: int,
    location_text: str,
    description: str = "",
    image_url: str | None = None,
) -> dict:
    """オファーを作成する"""
    row = await conn.fetchrow(
        f"""
        INSERT INTO offers (creator_id, title, price_cents, deposit_cents, payment_mode,
                            capacity, location_text, description, image_url)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        RETURNING {OFFER_COLUMNS}
        """,
        creator_id,
        title,
        price_cents,
        deposit_cents,
        payment_mode,
        capacity,
        location_text,
        description,
        image_url,
    )
    return dict(row)


async def get_offer(conn: asyncpg.Connection, offer_id: int) -> dict | None:
    """IDでオファーを取得する"""
    row = await conn.fetchrow(f"SELECT {OFFER_COLUMNS} FROM offers WHERE id = $1", offer_id)
    return dict(row) if row else None


async def list_offers_with_claim_counts(conn: asyncpg.Connection, creator_id: int) -> list[dict]:
    """クリエイターのオファー一覧を申込数付きで取得する"""
    rows = await conn.fetch(
        """
        SELECT o.id, o.creator_id, o.title, o.price_cents, o.deposit_cents, o.payment_mode, o.capacity,
               o.location_text, o.description, o.image_url, o.created_at,
               COUNT(c.id)::INT AS claimed_count
        FROM offers o
                 LEFT JOIN claims c ON c.offer_id = o.id
        WHERE o.creator_id = $1
        GROUP BY o.id
        ORDER BY o.created_at DESC, o.id DESC
        """,
        creator_id,
    )
    return [dict(r) for r in rows]
