# src/core/db/redemptions.py

from __future__ import annotations

import asyncpg

REDEMPTION_COLUMNS = "id, claim_id, redeemed_at, created_at"


async def insert_redemption(conn: asyncpg.Connection, claim_id: int) -> tuple[dict, bool]:
    """
    引換記録を追加する（既存なら既存行を返す）
    Returns (row, created).
    """
    row = await conn.fetchrow(
        f"""
        INSERT INTO redemptions (claim_id)
        VALUES ($1)
        ON CONFLICT (claim_id) DO NOTHING
        RETURNING {REDEMPTION_COLUMNS}
        """,
        claim_id,
    )
    if row:
        return dict(row), True

    existing = await conn.fetchrow(
        f"SELECT {REDEMPTION_COLUMNS} FROM redemptions WHERE claim_id = $1",
        claim_id,
    )
    return dict(existing), False


async def get_last_paid_amount(conn: asyncpg.Connection, creator_id: int) -> int | None:
    """クリエイターが直近に引換えた有料セッションの金額を取得する"""
    return await conn.fetchval(
        """
        SELECT o.price_cents
        FROM redemptions r
                 JOIN claims c ON c.id = r.claim_id
                 JOIN offers o ON o.id = c.offer_id
        WHERE o.creator_id = $1
          AND o.price_cents > 0
        ORDER BY COALESCE(c.redeemed_at, r.redeemed_at) DESC NULLS LAST, r.id DESC
        LIMIT 1
        """,
        creator_id,
    )


async def count_creator_redemptions(conn: asyncpg.Connection, creator_id: int) -> int:
    """クリエイターのオファーに対する引換数（スコア）を取得する"""
    return await conn.fetchval(
        """
        SELECT COUNT(*)
        FROM redemptions r
                 JOIN claims c ON c.id = r.claim_id
                 JOIN offers o ON o.id = c.offer_id
        WHERE o.creator_id = $1
        """,
        creator_id,
    )


async def list_public_redeemed_sessions(conn: asyncpg.Connection, creator_id: int, limit: int) -> list[dict]:
    """公開プロフィール用に引換済みセッションを取得する"""
    rows = await conn.fetch(
        """
        SELECT r.claim_id AS id, o.price_cents AS amount_cents, r.redeemed_at
        FROM redemptions r
                 JOIN claims c ON c.id = r.claim_id
                 JOIN offers o ON o.id = c.offer_id
        WHERE o.creator_id = $1
        ORDER BY r.redeemed_at DESC NULLS LAST, r.id DESC
        LIMIT $2
        """,
        creator_id,
        limit,
    )
    return [dict(r) for r in rows]
