# src/core/db/referrals.py

from __future__ import annotations

import asyncpg


async def insert_referral_link(conn: asyncpg.Connection, *, code: str, inviter_id: int, offer_id: int) -> bool:
    """紹介リンクを作成する（コード重複時は False）"""
    result = await conn.execute(
        """
        INSERT INTO referral_links (code, inviter_id, offer_id)
        VALUES ($1, $2, $3)
        ON CONFLICT (code) DO NOTHING
        """,
        code,
        inviter_id,
        offer_id,
    )
    return result == "INSERT 0 1"


async def get_referral_link(conn: asyncpg.Connection, code: str) -> dict | None:
    """コードで紹介リンクを取得する"""
    row = await conn.fetchrow(
        "SELECT code, inviter_id, offer_id, created_at FROM referral_links WHERE code = $1",
        code,
    )
    return dict(row) if row else None
