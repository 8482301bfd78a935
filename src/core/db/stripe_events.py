# src/core/db/stripe_events.py

from __future__ import annotations

import asyncpg


async def claim_event(conn: asyncpg.Connection, event_id: str, event_type: str) -> bool:
    """
    Stripeイベントを処理済みとして登録する。
    既に登録済みなら False（呼び出し側のトランザクションがロールバックされれば登録も取り消される）
    """
    result = await conn.execute(
        """
        INSERT INTO processed_stripe_events (event_id, event_type)
        VALUES ($1, $2)
        ON CONFLICT DO NOTHING
        """,
        event_id,
        event_type,
    )
    return result == "INSERT 0 1"


async def is_event_processed(conn: asyncpg.Connection, event_id: str) -> bool:
    """Stripeイベントが処理済みか確認する"""
    return await conn.fetchval(
        "SELECT EXISTS(SELECT 1 FROM processed_stripe_events WHERE event_id = $1)",
        event_id,
    )


async def purge_processed_events(conn: asyncpg.Connection, retention_days: int) -> int:
    """保持期間を過ぎた処理済みイベントを削除する"""
    result = await conn.execute(
        "DELETE FROM processed_stripe_events WHERE processed_at < now() - make_interval(days => $1)",
        retention_days,
    )
    return int(result.split()[-1])
