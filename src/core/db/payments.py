# src/core/db/payments.py

from __future__ import annotations

from datetime import datetime

import asyncpg

PAYMENT_COLUMNS = "id, claim_id, amount_cents, status, provider, provider_ref, created_at"


async def insert_payment(
    conn: asyncpg.Connection,
    *,
    claim_id: int,
    amount_cents: int,
    status: str,
    provider: str,
    provider_ref: str | None = None,
) -> dict | None:
    """
    決済行を追加する。provider_ref が既に存在する場合は何もせず None を返す
    """
    row = await conn.fetchrow(
        f"""
        INSERT INTO payments (claim_id, amount_cents, status, provider, provider_ref)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (provider_ref) WHERE provider_ref IS NOT NULL DO NOTHING
        RETURNING {PAYMENT_COLUMNS}
        """,
        claim_id,
        amount_cents,
        status,
        provider,
        provider_ref,
    )
    return dict(row) if row else None


async def get_payment_by_ref(
    conn: asyncpg.Connection, provider_ref: str, *, for_update: bool = False
) -> dict | None:
    """provider_ref で決済行を取得する"""
    query = f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE provider_ref = $1"
    if for_update:
        query += " FOR UPDATE"
    row = await conn.fetchrow(query, provider_ref)
    return dict(row) if row else None


async def set_payment_status(conn: asyncpg.Connection, payment_id: int, status: str) -> None:
    """決済行のステータスを更新する"""
    await conn.execute("UPDATE payments SET status = $2 WHERE id = $1", payment_id, status)


async def get_latest_payment(conn: asyncpg.Connection, claim_id: int) -> dict | None:
    """申込の最新の決済行を取得する（expired は除く）"""
    row = await conn.fetchrow(
        f"""
        SELECT {PAYMENT_COLUMNS}
        FROM payments
        WHERE claim_id = $1
          AND status <> 'expired'
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        claim_id,
    )
    return dict(row) if row else None


async def list_pending_payments(
    conn: asyncpg.Connection, provider: str, older_than: datetime, limit: int = 100
) -> list[dict]:
    """一定時間以上 pending のままの決済行を取得する"""
    rows = await conn.fetch(
        f"""
        SELECT {PAYMENT_COLUMNS}
        FROM payments
        WHERE provider = $1
          AND status = 'pending'
          AND provider_ref IS NOT NULL
          AND created_at < $2
        ORDER BY created_at
        LIMIT $3
        """,
        provider,
        older_than,
        limit,
    )
    return [dict(r) for r in rows]


async def get_open_payment(conn: asyncpg.Connection, claim_id: int, provider: str) -> dict | None:
    """申込の未決済（pending）の決済行のうち最新のものを取得する"""
    row = await conn.fetchrow(
        f"""
        SELECT {PAYMENT_COLUMNS}
        FROM payments
        WHERE claim_id = $1
          AND provider = $2
          AND status = 'pending'
          AND provider_ref IS NOT NULL
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        claim_id,
        provider,
    )
    return dict(row) if row else None


async def expire_pending_payments(conn: asyncpg.Connection, claim_id: int, except_ref: str | None = None) -> int:
    """申込の残りの pending 行を expired にする"""
    result = await conn.execute(
        """
        UPDATE payments
        SET status = 'expired'
        WHERE claim_id = $1
          AND status = 'pending'
          AND provider_ref IS DISTINCT FROM $2
        """,
        claim_id,
        except_ref,
    )
    return int(result.split()[-1])
