# src/core/db/claims.py

from __future__ import annotations

import asyncpg

CLAIM_COLUMNS = (
    "id, offer_id, user_id, slot_id, address, deposit_cents, status, "
    "deposit_payment_intent_id, balance_payment_intent_id, redeemed_at, created_at"
)

# claim と offer を結合した決済・引換用のビュー
_CLAIM_CONTEXT = """
    SELECT c.id, c.offer_id, c.user_id, c.slot_id, c.address, c.deposit_cents, c.status,
           c.deposit_payment_intent_id, c.balance_payment_intent_id, c.redeemed_at, c.created_at,
           o.creator_id, o.title, o.price_cents, o.payment_mode
    FROM claims c
             JOIN offers o ON o.id = c.offer_id
    WHERE c.id = $1
"""


async def insert_claim(
    conn: asyncpg.Connection,
    *,
    offer_id: int,
    user_id: int,
    slot_id: int | None,
    address: str | None,
    deposit_cents: int,
) -> dict:
    """申込を作成する（deposit_cents は作成時点のオファーから複製）"""
    row = await conn.fetchrow(
        f"""
        INSERT INTO claims (offer_id, user_id, slot_id, address, deposit_cents, status)
        VALUES ($1, $2, $3, $4, $5, 'pending')
        RETURNING {CLAIM_COLUMNS}
        """,
        offer_id,
        user_id,
        slot_id,
        address,
        deposit_cents,
    )
    return dict(row)


async def get_claim(conn: asyncpg.Connection, claim_id: int) -> dict | None:
    """IDで申込を取得する"""
    row = await conn.fetchrow(f"SELECT {CLAIM_COLUMNS} FROM claims WHERE id = $1", claim_id)
    return dict(row) if row else None


async def get_claim_context(conn: asyncpg.Connection, claim_id: int, *, for_update: bool = False) -> dict | None:
    """申込をオファー情報付きで取得する（for_update で申込行をロック）"""
    query = _CLAIM_CONTEXT + (" FOR UPDATE OF c" if for_update else "")
    row = await conn.fetchrow(query, claim_id)
    return dict(row) if row else None


async def mark_deposit_paid(conn: asyncpg.Connection, claim_id: int, payment_intent_id: str | None) -> None:
    """デポジット支払済みにする（引換済みの申込は巻き戻さない）"""
    await conn.execute(
        """
        UPDATE claims
        SET status                    = CASE WHEN status = 'redeemed' THEN status ELSE 'deposit_paid' END,
            deposit_payment_intent_id = COALESCE($2, deposit_payment_intent_id)
        WHERE id = $1
        """,
        claim_id,
        payment_intent_id,
    )


async def mark_redeemed(
    conn: asyncpg.Connection,
    claim_id: int,
    balance_payment_intent_id: str | None = None,
) -> dict | None:
    """引換済みにする（redeemed_at は最初の値を保持）"""
    row = await conn.fetchrow(
        f"""
        UPDATE claims
        SET status                    = 'redeemed',
            redeemed_at               = COALESCE(redeemed_at, now()),
            balance_payment_intent_id = COALESCE($2, balance_payment_intent_id)
        WHERE id = $1
        RETURNING {CLAIM_COLUMNS}
        """,
        claim_id,
        balance_payment_intent_id,
    )
    return dict(row) if row else None


async def list_host_sessions(conn: asyncpg.Connection, creator_id: int, status: str | None = None) -> list[dict]:
    """ホストのセッション（申込）一覧を取得する"""
    if status == "pending":
        status_filter = "AND c.status IN ('pending', 'deposit_paid')"
    elif status == "redeemed":
        status_filter = "AND c.status = 'redeemed'"
    else:
        status_filter = ""

    rows = await conn.fetch(
        f"""
        SELECT c.id, c.status, c.created_at, c.redeemed_at,
               o.price_cents AS amount_cents, o.title,
               u.name AS guest_name
        FROM claims c
                 JOIN offers o ON o.id = c.offer_id
                 JOIN users u ON u.id = c.user_id
        WHERE o.creator_id = $1 {status_filter}
        ORDER BY c.created_at DESC, c.id DESC
        """,
        creator_id,
    )
    return [dict(r) for r in rows]
