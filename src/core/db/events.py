# src/core/db/events.py

from __future__ import annotations

import json

import asyncpg

# ref_id が claims.id を指すイベント
CLAIM_REF_TYPES = [
    "OFFER_CLAIMED",
    "REDEMPTION_COMPLETED",
    "DEPOSIT_PAID",
    "REDEEMED_IRL",
    "REFERRAL_CONVERTED",
]

# ref_id が offers.id を指すイベント
OFFER_REF_TYPES = [
    "OFFER_CREATED",
    "OFFER_VIEWED",
    "REFERRAL_INVITE_SENT",
]

_FEED_SELECT = """
    SELECT e.id, e.user_id, e.type, e.ref_id, e.metadata, e.created_at,
           u.name AS actor_name,
           o.title AS offer_title
    FROM events e
             LEFT JOIN claims c ON e.type = ANY($2::TEXT[]) AND c.id = e.ref_id
             LEFT JOIN offers o ON (e.type = ANY($2::TEXT[]) AND o.id = c.offer_id)
                OR (e.type = ANY($3::TEXT[]) AND o.id = e.ref_id)
             LEFT JOIN users u ON u.id = c.user_id
"""


def _to_event(row: asyncpg.Record) -> dict:
    event = dict(row)
    raw_metadata = event.get("metadata")
    if isinstance(raw_metadata, str):
        event["metadata"] = json.loads(raw_metadata)
    return event


async def append_event(
    conn: asyncpg.Connection,
    *,
    user_id: int,
    type: str,
    ref_id: int | None = None,
    metadata: dict | None = None,
) -> dict:
    """イベントを追記する（呼び出し側のトランザクションと一緒にコミットされる）"""
    row = await conn.fetchrow(
        """
        INSERT INTO events (user_id, type, ref_id, metadata)
        VALUES ($1, $2, $3, $4)
        RETURNING id, user_id, type, ref_id, metadata, created_at
        """,
        user_id,
        type,
        ref_id,
        json.dumps(metadata or {}),
    )
    return _to_event(row)


async def list_for_user(conn: asyncpg.Connection, user_id: int, limit: int) -> list[dict]:
    """ユーザー宛のイベント（受信箱）を新しい順に取得する"""
    rows = await conn.fetch(
        _FEED_SELECT
        + """
        WHERE e.user_id = $1
        ORDER BY e.created_at DESC, e.id DESC
        LIMIT $4
        """,
        user_id,
        CLAIM_REF_TYPES,
        OFFER_REF_TYPES,
        limit,
    )
    return [_to_event(r) for r in rows]


async def list_for_offer(conn: asyncpg.Connection, offer_id: int, limit: int) -> list[dict]:
    """オファーに関するイベントを新しい順に取得する"""
    rows = await conn.fetch(
        _FEED_SELECT
        + """
        WHERE o.id = $1
        ORDER BY e.created_at DESC, e.id DESC
        LIMIT $4
        """,
        offer_id,
        CLAIM_REF_TYPES,
        OFFER_REF_TYPES,
        limit,
    )
    return [_to_event(r) for r in rows]


async def count_events(conn: asyncpg.Connection, user_id: int, type: str) -> int:
    """ユーザー宛の特定種別のイベント数を数える"""
    return await conn.fetchval(
        "SELECT COUNT(*) FROM events WHERE user_id = $1 AND type = $2",
        user_id,
        type,
    )
