# src/core/db/offer_slots.py

from __future__ import annotations

from datetime import datetime
from enum import Enum

import asyncpg

SLOT_COLUMNS = "id, offer_id, start_at, end_at, remaining_capacity"


class SlotReservation(str, Enum):
    RESERVED = "reserved"
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"


async def insert_slot(
    conn: asyncpg.Connection,
    *,
    offer_id: int,
    start_at: datetime,
    end_at: datetime,
    remaining_capacity: int,
) -> dict:
    """スロットを作成する"""
    row = await conn.fetchrow(
        f"""
        INSERT INTO offer_slots (offer_id, start_at, end_at, remaining_capacity)
        VALUES ($1, $2, $3, $4)
        RETURNING {SLOT_COLUMNS}
        """,
        offer_id,
        start_at,
        end_at,
        remaining_capacity,
    )
    return dict(row)


async def list_slots(conn: asyncpg.Connection, offer_id: int) -> list[dict]:
    """オファーのスロットを開始時刻順に取得する"""
    rows = await conn.fetch(
        f"SELECT {SLOT_COLUMNS} FROM offer_slots WHERE offer_id = $1 ORDER BY start_at, id",
        offer_id,
    )
    return [dict(r) for r in rows]


async def reserve_slot_unit(conn: asyncpg.Connection, slot_id: int, offer_id: int) -> SlotReservation:
    """
    スロットの残り枠を1つ確保する。呼び出し側のトランザクション内で実行すること。
    行ロック中に残り枠を確認するので、同時申込でも負の値にはならない。
    """
    # スロット行をロック
    remaining = await conn.fetchval(
        "SELECT remaining_capacity FROM offer_slots WHERE id = $1 AND offer_id = $2 FOR UPDATE",
        slot_id,
        offer_id,
    )
    if remaining is None:
        return SlotReservation.NOT_FOUND

    if remaining <= 0:
        return SlotReservation.EXHAUSTED

    await conn.execute(
        "UPDATE offer_slots SET remaining_capacity = remaining_capacity - 1 WHERE id = $1",
        slot_id,
    )
    return SlotReservation.RESERVED
