# src/core/db/users.py

from __future__ import annotations

from dataclasses import dataclass

import asyncpg

from src.core.crypto import encrypt, decrypt

USER_COLUMNS = "id, name, role, bio, phone, image_url, username, payment_account_id, created_at"

# PATCH で更新可能なカラム
UPDATABLE_COLUMNS = frozenset({"name", "role", "bio", "phone", "image_url", "username"})


@dataclass(frozen=True, slots=True)
class PaymentAccount:
    account_id: str
    access_token: str


async def insert_user(
    conn: asyncpg.Connection,
    *,
    name: str,
    role: str = "creator",
    bio: str = "",
    phone: str = "",
    image_url: str | None = None,
    username: str | None = None,
) -> dict:
    """ユーザーを作成する（ハンドル重複時は UniqueViolationError）"""
    row = await conn.fetchrow(
        f"""
        INSERT INTO users (name, role, bio, phone, image_url, username)
        VALUES ($1, $2, $3, $4, $5, $6)
        RETURNING {USER_COLUMNS}
        """,
        name,
        role,
        bio,
        phone,
        image_url,
        username,
    )
    return dict(row)


async def get_user(conn: asyncpg.Connection, user_id: int) -> dict | None:
    """IDでユーザーを取得する"""
    row = await conn.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE id = $1", user_id)
    return dict(row) if row else None


async def get_user_by_username(conn: asyncpg.Connection, username: str) -> dict | None:
    """ハンドル（大文字小文字を区別しない）でユーザーを取得する"""
    row = await conn.fetchrow(
        f"SELECT {USER_COLUMNS} FROM users WHERE LOWER(username) = LOWER($1)",
        username,
    )
    return dict(row) if row else None


async def update_user(conn: asyncpg.Connection, user_id: int, fields: dict) -> dict | None:
    """指定されたカラムのみ更新する"""
    updates = {k: v for k, v in fields.items() if k in UPDATABLE_COLUMNS}
    if not updates:
        return await get_user(conn, user_id)

    assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(updates, start=2))
    row = await conn.fetchrow(
        f"UPDATE users SET {assignments} WHERE id = $1 RETURNING {USER_COLUMNS}",
        user_id,
        *updates.values(),
    )
    return dict(row) if row else None


async def get_payment_account(conn: asyncpg.Connection, user_id: int) -> PaymentAccount | None:
    """接続済みの決済アカウントを取得する（未接続・復号失敗時は None）"""
    row = await conn.fetchrow(
        "SELECT payment_account_id, payment_access_token FROM users WHERE id = $1",
        user_id,
    )
    if not row or not row["payment_account_id"] or not row["payment_access_token"]:
        return None

    access_token = decrypt(row["payment_access_token"])
    if not access_token:
        return None
    return PaymentAccount(account_id=row["payment_account_id"], access_token=access_token)


async def save_payment_account(
    conn: asyncpg.Connection,
    user_id: int,
    *,
    account_id: str,
    access_token: str,
    refresh_token: str | None,
    publishable_key: str | None,
    account_email: str | None,
) -> None:
    """決済アカウントの接続情報を暗号化して保存する"""
    await conn.execute(
        """
        UPDATE users
        SET payment_account_id      = $2,
            payment_access_token    = $3,
            payment_refresh_token   = $4,
            payment_publishable_key = $5,
            payment_account_email   = $6
        WHERE id = $1
        """,
        user_id,
        account_id,
        encrypt(access_token),
        encrypt(refresh_token),
        publishable_key,
        account_email,
    )
