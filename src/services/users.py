# src/services/users.py

import logging

import asyncpg

from src.core.config import PUBLIC_SESSIONS_LIMIT
from src.core.db import (
    connection,
    transaction,
    insert_user,
    get_user,
    get_user_by_username,
    update_user,
    get_last_paid_amount,
    list_public_redeemed_sessions,
)
from src.core.errors import UserNotFound, HandleTaken, InvalidRequest
from src.core.models import UserCreate

logger = logging.getLogger(__name__)


def default_handle(name: str) -> str:
    """First word of the display name, lowercased."""
    return name.strip().split()[0].lower()


async def register_user(payload: UserCreate) -> dict:
    """Create a user; the handle defaults to the first word of the name."""
    username = payload.username or default_handle(payload.name)
    try:
        async with transaction() as conn:
            user = await insert_user(
                conn,
                name=payload.name,
                role=payload.role,
                bio=payload.bio,
                phone=payload.phone,
                image_url=payload.image_url,
                username=username,
            )
    except asyncpg.UniqueViolationError as e:
        raise HandleTaken() from e

    logger.info(f"Registered user {user['id']} (@{username})")
    return user


async def update_profile(user_id: int, updates: dict) -> dict:
    """Apply a partial profile update; a taken handle is a conflict."""
    try:
        async with transaction() as conn:
            user = await update_user(conn, user_id, updates)
    except asyncpg.UniqueViolationError as e:
        raise HandleTaken() from e

    if not user:
        raise UserNotFound()
    return user


async def get_profile_user(user_id: int) -> dict:
    async with connection() as conn:
        user = await get_user(conn, user_id)
    if not user:
        raise UserNotFound()
    return user


async def get_public_profile(handle: str) -> dict:
    """Public page for a creator handle: identity, last paid amount, recent redeemed sessions."""
    handle = handle.strip().lower()
    if not handle:
        raise InvalidRequest("Invalid handle")

    async with connection() as conn:
        user = await get_user_by_username(conn, handle)
        if not user:
            raise UserNotFound()
        last_paid = await get_last_paid_amount(conn, user["id"])
        sessions = await list_public_redeemed_sessions(conn, user["id"], PUBLIC_SESSIONS_LIMIT)

    return {
        "user": {
            "id": user["id"],
            "handle": user["username"],
            "name": user["name"],
            "photo_url": user["image_url"],
        },
        "last_paid_amount_cents": last_paid,
        "redeemed_public_sessions": [
            {
                "id": s["id"],
                "amount_cents": s["amount_cents"],
                "redeemed_at": s["redeemed_at"],
                "proof_url": None,
            }
            for s in sessions
        ],
    }
