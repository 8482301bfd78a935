# src/core/dependencies.py

import base64
import hmac
import hashlib
import json
import time
from typing import TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError
import httpx

from src.core.config import STATE_SECRET, OAUTH_STATE_MAX_AGE
from src.core.db import connection, get_user
from src.core.errors import InvalidRequest, Unauthorized, UserNotFound

ModelT = TypeVar("ModelT", bound=BaseModel)


def sign_value(value: str) -> str:
    """Sign a value with HMAC-SHA256."""
    sig = hmac.new(STATE_SECRET.encode(), value.encode(), hashlib.sha256).hexdigest()
    return f"{value}.{sig}"


def verify_signed_value(signed: str | None) -> str | None:
    """Verify and extract a signed value."""
    if not signed or "." not in signed:
        return None
    value, sig = signed.rsplit(".", 1)
    expected = hmac.new(STATE_SECRET.encode(), value.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(sig, expected):
        return None
    return value


def encode_state(user_id: int) -> str:
    """Build the signed OAuth state for a payment-account connection."""
    payload = json.dumps({"user_id": user_id, "issued_at": int(time.time())}, separators=(",", ":"))
    raw = base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")
    return sign_value(raw)


def decode_state(state: str | None) -> int | None:
    """Return the user id carried by a valid, unexpired OAuth state."""
    raw = verify_signed_value(state)
    if not raw:
        return None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (ValueError, TypeError):
        return None

    if not isinstance(payload, dict):
        return None
    user_id = payload.get("user_id")
    issued_at = payload.get("issued_at")
    if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
        return None
    if not isinstance(issued_at, int) or time.time() - issued_at > OAUTH_STATE_MAX_AGE:
        return None
    return user_id


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get the shared HTTP client from app state."""
    return request.app.state.http_client


def parse_positive_id(value) -> int | None:
    """Accept a positive integer id from a header, query, metadata or path value."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        value = value.strip()
        if value.isascii() and value.isdigit():
            parsed = int(value)
            return parsed if parsed > 0 else None
    return None


def get_acting_user_id(request: Request) -> int:
    """Read the acting user id from the x-user-id header or user_id query, or raise 401."""
    user_id = parse_positive_id(request.headers.get("x-user-id"))
    if user_id is None:
        user_id = parse_positive_id(request.query_params.get("user_id"))
    if user_id is None:
        raise Unauthorized()
    return user_id


async def get_acting_user(request: Request) -> dict:
    """Load the acting user or raise 401/404."""
    user_id = get_acting_user_id(request)
    async with connection() as conn:
        user = await get_user(conn, user_id)
    if not user:
        raise UserNotFound()
    return user


def require_positive_id(value: int, what: str = "id") -> int:
    """Path ids must be positive."""
    if value <= 0:
        raise InvalidRequest(f"Invalid {what}")
    return value


async def parse_body(request: Request, model: type[ModelT], what: str) -> ModelT:
    """Parse the JSON body into a request model, or raise 400."""
    try:
        raw_data = await request.json()
        return model(**raw_data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise InvalidRequest(f"Invalid {what} payload: {location} {first['msg']}".strip()) from e
    except (ValueError, TypeError) as e:
        raise InvalidRequest(f"Invalid {what} payload") from e
