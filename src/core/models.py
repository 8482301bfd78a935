# src/core/models.py

from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Literal, Any

from src.core.config import (
    EVENT_TYPES,
    PAYMENT_MODES,
    DEFAULT_PAYMENT_MODE,
    MAX_TITLE_LENGTH,
    MAX_TEXT_LENGTH,
    MAX_HANDLE_LENGTH,
    MAX_SLOTS_PER_OFFER,
)

# IDs arrive as JSON numbers; strings and booleans are rejected.
_ID = dict(gt=0, strict=True)


def _strip_control(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if any(ord(c) < 32 for c in v):
        raise ValueError('contains invalid control characters')
    return v


class UserCreate(BaseModel):
    """User registration request model."""
    name: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    role: Literal["creator", "customer"] = "creator"
    bio: str = Field("", max_length=MAX_TEXT_LENGTH)
    phone: str = Field("", max_length=40)
    image_url: Optional[str] = Field(None, max_length=2048)
    username: Optional[str] = Field(None, max_length=MAX_HANDLE_LENGTH)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = _strip_control(v)
        if not v:
            raise ValueError('name must not be blank')
        return v

    @field_validator('username')
    @classmethod
    def normalize_username(cls, v: Optional[str]) -> Optional[str]:
        v = _strip_control(v)
        return v.lower() if v else None


class UserUpdate(BaseModel):
    """Partial user update request model."""
    name: Optional[str] = Field(None, min_length=1, max_length=MAX_TITLE_LENGTH)
    role: Optional[Literal["creator", "customer"]] = None
    bio: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    phone: Optional[str] = Field(None, max_length=40)
    image_url: Optional[str] = Field(None, max_length=2048)
    username: Optional[str] = Field(None, min_length=1, max_length=MAX_HANDLE_LENGTH)

    @field_validator('name', 'bio', 'phone')
    @classmethod
    def strip_whitespace(cls, v: Optional[str]) -> Optional[str]:
        return _strip_control(v)

    @field_validator('username')
    @classmethod
    def normalize_username(cls, v: Optional[str]) -> Optional[str]:
        v = _strip_control(v)
        return v.lower() if v else None

    def to_update_dict(self) -> dict:
        """Convert to dict excluding None values."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


class MeUpdate(BaseModel):
    """Profile update for the acting user."""
    name: Optional[str] = Field(None, max_length=MAX_TITLE_LENGTH)
    photo_url: Optional[str] = Field(None, max_length=2048)
    handle: Optional[str] = Field(None, max_length=MAX_HANDLE_LENGTH)

    @field_validator('name', 'photo_url', 'handle')
    @classmethod
    def strip_whitespace(cls, v: Optional[str]) -> Optional[str]:
        return _strip_control(v)

    def to_update_dict(self) -> dict:
        """Map onto user columns, ignoring blank values."""
        updates = {}
        if self.name:
            updates["name"] = self.name
        if self.photo_url:
            updates["image_url"] = self.photo_url
        if self.handle:
            updates["username"] = self.handle.lower()
        return updates


class SlotInput(BaseModel):
    """Slot definition inside an offer creation request."""
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    remaining_capacity: Optional[int] = Field(None, ge=0)


class OfferCreate(BaseModel):
    """Offer creation request model."""
    creator_id: int = Field(..., **_ID)
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    price_cents: int = Field(..., ge=0, strict=True)
    deposit_cents: int = Field(0, ge=0, strict=True)
    capacity: int = Field(..., gt=0, strict=True)
    location_text: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    description: str = Field("", max_length=MAX_TEXT_LENGTH)
    image_url: Optional[str] = Field(None, max_length=2048)
    payment_mode: Optional[str] = None
    slots: list[SlotInput] = Field(default_factory=list, max_length=MAX_SLOTS_PER_OFFER)

    @field_validator('title', 'location_text')
    @classmethod
    def require_text(cls, v: str) -> str:
        v = _strip_control(v)
        if not v:
            raise ValueError('must not be blank')
        return v

    @field_validator('payment_mode')
    @classmethod
    def normalize_payment_mode(cls, v: Optional[str]) -> str:
        # 未知のモードは deposit として扱う
        if v in PAYMENT_MODES:
            return v
        return DEFAULT_PAYMENT_MODE

    @property
    def resolved_payment_mode(self) -> str:
        return self.payment_mode or DEFAULT_PAYMENT_MODE


class ClaimCreate(BaseModel):
    """Claim request model."""
    offer_id: int = Field(..., **_ID)
    user_id: int = Field(..., **_ID)
    slot_id: Optional[int] = Field(None, **_ID)
    address: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    referral_code: Optional[str] = Field(None, max_length=32)

    @field_validator('address', 'referral_code')
    @classmethod
    def strip_whitespace(cls, v: Optional[str]) -> Optional[str]:
        v = _strip_control(v)
        return v or None


class CheckoutSessionRequest(BaseModel):
    """Hosted checkout request model."""
    claim_id: int = Field(..., **_ID)
    return_path: Optional[str] = Field(None, max_length=512)


class SessionInitRequest(BaseModel):
    """Walk-up session request model."""
    host_handle: str = Field(..., min_length=1, max_length=MAX_HANDLE_LENGTH)
    amount_cents: int = Field(..., ge=0, strict=True)

    @field_validator('host_handle')
    @classmethod
    def normalize_handle(cls, v: str) -> str:
        v = _strip_control(v).lstrip("@").lower()
        if not v:
            raise ValueError('host_handle must not be blank')
        return v


class ClaimReference(BaseModel):
    """Request body carrying only a claim id."""
    claim_id: int = Field(..., **_ID)


class UserReference(BaseModel):
    """Request body carrying only a user id."""
    user_id: int = Field(..., **_ID)


class ReferralCreate(BaseModel):
    """Referral link request model."""
    inviter_id: int = Field(..., **_ID)
    offer_id: int = Field(..., **_ID)


class EventCreate(BaseModel):
    """Client-reported event request model."""
    user_id: int = Field(..., **_ID)
    type: str
    ref_id: Optional[int] = Field(None, **_ID)
    metadata: Optional[dict[str, Any]] = None

    @field_validator('type')
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in EVENT_TYPES:
            raise ValueError(f'type must be one of {", ".join(EVENT_TYPES)}')
        return v
