# backend/models/trade.py
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator
from typing import Optional


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stores without tz support (SQLite) hand back naive UTC timestamps
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============== Enums ==============

class OfferStatus(str, Enum):
    """Offer lifecycle states. ACTIVE is the only non-terminal state."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not OfferStatus.ACTIVE


class TradeRole(str, Enum):
    """A party's role in a completed exchange."""
    SELLER = "seller"  # offer owner
    BUYER = "buyer"  # accepting party


# ============== Base Schemas ==============

class TradeItem(BaseModel):
    """An item line in an offer."""
    item_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, description="Number of units to trade")


class ExchangedItems(BaseModel):
    """Frozen snapshot of both sides of a completed exchange."""
    offered: list[TradeItem]
    requested: list[TradeItem]

    model_config = ConfigDict(frozen=True)


# ============== Records ==============

class TradeOffer(BaseModel):
    """A proposed item-for-item exchange awaiting a counterparty."""
    id: str
    owner_id: str
    owner_display_name: Optional[str] = None
    offering_items: list[TradeItem]
    requesting_items: list[TradeItem]
    status: OfferStatus = OfferStatus.ACTIVE
    message: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    # Set iff status == completed
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    completed_by_display_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    ensure_utc = field_validator("created_at", "expires_at", "completed_at")(_as_utc)

    def is_open(self, now: datetime) -> bool:
        """Active and not yet past its deadline."""
        return self.status is OfferStatus.ACTIVE and self.expires_at > now


class TradeHistory(BaseModel):
    """Immutable record of a completed exchange, plus one rating per party."""
    id: str
    offer_id: str
    seller_id: str
    seller_display_name: Optional[str] = None
    buyer_id: str
    buyer_display_name: Optional[str] = None
    items_exchanged: ExchangedItems
    completed_at: datetime

    seller_rating: Optional[int] = Field(default=None, ge=1, le=5)
    seller_comment: Optional[str] = None
    buyer_rating: Optional[int] = Field(default=None, ge=1, le=5)
    buyer_comment: Optional[str] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)

    ensure_utc = field_validator("completed_at")(_as_utc)

    def role_of(self, account_id: str) -> Optional[TradeRole]:
        if account_id == self.seller_id:
            return TradeRole.SELLER
        if account_id == self.buyer_id:
            return TradeRole.BUYER
        return None


# ============== Action Schemas ==============

class OfferCreate(BaseModel):
    """Schema for posting a new trade offer."""
    offering_items: list[TradeItem] = Field(
        default=[],
        description="Items the owner puts up (held by the offer until it resolves)"
    )
    requesting_items: list[TradeItem] = Field(
        default=[],
        description="Items the owner wants in return"
    )
    message: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Optional message shown with the offer"
    )
    valid_hours: Optional[int] = Field(
        default=None,
        description="Offer lifetime in hours; the server default applies when omitted"
    )


class TradeRatingCreate(BaseModel):
    """Schema for rating a completed trade."""
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


# ============== Response Schemas ==============

class AcceptTradeResponse(BaseModel):
    """Outcome of the atomic accept operation."""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    offer_id: Optional[str] = None
    history_id: Optional[str] = None


class SweepResponse(BaseModel):
    """Result of an expiration sweep."""
    expired_offer_ids: list[str] = []
    failed_offer_ids: list[str] = []

    @computed_field
    @property
    def expired_count(self) -> int:
        return len(self.expired_offer_ids)


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    detail: Optional[str] = None
