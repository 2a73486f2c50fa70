from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from giftsync.core.errors import SelectionPipelineError
from giftsync.core.money import from_cents, to_decimal

CACHE_STATE_VERSION = 1

LocalStatus = Literal["selected", "saved_for_later", "purchased"]
Bucket = Literal["selected", "saved_for_later"]
Origin = Literal["local", "remote"]

_camel_config = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "extra": "ignore",
}


def normalize_name(name: str) -> str:
    """Dedup key for gift names shared by the local cache and the remote store."""
    return " ".join(name.split()).lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SelectionMetadata(BaseModel):
    model_config = _camel_config

    model: str | None = None
    source: str | None = None
    confidence: float | None = None
    reasoning: str | None = None
    tags: list[str] = Field(default_factory=list)


class Candidate(BaseModel):
    """A gift suggestion as produced by the recommendation oracle.

    Name and price are optional here so that malformed input reaches the
    engine, which rejects it with ``InvalidSelectionError``.
    """

    model_config = _camel_config

    id: str | None = None
    name: str | None = None
    description: str | None = None
    price: Decimal | None = None
    category: str | None = None
    confidence: float | None = None
    reasoning: str | None = None
    tags: list[str] = Field(default_factory=list)
    image_url: str | None = None
    purchase_url: str | None = None
    asin: str | None = None
    availability: str | None = None
    estimated_delivery: str | None = None
    model: str | None = None

    @field_validator("name", "description", "category", "reasoning")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_list(cls, value: Any) -> list[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        return [str(tag) for tag in value if tag]


class StoredGift(BaseModel):
    model_config = _camel_config

    id: str
    name: str
    description: str | None = None
    price: Decimal = Decimal("0.00")
    category: str = "AI Recommended"
    recipient_id: str
    occasion_id: str
    selected_at: datetime = Field(default_factory=utcnow)
    status: LocalStatus = "selected"
    metadata: SelectionMetadata | None = None
    image_url: str | None = None
    purchase_url: str | None = None
    asin: str | None = None
    remote_id: int | None = None

    @field_validator("price", mode="before")
    @classmethod
    def _price_units(cls, value: Any) -> Decimal:
        return to_decimal(value)


class CacheState(BaseModel):
    model_config = _camel_config

    version: int = CACHE_STATE_VERSION
    selected_gifts: list[StoredGift] = Field(default_factory=list)
    saved_gifts: list[StoredGift] = Field(default_factory=list)
    recent_recommendations: dict[str, list[Candidate]] = Field(default_factory=dict)


class RemoteGiftCreate(BaseModel):
    recipient_id: str
    occasion_id: str
    name: str = Field(min_length=1)
    description: str | None = None
    price: int = Field(ge=0, description="minor currency units")
    category: str = "AI Recommended"
    status: str = "idea"
    is_ai_generated: bool = True
    image_url: str | None = None
    purchase_url: str | None = None
    asin: str | None = None
    notes: str | None = None
    ai_metadata: dict[str, Any] | None = None


class GiftRecord(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    user_id: int
    recipient_id: str
    occasion_id: str
    name: str
    description: str | None = None
    price: int
    category: str
    status: str
    is_ai_generated: bool
    image_url: str | None = None
    purchase_url: str | None = None
    asin: str | None = None
    notes: str | None = None
    ai_metadata: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def price_units(self) -> Decimal:
        return from_cents(self.price)


class SelectionView(BaseModel):
    name: str
    price: Decimal
    category: str | None = None
    description: str | None = None
    status: str
    origin: Origin
    local_id: str | None = None
    remote_id: int | None = None
    selected_at: datetime
    image_url: str | None = None
    metadata: SelectionMetadata | None = None

    @property
    def key(self) -> str:
        return normalize_name(self.name)


class Actor(BaseModel):
    user_id: int
    email: EmailStr
    display_name: str
    plan: str | None = None


class RecipientSnapshot(BaseModel):
    id: str
    name: str
    relationship: str = "friend"
    interests: list[str] = Field(default_factory=list)
    birthdate: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None

    def format_address(self) -> str | None:
        if not self.address_line1:
            return None
        street = ", ".join(part for part in (self.address_line1, self.address_line2) if part)
        locality = " ".join(part for part in (self.state, self.postal_code) if part)
        parts = [street, self.city, locality, self.country]
        return ", ".join(part for part in parts if part)

    def shipping_address(self) -> dict[str, str] | None:
        if not self.address_line1:
            return None
        street = " ".join(part for part in (self.address_line1, self.address_line2) if part)
        return {
            "name": self.name,
            "street": street,
            "city": self.city or "",
            "state": self.state or "",
            "zip_code": self.postal_code or "",
            "country": self.country or "US",
        }


class OccasionSnapshot(BaseModel):
    id: str
    recipient_id: str
    name: str
    date: str
    budget_cents: int | None = None
    gift_wrap: bool = False
    note_text: str | None = None


class OrderCreate(BaseModel):
    gift_id: int | None = None
    user_id: int
    user_email: str
    user_name: str
    user_plan: str | None = None
    recipient_id: str
    recipient_name: str
    recipient_relationship: str
    recipient_address: str | None = None
    shipping_address: dict[str, str] | None = None
    occasion: str
    occasion_id: str | None = None
    occasion_date: str | None = None
    gift_title: str
    gift_description: str = ""
    gift_price: int
    gift_image_url: str = ""
    gift_url: str | None = None
    asin: str | None = None
    status: str = "pending"
    priority: str = "normal"
    notes: str
    billing_status: str | None = "pending"
    charge_amount: int | None = None
    source: str | None = "gift_selection"
    gift_wrap: bool | None = None
    personal_note: str | None = None


class OrderReceipt(BaseModel):
    order_id: int
    via_fallback: bool = False


class SelectionOutcome(BaseModel):
    """Independent signals for the three steps of a selection."""

    gift_name: str
    local_ok: bool = False
    remote_ok: bool = False
    order_ok: bool = False
    order_via_fallback: bool = False
    already_selected: bool = False
    local_id: str | None = None
    remote_id: int | None = None
    order_id: int | None = None
    remote_error: str | None = None
    order_error: str | None = None

    @property
    def complete(self) -> bool:
        return self.local_ok and self.remote_ok and self.order_ok

    def failed_step(self) -> str | None:
        if self.already_selected:
            return None
        if not self.local_ok:
            return "local"
        if not self.remote_ok:
            return "remote"
        if not self.order_ok:
            return "order"
        return None

    def raise_for_status(self) -> None:
        step = self.failed_step()
        if step is None:
            return
        detail = self.remote_error if step == "remote" else self.order_error
        raise SelectionPipelineError(
            f"Selection of {self.gift_name!r} incomplete at step {step}: {detail}",
            step=step,
        )


class SyncReport(BaseModel):
    recipient_id: str
    occasion_id: str
    skipped: bool = False
    uploaded: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    error: str | None = None
    synced_at: datetime = Field(default_factory=utcnow)


class SelectionSummary(BaseModel):
    recipient_id: str
    occasion_id: str
    selections: list[SelectionView] = Field(default_factory=list)
    selected_count: int = 0
    total_budget_used: Decimal = Decimal("0.00")
    is_syncing: bool = False
