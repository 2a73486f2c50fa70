from datetime import datetime, timezone
from enum import Enum as StrEnumBase

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from giftsync.db.session import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(40), default="free")
    role: Mapped[str] = mapped_column(String(20), default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    recipients: Mapped[list["Recipient"]] = relationship(back_populates="owner")


class Recipient(Base):
    __tablename__ = "recipients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    relationship_label: Mapped[str] = mapped_column("relationship", String(60), default="friend")
    birthdate: Mapped[str | None] = mapped_column(String(10), nullable=True)
    interests: Mapped[list[str]] = mapped_column(JSON, default=list)
    address_line1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    state: Mapped[str | None] = mapped_column(String(60), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    owner: Mapped[User] = relationship(back_populates="recipients")
    occasions: Mapped[list["Occasion"]] = relationship(back_populates="recipient", cascade="all, delete-orphan")


class Occasion(Base):
    __tablename__ = "occasions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(ForeignKey("recipients.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="custom")
    budget_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gift_wrap: Mapped[bool] = mapped_column(Boolean, default=False)
    note_text: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    recipient: Mapped[Recipient] = relationship(back_populates="occasions")


class GiftStatusEnum(str, StrEnumBase):
    IDEA = "idea"
    SELECTED = "selected"
    ORDERED = "ordered"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class Gift(Base):
    __tablename__ = "gifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    occasion_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # minor currency units
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category: Mapped[str] = mapped_column(String(120), default="AI Recommended")
    status: Mapped[str] = mapped_column(String(20), default=GiftStatusEnum.IDEA.value)
    is_ai_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    purchase_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    asin: Mapped[str | None] = mapped_column(String(20), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_gifts_price_non_negative"),
    )


class OrderStatusEnum(str, StrEnumBase):
    PENDING = "pending"
    PROCESSING = "processing"
    ORDERED = "ordered"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class AdminOrder(Base):
    __tablename__ = "admin_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gift_id: Mapped[int | None] = mapped_column(
        ForeignKey("gifts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    user_name: Mapped[str] = mapped_column(String(120), nullable=False)
    user_plan: Mapped[str | None] = mapped_column(String(40), nullable=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_name: Mapped[str] = mapped_column(String(120), nullable=False)
    recipient_relationship: Mapped[str] = mapped_column(String(60), nullable=False)
    recipient_address: Mapped[str | None] = mapped_column(String(512), nullable=True)
    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    occasion: Mapped[str] = mapped_column(String(120), nullable=False)
    occasion_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    occasion_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    gift_title: Mapped[str] = mapped_column(String(255), nullable=False)
    gift_description: Mapped[str] = mapped_column(Text, default="")
    # minor currency units, same as gifts.price
    gift_price: Mapped[int] = mapped_column(Integer, nullable=False)
    gift_image_url: Mapped[str] = mapped_column(String(2048), default="")
    gift_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    asin: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=OrderStatusEnum.PENDING.value)
    priority: Mapped[str] = mapped_column(String(10), default="normal")
    notes: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    billing_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    charge_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    gift_wrap: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    personal_note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
