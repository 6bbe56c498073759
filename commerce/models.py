from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from commerce.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")

BOX_SIZE = 200


class ProductType(str, Enum):
    REGULAR = "regular"
    KEYCARD = "keycard"


class ActiveState(int, Enum):
    INACTIVE = 0
    ACTIVE = 1
    ARCHIVED = 2


class OrderStatus(str, Enum):
    PLACED = "placed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    FULFILLED = "fulfilled"


class ShippingStatus(str, Enum):
    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class OrderSource(str, Enum):
    WEB = "web"
    PHONE = "phone"
    MANUAL = "manual"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    CASH = "cash"
    CHECK = "check"
    INVOICE = "invoice"
    OTHER = "other"


class PriceSource(str, Enum):
    CATALOG = "catalog"
    OVERRIDE = "override"


class SyncStateMixin:
    """Columns tracking whether the processor-side mirror of a row is current."""

    stripe_sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    stripe_sync_error: Mapped[Optional[str]] = mapped_column(Text)


class Product(SyncStateMixin, Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default=ProductType.REGULAR.value)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=ActiveState.ACTIVE.value)
    stripe_product_id: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class Variant(Base):
    __tablename__ = "variants"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=ActiveState.ACTIVE.value)


class VariantPrice(SyncStateMixin, Base):
    __tablename__ = "variant_prices"
    __table_args__ = (Index("ix_variant_prices_variant_active", "variant_id", "active"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    variant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("variants.id"), nullable=False)
    min_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    max_qty: Mapped[Optional[int]] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    unit_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    stripe_price_id: Mapped[Optional[str]] = mapped_column(Text)


class KeycardDesign(Base):
    __tablename__ = "keycard_designs"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=ActiveState.ACTIVE.value)


class LockTech(Base):
    __tablename__ = "lock_tech"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=ActiveState.ACTIVE.value)


class KeycardPriceTier(Base):
    __tablename__ = "keycard_price_tiers"
    __table_args__ = (Index("ix_keycard_price_tiers_lock_tech_active", "lock_tech_id", "active"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    lock_tech_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("lock_tech.id"), nullable=False)
    min_boxes: Mapped[int] = mapped_column(Integer, nullable=False)
    max_boxes: Mapped[Optional[int]] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    price_per_box_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_number: Mapped[Optional[str]] = mapped_column(Text, unique=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderSource.WEB.value)

    order_status: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderStatus.PLACED.value)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value
    )
    fulfillment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=FulfillmentStatus.UNFULFILLED.value
    )
    shipping_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ShippingStatus.PENDING.value
    )
    payment_method: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentMethod.STRIPE.value
    )
    is_manual_pricing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shipping_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    customer_email: Mapped[Optional[str]] = mapped_column(Text)
    customer_phone: Mapped[Optional[str]] = mapped_column(Text)
    customer_name: Mapped[Optional[str]] = mapped_column(Text)

    ship_name: Mapped[Optional[str]] = mapped_column(Text)
    ship_line1: Mapped[Optional[str]] = mapped_column(Text)
    ship_line2: Mapped[Optional[str]] = mapped_column(Text)
    ship_city: Mapped[Optional[str]] = mapped_column(Text)
    ship_state: Mapped[Optional[str]] = mapped_column(Text)
    ship_postal_code: Mapped[Optional[str]] = mapped_column(Text)
    ship_country: Mapped[Optional[str]] = mapped_column(Text)

    bill_name: Mapped[Optional[str]] = mapped_column(Text)
    bill_line1: Mapped[Optional[str]] = mapped_column(Text)
    bill_line2: Mapped[Optional[str]] = mapped_column(Text)
    bill_city: Mapped[Optional[str]] = mapped_column(Text)
    bill_state: Mapped[Optional[str]] = mapped_column(Text)
    bill_postal_code: Mapped[Optional[str]] = mapped_column(Text)
    bill_country: Mapped[Optional[str]] = mapped_column(Text)

    stripe_checkout_session_id: Mapped[Optional[str]] = mapped_column(Text, index=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(Text, index=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(Text)

    external_ref: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON_TYPE)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_type: Mapped[str] = mapped_column(String(16), nullable=False)

    product_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("products.id"))
    variant_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("variants.id"))
    design_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("keycard_designs.id"))
    lock_tech_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("lock_tech.id"))
    box_size: Mapped[int] = mapped_column(Integer, nullable=False, default=BOX_SIZE)
    boxes: Mapped[Optional[int]] = mapped_column(Integer)

    price_source: Mapped[str] = mapped_column(String(16), nullable=False, default=PriceSource.CATALOG.value)
    stripe_price_id: Mapped[Optional[str]] = mapped_column(Text)
    stripe_product_id: Mapped[Optional[str]] = mapped_column(Text)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    unit_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    line_total_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON_TYPE)


class StripeEvent(Base):
    __tablename__ = "stripe_events"
    __table_args__ = (UniqueConstraint("event_id", name="uq_stripe_events_event_id"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
