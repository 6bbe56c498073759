from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commerce.cart import PricedLine, resolve_cart
from commerce.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from commerce.logs import get_logger
from commerce.models import (
    FulfillmentStatus,
    Order,
    OrderItem,
    OrderSource,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PriceSource,
    ShippingStatus,
)
from commerce.processor import PaymentProcessor

log = get_logger("orders")

MAX_EXTRA_CENTS = 10_000_000
MAX_PAGE_SIZE = 200

FINANCIAL_FIELDS = frozenset(
    {"currency", "subtotal_cents", "tax_cents", "shipping_cents", "total_cents", "order_items", "items"}
)

ENUM_FIELDS = {
    "source": OrderSource,
    "order_status": OrderStatus,
    "payment_status": PaymentStatus,
    "fulfillment_status": FulfillmentStatus,
    "shipping_status": ShippingStatus,
    "payment_method": PaymentMethod,
}

ADDRESS_PARTS = ("line1", "line2", "city", "state", "postal_code", "country")


def _check_enum(key: str, value: Any) -> None:
    allowed = [member.value for member in ENUM_FIELDS[key]]
    if value not in allowed:
        raise ValidationError(f"Invalid {key}. Allowed: {', '.join(allowed)}")


class CustomerInfo(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None


class AddressInfo(BaseModel):
    name: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class BuyerInfo(BaseModel):
    customer: CustomerInfo = CustomerInfo()
    shipping: AddressInfo = AddressInfo()
    billing: AddressInfo = AddressInfo()


class OrderPatch(BaseModel):
    """Admin-editable order columns. Financial columns are not listed."""

    model_config = ConfigDict(extra="ignore")

    order_number: Optional[str] = None
    source: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    shipping_status: Optional[str] = None
    payment_method: Optional[str] = None
    external_ref: Optional[str] = None
    is_manual_pricing: Optional[bool] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    ship_name: Optional[str] = None
    ship_line1: Optional[str] = None
    ship_line2: Optional[str] = None
    ship_city: Optional[str] = None
    ship_state: Optional[str] = None
    ship_postal_code: Optional[str] = None
    ship_country: Optional[str] = None
    bill_name: Optional[str] = None
    bill_line1: Optional[str] = None
    bill_line2: Optional[str] = None
    bill_city: Optional[str] = None
    bill_state: Optional[str] = None
    bill_postal_code: Optional[str] = None
    bill_country: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass
class OrderCreated:
    order_id: int
    order_number: str
    currency: str
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    total_cents: int
    is_manual_pricing: bool
    lines: list[PricedLine]

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "currency": self.currency,
            "subtotal": self.subtotal_cents,
            "tax": self.tax_cents,
            "shipping": self.shipping_cents,
            "total": self.total_cents,
            "is_manual_pricing": self.is_manual_pricing,
        }


def format_order_number(prefix: str, year: int, order_id: int) -> str:
    return f"{prefix}-{year:04d}-{order_id:06d}"


def _extra_cents(value: Any, label: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be an integer.")
    if value < 0 or value > MAX_EXTRA_CENTS:
        raise ValidationError(f"{label} must be between 0 and {MAX_EXTRA_CENTS}.")
    return value


def _buyer_columns(buyer: BuyerInfo) -> dict:
    columns = {
        "customer_email": buyer.customer.email,
        "customer_phone": buyer.customer.phone,
        "customer_name": buyer.customer.name,
        "ship_name": buyer.shipping.name,
        "bill_name": buyer.billing.name or buyer.customer.name,
    }
    for part in ADDRESS_PARTS:
        columns[f"ship_{part}"] = getattr(buyer.shipping, part)
        columns[f"bill_{part}"] = getattr(buyer.billing, part)
    return columns


def _cart_snapshot(items: list) -> list[dict]:
    keys = ("kind", "product_id", "variant_id", "design_id", "lock_tech_id", "quantity")
    return [{key: item.get(key) for key in keys} for item in items if isinstance(item, dict)]


def create_order_from_cart(
    db: Session,
    items: Any,
    buyer: Optional[BuyerInfo] = None,
    *,
    allow_overrides: bool = False,
    tax_cents: Any = 0,
    shipping_cents: Any = 0,
    source: str = OrderSource.WEB.value,
    payment_method: str = PaymentMethod.STRIPE.value,
    notes: Optional[str] = None,
    external_ref: Optional[str] = None,
    order_prefix: str = "LTS",
    default_currency: str = "usd",
    now: Optional[datetime] = None,
) -> OrderCreated:
    _check_enum("source", source)
    _check_enum("payment_method", payment_method)
    cart = resolve_cart(db, items, allow_overrides=allow_overrides, default_currency=default_currency)
    tax = _extra_cents(tax_cents, "tax_cents")
    shipping = _extra_cents(shipping_cents, "shipping_cents")
    buyer = buyer or BuyerInfo()
    now = now or datetime.now(timezone.utc)

    subtotal = cart.subtotal_cents
    total = subtotal + tax + shipping

    try:
        order = Order(
            source=source,
            order_status=OrderStatus.PLACED.value,
            payment_status=PaymentStatus.PENDING.value,
            fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
            shipping_status=ShippingStatus.PENDING.value,
            payment_method=payment_method,
            is_manual_pricing=cart.is_manual_pricing,
            currency=cart.currency,
            subtotal_cents=subtotal,
            tax_cents=tax,
            shipping_cents=shipping,
            total_cents=total,
            notes=notes,
            external_ref=external_ref,
            metadata_json={"cart_snapshot": _cart_snapshot(items), "created_at_iso": now.isoformat()},
            **_buyer_columns(buyer),
        )
        db.add(order)
        db.flush()

        # the id only exists after the insert
        order.order_number = format_order_number(order_prefix, now.year, order.id)
        db.flush()

        for line in cart.lines:
            db.add(
                OrderItem(
                    order_id=order.id,
                    item_type=line.item_type,
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    design_id=line.design_id,
                    lock_tech_id=line.lock_tech_id,
                    boxes=line.boxes,
                    price_source=line.price_source,
                    stripe_price_id=line.stripe_price_id,
                    stripe_product_id=line.stripe_product_id,
                    currency=cart.currency,
                    unit_amount_cents=line.unit_amount_cents,
                    quantity=line.quantity,
                    line_total_cents=line.line_total_cents,
                    description=line.description,
                    metadata_json=line.metadata,
                )
            )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Order could not be saved (constraint failed).") from exc
    except Exception:
        db.rollback()
        raise

    log.info(
        "order_created",
        order_id=order.id,
        order_number=order.order_number,
        currency=cart.currency,
        total_cents=total,
        lines=len(cart.lines),
    )
    return OrderCreated(
        order_id=order.id,
        order_number=order.order_number,
        currency=cart.currency,
        subtotal_cents=subtotal,
        tax_cents=tax,
        shipping_cents=shipping,
        total_cents=total,
        is_manual_pricing=cart.is_manual_pricing,
        lines=cart.lines,
    )


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found.")
    return order


def order_items(db: Session, order_id: int) -> list[OrderItem]:
    return list(db.scalars(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)))


def list_orders(
    db: Session,
    *,
    filters: Optional[dict] = None,
    q: Optional[str] = None,
    limit: int = 25,
    offset: int = 0,
) -> tuple[list[Order], int]:
    conditions = []
    for key, value in (filters or {}).items():
        if value is None:
            continue
        _check_enum(key, value)
        conditions.append(getattr(Order, key) == value)
    if q and q.strip():
        like = f"%{q.strip()}%"
        conditions.append(
            or_(
                Order.order_number.ilike(like),
                Order.customer_email.ilike(like),
                Order.customer_name.ilike(like),
                Order.external_ref.ilike(like),
            )
        )

    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    offset = max(offset, 0)
    total = db.scalar(select(func.count()).select_from(Order).where(*conditions)) or 0
    rows = db.scalars(
        select(Order).where(*conditions).order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)
    ).all()
    return list(rows), total


def attach_checkout_session(db: Session, order_id: int, session_id: Optional[str]) -> Order:
    session_id = (session_id or "").strip()
    if not session_id:
        raise ValidationError("session_id missing.")
    order = get_order(db, order_id)
    order.stripe_checkout_session_id = session_id
    db.commit()
    log.info("checkout_session_attached", order_id=order_id, session_id=session_id)
    return order


def update_order(db: Session, order_id: int, patch: dict) -> tuple[Order, list[str]]:
    order = get_order(db, order_id)
    ignored_fields = [key for key in patch if key in FINANCIAL_FIELDS]
    try:
        changes = OrderPatch.model_validate(patch).model_dump(exclude_unset=True)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"{where}: {first['msg']}") from exc
    if not changes and not ignored_fields:
        raise ValidationError("No updatable fields provided.")

    for key in ENUM_FIELDS:
        if key in changes:
            _check_enum(key, changes[key])
    if "is_manual_pricing" in changes and changes["is_manual_pricing"] is None:
        raise ValidationError("is_manual_pricing cannot be null.")
    if "metadata" in changes:
        changes["metadata_json"] = changes.pop("metadata")

    for key, value in changes.items():
        setattr(order, key, value)
    if changes.get("payment_status") == PaymentStatus.PAID.value and order.paid_at is None:
        order.paid_at = datetime.now(timezone.utc)

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Order update violates a constraint.") from exc
    db.refresh(order)
    log.info("order_updated", order_id=order_id, fields=sorted(changes), ignored=ignored_fields)
    return order, ignored_fields


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def order_to_dict(order: Order, items: Optional[list[OrderItem]] = None) -> dict:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "source": order.source,
        "order_status": order.order_status,
        "payment_status": order.payment_status,
        "fulfillment_status": order.fulfillment_status,
        "shipping_status": order.shipping_status,
        "payment_method": order.payment_method,
        "is_manual_pricing": order.is_manual_pricing,
        "currency": order.currency,
        "subtotal": order.subtotal_cents,
        "tax": order.tax_cents,
        "shipping": order.shipping_cents,
        "total": order.total_cents,
        "customer": {
            "email": order.customer_email,
            "phone": order.customer_phone,
            "name": order.customer_name,
        },
        "shipping_address": {"name": order.ship_name, **{p: getattr(order, f"ship_{p}") for p in ADDRESS_PARTS}},
        "billing_address": {"name": order.bill_name, **{p: getattr(order, f"bill_{p}") for p in ADDRESS_PARTS}},
        "stripe_checkout_session_id": order.stripe_checkout_session_id,
        "stripe_payment_intent_id": order.stripe_payment_intent_id,
        "stripe_customer_id": order.stripe_customer_id,
        "external_ref": order.external_ref,
        "notes": order.notes,
        "metadata": order.metadata_json,
        "paid_at": _iso(order.paid_at),
        "created_at": _iso(order.created_at),
    }
    if items is not None:
        data["items"] = [
            {
                "id": item.id,
                "item_type": item.item_type,
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "design_id": item.design_id,
                "lock_tech_id": item.lock_tech_id,
                "box_size": item.box_size,
                "boxes": item.boxes,
                "price_source": item.price_source,
                "currency": item.currency,
                "unit_amount_cents": item.unit_amount_cents,
                "quantity": item.quantity,
                "line_total_cents": item.line_total_cents,
                "description": item.description,
            }
            for item in items
        ]
    return data


def normalize_postal_code(value: Any) -> str:
    if value is None:
        return ""
    return "".join(ch for ch in str(value).strip().upper() if ch.isascii() and ch.isalnum())


def lookup_order(db: Session, order_number: Any, email: Any, postal_code: Any) -> Order:
    """Find one order for a buyer who knows its number, email and ZIP.

    Every mismatch reports the same not-found error so callers cannot tell
    which part was wrong.
    """
    order_number = str(order_number or "").strip()
    email = str(email or "").strip().lower()
    postal_code = normalize_postal_code(postal_code)
    if not order_number:
        raise ValidationError("order_number is required")
    if not email:
        raise ValidationError("email is required")
    if not postal_code:
        raise ValidationError("zip is required")

    order = db.scalars(
        select(Order).where(Order.order_number == order_number, func.lower(Order.customer_email) == email).limit(1)
    ).first()
    if order is None or postal_code not in (
        normalize_postal_code(order.ship_postal_code),
        normalize_postal_code(order.bill_postal_code),
    ):
        raise NotFoundError("Order not found")
    return order


def order_for_session(db: Session, session_id: Any) -> Order:
    session_id = str(session_id or "").strip()
    if not session_id.startswith("cs_"):
        raise ValidationError("Invalid session id")
    order = db.scalars(select(Order).where(Order.stripe_checkout_session_id == session_id).limit(1)).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def public_order_to_dict(order: Order, items: list[OrderItem]) -> dict:
    """Buyer-facing view: no processor ids, notes, metadata or billing address."""
    data = order_to_dict(order, items)
    for key in (
        "stripe_checkout_session_id",
        "stripe_payment_intent_id",
        "stripe_customer_id",
        "external_ref",
        "notes",
        "metadata",
        "billing_address",
        "is_manual_pricing",
    ):
        data.pop(key)
    for item in data["items"]:
        item.pop("price_source")
    return data


def checkout_line_item(line: PricedLine, tax_rate_id: Optional[str] = None) -> dict:
    if line.stripe_price_id and line.price_source == PriceSource.CATALOG.value:
        item = {"price": line.stripe_price_id, "quantity": line.quantity}
    else:
        metadata = {key: str(value) for key, value in line.metadata.items() if value is not None}
        item = {
            "price_data": {
                "currency": line.currency,
                "unit_amount": line.unit_amount_cents,
                "product_data": {"name": line.description, "metadata": metadata},
            },
            "quantity": line.quantity,
        }
    tax_rate_id = (tax_rate_id or "").strip()
    if tax_rate_id:
        item["tax_rates"] = [tax_rate_id]
    return item


def start_checkout(
    db: Session,
    processor: PaymentProcessor,
    items: Any,
    buyer: Optional[BuyerInfo] = None,
    *,
    order_prefix: str = "LTS",
    default_currency: str = "usd",
    tax_rate_id: Optional[str] = None,
) -> dict:
    """Create the order, open a processor checkout session for it and bind the two."""
    created = create_order_from_cart(
        db, items, buyer, order_prefix=order_prefix, default_currency=default_currency
    )
    try:
        session = processor.create_checkout_session(
            [checkout_line_item(line, tax_rate_id) for line in created.lines],
            currency=created.currency,
            client_reference_id=created.order_number,
            metadata={"order_id": str(created.order_id), "order_number": created.order_number},
            customer_email=buyer.customer.email if buyer else None,
        )
    except ExternalServiceError:
        log.warning("checkout_session_failed", order_id=created.order_id, order_number=created.order_number)
        raise
    attach_checkout_session(db, created.order_id, session["id"])
    return {**created.to_dict(), "session_id": session["id"], "checkout_url": session.get("url")}
