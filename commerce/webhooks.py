"""Processor webhook reconciliation.

Deliveries are at-least-once and unordered. Each event id is recorded once in
``stripe_events``; a repeat delivery is acknowledged without touching orders.
The event row, the order changes and ``processed_at`` are committed together,
so a failure part way through leaves nothing behind and the processor
redelivers.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commerce.errors import ValidationError
from commerce.logs import get_logger
from commerce.models import Order, OrderStatus, PaymentStatus, StripeEvent
from commerce.orders import ADDRESS_PARTS
from commerce.processor import PaymentProcessor

log = get_logger("webhooks")

SESSION_EVENTS = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
        "checkout.session.async_payment_failed",
        "checkout.session.expired",
    }
)
CANCELLING_EVENTS = frozenset({"checkout.session.expired", "checkout.session.async_payment_failed"})
PAID_SESSION_STATUSES = frozenset({"paid", "no_payment_required"})
REFUND_EVENT = "charge.refunded"
MAX_ORDER_ID = 2**63 - 1


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _cents(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _address(prefix: str, address: Optional[dict]) -> dict:
    address = address or {}
    return {f"{prefix}_{part}": _text(address.get(part)) for part in ADDRESS_PARTS}


def _order_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    # ids are signed 64-bit; anything outside cannot match a row
    return number if 1 <= number <= MAX_ORDER_ID else None


def find_order_for_session(db: Session, session: dict) -> Optional[Order]:
    metadata = session.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    order_id = _order_id(metadata.get("order_id"))
    if order_id is not None:
        order = db.get(Order, order_id)
        if order is not None:
            return order

    session_id = _text(session.get("id"))
    if session_id:
        order = db.scalars(
            select(Order).where(Order.stripe_checkout_session_id == session_id).limit(1)
        ).first()
        if order is not None:
            return order

    order_number = _text(metadata.get("order_number")) or _text(session.get("client_reference_id"))
    if order_number:
        return db.scalars(select(Order).where(Order.order_number == order_number).limit(1)).first()
    return None


def session_changes(event_type: str, session: dict) -> dict:
    """Column values carried by a checkout session event; ``None`` means keep."""
    customer = session.get("customer_details") or {}
    shipping = (
        session.get("shipping_details")
        or (session.get("collected_information") or {}).get("shipping_details")
        or {}
    )
    totals = session.get("total_details") or {}

    changes = {
        "stripe_checkout_session_id": _text(session.get("id")),
        "stripe_payment_intent_id": _text(session.get("payment_intent")),
        "stripe_customer_id": _text(session.get("customer")),
        "currency": _text(session.get("currency")),
        "subtotal_cents": _cents(session.get("amount_subtotal")),
        "total_cents": _cents(session.get("amount_total")),
        "tax_cents": _cents(totals.get("amount_tax")),
        "shipping_cents": _cents(totals.get("amount_shipping")),
        "customer_email": _text(customer.get("email")),
        "customer_phone": _text(customer.get("phone")),
        "customer_name": _text(customer.get("name")),
        "ship_name": _text(shipping.get("name")),
        "bill_name": _text(customer.get("name")),
        "order_status": None,
        "payment_status": None,
    }
    changes.update(_address("ship", shipping.get("address")))
    changes.update(_address("bill", customer.get("address")))

    if event_type in CANCELLING_EVENTS:
        changes["order_status"] = OrderStatus.CANCELLED.value
    elif session.get("payment_status") in PAID_SESSION_STATUSES:
        changes["payment_status"] = PaymentStatus.PAID.value
    return changes


def apply_session_event(order: Order, event: dict, session: dict, now: datetime) -> None:
    changes = session_changes(event["type"], session)
    for key, value in changes.items():
        if value is not None:
            setattr(order, key, value)

    if changes["payment_status"] == PaymentStatus.PAID.value and order.paid_at is None:
        order.paid_at = now

    metadata = dict(order.metadata_json or {})
    metadata["stripe"] = {
        **(metadata.get("stripe") or {}),
        "last_event_id": event["id"],
        "last_event_type": event["type"],
        "session_id": session.get("id"),
        "payment_status": session.get("payment_status"),
        "payment_intent": _text(session.get("payment_intent")),
    }
    # reassign so the JSON column is flagged dirty
    order.metadata_json = metadata


def apply_refund(db: Session, charge: dict) -> int:
    payment_intent = _text(charge.get("payment_intent"))
    if not payment_intent:
        return 0
    orders = db.scalars(select(Order).where(Order.stripe_payment_intent_id == payment_intent)).all()
    for order in orders:
        order.payment_status = PaymentStatus.REFUNDED.value
        if order.order_status == OrderStatus.PLACED.value:
            order.order_status = OrderStatus.CANCELLED.value
    return len(orders)


def _parse_event(event: Any) -> tuple[str, str, dict]:
    if not isinstance(event, dict):
        raise ValidationError("Webhook Error: event is not an object")
    event_id = _text(event.get("id"))
    event_type = _text(event.get("type"))
    if not event_id or not event_type:
        raise ValidationError("Webhook Error: event id or type missing")
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return event_id, event_type, obj if isinstance(obj, dict) else {}


def ingest_event(
    db: Session,
    processor: PaymentProcessor,
    payload: bytes,
    signature: Optional[str],
    now: Optional[datetime] = None,
) -> dict:
    event = processor.verify_event(payload, signature)
    event_id, event_type, obj = _parse_event(event)
    now = now or datetime.now(timezone.utc)
    log.info("webhook_received", event_id=event_id, event_type=event_type)

    record = StripeEvent(event_id=event_id, event_type=event_type, payload=event, received_at=now)
    try:
        db.add(record)
        db.flush()
    except IntegrityError:
        db.rollback()
        log.info("webhook_duplicate", event_id=event_id, event_type=event_type)
        return {"received": True, "duplicate": True}

    try:
        if event_type in SESSION_EVENTS:
            result = _handle_session(db, event, obj, now)
        elif event_type == REFUND_EVENT:
            refunded = apply_refund(db, obj)
            log.info("webhook_refund_applied", event_id=event_id, orders=refunded)
            result = {"received": True}
        else:
            log.info("webhook_ignored", event_id=event_id, event_type=event_type)
            result = {"received": True, "ignored": True, "type": event_type}

        record.processed_at = now
        db.commit()
    except Exception:
        db.rollback()
        log.error("webhook_failed", event_id=event_id, event_type=event_type, exc_info=True)
        raise
    return result


def _handle_session(db: Session, event: dict, session: dict, now: datetime) -> dict:
    order = find_order_for_session(db, session)
    if order is None:
        log.warning("webhook_order_not_found", event_id=event["id"], session_id=session.get("id"))
        return {"received": True, "warning": "No matching order found", "session_id": session.get("id")}

    apply_session_event(order, event, session, now)
    log.info(
        "webhook_order_reconciled",
        event_id=event["id"],
        event_type=event["type"],
        order_id=order.id,
        payment_status=order.payment_status,
        order_status=order.order_status,
    )
    return {"received": True}
