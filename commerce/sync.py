"""Processor mirror state for catalog rows.

Every write that changes a mirrored field marks the row ``pending`` and commits
before the processor is called. The call then runs outside that transaction and
its outcome is written back as ``synced`` or ``failed``. A failed call never
undoes the local write; the next relevant write (or an explicit retry) puts the
row back to ``pending``.
"""

from enum import Enum
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from commerce.logs import get_logger
from commerce.models import ActiveState, Product, Variant, VariantPrice
from commerce.processor import PaymentProcessor

log = get_logger("sync")

ERROR_MAX_LEN = 1000

SyncedRow = Union[Product, VariantPrice]


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


def truncate_error(exc: Union[BaseException, str]) -> str:
    message = str(exc) or type(exc).__name__
    return message[:ERROR_MAX_LEN]


def mark_pending(db: Session, row: SyncedRow) -> None:
    row.stripe_sync_status = SyncStatus.PENDING.value
    row.stripe_sync_error = None
    db.commit()


def record_synced(db: Session, row: SyncedRow) -> None:
    row.stripe_sync_status = SyncStatus.SYNCED.value
    row.stripe_sync_error = None
    db.commit()


def record_failed(db: Session, row: SyncedRow, error: Union[BaseException, str]) -> None:
    row.stripe_sync_status = SyncStatus.FAILED.value
    row.stripe_sync_error = truncate_error(error)
    db.commit()


def _run(
    db: Session,
    row: SyncedRow,
    call: Callable[[], Optional[str]],
    apply: Callable[[Optional[str]], None],
    error_prefix: str = "",
) -> str:
    mark_pending(db, row)
    try:
        result = call()
    except Exception as exc:
        log.warning(
            "sync_failed",
            table=row.__tablename__,
            row_id=row.id,
            error=str(exc),
            exc_info=True,
        )
        record_failed(db, row, f"{error_prefix}{truncate_error(exc)}")
        return row.stripe_sync_status
    apply(result)
    record_synced(db, row)
    log.info("sync_succeeded", table=row.__tablename__, row_id=row.id)
    return row.stripe_sync_status


def sync_product(db: Session, product: Product, processor: PaymentProcessor) -> str:
    name = product.name
    description = product.description
    active = product.active == ActiveState.ACTIVE.value
    existing_id = product.stripe_product_id

    def call() -> Optional[str]:
        if existing_id:
            processor.update_product(existing_id, name, description, active)
            return None
        return processor.create_product(name, description, active)

    def apply(created_id: Optional[str]) -> None:
        if created_id:
            product.stripe_product_id = created_id

    return _run(db, product, call, apply)


def sync_variant_price(db: Session, price: VariantPrice, processor: PaymentProcessor) -> str:
    variant = db.get(Variant, price.variant_id)
    product = db.get(Product, variant.product_id) if variant else None
    stripe_product_id = product.stripe_product_id if product else None
    amount = price.unit_amount_cents
    currency = price.currency

    if not stripe_product_id:
        mark_pending(db, price)
        record_failed(
            db,
            price,
            "Cannot create Stripe Price: product.stripe_product_id is NULL "
            "(product not linked/synced to Stripe).",
        )
        log.warning("sync_skipped_unlinked_product", variant_price_id=price.id)
        return price.stripe_sync_status

    def apply(price_id: Optional[str]) -> None:
        price.stripe_price_id = price_id

    return _run(db, price, lambda: processor.create_price(stripe_product_id, amount, currency), apply)


def archive_variant_price(db: Session, price: VariantPrice, processor: PaymentProcessor) -> str:
    if not price.stripe_price_id:
        return price.stripe_sync_status
    price_id = price.stripe_price_id

    def call() -> Optional[str]:
        processor.archive_price(price_id)
        return None

    return _run(db, price, call, lambda _: None, error_prefix="Archive failed: ")


def sync_status_fields(row: SyncedRow) -> dict:
    return {"sync_status": row.stripe_sync_status, "sync_error": row.stripe_sync_error}
