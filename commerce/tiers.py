"""Breakpoint price tiers.

Admins send tiers as breakpoints (a starting quantity and a price). Stored tiers
always partition ``[1, inf)``: the first tier starts at 1, starts strictly
increase, each ``max`` is the next tier's start minus one and the last tier is
open-ended. Variant tiers (per unit) and keycard tiers (per box) share the same
rules and differ only in field names.
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from commerce.errors import NotFoundError, ValidationError
from commerce.logs import get_logger
from commerce.models import KeycardPriceTier, LockTech, Variant, VariantPrice
from commerce.processor import PaymentProcessor
from commerce.sync import SyncStatus, archive_variant_price, sync_variant_price

log = get_logger("tiers")

MAX_TIERS = 50


@dataclass(frozen=True)
class TierScheme:
    name: str
    min_field: str
    max_field: str
    amount_field: str


VARIANT_TIERS = TierScheme("variant", "min_qty", "max_qty", "unit_amount_cents")
KEYCARD_TIERS = TierScheme("keycard", "min_boxes", "max_boxes", "price_per_box_cents")


@dataclass(frozen=True)
class Tier:
    min_qty: int
    max_qty: Optional[int]
    unit_amount: int
    currency: str
    row_id: Optional[int] = None

    def contains(self, quantity: int) -> bool:
        return self.min_qty <= quantity and (self.max_qty is None or quantity <= self.max_qty)

    def to_dict(self, scheme: TierScheme) -> dict:
        return {
            scheme.min_field: self.min_qty,
            scheme.max_field: self.max_qty,
            scheme.amount_field: self.unit_amount,
            "currency": self.currency,
        }


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{label} must be an integer.")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isascii() and value.strip().lstrip("-").isdigit():
        # int() rejects non-ASCII digits such as superscripts
        number = int(value.strip())
    else:
        raise ValidationError(f"{label} must be an integer.")
    if number < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return number


def _as_currency(value: Any, fallback: str) -> str:
    if value is None:
        return fallback
    text = str(value).strip().lower()
    return text or fallback


def normalize_tiers(raw: Any, scheme: TierScheme, default_currency: str = "usd") -> list[Tier]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ValidationError("tiers must be a non-empty array.")
    if len(raw) > MAX_TIERS:
        raise ValidationError(f"Too many tiers (max {MAX_TIERS}).")

    parsed = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError(f"tiers[{idx}] must be an object.")
        parsed.append(
            {
                "min": _as_int(entry.get(scheme.min_field), f"tiers[{idx}].{scheme.min_field}"),
                "amount": _as_int(entry.get(scheme.amount_field), f"tiers[{idx}].{scheme.amount_field}"),
                "currency": _as_currency(entry.get("currency"), default_currency),
            }
        )

    # stable sort, so for equal mins the later entry ends up last and wins
    parsed.sort(key=lambda t: t["min"])
    deduped: list[dict] = []
    for tier in parsed:
        if deduped and deduped[-1]["min"] == tier["min"]:
            deduped[-1] = tier
        else:
            deduped.append(tier)

    deduped[0]["min"] = 1
    for i in range(1, len(deduped)):
        if deduped[i]["min"] <= deduped[i - 1]["min"]:
            deduped[i]["min"] = deduped[i - 1]["min"] + 1

    tiers = []
    for i, tier in enumerate(deduped):
        following = deduped[i + 1] if i + 1 < len(deduped) else None
        tiers.append(
            Tier(
                min_qty=tier["min"],
                max_qty=following["min"] - 1 if following else None,
                unit_amount=tier["amount"],
                currency=tier["currency"],
            )
        )
    return tiers


def resolve_tier(tiers: Sequence[Tier], quantity: int) -> Tier:
    if not tiers:
        raise NotFoundError("No active price tiers configured.")
    quantity = max(1, quantity)
    for tier in tiers:
        if tier.contains(quantity):
            return tier
    # unreachable for a normalized set; guards hand-edited rows
    raise NotFoundError(f"No active price tier covers quantity={quantity}.")


def active_variant_tiers(db: Session, variant_id: int) -> list[Tier]:
    rows = db.scalars(
        select(VariantPrice)
        .where(VariantPrice.variant_id == variant_id, VariantPrice.active.is_(True))
        .order_by(VariantPrice.min_qty, VariantPrice.id)
    ).all()
    return [
        Tier(row.min_qty, row.max_qty, row.unit_amount_cents, row.currency, row_id=row.id)
        for row in rows
    ]


def active_keycard_tiers(db: Session, lock_tech_id: int) -> list[Tier]:
    rows = db.scalars(
        select(KeycardPriceTier)
        .where(KeycardPriceTier.lock_tech_id == lock_tech_id, KeycardPriceTier.active.is_(True))
        .order_by(KeycardPriceTier.min_boxes, KeycardPriceTier.id)
    ).all()
    return [
        Tier(row.min_boxes, row.max_boxes, row.price_per_box_cents, row.currency, row_id=row.id)
        for row in rows
    ]


def replace_variant_tiers(
    db: Session,
    variant_id: int,
    raw: Any,
    processor: PaymentProcessor,
    currency: str = "usd",
) -> list[VariantPrice]:
    """Swap a variant's active tier set, then mirror the new prices.

    The local swap commits first. Processor prices are created afterwards, and
    the previous processor prices are archived only once every new one synced.
    """
    variant = db.get(Variant, variant_id)
    if variant is None:
        raise NotFoundError("Variant not found.")
    tiers = normalize_tiers(raw, VARIANT_TIERS, currency)

    previous = db.scalars(
        select(VariantPrice).where(
            VariantPrice.variant_id == variant_id,
            VariantPrice.active.is_(True),
            VariantPrice.stripe_price_id.is_not(None),
        )
    ).all()
    previous_ids = [row.id for row in previous]

    try:
        db.execute(
            update(VariantPrice)
            .where(VariantPrice.variant_id == variant_id, VariantPrice.active.is_(True))
            .values(active=False)
        )
        created = []
        for tier in tiers:
            row = VariantPrice(
                variant_id=variant_id,
                min_qty=tier.min_qty,
                max_qty=tier.max_qty,
                currency=tier.currency,
                unit_amount_cents=tier.unit_amount,
                active=True,
                stripe_sync_status=SyncStatus.PENDING.value,
            )
            db.add(row)
            created.append(row)
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("variant_tiers_replaced", variant_id=variant_id, tiers=len(created))

    for row in created:
        sync_variant_price(db, row, processor)

    if all(row.stripe_sync_status == SyncStatus.SYNCED.value for row in created):
        for old_id in previous_ids:
            old = db.get(VariantPrice, old_id)
            if old is not None:
                archive_variant_price(db, old, processor)
    elif previous_ids:
        log.warning("variant_price_archive_skipped", variant_id=variant_id, pending=len(previous_ids))

    for row in created:
        db.refresh(row)
    return created


def replace_keycard_tiers(
    db: Session, lock_tech_id: int, raw: Any, currency: str = "usd"
) -> list[KeycardPriceTier]:
    if db.get(LockTech, lock_tech_id) is None:
        raise NotFoundError("Lock tech not found.")
    tiers = normalize_tiers(raw, KEYCARD_TIERS, currency)

    try:
        db.execute(
            update(KeycardPriceTier)
            .where(KeycardPriceTier.lock_tech_id == lock_tech_id, KeycardPriceTier.active.is_(True))
            .values(active=False)
        )
        created = [
            KeycardPriceTier(
                lock_tech_id=lock_tech_id,
                min_boxes=tier.min_qty,
                max_boxes=tier.max_qty,
                currency=tier.currency,
                price_per_box_cents=tier.unit_amount,
                active=True,
            )
            for tier in tiers
        ]
        db.add_all(created)
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("keycard_tiers_replaced", lock_tech_id=lock_tech_id, tiers=len(created))
    for row in created:
        db.refresh(row)
    return created
