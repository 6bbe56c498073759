"""Server-side cart pricing.

Cart payloads come from the browser and are untrusted. Only entity ids and
quantities are read from them; prices, currencies and processor ids are always
looked up in the database. Each line is priced to either a ``PricedLine`` or an
error value, and the first error aborts the whole cart.
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from commerce.errors import CommerceError, ConflictError, NotFoundError, ValidationError
from commerce.logs import get_logger
from commerce.models import (
    BOX_SIZE,
    ActiveState,
    KeycardDesign,
    LockTech,
    PriceSource,
    Product,
    ProductType,
    Variant,
    VariantPrice,
)
from commerce.tiers import active_keycard_tiers, active_variant_tiers, resolve_tier

log = get_logger("cart")


@dataclass
class PricedLine:
    item_type: str
    currency: str
    unit_amount_cents: int
    quantity: int
    description: str
    price_source: str = PriceSource.CATALOG.value
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    design_id: Optional[int] = None
    lock_tech_id: Optional[int] = None
    boxes: Optional[int] = None
    stripe_price_id: Optional[str] = None
    stripe_product_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def line_total_cents(self) -> int:
        return self.unit_amount_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "item_type": self.item_type,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "design_id": self.design_id,
            "lock_tech_id": self.lock_tech_id,
            "boxes": self.boxes,
            "price_source": self.price_source,
            "currency": self.currency,
            "unit_amount_cents": self.unit_amount_cents,
            "quantity": self.quantity,
            "line_total_cents": self.line_total_cents,
            "description": self.description,
        }


LineOutcome = Union[PricedLine, CommerceError]


class ProductLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["product", "variant"]
    product_id: PositiveInt
    variant_id: PositiveInt
    quantity: PositiveInt
    override_unit_amount_cents: Optional[NonNegativeInt] = None

    def price(self, db: Session, allow_override: bool, default_currency: str) -> LineOutcome:
        product = db.get(Product, self.product_id)
        variant = db.get(Variant, self.variant_id)
        if product is None or variant is None or variant.product_id != product.id:
            return NotFoundError(
                f"Product/Variant mismatch or not found for product_id={self.product_id}, "
                f"variant_id={self.variant_id}."
            )
        if product.active != ActiveState.ACTIVE.value or variant.active != ActiveState.ACTIVE.value:
            return ConflictError(
                f"Product or variant is archived/inactive for product_id={self.product_id}, "
                f"variant_id={self.variant_id}."
            )
        if product.type != ProductType.REGULAR.value:
            return ValidationError(
                f"product_id={self.product_id} is not a regular product (type={product.type})."
            )

        tiers = active_variant_tiers(db, variant.id)
        description = f"{product.name} - {variant.name} ({variant.sku})"
        common = {
            "item_type": ProductType.REGULAR.value,
            "quantity": self.quantity,
            "description": description,
            "product_id": product.id,
            "variant_id": variant.id,
            "stripe_product_id": product.stripe_product_id,
        }

        if allow_override and self.override_unit_amount_cents is not None:
            return PricedLine(
                currency=tiers[0].currency if tiers else default_currency,
                unit_amount_cents=self.override_unit_amount_cents,
                price_source=PriceSource.OVERRIDE.value,
                metadata={"kind": "product"},
                **common,
            )

        try:
            tier = resolve_tier(tiers, self.quantity)
        except NotFoundError:
            return ConflictError(
                f"No active tier found for variant_id={variant.id} at quantity={self.quantity}."
            )
        price_row = db.get(VariantPrice, tier.row_id)
        return PricedLine(
            currency=tier.currency,
            unit_amount_cents=tier.unit_amount,
            stripe_price_id=price_row.stripe_price_id if price_row else None,
            metadata={"kind": "product", "variant_price_id": tier.row_id},
            **common,
        )


class KeycardLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["keycard"]
    design_id: PositiveInt
    lock_tech_id: PositiveInt
    quantity: PositiveInt

    def price(self, db: Session, allow_override: bool, default_currency: str) -> LineOutcome:
        design = db.get(KeycardDesign, self.design_id)
        if design is None:
            return NotFoundError(f"Design not found: design_id={self.design_id}.")
        if design.active != ActiveState.ACTIVE.value:
            return ConflictError(f"Design is archived/inactive: design_id={self.design_id}.")
        lock_tech = db.get(LockTech, self.lock_tech_id)
        if lock_tech is None:
            return NotFoundError(f"Lock tech not found: lock_tech_id={self.lock_tech_id}.")
        if lock_tech.active != ActiveState.ACTIVE.value:
            return ConflictError(f"Lock tech is archived/inactive: lock_tech_id={self.lock_tech_id}.")

        boxes = self.quantity
        try:
            tier = resolve_tier(active_keycard_tiers(db, lock_tech.id), boxes)
        except NotFoundError:
            return ConflictError(
                f"No active keycard tier found for lock_tech_id={lock_tech.id} at boxes={boxes}."
            )
        return PricedLine(
            item_type=ProductType.KEYCARD.value,
            currency=tier.currency,
            unit_amount_cents=tier.unit_amount,
            quantity=boxes,
            boxes=boxes,
            description=f"{design.name} - {lock_tech.name}",
            design_id=design.id,
            lock_tech_id=lock_tech.id,
            metadata={
                "kind": "keycard",
                "keycard_tier_id": tier.row_id,
                "design_code": design.code,
                "cards_per_box": BOX_SIZE,
            },
        )


CartLine = Annotated[Union[ProductLine, KeycardLine], Field(discriminator="kind")]
_cart_line = TypeAdapter(CartLine)


def parse_cart_line(raw: Any, index: int) -> Union[ProductLine, KeycardLine, ValidationError]:
    if not isinstance(raw, dict):
        return ValidationError(f"items[{index}] must be an object.")
    data = dict(raw)
    if isinstance(data.get("kind"), str):
        data["kind"] = data["kind"].strip().lower()
    try:
        return _cart_line.validate_python(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first["loc"] if part not in ("product", "variant", "keycard"))
        label = f"items[{index}].{where}" if where else f"items[{index}]"
        return ValidationError(f"{label}: {first['msg']}")


@dataclass
class ResolvedCart:
    lines: list[PricedLine]
    currency: str

    @property
    def subtotal_cents(self) -> int:
        return sum(line.line_total_cents for line in self.lines)

    @property
    def is_manual_pricing(self) -> bool:
        return any(line.price_source != PriceSource.CATALOG.value for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "subtotal": self.subtotal_cents,
            "is_manual_pricing": self.is_manual_pricing,
            "line_items": [line.to_dict() for line in self.lines],
        }


def _price_line(db: Session, raw: Any, index: int, allow_overrides: bool, default_currency: str) -> LineOutcome:
    line = parse_cart_line(raw, index)
    if isinstance(line, CommerceError):
        return line
    return line.price(db, allow_overrides, default_currency)


def resolve_cart(
    db: Session,
    items: Any,
    *,
    allow_overrides: bool = False,
    default_currency: str = "usd",
) -> ResolvedCart:
    if not isinstance(items, list) or not items:
        raise ValidationError("Cart is empty or items is not an array.")

    lines: list[PricedLine] = []
    currency: Optional[str] = None
    for index, raw in enumerate(items):
        outcome = _price_line(db, raw, index, allow_overrides, default_currency)
        if isinstance(outcome, CommerceError):
            log.info("cart_rejected", index=index, status=outcome.status_code, error=outcome.message)
            raise outcome
        if currency is None:
            currency = outcome.currency
        elif outcome.currency != currency:
            log.info("cart_rejected", index=index, reason="mixed_currency")
            raise ValidationError(
                f"Mixed currencies not supported (got {outcome.currency}, expected {currency})."
            )
        lines.append(outcome)

    return ResolvedCart(lines=lines, currency=currency or default_currency)
