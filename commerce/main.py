from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Literal, Optional
from uuid import uuid4

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from commerce.cart import resolve_cart
from commerce.config import settings
from commerce.db import get_db, init_db
from commerce.errors import CommerceError, ConflictError, NotFoundError, ValidationError
from commerce.logs import configure_logging, get_logger
from commerce.models import (
    ActiveState,
    KeycardDesign,
    KeycardPriceTier,
    LockTech,
    OrderSource,
    PaymentMethod,
    Product,
    ProductType,
    Variant,
    VariantPrice,
)
from commerce.orders import (
    AddressInfo,
    BuyerInfo,
    CustomerInfo,
    create_order_from_cart,
    get_order,
    list_orders,
    lookup_order,
    order_for_session,
    order_items,
    order_to_dict,
    public_order_to_dict,
    start_checkout,
    update_order,
)
from commerce.processor import PaymentProcessor, build_processor
from commerce.sync import (
    archive_variant_price,
    sync_product,
    sync_status_fields,
    sync_variant_price,
)
from commerce.tiers import (
    KEYCARD_TIERS,
    VARIANT_TIERS,
    active_keycard_tiers,
    active_variant_tiers,
    replace_keycard_tiers,
    replace_variant_tiers,
    resolve_tier,
)
from commerce.webhooks import ingest_event

log = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_json)
    init_db()
    app.state.processor = build_processor(settings)
    yield


app = FastAPI(title="Keycard Commerce", lifespan=lifespan)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_processor(request: Request) -> PaymentProcessor:
    return request.app.state.processor


@app.exception_handler(CommerceError)
async def handle_commerce_error(request: Request, exc: CommerceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"error": "Invalid request."})
    first = errors[0]
    where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
    return JSONResponse(status_code=400, content={"error": message})


def _product_dict(product: Product) -> dict:
    return {
        "product_id": product.id,
        "type": product.type,
        "name": product.name,
        "description": product.description,
        "active": product.active,
        "stripe_product_id": product.stripe_product_id,
        **sync_status_fields(product),
    }


def _variant_dict(variant: Variant) -> dict:
    return {
        "variant_id": variant.id,
        "product_id": variant.product_id,
        "name": variant.name,
        "sku": variant.sku,
        "description": variant.description,
        "active": variant.active,
    }


def _variant_price_dict(row: VariantPrice) -> dict:
    return {
        "id": row.id,
        "variant_id": row.variant_id,
        "min_qty": row.min_qty,
        "max_qty": row.max_qty,
        "unit_amount_cents": row.unit_amount_cents,
        "currency": row.currency,
        "active": row.active,
        "stripe_price_id": row.stripe_price_id,
        **sync_status_fields(row),
    }


def _keycard_tier_dict(row: KeycardPriceTier) -> dict:
    return {
        "id": row.id,
        "lock_tech_id": row.lock_tech_id,
        "min_boxes": row.min_boxes,
        "max_boxes": row.max_boxes,
        "price_per_box_cents": row.price_per_box_cents,
        "currency": row.currency,
        "active": row.active,
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class ProductCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"type": "regular", "name": "Lanyard", "description": "Woven lanyard", "active": 1}
        }
    }
    type: Literal["regular", "keycard"] = ProductType.REGULAR.value
    name: str = Field(min_length=1)
    description: Optional[str] = None
    active: int = Field(ActiveState.ACTIVE.value, ge=0, le=2)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    active: Optional[int] = Field(None, ge=0, le=2)
    stripe_product_id: Optional[str] = None


@app.post("/api/admin/products", tags=["Catalog"])
def create_product(
    payload: ProductCreate,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict:
    product = Product(
        type=payload.type,
        name=payload.name.strip(),
        description=payload.description,
        active=payload.active,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    log.info("product_created", product_id=product.id, type=product.type)
    sync_product(db, product, processor)
    return {"data": _product_dict(product), "meta": _meta()}


@app.patch("/api/admin/products/{product_id}", tags=["Catalog"])
def patch_product(
    product_id: int,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found.")
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No updatable fields provided.")
    for key in ("name", "active"):
        if key in changes and changes[key] is None:
            raise ValidationError(f"{key} cannot be null.")
    for key, value in changes.items():
        setattr(product, key, value)

    # every editable field is mirrored; this commits the edit with the pending mark
    sync_product(db, product, processor)
    db.refresh(product)
    return {"data": _product_dict(product), "meta": _meta()}


@app.get("/api/admin/products/{product_id}", tags=["Catalog"])
def get_product(product_id: int, db: Session = Depends(get_db)) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found.")
    variants = db.scalars(select(Variant).where(Variant.product_id == product_id).order_by(Variant.id)).all()
    data = _product_dict(product)
    data["variants"] = []
    for variant in variants:
        rows = db.scalars(
            select(VariantPrice)
            .where(VariantPrice.variant_id == variant.id, VariantPrice.active.is_(True))
            .order_by(VariantPrice.min_qty)
        ).all()
        data["variants"].append({**_variant_dict(variant), "prices": [_variant_price_dict(row) for row in rows]})
    return {"data": data, "meta": _meta()}


@app.post("/api/admin/products/{product_id}/sync", tags=["Catalog"])
def retry_product_sync(
    product_id: int,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found.")
    sync_product(db, product, processor)
    return {"data": _product_dict(product), "meta": _meta()}


class VariantCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Blue", "sku": "LAN-BLUE", "active": 1}}}
    name: str = Field(min_length=1)
    sku: str = Field(min_length=1)
    description: Optional[str] = None
    active: int = Field(ActiveState.ACTIVE.value, ge=0, le=2)


@app.post("/api/admin/products/{product_id}/variants", tags=["Catalog"])
def create_variant(product_id: int, payload: VariantCreate, db: Session = Depends(get_db)) -> dict:
    if not db.get(Product, product_id):
        raise NotFoundError("Product not found.")
    variant = Variant(
        product_id=product_id,
        name=payload.name.strip(),
        sku=payload.sku.strip(),
        description=payload.description,
        active=payload.active,
    )
    db.add(variant)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("SKU already exists.") from exc
    db.refresh(variant)
    return {"data": _variant_dict(variant), "meta": _meta()}


class TierReplace(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"tiers": [{"min_qty": 1, "unit_amount_cents": 1000}, {"min_qty": 10, "unit_amount_cents": 800}]}
        }
    }
    tiers: Any = None
    currency: Optional[str] = None


@app.put("/api/admin/variants/{variant_id}/prices", tags=["Tiers"])
def put_variant_prices(
    variant_id: int,
    payload: TierReplace,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict:
    rows = replace_variant_tiers(
        db, variant_id, payload.tiers, processor, currency=(payload.currency or settings.default_currency).lower()
    )
    warnings = [f"variant_price {row.id}: {row.stripe_sync_error}" for row in rows if row.stripe_sync_error]
    return {
        "data": {"variant_id": variant_id, "tiers": [_variant_price_dict(row) for row in rows]},
        "meta": _meta(warnings=warnings),
    }


@app.get("/api/admin/variants/{variant_id}/prices", tags=["Tiers"])
def get_variant_prices(variant_id: int, db: Session = Depends(get_db)) -> dict:
    if not db.get(Variant, variant_id):
        raise NotFoundError("Variant not found.")
    rows = db.scalars(
        select(VariantPrice)
        .where(VariantPrice.variant_id == variant_id, VariantPrice.active.is_(True))
        .order_by(VariantPrice.min_qty)
    ).all()
    return {"data": {"variant_id": variant_id, "tiers": [_variant_price_dict(row) for row in rows]}, "meta": _meta()}


@app.post("/api/admin/variant-prices/{price_id}/sync", tags=["Tiers"])
def retry_variant_price_sync(
    price_id: int,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict:
    row = db.get(VariantPrice, price_id)
    if not row:
        raise NotFoundError("Variant price not found.")
    warnings = []
    if row.active and not row.stripe_price_id:
        sync_variant_price(db, row, processor)
    elif not row.active and row.stripe_price_id:
        archive_variant_price(db, row, processor)
    elif not row.active:
        # superseded tiers are never mirrored
        warnings.append(f"variant_price {row.id} is inactive and has no processor price; nothing to sync.")
    return {"data": _variant_price_dict(row), "meta": _meta(warnings=warnings)}


class DesignCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"code": "OCEAN", "name": "Ocean", "active": 1}}}
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    active: int = Field(ActiveState.ACTIVE.value, ge=0, le=2)


@app.post("/api/admin/keycards/designs", tags=["Keycards"])
def create_design(payload: DesignCreate, db: Session = Depends(get_db)) -> dict:
    design = KeycardDesign(
        code=payload.code.strip().upper(),
        name=payload.name.strip(),
        description=payload.description,
        active=payload.active,
    )
    db.add(design)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Design code already exists.") from exc
    db.refresh(design)
    return {
        "data": {
            "design_id": design.id,
            "code": design.code,
            "name": design.name,
            "description": design.description,
            "active": design.active,
        },
        "meta": _meta(),
    }


class LockTechCreate(BaseModel):
    name: str = Field(min_length=1)
    active: int = Field(ActiveState.ACTIVE.value, ge=0, le=2)


@app.post("/api/admin/keycards/lock-tech", tags=["Keycards"])
def create_lock_tech(payload: LockTechCreate, db: Session = Depends(get_db)) -> dict:
    lock_tech = LockTech(name=payload.name.strip(), active=payload.active)
    db.add(lock_tech)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Lock tech already exists.") from exc
    db.refresh(lock_tech)
    return {
        "data": {"lock_tech_id": lock_tech.id, "name": lock_tech.name, "active": lock_tech.active},
        "meta": _meta(),
    }


@app.put("/api/admin/keycards/lock-tech/{lock_tech_id}/tiers", tags=["Keycards"])
def put_keycard_tiers(lock_tech_id: int, payload: TierReplace, db: Session = Depends(get_db)) -> dict:
    rows = replace_keycard_tiers(
        db, lock_tech_id, payload.tiers, currency=(payload.currency or settings.default_currency).lower()
    )
    return {
        "data": {"lock_tech_id": lock_tech_id, "tiers": [_keycard_tier_dict(row) for row in rows]},
        "meta": _meta(),
    }


@app.get("/api/admin/keycards/lock-tech/{lock_tech_id}/tiers", tags=["Keycards"])
def get_keycard_tiers(lock_tech_id: int, active: bool = Query(True), db: Session = Depends(get_db)) -> dict:
    if not db.get(LockTech, lock_tech_id):
        raise NotFoundError("Lock tech not found.")
    rows = db.scalars(
        select(KeycardPriceTier)
        .where(KeycardPriceTier.lock_tech_id == lock_tech_id, KeycardPriceTier.active.is_(active))
        .order_by(KeycardPriceTier.min_boxes, KeycardPriceTier.id)
    ).all()
    return {
        "data": {"lock_tech_id": lock_tech_id, "tiers": [_keycard_tier_dict(row) for row in rows]},
        "meta": _meta(),
    }


@app.get("/api/keycards/lock-tech/{lock_tech_id}/tiers", tags=["Storefront"])
def list_lock_tech_tiers(lock_tech_id: int, db: Session = Depends(get_db)) -> dict:
    if not db.get(LockTech, lock_tech_id):
        raise NotFoundError("Lock tech not found.")
    tiers = active_keycard_tiers(db, lock_tech_id)
    return {
        "data": {"lock_tech_id": lock_tech_id, "tiers": [tier.to_dict(KEYCARD_TIERS) for tier in tiers]},
        "meta": _meta(),
    }


@app.get("/api/variants/{variant_id}/price", tags=["Storefront"])
def get_variant_price(variant_id: int, qty: int = Query(1), db: Session = Depends(get_db)) -> dict:
    if not db.get(Variant, variant_id):
        raise NotFoundError("Variant not found.")
    quantity = max(1, qty)
    tier = resolve_tier(active_variant_tiers(db, variant_id), quantity)
    return {
        "data": {
            "variant_id": variant_id,
            "quantity": quantity,
            "tier": tier.to_dict(VARIANT_TIERS),
            "unit_amount_cents": tier.unit_amount,
            "line_total_cents": tier.unit_amount * quantity,
            "currency": tier.currency,
        },
        "meta": _meta(),
    }


@app.get("/api/keycards/lock-tech/{lock_tech_id}/price", tags=["Storefront"])
def get_keycard_price(lock_tech_id: int, boxes: int = Query(1), db: Session = Depends(get_db)) -> dict:
    if not db.get(LockTech, lock_tech_id):
        raise NotFoundError("Lock tech not found.")
    boxes = max(1, boxes)
    tier = resolve_tier(active_keycard_tiers(db, lock_tech_id), boxes)
    return {
        "data": {
            "lock_tech_id": lock_tech_id,
            "boxes": boxes,
            "tier": tier.to_dict(KEYCARD_TIERS),
            "price_per_box_cents": tier.unit_amount,
            "line_total_cents": tier.unit_amount * boxes,
            "currency": tier.currency,
        },
        "meta": _meta(),
    }


class CartQuote(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"items": [{"kind": "product", "product_id": 1, "variant_id": 1, "quantity": 3}]}
        }
    }
    items: Any = None


class OrderCreate(CartQuote):
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    shipping: AddressInfo = Field(default_factory=AddressInfo)
    billing: AddressInfo = Field(default_factory=AddressInfo)

    def buyer(self) -> BuyerInfo:
        return BuyerInfo(customer=self.customer, shipping=self.shipping, billing=self.billing)


class AdminOrderCreate(OrderCreate):
    tax_cents: Any = 0
    shipping_cents: Any = 0
    source: str = OrderSource.MANUAL.value
    payment_method: str = PaymentMethod.INVOICE.value
    notes: Optional[str] = None
    external_ref: Optional[str] = None


@app.post("/api/cart/quote", tags=["Cart"])
def quote_cart(payload: CartQuote, db: Session = Depends(get_db)) -> dict:
    cart = resolve_cart(db, payload.items, default_currency=settings.default_currency)
    return {"data": cart.to_dict(), "meta": _meta()}


@app.post("/api/orders", tags=["Orders"])
def create_order(payload: OrderCreate, db: Session = Depends(get_db)) -> dict:
    created = create_order_from_cart(
        db,
        payload.items,
        payload.buyer(),
        order_prefix=settings.order_prefix,
        default_currency=settings.default_currency,
    )
    return {"data": created.to_dict(), "meta": _meta()}


@app.post("/api/checkout", tags=["Orders"])
def checkout(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict:
    result = start_checkout(
        db,
        processor,
        payload.items,
        payload.buyer(),
        order_prefix=settings.order_prefix,
        default_currency=settings.default_currency,
        tax_rate_id=settings.stripe_tax_rate_id,
    )
    return {"data": result, "meta": _meta()}


class OrderLookup(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"order_number": "LTS-2026-000123", "email": "ada@example.com", "zip": "78701"}}
    }
    order_number: Optional[str] = None
    email: Optional[str] = None
    zip: Optional[str] = None


def _public_order(db: Session, order) -> dict:
    return {"data": public_order_to_dict(order, order_items(db, order.id)), "meta": _meta()}


@app.post("/api/orders/lookup", tags=["Orders"])
def lookup_order_by_body(payload: OrderLookup, db: Session = Depends(get_db)) -> dict:
    return _public_order(db, lookup_order(db, payload.order_number, payload.email, payload.zip))


@app.get("/api/orders/lookup", tags=["Orders"])
def lookup_order_by_query(
    order_number: Optional[str] = None,
    email: Optional[str] = None,
    zip: Optional[str] = None,
    db: Session = Depends(get_db),
) -> dict:
    return _public_order(db, lookup_order(db, order_number, email, zip))


@app.get("/api/orders/by-session/{session_id}", tags=["Orders"])
def get_order_by_session(session_id: str, db: Session = Depends(get_db)) -> dict:
    return _public_order(db, order_for_session(db, session_id))


@app.post("/api/admin/orders", tags=["Admin Orders"])
def create_admin_order(payload: AdminOrderCreate, db: Session = Depends(get_db)) -> dict:
    created = create_order_from_cart(
        db,
        payload.items,
        payload.buyer(),
        allow_overrides=True,
        tax_cents=payload.tax_cents,
        shipping_cents=payload.shipping_cents,
        source=payload.source,
        payment_method=payload.payment_method,
        notes=payload.notes,
        external_ref=payload.external_ref,
        order_prefix=settings.order_prefix,
        default_currency=settings.default_currency,
    )
    return {"data": created.to_dict(), "meta": _meta()}


@app.get("/api/admin/orders", tags=["Admin Orders"])
def list_admin_orders(
    q: Optional[str] = None,
    order_status: Optional[str] = None,
    payment_status: Optional[str] = None,
    fulfillment_status: Optional[str] = None,
    shipping_status: Optional[str] = None,
    source: Optional[str] = None,
    payment_method: Optional[str] = None,
    limit: int = Query(25, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    rows, total = list_orders(
        db,
        filters={
            "order_status": order_status,
            "payment_status": payment_status,
            "fulfillment_status": fulfillment_status,
            "shipping_status": shipping_status,
            "source": source,
            "payment_method": payment_method,
        },
        q=q,
        limit=limit,
        offset=offset,
    )
    meta = _meta()
    meta["page"] = {"limit": limit, "offset": offset, "total": total}
    return {"data": [order_to_dict(order) for order in rows], "meta": meta}


@app.get("/api/admin/orders/{order_id}", tags=["Admin Orders"])
def get_admin_order(order_id: int, db: Session = Depends(get_db)) -> dict:
    order = get_order(db, order_id)
    return {"data": order_to_dict(order, order_items(db, order_id)), "meta": _meta()}


@app.patch("/api/admin/orders/{order_id}", tags=["Admin Orders"])
def patch_admin_order(order_id: int, patch: dict[str, Any] = Body(...), db: Session = Depends(get_db)) -> dict:
    order, ignored_fields = update_order(db, order_id, patch)
    warnings = [f"ignored financial field: {key}" for key in ignored_fields]
    return {
        "data": {"order": order_to_dict(order, order_items(db, order_id)), "ignored_fields": ignored_fields},
        "meta": _meta(warnings=warnings),
    }


async def raw_body(request: Request) -> bytes:
    return await request.body()


@app.post("/api/webhooks/stripe", tags=["Webhooks"])
def stripe_webhook(
    payload: bytes = Depends(raw_body),
    stripe_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> dict:
    return ingest_event(db, processor, payload, stripe_signature)
