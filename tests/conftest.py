import json
import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["LOG_JSON"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from commerce.db import Base
from commerce.errors import AuthError, ExternalServiceError
from commerce.main import app, get_db, get_processor
from commerce.models import KeycardDesign, KeycardPriceTier, LockTech, Product, Variant, VariantPrice
from commerce.processor import PaymentProcessor


class FakeProcessor(PaymentProcessor):
    """Records every call; operations listed in ``fail`` raise ExternalServiceError."""

    def __init__(self):
        self.calls = []
        self.fail = {}
        self._seq = 0

    def _record(self, operation, **params):
        self.calls.append((operation, params))
        if operation in self.fail:
            raise ExternalServiceError(self.fail[operation])

    def _next_id(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def operations(self, name):
        return [params for operation, params in self.calls if operation == name]

    def create_product(self, name, description, active):
        self._record("create_product", name=name, description=description, active=active)
        return self._next_id("prod")

    def update_product(self, product_id, name, description, active):
        self._record("update_product", product_id=product_id, name=name, description=description, active=active)

    def create_price(self, product_id, unit_amount_cents, currency):
        self._record("create_price", product_id=product_id, unit_amount_cents=unit_amount_cents, currency=currency)
        return self._next_id("price")

    def archive_price(self, price_id):
        self._record("archive_price", price_id=price_id)

    def create_checkout_session(self, line_items, *, currency, client_reference_id, metadata, customer_email=None):
        self._record(
            "create_checkout_session",
            line_items=line_items,
            currency=currency,
            client_reference_id=client_reference_id,
            metadata=metadata,
            customer_email=customer_email,
        )
        session_id = self._next_id("cs_test")
        return {"id": session_id, "url": f"https://checkout.example/{session_id}"}

    def verify_event(self, payload, signature):
        if signature != "valid":
            raise AuthError("Webhook Error: No signatures found matching the expected signature for payload")
        return json.loads(payload)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def processor():
    return FakeProcessor()


@pytest.fixture()
def client(session_factory, processor):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor] = lambda: processor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_variant(db):
    counter = {"n": 0}

    def _make(
        tiers=((1, 1000), (10, 800)),
        *,
        currency="usd",
        product_type="regular",
        product_active=1,
        variant_active=1,
        stripe_product_id="prod_seed",
    ):
        counter["n"] += 1
        product = Product(
            type=product_type,
            name=f"Lanyard {counter['n']}",
            active=product_active,
            stripe_product_id=stripe_product_id,
            stripe_sync_status="synced",
        )
        db.add(product)
        db.flush()
        variant = Variant(
            product_id=product.id,
            name="Blue",
            sku=f"LAN-BLUE-{counter['n']}",
            active=variant_active,
        )
        db.add(variant)
        db.flush()
        for i, (min_qty, amount) in enumerate(tiers):
            following = tiers[i + 1][0] if i + 1 < len(tiers) else None
            db.add(
                VariantPrice(
                    variant_id=variant.id,
                    min_qty=min_qty,
                    max_qty=following - 1 if following else None,
                    currency=currency,
                    unit_amount_cents=amount,
                    active=True,
                    stripe_price_id=f"price_seed_{variant.id}_{i}",
                    stripe_sync_status="synced",
                )
            )
        db.commit()
        return product, variant

    return _make


@pytest.fixture()
def make_keycard(db):
    counter = {"n": 0}

    def _make(tiers=((1, 500), (5, 450)), *, currency="usd", design_active=1, lock_tech_active=1):
        counter["n"] += 1
        design = KeycardDesign(code=f"OCEAN{counter['n']}", name="Ocean", active=design_active)
        lock_tech = LockTech(name=f"RFID {counter['n']}", active=lock_tech_active)
        db.add_all([design, lock_tech])
        db.flush()
        for i, (min_boxes, amount) in enumerate(tiers):
            following = tiers[i + 1][0] if i + 1 < len(tiers) else None
            db.add(
                KeycardPriceTier(
                    lock_tech_id=lock_tech.id,
                    min_boxes=min_boxes,
                    max_boxes=following - 1 if following else None,
                    currency=currency,
                    price_per_box_cents=amount,
                    active=True,
                )
            )
        db.commit()
        return design, lock_tech

    return _make
