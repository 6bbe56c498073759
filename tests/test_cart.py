import pytest

from commerce.cart import parse_cart_line, resolve_cart
from commerce.errors import ConflictError, NotFoundError, ValidationError
from commerce.models import BOX_SIZE


def _line(product, variant, quantity, **extra):
    return {"kind": "product", "product_id": product.id, "variant_id": variant.id, "quantity": quantity, **extra}


def test_lines_are_priced_by_their_own_tier(db, make_variant) -> None:
    product, variant = make_variant(tiers=((1, 1000), (10, 800)))

    cart = resolve_cart(db, [_line(product, variant, 3), _line(product, variant, 12)])

    assert [line.line_total_cents for line in cart.lines] == [3000, 9600]
    assert cart.subtotal_cents == 12600
    assert cart.currency == "usd"
    assert cart.is_manual_pricing is False
    assert cart.lines[0].stripe_price_id == f"price_seed_{variant.id}_0"
    assert cart.lines[1].stripe_price_id == f"price_seed_{variant.id}_1"


def test_client_supplied_prices_are_ignored(db, make_variant) -> None:
    product, variant = make_variant()
    cart = resolve_cart(
        db,
        [_line(product, variant, 2, unit_amount_cents=1, currency="eur", stripe_price_id="price_evil")],
    )
    line = cart.lines[0]
    assert (line.unit_amount_cents, line.currency, line.stripe_price_id) == (
        1000,
        "usd",
        f"price_seed_{variant.id}_0",
    )


def test_variant_kind_alias_and_case(db, make_variant) -> None:
    product, variant = make_variant()
    cart = resolve_cart(db, [{**_line(product, variant, 1), "kind": " Variant "}])
    assert cart.lines[0].item_type == "regular"


def test_keycard_line_is_priced_per_box(db, make_keycard) -> None:
    design, lock_tech = make_keycard(tiers=((1, 500), (5, 450)))

    cart = resolve_cart(db, [{"kind": "keycard", "design_id": design.id, "lock_tech_id": lock_tech.id, "quantity": 6}])

    line = cart.lines[0]
    assert line.item_type == "keycard"
    assert line.boxes == 6
    assert line.unit_amount_cents == 450
    assert line.line_total_cents == 2700
    assert line.metadata["cards_per_box"] == BOX_SIZE
    assert line.metadata["design_code"] == design.code


def test_mixed_currencies_are_rejected(db, make_variant) -> None:
    usd_product, usd_variant = make_variant(currency="usd")
    cad_product, cad_variant = make_variant(currency="cad")

    with pytest.raises(ValidationError, match="Mixed currencies"):
        resolve_cart(db, [_line(usd_product, usd_variant, 1), _line(cad_product, cad_variant, 1)])


def test_empty_cart_is_rejected(db) -> None:
    with pytest.raises(ValidationError):
        resolve_cart(db, [])
    with pytest.raises(ValidationError):
        resolve_cart(db, None)


def test_missing_entities_are_not_found(db, make_variant, make_keycard) -> None:
    product, variant = make_variant()
    _, other_variant = make_variant()
    design, lock_tech = make_keycard()

    with pytest.raises(NotFoundError):
        resolve_cart(db, [_line(product, other_variant, 1)])
    with pytest.raises(NotFoundError):
        resolve_cart(db, [{"kind": "product", "product_id": 999, "variant_id": variant.id, "quantity": 1}])
    with pytest.raises(NotFoundError):
        resolve_cart(db, [{"kind": "keycard", "design_id": 999, "lock_tech_id": lock_tech.id, "quantity": 1}])
    with pytest.raises(NotFoundError):
        resolve_cart(db, [{"kind": "keycard", "design_id": design.id, "lock_tech_id": 999, "quantity": 1}])


def test_inactive_entities_conflict(db, make_variant, make_keycard) -> None:
    archived_product, archived_variant = make_variant(product_active=2)
    product, inactive_variant = make_variant(variant_active=0)
    design, lock_tech = make_keycard(lock_tech_active=0)

    with pytest.raises(ConflictError):
        resolve_cart(db, [_line(archived_product, archived_variant, 1)])
    with pytest.raises(ConflictError):
        resolve_cart(db, [_line(product, inactive_variant, 1)])
    with pytest.raises(ConflictError):
        resolve_cart(db, [{"kind": "keycard", "design_id": design.id, "lock_tech_id": lock_tech.id, "quantity": 1}])


def test_variant_without_tiers_conflicts(db, make_variant) -> None:
    product, variant = make_variant(tiers=())
    with pytest.raises(ConflictError, match="No active tier"):
        resolve_cart(db, [_line(product, variant, 1)])


def test_product_line_against_keycard_product(db, make_variant) -> None:
    product, variant = make_variant(product_type="keycard")
    with pytest.raises(ValidationError, match="not a regular product"):
        resolve_cart(db, [_line(product, variant, 1)])


def test_first_bad_line_aborts_the_cart(db, make_variant) -> None:
    product, variant = make_variant()
    with pytest.raises(ValidationError, match=r"items\[1\]"):
        resolve_cart(db, [_line(product, variant, 1), {"kind": "product", "product_id": product.id, "quantity": 1}])


@pytest.mark.parametrize(
    "raw",
    [
        "not-an-object",
        {"kind": "gift-card", "quantity": 1},
        {"product_id": 1, "variant_id": 1, "quantity": 1},
        {"kind": "product", "product_id": 1, "variant_id": 1, "quantity": 0},
        {"kind": "keycard", "design_id": 1, "quantity": 2},
    ],
)
def test_malformed_lines_are_validation_errors(raw) -> None:
    outcome = parse_cart_line(raw, 0)
    assert isinstance(outcome, ValidationError)
    assert outcome.message.startswith("items[0]")


def test_override_only_applies_when_allowed(db, make_variant) -> None:
    product, variant = make_variant()
    items = [_line(product, variant, 4, override_unit_amount_cents=555)]

    public = resolve_cart(db, items)
    assert public.lines[0].unit_amount_cents == 1000
    assert public.lines[0].price_source == "catalog"
    assert public.is_manual_pricing is False

    admin = resolve_cart(db, items, allow_overrides=True)
    assert admin.lines[0].unit_amount_cents == 555
    assert admin.lines[0].price_source == "override"
    assert admin.lines[0].stripe_price_id is None
    assert admin.is_manual_pricing is True
    assert admin.subtotal_cents == 2220


def test_quote_endpoint(client, make_variant) -> None:
    product, variant = make_variant()

    resp = client.post("/api/cart/quote", json={"items": [_line(product, variant, 12)]})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["subtotal"] == 9600
    assert data["line_items"][0]["unit_amount_cents"] == 800
    assert resp.json()["meta"]["request_id"].startswith("req_")


def test_quote_endpoint_error_shapes(client, make_variant) -> None:
    product, variant = make_variant(variant_active=0)

    conflict = client.post("/api/cart/quote", json={"items": [_line(product, variant, 1)]})
    assert conflict.status_code == 409
    assert "inactive" in conflict.json()["error"]

    empty = client.post("/api/cart/quote", json={"items": []})
    assert empty.status_code == 400
    assert empty.json() == {"error": "Cart is empty or items is not an array."}
