def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "healthy"}


def test_variant_and_prices_show_on_product_read(client) -> None:
    product_id = client.post("/api/admin/products", json={"name": "Lanyard"}).json()["data"]["product_id"]

    variant = client.post(f"/api/admin/products/{product_id}/variants", json={"name": "Blue", "sku": "LAN-BLUE"})
    assert variant.status_code == 200
    variant_id = variant.json()["data"]["variant_id"]

    duplicate = client.post(f"/api/admin/products/{product_id}/variants", json={"name": "Navy", "sku": "LAN-BLUE"})
    assert duplicate.status_code == 409
    assert duplicate.json() == {"error": "SKU already exists."}

    client.put(
        f"/api/admin/variants/{variant_id}/prices",
        json={"tiers": [{"min_qty": 1, "unit_amount_cents": 1000}, {"min_qty": 10, "unit_amount_cents": 800}]},
    )

    detail = client.get(f"/api/admin/products/{product_id}").json()["data"]
    (listed,) = detail["variants"]
    assert listed["sku"] == "LAN-BLUE"
    assert [(p["min_qty"], p["max_qty"]) for p in listed["prices"]] == [(1, 9), (10, None)]
    assert {p["sync_status"] for p in listed["prices"]} == {"synced"}

    prices = client.get(f"/api/admin/variants/{variant_id}/prices").json()["data"]["tiers"]
    assert [p["unit_amount_cents"] for p in prices] == [1000, 800]


def test_variant_for_missing_product(client) -> None:
    resp = client.post("/api/admin/products/999/variants", json={"name": "Blue", "sku": "X"})
    assert resp.status_code == 404


def test_keycard_setup_and_quote(client) -> None:
    design = client.post("/api/admin/keycards/designs", json={"code": "ocean", "name": "Ocean"})
    assert design.status_code == 200
    assert design.json()["data"]["code"] == "OCEAN"
    assert client.post("/api/admin/keycards/designs", json={"code": "OCEAN", "name": "Again"}).status_code == 409

    lock_tech = client.post("/api/admin/keycards/lock-tech", json={"name": "RFID"})
    assert lock_tech.status_code == 200
    lock_tech_id = lock_tech.json()["data"]["lock_tech_id"]
    assert client.post("/api/admin/keycards/lock-tech", json={"name": "RFID"}).status_code == 409

    client.put(
        f"/api/admin/keycards/lock-tech/{lock_tech_id}/tiers",
        json={"tiers": [{"min_boxes": 1, "price_per_box_cents": 5000}, {"min_boxes": 4, "price_per_box_cents": 4500}]},
    )
    quote = client.post(
        "/api/cart/quote",
        json={
            "items": [
                {
                    "kind": "keycard",
                    "design_id": design.json()["data"]["design_id"],
                    "lock_tech_id": lock_tech_id,
                    "quantity": 4,
                }
            ]
        },
    )
    assert quote.status_code == 200
    assert quote.json()["data"]["subtotal"] == 18000


def test_request_body_errors_render_as_400(client) -> None:
    resp = client.post("/api/admin/products", json={"name": ""})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("name:")
