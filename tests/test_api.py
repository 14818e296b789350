from decimal import Decimal

CHECKOUT = {
    "order_id": "42",
    "order_type": "PICKUP",
    "customer": {"id": "cust-1", "name": "Dara Sok", "phone": "012345678"},
    "items": [
        {"product_id": "p-1", "product_name": "Fried Rice", "quantity": 2, "unit_price": "12.50"},
    ],
    "phone_number": "012345678",
}


def _transition(client, machine, target, **extra):
    return client.post("/orders/42/transitions", json={"machine": machine, "target_state": target, **extra})


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_checkout_and_read_views(client):
    resp = client.post("/orders", json=CHECKOUT)
    assert resp.status_code == 201
    body = resp.json()
    assert body["id"] == "42"
    assert body["status"] == "PENDING"
    assert body["pickupStatus"] == "AWAITING_CONFIRMATION"
    assert Decimal(body["totalPrice"]) == Decimal("25.00")

    assert client.get("/orders/42").json()["version"] == 1
    assert client.get("/orders/42/pickup").json()["pickupCode"] == body["pickupCode"]
    missing = client.get("/orders/42/delivery")
    assert missing.status_code == 404
    assert missing.json()["status"] == "error"
    assert missing.json()["code"] == "record_not_found"
    assert client.get("/orders/42/payment").status_code == 404
    assert client.get("/orders/42/customer").json()["name"] == "Dara Sok"
    assert [p["name"] for p in client.get("/orders/42/products").json()] == ["Fried Rice"]


def test_invalid_checkout_is_400(client):
    resp = client.post("/orders", json={**CHECKOUT, "phone_number": None})
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_checkout"


def test_pickup_scenario_over_http(client):
    client.post("/orders", json=CHECKOUT)
    assert _transition(client, "order", "CONFIRMED").status_code == 200
    assert client.post("/orders/42/payment", json={"method": "STRIPE"}).json()["status"] == "PENDING"
    _transition(client, "pickup", "PREPARING")
    _transition(client, "order", "PREPARING")
    _transition(client, "order", "READY_FOR_PICKUP")

    resp = _transition(client, "order", "COMPLETED")
    assert resp.status_code == 422
    assert resp.json()["code"] == "consistency_violation"
    assert resp.json()["retryable"] is False

    for state in ("AWAITING_SESSION", "PROCESSING", "COMPLETED"):
        assert _transition(client, "payment", state).status_code == 200
    for state in ("READY_FOR_PICKUP", "COMPLETED"):
        assert _transition(client, "pickup", state).status_code == 200

    resp = _transition(client, "order", "COMPLETED")
    assert resp.status_code == 200
    assert resp.json()["status"] == "COMPLETED"
    assert resp.json()["paymentStatus"] == "COMPLETED"


def test_error_kinds_map_to_distinct_statuses(client):
    assert client.get("/orders/missing").status_code == 404
    client.post("/orders", json=CHECKOUT)

    illegal = _transition(client, "order", "COMPLETED")
    assert illegal.status_code == 409
    assert illegal.json()["code"] == "illegal_transition"

    _transition(client, "order", "CONFIRMED")
    conflict = _transition(client, "order", "PREPARING", expected_version=1)
    assert conflict.status_code == 412
    assert conflict.json()["code"] == "version_conflict"
    assert conflict.json()["retryable"] is True

    frozen = client.put("/orders/42/items", json={"items": CHECKOUT["items"]})
    assert frozen.status_code == 423

    assert _transition(client, "kitchen", "PREPARING").status_code == 422


def test_items_and_location_endpoints(client):
    client.post("/orders", json={**CHECKOUT, "order_id": "7", "order_type": "DELIVERY", "delivery_address": "12 Riverside Rd"})

    resp = client.put(
        "/orders/7/items",
        json={"items": [{"product_id": "p-3", "product_name": "Soup", "quantity": 3, "unit_price": "4.00"}]},
    )
    assert Decimal(resp.json()["totalPrice"]) == Decimal("12.00")

    resp = client.post("/orders/7/delivery/location", json={"location": "Street 51", "latitude": 11.55, "longitude": 104.92})
    assert resp.status_code == 200
    assert resp.json()["currentLocation"] == "Street 51"
    assert client.get("/orders/7").json()["deliveryLatitude"] == 11.55

    assert client.post("/orders/7/delivery/location", json={"latitude": 200}).status_code == 422


def test_metrics_endpoint(client):
    client.post("/orders", json=CHECKOUT)
    _transition(client, "order", "CONFIRMED")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "transitions_applied_total" in resp.text
