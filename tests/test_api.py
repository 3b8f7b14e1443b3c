"""HTTP-level tests for the FastAPI app."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import main
from database import utcnow


def window(days=30):
    now = utcnow()
    return {
        "start_date": (now - timedelta(days=1)).isoformat(),
        "end_date": (now + timedelta(days=days)).isoformat(),
    }


@pytest.fixture
def client(db, gateway):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.payment_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def headers(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
def catalog_setup(client):
    brand = client.post("/api/admin/brands", json={"name": "Nova Games"}).json()
    product = client.post("/api/admin/products", json={
        "name": "Starfall", "price": 1000, "brand": brand["id"], "stock": 5,
    }).json()
    return brand, product


def test_root(client):
    assert client.get("/").json() == {"message": "Game Store API is running"}


def test_missing_user_header(client):
    res = client.get("/api/orders")
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_validation_error_is_422(client):
    res = client.post("/api/admin/brands", json={})
    assert res.status_code == 422


def test_unknown_product_is_404(client):
    res = client.get("/api/products/64b7f0c2a1b2c3d4e5f60718")
    assert res.status_code == 404
    assert res.json()["message"] == "Product not found"


def test_malformed_id_is_400(client):
    res = client.get("/api/products/not-an-id")
    assert res.status_code == 400


def test_offer_validation_returns_field_errors(client, catalog_setup):
    _, product = catalog_setup
    res = client.post("/api/admin/offers", json={
        "name": "Too much",
        "target": {"kind": "Product", "id": product["id"]},
        "discount_type": "amount",
        "discount_value": 2000,
        **window(),
    })
    assert res.status_code == 400
    assert "discount_value" in res.json()["errors"]


def test_checkout_with_offer_and_wallet(client, headers, catalog_setup, fund, user_id):
    _, product = catalog_setup
    res = client.post("/api/admin/offers", json={
        "name": "Launch",
        "target": {"kind": "Product", "id": product["id"]},
        "discount_type": "percentage",
        "discount_value": 20,
        **window(),
    })
    assert res.status_code == 201
    assert client.get(f"/api/products/{product['id']}").json()["discounted_price"] == 800

    address = client.post("/api/addresses", headers=headers, json={
        "full_name": "Asha Rao",
        "address_line1": "12 MG Road",
        "city": "Bengaluru",
        "postal_code": "560001",
    }).json()
    assert address["user_id"] == user_id

    fund(user_id, 1000)
    res = client.post("/api/orders", headers=headers, json={
        "items": [{"product_id": product["id"], "quantity": 1}],
        "shipping_address_id": address["id"],
        "payment_method": "Wallet",
    })
    assert res.status_code == 201
    order = res.json()["order"]
    assert order["final_price"] == 800
    assert order["payment_status"] == "Paid"
    assert "gateway" not in res.json()

    assert client.get("/api/wallet", headers=headers).json()["balance"] == 200
    assert client.get(f"/api/orders/{order['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers={"X-User-Id": "user-2"}).status_code == 403

    res = client.patch(f"/api/admin/orders/{order['id']}", json={"status": "Delivered"})
    assert res.status_code == 400
    assert "Invalid order status transition" in res.json()["message"]

    res = client.put(f"/api/orders/{order['id']}", headers=headers, json={})
    assert res.status_code == 200
    assert res.json()["order_status"] == "Cancelled"
    assert client.get("/api/wallet", headers=headers).json()["balance"] == 1000


def test_razorpay_checkout_flow(client, headers, catalog_setup, address, gateway):
    _, product = catalog_setup
    res = client.post("/api/orders", headers=headers, json={
        "items": [{"product_id": product["id"], "quantity": 2}],
        "shipping_address_id": str(address["_id"]),
        "payment_method": "Razorpay",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["gateway"] == {"gateway_order_id": "order_test_1", "amount": 200000, "currency": "INR"}

    bad = client.post("/api/orders/razorpay/verify", headers=headers, json={
        "gateway_order_id": "order_test_1", "payment_id": "pay_1", "signature": "nope",
    })
    assert bad.status_code == 400

    ok = client.post("/api/orders/razorpay/verify", headers=headers, json={
        "gateway_order_id": "order_test_1",
        "payment_id": "pay_1",
        "signature": gateway.signature_for("order_test_1", "pay_1"),
    })
    assert ok.status_code == 200
    assert ok.json()["payment_status"] == "Paid"


def test_insufficient_stock_is_400(client, headers, catalog_setup, address):
    _, product = catalog_setup
    res = client.post("/api/orders", headers=headers, json={
        "items": [{"product_id": product["id"], "quantity": 6}],
        "shipping_address_id": str(address["_id"]),
        "payment_method": "Cash on Delivery",
    })
    assert res.status_code == 400
    assert res.json()["message"].startswith("Insufficient stock for product: Starfall")


def test_wallet_top_up(client, headers, gateway):
    res = client.post("/api/wallet", headers=headers, json={"amount": 150})
    assert res.status_code == 201
    gid = res.json()["id"]

    res = client.patch("/api/wallet", headers=headers, json={
        "gateway_order_id": gid,
        "payment_id": "pay_9",
        "signature": gateway.signature_for(gid, "pay_9"),
    })
    assert res.status_code == 200
    assert res.json()["balance"] == 150


def test_coupon_admin(client):
    res = client.post("/api/admin/coupons", json={
        "code": "welcome",
        "discount_type": "percentage",
        "discount_value": 15,
        **window(),
    })
    assert res.status_code == 201
    coupon = res.json()
    assert coupon["code"] == "WELCOME"

    dup = client.post("/api/admin/coupons", json={
        "code": "WELCOME",
        "discount_type": "amount",
        "discount_value": 50,
        **window(),
    })
    assert dup.status_code == 409

    toggled = client.patch(f"/api/admin/coupons/{coupon['id']}")
    assert toggled.json()["is_active"] is False


def test_lifespan_runs_offer_sweep(db, monkeypatch):
    monkeypatch.setattr(main.database, "db", db)
    monkeypatch.setattr(main, "OFFER_SWEEP_INTERVAL_SECONDS", 3600)
    with TestClient(main.app):
        task = main.app.state.offer_sweep
        assert task is not None
        assert not task.done()
    assert task.cancelled()


def test_lifespan_without_database(monkeypatch):
    monkeypatch.setattr(main.database, "db", None)
    with TestClient(main.app):
        assert main.app.state.offer_sweep is None
