import re
from datetime import datetime, timedelta, timezone

import app as app_module
from tests.conftest import make_user

CART = "SELECT id FROM carts WHERE id=%s"


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


def test_now_utc_is_naive_utc():
    now = app_module._now_utc()
    assert now.tzinfo is None
    assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)


def test_api_responses_carry_security_headers(client, db):
    resp = client.get("/api/csrf-token")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Cache-Control"] == "no-store"


def test_order_number_format():
    number = app_module.generate_order_number(now_ms=1700000000000)
    assert re.fullmatch(r"ORD-1700000000000-\d{9}", number)


def test_order_status_steps_mark_progress():
    steps = app_module.order_status_steps("SHIPPED")
    assert [s["status"] for s in steps] == ["PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED"]
    assert [s["completed"] for s in steps] == [True, True, True, True, False]
    assert [s["current"] for s in steps] == [False, False, False, True, False]
    assert not any(s["completed"] for s in app_module.order_status_steps("CANCELLED"))


def test_convert_amount_goes_through_base_currency():
    assert app_module.convert_amount(37000, 1.0, 0.00027) == 9.99
    assert app_module.convert_amount(100, 0.00027, 1.0, 0) == 370370.0
    assert app_module.convert_amount(5000, 1.0, 0.035, 0) == 175.0


def test_rates_relative_to_base():
    rates = app_module.rates_relative_to_base({"UGX": 3700.0, "USD": 1.0, "KES": 129.5, "XYZ": 2.0})
    assert rates["UGX"] == 1.0
    assert rates["USD"] == 1.0 / 3700.0
    assert rates["KES"] == 129.5 / 3700.0
    assert "XYZ" not in rates
    assert "EUR" not in rates


def test_rates_relative_to_base_needs_base_rate():
    try:
        app_module.rates_relative_to_base({"USD": 1.0})
    except ValueError as exc:
        assert "UGX" in str(exc)
    else:
        raise AssertionError("expected ValueError")


def test_currency_convert_route(client, db):
    db.on(
        "FROM currencies WHERE code IN",
        [
            {"code": "UGX", "symbol": "USh", "exchange_rate": 1.0, "decimal_places": 0},
            {"code": "USD", "symbol": "$", "exchange_rate": 0.00027, "decimal_places": 2},
        ],
    )
    resp = client.get("/api/currencies/convert?amount=37000&from=ugx&to=usd")
    body = resp.get_json()
    assert body["from"] == {"code": "UGX", "amount": 37000.0}
    assert body["to"]["amount"] == 9.99
    assert body["to"]["symbol"] == "$"


def test_currency_convert_rejects_bad_input(client, db):
    assert client.get("/api/currencies/convert?amount=lots").status_code == 400
    resp = client.get("/api/currencies/convert?amount=10&from=UGX&to=XXX")
    assert resp.get_json()["message"] == "Invalid currency code"


def test_exchange_rate_task(client, db, monkeypatch):
    monkeypatch.setattr(app_module, "fetch_exchange_rates", lambda url=None: {"UGX": 3700.0, "USD": 1.0})
    assert client.post("/tasks/exchange-rates").status_code == 401
    resp = client.post("/tasks/exchange-rates", headers={"X-Task-Secret": "cron-secret"})
    assert resp.get_json() == {"ok": True, "updated": 2}
    codes = [params[0] for _, params in db.statements("INSERT INTO currencies")]
    assert sorted(codes) == ["UGX", "USD"]


def test_exchange_rate_task_upstream_failure(client, db, monkeypatch):
    def broken(url=None):
        raise ValueError("Exchange rate API returned an unexpected payload")

    monkeypatch.setattr(app_module, "fetch_exchange_rates", broken)
    resp = client.get("/tasks/exchange-rates?token=cron-secret")
    assert resp.status_code == 502
    assert not db.ran("INSERT INTO currencies")


def test_analytics_track(client, db):
    resp = client.post("/api/analytics/track", json={"path": "/products", "sessionId": "s-1"})
    assert resp.status_code == 204
    (_, params), = db.statements("INSERT INTO page_views")
    assert params[0] == "/products"
    assert params[3] == "s-1"


def test_analytics_track_requires_path(client, db):
    assert client.post("/api/analytics/track", json={}).status_code == 400


def test_analytics_track_survives_database_errors(client, db):
    db.on("INSERT INTO page_views", raises=RuntimeError("disk full"))
    assert client.post("/api/analytics/track", json={"path": "/"}).status_code == 204


def test_public_settings_decode_json_values(client, db):
    db.on(
        "FROM settings WHERE setting_key IN",
        [
            {"setting_key": "store_name", "setting_value": "PleasureZone"},
            {"setting_key": "free_shipping_threshold", "setting_value": "150000"},
        ],
    )
    settings = client.get("/api/settings/public").get_json()["settings"]
    assert settings["store_name"] == "PleasureZone"
    assert settings["free_shipping_threshold"] == 150000


def test_create_cart(client, db):
    resp = client.post("/api/cart/create")
    assert resp.status_code == 201
    cart = resp.get_json()["cart"]
    assert cart["items"] == [] and cart["total"] == 0.0
    (_, params), = db.statements("INSERT INTO carts")
    assert params == (cart["id"], None)


def test_missing_cart(client, db):
    resp = client.get("/api/cart/nope")
    assert resp.status_code == 404
    assert resp.get_json()["message"] == "Cart not found"


def test_cart_totals(client, db):
    db.on(CART, {"id": "cart-1"})
    db.on(
        "FROM cart_items ci JOIN products p",
        [
            {"id": 1, "product_id": 3, "quantity": 2, "name": "Silk Massage Oil", "slug": "silk", "price": 25000,
             "stock": 10, "image": None},
            {"id": 2, "product_id": 4, "quantity": 1, "name": "Candle", "slug": "candle", "price": "12500.50",
             "stock": 3, "image": "/uploads/images/c.png"},
        ],
    )
    cart = client.get("/api/cart/cart-1").get_json()["cart"]
    assert cart["subtotal"] == 62500.5
    assert cart["itemCount"] == 3
    assert cart["items"][1]["product"]["price"] == 12500.5


def test_add_to_cart_respects_stock(client, db):
    db.on(CART, {"id": "cart-1"})
    db.on("SELECT id, name, stock, status FROM products", {"id": 3, "name": "Oil", "stock": 3, "status": "ACTIVE"})
    db.on("FROM cart_items WHERE cart_id=%s AND product_id=%s", {"id": 1, "quantity": 2})
    resp = client.post("/api/cart/cart-1/items", json={"productId": 3, "quantity": 2})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Only 3 in stock"
    assert not db.ran("UPDATE cart_items")


def test_add_to_cart_merges_quantities_and_tracks_cart(client, db):
    db.on(CART, {"id": "cart-1"})
    db.on("SELECT id, name, stock, status FROM products", {"id": 3, "name": "Oil", "stock": 10, "status": "ACTIVE"})
    db.on("FROM cart_items WHERE cart_id=%s AND product_id=%s", {"id": 1, "quantity": 2})
    db.on("FROM carts c LEFT JOIN users u", {"user_id": 7, "email": "amani@example.com"})
    db.on(
        "FROM cart_items ci JOIN products p",
        [{"id": 1, "product_id": 3, "quantity": 5, "name": "Oil", "slug": "oil", "price": 1000, "stock": 10}],
    )
    resp = client.post("/api/cart/cart-1/items", json={"productId": 3, "quantity": 3})
    assert resp.status_code == 200
    (_, params), = db.statements("UPDATE cart_items SET quantity=%s")
    assert params == (5, 1)
    assert db.ran("abandoned_carts")


def test_add_inactive_product(client, db):
    db.on(CART, {"id": "cart-1"})
    db.on("SELECT id, name, stock, status FROM products", {"id": 3, "name": "Oil", "stock": 10, "status": "ARCHIVED"})
    resp = client.post("/api/cart/cart-1/items", json={"productId": 3})
    assert resp.status_code == 404


def test_order_tracking_by_number(client, db):
    db.on(
        "SELECT * FROM orders WHERE order_number=%s",
        {"id": 5, "order_number": "ORD-1", "status": "PROCESSING", "email": "amani@example.com", "total": 50000,
         "discreet": 1},
    )
    db.on("FROM order_items oi", [{"id": 1, "product_id": 3, "product_name": "Oil", "price": 25000, "quantity": 2,
                                    "product_slug": "oil"}])
    body = client.get("/api/orders/track/ORD-1").get_json()
    assert body["orderNumber"] == "ORD-1"
    assert body["discreet"] is True
    assert body["items"] == [{"name": "Oil", "productSlug": "oil", "quantity": 2, "price": 25000}]
    assert [s["current"] for s in body["statusSteps"]].index(True) == 2


def test_order_detail_hidden_from_other_customers(client, db, login):
    login(make_user(id=8, email="other@example.com"))
    db.on("SELECT * FROM orders WHERE id=%s", {"id": 5, "order_number": "ORD-1", "user_id": 7,
                                               "email": "amani@example.com", "status": "PENDING"})
    resp = client.get("/api/orders/5")
    assert resp.status_code == 404
