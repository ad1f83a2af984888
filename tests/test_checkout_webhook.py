import pymysql
import pytest

import flutterwave

CART_ROWS = "FROM cart_items ci JOIN products p"
LOCKED_PRODUCT = "FROM products WHERE id=%s FOR UPDATE"
WEBHOOK_HEADERS = {"verif-hash": "webhook-hash"}


def _cart_line(**overrides):
    line = {
        "id": 1,
        "product_id": 3,
        "quantity": 2,
        "name": "Silk Massage Oil",
        "slug": "silk-massage-oil",
        "price": 25000,
        "stock": 10,
        "reserved_stock": 0,
        "status": "ACTIVE",
        "track_inventory": 1,
        "allow_backorder": 0,
        "image": None,
    }
    line.update(overrides)
    return line


def _checkout_body(**overrides):
    body = {
        "cartId": "cart-1",
        "currency": "UGX",
        "amount": 50000,
        "paymentMethod": "card",
        "customer": {"name": "Amani Okello", "email": "Amani@Example.com"},
        "shippingAddress": {"city": "Kampala", "street": "Plot 4"},
    }
    body.update(overrides)
    return body


@pytest.fixture
def payments(monkeypatch):
    calls = []

    def fake_create_payment(**kwargs):
        calls.append(kwargs)
        return {"status": "success", "data": {"link": "https://checkout.flutterwave.com/pay/abc"}}

    monkeypatch.setattr(flutterwave, "create_payment", fake_create_payment)
    return calls


def _stock_the_cart(db, stock=10):
    db.on(CART_ROWS, [_cart_line()])
    db.on(
        LOCKED_PRODUCT,
        {"id": 3, "name": "Silk Massage Oil", "stock": stock, "reserved_stock": 0, "track_inventory": 1,
         "allow_backorder": 0},
    )


def test_checkout_validates_input(client, payments):
    res = client.post("/api/checkout/create", json=_checkout_body(cartId=""))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Validation failed"
    assert "cartId" in res.get_json()["details"]

    res = client.post("/api/checkout/create", json=_checkout_body(paymentMethod="mobile_money"))
    assert res.status_code == 400
    assert "mobileMoney" in res.get_json()["details"]
    assert payments == []


def test_checkout_rejects_amount_mismatch(client, db, payments):
    _stock_the_cart(db)
    res = client.post("/api/checkout/create", json=_checkout_body(amount=40000))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Amount mismatch"
    assert not db.ran("INSERT INTO orders")
    assert payments == []


def test_checkout_creates_order_reserves_stock_and_starts_payment(client, db, payments):
    _stock_the_cart(db)

    res = client.post("/api/checkout/create", json=_checkout_body())

    assert res.status_code == 200
    body = res.get_json()
    assert body["orderNumber"].startswith("ORD-")
    assert body["paymentLink"] == "https://checkout.flutterwave.com/pay/abc"
    assert payments[0]["tx_ref"] == body["orderNumber"]
    assert payments[0]["customer"] == {"name": "Amani Okello", "email": "amani@example.com"}

    (_, order_params), = db.statements("INSERT INTO orders")
    assert order_params[0] == body["orderNumber"]
    assert order_params[7:10] == (50000.0, 0.0, 50000.0)
    (_, reservation), = db.statements("INSERT INTO stock_reservations")
    assert reservation[1:3] == (3, 2)
    (_, payment_params), = db.statements("INSERT INTO payments")
    assert payment_params[1] == "CARD"
    assert payment_params[-1] == body["orderNumber"]
    assert db.ran("DELETE FROM cart_items WHERE cart_id=%s")


def test_checkout_applies_coupon(client, db, payments):
    _stock_the_cart(db)
    db.on(
        "FROM coupons WHERE code=%s",
        {"code": "SAVE10", "type": "PERCENTAGE", "value": 10, "is_active": 1, "valid_from": None,
         "valid_until": None, "usage_limit": None, "usage_count": 0, "min_order_amount": None,
         "max_discount": None},
    )
    res = client.post("/api/checkout/create", json=_checkout_body(amount=45000, couponCode="save10"))
    assert res.status_code == 200
    (_, order_params), = db.statements("INSERT INTO orders")
    assert order_params[7:11] == (50000.0, 5000.0, 45000.0, "SAVE10")


def test_checkout_stock_shortfall_rolls_back(client, db, payments):
    _stock_the_cart(db, stock=1)
    res = client.post("/api/checkout/create", json=_checkout_body())
    assert res.status_code == 400
    assert res.get_json()["message"].startswith('Insufficient stock for "Silk Massage Oil"')
    assert db.rollbacks == 1
    assert payments == []


def test_checkout_payment_failure_cancels_order(client, db, monkeypatch):
    _stock_the_cart(db)

    def failing_payment(**kwargs):
        raise flutterwave.FlutterwaveError("Card payment initiation failed", status=503)

    monkeypatch.setattr(flutterwave, "create_payment", failing_payment)
    res = client.post("/api/checkout/create", json=_checkout_body())
    assert res.status_code == 502
    assert db.ran("UPDATE orders SET status='CANCELLED', payment_status='FAILED'")
    assert db.ran("SELECT id, product_id, quantity FROM stock_reservations WHERE order_id=%s")
    assert not db.ran("INSERT INTO payments")


def _charge_completed(status="successful", amount=50000, tx_ref="ORD-1"):
    return {
        "event": "charge.completed",
        "data": {"id": 12345, "tx_ref": tx_ref, "flw_ref": "FLW-REF-1", "status": status, "amount": amount},
    }


def _order(**overrides):
    order = {
        "id": 5,
        "order_number": "ORD-1",
        "user_id": 7,
        "email": "amani@example.com",
        "customer_name": "Amani",
        "total": 50000,
        "currency": "UGX",
        "status": "PENDING",
        "payment_status": "PENDING",
        "coupon_code": "SAVE10",
    }
    order.update(overrides)
    return order


def test_webhook_rejects_bad_signature(client, db):
    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(), headers={"verif-hash": "nope"})
    assert res.status_code == 401
    assert db.executed == []


def test_webhook_ignores_other_events(client, db):
    res = client.post("/api/webhooks/flutterwave", json={"event": "transfer.completed"}, headers=WEBHOOK_HEADERS)
    assert res.status_code == 200
    assert res.get_json()["received"] is True
    assert db.executed == []


def test_webhook_success_confirms_and_rewards(client, db, outbox):
    db.on("FROM orders WHERE order_number=%s", _order())
    db.on("SELECT * FROM orders WHERE id=%s", _order())
    db.on("FROM loyalty_accounts WHERE user_id=%s", {"id": 2, "user_id": 7, "points": 100, "lifetime_points": 100})

    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(), headers=WEBHOOK_HEADERS)

    assert res.status_code == 200
    (_, marker), = db.statements("INSERT INTO processed_webhooks")
    assert marker == ("FLW-REF-1",)
    (_, payment), = db.statements("UPDATE payments SET status='SUCCESSFUL'")
    assert payment == ("FLW-REF-1", "12345", 5)
    assert db.ran("UPDATE orders SET status='CONFIRMED', payment_status='SUCCESSFUL'")
    (_, loyalty), = db.statements("UPDATE loyalty_accounts")
    assert loyalty == (500, 600, "BRONZE", 2)
    assert db.ran("UPDATE abandoned_carts SET recovered_at=%s WHERE user_id=%s")
    (_, coupon), = db.statements("UPDATE coupons SET usage_count = usage_count + 1")
    assert coupon == ("SAVE10",)
    assert db.commits == 1
    assert outbox[0]["subject"] == "Order Confirmed - #ORD-1"


def test_webhook_duplicate_event_is_skipped(client, db):
    db.on("FROM processed_webhooks WHERE event_id=%s", {"id": 1})
    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(), headers=WEBHOOK_HEADERS)
    assert res.status_code == 200
    assert res.get_json()["duplicate"] is True
    assert not db.ran("UPDATE orders")


def test_webhook_second_success_for_paid_order_changes_nothing(client, db, outbox):
    db.on("FROM orders WHERE order_number=%s", _order(status="CONFIRMED", payment_status="SUCCESSFUL"))
    event = _charge_completed()
    event["data"]["flw_ref"] = "FLW-REF-2"

    res = client.post("/api/webhooks/flutterwave", json=event, headers=WEBHOOK_HEADERS)

    assert res.status_code == 200
    assert res.get_json()["alreadyPaid"] is True
    assert not db.ran("INSERT INTO processed_webhooks")
    assert not db.ran("UPDATE orders")
    assert not db.ran("UPDATE loyalty_accounts")
    assert not db.ran("UPDATE coupons")
    assert outbox == []


def test_webhook_failure_after_success_keeps_order_paid(client, db, outbox):
    db.on("FROM orders WHERE order_number=%s", _order(status="CONFIRMED", payment_status="SUCCESSFUL"))
    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(status="failed"), headers=WEBHOOK_HEADERS)
    assert res.status_code == 200
    assert not db.ran("UPDATE orders SET status='CANCELLED'")
    assert not db.ran("UPDATE payments SET status='FAILED'")
    assert outbox == []


def test_webhook_success_on_expired_order_deducts_stock(client, db, outbox):
    cancelled = _order(status="CANCELLED", payment_status="FAILED", coupon_code=None)
    db.on("FROM orders WHERE order_number=%s", cancelled)
    db.on("SELECT * FROM orders WHERE id=%s", cancelled)
    db.on("SELECT product_id, quantity FROM order_items WHERE order_id=%s", [
        {"product_id": 3, "quantity": 2},
        {"product_id": None, "quantity": 1},
    ])

    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(), headers=WEBHOOK_HEADERS)

    assert res.status_code == 200
    assert db.ran("UPDATE orders SET status='CONFIRMED', payment_status='SUCCESSFUL'")
    (_, deduction), = db.statements("WHERE id=%s AND track_inventory=1")
    assert deduction == (2, 2, 3)
    assert db.commits == 1


def test_webhook_concurrent_duplicate_is_skipped(client, db):
    db.on("FROM orders WHERE order_number=%s", _order())
    db.on("INSERT INTO processed_webhooks", raises=pymysql.err.IntegrityError(1062, "Duplicate entry"))
    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(), headers=WEBHOOK_HEADERS)
    assert res.status_code == 200
    assert res.get_json()["duplicate"] is True
    assert db.rollbacks == 1


def test_webhook_underpayment_is_rejected(client, db):
    db.on("FROM orders WHERE order_number=%s", _order())
    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(amount=1000), headers=WEBHOOK_HEADERS)
    assert res.status_code == 400
    assert res.get_json()["message"] == "Amount mismatch"
    assert not db.ran("INSERT INTO processed_webhooks")


def test_webhook_failed_payment_cancels_order(client, db, outbox):
    db.on("FROM orders WHERE order_number=%s", _order())
    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(status="failed"), headers=WEBHOOK_HEADERS)
    assert res.status_code == 200
    assert db.ran("UPDATE payments SET status='FAILED'")
    assert db.ran("UPDATE orders SET status='CANCELLED', payment_status='FAILED'")
    assert not db.ran("UPDATE coupons")
    assert outbox == []


def test_webhook_unknown_order(client, db):
    res = client.post("/api/webhooks/flutterwave", json=_charge_completed(tx_ref="ORD-404"), headers=WEBHOOK_HEADERS)
    assert res.status_code == 404
