import json
from datetime import datetime, timedelta

import app as app_module
import mailer

FIRST_REMINDER = "recovered_at IS NULL AND email1_sent_at IS NULL"
SECOND_REMINDER = "email1_sent_at IS NOT NULL AND email2_sent_at IS NULL"
NOW = datetime(2024, 5, 1, 12, 0, 0)


def _cart(cart_id=1, email="shopper@example.com", **overrides):
    row = {
        "id": cart_id,
        "cart_id": f"cart-{cart_id}",
        "user_id": 3,
        "email": email,
        "cart_data": json.dumps([{"productName": "Silk Massage Oil", "quantity": 2, "price": 60000}]),
        "cart_value": 120000,
        "currency": "UGX",
        "email1_sent_at": None,
        "email2_sent_at": None,
    }
    row.update(overrides)
    return row


def test_first_reminder_sent_and_flagged(db, outbox):
    db.on(FIRST_REMINDER, [_cart()])

    result = app_module.process_abandoned_cart_emails(db.connect(), now=NOW)

    assert result == {"reminder1": 1, "reminder2": 0}
    (_, cutoff), = db.statements(FIRST_REMINDER)
    assert cutoff == (NOW - timedelta(hours=1),)
    (sql, params), = db.statements("UPDATE abandoned_carts SET email1_sent_at=%s")
    assert "email1_sent_at IS NULL" in sql
    assert params[1] == 1
    assert outbox[0]["to"] == "shopper@example.com"
    assert outbox[0]["subject"] == "You left something behind!"
    assert "Silk Massage Oil" in outbox[0]["html"]


def test_second_reminder_uses_24_hour_window(db, outbox):
    db.on(SECOND_REMINDER, [_cart(email1_sent_at=NOW - timedelta(hours=30))])

    result = app_module.process_abandoned_cart_emails(db.connect(), now=NOW)

    assert result == {"reminder1": 0, "reminder2": 1}
    (_, cutoff), = db.statements(SECOND_REMINDER)
    assert cutoff == (NOW - timedelta(hours=24),)
    assert db.ran("UPDATE abandoned_carts SET email2_sent_at=%s")
    assert outbox[0]["subject"] == "Last chance! Your cart expires soon"


def test_undelivered_email_leaves_cart_eligible(db, monkeypatch):
    monkeypatch.setattr(mailer, "send_email", lambda *args, **kwargs: False)
    db.on(FIRST_REMINDER, [_cart()])

    result = app_module.process_abandoned_cart_emails(db.connect(), now=NOW)

    assert result["reminder1"] == 0
    assert not db.ran("UPDATE abandoned_carts")


def test_one_failing_cart_does_not_stop_the_batch(db, monkeypatch):
    delivered = []

    def flaky_send(to_email, subject, text_body, html_body=None):
        if to_email == "broken@example.com":
            raise RuntimeError("smtp exploded")
        delivered.append(to_email)
        return True

    monkeypatch.setattr(mailer, "send_email", flaky_send)
    db.on(FIRST_REMINDER, [_cart(1, "broken@example.com"), _cart(2, None), _cart(3, "fine@example.com")])

    result = app_module.process_abandoned_cart_emails(db.connect(), now=NOW)

    assert result["reminder1"] == 1
    assert delivered == ["fine@example.com"]
    assert db.rollbacks == 1
    (sql, params), = db.statements("UPDATE abandoned_carts SET email1_sent_at=%s")
    assert params[1] == 3


def test_track_abandoned_cart_upserts_snapshot(db):
    conn = db.connect()
    with conn.cursor() as cur:
        app_module.track_abandoned_cart(cur, "cart-9", None, None, [], 0, "UGX")
        assert db.executed == []
        items = [{"productName": "Lace Set", "quantity": 1, "price": 85000}]
        app_module.track_abandoned_cart(cur, "cart-9", 4, "guest@example.com", items, 85000, "UGX")

    (sql, params), = db.statements("INSERT INTO abandoned_carts")
    assert "ON DUPLICATE KEY UPDATE" in sql
    assert params[0] == "cart-9"
    assert json.loads(params[3]) == items


def test_mark_cart_recovered_by_user_or_cart(db):
    conn = db.connect()
    with conn.cursor() as cur:
        assert app_module.mark_cart_recovered(cur) == 0
        app_module.mark_cart_recovered(cur, user_id=4)
        app_module.mark_cart_recovered(cur, cart_id="cart-9")
    by_user, by_cart = db.statements("UPDATE abandoned_carts SET recovered_at=%s")
    assert "WHERE user_id=%s" in by_user[0] and by_user[1][1] == 4
    assert "WHERE cart_id=%s" in by_cart[0] and by_cart[1][1] == "cart-9"


def test_reminder_email_content():
    items = [{"productName": "Silk Massage Oil", "quantity": 2, "price": 60000}]
    subject, text_body, html_body = mailer.build_abandoned_cart_email(items, 120000, "UGX", 2)
    assert subject == "Last chance! Your cart expires soon"
    assert "Qty: 2 &times; UGX 60,000" in html_body
    assert "Total: UGX 120,000" in html_body
    assert "/cart" in html_body
    assert "expires in 24 hours" in text_body


def test_task_requires_cron_secret(client):
    assert client.post("/tasks/abandoned-carts").status_code == 401
    assert client.post("/tasks/abandoned-carts", headers={"X-Task-Secret": "wrong"}).status_code == 401


def test_task_reports_counts(client, db):
    db.on(FIRST_REMINDER, [_cart()])
    res = client.post("/tasks/abandoned-carts", headers={"X-Task-Secret": "cron-secret"})
    assert res.status_code == 200
    assert res.get_json() == {"ok": True, "reminder1": 1, "reminder2": 0}


def test_expired_reservations_release_stock_and_cancel_orders(client, db):
    db.on(
        "FROM stock_reservations WHERE released=0 AND expires_at < %s",
        [
            {"id": 1, "order_id": 20, "product_id": 3, "quantity": 2},
            {"id": 2, "order_id": 20, "product_id": 4, "quantity": 1},
        ],
    )
    res = client.get("/tasks/stock-reservations?token=cron-secret")
    assert res.status_code == 200
    assert res.get_json()["released"] == 2
    assert len(db.statements("UPDATE products SET reserved_stock = GREATEST")) == 2
    (sql, params), = db.statements("UPDATE orders SET status='CANCELLED'")
    assert params == (20,)
    (sql, params), = db.statements("INSERT INTO order_events")
    assert params[1:] == ("CANCELLED", "Stock reservation expired before payment")
