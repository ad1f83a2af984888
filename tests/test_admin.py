import io

import pytest
from PIL import Image

import app as app_module
import flutterwave
from tests.conftest import make_user

ORDER_BY_ID = "SELECT * FROM orders WHERE id=%s"
ORDER_FOR_UPDATE = "SELECT * FROM orders WHERE id=%s FOR UPDATE"


def _order(**overrides):
    order = {
        "id": 5,
        "order_number": "PZ-1",
        "user_id": 7,
        "email": "amani@example.com",
        "phone": "+256771234567",
        "customer_name": "Amani Okello",
        "status": "PROCESSING",
        "payment_status": "SUCCESSFUL",
        "currency": "UGX",
        "total": 50000,
        "tracking_number": None,
    }
    order.update(overrides)
    return order


def _png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (40, 30), color=(200, 30, 90)).save(buf, format="PNG")
    return buf.getvalue()


def test_admin_routes_require_login(client, db):
    resp = client.get("/api/admin/dashboard")
    assert resp.status_code == 401


def test_admin_routes_reject_customers(client, db, login):
    login()
    resp = client.get("/api/admin/orders")
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Admin access required."


def test_staff_management_is_admin_only(client, db, login_admin):
    login_admin(role="MANAGER")
    assert client.get("/api/admin/staff").status_code == 403


def test_describe_activity():
    assert app_module.describe_activity("CREATE", "PRODUCT", "Silk Oil") == 'Created "Silk Oil"'
    assert app_module.describe_activity("BULK_UPDATE", "PRODUCT") == "Bulk updated products"
    assert app_module.describe_activity("LOGIN", "USER") == "Logged in"
    assert app_module.describe_activity("ARCHIVE", "BLOG") == "ARCHIVE blog"


def test_sniff_image_type():
    assert app_module.sniff_image_type(b"\xff\xd8\xff\xe0rest") == "jpeg"
    assert app_module.sniff_image_type(_png_bytes()[:16]) == "png"
    assert app_module.sniff_image_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "webp"
    assert app_module.sniff_image_type(b"<?php echo 1;") is None


def test_order_status_rejects_unknown_status(client, db, login_admin):
    login_admin()
    resp = client.put("/api/admin/orders/5/status", json={"status": "LOST"})
    assert resp.status_code == 400
    assert resp.get_json()["message"].startswith("Status must be one of")


def test_shipping_an_order_notifies_customer(client, db, login_admin, outbox, texts):
    login_admin()
    db.on(ORDER_FOR_UPDATE, _order(), once=True)
    db.on(ORDER_BY_ID, _order(status="SHIPPED", tracking_number="UG123"))
    resp = client.put("/api/admin/orders/5/status", json={"status": "shipped", "trackingNumber": "UG123"})
    assert resp.status_code == 200

    (_, params), = db.statements("UPDATE orders SET status=%s, tracking_number=%s")
    assert params == ("SHIPPED", "UG123", 5)
    (_, params), = db.statements("INSERT INTO order_events")
    assert params == (5, "SHIPPED", "Order status changed to SHIPPED")
    assert outbox[0]["subject"] == "Your Order Has Shipped - #PZ-1"
    assert "UG123" in outbox[0]["text"]
    assert texts[0]["phone"] == "+256771234567"
    assert "UG123" in texts[0]["message"]
    (_, params), = db.statements("INSERT INTO activity_logs")
    assert params[1:4] == ("STATUS_CHANGE", "ORDER", "5")


def test_cancelling_paid_order_restores_stock(client, db, login_admin, outbox):
    login_admin()
    db.on(ORDER_BY_ID, _order())
    db.on("FROM order_items WHERE order_id=%s", [{"product_id": 3, "quantity": 2}, {"product_id": None, "quantity": 1}])
    resp = client.put("/api/admin/orders/5/status", json={"status": "CANCELLED", "note": "Customer request"})
    assert resp.status_code == 200
    (_, params), = db.statements("UPDATE products SET stock = stock + %s")
    assert params == (2, 3)
    (_, params), = db.statements("INSERT INTO order_events")
    assert params == (5, "CANCELLED", "Customer request")
    assert outbox == []


def test_cancelling_reserved_order_releases_reservations(client, db, login_admin):
    login_admin()
    db.on(ORDER_BY_ID, _order(payment_status="PENDING"))
    db.on("FROM stock_reservations WHERE order_id=%s AND released=0", [{"id": 1, "product_id": 3, "quantity": 2}])
    client.put("/api/admin/orders/5/status", json={"status": "CANCELLED"})
    assert db.ran("UPDATE products SET reserved_stock = GREATEST(reserved_stock - %s, 0)")
    assert not db.ran("UPDATE products SET stock = stock + %s")


@pytest.fixture
def refunds(monkeypatch):
    calls = []

    def fake_refund(transaction_id, amount=None, reason=None):
        calls.append((transaction_id, amount, reason))
        return {"status": "success"}

    monkeypatch.setattr(flutterwave, "refund_transaction", fake_refund)
    return calls


def test_refund_goes_through_flutterwave(client, db, login_admin, refunds):
    login_admin()
    db.on(ORDER_BY_ID, _order())
    db.on("FROM payments WHERE order_id=%s AND status='SUCCESSFUL'", {"id": 9, "provider": "flutterwave", "flw_tx_id": 999})
    resp = client.post("/api/admin/orders/5/refund", json={"amount": 20000, "reason": "Damaged"})
    assert resp.status_code == 200
    assert resp.get_json()["amount"] == 20000.0
    assert refunds == [(999, 20000.0, "Damaged")]
    assert db.ran("UPDATE orders SET status='REFUNDED', payment_status='REFUNDED'")
    (_, params), = db.statements("INSERT INTO payments")
    assert params == (5, "flutterwave", -20000.0, "UGX", "PZ-1")


def test_refund_defaults_to_order_total(client, db, login_admin, refunds):
    login_admin()
    db.on(ORDER_BY_ID, _order())
    resp = client.post("/api/admin/orders/5/refund", json={})
    assert resp.get_json()["amount"] == 50000.0
    assert refunds == []
    (_, params), = db.statements("INSERT INTO payments")
    assert params[1] == "MANUAL"


def test_refund_requires_paid_order(client, db, login_admin, refunds):
    login_admin()
    db.on(ORDER_BY_ID, _order(payment_status="PENDING"))
    resp = client.post("/api/admin/orders/5/refund", json={})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Only paid orders can be refunded"


def test_refund_cannot_exceed_total(client, db, login_admin, refunds):
    login_admin()
    db.on(ORDER_BY_ID, _order())
    resp = client.post("/api/admin/orders/5/refund", json={"amount": 60000})
    assert resp.status_code == 400
    assert refunds == []


def test_refund_provider_failure(client, db, login_admin, monkeypatch):
    login_admin()
    db.on(ORDER_BY_ID, _order())
    db.on("FROM payments WHERE order_id=%s AND status='SUCCESSFUL'", {"id": 9, "provider": "flutterwave", "flw_tx_id": 999})

    def failing_refund(*args, **kwargs):
        raise flutterwave.FlutterwaveError("Refund request failed")

    monkeypatch.setattr(flutterwave, "refund_transaction", failing_refund)
    resp = client.post("/api/admin/orders/5/refund", json={})
    assert resp.status_code == 502
    assert not db.ran("UPDATE orders SET status='REFUNDED'")


def test_product_create_renames_colliding_slug(client, db, login_admin):
    login_admin()
    db.on("SELECT id FROM products WHERE slug=%s", {"id": 2})
    db.on("SELECT * FROM products WHERE id=%s", {"id": 101, "name": "Silk Massage Oil", "slug": "silk-massage-oil-1"})
    resp = client.post("/api/admin/products", json={"name": "Silk Massage Oil", "price": "25000", "stock": 4})
    assert resp.status_code == 201
    (sql, params), = db.statements("INSERT INTO products")
    assert "(name, price, stock, slug)" in sql
    assert params[:3] == ("Silk Massage Oil", 25000.0, 4)
    assert params[3].startswith("silk-massage-oil-")


def test_product_create_validation(client, db, login_admin):
    login_admin()
    assert client.post("/api/admin/products", json={"name": "Oil"}).status_code == 400
    resp = client.post("/api/admin/products", json={"name": "Oil", "price": 10, "stock": -1})
    assert resp.get_json()["message"] == "Stock cannot be negative"
    resp = client.post("/api/admin/products", json={"name": "Oil", "price": 10, "status": "GONE"})
    assert resp.get_json()["message"] == "Status must be one of ACTIVE, DRAFT, ARCHIVED"


def test_product_update_slug_conflict(client, db, login_admin):
    login_admin()
    db.on("SELECT id, name FROM products WHERE id=%s", {"id": 3, "name": "Oil"})
    db.on("SELECT id FROM products WHERE slug=%s AND id<>%s", {"id": 4})
    resp = client.put("/api/admin/products/3", json={"slug": "Taken Slug"})
    assert resp.status_code == 409


def test_product_bulk_archive(client, db, login_admin):
    login_admin()
    db.on("UPDATE products SET status='ARCHIVED' WHERE id IN", rowcount=2)
    resp = client.post("/api/admin/products/bulk", json={"action": "archive", "ids": [3, "4", 0, "x"]})
    assert resp.get_json()["affected"] == 2
    (_, params), = db.statements("WHERE id IN (%s, %s)")
    assert params == (3, 4)


def test_product_bulk_rejects_unknown_action(client, db, login_admin):
    login_admin()
    resp = client.post("/api/admin/products/bulk", json={"action": "explode", "ids": [1]})
    assert resp.status_code == 400


def test_product_image_upload(client, db, login_admin):
    login_admin()
    db.on("SELECT id, name FROM products WHERE id=%s", {"id": 3, "name": "Silk Massage Oil"})
    db.on("SELECT MAX(sort_order)", {"m": 1})
    resp = client.post(
        "/api/admin/products/3/images",
        data={"images": (io.BytesIO(_png_bytes()), "photo.png")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 201
    image, = resp.get_json()["images"]
    assert image["url"].startswith("/uploads/images/product-3-")
    assert image["url"].endswith(".png")
    assert image["sortOrder"] == 2
    app_module.remove_stored_image(image["url"])


def test_product_image_upload_rejects_disguised_file(client, db, login_admin):
    login_admin()
    db.on("SELECT id, name FROM products WHERE id=%s", {"id": 3, "name": "Silk Massage Oil"})
    resp = client.post(
        "/api/admin/products/3/images",
        data={"image": (io.BytesIO(b"<?php system($_GET['c']); ?>"), "shell.png")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "shell.png: File content does not match an image type"
    assert not db.ran("INSERT INTO product_images")


def test_inventory_adjustment_cannot_go_negative(client, db, login_admin):
    login_admin()
    db.on("SELECT id, name, stock FROM products WHERE id=%s FOR UPDATE", {"id": 3, "name": "Oil", "stock": 2})
    resp = client.put("/api/admin/inventory/3", json={"adjustment": -5})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Stock cannot be negative"
    assert not db.ran("UPDATE products SET stock=%s")


def test_inventory_adjustment(client, db, login_admin):
    login_admin()
    db.on("SELECT id, name, stock FROM products WHERE id=%s FOR UPDATE", {"id": 3, "name": "Oil", "stock": 2})
    resp = client.put("/api/admin/inventory/3", json={"adjustment": 5})
    assert resp.get_json()["stock"] == 7
    (_, params), = db.statements("INSERT INTO activity_logs")
    assert params[4] == 'Stock for "Oil" changed from 2 to 7'


def test_used_coupon_is_deactivated_not_deleted(client, db, login_admin):
    login_admin()
    db.on("FROM coupons WHERE id=%s", {"id": 2, "code": "SAVE10", "usage_count": 3})
    resp = client.delete("/api/admin/coupons/2")
    assert resp.get_json()["message"] == "Coupon has been used, so it was deactivated instead"
    assert db.ran("UPDATE coupons SET is_active=0")
    assert not db.ran("DELETE FROM coupons")


def test_unused_coupon_is_deleted(client, db, login_admin):
    login_admin()
    db.on("FROM coupons WHERE id=%s", {"id": 2, "code": "SAVE10", "usage_count": 0})
    resp = client.delete("/api/admin/coupons/2")
    assert resp.get_json()["message"] == "Coupon deleted"
    assert db.ran("DELETE FROM coupons WHERE id=%s")


def test_category_cannot_be_its_own_parent(client, db, login_admin):
    login_admin()
    resp = client.put("/api/admin/categories/4", json={"parentId": 4})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "A category cannot be its own parent"


def test_category_with_products_cannot_be_deleted(client, db, login_admin):
    login_admin()
    db.on("SELECT id, name FROM categories WHERE id=%s", {"id": 4, "name": "Oils"})
    db.on("FROM products WHERE category_id=%s", {"c": 3})
    resp = client.delete("/api/admin/categories/4")
    assert resp.get_json()["message"] == "Cannot delete a category with 3 products"
    assert not db.ran("DELETE FROM categories")


def test_admin_cannot_remove_themselves(client, db, login_admin):
    login_admin()
    resp = client.delete("/api/admin/staff/1")
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "You cannot remove your own account"


def test_admin_cannot_demote_themselves(client, db, login_admin):
    login_admin()
    resp = client.put("/api/admin/staff/1", json={"role": "MANAGER"})
    assert resp.get_json()["message"] == "You cannot change your own role"


def test_removing_staff_demotes_and_revokes_sessions(client, db, login_admin):
    admin = login_admin()
    manager = make_user(id=12, email="mgr@pleasurezone.ug", role="MANAGER")
    db.on("FROM users WHERE id=%s", lambda params: admin if params[0] == 1 else manager)
    resp = client.delete("/api/admin/staff/12")
    assert resp.status_code == 200
    (sql, params), = db.statements("UPDATE users SET role='CUSTOMER'")
    assert "session_version = session_version + 1" in sql
    assert params == (12,)
