from datetime import datetime, timedelta

import app as app_module

NOW = datetime(2026, 3, 1, 12, 0, 0)
ACCOUNT = "FROM loyalty_accounts WHERE user_id=%s"


def _coupon(**overrides):
    coupon = {
        "id": 1,
        "code": "SAVE10",
        "type": "PERCENTAGE",
        "value": 10,
        "description": "Ten percent off",
        "min_order_amount": None,
        "max_discount": None,
        "usage_limit": None,
        "usage_count": 0,
        "valid_from": NOW - timedelta(days=1),
        "valid_until": NOW + timedelta(days=30),
        "is_active": 1,
    }
    coupon.update(overrides)
    return coupon


def test_percentage_coupon_is_capped_by_max_discount():
    assert app_module.compute_coupon_discount(_coupon(), 50000, now=NOW) == (5000.0, None)
    capped = _coupon(max_discount=2000)
    assert app_module.compute_coupon_discount(capped, 50000, now=NOW) == (2000.0, None)


def test_fixed_coupon_never_exceeds_subtotal():
    coupon = _coupon(type="FIXED", value=8000)
    assert app_module.compute_coupon_discount(coupon, 5000, now=NOW) == (5000.0, None)


def test_coupon_rejections():
    cases = [
        (None, "Invalid coupon code"),
        (_coupon(is_active=0), "This coupon is no longer active"),
        (_coupon(valid_from=NOW + timedelta(days=1)), "This coupon is not yet valid"),
        (_coupon(valid_until=NOW - timedelta(seconds=1)), "This coupon has expired"),
        (_coupon(usage_limit=5, usage_count=5), "This coupon has reached its usage limit"),
        (_coupon(min_order_amount=20000), "Minimum order amount is 20,000"),
    ]
    for coupon, message in cases:
        assert app_module.compute_coupon_discount(coupon, 10000, now=NOW) == (0.0, message)


def test_loyalty_tiers_and_next_tier():
    assert app_module.loyalty_tier(0) == "BRONZE"
    assert app_module.loyalty_tier(999) == "BRONZE"
    assert app_module.loyalty_tier(1000) == "SILVER"
    assert app_module.loyalty_tier(5000) == "GOLD"
    assert app_module.loyalty_tier(20000) == "PLATINUM"
    assert app_module.loyalty_next_tier(400) == {"name": "SILVER", "pointsNeeded": 600}
    assert app_module.loyalty_next_tier(6000) == {"name": "PLATINUM", "pointsNeeded": 9000}
    assert app_module.loyalty_next_tier(15000) is None


def test_points_for_amount_rounds_down():
    assert app_module.points_for_amount(50000) == 500
    assert app_module.points_for_amount(199) == 1
    assert app_module.points_for_amount(99) == 0
    assert app_module.points_for_amount("not a number") == 0


def test_new_loyalty_account_gets_signup_bonus(db):
    with db.connect().cursor() as cur:
        account = app_module.get_or_create_loyalty_account(cur, 7)
    assert account["points"] == app_module.LOYALTY_SIGNUP_BONUS
    assert account["tier"] == "BRONZE"
    (_, params), = db.statements("'SIGNUP_BONUS'")
    assert params == (account["id"], 100)


def test_referral_rejects_own_code(db):
    db.on("FROM referral_codes WHERE code=%s", {"id": 3, "user_id": 7, "code": "PZ7ABCD"})
    with db.connect().cursor() as cur:
        result = app_module.apply_referral_code(cur, 7, "pz7abcd")
    assert result == (None, "You cannot refer yourself", 400)
    assert not db.ran("INSERT INTO referrals")


def test_referral_can_only_be_used_once(db):
    db.on("FROM referrals WHERE referee_id=%s LIMIT 1", {"id": 1})
    with db.connect().cursor() as cur:
        result = app_module.apply_referral_code(cur, 9, "PZ7ABCD")
    assert result == (None, "You have already used a referral code", 400)


def test_referral_issues_welcome_coupon(db):
    db.on("FROM referral_codes WHERE code=%s", {"id": 3, "user_id": 7, "code": "PZ7ABCD"})
    with db.connect().cursor() as cur:
        result, error, status = app_module.apply_referral_code(cur, 9, " pz7abcd ")
    assert error is None and status == 200
    assert result["couponCode"].startswith("WELCOME-")
    assert result["discount"] == 10
    (_, params), = db.statements("INSERT INTO referrals")
    assert params == (7, 9, "PZ7ABCD", result["couponCode"])
    assert db.ran("UPDATE referral_codes SET total_referrals = total_referrals + 1")


def test_referrer_rewarded_on_first_paid_order(db):
    db.on("FROM referrals WHERE referee_id=%s AND status='PENDING'", {"id": 11, "referrer_id": 7})
    db.on("FROM orders WHERE user_id=%s AND payment_status='SUCCESSFUL'", {"c": 1})
    with db.connect().cursor() as cur:
        coupon_code = app_module.process_referral_reward(cur, 9)
    assert coupon_code.startswith("THANKS-")
    (_, params), = db.statements("UPDATE referral_codes SET total_earnings")
    assert params == (500, 7)


def test_referrer_not_rewarded_after_first_order(db):
    db.on("FROM referrals WHERE referee_id=%s AND status='PENDING'", {"id": 11, "referrer_id": 7})
    db.on("FROM orders WHERE user_id=%s AND payment_status='SUCCESSFUL'", {"c": 2})
    with db.connect().cursor() as cur:
        assert app_module.process_referral_reward(cur, 9) is None
    assert not db.ran("INSERT INTO coupons")


def test_coupon_validate_route(client, db):
    db.on("FROM coupons WHERE code=%s", _coupon(valid_from=None, valid_until=None))
    resp = client.get("/api/coupons/validate?code=save10&subtotal=50000")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["valid"] is True
    assert body["discount"] == 5000.0
    assert body["newTotal"] == 45000.0
    (_, params), = db.statements("FROM coupons WHERE code=%s")
    assert params == ("SAVE10",)


def test_coupon_validate_unknown_code(client, db):
    resp = client.get("/api/coupons/validate?code=NOPE&subtotal=100")
    assert resp.status_code == 404
    assert resp.get_json() == {"ok": False, "valid": False, "message": "Invalid coupon code"}


def test_coupon_apply_requires_code(client, db):
    resp = client.post("/api/coupons/apply", json={"subtotal": 100})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Coupon code is required"


def test_redeem_requires_login(client, db):
    resp = client.post("/api/loyalty/redeem", json={"points": 200})
    assert resp.status_code == 401


def test_redeem_below_minimum(client, db, login):
    login()
    resp = client.post("/api/loyalty/redeem", json={"points": 50})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Minimum 100 points required for redemption"


def test_redeem_more_than_balance(client, db, login):
    login()
    db.on(ACCOUNT, {"id": 4, "user_id": 7, "points": 300, "lifetime_points": 1200, "tier": "SILVER"})
    resp = client.post("/api/loyalty/redeem", json={"points": 500})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Insufficient points"
    assert not db.ran("INSERT INTO coupons")


def test_redeem_issues_fixed_coupon(client, db, login):
    login()
    db.on(ACCOUNT, {"id": 4, "user_id": 7, "points": 300, "lifetime_points": 1200, "tier": "SILVER"})
    resp = client.post("/api/loyalty/redeem", json={"points": 250})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["message"] == "Successfully redeemed 200 points!"
    assert body["coupon"]["code"].startswith("LOYALTY-")
    assert body["coupon"]["value"] == 2
    assert body["remainingPoints"] == 100
    (_, params), = db.statements("'REDEMPTION'")
    assert params == (4, -200, "Redeemed 200 points for UGX 2 discount")
    (_, params), = db.statements("UPDATE loyalty_accounts SET points = points - %s")
    assert params == (200, 4, 200)


def test_redeem_loses_race_rolls_back(client, db, login):
    login()
    db.on(ACCOUNT, {"id": 4, "user_id": 7, "points": 300, "lifetime_points": 1200, "tier": "SILVER"})
    db.on("UPDATE loyalty_accounts SET points = points - %s", rowcount=0)
    resp = client.post("/api/loyalty/redeem", json={"points": 200})
    assert resp.status_code == 400
    assert db.rollbacks == 1
    assert not db.ran("'REDEMPTION'")


def test_gift_card_purchase_rejects_odd_amount(client, db):
    resp = client.post(
        "/api/gift-cards/purchase",
        json={"amount": 1234, "recipientEmail": "friend@example.com", "purchaserEmail": "me@example.com"},
    )
    assert resp.status_code == 400
    assert resp.get_json()["validAmounts"] == app_module.GIFT_CARD_AMOUNTS


def test_gift_card_purchase_emails_recipient(client, db, outbox):
    resp = client.post(
        "/api/gift-cards/purchase",
        json={
            "amount": 100000,
            "recipientEmail": "Friend@Example.com",
            "recipientName": "Nia",
            "purchaserEmail": "me@example.com",
        },
    )
    assert resp.status_code == 201
    card = resp.get_json()["giftCard"]
    assert card["recipientEmail"] == "friend@example.com"
    assert card["currency"] == "UGX"
    assert [mail["to"] for mail in outbox] == ["friend@example.com"]
    assert card["code"] in outbox[0]["text"]


def test_gift_card_partial_redemption(client, db):
    db.on(
        "FROM gift_cards WHERE code=%s LIMIT 1 FOR UPDATE",
        {"id": 5, "code": "GC-AAAA", "balance": 50000, "currency": "UGX", "is_active": 1, "expires_at": None},
    )
    resp = client.post("/api/gift-cards/redeem", json={"code": "gc-aaaa", "amount": 20000})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["amountApplied"] == 20000.0
    assert body["remainingBalance"] == 30000.0
    (_, params), = db.statements("UPDATE gift_cards SET balance=%s")
    assert params == (30000.0, 1, 5)


def test_gift_card_expired(client, db):
    db.on(
        "FROM gift_cards WHERE code=%s LIMIT 1",
        {"id": 5, "code": "GC-AAAA", "balance": 50000, "currency": "UGX", "is_active": 1,
         "expires_at": datetime(2000, 1, 1)},
    )
    resp = client.get("/api/gift-cards/check/GC-AAAA")
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Gift card has expired"
