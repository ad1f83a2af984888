from datetime import timedelta

import app as app_module
from tests.conftest import PASSWORD, make_user

BY_EMAIL = "FROM users WHERE email=%s LIMIT 1"


def _register_body(**overrides):
    body = {
        "email": " Amani@Example.com ",
        "password": PASSWORD,
        "firstName": "Amani",
        "lastName": "Okello",
        "phone": "+256 771 234 567",
    }
    body.update(overrides)
    return body


def test_password_strength_messages():
    assert app_module.validate_password_strength("") == "Password is required."
    assert app_module.validate_password_strength("Ab1!") == "Password must be at least 8 characters."
    assert app_module.validate_password_strength("Secret123") == "Password must contain a special character."
    assert app_module.validate_password_strength("secret#123") == "Password must contain an uppercase letter."
    assert app_module.validate_password_strength(PASSWORD) is None


def test_email_and_phone_validation():
    assert app_module.validate_email_format("amani@example.com")
    assert not app_module.validate_email_format("amani@@example.com")
    assert not app_module.validate_email_format("amani..o@example.com")
    assert app_module.normalize_phone_number("+256 (771) 234-567") == "+256771234567"
    assert app_module.normalize_phone_number("0771234567") == "0771234567"
    assert app_module.normalize_phone_number("12345") == ""
    assert app_module.normalize_phone_number("07712abc67") == ""


def test_register_creates_customer_and_signs_in(client, db, outbox):
    db.on("FROM users WHERE id=%s", make_user(id=101, email="amani@example.com", email_verified=0))
    resp = client.post("/api/auth/register", json=_register_body())
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["user"]["email"] == "amani@example.com"
    assert body["user"]["emailVerified"] is False
    assert body["referral"] is None

    (_, params), = db.statements("INSERT INTO users")
    assert params[0] == "amani@example.com"
    assert params[2:5] == ("Amani", "Okello", "+256771234567")
    assert params[5] == 0
    assert db.ran("'SIGNUP_BONUS'")
    assert [mail["to"] for mail in outbox] == ["amani@example.com"]
    assert "verify-email?token=" in outbox[0]["text"]
    with client.session_transaction() as sess:
        assert sess["user_id"] == 101


def test_register_duplicate_email(client, db):
    db.on("SELECT id FROM users WHERE email=%s", {"id": 7})
    resp = client.post("/api/auth/register", json=_register_body())
    assert resp.status_code == 409
    assert resp.get_json()["message"] == "Email already registered"
    assert not db.ran("INSERT INTO users")


def test_register_rejects_weak_password(client, db):
    resp = client.post("/api/auth/register", json=_register_body(password="Secret123"))
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Password must contain a special character."


def test_login_success(client, db):
    user = make_user()
    db.on(BY_EMAIL, user)
    db.on("FROM users WHERE id=%s", user)
    resp = client.post("/api/auth/login", json={"email": "AMANI@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    assert resp.get_json()["user"]["name"] == "Amani Okello"
    assert db.ran("UPDATE users SET failed_logins=0, locked_until=NULL")

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.get_json()["user"]["id"] == 7


def test_login_wrong_password_counts_failure(client, db):
    db.on(BY_EMAIL, make_user(failed_logins=1))
    resp = client.post("/api/auth/login", json={"email": "amani@example.com", "password": "Wrong#123"})
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Invalid email or password"
    (_, params), = db.statements("UPDATE users SET failed_logins=%s")
    assert params == (2, None, 7)


def test_fifth_failure_locks_account(client, db):
    db.on(BY_EMAIL, make_user(failed_logins=4))
    client.post("/api/auth/login", json={"email": "amani@example.com", "password": "Wrong#123"})
    (_, params), = db.statements("UPDATE users SET failed_logins=%s")
    assert params[0] == 0
    assert params[1] is not None


def test_locked_account_is_refused(client, db):
    locked_until = app_module._now_utc() + timedelta(minutes=10)
    db.on(BY_EMAIL, make_user(locked_until=locked_until))
    resp = client.post("/api/auth/login", json={"email": "amani@example.com", "password": PASSWORD})
    assert resp.status_code == 429
    assert resp.get_json()["message"] == "Account temporarily locked. Try again in 10 minutes."


def test_unknown_email_does_not_leak(client, db):
    resp = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
    assert resp.status_code == 401
    assert not db.ran("UPDATE users")


def test_disabled_account(client, db):
    db.on(BY_EMAIL, make_user(is_active=0))
    resp = client.post("/api/auth/login", json={"email": "amani@example.com", "password": PASSWORD})
    assert resp.status_code == 403


def test_auth_endpoints_are_rate_limited(client, db):
    statuses = [client.post("/api/auth/login", json={}).status_code for _ in range(11)]
    assert statuses[:10] == [400] * 10
    assert statuses[10] == 429


def test_me_requires_login(client, db):
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Authentication required."


def test_stale_session_version_is_rejected(client, db, login):
    login(make_user(session_version=3))
    with client.session_transaction() as sess:
        sess["session_version"] = 2
    assert client.get("/api/auth/me").status_code == 401


def test_profile_update_rejects_bad_phone(client, db, login):
    login()
    resp = client.put("/api/auth/me", json={"phone": "12"})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Please enter a valid phone number."


def test_customer_logout_is_not_audited(client, db, login):
    login()
    resp = client.post("/api/auth/logout")
    assert resp.status_code == 200
    assert not db.ran("INSERT INTO activity_logs")
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_staff_logout_is_audited(client, db, login_admin):
    login_admin()
    client.post("/api/auth/logout")
    (_, params), = db.statements("INSERT INTO activity_logs")
    assert params[:3] == (1, "LOGOUT", "USER")
    assert params[4] == "Logged out"


def test_forgot_password_unknown_email_is_silent(client, db, outbox):
    resp = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert resp.status_code == 200
    assert resp.get_json()["message"] == "If the email exists, a reset link has been sent"
    assert outbox == []


def test_forgot_password_sends_reset_link(client, db, outbox):
    db.on("FROM users WHERE email=%s AND is_active=1", make_user())
    client.post("/api/auth/forgot-password", json={"email": "amani@example.com"})
    assert db.ran("UPDATE users SET reset_token=%s")
    assert "reset-password?token=" in outbox[0]["text"]


def test_reset_password_with_bad_token(client, db):
    resp = client.post("/api/auth/reset-password", json={"token": "nope", "password": PASSWORD})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Invalid or expired reset token"


def test_reset_password_bumps_session_version(client, db):
    db.on("FROM users WHERE reset_token=%s", {"id": 7})
    resp = client.post("/api/auth/reset-password", json={"token": "good", "password": PASSWORD})
    assert resp.status_code == 200
    assert db.ran("session_version=session_version+1")
