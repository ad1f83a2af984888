import os
import tempfile

os.environ.setdefault("FLASK_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="pz-logs-"))
os.environ.setdefault("UPLOAD_ROOT", tempfile.mkdtemp(prefix="pz-uploads-"))
os.environ["CSRF_ENABLED"] = "0"
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["FLW_WEBHOOK_HASH"] = "webhook-hash"
os.environ["MOBILE_MONEY_SIMULATION"] = "1"
os.environ["DB_FAILURE_BACKOFF_SECONDS"] = "0"

import pytest
from werkzeug.security import generate_password_hash

import app as app_module
import flutterwave
import mailer
import sms

PASSWORD = "Secret#123"
PASSWORD_HASH = generate_password_hash(PASSWORD)


def _squash(sql):
    return " ".join(str(sql).split())


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self._rows = []
        self.rowcount = 0
        self.lastrowid = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        sql = _squash(sql)
        self.db.executed.append((sql, params))
        rule = self.db.match(sql)
        self.db.next_id += 1
        self.lastrowid = self.db.next_id
        if rule is None:
            self._rows = []
            self.rowcount = 1
            return self.rowcount
        if rule.get("raises") is not None:
            raise rule["raises"]
        rows = rule.get("rows")
        if callable(rows):
            rows = rows(params)
        if rows is None:
            rows = []
        elif isinstance(rows, dict):
            rows = [rows]
        self._rows = [dict(r) for r in rows]
        if rule.get("rowcount") is not None:
            self.rowcount = rule["rowcount"]
        else:
            self.rowcount = len(self._rows) or 1
        return self.rowcount

    def fetchone(self):
        return dict(self._rows[0]) if self._rows else None

    def fetchall(self):
        return [dict(r) for r in self._rows]


class FakeConnection:
    def __init__(self, db):
        self.db = db

    def cursor(self):
        return FakeCursor(self.db)

    def commit(self):
        self.db.commits += 1

    def rollback(self):
        self.db.rollbacks += 1

    def close(self):
        self.db.closed += 1


class FakeDB:
    """Answers SQL by substring. One-shot rules run first, then the newest standing rule wins."""

    def __init__(self):
        self.once_rules = []
        self.rules = []
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0
        self.next_id = 100

    def connect(self):
        return FakeConnection(self)

    def on(self, fragment, rows=None, rowcount=None, once=False, raises=None):
        rule = {"fragment": _squash(fragment), "rows": rows, "rowcount": rowcount, "raises": raises}
        (self.once_rules if once else self.rules).append(rule)
        return self

    def match(self, sql):
        for idx, rule in enumerate(self.once_rules):
            if rule["fragment"] in sql:
                return self.once_rules.pop(idx)
        for rule in reversed(self.rules):
            if rule["fragment"] in sql:
                return rule
        return None

    def statements(self, fragment):
        fragment = _squash(fragment)
        return [(sql, params) for sql, params in self.executed if fragment in sql]

    def ran(self, fragment) -> bool:
        return bool(self.statements(fragment))


def make_user(**overrides):
    user = {
        "id": 7,
        "email": "amani@example.com",
        "password_hash": PASSWORD_HASH,
        "first_name": "Amani",
        "last_name": "Okello",
        "phone": "+256771234567",
        "role": "CUSTOMER",
        "is_active": 1,
        "email_verified": 1,
        "failed_logins": 0,
        "locked_until": None,
        "session_version": 1,
        "two_factor_secret": None,
        "two_factor_enabled": 0,
        "two_factor_backup_codes": None,
        "wishlist_pin_hash": None,
        "last_login_at": None,
        "created_at": None,
    }
    user.update(overrides)
    return user


@pytest.fixture
def db(monkeypatch):
    fake = FakeDB()
    monkeypatch.setattr(app_module, "get_db_connection", fake.connect)
    app_module.app.config["SCHEMA_READY"] = True
    app_module._rate_store.clear()
    flutterwave.reset_circuits()
    return fake


@pytest.fixture
def client(db):
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as test_client:
        yield test_client


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    sent = []

    def fake_send_email(to_email, subject, text_body, html_body=None):
        sent.append({"to": to_email, "subject": subject, "text": text_body, "html": html_body})
        return True

    monkeypatch.setattr(mailer, "send_email", fake_send_email)
    return sent


@pytest.fixture(autouse=True)
def texts(monkeypatch):
    sent = []

    def fake_send_sms(phone, message):
        sent.append({"phone": phone, "message": message})
        return True

    monkeypatch.setattr(sms, "send_sms", fake_send_sms)
    return sent


@pytest.fixture
def login(client, db):
    def _login(user=None, **overrides):
        user = user or make_user(**overrides)
        db.on("FROM users WHERE id=%s", user)
        with client.session_transaction() as sess:
            sess["user_id"] = user["id"]
            sess["role"] = user["role"]
            sess["session_version"] = user.get("session_version") or 1
        return user

    return _login


@pytest.fixture
def login_admin(login):
    def _login_admin(**overrides):
        overrides.setdefault("id", 1)
        overrides.setdefault("email", "admin@pleasurezone.ug")
        overrides.setdefault("role", "ADMIN")
        return login(**overrides)

    return _login_admin
