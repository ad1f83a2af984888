from flask import Flask, jsonify, request, session, redirect, url_for, g, make_response, send_from_directory
from flask.json.provider import DefaultJSONProvider
from werkzeug.exceptions import HTTPException
from urllib.parse import quote, urlparse, parse_qs
from decimal import Decimal
import re
import os
import json
import uuid
import string
import hashlib
from datetime import timedelta, datetime, date, timezone
from functools import wraps
import secrets
import urllib.request
import urllib.error
import hmac
import time
import logging
from logging.handlers import RotatingFileHandler
from html import escape
from authlib.integrations.flask_client import OAuth
from werkzeug.utils import secure_filename
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.middleware.proxy_fix import ProxyFix
import pymysql
import pymysql.cursors
from dotenv import load_dotenv
from PIL import Image, ImageOps
import cloudinary
import cloudinary.uploader

load_dotenv()
import mailer
import sms
import flutterwave
import mobile_money
import twofactor


app = Flask(__name__)


app.secret_key = os.getenv("FLASK_SECRET_KEY")
if not app.secret_key:
    raise RuntimeError("FLASK_SECRET_KEY is required.")

BUSINESS_NAME = os.getenv("BUSINESS_NAME", "PleasureZone")
BUSINESS_LEGAL_NAME = os.getenv("BUSINESS_LEGAL_NAME", "Pleasure Zone Uganda")
BUSINESS_ADDRESS = os.getenv("BUSINESS_ADDRESS", "Kampala, Uganda")
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@pleasurezone.ug")
SUPPORT_PHONE = os.getenv("SUPPORT_PHONE", "+256 700 000 000")
FRONTEND_URL = (os.getenv("FRONTEND_URL") or os.getenv("BASE_URL") or "http://localhost:3000").rstrip("/")
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "UGX")
USE_CLOUDINARY = bool(os.getenv("CLOUDINARY_URL") or os.getenv("CLOUDINARY_CLOUD_NAME"))
CSRF_ENABLED = os.getenv("CSRF_ENABLED", "1") == "1"
CRON_SECRET = os.getenv("CRON_SECRET", "").strip()
FLW_WEBHOOK_HASH = os.getenv("FLW_WEBHOOK_HASH", "").strip()
MOBILE_MONEY_SIMULATION = os.getenv("MOBILE_MONEY_SIMULATION", "1") == "1"
PRODUCT_MAX_IMAGE_BYTES = int(os.getenv("PRODUCT_MAX_IMAGE_BYTES", "5000000"))
PRODUCT_MAX_IMAGE_PX = int(os.getenv("PRODUCT_MAX_IMAGE_PX", "1600"))
PRODUCT_IMAGE_QUALITY = int(os.getenv("PRODUCT_IMAGE_QUALITY", "82"))
EXCHANGE_RATE_API = os.getenv("EXCHANGE_RATE_API", "https://open.er-api.com/v6/latest/USD")

LOGIN_MAX_ATTEMPTS = 5
LOGIN_LOCK_MINUTES = 15
ADMIN_LOGIN_MAX_ATTEMPTS = 3
ADMIN_LOGIN_LOCK_MINUTES = 30
EMAIL_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)
RESERVATION_TTL = timedelta(minutes=15)
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

LOYALTY_POINTS_PER_UNIT = 0.01
LOYALTY_SIGNUP_BONUS = 100
LOYALTY_MIN_REDEEM = 100
LOYALTY_POINTS_PER_CURRENCY_UNIT = 100
LOYALTY_TIERS = [
    ("PLATINUM", 15000),
    ("GOLD", 5000),
    ("SILVER", 1000),
    ("BRONZE", 0),
]
REFERRER_REWARD = 500
REFEREE_DISCOUNT_PCT = 10
GIFT_CARD_AMOUNTS = [50000, 100000, 200000, 500000, 1000000]
GIFT_CARD_CURRENCY = "UGX"
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

ORDER_STATUSES = ["PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED", "REFUNDED"]
ORDER_STATUS_STEPS = ["PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED"]
PAYMENT_STATUSES = ["PENDING", "SUCCESSFUL", "FAILED", "REFUNDED"]
STAFF_ROLES = ("ADMIN", "MANAGER")
TICKET_CATEGORIES = ["ORDER", "PAYMENT", "SHIPPING", "PRODUCT", "RETURN", "ACCOUNT", "OTHER"]
TICKET_STATUSES = ["OPEN", "IN_PROGRESS", "WAITING_CUSTOMER", "RESOLVED", "CLOSED"]
RETURN_REASONS = ["DEFECTIVE", "WRONG_ITEM", "NOT_AS_DESCRIBED", "DAMAGED", "CHANGED_MIND", "OTHER"]
RETURN_CONDITIONS = ["UNOPENED", "OPENED", "DAMAGED"]
PUBLIC_SETTING_KEYS = [
    "store_name",
    "store_description",
    "store_email",
    "store_phone",
    "store_address",
    "store_currency",
    "contact_email",
    "contact_phone",
    "contact_whatsapp",
    "contact_hours",
    "faq_items",
]
RATE_CURRENCIES = [
    {"code": "UGX", "name": "Ugandan Shilling", "symbol": "USh", "decimal_places": 0, "is_base": True},
    {"code": "USD", "name": "US Dollar", "symbol": "$", "decimal_places": 2, "is_base": False},
    {"code": "KES", "name": "Kenyan Shilling", "symbol": "KSh", "decimal_places": 0, "is_base": False},
    {"code": "TZS", "name": "Tanzanian Shilling", "symbol": "TSh", "decimal_places": 0, "is_base": False},
    {"code": "RWF", "name": "Rwandan Franc", "symbol": "RF", "decimal_places": 0, "is_base": False},
    {"code": "BIF", "name": "Burundian Franc", "symbol": "Fr", "decimal_places": 0, "is_base": False},
    {"code": "ETB", "name": "Ethiopian Birr", "symbol": "Br", "decimal_places": 2, "is_base": False},
    {"code": "SSP", "name": "South Sudanese Pound", "symbol": "SSP", "decimal_places": 2, "is_base": False},
    {"code": "EUR", "name": "Euro", "symbol": "€", "decimal_places": 2, "is_base": False},
    {"code": "GBP", "name": "British Pound", "symbol": "£", "decimal_places": 2, "is_base": False},
]


def _safe_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


DB_CONNECT_TIMEOUT = _safe_float_env("DB_CONNECT_TIMEOUT", 4.0)
DB_READ_TIMEOUT = _safe_float_env("DB_READ_TIMEOUT", 8.0)
DB_WRITE_TIMEOUT = _safe_float_env("DB_WRITE_TIMEOUT", 8.0)
DB_FAILURE_BACKOFF_SECONDS = _safe_float_env("DB_FAILURE_BACKOFF_SECONDS", 20.0)

app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

if USE_CLOUDINARY:
    if os.getenv("CLOUDINARY_URL"):
        cloudinary.config(secure=True)
    else:
        cloudinary.config(
            cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
            api_key=os.getenv("CLOUDINARY_API_KEY"),
            api_secret=os.getenv("CLOUDINARY_API_SECRET"),
            secure=True,
        )

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

os.makedirs(LOG_DIR, exist_ok=True)
log_path = os.path.join(LOG_DIR, "app.log")
handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
handler.setLevel(LOG_LEVEL)
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
app.logger.addHandler(handler)
app.logger.setLevel(LOG_LEVEL)
for _helper_logger in ("mailer", "sms", "flutterwave"):
    logging.getLogger(_helper_logger).addHandler(handler)
    logging.getLogger(_helper_logger).setLevel(LOG_LEVEL)

RATE_LIMITS = {
    "api": (100, 15 * 60),
    "auth": (10, 60 * 60),
    "admin_login": (10, 60 * 60),
    "checkout": (5, 60),
}
RATE_LIMIT_MESSAGES = {
    "auth": "Too many login attempts, please try again later.",
    "admin_login": "Too many login attempts, please try again later.",
    "checkout": "Too many checkout attempts, please slow down.",
}
_rate_store = {}


DEFAULT_UPLOAD_ROOT = "/data/uploads" if os.path.isdir("/data/uploads") else "uploads"
UPLOAD_ROOT = os.getenv("UPLOAD_ROOT", DEFAULT_UPLOAD_ROOT).strip() or DEFAULT_UPLOAD_ROOT
UPLOAD_FOLDER = os.path.join(UPLOAD_ROOT, "images")
ALLOWED_EXTENSIONS = {"png", "jpg", "jpeg", "webp"}
app.config["UPLOAD_FOLDER"] = UPLOAD_FOLDER
app.config["UPLOAD_ROOT"] = UPLOAD_ROOT
app.config["MAX_CONTENT_LENGTH"] = PRODUCT_MAX_IMAGE_BYTES * 5
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["SESSION_COOKIE_SECURE"] = os.getenv("FLASK_SESSION_SECURE", "0") == "1"
remember_days_env = os.getenv("REMEMBER_ME_DAYS", "30")
try:
    remember_days = int(remember_days_env)
except ValueError:
    remember_days = 30
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=remember_days)


class StoreJSONProvider(DefaultJSONProvider):
    @staticmethod
    def default(o):
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return DefaultJSONProvider.default(o)


app.json = StoreJSONProvider(app)

oauth = OAuth(app)
oauth.register(
    name="google",
    client_id=os.getenv("GOOGLE_CLIENT_ID"),
    client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs={"scope": "openid email profile"},
)


def generate_csrf_token():
    token = session.get("_csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["_csrf_token"] = token
    return token


def _client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _hit_rate_limit(key: str) -> bool:
    limit, window = RATE_LIMITS.get(key, (10, 60))
    now = time.time()
    bucket_key = f"{key}:{_client_ip()}"
    bucket = [t for t in _rate_store.get(bucket_key, []) if now - t < window]
    if len(bucket) >= limit:
        _rate_store[bucket_key] = bucket
        return True
    bucket.append(now)
    _rate_store[bucket_key] = bucket
    return False


def _rate_limit_exceeded(key: str = ""):
    message = RATE_LIMIT_MESSAGES.get(key, "Too many requests, please try again later.")
    return jsonify(ok=False, message=message, level="warning"), 429


def rate_limit(key: str):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
                return view(*args, **kwargs)
            if _hit_rate_limit(key):
                app.logger.warning("Rate limit %s hit by %s", key, _client_ip())
                return _rate_limit_exceeded(key)
            return view(*args, **kwargs)
        return wrapped
    return decorator


def allowed_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def _row_at(row, idx, default=None):
    if row is None:
        return default
    if isinstance(row, dict):
        try:
            return list(row.values())[idx]
        except Exception:
            return default
    try:
        return row[idx]
    except Exception:
        return default


def _scalar(cur, query, params=None, default=0):
    cur.execute(query, params or ())
    row = cur.fetchone()
    if not row:
        return default
    value = _row_at(row, 0, default)
    return default if value is None else value


def _now_utc():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _money(value) -> float:
    return round(_to_float(value), 2)


_CAMEL_RE = re.compile(r"_([a-z0-9])")


def _camel(row, drop=()):
    if row is None:
        return None
    out = {}
    for key, value in dict(row).items():
        if key in drop:
            continue
        out[_CAMEL_RE.sub(lambda m: m.group(1).upper(), key)] = value
    return out


def _camel_rows(rows, drop=()):
    return [_camel(r, drop) for r in rows or []]


def _json_field(value, default=None):
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _bad_request(message: str, status: int = 400, **extra):
    return jsonify(ok=False, message=message, **extra), status


def _paging(default_limit: int = 20, max_limit: int = 100):
    page = max(1, _to_int(request.args.get("page"), 1))
    limit = _to_int(request.args.get("limit"), default_limit)
    limit = max(1, min(limit, max_limit))
    return page, limit, (page - 1) * limit


def _pagination(page: int, limit: int, total: int) -> dict:
    total = int(total or 0)
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": (total + limit - 1) // limit if limit else 0,
    }


def _random_code(length: int, alphabet: str = CODE_ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value or "").strip().lower()).strip("-")
    return slug or "item"


def _cron_authorized() -> bool:
    if not CRON_SECRET:
        return False
    token = request.headers.get("X-Task-Secret") or request.args.get("token", "")
    return bool(token and hmac.compare_digest(str(token), str(CRON_SECRET)))


def _parse_db_url(db_url: str) -> dict:
    parsed = urlparse(db_url)
    if parsed.scheme not in {"mysql", "mariadb"}:
        raise ValueError("Unsupported database URL scheme")
    database = parsed.path.lstrip("/")
    query = parse_qs(parsed.query)
    return {
        "host": parsed.hostname,
        "user": parsed.username,
        "password": parsed.password,
        "database": database,
        "port": parsed.port or 3306,
        "query": query,
    }


_db_connect_block_until = 0.0


def _db_connect_block_remaining_seconds() -> float:
    if DB_FAILURE_BACKOFF_SECONDS <= 0:
        return 0.0
    return max(0.0, _db_connect_block_until - time.monotonic())


def _mark_db_connect_failure() -> None:
    global _db_connect_block_until
    if DB_FAILURE_BACKOFF_SECONDS <= 0:
        return
    _db_connect_block_until = time.monotonic() + DB_FAILURE_BACKOFF_SECONDS


def _clear_db_connect_failure() -> None:
    global _db_connect_block_until
    _db_connect_block_until = 0.0


def get_db_connection():
    blocked_for = _db_connect_block_remaining_seconds()
    if blocked_for > 0:
        raise RuntimeError(
            f"Database temporarily unavailable. Retry in about {int(blocked_for) + 1}s."
        )

    db_url = os.getenv("DATABASE_URL") or os.getenv("MYSQL_URL") or os.getenv("DB_URL")
    if db_url:
        try:
            cfg = _parse_db_url(db_url)
        except Exception as exc:
            raise RuntimeError(f"Invalid DATABASE_URL/MYSQL_URL: {exc}") from exc
        host = cfg["host"]
        user = cfg["user"]
        password = cfg["password"]
        database = cfg["database"]
        port = int(cfg["port"])
        query = cfg["query"]
    else:
        host = os.getenv("DB_HOST")
        user = os.getenv("DB_USER")
        password = os.getenv("DB_PASSWORD")
        database = os.getenv("DB_NAME")
        port = int(os.getenv("DB_PORT", "3306"))
        query = {}

    if not host:
        raise RuntimeError("Database host is not set (DB_HOST or DATABASE_URL).")

    ssl_disabled = os.getenv("DB_SSL_DISABLED", "0") == "1"
    sslmode = (query.get("sslmode") or [""])[0].lower()
    ssl_query = (query.get("ssl") or [""])[0].lower()
    if sslmode == "disable" or ssl_query in {"0", "false", "no"}:
        ssl_disabled = True

    connect_kwargs = dict(
        host=host,
        user=user,
        password=password,
        database=database,
        port=port,
        charset="utf8mb4",
        cursorclass=pymysql.cursors.DictCursor,
        connect_timeout=max(1, int(DB_CONNECT_TIMEOUT)),
        read_timeout=max(1, int(DB_READ_TIMEOUT)),
        write_timeout=max(1, int(DB_WRITE_TIMEOUT)),
    )
    if not ssl_disabled:
        connect_kwargs["ssl"] = {"ssl": {}}

    try:
        conn = pymysql.connect(**connect_kwargs)
        _clear_db_connect_failure()
        return conn
    except pymysql.err.OperationalError:
        _mark_db_connect_failure()
        raise
    except OSError as exc:
        _mark_db_connect_failure()
        raise RuntimeError(f"Database connection failed to {host}:{port} ({exc}).") from exc


SCHEMA_TABLES = {
    "users": """
        CREATE TABLE IF NOT EXISTS users (
            id INT AUTO_INCREMENT PRIMARY KEY,
            email VARCHAR(191) NOT NULL,
            password_hash VARCHAR(255) NOT NULL,
            first_name VARCHAR(80) NULL,
            last_name VARCHAR(80) NULL,
            phone VARCHAR(32) NULL,
            role VARCHAR(20) NOT NULL DEFAULT 'CUSTOMER',
            is_active TINYINT(1) NOT NULL DEFAULT 1,
            email_verified TINYINT(1) NOT NULL DEFAULT 0,
            email_verify_token VARCHAR(128) NULL,
            email_verify_expires DATETIME NULL,
            reset_token VARCHAR(128) NULL,
            reset_token_expires DATETIME NULL,
            failed_logins INT NOT NULL DEFAULT 0,
            locked_until DATETIME NULL,
            session_version INT NOT NULL DEFAULT 1,
            two_factor_secret VARCHAR(64) NULL,
            two_factor_enabled TINYINT(1) NOT NULL DEFAULT 0,
            two_factor_backup_codes TEXT NULL,
            wishlist_pin_hash VARCHAR(255) NULL,
            last_login_at DATETIME NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_users_email (email),
            KEY idx_users_role (role)
        )
    """,
    "categories": """
        CREATE TABLE IF NOT EXISTS categories (
            id INT AUTO_INCREMENT PRIMARY KEY,
            name VARCHAR(120) NOT NULL,
            slug VARCHAR(160) NOT NULL,
            description TEXT NULL,
            image VARCHAR(500) NULL,
            parent_id INT NULL,
            sort_order INT NOT NULL DEFAULT 0,
            is_active TINYINT(1) NOT NULL DEFAULT 1,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_categories_slug (slug),
            KEY idx_categories_parent (parent_id)
        )
    """,
    "products": """
        CREATE TABLE IF NOT EXISTS products (
            id INT AUTO_INCREMENT PRIMARY KEY,
            name VARCHAR(200) NOT NULL,
            slug VARCHAR(220) NOT NULL,
            description TEXT NULL,
            short_description VARCHAR(500) NULL,
            sku VARCHAR(80) NULL,
            price DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            compare_at_price DECIMAL(12,2) NULL,
            category_id INT NULL,
            stock INT NOT NULL DEFAULT 0,
            reserved_stock INT NOT NULL DEFAULT 0,
            track_inventory TINYINT(1) NOT NULL DEFAULT 1,
            allow_backorder TINYINT(1) NOT NULL DEFAULT 0,
            status VARCHAR(20) NOT NULL DEFAULT 'ACTIVE',
            featured TINYINT(1) NOT NULL DEFAULT 0,
            rating DECIMAL(3,2) NOT NULL DEFAULT 0.00,
            review_count INT NOT NULL DEFAULT 0,
            sales_count INT NOT NULL DEFAULT 0,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_products_slug (slug),
            KEY idx_products_category (category_id),
            KEY idx_products_status (status)
        )
    """,
    "product_images": """
        CREATE TABLE IF NOT EXISTS product_images (
            id INT AUTO_INCREMENT PRIMARY KEY,
            product_id INT NOT NULL,
            url VARCHAR(500) NOT NULL,
            alt VARCHAR(200) NULL,
            sort_order INT NOT NULL DEFAULT 0,
            KEY idx_product_images_product (product_id)
        )
    """,
    "carts": """
        CREATE TABLE IF NOT EXISTS carts (
            id VARCHAR(36) PRIMARY KEY,
            user_id INT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            KEY idx_carts_user (user_id)
        )
    """,
    "cart_items": """
        CREATE TABLE IF NOT EXISTS cart_items (
            id INT AUTO_INCREMENT PRIMARY KEY,
            cart_id VARCHAR(36) NOT NULL,
            product_id INT NOT NULL,
            quantity INT NOT NULL DEFAULT 1,
            UNIQUE KEY uniq_cart_product (cart_id, product_id)
        )
    """,
    "orders": """
        CREATE TABLE IF NOT EXISTS orders (
            id INT AUTO_INCREMENT PRIMARY KEY,
            order_number VARCHAR(40) NOT NULL,
            user_id INT NULL,
            email VARCHAR(191) NOT NULL,
            customer_name VARCHAR(160) NULL,
            phone VARCHAR(32) NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            payment_status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            payment_method VARCHAR(20) NULL,
            currency VARCHAR(3) NOT NULL DEFAULT 'UGX',
            subtotal DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            discount DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            shipping DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            total DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            coupon_code VARCHAR(40) NULL,
            discreet TINYINT(1) NOT NULL DEFAULT 1,
            shipping_address TEXT NULL,
            tracking_number VARCHAR(80) NULL,
            notes TEXT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_orders_number (order_number),
            KEY idx_orders_user (user_id),
            KEY idx_orders_email (email),
            KEY idx_orders_status (status, created_at)
        )
    """,
    "order_items": """
        CREATE TABLE IF NOT EXISTS order_items (
            id INT AUTO_INCREMENT PRIMARY KEY,
            order_id INT NOT NULL,
            product_id INT NULL,
            product_name VARCHAR(200) NOT NULL,
            price DECIMAL(12,2) NOT NULL,
            quantity INT NOT NULL,
            KEY idx_order_items_order (order_id),
            KEY idx_order_items_product (product_id)
        )
    """,
    "order_events": """
        CREATE TABLE IF NOT EXISTS order_events (
            id INT AUTO_INCREMENT PRIMARY KEY,
            order_id INT NOT NULL,
            status VARCHAR(60) NOT NULL,
            note TEXT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_order_events_order (order_id)
        )
    """,
    "payments": """
        CREATE TABLE IF NOT EXISTS payments (
            id INT AUTO_INCREMENT PRIMARY KEY,
            order_id INT NOT NULL,
            provider VARCHAR(40) NOT NULL DEFAULT 'FLUTTERWAVE',
            method VARCHAR(20) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            amount DECIMAL(12,2) NOT NULL,
            currency VARCHAR(3) NOT NULL,
            flw_ref VARCHAR(120) NULL,
            flw_tx_id VARCHAR(64) NULL,
            tx_ref VARCHAR(120) NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            KEY idx_payments_order (order_id)
        )
    """,
    "stock_reservations": """
        CREATE TABLE IF NOT EXISTS stock_reservations (
            id INT AUTO_INCREMENT PRIMARY KEY,
            order_id INT NOT NULL,
            product_id INT NOT NULL,
            quantity INT NOT NULL,
            expires_at DATETIME NOT NULL,
            released TINYINT(1) NOT NULL DEFAULT 0,
            released_at DATETIME NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_reservations_order (order_id),
            KEY idx_reservations_expiry (released, expires_at)
        )
    """,
    "processed_webhooks": """
        CREATE TABLE IF NOT EXISTS processed_webhooks (
            id INT AUTO_INCREMENT PRIMARY KEY,
            event_id VARCHAR(160) NOT NULL,
            provider VARCHAR(40) NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_processed_webhook (event_id)
        )
    """,
    "payment_providers": """
        CREATE TABLE IF NOT EXISTS payment_providers (
            id INT AUTO_INCREMENT PRIMARY KEY,
            name VARCHAR(80) NOT NULL,
            code VARCHAR(40) NOT NULL,
            type VARCHAR(20) NOT NULL DEFAULT 'MOBILE_MONEY',
            currencies VARCHAR(120) NOT NULL DEFAULT 'UGX',
            fee_type VARCHAR(20) NOT NULL DEFAULT 'PERCENTAGE',
            fee_value DECIMAL(10,2) NOT NULL DEFAULT 0.00,
            min_fee DECIMAL(10,2) NULL,
            max_fee DECIMAL(10,2) NULL,
            is_active TINYINT(1) NOT NULL DEFAULT 1,
            UNIQUE KEY uniq_payment_provider_code (code)
        )
    """,
    "mobile_money_transactions": """
        CREATE TABLE IF NOT EXISTS mobile_money_transactions (
            id INT AUTO_INCREMENT PRIMARY KEY,
            order_id INT NULL,
            provider VARCHAR(40) NOT NULL,
            phone_number VARCHAR(20) NOT NULL,
            amount DECIMAL(12,2) NOT NULL,
            fee DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            currency VARCHAR(3) NOT NULL DEFAULT 'UGX',
            external_ref VARCHAR(60) NOT NULL,
            transaction_id VARCHAR(120) NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            status_message VARCHAR(255) NULL,
            completed_at DATETIME NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_momo_external_ref (external_ref),
            KEY idx_momo_order (order_id)
        )
    """,
    "abandoned_carts": """
        CREATE TABLE IF NOT EXISTS abandoned_carts (
            id INT AUTO_INCREMENT PRIMARY KEY,
            cart_id VARCHAR(36) NOT NULL,
            user_id INT NULL,
            email VARCHAR(191) NULL,
            cart_data TEXT NOT NULL,
            cart_value DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            currency VARCHAR(3) NOT NULL DEFAULT 'UGX',
            email1_sent_at DATETIME NULL,
            email2_sent_at DATETIME NULL,
            recovered_at DATETIME NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_abandoned_cart (cart_id),
            KEY idx_abandoned_user (user_id),
            KEY idx_abandoned_window (recovered_at, created_at)
        )
    """,
    "coupons": """
        CREATE TABLE IF NOT EXISTS coupons (
            id INT AUTO_INCREMENT PRIMARY KEY,
            code VARCHAR(40) NOT NULL,
            description VARCHAR(255) NULL,
            type VARCHAR(20) NOT NULL DEFAULT 'PERCENTAGE',
            value DECIMAL(12,2) NOT NULL,
            min_order_amount DECIMAL(12,2) NULL,
            max_discount DECIMAL(12,2) NULL,
            usage_limit INT NULL,
            usage_count INT NOT NULL DEFAULT 0,
            valid_from DATETIME NULL,
            valid_until DATETIME NULL,
            is_active TINYINT(1) NOT NULL DEFAULT 1,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_coupon_code (code)
        )
    """,
    "loyalty_accounts": """
        CREATE TABLE IF NOT EXISTS loyalty_accounts (
            id INT AUTO_INCREMENT PRIMARY KEY,
            user_id INT NOT NULL,
            points INT NOT NULL DEFAULT 0,
            lifetime_points INT NOT NULL DEFAULT 0,
            tier VARCHAR(20) NOT NULL DEFAULT 'BRONZE',
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_loyalty_user (user_id)
        )
    """,
    "loyalty_transactions": """
        CREATE TABLE IF NOT EXISTS loyalty_transactions (
            id INT AUTO_INCREMENT PRIMARY KEY,
            account_id INT NOT NULL,
            type VARCHAR(20) NOT NULL,
            points INT NOT NULL,
            description VARCHAR(255) NULL,
            order_id INT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_loyalty_tx_account (account_id, created_at)
        )
    """,
    "referral_codes": """
        CREATE TABLE IF NOT EXISTS referral_codes (
            id INT AUTO_INCREMENT PRIMARY KEY,
            user_id INT NOT NULL,
            code VARCHAR(24) NOT NULL,
            total_referrals INT NOT NULL DEFAULT 0,
            total_earnings DECIMAL(12,2) NOT NULL DEFAULT 0.00,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_referral_user (user_id),
            UNIQUE KEY uniq_referral_code (code)
        )
    """,
    "referrals": """
        CREATE TABLE IF NOT EXISTS referrals (
            id INT AUTO_INCREMENT PRIMARY KEY,
            referrer_id INT NOT NULL,
            referee_id INT NOT NULL,
            code VARCHAR(24) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            referee_coupon VARCHAR(40) NULL,
            referrer_coupon VARCHAR(40) NULL,
            qualified_at DATETIME NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_referee (referee_id),
            KEY idx_referrer (referrer_id)
        )
    """,
    "gift_cards": """
        CREATE TABLE IF NOT EXISTS gift_cards (
            id INT AUTO_INCREMENT PRIMARY KEY,
            code VARCHAR(32) NOT NULL,
            initial_amount DECIMAL(12,2) NOT NULL,
            balance DECIMAL(12,2) NOT NULL,
            currency VARCHAR(3) NOT NULL DEFAULT 'UGX',
            purchaser_id INT NULL,
            purchaser_email VARCHAR(191) NULL,
            recipient_email VARCHAR(191) NOT NULL,
            recipient_name VARCHAR(160) NULL,
            sender_name VARCHAR(160) NULL,
            message TEXT NULL,
            is_active TINYINT(1) NOT NULL DEFAULT 1,
            expires_at DATETIME NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_gift_card_code (code)
        )
    """,
    "gift_card_redemptions": """
        CREATE TABLE IF NOT EXISTS gift_card_redemptions (
            id INT AUTO_INCREMENT PRIMARY KEY,
            gift_card_id INT NOT NULL,
            order_id INT NULL,
            user_id INT NULL,
            amount DECIMAL(12,2) NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_gift_card_redemptions (gift_card_id)
        )
    """,
    "support_tickets": """
        CREATE TABLE IF NOT EXISTS support_tickets (
            id INT AUTO_INCREMENT PRIMARY KEY,
            ticket_number VARCHAR(40) NOT NULL,
            user_id INT NULL,
            email VARCHAR(191) NOT NULL,
            name VARCHAR(160) NOT NULL,
            subject VARCHAR(200) NOT NULL,
            category VARCHAR(20) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'OPEN',
            priority VARCHAR(20) NOT NULL DEFAULT 'NORMAL',
            order_id INT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_ticket_number (ticket_number),
            KEY idx_ticket_user (user_id)
        )
    """,
    "ticket_messages": """
        CREATE TABLE IF NOT EXISTS ticket_messages (
            id INT AUTO_INCREMENT PRIMARY KEY,
            ticket_id INT NOT NULL,
            sender_id INT NULL,
            sender_type VARCHAR(20) NOT NULL,
            sender_name VARCHAR(160) NULL,
            message TEXT NOT NULL,
            is_internal TINYINT(1) NOT NULL DEFAULT 0,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_ticket_messages (ticket_id)
        )
    """,
    "returns": """
        CREATE TABLE IF NOT EXISTS returns (
            id INT AUTO_INCREMENT PRIMARY KEY,
            return_number VARCHAR(40) NOT NULL,
            order_id INT NOT NULL,
            user_id INT NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            reason VARCHAR(40) NOT NULL,
            notes TEXT NULL,
            refund_amount DECIMAL(12,2) NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_return_number (return_number),
            KEY idx_returns_order (order_id),
            KEY idx_returns_user (user_id)
        )
    """,
    "return_items": """
        CREATE TABLE IF NOT EXISTS return_items (
            id INT AUTO_INCREMENT PRIMARY KEY,
            return_id INT NOT NULL,
            order_item_id INT NOT NULL,
            quantity INT NOT NULL,
            reason VARCHAR(40) NOT NULL,
            item_condition VARCHAR(20) NOT NULL,
            KEY idx_return_items (return_id)
        )
    """,
    "addresses": """
        CREATE TABLE IF NOT EXISTS addresses (
            id INT AUTO_INCREMENT PRIMARY KEY,
            user_id INT NOT NULL,
            label VARCHAR(60) NULL,
            full_name VARCHAR(160) NOT NULL,
            phone VARCHAR(32) NOT NULL,
            street VARCHAR(255) NOT NULL,
            city VARCHAR(120) NOT NULL,
            region VARCHAR(120) NULL,
            country VARCHAR(80) NOT NULL DEFAULT 'Uganda',
            postal_code VARCHAR(20) NULL,
            is_default TINYINT(1) NOT NULL DEFAULT 0,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_addresses_user (user_id)
        )
    """,
    "wishlist_items": """
        CREATE TABLE IF NOT EXISTS wishlist_items (
            id INT AUTO_INCREMENT PRIMARY KEY,
            user_id INT NOT NULL,
            product_id INT NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_wishlist (user_id, product_id)
        )
    """,
    "reviews": """
        CREATE TABLE IF NOT EXISTS reviews (
            id INT AUTO_INCREMENT PRIMARY KEY,
            product_id INT NOT NULL,
            user_id INT NOT NULL,
            rating TINYINT NOT NULL,
            title VARCHAR(160) NULL,
            comment TEXT NULL,
            verified TINYINT(1) NOT NULL DEFAULT 0,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_review_user_product (product_id, user_id)
        )
    """,
    "newsletter_subscribers": """
        CREATE TABLE IF NOT EXISTS newsletter_subscribers (
            id INT AUTO_INCREMENT PRIMARY KEY,
            email VARCHAR(191) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'SUBSCRIBED',
            source VARCHAR(40) NULL,
            subscribed_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            unsubscribed_at DATETIME NULL,
            UNIQUE KEY uniq_newsletter_email (email)
        )
    """,
    "blog_posts": """
        CREATE TABLE IF NOT EXISTS blog_posts (
            id INT AUTO_INCREMENT PRIMARY KEY,
            title VARCHAR(200) NOT NULL,
            slug VARCHAR(220) NOT NULL,
            excerpt VARCHAR(500) NULL,
            content MEDIUMTEXT NOT NULL,
            cover_image VARCHAR(500) NULL,
            category VARCHAR(80) NULL,
            tags VARCHAR(255) NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'DRAFT',
            author_id INT NULL,
            views INT NOT NULL DEFAULT 0,
            published_at DATETIME NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uniq_blog_slug (slug),
            KEY idx_blog_status (status, published_at)
        )
    """,
    "banners": """
        CREATE TABLE IF NOT EXISTS banners (
            id INT AUTO_INCREMENT PRIMARY KEY,
            title VARCHAR(160) NOT NULL,
            subtitle VARCHAR(255) NULL,
            image VARCHAR(500) NOT NULL,
            link VARCHAR(500) NULL,
            position VARCHAR(40) NOT NULL DEFAULT 'home-hero',
            sort_order INT NOT NULL DEFAULT 0,
            is_active TINYINT(1) NOT NULL DEFAULT 1,
            starts_at DATETIME NULL,
            ends_at DATETIME NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "currencies": """
        CREATE TABLE IF NOT EXISTS currencies (
            code VARCHAR(3) PRIMARY KEY,
            name VARCHAR(80) NOT NULL,
            symbol VARCHAR(8) NOT NULL,
            exchange_rate DECIMAL(20,10) NOT NULL DEFAULT 1,
            decimal_places INT NOT NULL DEFAULT 2,
            is_base TINYINT(1) NOT NULL DEFAULT 0,
            is_active TINYINT(1) NOT NULL DEFAULT 1,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
        )
    """,
    "page_views": """
        CREATE TABLE IF NOT EXISTS page_views (
            id INT AUTO_INCREMENT PRIMARY KEY,
            path VARCHAR(500) NOT NULL,
            referrer VARCHAR(500) NULL,
            user_agent VARCHAR(500) NULL,
            session_id VARCHAR(64) NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_page_views_created (created_at)
        )
    """,
    "settings": """
        CREATE TABLE IF NOT EXISTS settings (
            setting_key VARCHAR(120) PRIMARY KEY,
            setting_value TEXT NOT NULL,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
        )
    """,
    "activity_logs": """
        CREATE TABLE IF NOT EXISTS activity_logs (
            id INT AUTO_INCREMENT PRIMARY KEY,
            user_id INT NULL,
            action VARCHAR(30) NOT NULL,
            entity_type VARCHAR(40) NOT NULL,
            entity_id VARCHAR(64) NULL,
            description VARCHAR(500) NOT NULL,
            metadata TEXT NULL,
            ip_address VARCHAR(64) NULL,
            user_agent VARCHAR(255) NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            KEY idx_activity_created (created_at),
            KEY idx_activity_entity (entity_type, entity_id),
            KEY idx_activity_user (user_id)
        )
    """,
}


def ensure_schema(conn) -> bool:
    if app.config.get("SCHEMA_READY"):
        return True
    try:
        with conn.cursor() as cur:
            for name, ddl in SCHEMA_TABLES.items():
                cur.execute(ddl)
        conn.commit()
        app.config["SCHEMA_READY"] = True
        return True
    except pymysql.MySQLError:
        app.logger.exception("Schema setup failed")
        app.config["SCHEMA_READY"] = False
        return False


def db_connect():
    conn = get_db_connection()
    ensure_schema(conn)
    return conn


CSRF_EXEMPT_PREFIXES = (
    "/api/webhooks/",
    "/api/mobile-money/callback/",
    "/api/analytics/track",
)


@app.before_request
def csrf_protect():
    if not CSRF_ENABLED:
        return
    if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return
    if not request.path.startswith("/api/") or request.path.startswith(CSRF_EXEMPT_PREFIXES):
        return
    token = request.headers.get("X-CSRF-Token") or request.headers.get("X-CSRFToken")
    session_token = session.get("_csrf_token", "")
    if not token or not session_token or not hmac.compare_digest(str(token), str(session_token)):
        app.logger.warning("CSRF blocked: %s %s from %s", request.method, request.path, _client_ip())
        return jsonify(ok=False, message="Invalid CSRF token.", status=403), 403


@app.before_request
def api_rate_limit():
    if not request.path.startswith("/api/") or request.method == "OPTIONS":
        return
    if _hit_rate_limit("api"):
        app.logger.warning("General rate limit hit by %s", _client_ip())
        return _rate_limit_exceeded("api")


@app.after_request
def add_security_headers(response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.path.startswith("/api/") and "Cache-Control" not in response.headers:
        response.headers["Cache-Control"] = "no-store"
    return response


@app.errorhandler(Exception)
def handle_exception(exc):
    if isinstance(exc, HTTPException):
        app.logger.warning("HTTP error %s: %s", exc.code, exc)
        return jsonify(
            ok=False,
            error=exc.name,
            message=exc.description or "We couldn't complete your request.",
            status=exc.code,
        ), exc.code
    app.logger.exception("Unhandled error: %s", exc)
    return (
        jsonify(
            ok=False,
            error="Internal Server Error",
            message="Service temporarily unavailable. Please try again later.",
            status=500,
        ),
        500,
    )


@app.route("/uploads/<path:filename>")
def uploaded_file(filename):
    return send_from_directory(app.config.get("UPLOAD_ROOT", UPLOAD_ROOT), filename)


@app.route("/health")
def health():
    return jsonify(ok=True, status="ok", timestamp=_now_utc().isoformat() + "Z")


@app.route("/api/csrf-token")
def csrf_token():
    return jsonify(ok=True, csrfToken=generate_csrf_token())


EMAIL_REGEX = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)


def validate_email_format(email: str) -> bool:
    if not email:
        return False
    if len(email) > 254:
        return False
    if " " in email:
        return False
    if email.count("@") != 1:
        return False
    local_part, domain = email.split("@", 1)
    if not local_part or not domain:
        return False
    if ".." in local_part or ".." in domain:
        return False
    return bool(EMAIL_REGEX.match(email))


def _normalize_email(value) -> str:
    return str(value or "").strip().lower()


def validate_password_strength(password):
    if not password:
        return "Password is required."
    if len(password) < 8:
        return "Password must be at least 8 characters."
    if not re.search(r"[a-z]", password):
        return "Password must contain a lowercase letter."
    if not re.search(r"[A-Z]", password):
        return "Password must contain an uppercase letter."
    if not re.search(r"[0-9]", password):
        return "Password must contain a number."
    if not re.search(r"[^A-Za-z0-9]", password):
        return "Password must contain a special character."
    return None


def normalize_phone_number(phone: str) -> str:
    if not phone:
        return ""
    cleaned = re.sub(r"[\s\-().]", "", phone)
    if cleaned.startswith("+"):
        digits = cleaned[1:]
        prefix = "+"
    else:
        digits = cleaned
        prefix = ""
    if not digits.isdigit():
        return ""
    if len(digits) < 9 or len(digits) > 15:
        return ""
    return f"{prefix}{digits}"


def _hash_token(token: str) -> str:
    return hashlib.sha256(str(token or "").encode("utf-8")).hexdigest()


def verify_password(stored_password, provided_password) -> bool:
    if not stored_password or provided_password is None:
        return False
    try:
        return check_password_hash(stored_password, provided_password)
    except (ValueError, TypeError):
        return False


USER_PUBLIC_FIELDS = (
    "id",
    "email",
    "first_name",
    "last_name",
    "phone",
    "role",
    "email_verified",
    "two_factor_enabled",
    "created_at",
)


def serialize_user(user) -> dict:
    if not user:
        return None
    data = {k: user.get(k) for k in USER_PUBLIC_FIELDS if k in user}
    data["email_verified"] = bool(data.get("email_verified"))
    data["two_factor_enabled"] = bool(data.get("two_factor_enabled"))
    data["name"] = " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p) or None
    return _camel(data)


def _fetch_user(cur, user_id):
    cur.execute("SELECT * FROM users WHERE id=%s LIMIT 1", (user_id,))
    return cur.fetchone()


def current_user():
    if "current_user" in g:
        return g.current_user
    user = None
    user_id = session.get("user_id")
    if user_id:
        conn = db_connect()
        try:
            with conn.cursor() as cur:
                user = _fetch_user(cur, user_id)
        finally:
            conn.close()
        if user and (
            not user.get("is_active")
            or int(user.get("session_version") or 1) != int(session.get("session_version") or 1)
        ):
            user = None
        if not user:
            session.pop("user_id", None)
            session.pop("role", None)
    g.current_user = user
    return user


def login_user(user, remember: bool = True):
    session.pop("pending_2fa_user_id", None)
    session["user_id"] = user["id"]
    session["role"] = user.get("role") or "CUSTOMER"
    session["session_version"] = int(user.get("session_version") or 1)
    session.permanent = bool(remember)
    g.current_user = user


def logout_user():
    for key in ("user_id", "role", "session_version", "pending_2fa_user_id", "wishlist_unlocked"):
        session.pop(key, None)
    g.pop("current_user", None)


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user():
            return jsonify(ok=False, message="Authentication required."), 401
        return view(*args, **kwargs)
    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if not user:
            return jsonify(ok=False, message="Authentication required."), 401
        if user.get("role") not in STAFF_ROLES:
            return jsonify(ok=False, message="Admin access required."), 403
        return view(*args, **kwargs)
    return wrapped


def staff_admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if not user:
            return jsonify(ok=False, message="Authentication required."), 401
        if user.get("role") != "ADMIN":
            return jsonify(ok=False, message="Only administrators can manage staff."), 403
        return view(*args, **kwargs)
    return wrapped


def describe_activity(action: str, entity_type: str, entity_name: str = None) -> str:
    entity = f'"{entity_name}"' if entity_name else str(entity_type or "").lower()
    lowered = str(entity_type or "").lower()
    templates = {
        "CREATE": f"Created {entity}",
        "UPDATE": f"Updated {entity}",
        "DELETE": f"Deleted {entity}",
        "LOGIN": "Logged in",
        "LOGOUT": "Logged out",
        "VIEW": f"Viewed {entity}",
        "EXPORT": f"Exported {lowered} data",
        "BULK_UPDATE": f"Bulk updated {lowered}s",
        "STATUS_CHANGE": f"Changed status of {entity}",
        "REFUND": f"Processed refund for {entity}",
    }
    return templates.get(action, f"{action} {entity}")


def log_activity(user_id, action: str, entity_type: str, entity_id=None, description: str = "", metadata=None):
    try:
        ip = _client_ip()
        user_agent = (request.headers.get("User-Agent") or "")[:255]
    except RuntimeError:
        ip = None
        user_agent = None
    try:
        conn = db_connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO activity_logs
                    (user_id, action, entity_type, entity_id, description, metadata, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        action,
                        entity_type,
                        str(entity_id) if entity_id is not None else None,
                        (description or describe_activity(action, entity_type))[:500],
                        json.dumps(metadata, default=str) if metadata else None,
                        ip,
                        user_agent,
                    ),
                )
            conn.commit()
        finally:
            conn.close()
    except Exception:
        app.logger.exception("Failed to log activity %s %s", action, entity_type)


def _staff_id():
    user = current_user()
    return user.get("id") if user else None


class CheckoutError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def generate_order_number(now_ms: int = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"ORD-{now_ms}-{''.join(secrets.choice(string.digits) for _ in range(9))}"


def _base36(value: int) -> str:
    chars = string.digits + string.ascii_uppercase
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(chars[rem])
    return "".join(reversed(out))


def generate_ticket_number() -> str:
    return f"TKT-{_base36(int(time.time() * 1000))}-{_random_code(4, string.ascii_uppercase + string.digits)}"


def generate_return_number() -> str:
    return f"RET-{_base36(int(time.time() * 1000))}-{_random_code(4, string.ascii_uppercase + string.digits)}"


def generate_gift_card_code() -> str:
    return "GC-" + "-".join(_random_code(4) for _ in range(4))


def generate_referral_code(user_id) -> str:
    digest = hashlib.sha256(f"{user_id}{time.time()}".encode("utf-8")).hexdigest()
    return f"REF{digest[:8].upper()}"


def record_order_event(cur, order_id, status: str, note: str = None):
    cur.execute(
        "INSERT INTO order_events (order_id, status, note) VALUES (%s, %s, %s)",
        (order_id, status, note),
    )


# Loyalty

def loyalty_tier(lifetime_points) -> str:
    points = _to_int(lifetime_points)
    for name, threshold in LOYALTY_TIERS:
        if points >= threshold:
            return name
    return "BRONZE"


def loyalty_next_tier(lifetime_points):
    points = _to_int(lifetime_points)
    for name, threshold in reversed(LOYALTY_TIERS):
        if threshold > points:
            return {"name": name, "pointsNeeded": threshold - points}
    return None


def points_for_amount(amount) -> int:
    return int(_to_float(amount) * LOYALTY_POINTS_PER_UNIT)


def get_or_create_loyalty_account(cur, user_id):
    cur.execute("SELECT * FROM loyalty_accounts WHERE user_id=%s LIMIT 1", (user_id,))
    account = cur.fetchone()
    if account:
        return account
    cur.execute(
        "INSERT INTO loyalty_accounts (user_id, points, lifetime_points, tier) VALUES (%s, %s, %s, 'BRONZE')",
        (user_id, LOYALTY_SIGNUP_BONUS, LOYALTY_SIGNUP_BONUS),
    )
    account_id = cur.lastrowid
    cur.execute(
        """
        INSERT INTO loyalty_transactions (account_id, type, points, description)
        VALUES (%s, 'SIGNUP_BONUS', %s, 'Welcome bonus for joining!')
        """,
        (account_id, LOYALTY_SIGNUP_BONUS),
    )
    return {
        "id": account_id,
        "user_id": user_id,
        "points": LOYALTY_SIGNUP_BONUS,
        "lifetime_points": LOYALTY_SIGNUP_BONUS,
        "tier": "BRONZE",
    }


def award_purchase_points(cur, user_id, order_total, order_id) -> int:
    if not user_id:
        return 0
    account = get_or_create_loyalty_account(cur, user_id)
    earned = points_for_amount(order_total)
    if earned <= 0:
        return 0
    lifetime = _to_int(account.get("lifetime_points")) + earned
    cur.execute(
        """
        UPDATE loyalty_accounts
        SET points = points + %s, lifetime_points = %s, tier = %s
        WHERE id = %s
        """,
        (earned, lifetime, loyalty_tier(lifetime), account["id"]),
    )
    cur.execute(
        """
        INSERT INTO loyalty_transactions (account_id, type, points, description, order_id)
        VALUES (%s, 'PURCHASE_EARN', %s, 'Earned from order', %s)
        """,
        (account["id"], earned, order_id),
    )
    return earned


# Coupons

def compute_coupon_discount(coupon, subtotal, now: datetime = None):
    """Return (discount, error_message) for a coupon row against a subtotal."""
    if not coupon:
        return 0.0, "Invalid coupon code"
    now = now or _now_utc()
    subtotal = _to_float(subtotal)
    if not coupon.get("is_active"):
        return 0.0, "This coupon is no longer active"
    if coupon.get("valid_from") and coupon["valid_from"] > now:
        return 0.0, "This coupon is not yet valid"
    if coupon.get("valid_until") and coupon["valid_until"] < now:
        return 0.0, "This coupon has expired"
    limit = coupon.get("usage_limit")
    if limit is not None and _to_int(coupon.get("usage_count")) >= _to_int(limit):
        return 0.0, "This coupon has reached its usage limit"
    min_order = coupon.get("min_order_amount")
    if min_order is not None and subtotal < _to_float(min_order):
        return 0.0, f"Minimum order amount is {_to_float(min_order):,.0f}"

    value = _to_float(coupon.get("value"))
    if str(coupon.get("type") or "").upper() == "PERCENTAGE":
        discount = subtotal * value / 100
        max_discount = coupon.get("max_discount")
        if max_discount is not None and discount > _to_float(max_discount):
            discount = _to_float(max_discount)
    else:
        discount = value
    discount = min(discount, subtotal)
    return round(max(discount, 0.0), 2), None


def find_coupon(cur, code: str):
    cur.execute("SELECT * FROM coupons WHERE code=%s LIMIT 1", (str(code or "").strip().upper(),))
    return cur.fetchone()


def create_coupon(cur, prefix: str, coupon_type: str, value, days: int, description: str,
                  usage_limit: int = 1, min_order_amount=None) -> str:
    now = _now_utc()
    for _ in range(8):
        code = f"{prefix}-{_random_code(6, string.ascii_uppercase + string.digits)}"
        try:
            cur.execute(
                """
                INSERT INTO coupons
                (code, description, type, value, min_order_amount, usage_limit, valid_from, valid_until, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 1)
                """,
                (code, description, coupon_type, value, min_order_amount, usage_limit, now, now + timedelta(days=days)),
            )
            return code
        except pymysql.err.IntegrityError:
            continue
    raise RuntimeError(f"Could not allocate a unique {prefix} coupon code")


# Referrals

def get_or_create_referral_code(cur, user_id):
    cur.execute("SELECT * FROM referral_codes WHERE user_id=%s LIMIT 1", (user_id,))
    row = cur.fetchone()
    if row:
        return row
    for _ in range(8):
        code = generate_referral_code(user_id)
        try:
            cur.execute("INSERT INTO referral_codes (user_id, code) VALUES (%s, %s)", (user_id, code))
            return {"id": cur.lastrowid, "user_id": user_id, "code": code, "total_referrals": 0, "total_earnings": 0}
        except pymysql.err.IntegrityError:
            continue
    raise RuntimeError("Could not allocate a unique referral code")


def apply_referral_code(cur, user_id, raw_code):
    """Link user_id to the owner of raw_code. Returns (result, error, status)."""
    code = str(raw_code or "").strip().upper()
    if not code:
        return None, "Referral code required", 400
    cur.execute("SELECT id FROM referrals WHERE referee_id=%s LIMIT 1", (user_id,))
    if cur.fetchone():
        return None, "You have already used a referral code", 400
    cur.execute("SELECT * FROM referral_codes WHERE code=%s LIMIT 1", (code,))
    referral_code = cur.fetchone()
    if not referral_code:
        return None, "Invalid referral code", 404
    if int(referral_code["user_id"]) == int(user_id):
        return None, "You cannot refer yourself", 400

    coupon_code = create_coupon(
        cur,
        "WELCOME",
        "PERCENTAGE",
        REFEREE_DISCOUNT_PCT,
        30,
        "Referral welcome discount",
    )
    cur.execute(
        """
        INSERT INTO referrals (referrer_id, referee_id, code, status, referee_coupon)
        VALUES (%s, %s, %s, 'PENDING', %s)
        """,
        (referral_code["user_id"], user_id, code, coupon_code),
    )
    cur.execute(
        "UPDATE referral_codes SET total_referrals = total_referrals + 1 WHERE id=%s",
        (referral_code["id"],),
    )
    return {"couponCode": coupon_code, "discount": REFEREE_DISCOUNT_PCT}, None, 200


def process_referral_reward(cur, user_id):
    """Reward the referrer once the referred user has paid for their first order."""
    if not user_id:
        return None
    cur.execute(
        "SELECT * FROM referrals WHERE referee_id=%s AND status='PENDING' LIMIT 1",
        (user_id,),
    )
    referral = cur.fetchone()
    if not referral:
        return None
    paid_orders = _scalar(
        cur,
        "SELECT COUNT(*) AS c FROM orders WHERE user_id=%s AND payment_status='SUCCESSFUL'",
        (user_id,),
    )
    if _to_int(paid_orders) > 1:
        return None
    coupon_code = create_coupon(
        cur,
        "THANKS",
        "FIXED",
        REFERRER_REWARD,
        90,
        "Referral reward - thank you!",
    )
    cur.execute(
        """
        UPDATE referrals SET status='QUALIFIED', referrer_coupon=%s, qualified_at=%s
        WHERE id=%s
        """,
        (coupon_code, _now_utc(), referral["id"]),
    )
    cur.execute(
        "UPDATE referral_codes SET total_earnings = total_earnings + %s WHERE user_id=%s",
        (REFERRER_REWARD, referral["referrer_id"]),
    )
    app.logger.info("Referral %s qualified; referrer %s rewarded", referral["id"], referral["referrer_id"])
    return coupon_code


# Stock reservations

def reserve_stock(cur, order_id, lines):
    """Reserve stock for order lines, raising CheckoutError on a shortfall."""
    expires_at = _now_utc() + RESERVATION_TTL
    for line in lines:
        cur.execute(
            """
            SELECT id, name, stock, reserved_stock, track_inventory, allow_backorder
            FROM products WHERE id=%s FOR UPDATE
            """,
            (line["product_id"],),
        )
        product = cur.fetchone()
        if not product:
            raise CheckoutError("Product not found")
        if not product.get("track_inventory") or product.get("allow_backorder"):
            continue
        available = _to_int(product.get("stock")) - _to_int(product.get("reserved_stock"))
        if available < line["quantity"]:
            raise CheckoutError(
                f'Insufficient stock for "{product["name"]}". '
                f"Available: {max(available, 0)}, requested: {line['quantity']}"
            )
        cur.execute(
            "INSERT INTO stock_reservations (order_id, product_id, quantity, expires_at) VALUES (%s, %s, %s, %s)",
            (order_id, line["product_id"], line["quantity"], expires_at),
        )
        cur.execute(
            "UPDATE products SET reserved_stock = reserved_stock + %s WHERE id=%s",
            (line["quantity"], line["product_id"]),
        )


def release_order_reservations(cur, order_id, consume: bool = False) -> int:
    cur.execute(
        "SELECT id, product_id, quantity FROM stock_reservations WHERE order_id=%s AND released=0",
        (order_id,),
    )
    reservations = cur.fetchall() or []
    now = _now_utc()
    for res in reservations:
        if consume:
            cur.execute(
                """
                UPDATE products
                SET stock = GREATEST(stock - %s, 0),
                    reserved_stock = GREATEST(reserved_stock - %s, 0),
                    sales_count = sales_count + %s
                WHERE id=%s
                """,
                (res["quantity"], res["quantity"], res["quantity"], res["product_id"]),
            )
        else:
            cur.execute(
                "UPDATE products SET reserved_stock = GREATEST(reserved_stock - %s, 0) WHERE id=%s",
                (res["quantity"], res["product_id"]),
            )
        cur.execute(
            "UPDATE stock_reservations SET released=1, released_at=%s WHERE id=%s",
            (now, res["id"]),
        )
    return len(reservations)


def deduct_order_stock(cur, order_id) -> int:
    cur.execute("SELECT product_id, quantity FROM order_items WHERE order_id=%s", (order_id,))
    deducted = 0
    for item in cur.fetchall() or []:
        if not item.get("product_id"):
            continue
        cur.execute(
            """
            UPDATE products
            SET stock = GREATEST(stock - %s, 0),
                sales_count = sales_count + %s
            WHERE id=%s AND track_inventory=1
            """,
            (item["quantity"], item["quantity"], item["product_id"]),
        )
        deducted += 1
    return deducted


def release_expired_reservations(conn) -> int:
    now = _now_utc()
    released = 0
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, order_id, product_id, quantity
            FROM stock_reservations
            WHERE released=0 AND expires_at < %s
            LIMIT 500
            """,
            (now,),
        )
        expired = cur.fetchall() or []
        order_ids = set()
        for res in expired:
            cur.execute(
                "UPDATE products SET reserved_stock = GREATEST(reserved_stock - %s, 0) WHERE id=%s",
                (res["quantity"], res["product_id"]),
            )
            cur.execute(
                "UPDATE stock_reservations SET released=1, released_at=%s WHERE id=%s",
                (now, res["id"]),
            )
            order_ids.add(res["order_id"])
            released += 1
        for order_id in order_ids:
            cur.execute(
                "UPDATE orders SET status='CANCELLED' WHERE id=%s AND status='PENDING'",
                (order_id,),
            )
            if cur.rowcount:
                record_order_event(cur, order_id, "CANCELLED", "Stock reservation expired before payment")
    conn.commit()
    return released


# Abandoned carts

def track_abandoned_cart(cur, cart_id, user_id, email, items, cart_value, currency):
    if not email:
        return
    cur.execute(
        """
        INSERT INTO abandoned_carts (cart_id, user_id, email, cart_data, cart_value, currency)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON DUPLICATE KEY UPDATE
            cart_data = VALUES(cart_data),
            cart_value = VALUES(cart_value),
            currency = VALUES(currency)
        """,
        (cart_id, user_id, email, json.dumps(items, default=str), cart_value, currency),
    )


def mark_cart_recovered(cur, user_id=None, cart_id=None) -> int:
    now = _now_utc()
    if user_id:
        cur.execute(
            "UPDATE abandoned_carts SET recovered_at=%s WHERE user_id=%s AND recovered_at IS NULL",
            (now, user_id),
        )
    elif cart_id:
        cur.execute(
            "UPDATE abandoned_carts SET recovered_at=%s WHERE cart_id=%s AND recovered_at IS NULL",
            (now, cart_id),
        )
    else:
        return 0
    return cur.rowcount


ABANDONED_CART_REMINDERS = (
    (
        1,
        timedelta(hours=1),
        """
        SELECT * FROM abandoned_carts
        WHERE created_at <= %s AND recovered_at IS NULL AND email1_sent_at IS NULL
        ORDER BY created_at ASC
        LIMIT 50
        """,
        "email1_sent_at",
    ),
    (
        2,
        timedelta(hours=24),
        """
        SELECT * FROM abandoned_carts
        WHERE created_at <= %s AND recovered_at IS NULL
          AND email1_sent_at IS NOT NULL AND email2_sent_at IS NULL
        ORDER BY created_at ASC
        LIMIT 50
        """,
        "email2_sent_at",
    ),
)


def process_abandoned_cart_emails(conn, now: datetime = None) -> dict:
    now = now or _now_utc()
    sent = {1: 0, 2: 0}
    for reminder, age, query, flag_column in ABANDONED_CART_REMINDERS:
        with conn.cursor() as cur:
            cur.execute(query, (now - age,))
            carts = cur.fetchall() or []
        for cart in carts:
            if not cart.get("email"):
                continue
            try:
                subject, text_body, html_body = mailer.build_abandoned_cart_email(
                    _json_field(cart.get("cart_data"), []),
                    cart.get("cart_value"),
                    cart.get("currency"),
                    reminder,
                )
                if not mailer.send_email(cart["email"], subject, text_body, html_body):
                    app.logger.warning("Reminder %s not delivered to %s", reminder, cart["email"])
                    continue
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE abandoned_carts SET {flag_column}=%s WHERE id=%s AND {flag_column} IS NULL",
                        (_now_utc(), cart["id"]),
                    )
                conn.commit()
                sent[reminder] += 1
                app.logger.info("Sent abandoned cart reminder %s to %s", reminder, cart["email"])
            except Exception:
                conn.rollback()
                app.logger.exception("Failed to send reminder %s for cart %s", reminder, cart.get("cart_id"))
    return {"reminder1": sent[1], "reminder2": sent[2]}


# Payment outcomes

def confirm_order_payment(cur, order, note: str):
    """Mark an order paid, consume its reservations and hand out rewards."""
    cur.execute(
        "UPDATE orders SET status='CONFIRMED', payment_status='SUCCESSFUL' WHERE id=%s",
        (order["id"],),
    )
    record_order_event(cur, order["id"], "Payment Received", note)
    consumed = release_order_reservations(cur, order["id"], consume=True)
    if not consumed and order.get("status") == "CANCELLED":
        # Cancellation already handed the reservations back.
        deducted = deduct_order_stock(cur, order["id"])
        app.logger.warning(
            "Order %s was paid after cancellation, deducted stock for %s item(s)",
            order.get("order_number") or order["id"],
            deducted,
        )
    if order.get("user_id"):
        award_purchase_points(cur, order["user_id"], order.get("total"), order["id"])
        process_referral_reward(cur, order["user_id"])
        mark_cart_recovered(cur, user_id=order["user_id"])
    if order.get("coupon_code"):
        cur.execute(
            "UPDATE coupons SET usage_count = usage_count + 1 WHERE code=%s",
            (order["coupon_code"],),
        )


def fail_order_payment(cur, order, note: str):
    cur.execute(
        "UPDATE orders SET status='CANCELLED', payment_status='FAILED' WHERE id=%s",
        (order["id"],),
    )
    record_order_event(cur, order["id"], "Payment Failed", note)
    release_order_reservations(cur, order["id"], consume=False)


def send_order_confirmation(order_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM orders WHERE id=%s", (order_id,))
            order = cur.fetchone()
            cur.execute("SELECT * FROM order_items WHERE order_id=%s", (order_id,))
            items = cur.fetchall() or []
    finally:
        conn.close()
    if not order:
        return False
    subject, text_body, html_body = mailer.build_order_confirmation_email(order, items)
    return mailer.send_email(order.get("email"), subject, text_body, html_body)


# Mobile money

def _apply_mobile_money_result(conn, txn, parsed) -> bool:
    """Write a provider result onto a transaction. Returns True when the order was confirmed."""
    update = mobile_money.transaction_update(parsed, _now_utc())
    confirmed = False
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE mobile_money_transactions
                SET status=%s, status_message=%s, transaction_id=%s, completed_at=%s
                WHERE id=%s
                """,
                (
                    update["status"],
                    update["status_message"],
                    update["transaction_id"],
                    update["completed_at"],
                    txn["id"],
                ),
            )
            if update["status"] == mobile_money.STATUS_SUCCESSFUL and txn.get("order_id"):
                cur.execute("SELECT * FROM orders WHERE id=%s FOR UPDATE", (txn["order_id"],))
                order = cur.fetchone()
                if order and order.get("payment_status") != "SUCCESSFUL":
                    confirm_order_payment(cur, order, mobile_money.completion_note(txn["provider"]))
                    confirmed = True
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return confirmed


@app.route("/api/mobile-money/providers")
def mobile_money_providers():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, code, currencies, fee_type, fee_value
                FROM payment_providers
                WHERE type='MOBILE_MONEY' AND is_active=1
                ORDER BY name ASC
                """
            )
            providers = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, providers=_camel_rows(providers))


@app.route("/api/mobile-money/initiate", methods=["POST"])
@rate_limit("checkout")
def mobile_money_initiate():
    data = _payload()
    order_id = data.get("orderId")
    provider_code = str(data.get("provider") or "").strip()
    phone = str(data.get("phoneNumber") or "")
    amount = _to_float(data.get("amount"))
    currency = str(data.get("currency") or "UGX").upper()

    if not order_id or not provider_code or not phone.strip() or not data.get("amount"):
        return _bad_request("Missing required fields")
    if amount <= 0:
        return _bad_request("Invalid amount")
    if not mobile_money.is_valid_phone(phone):
        return _bad_request("Invalid Uganda phone number")
    phone = mobile_money.normalize_phone(phone)

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM payment_providers WHERE code=%s AND type='MOBILE_MONEY' LIMIT 1",
                (provider_code,),
            )
            provider = cur.fetchone()
            if not provider:
                return _bad_request("Invalid mobile money provider")
            cur.execute("SELECT id, order_number FROM orders WHERE id=%s LIMIT 1", (order_id,))
            order = cur.fetchone()
            if not order:
                return _bad_request("Order not found", 404)

            fee = mobile_money.calculate_fee(
                amount,
                provider.get("fee_type"),
                provider.get("fee_value"),
                provider.get("min_fee"),
                provider.get("max_fee"),
            )
            external_ref = mobile_money.generate_external_ref()
            cur.execute(
                """
                INSERT INTO mobile_money_transactions
                (order_id, provider, phone_number, amount, fee, currency, external_ref, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (order["id"], provider["code"], phone, amount, fee, currency, external_ref, mobile_money.STATUS_PENDING),
            )
            transaction_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()

    app.logger.info("Mobile money payment %s initiated for order %s via %s", external_ref, order_id, provider_code)
    return jsonify(
        ok=True,
        transactionId=transaction_id,
        externalRef=external_ref,
        provider=provider["name"],
        phoneNumber=phone,
        amount=_money(amount + fee),
        fee=fee,
        currency=currency,
        status=mobile_money.STATUS_PENDING,
        message=mobile_money.payment_prompt(phone),
        expiresIn=mobile_money.PAYMENT_EXPIRES_SECONDS,
    )


@app.route("/api/mobile-money/status/<int:transaction_id>")
def mobile_money_status(transaction_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT t.*, o.order_number, o.status AS order_status, o.payment_status
                FROM mobile_money_transactions t
                LEFT JOIN orders o ON o.id = t.order_id
                WHERE t.id=%s
                LIMIT 1
                """,
                (transaction_id,),
            )
            txn = cur.fetchone()
    finally:
        conn.close()
    if not txn:
        return _bad_request("Transaction not found", 404)
    data = _camel(txn, drop=("order_number", "order_status", "payment_status"))
    data["order"] = {
        "orderNumber": txn.get("order_number"),
        "status": txn.get("order_status"),
        "paymentStatus": txn.get("payment_status"),
    }
    return jsonify(ok=True, transaction=data)


@app.route("/api/mobile-money/callback/<provider>", methods=["POST"])
def mobile_money_callback(provider):
    payload = request.get_json(silent=True) or {}
    try:
        parsed = mobile_money.parse_callback(provider, payload)
    except mobile_money.CallbackError as exc:
        app.logger.warning("Rejected %s callback: %s", provider, exc.message)
        return _bad_request(exc.message, exc.status)

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM mobile_money_transactions WHERE external_ref=%s LIMIT 1",
                (parsed["ref"],),
            )
            txn = cur.fetchone()
        if not txn:
            return _bad_request("Transaction not found", 404)
        if txn.get("status") == mobile_money.STATUS_SUCCESSFUL:
            return jsonify(ok=True, duplicate=True)
        confirmed = _apply_mobile_money_result(conn, txn, parsed)
    finally:
        conn.close()

    app.logger.info("Mobile money callback %s for %s: %s", provider, parsed["ref"], parsed["status"])
    if confirmed:
        try:
            send_order_confirmation(txn["order_id"])
        except Exception:
            app.logger.exception("Order confirmation email failed for order %s", txn["order_id"])
    return jsonify(ok=True)


@app.route("/api/mobile-money/simulate-complete/<int:transaction_id>", methods=["POST"])
def mobile_money_simulate_complete(transaction_id):
    if not MOBILE_MONEY_SIMULATION:
        return _bad_request("Not found", 404)
    data = _payload()
    success = data.get("success", True) is not False
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM mobile_money_transactions WHERE id=%s LIMIT 1", (transaction_id,))
            txn = cur.fetchone()
        if not txn:
            return _bad_request("Transaction not found", 404)
        if txn.get("status") == mobile_money.STATUS_SUCCESSFUL:
            return jsonify(ok=True, status=txn["status"], duplicate=True)
        parsed = {
            "ref": txn["external_ref"],
            "status": mobile_money.STATUS_SUCCESSFUL if success else mobile_money.STATUS_FAILED,
            "transaction_id": f"SIM-{int(time.time() * 1000)}",
            "message": "Simulated payment completed" if success else "Simulated payment failed",
        }
        _apply_mobile_money_result(conn, txn, parsed)
    finally:
        conn.close()
    return jsonify(ok=True, status=parsed["status"], message=parsed["message"])


# Scheduled tasks

@app.route("/tasks/abandoned-carts", methods=["GET", "POST"])
def task_abandoned_carts():
    if not _cron_authorized():
        return "Unauthorized", 401
    conn = db_connect()
    try:
        result = process_abandoned_cart_emails(conn)
    finally:
        conn.close()
    app.logger.info(
        "Abandoned cart run: %s first reminders, %s second reminders",
        result["reminder1"],
        result["reminder2"],
    )
    return jsonify(ok=True, **result)


@app.route("/tasks/stock-reservations", methods=["GET", "POST"])
def task_stock_reservations():
    if not _cron_authorized():
        return "Unauthorized", 401
    conn = db_connect()
    try:
        released = release_expired_reservations(conn)
    finally:
        conn.close()
    if released:
        app.logger.info("Released %s expired stock reservations", released)
    return jsonify(ok=True, released=released)


def fetch_exchange_rates(url: str = None) -> dict:
    req = urllib.request.Request(url or EXCHANGE_RATE_API, headers={"Accept": "application/json"})
    with urllib.request.urlopen(req, timeout=10) as resp:
        data = json.loads(resp.read().decode("utf-8") or "{}")
    if data.get("result") != "success" or not isinstance(data.get("rates"), dict):
        raise ValueError("Exchange rate API returned an unexpected payload")
    return data["rates"]


def rates_relative_to_base(usd_rates: dict, base: str = "UGX") -> dict:
    """Convert USD-based rates into 'units per 1 base currency'."""
    base_rate = _to_float(usd_rates.get(base))
    if base_rate <= 0:
        raise ValueError(f"No rate for base currency {base}")
    out = {}
    for cur_def in RATE_CURRENCIES:
        code = cur_def["code"]
        if code == base:
            out[code] = 1.0
            continue
        rate = _to_float(usd_rates.get(code))
        if rate > 0:
            out[code] = rate / base_rate
    return out


@app.route("/tasks/exchange-rates", methods=["GET", "POST"])
def task_exchange_rates():
    if not _cron_authorized():
        return "Unauthorized", 401
    try:
        rates = rates_relative_to_base(fetch_exchange_rates())
    except (urllib.error.URLError, ValueError, OSError) as exc:
        app.logger.warning("Exchange rate refresh failed: %s", exc)
        return jsonify(ok=False, message="Exchange rate refresh failed"), 502
    definitions = {c["code"]: c for c in RATE_CURRENCIES}
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            for code, rate in rates.items():
                info = definitions[code]
                cur.execute(
                    """
                    INSERT INTO currencies (code, name, symbol, exchange_rate, decimal_places, is_base, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, 1)
                    ON DUPLICATE KEY UPDATE exchange_rate = VALUES(exchange_rate)
                    """,
                    (code, info["name"], info["symbol"], rate, info["decimal_places"], 1 if info["is_base"] else 0),
                )
        conn.commit()
    finally:
        conn.close()
    app.logger.info("Updated %s exchange rates", len(rates))
    return jsonify(ok=True, updated=len(rates))


# Cart

def _load_cart_items(cur, cart_id):
    cur.execute(
        """
        SELECT ci.id, ci.product_id, ci.quantity,
               p.name, p.slug, p.price, p.stock, p.reserved_stock, p.status,
               p.track_inventory, p.allow_backorder,
               (SELECT url FROM product_images pi WHERE pi.product_id = p.id
                ORDER BY pi.sort_order ASC, pi.id ASC LIMIT 1) AS image
        FROM cart_items ci
        JOIN products p ON p.id = ci.product_id
        WHERE ci.cart_id=%s
        ORDER BY ci.id ASC
        """,
        (cart_id,),
    )
    return cur.fetchall() or []


def _cart_payload(cart_id, items) -> dict:
    lines = []
    subtotal = 0.0
    count = 0
    for item in items:
        price = _to_float(item.get("price"))
        qty = _to_int(item.get("quantity"))
        subtotal += price * qty
        count += qty
        lines.append(
            {
                "id": item["id"],
                "productId": item["product_id"],
                "quantity": qty,
                "product": {
                    "id": item["product_id"],
                    "name": item.get("name"),
                    "slug": item.get("slug"),
                    "price": price,
                    "stock": _to_int(item.get("stock")),
                    "image": item.get("image"),
                },
            }
        )
    subtotal = _money(subtotal)
    return {"id": cart_id, "items": lines, "subtotal": subtotal, "total": subtotal, "itemCount": count}


def _refresh_abandoned_cart(cur, cart_id):
    cur.execute(
        """
        SELECT c.user_id, u.email
        FROM carts c
        LEFT JOIN users u ON u.id = c.user_id
        WHERE c.id=%s
        LIMIT 1
        """,
        (cart_id,),
    )
    owner = cur.fetchone()
    if not owner or not owner.get("email"):
        return
    items = _load_cart_items(cur, cart_id)
    if not items:
        return
    summary = _cart_payload(cart_id, items)
    snapshot = [
        {"productName": line["product"]["name"], "quantity": line["quantity"], "price": line["product"]["price"]}
        for line in summary["items"]
    ]
    track_abandoned_cart(cur, cart_id, owner.get("user_id"), owner["email"], snapshot, summary["total"], DEFAULT_CURRENCY)


def _cart_exists(cur, cart_id) -> bool:
    cur.execute("SELECT id FROM carts WHERE id=%s LIMIT 1", (cart_id,))
    return bool(cur.fetchone())


def _create_cart(cur, user_id=None) -> str:
    cart_id = str(uuid.uuid4())
    cur.execute("INSERT INTO carts (id, user_id) VALUES (%s, %s)", (cart_id, user_id))
    return cart_id


@app.route("/api/cart/create", methods=["POST"])
def cart_create():
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cart_id = _create_cart(cur, user["id"] if user else None)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, cart=_cart_payload(cart_id, [])), 201


@app.route("/api/cart/<cart_id>")
def cart_get(cart_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            if not _cart_exists(cur, cart_id):
                return _bad_request("Cart not found", 404)
            items = _load_cart_items(cur, cart_id)
    finally:
        conn.close()
    return jsonify(ok=True, cart=_cart_payload(cart_id, items))


@app.route("/api/cart/<cart_id>/items", methods=["POST"])
def cart_add_item(cart_id):
    data = _payload()
    product_id = _to_int(data.get("productId"))
    quantity = _to_int(data.get("quantity"), 1)
    if not product_id or quantity < 1:
        return _bad_request("A product and a positive quantity are required")

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            if not _cart_exists(cur, cart_id):
                return _bad_request("Cart not found", 404)
            cur.execute("SELECT id, name, stock, status FROM products WHERE id=%s LIMIT 1", (product_id,))
            product = cur.fetchone()
            if not product or product.get("status") != "ACTIVE":
                return _bad_request("Product not available", 404)
            cur.execute(
                "SELECT id, quantity FROM cart_items WHERE cart_id=%s AND product_id=%s LIMIT 1",
                (cart_id, product_id),
            )
            existing = cur.fetchone()
            new_qty = quantity + (_to_int(existing.get("quantity")) if existing else 0)
            if new_qty > _to_int(product.get("stock")):
                return _bad_request(f"Only {_to_int(product.get('stock'))} in stock")
            if existing:
                cur.execute("UPDATE cart_items SET quantity=%s WHERE id=%s", (new_qty, existing["id"]))
            else:
                cur.execute(
                    "INSERT INTO cart_items (cart_id, product_id, quantity) VALUES (%s, %s, %s)",
                    (cart_id, product_id, new_qty),
                )
            _refresh_abandoned_cart(cur, cart_id)
            items = _load_cart_items(cur, cart_id)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, cart=_cart_payload(cart_id, items))


@app.route("/api/cart/<cart_id>/items/<int:item_id>", methods=["PUT"])
def cart_update_item(cart_id, item_id):
    quantity = _to_int(_payload().get("quantity"), -1)
    if quantity < 0:
        return _bad_request("Quantity must be zero or more")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT ci.id, p.stock
                FROM cart_items ci JOIN products p ON p.id = ci.product_id
                WHERE ci.id=%s AND ci.cart_id=%s
                LIMIT 1
                """,
                (item_id, cart_id),
            )
            item = cur.fetchone()
            if not item:
                return _bad_request("Cart item not found", 404)
            if quantity == 0:
                cur.execute("DELETE FROM cart_items WHERE id=%s", (item_id,))
            else:
                if quantity > _to_int(item.get("stock")):
                    return _bad_request(f"Only {_to_int(item.get('stock'))} in stock")
                cur.execute("UPDATE cart_items SET quantity=%s WHERE id=%s", (quantity, item_id))
            _refresh_abandoned_cart(cur, cart_id)
            items = _load_cart_items(cur, cart_id)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, cart=_cart_payload(cart_id, items))


@app.route("/api/cart/<cart_id>/items/<int:item_id>", methods=["DELETE"])
def cart_remove_item(cart_id, item_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM cart_items WHERE id=%s AND cart_id=%s", (item_id, cart_id))
            if not cur.rowcount:
                return _bad_request("Cart item not found", 404)
            items = _load_cart_items(cur, cart_id)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, cart=_cart_payload(cart_id, items))


@app.route("/api/cart/sync", methods=["POST"])
def cart_sync():
    data = _payload()
    cart_id = str(data.get("cartId") or "").strip()
    incoming = data.get("items") if isinstance(data.get("items"), list) else []
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            if not cart_id or not _cart_exists(cur, cart_id):
                cart_id = _create_cart(cur, user["id"] if user else None)
            elif user:
                cur.execute("UPDATE carts SET user_id=%s WHERE id=%s AND user_id IS NULL", (user["id"], cart_id))
            cur.execute("DELETE FROM cart_items WHERE cart_id=%s", (cart_id,))
            merged = {}
            for entry in incoming:
                if not isinstance(entry, dict):
                    continue
                pid = _to_int(entry.get("productId"))
                qty = _to_int(entry.get("quantity"))
                if pid and qty > 0:
                    merged[pid] = merged.get(pid, 0) + qty
            for pid, qty in merged.items():
                cur.execute("SELECT id, stock, status FROM products WHERE id=%s LIMIT 1", (pid,))
                product = cur.fetchone()
                if not product or product.get("status") != "ACTIVE" or _to_int(product.get("stock")) <= 0:
                    continue
                cur.execute(
                    "INSERT INTO cart_items (cart_id, product_id, quantity) VALUES (%s, %s, %s)",
                    (cart_id, pid, min(qty, _to_int(product.get("stock")))),
                )
            _refresh_abandoned_cart(cur, cart_id)
            items = _load_cart_items(cur, cart_id)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, cart=_cart_payload(cart_id, items))


# Checkout

@app.route("/api/checkout/create", methods=["POST"])
@rate_limit("checkout")
def checkout_create():
    data = _payload()
    cart_id = str(data.get("cartId") or "").strip()
    currency = str(data.get("currency") or "KES").upper()
    amount = _to_float(data.get("amount"))
    payment_method = data.get("paymentMethod")
    momo = data.get("mobileMoney") if isinstance(data.get("mobileMoney"), dict) else None
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    customer_email = _normalize_email(customer.get("email"))
    customer_name = str(customer.get("name") or "").strip()
    discreet = data.get("discreet", True) is not False
    shipping_address = data.get("shippingAddress") or ""
    coupon_code = str(data.get("couponCode") or "").strip().upper()

    if not cart_id:
        return _bad_request("Validation failed", details={"cartId": "required"})
    if amount <= 0:
        return _bad_request("Validation failed", details={"amount": "must be positive"})
    if payment_method not in ("card", "mobile_money"):
        return _bad_request("Validation failed", details={"paymentMethod": "card or mobile_money"})
    if not customer_name or not validate_email_format(customer_email):
        return _bad_request("Validation failed", details={"customer": "name and a valid email are required"})
    if payment_method == "mobile_money":
        if not momo or str(momo.get("network") or "").upper() not in flutterwave.MOBILE_MONEY_CHARGE_TYPES or not momo.get("phone"):
            return _bad_request("Validation failed", details={"mobileMoney": "network and phone are required"})
    if isinstance(shipping_address, dict):
        shipping_address = json.dumps(shipping_address)

    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            items = _load_cart_items(cur, cart_id)
            if not items:
                return _bad_request("Cart is empty or not found")
            subtotal = _money(sum(_to_float(i["price"]) * _to_int(i["quantity"]) for i in items))
            discount = 0.0
            if coupon_code:
                discount, coupon_error = compute_coupon_discount(find_coupon(cur, coupon_code), subtotal)
                if coupon_error:
                    return _bad_request(coupon_error)
            total = _money(subtotal - discount)
            if abs(total - amount) > 0.01:
                return _bad_request("Amount mismatch")

            order_number = generate_order_number()
            try:
                cur.execute(
                    """
                    INSERT INTO orders
                    (order_number, user_id, email, customer_name, phone, status, payment_status, payment_method,
                     currency, subtotal, discount, total, coupon_code, discreet, shipping_address)
                    VALUES (%s, %s, %s, %s, %s, 'PENDING', 'PENDING', %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        order_number,
                        user["id"] if user else None,
                        customer_email,
                        customer_name,
                        momo.get("phone") if momo else None,
                        payment_method,
                        currency,
                        subtotal,
                        discount,
                        total,
                        coupon_code or None,
                        1 if discreet else 0,
                        shipping_address,
                    ),
                )
                order_id = cur.lastrowid
                for item in items:
                    cur.execute(
                        """
                        INSERT INTO order_items (order_id, product_id, product_name, price, quantity)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (order_id, item["product_id"], item["name"], item["price"], item["quantity"]),
                    )
                record_order_event(cur, order_id, "PENDING", "Order placed")
                reserve_stock(cur, order_id, items)
                conn.commit()
            except CheckoutError as exc:
                conn.rollback()
                return _bad_request(exc.message, exc.status)

        try:
            payment_response = flutterwave.create_payment(
                tx_ref=order_number,
                amount=amount,
                currency=currency,
                customer={"name": customer_name, "email": customer_email},
                payment_method=payment_method,
                redirect_url=f"{FRONTEND_URL}/checkout/confirm?orderId={order_id}",
                mobile_money=momo,
            )
        except flutterwave.FlutterwaveError as exc:
            app.logger.warning("Payment initiation failed for order %s: %s", order_number, exc)
            with conn.cursor() as cur:
                fail_order_payment(cur, {"id": order_id}, "Payment initiation failed")
            conn.commit()
            return _bad_request("Payment initiation failed. Please try again.", 502)

        response_data = payment_response.get("data") or {}
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO payments (order_id, provider, method, status, amount, currency, flw_ref, tx_ref)
                VALUES (%s, 'FLUTTERWAVE', %s, 'PENDING', %s, %s, %s, %s)
                """,
                (
                    order_id,
                    "CARD" if payment_method == "card" else "MOBILE_MONEY",
                    amount,
                    currency,
                    response_data.get("flw_ref"),
                    order_number,
                ),
            )
            payment_id = cur.lastrowid
            cur.execute("DELETE FROM cart_items WHERE cart_id=%s", (cart_id,))
        conn.commit()
    finally:
        conn.close()

    app.logger.info("Order %s created (%s %s, %s)", order_number, currency, total, payment_method)
    payment_link = response_data.get("link")
    if not payment_link:
        payment_link = ((response_data.get("meta") or {}).get("authorization") or {}).get("redirect")
    return jsonify(
        ok=True,
        orderId=order_id,
        orderNumber=order_number,
        paymentId=payment_id,
        paymentLink=payment_link,
        status=payment_response.get("status"),
    )


@app.route("/api/webhooks/flutterwave", methods=["POST"])
def flutterwave_webhook():
    signature = request.headers.get("verif-hash", "")
    if not FLW_WEBHOOK_HASH or not signature or not hmac.compare_digest(str(signature), FLW_WEBHOOK_HASH):
        app.logger.warning("Invalid webhook hash received from %s", _client_ip())
        return _bad_request("Unauthorized", 401)

    body = request.get_json(silent=True) or {}
    if body.get("event") != "charge.completed":
        return jsonify(ok=True, received=True)
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    tx_ref = data.get("tx_ref")
    flw_ref = data.get("flw_ref") or str(data.get("id") or "")
    status = str(data.get("status") or "").lower()
    if not tx_ref or not flw_ref:
        return _bad_request("Missing transaction reference")

    confirmed_order_id = None
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM processed_webhooks WHERE event_id=%s LIMIT 1", (flw_ref,))
            if cur.fetchone():
                app.logger.info("Webhook %s already processed, skipping", flw_ref)
                return jsonify(ok=True, received=True, duplicate=True)
            cur.execute("SELECT * FROM orders WHERE order_number=%s LIMIT 1 FOR UPDATE", (tx_ref,))
            order = cur.fetchone()
            if not order:
                app.logger.warning("Order not found for tx_ref %s", tx_ref)
                return _bad_request("Order not found", 404)
            if order.get("payment_status") == "SUCCESSFUL":
                conn.commit()
                app.logger.info("Order %s already paid, ignoring %s event %s", tx_ref, status, flw_ref)
                return jsonify(ok=True, received=True, alreadyPaid=True)
            if status == "successful" and _to_float(data.get("amount")) + 0.01 < _to_float(order.get("total")):
                app.logger.warning(
                    "Amount mismatch for order %s: expected %s, got %s",
                    tx_ref,
                    order.get("total"),
                    data.get("amount"),
                )
                return _bad_request("Amount mismatch")

            try:
                cur.execute(
                    "INSERT INTO processed_webhooks (event_id, provider) VALUES (%s, 'flutterwave')",
                    (flw_ref,),
                )
                if status == "successful":
                    cur.execute(
                        "UPDATE payments SET status='SUCCESSFUL', flw_ref=%s, flw_tx_id=%s WHERE order_id=%s",
                        (flw_ref, str(data.get("id") or "") or None, order["id"]),
                    )
                    confirm_order_payment(cur, order, "Card payment confirmed via Flutterwave")
                    confirmed_order_id = order["id"]
                else:
                    cur.execute("UPDATE payments SET status='FAILED' WHERE order_id=%s", (order["id"],))
                    fail_order_payment(cur, order, f"Flutterwave reported status {status or 'unknown'}")
                conn.commit()
            except pymysql.err.IntegrityError:
                conn.rollback()
                return jsonify(ok=True, received=True, duplicate=True)
            except Exception:
                conn.rollback()
                raise
    finally:
        conn.close()

    app.logger.info("Webhook %s processed for order %s: %s", flw_ref, tx_ref, status)
    if confirmed_order_id:
        try:
            send_order_confirmation(confirmed_order_id)
        except Exception:
            app.logger.exception("Order confirmation email failed for order %s", confirmed_order_id)
    return jsonify(ok=True, received=True)


# Orders

ORDER_STEP_LABELS = {
    "PENDING": ("Order Placed", "Your order has been received"),
    "CONFIRMED": ("Confirmed", "Payment verified, preparing your order"),
    "PROCESSING": ("Processing", "Your order is being prepared"),
    "SHIPPED": ("Shipped", "Your order is on its way"),
    "DELIVERED": ("Delivered", "Order delivered successfully"),
}


def order_status_steps(status: str):
    current = ORDER_STATUS_STEPS.index(status) if status in ORDER_STATUS_STEPS else -1
    steps = []
    for idx, step in enumerate(ORDER_STATUS_STEPS):
        label, description = ORDER_STEP_LABELS[step]
        steps.append(
            {
                "status": step,
                "label": label,
                "description": description,
                "completed": idx <= current,
                "current": idx == current,
            }
        )
    return steps


def _load_order_detail(cur, where_sql: str, params):
    cur.execute(f"SELECT * FROM orders WHERE {where_sql} LIMIT 1", params)
    order = cur.fetchone()
    if not order:
        return None
    cur.execute(
        """
        SELECT oi.id, oi.product_id, oi.product_name, oi.price, oi.quantity, p.slug AS product_slug
        FROM order_items oi
        LEFT JOIN products p ON p.id = oi.product_id
        WHERE oi.order_id=%s
        ORDER BY oi.id ASC
        """,
        (order["id"],),
    )
    items = cur.fetchall() or []
    cur.execute(
        "SELECT status, note, created_at FROM order_events WHERE order_id=%s ORDER BY created_at DESC, id DESC",
        (order["id"],),
    )
    events = cur.fetchall() or []
    data = _camel(order)
    data["items"] = _camel_rows(items)
    data["timeline"] = _camel_rows(events)
    return data


def _owns_order(user, order) -> bool:
    if not user or not order:
        return False
    if user.get("role") in STAFF_ROLES:
        return True
    if order.get("userId") is not None and order.get("userId") == user.get("id"):
        return True
    return _normalize_email(order.get("email")) == _normalize_email(user.get("email"))


@app.route("/api/orders/track/<order_number>")
def order_track(order_number):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            order = _load_order_detail(cur, "order_number=%s", (order_number,))
    finally:
        conn.close()
    if not order:
        return _bad_request("Order not found", 404)
    return jsonify(
        ok=True,
        orderNumber=order["orderNumber"],
        status=order["status"],
        paymentStatus=order.get("paymentStatus"),
        paymentMethod=order.get("paymentMethod"),
        customerName=order.get("customerName"),
        trackingNumber=order.get("trackingNumber"),
        discreet=bool(order.get("discreet")),
        items=[
            {
                "name": i.get("productName"),
                "productSlug": i.get("productSlug"),
                "quantity": i.get("quantity"),
                "price": i.get("price"),
            }
            for i in order["items"]
        ],
        subtotal=order.get("subtotal"),
        shipping=order.get("shipping"),
        discount=order.get("discount"),
        total=order.get("total"),
        currency=order.get("currency"),
        timeline=order["timeline"],
        statusSteps=order_status_steps(order["status"]),
        createdAt=order.get("createdAt"),
    )


@app.route("/api/orders/<int:order_id>")
@login_required
def order_detail(order_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            order = _load_order_detail(cur, "id=%s", (order_id,))
    finally:
        conn.close()
    if not order or not _owns_order(current_user(), order):
        return _bad_request("Order not found", 404)
    return jsonify(ok=True, order=order)


@app.route("/api/orders")
@login_required
def order_list():
    user = current_user()
    page, limit, offset = _paging(10, 50)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(
                cur,
                "SELECT COUNT(*) AS c FROM orders WHERE user_id=%s OR email=%s",
                (user["id"], user["email"]),
            )
            cur.execute(
                """
                SELECT o.*, (SELECT COUNT(*) FROM order_items oi WHERE oi.order_id = o.id) AS item_count
                FROM orders o
                WHERE o.user_id=%s OR o.email=%s
                ORDER BY o.created_at DESC
                LIMIT %s OFFSET %s
                """,
                (user["id"], user["email"], limit, offset),
            )
            orders = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, orders=_camel_rows(orders), pagination=_pagination(page, limit, total))


# Invoices

def render_invoice_html(order) -> str:
    currency = order.get("currency") or DEFAULT_CURRENCY
    rows = []
    for item in order.get("items") or []:
        line_total = _to_float(item.get("price")) * _to_int(item.get("quantity"))
        rows.append(
            "<tr>"
            f"<td>{escape(str(item.get('productName') or ''))}</td>"
            f"<td style='text-align:center'>{_to_int(item.get('quantity'))}</td>"
            f"<td style='text-align:right'>{mailer.format_money(item.get('price'), currency)}</td>"
            f"<td style='text-align:right'>{mailer.format_money(line_total, currency)}</td>"
            "</tr>"
        )
    qr = twofactor.make_qr_data_uri(str(order.get("orderNumber") or ""))
    created = order.get("createdAt")
    created_text = created.strftime("%d %b %Y") if isinstance(created, datetime) else str(created or "")
    discount = _to_float(order.get("discount"))
    discount_row = (
        f"<tr><td colspan='3'>Discount</td><td style='text-align:right'>-{mailer.format_money(discount, currency)}</td></tr>"
        if discount
        else ""
    )
    return f"""<!doctype html>
<html>
<head>
<meta charset="utf-8">
<title>Invoice {escape(str(order.get('orderNumber')))}</title>
<style>
body {{ font-family: Arial, sans-serif; color: #222; margin: 32px; }}
table {{ width: 100%; border-collapse: collapse; margin-top: 16px; }}
th, td {{ border-bottom: 1px solid #eee; padding: 8px; font-size: 14px; }}
th {{ text-align: left; background: #faf5f8; }}
.header {{ display: flex; justify-content: space-between; align-items: flex-start; }}
.muted {{ color: #777; font-size: 13px; }}
</style>
</head>
<body>
<div class="header">
  <div>
    <h1 style="margin:0;color:#b0306a">{escape(BUSINESS_NAME)}</h1>
    <div class="muted">{escape(BUSINESS_LEGAL_NAME)}<br>{escape(BUSINESS_ADDRESS)}<br>{escape(SUPPORT_EMAIL)} | {escape(SUPPORT_PHONE)}</div>
  </div>
  <div style="text-align:right">
    <h2 style="margin:0">INVOICE</h2>
    <div class="muted">Order {escape(str(order.get('orderNumber')))}<br>Date {escape(created_text)}<br>Status {escape(str(order.get('paymentStatus') or ''))}</div>
    <img src="{qr}" alt="Order QR" width="96" height="96">
  </div>
</div>
<p><strong>Billed to:</strong> {escape(str(order.get('customerName') or ''))}<br>{escape(str(order.get('email') or ''))}</p>
<table>
  <thead><tr><th>Item</th><th style="text-align:center">Qty</th><th style="text-align:right">Price</th><th style="text-align:right">Total</th></tr></thead>
  <tbody>{''.join(rows)}</tbody>
  <tfoot>
    <tr><td colspan="3">Subtotal</td><td style="text-align:right">{mailer.format_money(order.get('subtotal'), currency)}</td></tr>
    {discount_row}
    <tr><td colspan="3">Shipping</td><td style="text-align:right">{mailer.format_money(order.get('shipping'), currency)}</td></tr>
    <tr><td colspan="3"><strong>Total</strong></td><td style="text-align:right"><strong>{mailer.format_money(order.get('total'), currency)}</strong></td></tr>
  </tfoot>
</table>
<p class="muted">Items ship in plain, unbranded packaging. Thank you for shopping with {escape(BUSINESS_NAME)}.</p>
</body>
</html>"""


def _invoice_response(order_id, download: bool):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            order = _load_order_detail(cur, "id=%s", (order_id,))
    finally:
        conn.close()
    if not order or not _owns_order(current_user(), order):
        return _bad_request("Order not found", 404)
    response = make_response(render_invoice_html(order))
    response.headers["Content-Type"] = "text/html; charset=utf-8"
    if download:
        response.headers["Content-Disposition"] = f'attachment; filename="invoice-{order["orderNumber"]}.html"'
    return response


@app.route("/api/invoices/<int:order_id>")
@login_required
def invoice_view(order_id):
    return _invoice_response(order_id, download=False)


@app.route("/api/invoices/<int:order_id>/download")
@login_required
def invoice_download(order_id):
    return _invoice_response(order_id, download=True)


# Auth

def _lock_remaining_minutes(user) -> int:
    locked_until = user.get("locked_until") if user else None
    if not locked_until:
        return 0
    remaining = (locked_until - _now_utc()).total_seconds()
    if remaining <= 0:
        return 0
    return int(remaining // 60) + 1


def _record_failed_login(cur, user, max_attempts: int, lock_minutes: int):
    attempts = _to_int(user.get("failed_logins")) + 1
    locked_until = None
    if attempts >= max_attempts:
        locked_until = _now_utc() + timedelta(minutes=lock_minutes)
        attempts = 0
        app.logger.warning("Account %s locked after repeated failed logins", user.get("email"))
    cur.execute(
        "UPDATE users SET failed_logins=%s, locked_until=%s WHERE id=%s",
        (attempts, locked_until, user["id"]),
    )


def _record_successful_login(cur, user):
    cur.execute(
        "UPDATE users SET failed_logins=0, locked_until=NULL, last_login_at=%s WHERE id=%s",
        (_now_utc(), user["id"]),
    )


def _issue_email_verification(cur, user) -> str:
    token = secrets.token_urlsafe(32)
    cur.execute(
        "UPDATE users SET email_verify_token=%s, email_verify_expires=%s WHERE id=%s",
        (_hash_token(token), _now_utc() + EMAIL_TOKEN_TTL, user["id"]),
    )
    return token


def _send_verification_email(user, token: str):
    verify_url = f"{FRONTEND_URL}/auth/verify-email?token={quote(token)}"
    subject, text_body, html_body = mailer.build_email_verification(user.get("first_name") or "there", verify_url)
    return mailer.send_email(user["email"], subject, text_body, html_body)


def _create_customer(cur, email, password_hash, first_name, last_name=None, phone=None, verified=False):
    cur.execute(
        """
        INSERT INTO users (email, password_hash, first_name, last_name, phone, role, email_verified)
        VALUES (%s, %s, %s, %s, %s, 'CUSTOMER', %s)
        """,
        (email, password_hash, first_name, last_name, phone, 1 if verified else 0),
    )
    user_id = cur.lastrowid
    get_or_create_loyalty_account(cur, user_id)
    return user_id


@app.route("/api/auth/register", methods=["POST"])
@rate_limit("auth")
def auth_register():
    data = _payload()
    email = _normalize_email(data.get("email"))
    password = data.get("password") or ""
    first_name = str(data.get("firstName") or data.get("name") or "").strip()
    last_name = str(data.get("lastName") or "").strip() or None
    phone = normalize_phone_number(str(data.get("phone") or "")) or None
    referral_code = str(data.get("referralCode") or "").strip()

    if not validate_email_format(email):
        return _bad_request("Please enter a valid email address.")
    if not first_name:
        return _bad_request("Name is required.")
    password_error = validate_password_strength(password)
    if password_error:
        return _bad_request(password_error)

    referral = None
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM users WHERE email=%s LIMIT 1", (email,))
            if cur.fetchone():
                return _bad_request("Email already registered", 409)
            user_id = _create_customer(cur, email, generate_password_hash(password), first_name, last_name, phone)
            user = _fetch_user(cur, user_id)
            token = _issue_email_verification(cur, user)
            if referral_code:
                referral, referral_error, _ = apply_referral_code(cur, user_id, referral_code)
                if referral_error:
                    app.logger.info("Referral code %s not applied for %s: %s", referral_code, email, referral_error)
        conn.commit()
    finally:
        conn.close()

    try:
        _send_verification_email(user, token)
    except Exception:
        app.logger.exception("Verification email failed for %s", email)
    login_user(user)
    app.logger.info("New customer registered: %s", email)
    return jsonify(
        ok=True,
        message="Registration successful. Please check your email to verify your account.",
        user=serialize_user(user),
        referral=referral,
    ), 201


@app.route("/api/auth/login", methods=["POST"])
@rate_limit("auth")
def auth_login():
    data = _payload()
    email = _normalize_email(data.get("email"))
    password = data.get("password") or ""
    remember = data.get("rememberMe", True) is not False
    if not email or not password:
        return _bad_request("Email and password are required.")

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM users WHERE email=%s LIMIT 1", (email,))
            user = cur.fetchone()
            if user:
                remaining = _lock_remaining_minutes(user)
                if remaining:
                    return _bad_request(f"Account temporarily locked. Try again in {remaining} minutes.", 429)
            if not user or not verify_password(user.get("password_hash"), password):
                if user:
                    _record_failed_login(cur, user, LOGIN_MAX_ATTEMPTS, LOGIN_LOCK_MINUTES)
                    conn.commit()
                return _bad_request("Invalid email or password", 401)
            if not user.get("is_active"):
                return _bad_request("This account has been disabled.", 403)
            _record_successful_login(cur, user)
        conn.commit()
    finally:
        conn.close()

    if user.get("role") in STAFF_ROLES and user.get("two_factor_enabled"):
        logout_user()
        session["pending_2fa_user_id"] = user["id"]
        session["pending_2fa_remember"] = remember
        return jsonify(ok=True, requires2FA=True, message="2FA required")

    login_user(user, remember)
    return jsonify(ok=True, message="Login successful", user=serialize_user(user))


@app.route("/api/auth/forgot-password", methods=["POST"])
@rate_limit("auth")
def auth_forgot_password():
    email = _normalize_email(_payload().get("email"))
    message = "If the email exists, a reset link has been sent"
    if not validate_email_format(email):
        return jsonify(ok=True, message=message)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM users WHERE email=%s AND is_active=1 LIMIT 1", (email,))
            user = cur.fetchone()
            if not user:
                return jsonify(ok=True, message=message)
            token = secrets.token_urlsafe(32)
            cur.execute(
                "UPDATE users SET reset_token=%s, reset_token_expires=%s WHERE id=%s",
                (_hash_token(token), _now_utc() + RESET_TOKEN_TTL, user["id"]),
            )
        conn.commit()
    finally:
        conn.close()
    reset_url = f"{FRONTEND_URL}/auth/reset-password?token={quote(token)}"
    subject, text_body, html_body = mailer.build_password_reset_email(user.get("first_name") or "there", reset_url)
    if not mailer.send_email(email, subject, text_body, html_body):
        app.logger.warning("Password reset email could not be delivered to %s", email)
    return jsonify(ok=True, message=message)


@app.route("/api/auth/reset-password", methods=["POST"])
def auth_reset_password():
    data = _payload()
    token = str(data.get("token") or "").strip()
    password = data.get("password") or ""
    if not token:
        return _bad_request("Invalid or expired reset token")
    password_error = validate_password_strength(password)
    if password_error:
        return _bad_request(password_error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id FROM users WHERE reset_token=%s AND reset_token_expires > %s LIMIT 1",
                (_hash_token(token), _now_utc()),
            )
            user = cur.fetchone()
            if not user:
                return _bad_request("Invalid or expired reset token")
            cur.execute(
                """
                UPDATE users
                SET password_hash=%s, reset_token=NULL, reset_token_expires=NULL,
                    failed_logins=0, locked_until=NULL, session_version=session_version+1
                WHERE id=%s
                """,
                (generate_password_hash(password), user["id"]),
            )
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Password reset successful")


@app.route("/api/auth/me", methods=["GET", "PUT"])
@login_required
def auth_me():
    user = current_user()
    if request.method == "GET":
        return jsonify(ok=True, user=serialize_user(user))
    data = _payload()
    first_name = str(data.get("firstName", user.get("first_name")) or "").strip() or None
    last_name = str(data.get("lastName", user.get("last_name")) or "").strip() or None
    phone = user.get("phone")
    if "phone" in data:
        phone = normalize_phone_number(str(data.get("phone") or "")) or None
        if data.get("phone") and not phone:
            return _bad_request("Please enter a valid phone number.")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE users SET first_name=%s, last_name=%s, phone=%s WHERE id=%s",
                (first_name, last_name, phone, user["id"]),
            )
            updated = _fetch_user(cur, user["id"])
        conn.commit()
    finally:
        conn.close()
    g.current_user = updated
    return jsonify(ok=True, message="Profile updated", user=serialize_user(updated))


@app.route("/api/auth/change-password", methods=["POST"])
@login_required
def auth_change_password():
    user = current_user()
    data = _payload()
    if not verify_password(user.get("password_hash"), data.get("currentPassword") or ""):
        return _bad_request("Current password is incorrect")
    password_error = validate_password_strength(data.get("newPassword") or "")
    if password_error:
        return _bad_request(password_error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE users SET password_hash=%s, session_version=session_version+1 WHERE id=%s",
                (generate_password_hash(data["newPassword"]), user["id"]),
            )
            updated = _fetch_user(cur, user["id"])
        conn.commit()
    finally:
        conn.close()
    login_user(updated, session.permanent)
    return jsonify(ok=True, message="Password changed successfully")


@app.route("/api/auth/verify-email", methods=["POST"])
def auth_verify_email():
    token = str(_payload().get("token") or "").strip()
    if not token:
        return _bad_request("Verification token is required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM users WHERE email_verify_token=%s LIMIT 1",
                (_hash_token(token),),
            )
            user = cur.fetchone()
            if not user:
                return _bad_request("Invalid verification token")
            expires = user.get("email_verify_expires")
            if expires and expires < _now_utc():
                return _bad_request("Verification token has expired. Please request a new one.")
            cur.execute(
                """
                UPDATE users SET email_verified=1, email_verify_token=NULL, email_verify_expires=NULL
                WHERE id=%s
                """,
                (user["id"],),
            )
        conn.commit()
    finally:
        conn.close()
    subject, text_body, html_body = mailer.build_welcome_email(user.get("first_name") or "there")
    mailer.send_email(user["email"], subject, text_body, html_body)
    return jsonify(ok=True, message=f"Email verified successfully! Welcome to {BUSINESS_NAME}.")


@app.route("/api/auth/resend-verification", methods=["POST"])
@login_required
def auth_resend_verification():
    user = current_user()
    if user.get("email_verified"):
        return jsonify(ok=True, message="Email is already verified")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            token = _issue_email_verification(cur, user)
        conn.commit()
    finally:
        conn.close()
    if not _send_verification_email(user, token):
        return _bad_request("Failed to resend verification email", 502)
    return jsonify(ok=True, message="Verification email sent. Please check your inbox.")


@app.route("/api/auth/logout", methods=["POST"])
def auth_logout():
    user_id = session.get("user_id")
    role = session.get("role")
    logout_user()
    if user_id and role in STAFF_ROLES:
        log_activity(user_id, "LOGOUT", "USER", user_id)
    return jsonify(ok=True, message="Logged out successfully")


@app.route("/api/auth/logout-all", methods=["POST"])
@login_required
def auth_logout_all():
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("UPDATE users SET session_version=session_version+1 WHERE id=%s", (user["id"],))
        conn.commit()
    finally:
        conn.close()
    logout_user()
    return jsonify(ok=True, message="Logged out from all devices")


@app.route("/api/auth/refresh", methods=["POST"])
def auth_refresh():
    user = current_user()
    if not user:
        return _bad_request("Invalid or expired session", 401)
    login_user(user, session.permanent)
    return jsonify(ok=True, message="Session refreshed", user=serialize_user(user))


@app.route("/api/auth/check")
def auth_check():
    user = current_user()
    return jsonify(ok=True, authenticated=bool(user), user=serialize_user(user))


@app.route("/api/auth/google")
def auth_google():
    if not os.getenv("GOOGLE_CLIENT_ID") or not os.getenv("GOOGLE_CLIENT_SECRET"):
        return redirect(f"{FRONTEND_URL}/auth/login?error=google_unavailable")
    session["google_remember_me"] = request.args.get("remember", "1") == "1"
    referral_code = (request.args.get("ref") or "").strip()
    if referral_code:
        session["google_referral_code"] = referral_code
    else:
        session.pop("google_referral_code", None)
    redirect_uri = url_for("auth_google_callback", _external=True)
    return oauth.google.authorize_redirect(redirect_uri)


@app.route("/api/auth/google/callback")
def auth_google_callback():
    try:
        token = oauth.google.authorize_access_token()
    except Exception:
        app.logger.warning("Google sign-in token exchange failed", exc_info=True)
        return redirect(f"{FRONTEND_URL}/auth/login?error=google_failed")

    userinfo = token.get("userinfo")
    if not userinfo:
        try:
            userinfo = oauth.google.userinfo()
        except Exception:
            userinfo = None
    email = _normalize_email((userinfo or {}).get("email"))
    if not email or not validate_email_format(email):
        return redirect(f"{FRONTEND_URL}/auth/login?error=google_profile")

    referral_code = (session.pop("google_referral_code", "") or "").strip()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM users WHERE email=%s LIMIT 1", (email,))
            user = cur.fetchone()
            if not user:
                user_id = _create_customer(
                    cur,
                    email,
                    generate_password_hash(secrets.token_urlsafe(24)),
                    (userinfo.get("given_name") or userinfo.get("name") or email.split("@", 1)[0]).strip(),
                    (userinfo.get("family_name") or "").strip() or None,
                    verified=True,
                )
                if referral_code:
                    apply_referral_code(cur, user_id, referral_code)
                user = _fetch_user(cur, user_id)
                app.logger.info("New customer registered via Google: %s", email)
            elif not user.get("is_active"):
                return redirect(f"{FRONTEND_URL}/auth/login?error=account_disabled")
            _record_successful_login(cur, user)
        conn.commit()
    finally:
        conn.close()

    login_user(user, session.pop("google_remember_me", True))
    return redirect(f"{FRONTEND_URL}/account")


# Two-factor authentication

def _save_backup_codes(cur, user_id, codes):
    hashed = [twofactor.hash_backup_code(c) for c in codes]
    cur.execute(
        "UPDATE users SET two_factor_backup_codes=%s WHERE id=%s",
        (json.dumps(hashed), user_id),
    )


def verify_second_factor(cur, user, token) -> bool:
    """Accept a TOTP code, or consume a backup code once."""
    if twofactor.verify_totp(user.get("two_factor_secret"), token):
        return True
    remaining = twofactor.consume_backup_code(_json_field(user.get("two_factor_backup_codes"), []), token)
    if remaining is None:
        return False
    cur.execute(
        "UPDATE users SET two_factor_backup_codes=%s WHERE id=%s",
        (json.dumps(remaining), user["id"]),
    )
    app.logger.info("Backup code used by user %s; %s remaining", user["id"], len(remaining))
    return True


@app.route("/api/2fa/status")
@login_required
def twofactor_status():
    user = current_user()
    return jsonify(
        ok=True,
        enabled=bool(user.get("two_factor_enabled")),
        backupCodesRemaining=len(_json_field(user.get("two_factor_backup_codes"), [])),
    )


@app.route("/api/2fa/setup", methods=["POST"])
@login_required
def twofactor_setup():
    user = current_user()
    if user.get("two_factor_enabled"):
        return _bad_request("2FA is already enabled")
    secret = twofactor.generate_secret()
    backup_codes = twofactor.generate_backup_codes()
    uri = twofactor.otpauth_uri(secret, user["email"])
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("UPDATE users SET two_factor_secret=%s WHERE id=%s", (secret, user["id"]))
            _save_backup_codes(cur, user["id"], backup_codes)
        conn.commit()
    finally:
        conn.close()
    return jsonify(
        ok=True,
        secret=secret,
        otpauthUrl=uri,
        qrCode=twofactor.make_qr_data_uri(uri),
        backupCodes=backup_codes,
    )


@app.route("/api/2fa/enable", methods=["POST"])
@login_required
def twofactor_enable():
    user = current_user()
    token = str(_payload().get("token") or "").strip()
    if len(token) != twofactor.TOTP_DIGITS:
        return _bad_request("Invalid verification code")
    if not user.get("two_factor_secret"):
        return _bad_request("2FA not setup. Please run setup first.")
    if user.get("two_factor_enabled"):
        return _bad_request("2FA is already enabled")
    if not twofactor.verify_totp(user["two_factor_secret"], token):
        return _bad_request("Invalid verification code")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("UPDATE users SET two_factor_enabled=1 WHERE id=%s", (user["id"],))
        conn.commit()
    finally:
        conn.close()
    log_activity(user["id"], "UPDATE", "USER", user["id"], "Enabled two-factor authentication")
    return jsonify(ok=True, message="Two-factor authentication enabled successfully")


@app.route("/api/2fa/verify", methods=["POST"])
def twofactor_verify():
    user_id = session.get("pending_2fa_user_id")
    token = str(_payload().get("token") or "").strip()
    if not user_id or not token:
        return _bad_request("No pending sign-in and token required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            user = _fetch_user(cur, user_id)
            if not user or not user.get("two_factor_enabled"):
                return _bad_request("2FA not enabled for this user")
            valid = verify_second_factor(cur, user, token)
        conn.commit()
    finally:
        conn.close()
    if not valid:
        return _bad_request("Invalid verification code", valid=False)
    remember = session.pop("pending_2fa_remember", True)
    login_user(user, remember)
    log_activity(user["id"], "LOGIN", "USER", user["id"])
    return jsonify(ok=True, valid=True, user=serialize_user(user))


@app.route("/api/2fa/disable", methods=["POST"])
@login_required
def twofactor_disable():
    user = current_user()
    data = _payload()
    if not user.get("two_factor_enabled"):
        return _bad_request("2FA is not enabled")
    if not verify_password(user.get("password_hash"), data.get("password") or ""):
        return _bad_request("Password is incorrect")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            if not twofactor.verify_totp(user.get("two_factor_secret"), data.get("token")):
                return _bad_request("Invalid verification code")
            cur.execute(
                """
                UPDATE users
                SET two_factor_enabled=0, two_factor_secret=NULL, two_factor_backup_codes=NULL
                WHERE id=%s
                """,
                (user["id"],),
            )
        conn.commit()
    finally:
        conn.close()
    log_activity(user["id"], "UPDATE", "USER", user["id"], "Disabled two-factor authentication")
    return jsonify(ok=True, message="Two-factor authentication disabled")


@app.route("/api/2fa/backup-codes", methods=["POST"])
@login_required
def twofactor_backup_codes():
    user = current_user()
    if not user.get("two_factor_enabled"):
        return _bad_request("2FA is not enabled")
    if not twofactor.verify_totp(user.get("two_factor_secret"), _payload().get("token")):
        return _bad_request("Invalid verification code")
    codes = twofactor.generate_backup_codes()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            _save_backup_codes(cur, user["id"], codes)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, backupCodes=codes)


@app.route("/api/admin/auth/login", methods=["POST"])
@rate_limit("admin_login")
def admin_auth_login():
    data = _payload()
    email = _normalize_email(data.get("email"))
    password = data.get("password") or ""
    token = str(data.get("twoFactorToken") or data.get("token") or "").strip()
    if not email or not password:
        return _bad_request("Email and password are required.")
    generic = "Invalid credentials or insufficient permissions"

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM users WHERE email=%s LIMIT 1", (email,))
            user = cur.fetchone()
            if not user or user.get("role") not in STAFF_ROLES:
                return _bad_request(generic, 401)
            remaining = _lock_remaining_minutes(user)
            if remaining:
                return _bad_request(f"Admin account locked. Try again in {remaining} minutes.", 429)
            if not verify_password(user.get("password_hash"), password) or not user.get("is_active"):
                _record_failed_login(cur, user, ADMIN_LOGIN_MAX_ATTEMPTS, ADMIN_LOGIN_LOCK_MINUTES)
                conn.commit()
                return _bad_request(generic, 401)
            if user.get("two_factor_enabled"):
                if not token:
                    return jsonify(ok=True, requires2FA=True, message="2FA required")
                if not verify_second_factor(cur, user, token):
                    _record_failed_login(cur, user, ADMIN_LOGIN_MAX_ATTEMPTS, ADMIN_LOGIN_LOCK_MINUTES)
                    conn.commit()
                    return _bad_request("Invalid 2FA code", 401)
            _record_successful_login(cur, user)
        conn.commit()
    finally:
        conn.close()

    login_user(user, remember=False)
    log_activity(user["id"], "LOGIN", "USER", user["id"])
    app.logger.info("Admin login: %s", email)
    return jsonify(ok=True, message="Admin login successful", user=serialize_user(user))


# Catalog

PRODUCT_SORTS = {
    "newest": "p.created_at DESC",
    "price_asc": "p.price ASC",
    "price_desc": "p.price DESC",
    "popular": "p.sales_count DESC",
    "rating": "p.rating DESC",
}
PRODUCT_SORT_FIELDS = {
    "createdAt": "p.created_at",
    "price": "p.price",
    "name": "p.name",
    "rating": "p.rating",
    "salesCount": "p.sales_count",
}
PRODUCT_CARD_COLUMNS = """
    p.id, p.name, p.slug, p.short_description, p.price, p.compare_at_price, p.stock,
    p.featured, p.rating, p.review_count, p.sales_count, p.created_at,
    c.name AS category_name, c.slug AS category_slug,
    (SELECT url FROM product_images pi WHERE pi.product_id = p.id
     ORDER BY pi.sort_order ASC, pi.id ASC LIMIT 1) AS image
"""


def product_order_clause(sort=None, sort_by=None, sort_order=None) -> str:
    if sort_by:
        column = PRODUCT_SORT_FIELDS.get(sort_by)
        if not column:
            return "p.created_at DESC"
        return f"{column} {'ASC' if sort_order == 'asc' else 'DESC'}"
    return PRODUCT_SORTS.get(sort or "newest", "p.created_at DESC")


def _price_filters(where, params, args):
    min_price = args.get("minPrice")
    max_price = args.get("maxPrice")
    if min_price not in (None, ""):
        where.append("p.price >= %s")
        params.append(_to_float(min_price))
    if max_price not in (None, ""):
        where.append("p.price <= %s")
        params.append(_to_float(max_price))


@app.route("/api/products")
def product_list():
    args = request.args
    page, limit, offset = _paging(20, 100)
    where = ["p.status='ACTIVE'"]
    params = []
    if args.get("category"):
        where.append("c.slug=%s")
        params.append(args["category"])
    if args.get("featured") in ("1", "true"):
        where.append("p.featured=1")
    _price_filters(where, params, args)
    where_sql = " AND ".join(where)
    order_sql = product_order_clause(args.get("sort"), args.get("sortBy"), args.get("sortOrder"))

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(
                cur,
                f"SELECT COUNT(*) AS c FROM products p LEFT JOIN categories c ON c.id = p.category_id WHERE {where_sql}",
                tuple(params),
            )
            cur.execute(
                f"""
                SELECT {PRODUCT_CARD_COLUMNS}
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE {where_sql}
                ORDER BY {order_sql}
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, offset),
            )
            products = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, products=_camel_rows(products), pagination=_pagination(page, limit, total))


@app.route("/api/products/categories/list")
def product_categories_list():
    return category_list()


@app.route("/api/products/<slug>")
def product_detail(slug):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.*, c.name AS category_name, c.slug AS category_slug
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.slug=%s AND p.status='ACTIVE'
                LIMIT 1
                """,
                (slug,),
            )
            product = cur.fetchone()
            if not product:
                return _bad_request("Product not found", 404)
            cur.execute(
                "SELECT id, url, alt FROM product_images WHERE product_id=%s ORDER BY sort_order ASC, id ASC",
                (product["id"],),
            )
            images = cur.fetchall() or []
    finally:
        conn.close()
    data = _camel(product, drop=("reserved_stock",))
    data["images"] = _camel_rows(images)
    data["category"] = {"name": product.get("category_name"), "slug": product.get("category_slug")}
    data["inStock"] = _to_int(product.get("stock")) > 0 or bool(product.get("allow_backorder"))
    return jsonify(ok=True, product=data)


@app.route("/api/products/<slug>/related")
def product_related(slug):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, category_id FROM products WHERE slug=%s LIMIT 1", (slug,))
            product = cur.fetchone()
            if not product:
                return _bad_request("Product not found", 404)
            cur.execute(
                f"""
                SELECT {PRODUCT_CARD_COLUMNS}
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.status='ACTIVE' AND p.category_id=%s AND p.id<>%s
                ORDER BY p.featured DESC, p.rating DESC, p.created_at DESC
                LIMIT 4
                """,
                (product.get("category_id"), product["id"]),
            )
            related = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, products=_camel_rows(related))


@app.route("/api/categories")
def category_list():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.slug, c.description, c.image, c.parent_id, c.sort_order,
                       (SELECT COUNT(*) FROM products p WHERE p.category_id = c.id AND p.status='ACTIVE') AS product_count
                FROM categories c
                WHERE c.is_active=1
                ORDER BY c.sort_order ASC, c.name ASC
                """
            )
            categories = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, categories=_camel_rows(categories))


@app.route("/api/categories/<slug>")
def category_detail(slug):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM categories WHERE slug=%s AND is_active=1 LIMIT 1", (slug,))
            category = cur.fetchone()
            if not category:
                return _bad_request("Category not found", 404)
            cur.execute(
                """
                SELECT id, name, slug, image FROM categories
                WHERE parent_id=%s AND is_active=1
                ORDER BY sort_order ASC, name ASC
                """,
                (category["id"],),
            )
            children = cur.fetchall() or []
            product_count = _scalar(
                cur,
                "SELECT COUNT(*) AS c FROM products WHERE category_id=%s AND status='ACTIVE'",
                (category["id"],),
            )
    finally:
        conn.close()
    data = _camel(category)
    data["children"] = _camel_rows(children)
    data["productCount"] = product_count
    return jsonify(ok=True, category=data)


SEARCH_SORTS = dict(PRODUCT_SORTS, relevance="relevance")


@app.route("/api/search")
def search_products():
    args = request.args
    q = str(args.get("q") or "").strip()
    if len(q) < 2:
        return _bad_request("Search query must be at least 2 characters")
    page, limit, offset = _paging(20, 100)
    like = f"%{q}%"
    where = [
        "p.status='ACTIVE'",
        "(p.name LIKE %s OR p.description LIKE %s OR p.short_description LIKE %s OR c.name LIKE %s)",
    ]
    params = [like, like, like, like]
    if args.get("category"):
        where.append("c.slug=%s")
        params.append(args["category"])
    _price_filters(where, params, args)
    if args.get("inStock") in ("1", "true"):
        where.append("p.stock > 0")
    where_sql = " AND ".join(where)

    sort = args.get("sort") or "relevance"
    if sort not in SEARCH_SORTS:
        sort = "relevance"
    if sort == "relevance":
        order_sql = "CASE WHEN p.name LIKE %s THEN 0 WHEN p.name LIKE %s THEN 1 ELSE 2 END, p.sales_count DESC"
        order_params = (f"{q}%", like)
    else:
        order_sql = SEARCH_SORTS[sort]
        order_params = ()

    base_from = "FROM products p LEFT JOIN categories c ON c.id = p.category_id"
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, f"SELECT COUNT(*) AS c {base_from} WHERE {where_sql}", tuple(params))
            cur.execute(
                f"SELECT MIN(p.price) AS min_price, MAX(p.price) AS max_price {base_from} WHERE {where_sql}",
                tuple(params),
            )
            price_range = cur.fetchone() or {}
            cur.execute(
                f"""
                SELECT {PRODUCT_CARD_COLUMNS}
                {base_from}
                WHERE {where_sql}
                ORDER BY {order_sql}
                LIMIT %s OFFSET %s
                """,
                tuple(params) + order_params + (limit, offset),
            )
            products = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(
        ok=True,
        query=q,
        products=_camel_rows(products),
        facets={
            "priceRange": {
                "min": _to_float(price_range.get("min_price")),
                "max": _to_float(price_range.get("max_price")),
            }
        },
        pagination=_pagination(page, limit, total),
    )


@app.route("/api/search/suggestions")
def search_suggestions():
    q = str(request.args.get("q") or "").strip()
    if len(q) < 2:
        return jsonify(ok=True, products=[], categories=[])
    like = f"%{q}%"
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.slug, p.price,
                       (SELECT url FROM product_images pi WHERE pi.product_id = p.id
                        ORDER BY pi.sort_order ASC, pi.id ASC LIMIT 1) AS image
                FROM products p
                WHERE p.status='ACTIVE' AND p.name LIKE %s
                ORDER BY p.sales_count DESC
                LIMIT 8
                """,
                (like,),
            )
            products = cur.fetchall() or []
            cur.execute(
                "SELECT id, name, slug FROM categories WHERE is_active=1 AND name LIKE %s ORDER BY name ASC LIMIT 4",
                (like,),
            )
            categories = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, products=_camel_rows(products), categories=_camel_rows(categories))


# Coupons

def _coupon_response(code, subtotal):
    code = str(code or "").strip().upper()
    if not code:
        return _bad_request("Coupon code is required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            coupon = find_coupon(cur, code)
    finally:
        conn.close()
    discount, error = compute_coupon_discount(coupon, subtotal)
    if error:
        status = 404 if not coupon else 400
        return _bad_request(error, status, valid=False)
    return jsonify(
        ok=True,
        valid=True,
        coupon={
            "code": coupon["code"],
            "type": coupon["type"],
            "value": coupon["value"],
            "description": coupon.get("description"),
        },
        discount=discount,
        newTotal=_money(_to_float(subtotal) - discount),
    )


@app.route("/api/coupons/validate")
def coupon_validate():
    return _coupon_response(request.args.get("code"), request.args.get("subtotal"))


@app.route("/api/coupons/apply", methods=["POST"])
def coupon_apply():
    data = _payload()
    return _coupon_response(data.get("code"), data.get("subtotal"))


# Addresses

ADDRESS_FIELDS = {
    "label": "label",
    "fullName": "full_name",
    "phone": "phone",
    "street": "street",
    "city": "city",
    "region": "region",
    "country": "country",
    "postalCode": "postal_code",
}
ADDRESS_REQUIRED = ("fullName", "phone", "street", "city")


def _address_values(data, partial: bool = False):
    values = {}
    for key, column in ADDRESS_FIELDS.items():
        if key in data:
            values[column] = str(data.get(key) or "").strip() or None
    if not partial:
        missing = [k for k in ADDRESS_REQUIRED if not values.get(ADDRESS_FIELDS[k])]
        if missing:
            return None, f"Missing required fields: {', '.join(missing)}"
    elif any(k in data and not values.get(ADDRESS_FIELDS[k]) for k in ADDRESS_REQUIRED):
        return None, "Required address fields cannot be empty"
    return values, None


def _list_addresses(cur, user_id):
    cur.execute(
        "SELECT * FROM addresses WHERE user_id=%s ORDER BY is_default DESC, created_at DESC",
        (user_id,),
    )
    return cur.fetchall() or []


@app.route("/api/addresses")
@login_required
def address_list():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            addresses = _list_addresses(cur, current_user()["id"])
    finally:
        conn.close()
    return jsonify(ok=True, addresses=_camel_rows(addresses))


@app.route("/api/addresses", methods=["POST"])
@login_required
def address_create():
    user = current_user()
    data = _payload()
    values, error = _address_values(data)
    if error:
        return _bad_request(error)
    if not values.get("country"):
        values["country"] = "Uganda"
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            existing = _scalar(cur, "SELECT COUNT(*) AS c FROM addresses WHERE user_id=%s", (user["id"],))
            is_default = not existing or bool(data.get("isDefault"))
            if is_default:
                cur.execute("UPDATE addresses SET is_default=0 WHERE user_id=%s", (user["id"],))
            columns = ["user_id", "is_default"] + list(values.keys())
            cur.execute(
                f"INSERT INTO addresses ({', '.join(columns)}) VALUES ({', '.join(['%s'] * len(columns))})",
                tuple([user["id"], 1 if is_default else 0] + list(values.values())),
            )
            address_id = cur.lastrowid
            cur.execute("SELECT * FROM addresses WHERE id=%s", (address_id,))
            address = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, address=_camel(address)), 201


@app.route("/api/addresses/<int:address_id>", methods=["PUT"])
@login_required
def address_update(address_id):
    user = current_user()
    data = _payload()
    values, error = _address_values(data, partial=True)
    if error:
        return _bad_request(error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM addresses WHERE id=%s AND user_id=%s", (address_id, user["id"]))
            if not cur.fetchone():
                return _bad_request("Address not found", 404)
            if data.get("isDefault"):
                cur.execute("UPDATE addresses SET is_default=0 WHERE user_id=%s", (user["id"],))
                values["is_default"] = 1
            if values:
                assignments = ", ".join(f"{col}=%s" for col in values)
                cur.execute(
                    f"UPDATE addresses SET {assignments} WHERE id=%s",
                    tuple(values.values()) + (address_id,),
                )
            cur.execute("SELECT * FROM addresses WHERE id=%s", (address_id,))
            address = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, address=_camel(address))


@app.route("/api/addresses/<int:address_id>", methods=["DELETE"])
@login_required
def address_delete(address_id):
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, is_default FROM addresses WHERE id=%s AND user_id=%s",
                (address_id, user["id"]),
            )
            address = cur.fetchone()
            if not address:
                return _bad_request("Address not found", 404)
            cur.execute("DELETE FROM addresses WHERE id=%s", (address_id,))
            if address.get("is_default"):
                cur.execute(
                    "SELECT id FROM addresses WHERE user_id=%s ORDER BY created_at DESC, id DESC LIMIT 1",
                    (user["id"],),
                )
                newest = cur.fetchone()
                if newest:
                    cur.execute("UPDATE addresses SET is_default=1 WHERE id=%s", (newest["id"],))
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Address deleted")


@app.route("/api/addresses/<int:address_id>/set-default", methods=["POST"])
@login_required
def address_set_default(address_id):
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM addresses WHERE id=%s AND user_id=%s", (address_id, user["id"]))
            if not cur.fetchone():
                return _bad_request("Address not found", 404)
            cur.execute("UPDATE addresses SET is_default=0 WHERE user_id=%s", (user["id"],))
            cur.execute("UPDATE addresses SET is_default=1 WHERE id=%s", (address_id,))
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Default address updated")


# Wishlist

WISHLIST_PIN_REGEX = re.compile(r"^\d{4,6}$")


@app.route("/api/wishlist/pin-status")
@login_required
def wishlist_pin_status():
    user = current_user()
    return jsonify(
        ok=True,
        hasPin=bool(user.get("wishlist_pin_hash")),
        unlocked=bool(session.get("wishlist_unlocked")),
    )


@app.route("/api/wishlist/set-pin", methods=["POST"])
@login_required
def wishlist_set_pin():
    user = current_user()
    data = _payload()
    pin = str(data.get("pin") or "")
    if not WISHLIST_PIN_REGEX.match(pin):
        return _bad_request("PIN must be 4-6 digits")
    if user.get("wishlist_pin_hash"):
        current_pin = str(data.get("currentPin") or "")
        if not current_pin:
            return _bad_request("Current PIN required")
        if not verify_password(user["wishlist_pin_hash"], current_pin):
            return _bad_request("Invalid current PIN", 401)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE users SET wishlist_pin_hash=%s WHERE id=%s",
                (generate_password_hash(pin), user["id"]),
            )
        conn.commit()
    finally:
        conn.close()
    session["wishlist_unlocked"] = True
    return jsonify(ok=True, message="Wishlist PIN set")


@app.route("/api/wishlist/verify-pin", methods=["POST"])
@login_required
def wishlist_verify_pin():
    user = current_user()
    pin = str(_payload().get("pin") or "")
    if not user.get("wishlist_pin_hash"):
        session["wishlist_unlocked"] = True
        return jsonify(ok=True, valid=True)
    if not verify_password(user["wishlist_pin_hash"], pin):
        return _bad_request("Invalid PIN", 401, valid=False)
    session["wishlist_unlocked"] = True
    return jsonify(ok=True, valid=True)


@app.route("/api/wishlist/remove-pin", methods=["DELETE"])
@login_required
def wishlist_remove_pin():
    user = current_user()
    pin = str(_payload().get("pin") or request.args.get("pin") or "")
    if not user.get("wishlist_pin_hash"):
        return _bad_request("No PIN set")
    if not verify_password(user["wishlist_pin_hash"], pin):
        return _bad_request("Invalid PIN", 401)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("UPDATE users SET wishlist_pin_hash=NULL WHERE id=%s", (user["id"],))
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Wishlist PIN removed")


@app.route("/api/wishlist")
@login_required
def wishlist_list():
    user = current_user()
    if user.get("wishlist_pin_hash") and not session.get("wishlist_unlocked"):
        return _bad_request("Wishlist is locked", 403, locked=True)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT w.id, w.created_at AS added_at,
                       p.id AS product_id, p.name, p.slug, p.price, p.compare_at_price, p.rating, p.stock,
                       (SELECT url FROM product_images pi WHERE pi.product_id = p.id
                        ORDER BY pi.sort_order ASC, pi.id ASC LIMIT 1) AS image_url
                FROM wishlist_items w
                JOIN products p ON p.id = w.product_id
                WHERE w.user_id=%s
                ORDER BY w.created_at DESC
                """,
                (user["id"],),
            )
            rows = cur.fetchall() or []
    finally:
        conn.close()
    items = []
    for row in rows:
        product = _camel(row, drop=("id", "added_at", "product_id"))
        product["id"] = row["product_id"]
        product["inStock"] = _to_int(row.get("stock")) > 0
        items.append({"id": row["id"], "addedAt": row.get("added_at"), "product": product})
    return jsonify(ok=True, items=items, count=len(items))


@app.route("/api/wishlist", methods=["POST"])
@login_required
def wishlist_add():
    user = current_user()
    product_id = _to_int(_payload().get("productId"))
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM products WHERE id=%s AND status='ACTIVE'", (product_id,))
            if not cur.fetchone():
                return _bad_request("Product not found", 404)
            cur.execute(
                "SELECT id FROM wishlist_items WHERE user_id=%s AND product_id=%s",
                (user["id"], product_id),
            )
            if cur.fetchone():
                return _bad_request("Product already in wishlist")
            cur.execute(
                "INSERT INTO wishlist_items (user_id, product_id) VALUES (%s, %s)",
                (user["id"], product_id),
            )
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Added to wishlist"), 201


@app.route("/api/wishlist/<int:product_id>", methods=["DELETE"])
@login_required
def wishlist_remove(product_id):
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM wishlist_items WHERE user_id=%s AND product_id=%s",
                (user["id"], product_id),
            )
            removed = cur.rowcount
        conn.commit()
    finally:
        conn.close()
    if not removed:
        return _bad_request("Item not in wishlist", 404)
    return jsonify(ok=True, message="Removed from wishlist")


@app.route("/api/wishlist/<int:product_id>/move-to-cart", methods=["POST"])
@login_required
def wishlist_move_to_cart(product_id):
    user = current_user()
    cart_id = str(_payload().get("cartId") or "").strip()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, stock, status FROM products WHERE id=%s", (product_id,))
            product = cur.fetchone()
            if not product or product.get("status") != "ACTIVE":
                return _bad_request("Product not found", 404)
            if _to_int(product.get("stock")) <= 0:
                return _bad_request("Product out of stock")
            if not cart_id or not _cart_exists(cur, cart_id):
                cart_id = _create_cart(cur, user["id"])
            cur.execute(
                """
                INSERT INTO cart_items (cart_id, product_id, quantity) VALUES (%s, %s, 1)
                ON DUPLICATE KEY UPDATE quantity = quantity + 1
                """,
                (cart_id, product_id),
            )
            cur.execute(
                "DELETE FROM wishlist_items WHERE user_id=%s AND product_id=%s",
                (user["id"], product_id),
            )
            _refresh_abandoned_cart(cur, cart_id)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Moved to cart", cartId=cart_id)


# Reviews

REVIEW_SORTS = {
    "newest": "r.created_at DESC",
    "oldest": "r.created_at ASC",
    "rating_high": "r.rating DESC",
    "rating_low": "r.rating ASC",
}


def refresh_product_rating(cur, product_id):
    cur.execute(
        "SELECT COUNT(*) AS review_count, AVG(rating) AS average FROM reviews WHERE product_id=%s",
        (product_id,),
    )
    stats = cur.fetchone() or {}
    cur.execute(
        "UPDATE products SET rating=%s, review_count=%s WHERE id=%s",
        (round(_to_float(stats.get("average")), 2), _to_int(stats.get("review_count")), product_id),
    )


def rating_distribution(rows):
    counts = {int(_row_at(r, 0, 0)): _to_int(_row_at(r, 1, 0)) for r in rows or []}
    return [{"rating": r, "count": counts.get(r, 0)} for r in (5, 4, 3, 2, 1)]


@app.route("/api/reviews/product/<int:product_id>")
def review_list(product_id):
    page, limit, offset = _paging(10, 50)
    order_sql = REVIEW_SORTS.get(request.args.get("sort") or "newest", REVIEW_SORTS["newest"])
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, "SELECT COUNT(*) AS c FROM reviews WHERE product_id=%s", (product_id,))
            cur.execute(
                f"""
                SELECT r.id, r.rating, r.title, r.comment, r.verified, r.created_at,
                       COALESCE(u.first_name, 'Anonymous') AS author
                FROM reviews r
                LEFT JOIN users u ON u.id = r.user_id
                WHERE r.product_id=%s
                ORDER BY {order_sql}
                LIMIT %s OFFSET %s
                """,
                (product_id, limit, offset),
            )
            reviews = cur.fetchall() or []
            cur.execute(
                "SELECT rating, COUNT(*) AS c FROM reviews WHERE product_id=%s GROUP BY rating",
                (product_id,),
            )
            dist_rows = cur.fetchall() or []
            average = _scalar(cur, "SELECT AVG(rating) AS a FROM reviews WHERE product_id=%s", (product_id,))
    finally:
        conn.close()
    for review in reviews:
        review["verified"] = bool(review.get("verified"))
    return jsonify(
        ok=True,
        reviews=_camel_rows(reviews),
        distribution=rating_distribution(dist_rows),
        averageRating=round(_to_float(average), 1),
        pagination=_pagination(page, limit, total),
    )


@app.route("/api/reviews", methods=["POST"])
@login_required
def review_create():
    user = current_user()
    data = _payload()
    product_id = _to_int(data.get("productId"))
    rating = _to_int(data.get("rating"))
    title = str(data.get("title") or "").strip()[:160] or None
    comment = str(data.get("comment") or data.get("content") or "").strip() or None
    if not product_id or rating < 1 or rating > 5:
        return _bad_request("A product and a rating between 1 and 5 are required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM products WHERE id=%s", (product_id,))
            if not cur.fetchone():
                return _bad_request("Product not found", 404)
            cur.execute(
                "SELECT id FROM reviews WHERE product_id=%s AND user_id=%s",
                (product_id, user["id"]),
            )
            if cur.fetchone():
                return _bad_request("You have already reviewed this product")
            verified = _scalar(
                cur,
                """
                SELECT COUNT(*) AS c
                FROM orders o JOIN order_items oi ON oi.order_id = o.id
                WHERE o.user_id=%s AND o.status='DELIVERED' AND oi.product_id=%s
                """,
                (user["id"], product_id),
            )
            cur.execute(
                """
                INSERT INTO reviews (product_id, user_id, rating, title, comment, verified)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (product_id, user["id"], rating, title, comment, 1 if verified else 0),
            )
            review_id = cur.lastrowid
            refresh_product_rating(cur, product_id)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Review submitted", reviewId=review_id, verified=bool(verified)), 201


def _own_review(cur, review_id, user):
    cur.execute("SELECT * FROM reviews WHERE id=%s", (review_id,))
    review = cur.fetchone()
    if not review:
        return None, _bad_request("Review not found", 404)
    if review["user_id"] != user["id"] and user.get("role") not in STAFF_ROLES:
        return None, _bad_request("Not authorized", 403)
    return review, None


@app.route("/api/reviews/<int:review_id>", methods=["PUT"])
@login_required
def review_update(review_id):
    data = _payload()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            review, error = _own_review(cur, review_id, current_user())
            if error:
                return error
            rating = _to_int(data.get("rating"), review["rating"])
            if rating < 1 or rating > 5:
                return _bad_request("Rating must be between 1 and 5")
            cur.execute(
                "UPDATE reviews SET rating=%s, title=%s, comment=%s WHERE id=%s",
                (
                    rating,
                    str(data.get("title", review.get("title")) or "").strip()[:160] or None,
                    str(data.get("comment", review.get("comment")) or "").strip() or None,
                    review_id,
                ),
            )
            refresh_product_rating(cur, review["product_id"])
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Review updated")


@app.route("/api/reviews/<int:review_id>", methods=["DELETE"])
@login_required
def review_delete(review_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            review, error = _own_review(cur, review_id, current_user())
            if error:
                return error
            cur.execute("DELETE FROM reviews WHERE id=%s", (review_id,))
            refresh_product_rating(cur, review["product_id"])
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Review deleted")


# Newsletter

@app.route("/api/newsletter/subscribe", methods=["POST"])
def newsletter_subscribe():
    data = _payload()
    email = _normalize_email(data.get("email"))
    if not validate_email_format(email):
        return _bad_request("Valid email is required")
    source = str(data.get("source") or "website")[:40]
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, status FROM newsletter_subscribers WHERE email=%s", (email,))
            existing = cur.fetchone()
            if existing and existing.get("status") == "SUBSCRIBED":
                return jsonify(ok=True, message="You're already subscribed!", alreadySubscribed=True)
            if existing:
                cur.execute(
                    """
                    UPDATE newsletter_subscribers
                    SET status='SUBSCRIBED', subscribed_at=%s, unsubscribed_at=NULL, source=%s
                    WHERE id=%s
                    """,
                    (_now_utc(), source, existing["id"]),
                )
            else:
                cur.execute(
                    "INSERT INTO newsletter_subscribers (email, source) VALUES (%s, %s)",
                    (email, source),
                )
        conn.commit()
    finally:
        conn.close()
    subject, text_body, html_body = mailer.build_newsletter_welcome_email(email)
    mailer.send_email(email, subject, text_body, html_body)
    return jsonify(ok=True, message="Successfully subscribed to our newsletter!")


@app.route("/api/newsletter/unsubscribe", methods=["POST"])
def newsletter_unsubscribe():
    email = _normalize_email(_payload().get("email"))
    if not email:
        return _bad_request("Email is required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE newsletter_subscribers SET status='UNSUBSCRIBED', unsubscribed_at=%s
                WHERE email=%s AND status='SUBSCRIBED'
                """,
                (_now_utc(), email),
            )
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="You have been unsubscribed")


@app.route("/api/newsletter/status")
def newsletter_status():
    email = _normalize_email(request.args.get("email"))
    if not email:
        return _bad_request("Email is required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT status FROM newsletter_subscribers WHERE email=%s", (email,))
            row = cur.fetchone()
    finally:
        conn.close()
    return jsonify(ok=True, subscribed=bool(row and row.get("status") == "SUBSCRIBED"))


# Loyalty

@app.route("/api/loyalty")
@login_required
def loyalty_account():
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            account = get_or_create_loyalty_account(cur, user["id"])
            cur.execute(
                """
                SELECT id, type, points, description, order_id, created_at
                FROM loyalty_transactions
                WHERE account_id=%s
                ORDER BY created_at DESC, id DESC
                LIMIT 10
                """,
                (account["id"],),
            )
            recent = cur.fetchall() or []
        conn.commit()
    finally:
        conn.close()
    points = _to_int(account.get("points"))
    return jsonify(
        ok=True,
        account={
            "points": points,
            "lifetimePoints": _to_int(account.get("lifetime_points")),
            "tier": account.get("tier") or loyalty_tier(account.get("lifetime_points")),
            "pointsValue": points // LOYALTY_POINTS_PER_CURRENCY_UNIT,
            "nextTier": loyalty_next_tier(account.get("lifetime_points")),
        },
        recentTransactions=_camel_rows(recent),
        tiers=[{"name": name, "minPoints": threshold} for name, threshold in reversed(LOYALTY_TIERS)],
    )


@app.route("/api/loyalty/transactions")
@login_required
def loyalty_transactions():
    user = current_user()
    page, limit, offset = _paging(20, 100)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            account = get_or_create_loyalty_account(cur, user["id"])
            total = _scalar(
                cur,
                "SELECT COUNT(*) AS c FROM loyalty_transactions WHERE account_id=%s",
                (account["id"],),
            )
            cur.execute(
                """
                SELECT id, type, points, description, order_id, created_at
                FROM loyalty_transactions
                WHERE account_id=%s
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (account["id"], limit, offset),
            )
            transactions = cur.fetchall() or []
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, transactions=_camel_rows(transactions), pagination=_pagination(page, limit, total))


@app.route("/api/loyalty/redeem", methods=["POST"])
@login_required
def loyalty_redeem():
    user = current_user()
    points = _to_int(_payload().get("points"))
    if points < LOYALTY_MIN_REDEEM:
        return _bad_request(f"Minimum {LOYALTY_MIN_REDEEM} points required for redemption")
    points -= points % LOYALTY_POINTS_PER_CURRENCY_UNIT
    value = points // LOYALTY_POINTS_PER_CURRENCY_UNIT

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            account = get_or_create_loyalty_account(cur, user["id"])
            if _to_int(account.get("points")) < points:
                conn.commit()
                return _bad_request("Insufficient points")
            coupon_code = create_coupon(cur, "LOYALTY", "FIXED", value, 30, f"Loyalty redemption ({points} points)")
            cur.execute(
                "UPDATE loyalty_accounts SET points = points - %s WHERE id=%s AND points >= %s",
                (points, account["id"], points),
            )
            if not cur.rowcount:
                conn.rollback()
                return _bad_request("Insufficient points")
            cur.execute(
                """
                INSERT INTO loyalty_transactions (account_id, type, points, description)
                VALUES (%s, 'REDEMPTION', %s, %s)
                """,
                (account["id"], -points, f"Redeemed {points} points for {DEFAULT_CURRENCY} {value} discount"),
            )
            cur.execute("SELECT valid_until FROM coupons WHERE code=%s", (coupon_code,))
            coupon = cur.fetchone() or {}
        conn.commit()
    finally:
        conn.close()
    app.logger.info("User %s redeemed %s loyalty points", user["id"], points)
    return jsonify(
        ok=True,
        message=f"Successfully redeemed {points} points!",
        coupon={"code": coupon_code, "value": value, "validUntil": coupon.get("valid_until")},
        remainingPoints=_to_int(account.get("points")) - points,
    )


# Referrals

@app.route("/api/referrals/code")
@login_required
def referral_code():
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            code_row = get_or_create_referral_code(cur, user["id"])
            cur.execute(
                """
                SELECT r.id, r.status, r.created_at, r.qualified_at, u.first_name AS referee_name
                FROM referrals r
                LEFT JOIN users u ON u.id = r.referee_id
                WHERE r.referrer_id=%s
                ORDER BY r.created_at DESC
                """,
                (user["id"],),
            )
            referrals = cur.fetchall() or []
        conn.commit()
    finally:
        conn.close()
    qualified = sum(1 for r in referrals if r.get("status") in ("QUALIFIED", "REWARDED"))
    return jsonify(
        ok=True,
        code=code_row["code"],
        shareUrl=f"{FRONTEND_URL}?ref={code_row['code']}",
        referrals=_camel_rows(referrals),
        stats={
            "totalReferrals": _to_int(code_row.get("total_referrals")),
            "qualifiedReferrals": qualified,
            "totalEarnings": _to_float(code_row.get("total_earnings")),
        },
        rewards={"referrerReward": REFERRER_REWARD, "refereeDiscount": REFEREE_DISCOUNT_PCT},
    )


@app.route("/api/referrals/apply", methods=["POST"])
@login_required
def referral_apply():
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            result, error, status = apply_referral_code(cur, user["id"], _payload().get("code"))
            if error:
                return _bad_request(error, status)
        conn.commit()
    finally:
        conn.close()
    return jsonify(
        ok=True,
        message=f"Referral applied! Use code {result['couponCode']} for {REFEREE_DISCOUNT_PCT}% off your first order.",
        **result,
    )


@app.route("/api/referrals/check/<code>")
def referral_check(code):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT rc.code, u.first_name
                FROM referral_codes rc
                JOIN users u ON u.id = rc.user_id
                WHERE rc.code=%s
                LIMIT 1
                """,
                (str(code or "").strip().upper(),),
            )
            row = cur.fetchone()
    finally:
        conn.close()
    if not row:
        return _bad_request("Invalid referral code", 404, valid=False)
    return jsonify(
        ok=True,
        valid=True,
        referrerName=row.get("first_name") or "A friend",
        discount=REFEREE_DISCOUNT_PCT,
    )


# Gift cards

def _gift_card_problem(card):
    if not card:
        return "Gift card not found", 404
    if not card.get("is_active"):
        return "Gift card is inactive", 400
    if card.get("expires_at") and card["expires_at"] < _now_utc():
        return "Gift card has expired", 400
    return None, None


@app.route("/api/gift-cards/amounts")
def gift_card_amounts():
    return jsonify(ok=True, amounts=GIFT_CARD_AMOUNTS, currency=GIFT_CARD_CURRENCY)


@app.route("/api/gift-cards/check/<code>")
def gift_card_check(code):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM gift_cards WHERE code=%s LIMIT 1", (str(code or "").strip().upper(),))
            card = cur.fetchone()
    finally:
        conn.close()
    error, status = _gift_card_problem(card)
    if error:
        return _bad_request(error, status)
    return jsonify(
        ok=True,
        code=card["code"],
        balance=card["balance"],
        currency=card["currency"],
        expiresAt=card["expires_at"],
    )


@app.route("/api/gift-cards/purchase", methods=["POST"])
def gift_card_purchase():
    data = _payload()
    amount = _to_int(data.get("amount"))
    recipient_email = _normalize_email(data.get("recipientEmail"))
    recipient_name = str(data.get("recipientName") or "").strip() or None
    sender_name = str(data.get("senderName") or "").strip() or None
    message = str(data.get("message") or "").strip()[:500] or None
    user = current_user()
    purchaser_email = _normalize_email(data.get("purchaserEmail")) or (user or {}).get("email")

    if amount not in GIFT_CARD_AMOUNTS:
        return _bad_request("Invalid amount", validAmounts=GIFT_CARD_AMOUNTS)
    if not validate_email_format(recipient_email):
        return _bad_request("A valid recipient email is required")
    if not purchaser_email:
        return _bad_request("Purchaser email is required")

    expires_at = _now_utc() + timedelta(days=365)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            for _ in range(8):
                code = generate_gift_card_code()
                try:
                    cur.execute(
                        """
                        INSERT INTO gift_cards
                        (code, initial_amount, balance, currency, purchaser_id, purchaser_email,
                         recipient_email, recipient_name, sender_name, message, expires_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            code,
                            amount,
                            amount,
                            GIFT_CARD_CURRENCY,
                            user["id"] if user else None,
                            purchaser_email,
                            recipient_email,
                            recipient_name,
                            sender_name,
                            message,
                            expires_at,
                        ),
                    )
                    break
                except pymysql.err.IntegrityError:
                    continue
            else:
                raise RuntimeError("Could not allocate a unique gift card code")
            gift_card_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()

    subject, text_body, html_body = mailer.build_gift_card_email(
        code,
        amount,
        GIFT_CARD_CURRENCY,
        sender_name or "Someone special",
        recipient_name or "there",
        message or "",
        expires_at,
    )
    if not mailer.send_email(recipient_email, subject, text_body, html_body):
        app.logger.warning("Gift card %s email could not be delivered to %s", code, recipient_email)
    return jsonify(
        ok=True,
        message="Gift card created successfully",
        giftCard={
            "id": gift_card_id,
            "code": code,
            "amount": amount,
            "currency": GIFT_CARD_CURRENCY,
            "recipientEmail": recipient_email,
            "expiresAt": expires_at,
        },
    ), 201


@app.route("/api/gift-cards/redeem", methods=["POST"])
def gift_card_redeem():
    data = _payload()
    code = str(data.get("code") or "").strip().upper()
    amount = _to_float(data.get("amount"))
    if not code or amount <= 0:
        return _bad_request("Code and amount are required")
    user = current_user()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM gift_cards WHERE code=%s LIMIT 1 FOR UPDATE", (code,))
            card = cur.fetchone()
            error, status = _gift_card_problem(card)
            if error:
                return _bad_request(error, status)
            balance = _to_float(card.get("balance"))
            if balance <= 0:
                return _bad_request("Gift card has no remaining balance")
            applied = _money(min(amount, balance))
            new_balance = _money(balance - applied)
            cur.execute(
                "UPDATE gift_cards SET balance=%s, is_active=%s WHERE id=%s",
                (new_balance, 1 if new_balance > 0 else 0, card["id"]),
            )
            cur.execute(
                "INSERT INTO gift_card_redemptions (gift_card_id, order_id, user_id, amount) VALUES (%s, %s, %s, %s)",
                (card["id"], data.get("orderId"), user["id"] if user else None, applied),
            )
        conn.commit()
    finally:
        conn.close()
    return jsonify(
        ok=True,
        message="Gift card redeemed successfully",
        amountApplied=applied,
        remainingBalance=new_balance,
        currency=card["currency"],
    )


# Support tickets

def _load_ticket(cur, where_sql: str, params, include_internal: bool = False):
    cur.execute(f"SELECT * FROM support_tickets WHERE {where_sql} LIMIT 1", params)
    ticket = cur.fetchone()
    if not ticket:
        return None
    internal_sql = "" if include_internal else " AND is_internal=0"
    cur.execute(
        f"""
        SELECT id, sender_type, sender_name, message, is_internal, created_at
        FROM ticket_messages
        WHERE ticket_id=%s{internal_sql}
        ORDER BY created_at ASC, id ASC
        """,
        (ticket["id"],),
    )
    data = _camel(ticket)
    data["messages"] = _camel_rows(cur.fetchall() or [])
    return data


@app.route("/api/tickets", methods=["POST"])
def ticket_create():
    data = _payload()
    user = current_user()
    email = _normalize_email(data.get("email") or (user or {}).get("email"))
    name = str(data.get("name") or "").strip() or " ".join(
        p for p in ((user or {}).get("first_name"), (user or {}).get("last_name")) if p
    )
    subject = str(data.get("subject") or "").strip()
    category = str(data.get("category") or "").strip().upper()
    message = str(data.get("message") or "").strip()
    order_id = data.get("orderId") or None

    if not validate_email_format(email):
        return _bad_request("A valid email is required")
    if not name:
        return _bad_request("Name is required")
    if not subject or len(subject) > 200:
        return _bad_request("Subject is required and must be at most 200 characters")
    if category not in TICKET_CATEGORIES:
        return _bad_request(f"Category must be one of {', '.join(TICKET_CATEGORIES)}")
    if len(message) < 10:
        return _bad_request("Message must be at least 10 characters")

    ticket_number = generate_ticket_number()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO support_tickets (ticket_number, user_id, email, name, subject, category, order_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (ticket_number, user["id"] if user else None, email, name, subject, category, order_id),
            )
            ticket_id = cur.lastrowid
            cur.execute(
                """
                INSERT INTO ticket_messages (ticket_id, sender_id, sender_type, sender_name, message)
                VALUES (%s, %s, 'CUSTOMER', %s, %s)
                """,
                (ticket_id, user["id"] if user else None, name, message),
            )
        conn.commit()
    finally:
        conn.close()
    subject_line, text_body, html_body = mailer.build_ticket_created_email(ticket_number, name, subject)
    mailer.send_email(email, subject_line, text_body, html_body)
    return jsonify(
        ok=True,
        message="Support ticket created successfully",
        ticket={"id": ticket_id, "ticketNumber": ticket_number, "status": "OPEN"},
    ), 201


@app.route("/api/tickets")
@login_required
def ticket_list():
    user = current_user()
    page, limit, offset = _paging(10, 50)
    where = ["user_id=%s"]
    params = [user["id"]]
    status = str(request.args.get("status") or "").upper()
    if status in TICKET_STATUSES:
        where.append("status=%s")
        params.append(status)
    where_sql = " AND ".join(where)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, f"SELECT COUNT(*) AS c FROM support_tickets WHERE {where_sql}", tuple(params))
            cur.execute(
                f"""
                SELECT t.*, (SELECT COUNT(*) FROM ticket_messages m
                             WHERE m.ticket_id = t.id AND m.is_internal=0) AS message_count
                FROM support_tickets t
                WHERE {where_sql}
                ORDER BY t.updated_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, offset),
            )
            tickets = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, tickets=_camel_rows(tickets), pagination=_pagination(page, limit, total))


@app.route("/api/tickets/lookup/<ticket_number>")
def ticket_lookup(ticket_number):
    email = _normalize_email(request.args.get("email"))
    if not email:
        return _bad_request("Email required for ticket lookup")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            ticket = _load_ticket(cur, "ticket_number=%s AND email=%s", (ticket_number, email))
    finally:
        conn.close()
    if not ticket:
        return _bad_request("Ticket not found", 404)
    return jsonify(ok=True, ticket=ticket)


@app.route("/api/tickets/<int:ticket_id>")
@login_required
def ticket_detail(ticket_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            ticket = _load_ticket(cur, "id=%s AND user_id=%s", (ticket_id, current_user()["id"]))
    finally:
        conn.close()
    if not ticket:
        return _bad_request("Ticket not found", 404)
    return jsonify(ok=True, ticket=ticket)


@app.route("/api/tickets/<int:ticket_id>/messages", methods=["POST"])
@login_required
def ticket_add_message(ticket_id):
    user = current_user()
    message = str(_payload().get("message") or "").strip()
    if not message:
        return _bad_request("Message is required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, status FROM support_tickets WHERE id=%s AND user_id=%s",
                (ticket_id, user["id"]),
            )
            ticket = cur.fetchone()
            if not ticket:
                return _bad_request("Ticket not found", 404)
            cur.execute(
                """
                INSERT INTO ticket_messages (ticket_id, sender_id, sender_type, sender_name, message)
                VALUES (%s, %s, 'CUSTOMER', %s, %s)
                """,
                (ticket_id, user["id"], user.get("first_name") or user["email"], message),
            )
            message_id = cur.lastrowid
            new_status = "OPEN" if ticket["status"] in ("RESOLVED", "CLOSED", "WAITING_CUSTOMER") else ticket["status"]
            cur.execute("UPDATE support_tickets SET status=%s WHERE id=%s", (new_status, ticket_id))
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, messageId=message_id, status=new_status), 201


# Returns

@app.route("/api/returns", methods=["POST"])
@login_required
def return_create():
    user = current_user()
    data = _payload()
    order_id = _to_int(data.get("orderId"))
    reason = str(data.get("reason") or "").strip().upper()
    notes = str(data.get("notes") or "").strip() or None
    items = data.get("items") if isinstance(data.get("items"), list) else []
    if reason not in RETURN_REASONS:
        return _bad_request(f"Reason must be one of {', '.join(RETURN_REASONS)}")
    if not items:
        return _bad_request("At least one item is required")

    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id FROM orders WHERE id=%s AND user_id=%s AND status IN ('DELIVERED', 'SHIPPED')",
                (order_id, user["id"]),
            )
            if not cur.fetchone():
                return _bad_request("Order not found or not eligible for return", 404)
            cur.execute(
                "SELECT id FROM returns WHERE order_id=%s AND status NOT IN ('REJECTED', 'CLOSED') LIMIT 1",
                (order_id,),
            )
            if cur.fetchone():
                return _bad_request("A return request already exists for this order")
            cur.execute("SELECT id, quantity FROM order_items WHERE order_id=%s", (order_id,))
            ordered = {row["id"]: _to_int(row["quantity"]) for row in cur.fetchall() or []}

            lines = []
            for item in items:
                if not isinstance(item, dict):
                    return _bad_request("Invalid return item")
                item_id = _to_int(item.get("orderItemId"))
                qty = _to_int(item.get("quantity"))
                condition = str(item.get("condition") or "").strip().upper()
                item_reason = str(item.get("reason") or reason).strip().upper()
                if item_id not in ordered:
                    return _bad_request("Item does not belong to this order")
                if qty < 1 or qty > ordered[item_id]:
                    return _bad_request("Return quantity exceeds the ordered quantity")
                if condition not in RETURN_CONDITIONS:
                    return _bad_request(f"Condition must be one of {', '.join(RETURN_CONDITIONS)}")
                if item_reason not in RETURN_REASONS:
                    item_reason = reason
                lines.append((item_id, qty, item_reason, condition))

            return_number = generate_return_number()
            cur.execute(
                """
                INSERT INTO returns (return_number, order_id, user_id, reason, notes)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (return_number, order_id, user["id"], reason, notes),
            )
            return_id = cur.lastrowid
            for item_id, qty, item_reason, condition in lines:
                cur.execute(
                    """
                    INSERT INTO return_items (return_id, order_item_id, quantity, reason, item_condition)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (return_id, item_id, qty, item_reason, condition),
                )
        conn.commit()
    finally:
        conn.close()
    return jsonify(
        ok=True,
        message="Return request submitted",
        returnRequest={"id": return_id, "returnNumber": return_number, "status": "PENDING"},
    ), 201


@app.route("/api/returns")
@login_required
def return_list():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT r.*, o.order_number
                FROM returns r
                JOIN orders o ON o.id = r.order_id
                WHERE r.user_id=%s
                ORDER BY r.created_at DESC
                """,
                (current_user()["id"],),
            )
            returns = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, returns=_camel_rows(returns))


@app.route("/api/returns/<int:return_id>")
@login_required
def return_detail(return_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT r.*, o.order_number
                FROM returns r
                JOIN orders o ON o.id = r.order_id
                WHERE r.id=%s AND r.user_id=%s
                """,
                (return_id, current_user()["id"]),
            )
            ret = cur.fetchone()
            if not ret:
                return _bad_request("Return request not found", 404)
            cur.execute(
                """
                SELECT ri.id, ri.order_item_id, ri.quantity, ri.reason, ri.item_condition,
                       oi.product_name, oi.price
                FROM return_items ri
                JOIN order_items oi ON oi.id = ri.order_item_id
                WHERE ri.return_id=%s
                """,
                (return_id,),
            )
            items = cur.fetchall() or []
    finally:
        conn.close()
    data = _camel(ret)
    data["items"] = _camel_rows(items)
    return jsonify(ok=True, returnRequest=data)


@app.route("/api/returns/<int:return_id>", methods=["DELETE"])
@login_required
def return_cancel(return_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE returns SET status='CLOSED' WHERE id=%s AND user_id=%s AND status='PENDING'",
                (return_id, current_user()["id"]),
            )
            updated = cur.rowcount
        conn.commit()
    finally:
        conn.close()
    if not updated:
        return _bad_request("Return request not found or cannot be cancelled", 404)
    return jsonify(ok=True, message="Return request cancelled")


# Blog

@app.route("/api/blog")
def blog_list():
    args = request.args
    page, limit, offset = _paging(10, 50)
    where = ["status='PUBLISHED'"]
    params = []
    if args.get("category"):
        where.append("category=%s")
        params.append(args["category"])
    if args.get("search"):
        where.append("(title LIKE %s OR excerpt LIKE %s)")
        like = f"%{args['search']}%"
        params.extend([like, like])
    if args.get("tag"):
        where.append("FIND_IN_SET(%s, tags)")
        params.append(args["tag"])
    where_sql = " AND ".join(where)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, f"SELECT COUNT(*) AS c FROM blog_posts WHERE {where_sql}", tuple(params))
            cur.execute(
                f"""
                SELECT id, title, slug, excerpt, cover_image, category, tags, views, published_at
                FROM blog_posts
                WHERE {where_sql}
                ORDER BY published_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, offset),
            )
            posts = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, posts=_camel_rows(posts), pagination=_pagination(page, limit, total))


@app.route("/api/blog/categories")
def blog_categories():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT category AS name, COUNT(*) AS count
                FROM blog_posts
                WHERE status='PUBLISHED' AND category IS NOT NULL AND category <> ''
                GROUP BY category
                ORDER BY count DESC
                """
            )
            categories = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, categories=categories)


@app.route("/api/blog/<slug>")
def blog_detail(slug):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT b.*, u.first_name AS author_name
                FROM blog_posts b
                LEFT JOIN users u ON u.id = b.author_id
                WHERE b.slug=%s AND b.status='PUBLISHED'
                LIMIT 1
                """,
                (slug,),
            )
            post = cur.fetchone()
            if not post:
                return _bad_request("Post not found", 404)
            cur.execute("UPDATE blog_posts SET views = views + 1 WHERE id=%s", (post["id"],))
            cur.execute(
                """
                SELECT id, title, slug, excerpt, cover_image, published_at
                FROM blog_posts
                WHERE status='PUBLISHED' AND id<>%s AND category <=> %s
                ORDER BY published_at DESC
                LIMIT 3
                """,
                (post["id"], post.get("category")),
            )
            related = cur.fetchall() or []
        conn.commit()
    finally:
        conn.close()
    data = _camel(post, drop=("author_id",))
    data["views"] = _to_int(post.get("views")) + 1
    return jsonify(ok=True, post=data, related=_camel_rows(related))


# Banners

BANNER_COLUMNS = "id, title, subtitle, image, link, position, sort_order"
BANNER_WINDOW_SQL = "is_active=1 AND (starts_at IS NULL OR starts_at <= %s) AND (ends_at IS NULL OR ends_at >= %s)"


@app.route("/api/banners")
def banner_list():
    now = _now_utc()
    where_sql = BANNER_WINDOW_SQL
    params = [now, now]
    if request.args.get("position"):
        where_sql += " AND position=%s"
        params.append(request.args["position"])
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {BANNER_COLUMNS} FROM banners WHERE {where_sql} ORDER BY sort_order ASC, id ASC",
                tuple(params),
            )
            banners = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, banners=_camel_rows(banners))


@app.route("/api/banners/home")
def banner_home():
    now = _now_utc()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {BANNER_COLUMNS} FROM banners
                WHERE {BANNER_WINDOW_SQL} AND position IN ('home-hero', 'home-secondary')
                ORDER BY position ASC, sort_order ASC
                """,
                (now, now),
            )
            banners = _camel_rows(cur.fetchall() or [])
    finally:
        conn.close()
    return jsonify(
        ok=True,
        hero=[b for b in banners if b["position"] == "home-hero"],
        secondary=[b for b in banners if b["position"] == "home-secondary"],
    )


# Currencies

def convert_amount(amount, from_rate, to_rate, decimal_places: int = 2) -> float:
    """Convert through the base currency; rates are units per one base unit."""
    base_amount = _to_float(amount) / _to_float(from_rate, 1.0)
    return round(base_amount * _to_float(to_rate, 1.0), int(decimal_places))


@app.route("/api/currencies")
def currency_list():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT code, name, symbol, exchange_rate, decimal_places, is_base
                FROM currencies WHERE is_active=1
                ORDER BY is_base DESC, code ASC
                """
            )
            currencies = cur.fetchall() or []
    finally:
        conn.close()
    for row in currencies:
        row["is_base"] = bool(row.get("is_base"))
    return jsonify(ok=True, currencies=_camel_rows(currencies))


@app.route("/api/currencies/rates")
def currency_rates():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT code, symbol, exchange_rate, decimal_places, updated_at FROM currencies WHERE is_active=1"
            )
            rows = cur.fetchall() or []
    finally:
        conn.close()
    rates = {
        row["code"]: {
            "rate": _to_float(row.get("exchange_rate")),
            "symbol": row.get("symbol"),
            "decimalPlaces": row.get("decimal_places"),
        }
        for row in rows
    }
    updated = [row["updated_at"] for row in rows if row.get("updated_at")]
    return jsonify(ok=True, base="UGX", rates=rates, updatedAt=max(updated) if updated else None)


@app.route("/api/currencies/convert")
def currency_convert():
    amount_raw = request.args.get("amount")
    from_code = str(request.args.get("from") or "UGX").upper()
    to_code = str(request.args.get("to") or "USD").upper()
    try:
        amount = float(amount_raw)
    except (TypeError, ValueError):
        return _bad_request("Invalid amount")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT code, symbol, exchange_rate, decimal_places FROM currencies WHERE code IN (%s, %s)",
                (from_code, to_code),
            )
            found = {row["code"]: row for row in cur.fetchall() or []}
    finally:
        conn.close()
    source = found.get(from_code)
    target = found.get(to_code)
    if not source or not target:
        return _bad_request("Invalid currency code")
    return jsonify(
        ok=True,
        **{"from": {"code": from_code, "amount": amount}},
        to={
            "code": to_code,
            "amount": convert_amount(amount, source["exchange_rate"], target["exchange_rate"], target["decimal_places"]),
            "symbol": target["symbol"],
        },
        rate=_to_float(target["exchange_rate"]) / _to_float(source["exchange_rate"], 1.0),
    )


# Settings and analytics

def load_settings(cur, keys=None) -> dict:
    if keys:
        placeholders = ", ".join(["%s"] * len(keys))
        cur.execute(
            f"SELECT setting_key, setting_value FROM settings WHERE setting_key IN ({placeholders})",
            tuple(keys),
        )
    else:
        cur.execute("SELECT setting_key, setting_value FROM settings")
    settings = {}
    for row in cur.fetchall() or []:
        value = row.get("setting_value")
        parsed = _json_field(value, None)
        settings[row["setting_key"]] = parsed if parsed is not None else value
    return settings


@app.route("/api/settings/public")
def settings_public():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            settings = load_settings(cur, PUBLIC_SETTING_KEYS)
    finally:
        conn.close()
    return jsonify(ok=True, settings=settings)


@app.route("/api/analytics/track", methods=["POST"])
def analytics_track():
    data = request.get_json(silent=True) or {}
    path = str(data.get("path") or "").strip()
    if not path:
        return _bad_request("Path is required")
    try:
        conn = db_connect()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO page_views (path, referrer, user_agent, session_id) VALUES (%s, %s, %s, %s)",
                    (
                        path[:500],
                        str(data.get("referrer") or "")[:500] or None,
                        (request.headers.get("User-Agent") or "")[:500] or None,
                        str(data.get("sessionId") or "")[:64] or None,
                    ),
                )
            conn.commit()
        finally:
            conn.close()
    except Exception:
        app.logger.warning("Page view tracking failed for %s", path[:100], exc_info=True)
    return "", 204


# Product media

IMAGE_SIGNATURES = (
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG\r\n\x1a\n", "png"),
)


def sniff_image_type(head: bytes):
    for signature, kind in IMAGE_SIGNATURES:
        if head.startswith(signature):
            return kind
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    return None


def compress_image(path: str, max_size: int = PRODUCT_MAX_IMAGE_PX, quality: int = PRODUCT_IMAGE_QUALITY) -> None:
    try:
        img = Image.open(path)
        img_format = (img.format or "JPEG").upper()
        img = ImageOps.exif_transpose(img)
        img.thumbnail((max_size, max_size))
        if img_format in {"JPEG", "JPG"} and img.mode in {"RGBA", "P"}:
            img = img.convert("RGB")
        save_kwargs = {}
        if img_format in {"JPEG", "JPG"}:
            save_kwargs.update({"optimize": True, "quality": max(35, min(quality, 95))})
        elif img_format == "WEBP":
            save_kwargs.update({"method": 6, "quality": max(35, min(quality, 95))})
        elif img_format == "PNG":
            save_kwargs["optimize"] = True
        img.save(path, img_format, **save_kwargs)
    except (OSError, ValueError):
        app.logger.warning("Could not compress image %s", path, exc_info=True)


def _cloudinary_upload_path(path: str, folder: str):
    if not USE_CLOUDINARY:
        return None
    try:
        result = cloudinary.uploader.upload(
            path,
            folder=folder,
            resource_type="image",
            overwrite=False,
            unique_filename=True,
        )
        return result.get("secure_url") or result.get("url")
    except Exception:
        app.logger.warning("Cloudinary upload failed for %s", path, exc_info=True)
        return None


def store_product_image(file_storage, product_id):
    """Validate, compress and store an upload. Returns (url, error)."""
    filename = secure_filename(file_storage.filename or "")
    if not filename or not allowed_file(filename):
        return None, "Only PNG, JPG and WEBP images are allowed"
    head = file_storage.stream.read(16)
    file_storage.stream.seek(0)
    kind = sniff_image_type(head)
    if not kind:
        return None, "File content does not match an image type"

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)
    ext = "jpg" if kind == "jpeg" else kind
    stored_name = f"product-{product_id}-{uuid.uuid4().hex[:12]}.{ext}"
    path = os.path.join(app.config["UPLOAD_FOLDER"], stored_name)
    file_storage.save(path)
    if os.path.getsize(path) > PRODUCT_MAX_IMAGE_BYTES:
        os.remove(path)
        return None, "Image is too large"
    compress_image(path)

    remote = _cloudinary_upload_path(path, "pleasurezone/products")
    if remote:
        try:
            os.remove(path)
        except OSError:
            pass
        return remote, None
    return f"/uploads/images/{stored_name}", None


def remove_stored_image(url: str):
    if not url or not url.startswith("/uploads/"):
        return
    path = os.path.join(app.config["UPLOAD_ROOT"], url[len("/uploads/"):])
    try:
        os.remove(path)
    except OSError:
        pass


# Admin: dashboard

def _growth(current, previous) -> float:
    current = _to_float(current)
    previous = _to_float(previous)
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def month_bounds(now: datetime):
    start_of_month = datetime(now.year, now.month, 1)
    if now.month == 1:
        start_of_last = datetime(now.year - 1, 12, 1)
    else:
        start_of_last = datetime(now.year, now.month - 1, 1)
    return start_of_month, start_of_last


@app.route("/api/admin/dashboard")
@admin_required
def admin_dashboard():
    start_of_month, start_of_last = month_bounds(_now_utc())
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total_orders = _scalar(cur, "SELECT COUNT(*) AS c FROM orders")
            month_orders = _scalar(cur, "SELECT COUNT(*) AS c FROM orders WHERE created_at >= %s", (start_of_month,))
            last_month_orders = _scalar(
                cur,
                "SELECT COUNT(*) AS c FROM orders WHERE created_at >= %s AND created_at < %s",
                (start_of_last, start_of_month),
            )
            total_revenue = _scalar(cur, "SELECT SUM(total) AS s FROM orders WHERE payment_status='SUCCESSFUL'")
            month_revenue = _scalar(
                cur,
                "SELECT SUM(total) AS s FROM orders WHERE payment_status='SUCCESSFUL' AND created_at >= %s",
                (start_of_month,),
            )
            last_month_revenue = _scalar(
                cur,
                """
                SELECT SUM(total) AS s FROM orders
                WHERE payment_status='SUCCESSFUL' AND created_at >= %s AND created_at < %s
                """,
                (start_of_last, start_of_month),
            )
            total_customers = _scalar(cur, "SELECT COUNT(*) AS c FROM users WHERE role='CUSTOMER'")
            new_customers = _scalar(
                cur,
                "SELECT COUNT(*) AS c FROM users WHERE role='CUSTOMER' AND created_at >= %s",
                (start_of_month,),
            )
            total_products = _scalar(cur, "SELECT COUNT(*) AS c FROM products WHERE status='ACTIVE'")
            low_stock = _scalar(
                cur,
                "SELECT COUNT(*) AS c FROM products WHERE status='ACTIVE' AND track_inventory=1 AND stock <= %s",
                (LOW_STOCK_THRESHOLD,),
            )
            cur.execute("SELECT status, COUNT(*) AS c FROM orders GROUP BY status")
            by_status = {row["status"]: _to_int(row["c"]) for row in cur.fetchall() or []}
            cur.execute(
                """
                SELECT id, order_number, customer_name, total, currency, status, payment_status, created_at
                FROM orders ORDER BY created_at DESC LIMIT 5
                """
            )
            recent = cur.fetchall() or []
            cur.execute(
                """
                SELECT oi.product_id, COALESCE(p.name, oi.product_name) AS name, p.price,
                       SUM(oi.quantity) AS sold_count
                FROM order_items oi
                LEFT JOIN products p ON p.id = oi.product_id
                GROUP BY oi.product_id, name, p.price
                ORDER BY sold_count DESC
                LIMIT 5
                """
            )
            top_products = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(
        ok=True,
        stats={
            "orders": {
                "total": total_orders,
                "thisMonth": month_orders,
                "lastMonth": last_month_orders,
                "growth": _growth(month_orders, last_month_orders),
            },
            "revenue": {
                "total": _to_float(total_revenue),
                "thisMonth": _to_float(month_revenue),
                "lastMonth": _to_float(last_month_revenue),
                "growth": _growth(month_revenue, last_month_revenue),
                "currency": DEFAULT_CURRENCY,
            },
            "customers": {"total": total_customers, "newThisMonth": new_customers},
            "products": {"total": total_products, "lowStock": low_stock},
        },
        ordersByStatus=by_status,
        recentOrders=_camel_rows(recent),
        topProducts=_camel_rows(top_products),
    )


@app.route("/api/admin/dashboard/analytics")
@admin_required
def admin_dashboard_analytics():
    days = max(1, min(_to_int(request.args.get("days") or request.args.get("period"), 30), 365))
    start = _now_utc() - timedelta(days=days)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT DATE(created_at) AS date, SUM(total) AS revenue, COUNT(*) AS orders
                FROM orders
                WHERE created_at >= %s AND payment_status='SUCCESSFUL'
                GROUP BY DATE(created_at)
                ORDER BY date ASC
                """,
                (start,),
            )
            daily = cur.fetchall() or []
            cur.execute(
                """
                SELECT c.name AS category, SUM(oi.quantity) AS sold, SUM(oi.price * oi.quantity) AS revenue
                FROM order_items oi
                JOIN products p ON p.id = oi.product_id
                JOIN categories c ON c.id = p.category_id
                JOIN orders o ON o.id = oi.order_id
                WHERE o.created_at >= %s AND o.payment_status='SUCCESSFUL'
                GROUP BY c.id, c.name
                ORDER BY revenue DESC
                """,
                (start,),
            )
            categories = cur.fetchall() or []
            cur.execute(
                """
                SELECT method, COUNT(*) AS count, SUM(amount) AS amount
                FROM payments
                WHERE status='SUCCESSFUL' AND created_at >= %s
                GROUP BY method
                """,
                (start,),
            )
            methods = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(
        ok=True,
        period=days,
        dailyRevenue=_camel_rows(daily),
        categoryStats=_camel_rows(categories),
        paymentMethods=_camel_rows(methods),
    )


# Admin: orders

@app.route("/api/admin/orders")
@admin_required
def admin_order_list():
    args = request.args
    page, limit, offset = _paging(20, 100)
    where = ["1=1"]
    params = []
    if args.get("status") in ORDER_STATUSES:
        where.append("status=%s")
        params.append(args["status"])
    if args.get("paymentStatus") in PAYMENT_STATUSES:
        where.append("payment_status=%s")
        params.append(args["paymentStatus"])
    if args.get("search"):
        like = f"%{args['search'].strip()}%"
        where.append("(order_number LIKE %s OR customer_name LIKE %s OR email LIKE %s)")
        params.extend([like, like, like])
    where_sql = " AND ".join(where)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, f"SELECT COUNT(*) AS c FROM orders WHERE {where_sql}", tuple(params))
            cur.execute(
                f"""
                SELECT o.*, (SELECT COUNT(*) FROM order_items oi WHERE oi.order_id = o.id) AS item_count
                FROM orders o
                WHERE {where_sql}
                ORDER BY o.created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, offset),
            )
            orders = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, orders=_camel_rows(orders), pagination=_pagination(page, limit, total))


@app.route("/api/admin/orders/<int:order_id>")
@admin_required
def admin_order_detail(order_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            order = _load_order_detail(cur, "id=%s", (order_id,))
            if order:
                cur.execute("SELECT * FROM payments WHERE order_id=%s ORDER BY created_at ASC", (order_id,))
                order["payments"] = _camel_rows(cur.fetchall() or [])
    finally:
        conn.close()
    if not order:
        return _bad_request("Order not found", 404)
    return jsonify(ok=True, order=order)


@app.route("/api/admin/orders/<int:order_id>/status", methods=["PUT"])
@admin_required
def admin_order_status(order_id):
    data = _payload()
    status = str(data.get("status") or "").upper()
    note = str(data.get("note") or "").strip() or None
    tracking = str(data.get("trackingNumber") or "").strip() or None
    if status not in ORDER_STATUSES:
        return _bad_request(f"Status must be one of {', '.join(ORDER_STATUSES)}")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM orders WHERE id=%s FOR UPDATE", (order_id,))
            order = cur.fetchone()
            if not order:
                return _bad_request("Order not found", 404)
            if tracking:
                cur.execute("UPDATE orders SET status=%s, tracking_number=%s WHERE id=%s", (status, tracking, order_id))
            else:
                cur.execute("UPDATE orders SET status=%s WHERE id=%s", (status, order_id))
            record_order_event(cur, order_id, status, note or f"Order status changed to {status}")
            if status == "CANCELLED" and order["status"] != "CANCELLED":
                released = release_order_reservations(cur, order_id, consume=False)
                if not released and order.get("payment_status") == "SUCCESSFUL":
                    cur.execute("SELECT product_id, quantity FROM order_items WHERE order_id=%s", (order_id,))
                    for item in cur.fetchall() or []:
                        if item.get("product_id"):
                            cur.execute(
                                "UPDATE products SET stock = stock + %s WHERE id=%s",
                                (item["quantity"], item["product_id"]),
                            )
            cur.execute("SELECT * FROM orders WHERE id=%s", (order_id,))
            updated = cur.fetchone()
        conn.commit()
    finally:
        conn.close()

    if status == "SHIPPED" and order["status"] != "SHIPPED":
        subject, text_body, html_body = mailer.build_shipping_email(updated)
        mailer.send_email(updated.get("email"), subject, text_body, html_body)
        if updated.get("phone"):
            sms.send_shipping_sms(updated["phone"], updated["order_number"], updated.get("tracking_number"))
    log_activity(
        _staff_id(),
        "STATUS_CHANGE",
        "ORDER",
        order_id,
        f"Changed order {order['order_number']} status from {order['status']} to {status}",
        {"from": order["status"], "to": status, "trackingNumber": tracking},
    )
    return jsonify(ok=True, message="Order status updated")


@app.route("/api/admin/orders/<int:order_id>/refund", methods=["POST"])
@admin_required
def admin_order_refund(order_id):
    data = _payload()
    reason = str(data.get("reason") or "").strip() or None
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM orders WHERE id=%s", (order_id,))
            order = cur.fetchone()
            if not order:
                return _bad_request("Order not found", 404)
            cur.execute(
                "SELECT * FROM payments WHERE order_id=%s AND status='SUCCESSFUL' ORDER BY id DESC LIMIT 1",
                (order_id,),
            )
            payment = cur.fetchone()
            if order.get("payment_status") != "SUCCESSFUL":
                return _bad_request("Only paid orders can be refunded")
            amount = _to_float(data.get("amount")) or _to_float(order.get("total"))
            if amount <= 0 or amount > _to_float(order.get("total")) + 0.01:
                return _bad_request("Refund amount must be between 0 and the order total")

            provider_response = None
            if payment and payment.get("flw_tx_id"):
                try:
                    provider_response = flutterwave.refund_transaction(payment["flw_tx_id"], amount, reason)
                except flutterwave.FlutterwaveError as exc:
                    return _bad_request(str(exc), 502)

            cur.execute(
                "UPDATE orders SET status='REFUNDED', payment_status='REFUNDED' WHERE id=%s",
                (order_id,),
            )
            if payment:
                cur.execute("UPDATE payments SET status='REFUNDED' WHERE id=%s", (payment["id"],))
            cur.execute(
                """
                INSERT INTO payments (order_id, provider, method, status, amount, currency, tx_ref)
                VALUES (%s, %s, 'REFUND', 'REFUNDED', %s, %s, %s)
                """,
                (
                    order_id,
                    payment.get("provider") if payment else "MANUAL",
                    -amount,
                    order.get("currency"),
                    order.get("order_number"),
                ),
            )
            record_order_event(cur, order_id, "REFUNDED", reason or "Refund processed by admin")
        conn.commit()
    finally:
        conn.close()
    log_activity(
        _staff_id(),
        "REFUND",
        "ORDER",
        order_id,
        f"Refunded order {order['order_number']}" + (f": {reason}" if reason else ""),
        {"amount": amount, "reason": reason},
    )
    return jsonify(ok=True, message="Refund processed successfully", amount=amount, data=provider_response)


@app.route("/api/admin/orders/<int:order_id>/note", methods=["POST"])
@admin_required
def admin_order_note(order_id):
    note = str(_payload().get("note") or "").strip()
    if not note:
        return _bad_request("Note is required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, status FROM orders WHERE id=%s", (order_id,))
            order = cur.fetchone()
            if not order:
                return _bad_request("Order not found", 404)
            record_order_event(cur, order_id, "NOTE", note)
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, message="Note added")


# Admin: products

PRODUCT_WRITABLE = {
    "name": "name",
    "description": "description",
    "shortDescription": "short_description",
    "sku": "sku",
    "price": "price",
    "compareAtPrice": "compare_at_price",
    "categoryId": "category_id",
    "stock": "stock",
    "trackInventory": "track_inventory",
    "allowBackorder": "allow_backorder",
    "status": "status",
    "featured": "featured",
    "slug": "slug",
}
PRODUCT_STATUSES = ("ACTIVE", "DRAFT", "ARCHIVED")
BULK_PRODUCT_ACTIONS = {
    "activate": "UPDATE products SET status='ACTIVE' WHERE id IN ({ids})",
    "archive": "UPDATE products SET status='ARCHIVED' WHERE id IN ({ids})",
    "feature": "UPDATE products SET featured=1 WHERE id IN ({ids})",
    "unfeature": "UPDATE products SET featured=0 WHERE id IN ({ids})",
    "delete": "UPDATE products SET status='ARCHIVED' WHERE id IN ({ids})",
}


def _product_values(data):
    values = {}
    for key, column in PRODUCT_WRITABLE.items():
        if key not in data:
            continue
        value = data.get(key)
        if column in ("price", "compare_at_price"):
            value = None if value in (None, "") and column == "compare_at_price" else _money(value)
            if value is not None and value < 0:
                return None, "Prices cannot be negative"
        elif column in ("stock", "category_id"):
            value = None if value in (None, "") and column == "category_id" else _to_int(value)
            if column == "stock" and value < 0:
                return None, "Stock cannot be negative"
        elif column in ("track_inventory", "allow_backorder", "featured"):
            value = 1 if value else 0
        elif column == "status":
            value = str(value or "").upper()
            if value not in PRODUCT_STATUSES:
                return None, f"Status must be one of {', '.join(PRODUCT_STATUSES)}"
        elif column == "slug":
            value = slugify(value)
        else:
            value = str(value or "").strip() or None
        values[column] = value
    return values, None


@app.route("/api/admin/products")
@admin_required
def admin_product_list():
    args = request.args
    page, limit, offset = _paging(20, 100)
    where = ["1=1"]
    params = []
    if str(args.get("status") or "").upper() in PRODUCT_STATUSES:
        where.append("p.status=%s")
        params.append(args["status"].upper())
    if args.get("category"):
        where.append("(c.slug=%s OR c.id=%s)")
        params.extend([args["category"], _to_int(args["category"])])
    if args.get("search"):
        like = f"%{args['search'].strip()}%"
        where.append("(p.name LIKE %s OR p.sku LIKE %s)")
        params.extend([like, like])
    if args.get("stock") == "low":
        where.append("p.stock > 0 AND p.stock <= %s")
        params.append(LOW_STOCK_THRESHOLD)
    elif args.get("stock") == "out":
        where.append("p.stock = 0")
    where_sql = " AND ".join(where)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(
                cur,
                f"SELECT COUNT(*) AS c FROM products p LEFT JOIN categories c ON c.id = p.category_id WHERE {where_sql}",
                tuple(params),
            )
            cur.execute(
                f"""
                SELECT p.*, c.name AS category_name,
                       (SELECT url FROM product_images pi WHERE pi.product_id = p.id
                        ORDER BY pi.sort_order ASC, pi.id ASC LIMIT 1) AS image
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE {where_sql}
                ORDER BY p.created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, offset),
            )
            products = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, products=_camel_rows(products), pagination=_pagination(page, limit, total))


@app.route("/api/admin/products/<int:product_id>")
@admin_required
def admin_product_detail(product_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM products WHERE id=%s", (product_id,))
            product = cur.fetchone()
            if not product:
                return _bad_request("Product not found", 404)
            cur.execute(
                "SELECT id, url, alt, sort_order FROM product_images WHERE product_id=%s ORDER BY sort_order ASC, id ASC",
                (product_id,),
            )
            images = cur.fetchall() or []
    finally:
        conn.close()
    data = _camel(product)
    data["images"] = _camel_rows(images)
    return jsonify(ok=True, product=data)


@app.route("/api/admin/products", methods=["POST"])
@admin_required
def admin_product_create():
    data = _payload()
    values, error = _product_values(data)
    if error:
        return _bad_request(error)
    if not values.get("name") or values.get("price") is None:
        return _bad_request("Name and price are required")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            slug = values.get("slug") or slugify(values["name"])
            cur.execute("SELECT id FROM products WHERE slug=%s", (slug,))
            if cur.fetchone():
                slug = f"{slug}-{int(time.time() * 1000)}"
            values["slug"] = slug
            columns = list(values.keys())
            cur.execute(
                f"INSERT INTO products ({', '.join(columns)}) VALUES ({', '.join(['%s'] * len(columns))})",
                tuple(values.values()),
            )
            product_id = cur.lastrowid
            cur.execute("SELECT * FROM products WHERE id=%s", (product_id,))
            product = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "CREATE", "PRODUCT", product_id, describe_activity("CREATE", "PRODUCT", values["name"]))
    return jsonify(ok=True, product=_camel(product)), 201


@app.route("/api/admin/products/<int:product_id>", methods=["PUT"])
@admin_required
def admin_product_update(product_id):
    values, error = _product_values(_payload())
    if error:
        return _bad_request(error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, name FROM products WHERE id=%s", (product_id,))
            existing = cur.fetchone()
            if not existing:
                return _bad_request("Product not found", 404)
            if values.get("slug"):
                cur.execute("SELECT id FROM products WHERE slug=%s AND id<>%s", (values["slug"], product_id))
                if cur.fetchone():
                    return _bad_request("Slug already in use", 409)
            if values:
                assignments = ", ".join(f"{col}=%s" for col in values)
                cur.execute(
                    f"UPDATE products SET {assignments} WHERE id=%s",
                    tuple(values.values()) + (product_id,),
                )
            cur.execute("SELECT * FROM products WHERE id=%s", (product_id,))
            product = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(
        _staff_id(),
        "UPDATE",
        "PRODUCT",
        product_id,
        describe_activity("UPDATE", "PRODUCT", product.get("name")),
        {"fields": sorted(values.keys())},
    )
    return jsonify(ok=True, product=_camel(product))


@app.route("/api/admin/products/<int:product_id>", methods=["DELETE"])
@admin_required
def admin_product_delete(product_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT name FROM products WHERE id=%s", (product_id,))
            product = cur.fetchone()
            if not product:
                return _bad_request("Product not found", 404)
            cur.execute("UPDATE products SET status='ARCHIVED' WHERE id=%s", (product_id,))
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "DELETE", "PRODUCT", product_id, describe_activity("DELETE", "PRODUCT", product["name"]))
    return jsonify(ok=True, message="Product archived")


@app.route("/api/admin/products/<int:product_id>/images", methods=["POST"])
@admin_required
def admin_product_upload_images(product_id):
    files = [f for f in request.files.getlist("images") + request.files.getlist("image") if f and f.filename]
    if not files:
        return _bad_request("No files uploaded")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, name FROM products WHERE id=%s", (product_id,))
            product = cur.fetchone()
            if not product:
                return _bad_request("Product not found", 404)
            next_order = _to_int(
                _scalar(cur, "SELECT MAX(sort_order) AS m FROM product_images WHERE product_id=%s", (product_id,), -1),
                -1,
            ) + 1
            stored = []
            for offset, upload in enumerate(files):
                url, error = store_product_image(upload, product_id)
                if error:
                    for saved in stored:
                        remove_stored_image(saved["url"])
                    return _bad_request(f"{upload.filename}: {error}")
                cur.execute(
                    "INSERT INTO product_images (product_id, url, alt, sort_order) VALUES (%s, %s, %s, %s)",
                    (product_id, url, product["name"], next_order + offset),
                )
                stored.append({"id": cur.lastrowid, "url": url, "sortOrder": next_order + offset})
        conn.commit()
    finally:
        conn.close()
    return jsonify(ok=True, images=stored), 201


@app.route("/api/admin/products/<int:product_id>/images/<int:image_id>", methods=["DELETE"])
@admin_required
def admin_product_delete_image(product_id, image_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, url FROM product_images WHERE id=%s AND product_id=%s",
                (image_id, product_id),
            )
            image = cur.fetchone()
            if not image:
                return _bad_request("Image not found", 404)
            cur.execute("DELETE FROM product_images WHERE id=%s", (image_id,))
        conn.commit()
    finally:
        conn.close()
    remove_stored_image(image["url"])
    return jsonify(ok=True, message="Image deleted")


@app.route("/api/admin/products/bulk", methods=["POST"])
@admin_required
def admin_product_bulk():
    data = _payload()
    action = str(data.get("action") or "").lower()
    ids = [i for i in (_to_int(x) for x in (data.get("ids") or [])) if i > 0]
    if action not in BULK_PRODUCT_ACTIONS:
        return _bad_request(f"Action must be one of {', '.join(BULK_PRODUCT_ACTIONS)}")
    if not ids:
        return _bad_request("No products selected")
    placeholders = ", ".join(["%s"] * len(ids))
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(BULK_PRODUCT_ACTIONS[action].format(ids=placeholders), tuple(ids))
            affected = cur.rowcount
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "BULK_UPDATE", "PRODUCT", None, metadata={"action": action, "ids": ids})
    return jsonify(ok=True, message=f"{affected} products updated", affected=affected)


# Admin: customers

@app.route("/api/admin/customers")
@admin_required
def admin_customer_list():
    page, limit, offset = _paging(20, 100)
    search = str(request.args.get("search") or "").strip()
    where = "u.role='CUSTOMER'"
    params = []
    if search:
        like = f"%{search}%"
        where += " AND (u.email LIKE %s OR u.first_name LIKE %s OR u.last_name LIKE %s OR u.phone LIKE %s)"
        params.extend([like, like, like, like])
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, f"SELECT COUNT(*) AS c FROM users u WHERE {where}", tuple(params))
            cur.execute(
                f"""
                SELECT u.id, u.email, u.first_name, u.last_name, u.phone, u.is_active, u.email_verified,
                       u.created_at, u.last_login_at,
                       COUNT(o.id) AS order_count,
                       COALESCE(SUM(CASE WHEN o.payment_status='SUCCESSFUL' THEN o.total ELSE 0 END), 0) AS total_spent
                FROM users u
                LEFT JOIN orders o ON o.user_id = u.id
                WHERE {where}
                GROUP BY u.id
                ORDER BY u.created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, offset),
            )
            customers = cur.fetchall() or []
    finally:
        conn.close()
    for row in customers:
        row["is_active"] = bool(row.get("is_active"))
        row["email_verified"] = bool(row.get("email_verified"))
        row["total_spent"] = _to_float(row.get("total_spent"))
    return jsonify(ok=True, customers=_camel_rows(customers), pagination=_pagination(page, limit, total))


@app.route("/api/admin/customers/<int:user_id>")
@admin_required
def admin_customer_detail(user_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            customer = _fetch_user(cur, user_id)
            if not customer:
                return _bad_request("Customer not found", 404)
            cur.execute(
                """
                SELECT id, order_number, status, payment_status, total, currency, created_at
                FROM orders WHERE user_id=%s ORDER BY created_at DESC LIMIT 20
                """,
                (user_id,),
            )
            orders = cur.fetchall() or []
            cur.execute("SELECT * FROM addresses WHERE user_id=%s ORDER BY is_default DESC, id DESC", (user_id,))
            addresses = cur.fetchall() or []
            total_spent = _scalar(
                cur,
                "SELECT SUM(total) AS s FROM orders WHERE user_id=%s AND payment_status='SUCCESSFUL'",
                (user_id,),
            )
    finally:
        conn.close()
    data = serialize_user(customer)
    data["isActive"] = bool(customer.get("is_active"))
    data["lastLoginAt"] = customer.get("last_login_at")
    data["totalSpent"] = _to_float(total_spent)
    data["orders"] = _camel_rows(orders)
    data["addresses"] = _camel_rows(addresses)
    return jsonify(ok=True, customer=data)


@app.route("/api/admin/customers/<int:user_id>", methods=["PUT"])
@admin_required
def admin_customer_update(user_id):
    data = _payload()
    updates = {}
    if "firstName" in data:
        updates["first_name"] = str(data.get("firstName") or "").strip()[:80] or None
    if "lastName" in data:
        updates["last_name"] = str(data.get("lastName") or "").strip()[:80] or None
    if "phone" in data:
        phone = normalize_phone_number(str(data.get("phone") or ""))
        if data.get("phone") and not phone:
            return _bad_request("Invalid phone number")
        updates["phone"] = phone or None
    if "isActive" in data:
        updates["is_active"] = 1 if data.get("isActive") else 0
    if not updates:
        return _bad_request("Nothing to update")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            customer = _fetch_user(cur, user_id)
            if not customer:
                return _bad_request("Customer not found", 404)
            assignments = ", ".join(f"{col}=%s" for col in updates)
            if updates.get("is_active") == 0:
                assignments += ", session_version = session_version + 1"
            cur.execute(f"UPDATE users SET {assignments} WHERE id=%s", tuple(updates.values()) + (user_id,))
            customer = _fetch_user(cur, user_id)
        conn.commit()
    finally:
        conn.close()
    log_activity(
        _staff_id(),
        "UPDATE",
        "CUSTOMER",
        user_id,
        describe_activity("UPDATE", "CUSTOMER", customer.get("email")),
        {"fields": sorted(updates.keys())},
    )
    return jsonify(ok=True, customer=serialize_user(customer))


# Admin: coupons

COUPON_TYPES = ("PERCENTAGE", "FIXED")


def _coupon_values(data, partial=False):
    values = {}
    if "code" in data or not partial:
        code = str(data.get("code") or "").strip().upper()
        if not code:
            return None, "Coupon code is required"
        values["code"] = code[:40]
    if "type" in data or not partial:
        kind = str(data.get("type") or "PERCENTAGE").upper()
        if kind not in COUPON_TYPES:
            return None, "Type must be PERCENTAGE or FIXED"
        values["type"] = kind
    if "value" in data or not partial:
        value = _money(data.get("value"))
        if value <= 0:
            return None, "Value must be greater than zero"
        if values.get("type") == "PERCENTAGE" and value > 100:
            return None, "Percentage discounts cannot exceed 100"
        values["value"] = value
    for key, column in (("minOrderAmount", "min_order_amount"), ("maxDiscount", "max_discount")):
        if key in data:
            values[column] = _money(data[key]) if data[key] not in (None, "") else None
    if "usageLimit" in data:
        values["usage_limit"] = _to_int(data["usageLimit"]) if data["usageLimit"] not in (None, "") else None
    for key, column in (("validFrom", "valid_from"), ("validUntil", "valid_until")):
        if key in data:
            raw = data[key]
            if raw in (None, ""):
                values[column] = None
                continue
            try:
                values[column] = datetime.fromisoformat(str(raw).replace("Z", "+00:00")).replace(tzinfo=None)
            except ValueError:
                return None, f"Invalid {key}"
    if "description" in data:
        values["description"] = str(data.get("description") or "").strip()[:255] or None
    if "isActive" in data:
        values["is_active"] = 1 if data.get("isActive") else 0
    return values, None


@app.route("/api/admin/coupons")
@admin_required
def admin_coupon_list():
    page, limit, offset = _paging(20, 100)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, "SELECT COUNT(*) AS c FROM coupons")
            cur.execute("SELECT * FROM coupons ORDER BY created_at DESC LIMIT %s OFFSET %s", (limit, offset))
            coupons = cur.fetchall() or []
    finally:
        conn.close()
    for row in coupons:
        row["is_active"] = bool(row.get("is_active"))
    return jsonify(ok=True, coupons=_camel_rows(coupons), pagination=_pagination(page, limit, total))


@app.route("/api/admin/coupons", methods=["POST"])
@admin_required
def admin_coupon_create():
    values, error = _coupon_values(_payload())
    if error:
        return _bad_request(error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM coupons WHERE code=%s", (values["code"],))
            if cur.fetchone():
                return _bad_request("Coupon code already exists", 409)
            columns = list(values.keys())
            cur.execute(
                f"INSERT INTO coupons ({', '.join(columns)}) VALUES ({', '.join(['%s'] * len(columns))})",
                tuple(values.values()),
            )
            coupon_id = cur.lastrowid
            cur.execute("SELECT * FROM coupons WHERE id=%s", (coupon_id,))
            coupon = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "CREATE", "COUPON", coupon_id, describe_activity("CREATE", "COUPON", values["code"]))
    return jsonify(ok=True, coupon=_camel(coupon)), 201


@app.route("/api/admin/coupons/<int:coupon_id>", methods=["PUT"])
@admin_required
def admin_coupon_update(coupon_id):
    values, error = _coupon_values(_payload(), partial=True)
    if error:
        return _bad_request(error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM coupons WHERE id=%s", (coupon_id,))
            coupon = cur.fetchone()
            if not coupon:
                return _bad_request("Coupon not found", 404)
            if values.get("code") and values["code"] != coupon["code"]:
                cur.execute("SELECT id FROM coupons WHERE code=%s AND id<>%s", (values["code"], coupon_id))
                if cur.fetchone():
                    return _bad_request("Coupon code already exists", 409)
            if values:
                assignments = ", ".join(f"{col}=%s" for col in values)
                cur.execute(f"UPDATE coupons SET {assignments} WHERE id=%s", tuple(values.values()) + (coupon_id,))
            cur.execute("SELECT * FROM coupons WHERE id=%s", (coupon_id,))
            coupon = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "UPDATE", "COUPON", coupon_id, describe_activity("UPDATE", "COUPON", coupon["code"]))
    return jsonify(ok=True, coupon=_camel(coupon))


@app.route("/api/admin/coupons/<int:coupon_id>", methods=["DELETE"])
@admin_required
def admin_coupon_delete(coupon_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, code, usage_count FROM coupons WHERE id=%s", (coupon_id,))
            coupon = cur.fetchone()
            if not coupon:
                return _bad_request("Coupon not found", 404)
            if _to_int(coupon.get("usage_count")) > 0:
                cur.execute("UPDATE coupons SET is_active=0 WHERE id=%s", (coupon_id,))
                message = "Coupon has been used, so it was deactivated instead"
            else:
                cur.execute("DELETE FROM coupons WHERE id=%s", (coupon_id,))
                message = "Coupon deleted"
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "DELETE", "COUPON", coupon_id, describe_activity("DELETE", "COUPON", coupon["code"]))
    return jsonify(ok=True, message=message)


# Admin: categories

@app.route("/api/admin/categories")
@admin_required
def admin_category_list():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.*, (SELECT COUNT(*) FROM products p WHERE p.category_id = c.id) AS product_count
                FROM categories c
                ORDER BY c.sort_order ASC, c.name ASC
                """
            )
            categories = cur.fetchall() or []
    finally:
        conn.close()
    for row in categories:
        row["is_active"] = bool(row.get("is_active"))
    return jsonify(ok=True, categories=_camel_rows(categories))


def _category_values(data):
    values = {}
    if "name" in data:
        values["name"] = str(data.get("name") or "").strip()[:120]
    if "slug" in data and data.get("slug"):
        values["slug"] = slugify(data["slug"])
    if "description" in data:
        values["description"] = str(data.get("description") or "").strip() or None
    if "image" in data:
        values["image"] = str(data.get("image") or "").strip() or None
    if "parentId" in data:
        values["parent_id"] = _to_int(data["parentId"]) or None
    if "sortOrder" in data:
        values["sort_order"] = _to_int(data["sortOrder"])
    if "isActive" in data:
        values["is_active"] = 1 if data.get("isActive") else 0
    return values


@app.route("/api/admin/categories", methods=["POST"])
@admin_required
def admin_category_create():
    values = _category_values(_payload())
    if not values.get("name"):
        return _bad_request("Category name is required")
    values.setdefault("slug", slugify(values["name"]))
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM categories WHERE slug=%s", (values["slug"],))
            if cur.fetchone():
                return _bad_request("A category with this slug already exists", 409)
            columns = list(values.keys())
            cur.execute(
                f"INSERT INTO categories ({', '.join(columns)}) VALUES ({', '.join(['%s'] * len(columns))})",
                tuple(values.values()),
            )
            category_id = cur.lastrowid
            cur.execute("SELECT * FROM categories WHERE id=%s", (category_id,))
            category = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "CREATE", "CATEGORY", category_id, describe_activity("CREATE", "CATEGORY", values["name"]))
    return jsonify(ok=True, category=_camel(category)), 201


@app.route("/api/admin/categories/<int:category_id>", methods=["PUT"])
@admin_required
def admin_category_update(category_id):
    values = _category_values(_payload())
    if "name" in values and not values["name"]:
        return _bad_request("Category name is required")
    if values.get("parent_id") == category_id:
        return _bad_request("A category cannot be its own parent")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM categories WHERE id=%s", (category_id,))
            category = cur.fetchone()
            if not category:
                return _bad_request("Category not found", 404)
            if values.get("slug"):
                cur.execute("SELECT id FROM categories WHERE slug=%s AND id<>%s", (values["slug"], category_id))
                if cur.fetchone():
                    return _bad_request("A category with this slug already exists", 409)
            if values:
                assignments = ", ".join(f"{col}=%s" for col in values)
                cur.execute(
                    f"UPDATE categories SET {assignments} WHERE id=%s",
                    tuple(values.values()) + (category_id,),
                )
            cur.execute("SELECT * FROM categories WHERE id=%s", (category_id,))
            category = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "UPDATE", "CATEGORY", category_id, describe_activity("UPDATE", "CATEGORY", category["name"]))
    return jsonify(ok=True, category=_camel(category))


@app.route("/api/admin/categories/<int:category_id>", methods=["DELETE"])
@admin_required
def admin_category_delete(category_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, name FROM categories WHERE id=%s", (category_id,))
            category = cur.fetchone()
            if not category:
                return _bad_request("Category not found", 404)
            products = _scalar(cur, "SELECT COUNT(*) AS c FROM products WHERE category_id=%s", (category_id,))
            if products:
                return _bad_request(f"Cannot delete a category with {products} products")
            children = _scalar(cur, "SELECT COUNT(*) AS c FROM categories WHERE parent_id=%s", (category_id,))
            if children:
                return _bad_request("Cannot delete a category that has subcategories")
            cur.execute("DELETE FROM categories WHERE id=%s", (category_id,))
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "DELETE", "CATEGORY", category_id, describe_activity("DELETE", "CATEGORY", category["name"]))
    return jsonify(ok=True, message="Category deleted")


# Admin: settings and inventory

@app.route("/api/admin/settings")
@admin_required
def admin_settings_get():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            settings = load_settings(cur)
    finally:
        conn.close()
    return jsonify(ok=True, settings=settings)


@app.route("/api/admin/settings", methods=["PUT"])
@admin_required
def admin_settings_update():
    data = _payload()
    settings = data.get("settings") if isinstance(data.get("settings"), dict) else data
    if not settings:
        return _bad_request("No settings provided")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            for key, value in settings.items():
                key = str(key).strip()[:120]
                if not key:
                    continue
                stored = value if isinstance(value, str) else json.dumps(value)
                cur.execute(
                    """
                    INSERT INTO settings (setting_key, setting_value) VALUES (%s, %s)
                    ON DUPLICATE KEY UPDATE setting_value=VALUES(setting_value)
                    """,
                    (key, stored),
                )
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "UPDATE", "SETTINGS", None, "Updated store settings", {"keys": sorted(settings.keys())})
    return jsonify(ok=True, message="Settings saved")


@app.route("/api/admin/inventory")
@admin_required
def admin_inventory():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, "SELECT COUNT(*) AS c FROM products WHERE status<>'ARCHIVED'")
            out_of_stock = _scalar(
                cur, "SELECT COUNT(*) AS c FROM products WHERE status<>'ARCHIVED' AND track_inventory=1 AND stock=0"
            )
            cur.execute(
                """
                SELECT id, name, sku, stock, reserved_stock, status
                FROM products
                WHERE status<>'ARCHIVED' AND track_inventory=1 AND stock <= %s
                ORDER BY stock ASC, name ASC
                LIMIT 100
                """,
                (LOW_STOCK_THRESHOLD,),
            )
            low = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(
        ok=True,
        summary={
            "total": total,
            "lowStock": sum(1 for row in low if _to_int(row.get("stock")) > 0),
            "outOfStock": out_of_stock,
            "threshold": LOW_STOCK_THRESHOLD,
        },
        products=_camel_rows(low),
    )


@app.route("/api/admin/inventory/<int:product_id>", methods=["PUT"])
@admin_required
def admin_inventory_update(product_id):
    data = _payload()
    if "stock" not in data and "adjustment" not in data:
        return _bad_request("Provide stock or adjustment")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, name, stock FROM products WHERE id=%s FOR UPDATE", (product_id,))
            product = cur.fetchone()
            if not product:
                return _bad_request("Product not found", 404)
            previous = _to_int(product.get("stock"))
            if "stock" in data:
                new_stock = _to_int(data.get("stock"), -1)
            else:
                new_stock = previous + _to_int(data.get("adjustment"))
            if new_stock < 0:
                return _bad_request("Stock cannot be negative")
            cur.execute("UPDATE products SET stock=%s WHERE id=%s", (new_stock, product_id))
        conn.commit()
    finally:
        conn.close()
    log_activity(
        _staff_id(),
        "UPDATE",
        "INVENTORY",
        product_id,
        f'Stock for "{product["name"]}" changed from {previous} to {new_stock}',
        {"from": previous, "to": new_stock},
    )
    return jsonify(ok=True, productId=product_id, stock=new_stock)


# Admin: blog

BLOG_STATUSES = ("DRAFT", "PUBLISHED", "ARCHIVED")


def _blog_values(data):
    values = {}
    for key, column, size in (
        ("title", "title", 200),
        ("excerpt", "excerpt", 500),
        ("coverImage", "cover_image", 500),
        ("category", "category", 80),
    ):
        if key in data:
            values[column] = str(data.get(key) or "").strip()[:size] or None
    if "content" in data:
        values["content"] = str(data.get("content") or "")
    if "tags" in data:
        tags = data.get("tags")
        if isinstance(tags, (list, tuple)):
            tags = ",".join(str(t).strip() for t in tags if str(t).strip())
        values["tags"] = str(tags or "")[:255] or None
    if "slug" in data and data.get("slug"):
        values["slug"] = slugify(data["slug"])
    if "status" in data:
        status = str(data.get("status") or "").upper()
        if status not in BLOG_STATUSES:
            return None, f"Status must be one of {', '.join(BLOG_STATUSES)}"
        values["status"] = status
    return values, None


@app.route("/api/admin/blog")
@admin_required
def admin_blog_list():
    page, limit, offset = _paging(20, 100)
    status = str(request.args.get("status") or "").upper()
    where = "1=1"
    params = ()
    if status in BLOG_STATUSES:
        where = "status=%s"
        params = (status,)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, f"SELECT COUNT(*) AS c FROM blog_posts WHERE {where}", params)
            cur.execute(
                f"""
                SELECT id, title, slug, excerpt, category, status, views, published_at, created_at, updated_at
                FROM blog_posts WHERE {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                params + (limit, offset),
            )
            posts = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, posts=_camel_rows(posts), pagination=_pagination(page, limit, total))


@app.route("/api/admin/blog/<int:post_id>")
@admin_required
def admin_blog_detail(post_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM blog_posts WHERE id=%s", (post_id,))
            post = cur.fetchone()
    finally:
        conn.close()
    if not post:
        return _bad_request("Post not found", 404)
    return jsonify(ok=True, post=_camel(post))


@app.route("/api/admin/blog", methods=["POST"])
@admin_required
def admin_blog_create():
    values, error = _blog_values(_payload())
    if error:
        return _bad_request(error)
    if not values.get("title") or not values.get("content"):
        return _bad_request("Title and content are required")
    values.setdefault("slug", slugify(values["title"]))
    values.setdefault("status", "DRAFT")
    values["author_id"] = _staff_id()
    if values["status"] == "PUBLISHED":
        values["published_at"] = _now_utc()
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM blog_posts WHERE slug=%s", (values["slug"],))
            if cur.fetchone():
                return _bad_request("A post with this slug already exists", 409)
            columns = list(values.keys())
            cur.execute(
                f"INSERT INTO blog_posts ({', '.join(columns)}) VALUES ({', '.join(['%s'] * len(columns))})",
                tuple(values.values()),
            )
            post_id = cur.lastrowid
            cur.execute("SELECT * FROM blog_posts WHERE id=%s", (post_id,))
            post = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "CREATE", "BLOG_POST", post_id, describe_activity("CREATE", "BLOG_POST", values["title"]))
    return jsonify(ok=True, post=_camel(post)), 201


@app.route("/api/admin/blog/<int:post_id>", methods=["PUT"])
@admin_required
def admin_blog_update(post_id):
    values, error = _blog_values(_payload())
    if error:
        return _bad_request(error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, title, status, published_at FROM blog_posts WHERE id=%s", (post_id,))
            existing = cur.fetchone()
            if not existing:
                return _bad_request("Post not found", 404)
            if values.get("slug"):
                cur.execute("SELECT id FROM blog_posts WHERE slug=%s AND id<>%s", (values["slug"], post_id))
                if cur.fetchone():
                    return _bad_request("A post with this slug already exists", 409)
            if values.get("status") == "PUBLISHED" and not existing.get("published_at"):
                values["published_at"] = _now_utc()
            if values:
                assignments = ", ".join(f"{col}=%s" for col in values)
                cur.execute(f"UPDATE blog_posts SET {assignments} WHERE id=%s", tuple(values.values()) + (post_id,))
            cur.execute("SELECT * FROM blog_posts WHERE id=%s", (post_id,))
            post = cur.fetchone()
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "UPDATE", "BLOG_POST", post_id, describe_activity("UPDATE", "BLOG_POST", post["title"]))
    return jsonify(ok=True, post=_camel(post))


@app.route("/api/admin/blog/<int:post_id>", methods=["DELETE"])
@admin_required
def admin_blog_delete(post_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id, title FROM blog_posts WHERE id=%s", (post_id,))
            post = cur.fetchone()
            if not post:
                return _bad_request("Post not found", 404)
            cur.execute("DELETE FROM blog_posts WHERE id=%s", (post_id,))
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "DELETE", "BLOG_POST", post_id, describe_activity("DELETE", "BLOG_POST", post["title"]))
    return jsonify(ok=True, message="Post deleted")


# Admin: staff

@app.route("/api/admin/staff")
@staff_admin_required
def admin_staff_list():
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM users WHERE role IN ('ADMIN', 'MANAGER')
                ORDER BY role ASC, created_at ASC
                """
            )
            staff = cur.fetchall() or []
    finally:
        conn.close()
    out = []
    for member in staff:
        data = serialize_user(member)
        data["isActive"] = bool(member.get("is_active"))
        data["lastLoginAt"] = member.get("last_login_at")
        out.append(data)
    return jsonify(ok=True, staff=out)


@app.route("/api/admin/staff", methods=["POST"])
@staff_admin_required
def admin_staff_create():
    data = _payload()
    email = _normalize_email(data.get("email"))
    password = data.get("password") or ""
    role = str(data.get("role") or "MANAGER").upper()
    first_name = str(data.get("firstName") or "").strip()[:80]
    if not validate_email_format(email):
        return _bad_request("A valid email is required")
    if role not in STAFF_ROLES:
        return _bad_request("Role must be ADMIN or MANAGER")
    password_error = validate_password_strength(password)
    if password_error:
        return _bad_request(password_error)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM users WHERE email=%s", (email,))
            if cur.fetchone():
                return _bad_request("A user with this email already exists", 409)
            cur.execute(
                """
                INSERT INTO users (email, password_hash, first_name, last_name, phone, role, email_verified)
                VALUES (%s, %s, %s, %s, %s, %s, 1)
                """,
                (
                    email,
                    generate_password_hash(password),
                    first_name or None,
                    str(data.get("lastName") or "").strip()[:80] or None,
                    normalize_phone_number(str(data.get("phone") or "")) or None,
                    role,
                ),
            )
            staff_id = cur.lastrowid
            member = _fetch_user(cur, staff_id)
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "CREATE", "STAFF", staff_id, describe_activity("CREATE", "STAFF", email), {"role": role})
    return jsonify(ok=True, staff=serialize_user(member)), 201


@app.route("/api/admin/staff/<int:staff_id>")
@staff_admin_required
def admin_staff_detail(staff_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            member = _fetch_user(cur, staff_id)
    finally:
        conn.close()
    if not member or member.get("role") not in STAFF_ROLES:
        return _bad_request("Staff member not found", 404)
    data = serialize_user(member)
    data["isActive"] = bool(member.get("is_active"))
    data["lastLoginAt"] = member.get("last_login_at")
    return jsonify(ok=True, staff=data)


@app.route("/api/admin/staff/<int:staff_id>", methods=["PUT"])
@staff_admin_required
def admin_staff_update(staff_id):
    data = _payload()
    me = _staff_id()
    updates = {}
    if "role" in data:
        role = str(data.get("role") or "").upper()
        if role not in STAFF_ROLES:
            return _bad_request("Role must be ADMIN or MANAGER")
        if staff_id == me and role != "ADMIN":
            return _bad_request("You cannot change your own role")
        updates["role"] = role
    if "isActive" in data:
        if staff_id == me and not data.get("isActive"):
            return _bad_request("You cannot deactivate your own account")
        updates["is_active"] = 1 if data.get("isActive") else 0
    if "firstName" in data:
        updates["first_name"] = str(data.get("firstName") or "").strip()[:80] or None
    if "lastName" in data:
        updates["last_name"] = str(data.get("lastName") or "").strip()[:80] or None
    if "phone" in data:
        updates["phone"] = normalize_phone_number(str(data.get("phone") or "")) or None
    if data.get("password"):
        password_error = validate_password_strength(data["password"])
        if password_error:
            return _bad_request(password_error)
        updates["password_hash"] = generate_password_hash(data["password"])
    if not updates:
        return _bad_request("Nothing to update")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            member = _fetch_user(cur, staff_id)
            if not member or member.get("role") not in STAFF_ROLES:
                return _bad_request("Staff member not found", 404)
            assignments = ", ".join(f"{col}=%s" for col in updates)
            if "password_hash" in updates or updates.get("is_active") == 0 or "role" in updates:
                assignments += ", session_version = session_version + 1"
            cur.execute(f"UPDATE users SET {assignments} WHERE id=%s", tuple(updates.values()) + (staff_id,))
            member = _fetch_user(cur, staff_id)
        conn.commit()
    finally:
        conn.close()
    log_activity(
        me,
        "UPDATE",
        "STAFF",
        staff_id,
        describe_activity("UPDATE", "STAFF", member.get("email")),
        {"fields": sorted(k for k in updates if k != "password_hash")},
    )
    return jsonify(ok=True, staff=serialize_user(member))


@app.route("/api/admin/staff/<int:staff_id>", methods=["DELETE"])
@staff_admin_required
def admin_staff_delete(staff_id):
    if staff_id == _staff_id():
        return _bad_request("You cannot remove your own account")
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            member = _fetch_user(cur, staff_id)
            if not member or member.get("role") not in STAFF_ROLES:
                return _bad_request("Staff member not found", 404)
            cur.execute(
                """
                UPDATE users SET role='CUSTOMER', two_factor_enabled=0, two_factor_secret=NULL,
                       two_factor_backup_codes=NULL, session_version = session_version + 1
                WHERE id=%s
                """,
                (staff_id,),
            )
        conn.commit()
    finally:
        conn.close()
    log_activity(_staff_id(), "DELETE", "STAFF", staff_id, describe_activity("DELETE", "STAFF", member["email"]))
    return jsonify(ok=True, message="Staff access removed")


# Admin: activity log

def _activity_rows(rows):
    out = []
    for row in rows:
        row["metadata"] = _json_field(row.get("metadata"), None)
        item = _camel(row, drop=("first_name", "last_name", "user_email"))
        if row.get("user_email"):
            item["user"] = {
                "email": row["user_email"],
                "name": " ".join(p for p in (row.get("first_name"), row.get("last_name")) if p) or None,
            }
        out.append(item)
    return out


@app.route("/api/admin/activity")
@admin_required
def admin_activity_list():
    args = request.args
    page, limit, offset = _paging(50, 200)
    where = ["1=1"]
    params = []
    if args.get("action"):
        where.append("a.action=%s")
        params.append(args["action"].upper())
    if args.get("entityType"):
        where.append("a.entity_type=%s")
        params.append(args["entityType"].upper())
    if args.get("userId"):
        where.append("a.user_id=%s")
        params.append(_to_int(args["userId"]))
    for key, op in (("startDate", ">="), ("endDate", "<=")):
        if args.get(key):
            try:
                bound = datetime.fromisoformat(args[key].replace("Z", "+00:00")).replace(tzinfo=None)
            except ValueError:
                return _bad_request(f"Invalid {key}")
            if key == "endDate" and len(args[key]) <= 10:
                bound = bound + timedelta(days=1) - timedelta(seconds=1)
            where.append(f"a.created_at {op} %s")
            params.append(bound)
    where_sql = " AND ".join(where)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            total = _scalar(cur, f"SELECT COUNT(*) AS c FROM activity_logs a WHERE {where_sql}", tuple(params))
            cur.execute(
                f"""
                SELECT a.*, u.email AS user_email, u.first_name, u.last_name
                FROM activity_logs a
                LEFT JOIN users u ON u.id = a.user_id
                WHERE {where_sql}
                ORDER BY a.created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, offset),
            )
            rows = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, logs=_activity_rows(rows), pagination=_pagination(page, limit, total))


@app.route("/api/admin/activity/stats")
@admin_required
def admin_activity_stats():
    now = _now_utc()
    today = datetime(now.year, now.month, now.day)
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            today_count = _scalar(cur, "SELECT COUNT(*) AS c FROM activity_logs WHERE created_at >= %s", (today,))
            week_count = _scalar(
                cur, "SELECT COUNT(*) AS c FROM activity_logs WHERE created_at >= %s", (today - timedelta(days=7),)
            )
            month_count = _scalar(
                cur, "SELECT COUNT(*) AS c FROM activity_logs WHERE created_at >= %s", (today - timedelta(days=30),)
            )
            cur.execute(
                "SELECT action, COUNT(*) AS c FROM activity_logs WHERE created_at >= %s GROUP BY action",
                (today - timedelta(days=30),),
            )
            by_action = {row["action"]: _to_int(row["c"]) for row in cur.fetchall() or []}
            cur.execute(
                "SELECT entity_type, COUNT(*) AS c FROM activity_logs WHERE created_at >= %s GROUP BY entity_type",
                (today - timedelta(days=30),),
            )
            by_entity = {row["entity_type"]: _to_int(row["c"]) for row in cur.fetchall() or []}
            cur.execute(
                """
                SELECT a.user_id, u.email, u.first_name, u.last_name, COUNT(*) AS count
                FROM activity_logs a
                JOIN users u ON u.id = a.user_id
                WHERE a.created_at >= %s
                GROUP BY a.user_id, u.email, u.first_name, u.last_name
                ORDER BY count DESC
                LIMIT 5
                """,
                (today - timedelta(days=30),),
            )
            top_users = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(
        ok=True,
        stats={
            "today": today_count,
            "thisWeek": week_count,
            "thisMonth": month_count,
            "byAction": by_action,
            "byEntityType": by_entity,
            "topUsers": _camel_rows(top_users),
        },
    )


@app.route("/api/admin/activity/entity/<entity_type>/<entity_id>")
@admin_required
def admin_activity_entity(entity_type, entity_id):
    conn = db_connect()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT a.*, u.email AS user_email, u.first_name, u.last_name
                FROM activity_logs a
                LEFT JOIN users u ON u.id = a.user_id
                WHERE a.entity_type=%s AND a.entity_id=%s
                ORDER BY a.created_at DESC
                LIMIT 100
                """,
                (entity_type.upper(), str(entity_id)),
            )
            rows = cur.fetchall() or []
    finally:
        conn.close()
    return jsonify(ok=True, logs=_activity_rows(rows))


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port)
