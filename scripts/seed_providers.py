import os
import sys
from urllib.parse import urlparse, parse_qs

import pymysql
from dotenv import load_dotenv

load_dotenv()

PROVIDERS = [
    {"name": "MTN Mobile Money", "code": "mtn_ug"},
    {"name": "Airtel Money", "code": "airtel_ug"},
]


def _parse_db_url(db_url: str) -> dict:
    parsed = urlparse(db_url)
    if parsed.scheme not in {"mysql", "mariadb"}:
        raise ValueError("Unsupported database URL scheme")
    return {
        "host": parsed.hostname,
        "user": parsed.username,
        "password": parsed.password,
        "database": parsed.path.lstrip("/"),
        "port": parsed.port or 3306,
        "query": parse_qs(parsed.query),
    }


def get_db_connection():
    db_url = os.getenv("DATABASE_URL") or os.getenv("MYSQL_URL") or os.getenv("DB_URL")
    if db_url:
        cfg = _parse_db_url(db_url)
    else:
        cfg = {
            "host": os.getenv("DB_HOST"),
            "user": os.getenv("DB_USER"),
            "password": os.getenv("DB_PASSWORD"),
            "database": os.getenv("DB_NAME"),
            "port": int(os.getenv("DB_PORT", "3306")),
            "query": {},
        }
    if not cfg["host"]:
        raise RuntimeError("Database host is not set (DB_HOST or DATABASE_URL).")

    query = cfg["query"]
    ssl_disabled = os.getenv("DB_SSL_DISABLED", "0") == "1"
    if (query.get("sslmode") or [""])[0].lower() == "disable":
        ssl_disabled = True
    if (query.get("ssl") or [""])[0].lower() in {"0", "false", "no"}:
        ssl_disabled = True

    connect_kwargs = dict(
        host=cfg["host"],
        user=cfg["user"],
        password=cfg["password"],
        database=cfg["database"],
        port=int(cfg["port"]),
        charset="utf8mb4",
        cursorclass=pymysql.cursors.DictCursor,
        connect_timeout=10,
    )
    if not ssl_disabled:
        connect_kwargs["ssl"] = {"ssl": {}}
    return pymysql.connect(**connect_kwargs)


def main():
    fee_percent = float(sys.argv[1]) if len(sys.argv) > 1 and sys.argv[1].strip() else 0.0

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            for provider in PROVIDERS:
                cur.execute(
                    """
                    INSERT INTO payment_providers (name, code, type, currencies, fee_type, fee_value, is_active)
                    VALUES (%s, %s, 'MOBILE_MONEY', 'UGX', 'PERCENTAGE', %s, 1)
                    ON DUPLICATE KEY UPDATE name=VALUES(name), fee_value=VALUES(fee_value), is_active=1
                    """,
                    (provider["name"], provider["code"], fee_percent),
                )
        conn.commit()
    finally:
        conn.close()

    print(f"Seeded {len(PROVIDERS)} mobile money provider(s) at {fee_percent}% fee.")


if __name__ == "__main__":
    main()
