import getpass
import os
import sys

from werkzeug.security import generate_password_hash

from seed_providers import get_db_connection


def main():
    if len(sys.argv) < 2 or not sys.argv[1].strip():
        print("Usage: python scripts/create_admin.py <email> [ADMIN|MANAGER]")
        sys.exit(1)
    email = sys.argv[1].strip().lower()
    role = (sys.argv[2] if len(sys.argv) > 2 else "ADMIN").strip().upper()
    if role not in {"ADMIN", "MANAGER"}:
        print("Role must be ADMIN or MANAGER.")
        sys.exit(1)

    password = os.getenv("ADMIN_PASSWORD") or getpass.getpass("Password: ")
    if len(password) < 8:
        print("Password must be at least 8 characters.")
        sys.exit(1)

    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM users WHERE email=%s", (email,))
            existing = cur.fetchone()
            if existing:
                cur.execute(
                    """
                    UPDATE users
                    SET role=%s, password_hash=%s, email_verified=1, is_active=1,
                        session_version = session_version + 1
                    WHERE id=%s
                    """,
                    (role, generate_password_hash(password), existing["id"]),
                )
                action = "Promoted"
            else:
                cur.execute(
                    """
                    INSERT INTO users (email, password_hash, role, email_verified)
                    VALUES (%s, %s, %s, 1)
                    """,
                    (email, generate_password_hash(password), role),
                )
                action = "Created"
        conn.commit()
    finally:
        conn.close()

    print(f"{action} {role.lower()} account for {email}.")


if __name__ == "__main__":
    main()
