import base64
import hashlib
import hmac
import io
import secrets
import time
from typing import Optional

import pyotp
import qrcode

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
BACKUP_CODE_COUNT = 10
ISSUER = "PleasureZone"


def generate_secret() -> str:
    return pyotp.random_base32()


def _totp(secret: str) -> pyotp.TOTP:
    cleaned = str(secret or "").replace(" ", "").upper()
    return pyotp.TOTP(cleaned, digits=TOTP_DIGITS, digest=hashlib.sha1, interval=TOTP_STEP_SECONDS)


def totp_code(secret: str, counter: int) -> str:
    return _totp(secret).generate_otp(counter)


def current_code(secret: str, now: Optional[float] = None) -> str:
    now = time.time() if now is None else now
    return totp_code(secret, int(now // TOTP_STEP_SECONDS))


def verify_totp(secret: str, token, now: Optional[float] = None) -> bool:
    token = str(token or "").strip()
    if not secret or len(token) != TOTP_DIGITS or not token.isdigit():
        return False
    now = time.time() if now is None else now
    try:
        return _totp(secret).verify(token, for_time=int(now), valid_window=TOTP_WINDOW)
    except (ValueError, TypeError):
        return False


def generate_backup_codes(count: int = BACKUP_CODE_COUNT):
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(str(code or "").strip().upper().encode("utf-8")).hexdigest()


def consume_backup_code(hashed_codes, code: str):
    """Return the remaining hashes if code matched one, else None."""
    target = hash_backup_code(code)
    remaining = list(hashed_codes or [])
    for idx, stored in enumerate(remaining):
        if hmac.compare_digest(stored, target):
            del remaining[idx]
            return remaining
    return None


def otpauth_uri(secret: str, account: str) -> str:
    return _totp(secret).provisioning_uri(name=account, issuer_name=ISSUER)


def make_qr_data_uri(payload: str) -> str:
    qr = qrcode.QRCode(border=1, box_size=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
