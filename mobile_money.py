import re
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Optional

UGANDA_PHONE_REGEX = re.compile(r"^(\+?256|0)?7\d{8}$")
REF_ALPHABET = string.ascii_uppercase + string.digits
PAYMENT_EXPIRES_SECONDS = 300

STATUS_PENDING = "PENDING"
STATUS_SUCCESSFUL = "SUCCESSFUL"
STATUS_FAILED = "FAILED"


class CallbackError(ValueError):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def _strip_spaces(phone) -> str:
    return re.sub(r"\s+", "", str(phone or ""))


def is_valid_phone(phone) -> bool:
    return bool(UGANDA_PHONE_REGEX.match(_strip_spaces(phone)))


def normalize_phone(phone) -> str:
    """Return the phone in +256XXXXXXXXX form."""
    cleaned = _strip_spaces(phone)
    if cleaned.startswith("0"):
        cleaned = "+256" + cleaned[1:]
    if not cleaned.startswith("+"):
        if cleaned.startswith("256"):
            cleaned = "+" + cleaned
        else:
            cleaned = "+256" + cleaned
    return cleaned


def _money(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def calculate_fee(amount, fee_type: str, fee_value, min_fee=None, max_fee=None) -> float:
    amount = _money(amount)
    if str(fee_type or "").upper() == "PERCENTAGE":
        fee = amount * _money(fee_value) / 100
    else:
        fee = _money(fee_value)
    if min_fee is not None and fee < _money(min_fee):
        fee = _money(min_fee)
    if max_fee is not None and fee > _money(max_fee):
        fee = _money(max_fee)
    return round(fee, 2)


def generate_external_ref(now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(REF_ALPHABET) for _ in range(6))
    return f"PZ-{now_ms}-{suffix}"


def payment_prompt(phone: str) -> str:
    return f"Payment request sent to {phone}. Please enter your PIN to confirm."


def _parse_mtn(payload: dict) -> dict:
    status = STATUS_SUCCESSFUL if payload.get("status") == "SUCCESSFUL" else STATUS_FAILED
    return {
        "ref": payload.get("externalRef") or payload.get("reference"),
        "status": status,
        "transaction_id": payload.get("transactionId"),
        "message": payload.get("reason") or payload.get("message"),
    }


def _parse_airtel(payload: dict) -> dict:
    txn = payload.get("transaction") or {}
    if not isinstance(txn, dict):
        txn = {}
    status = STATUS_SUCCESSFUL if txn.get("status") == "TS" else STATUS_FAILED
    return {
        "ref": txn.get("id") or payload.get("reference"),
        "status": status,
        "transaction_id": txn.get("airtel_money_id"),
        "message": txn.get("message"),
    }


CALLBACK_PARSERS = {
    "mtn_ug": _parse_mtn,
    "airtel_ug": _parse_airtel,
}


def parse_callback(provider: str, payload) -> dict:
    """Turn a provider callback body into {ref, status, transaction_id, message}.

    Raises CallbackError for an unknown provider or a body with no reference.
    """
    parser = CALLBACK_PARSERS.get(str(provider or "").lower())
    if parser is None:
        raise CallbackError("Unknown provider")
    parsed = parser(payload if isinstance(payload, dict) else {})
    if not parsed.get("ref"):
        raise CallbackError("Missing transaction reference")
    return parsed


def completion_note(provider_code: str) -> str:
    return f"Mobile money payment confirmed via {str(provider_code or '').upper()}"


def transaction_update(parsed: dict, now: Optional[datetime] = None) -> dict:
    return {
        "status": parsed["status"],
        "status_message": parsed.get("message"),
        "transaction_id": parsed.get("transaction_id"),
        "completed_at": now or datetime.now(timezone.utc).replace(tzinfo=None),
    }
