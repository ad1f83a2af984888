import json
import logging
import os
import random
import socket
import time
import urllib.error
import urllib.request

logger = logging.getLogger(__name__)

FLW_BASE_URL = os.getenv("FLW_BASE_URL", "https://api.flutterwave.com/v3").rstrip("/")
FLW_SECRET_KEY = os.getenv("FLW_SECRET_KEY", "").strip()
FLW_TIMEOUT = float(os.getenv("FLW_TIMEOUT", "15"))
STORE_TITLE = os.getenv("FLW_CHECKOUT_TITLE", "PleasureZone")

MOBILE_MONEY_CHARGE_TYPES = {
    "MPESA": "mpesa",
    "AIRTEL": "mobilemoneyug",
    "MTN": "mobilemoneyug",
}

RETRY_MAX = 3
RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 10.0
CIRCUIT_THRESHOLD = 5
CIRCUIT_RESET_SECONDS = 30.0

_circuits = {}


class FlutterwaveError(Exception):
    def __init__(self, message: str, status: int = None, body=None):
        super().__init__(message)
        self.status = status
        self.body = body


class CircuitOpenError(FlutterwaveError):
    pass


def _should_retry(exc) -> bool:
    if isinstance(exc, FlutterwaveError):
        return exc.status is not None and (exc.status >= 500 or exc.status == 429)
    return isinstance(exc, (urllib.error.URLError, socket.timeout, ConnectionError, TimeoutError))


def backoff_delay(attempt: int, base: float = RETRY_BASE_DELAY, cap: float = RETRY_MAX_DELAY) -> float:
    delay = base * (2 ** attempt)
    jitter = random.random() * 0.3 * delay
    return min(delay + jitter, cap)


def with_retry(fn, max_retries: int = RETRY_MAX, sleep=time.sleep, should_retry=_should_retry):
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= max_retries or not should_retry(exc):
                raise
            delay = backoff_delay(attempt)
            logger.info("Retry attempt %s/%s after %.0fms", attempt + 1, max_retries, delay * 1000)
            sleep(delay)
            attempt += 1


def with_circuit_breaker(key: str, fn, clock=time.monotonic):
    state = _circuits.setdefault(key, {"failures": 0, "last_failure": 0.0, "open": False})
    if state["open"]:
        if clock() - state["last_failure"] < CIRCUIT_RESET_SECONDS:
            raise CircuitOpenError(f"Circuit breaker open for {key}. Try again later.")
        # half-open: let one call through
        state["open"] = False
    try:
        result = fn()
    except Exception:
        state["failures"] += 1
        state["last_failure"] = clock()
        if state["failures"] >= CIRCUIT_THRESHOLD:
            state["open"] = True
            logger.warning("Circuit breaker opened for %s after %s failures", key, state["failures"])
        raise
    state["failures"] = 0
    return result


def reset_circuits():
    _circuits.clear()


def _request(method: str, path: str, payload=None) -> dict:
    if not FLW_SECRET_KEY:
        raise FlutterwaveError("Flutterwave is not configured.")
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(
        f"{FLW_BASE_URL}{path}",
        data=data,
        headers={
            "Authorization": f"Bearer {FLW_SECRET_KEY}",
            "Content-Type": "application/json",
        },
        method=method,
    )
    try:
        with urllib.request.urlopen(req, timeout=FLW_TIMEOUT) as resp:
            return json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as exc:
        try:
            body = json.loads(exc.read().decode("utf-8") or "{}")
        except Exception:
            body = None
        raise FlutterwaveError(f"Flutterwave returned HTTP {exc.code}", status=exc.code, body=body)


def _call(method: str, path: str, payload=None) -> dict:
    return with_circuit_breaker(
        "flutterwave",
        lambda: with_retry(lambda: _request(method, path, payload)),
    )


def create_payment(
    tx_ref: str,
    amount: float,
    currency: str,
    customer: dict,
    payment_method: str,
    redirect_url: str,
    mobile_money: dict = None,
) -> dict:
    if payment_method == "mobile_money" and mobile_money:
        network = str(mobile_money.get("network") or "").upper()
        charge_type = MOBILE_MONEY_CHARGE_TYPES.get(network)
        if not charge_type:
            raise FlutterwaveError(f"Unsupported mobile money network: {network}")
        payload = {
            "tx_ref": tx_ref,
            "amount": amount,
            "currency": currency,
            "email": customer.get("email"),
            "phone_number": mobile_money.get("phone"),
            "fullname": customer.get("name"),
            "redirect_url": redirect_url,
        }
        if network in ("AIRTEL", "MTN"):
            payload["network"] = network
        try:
            return _call("POST", f"/charges?type={charge_type}", payload)
        except FlutterwaveError as exc:
            logger.warning("Flutterwave mobile money error: %s %s", exc, exc.body)
            raise FlutterwaveError("Mobile money payment initiation failed", status=exc.status, body=exc.body)
        except urllib.error.URLError as exc:
            logger.warning("Flutterwave mobile money error: %s", exc)
            raise FlutterwaveError("Mobile money payment initiation failed")

    payload = {
        "tx_ref": tx_ref,
        "amount": amount,
        "currency": currency,
        "redirect_url": redirect_url,
        "customer": {
            "email": customer.get("email"),
            "name": customer.get("name"),
        },
        "customizations": {
            "title": STORE_TITLE,
            "description": "Order Payment",
            "logo": "",
        },
        "payment_options": "card",
    }
    try:
        return _call("POST", "/payments", payload)
    except FlutterwaveError as exc:
        logger.warning("Flutterwave card payment error: %s %s", exc, exc.body)
        raise FlutterwaveError("Card payment initiation failed", status=exc.status, body=exc.body)
    except urllib.error.URLError as exc:
        logger.warning("Flutterwave card payment error: %s", exc)
        raise FlutterwaveError("Card payment initiation failed")


def verify_transaction(transaction_id) -> dict:
    try:
        return _call("GET", f"/transactions/{transaction_id}/verify")
    except (FlutterwaveError, urllib.error.URLError) as exc:
        logger.warning("Flutterwave verify error: %s", exc)
        raise FlutterwaveError("Transaction verification failed")


def refund_transaction(transaction_id, amount=None, reason: str = None) -> dict:
    payload = {}
    if amount is not None:
        payload["amount"] = amount
    if reason:
        payload["comments"] = reason
    try:
        return _call("POST", f"/transactions/{transaction_id}/refund", payload)
    except FlutterwaveError as exc:
        logger.warning("Flutterwave refund error: %s %s", exc, exc.body)
        raise FlutterwaveError("Refund request failed", status=exc.status, body=exc.body)
    except urllib.error.URLError as exc:
        logger.warning("Flutterwave refund error: %s", exc)
        raise FlutterwaveError("Refund request failed")
