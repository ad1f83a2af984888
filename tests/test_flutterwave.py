import pytest

import flutterwave


@pytest.fixture(autouse=True)
def fresh_circuits():
    flutterwave.reset_circuits()
    yield
    flutterwave.reset_circuits()


def test_backoff_delay_grows_and_caps(monkeypatch):
    monkeypatch.setattr(flutterwave.random, "random", lambda: 0.0)
    assert flutterwave.backoff_delay(0) == 1.0
    assert flutterwave.backoff_delay(2) == 4.0
    assert flutterwave.backoff_delay(6) == flutterwave.RETRY_MAX_DELAY


def test_retry_recovers_from_server_errors():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise flutterwave.FlutterwaveError("upstream", status=503)
        return {"status": "success"}

    assert flutterwave.with_retry(flaky, sleep=sleeps.append) == {"status": "success"}
    assert len(attempts) == 3
    assert len(sleeps) == 2


def test_retry_gives_up_after_max_attempts():
    sleeps = []

    def always_down():
        raise flutterwave.FlutterwaveError("rate limited", status=429)

    with pytest.raises(flutterwave.FlutterwaveError):
        flutterwave.with_retry(always_down, max_retries=2, sleep=sleeps.append)
    assert len(sleeps) == 2


def test_client_errors_are_not_retried():
    calls = []

    def bad_request():
        calls.append(1)
        raise flutterwave.FlutterwaveError("bad", status=400)

    with pytest.raises(flutterwave.FlutterwaveError):
        flutterwave.with_retry(bad_request, sleep=lambda _: None)
    assert len(calls) == 1


def test_circuit_opens_after_threshold_and_half_opens_later():
    now = [1000.0]
    calls = []

    def failing():
        calls.append(1)
        raise RuntimeError("down")

    for _ in range(flutterwave.CIRCUIT_THRESHOLD):
        with pytest.raises(RuntimeError):
            flutterwave.with_circuit_breaker("flw", failing, clock=lambda: now[0])

    with pytest.raises(flutterwave.CircuitOpenError):
        flutterwave.with_circuit_breaker("flw", failing, clock=lambda: now[0])
    assert len(calls) == flutterwave.CIRCUIT_THRESHOLD

    now[0] += flutterwave.CIRCUIT_RESET_SECONDS + 1
    assert flutterwave.with_circuit_breaker("flw", lambda: "ok", clock=lambda: now[0]) == "ok"
    assert flutterwave.with_circuit_breaker("flw", lambda: "again", clock=lambda: now[0]) == "again"


@pytest.fixture
def requests_sent(monkeypatch):
    sent = []

    def fake_request(method, path, payload=None):
        sent.append((method, path, payload))
        return {"status": "success", "data": {"link": "https://pay.example/abc"}}

    monkeypatch.setattr(flutterwave, "_request", fake_request)
    return sent


def test_card_payment_payload(requests_sent):
    flutterwave.create_payment(
        tx_ref="ORD-1",
        amount=50000,
        currency="UGX",
        customer={"name": "Amani", "email": "amani@example.com"},
        payment_method="card",
        redirect_url="http://localhost:3000/checkout/confirm?orderId=5",
    )
    method, path, payload = requests_sent[0]
    assert (method, path) == ("POST", "/payments")
    assert payload["tx_ref"] == "ORD-1"
    assert payload["payment_options"] == "card"
    assert payload["customer"] == {"email": "amani@example.com", "name": "Amani"}
    assert payload["customizations"]["title"] == "PleasureZone"


def test_mobile_money_charge_payload(requests_sent):
    flutterwave.create_payment(
        tx_ref="ORD-2",
        amount=30000,
        currency="UGX",
        customer={"name": "Amani", "email": "amani@example.com"},
        payment_method="mobile_money",
        redirect_url="http://localhost:3000/checkout/confirm?orderId=6",
        mobile_money={"network": "mtn", "phone": "256771234567"},
    )
    method, path, payload = requests_sent[0]
    assert path == "/charges?type=mobilemoneyug"
    assert payload["network"] == "MTN"
    assert payload["phone_number"] == "256771234567"


def test_unsupported_network(requests_sent):
    with pytest.raises(flutterwave.FlutterwaveError):
        flutterwave.create_payment(
            tx_ref="ORD-3",
            amount=1,
            currency="UGX",
            customer={},
            payment_method="mobile_money",
            redirect_url="",
            mobile_money={"network": "VODAFONE", "phone": "1"},
        )
    assert requests_sent == []


def test_refund_request(requests_sent):
    flutterwave.refund_transaction("12345", 20000, "Damaged in transit")
    assert requests_sent[0] == (
        "POST",
        "/transactions/12345/refund",
        {"amount": 20000, "comments": "Damaged in transit"},
    )


def test_unconfigured_client_fails_fast(monkeypatch):
    monkeypatch.setattr(flutterwave, "FLW_SECRET_KEY", "")
    with pytest.raises(flutterwave.FlutterwaveError) as exc:
        flutterwave.verify_transaction("1")
    assert str(exc.value) == "Transaction verification failed"
