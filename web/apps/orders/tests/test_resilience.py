import httpx
import pytest

from apps.orders.exceptions import CircuitOpenError, UpstreamError
from apps.orders.http_adapters import (
    CircuitBreaker,
    HttpInventoryClient,
    _inventory_cb,
    _should_retry,
    circuit_states,
)
from gateway.middleware import REQUEST_ID_CTX

BASE = "http://inventory.test"
PRODUCT = {"id": "p1", "name": "Oud Candle", "price": "50.00", "discount_percent": 0, "stock": 4}


class R:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}

    def json(self):
        return self._body


@pytest.fixture(autouse=True)
def reset_breaker(settings, monkeypatch):
    settings.HTTP_RETRY_MAX = 3
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    monkeypatch.setattr("apps.orders.http_adapters.time.sleep", lambda s: None)
    # the breaker is module level; don't carry state between tests
    _inventory_cb.on_success()
    yield
    _inventory_cb.on_success()


def test_inventory_retries_on_5xx(monkeypatch):
    calls = {"n": 0}

    def fake_get(self, url, headers=None, **kwargs):
        calls["n"] += 1
        return R(500) if calls["n"] == 1 else R(200, PRODUCT)

    monkeypatch.setattr(httpx.Client, "get", fake_get)
    assert HttpInventoryClient(BASE).get_product("p1").stock == 4
    assert calls["n"] == 2


def test_retry_count_header(monkeypatch):
    seen = []

    def fake_get(self, url, headers=None, **kwargs):
        seen.append(headers["X-Retry-Count"])
        return R(503) if len(seen) < 3 else R(200, PRODUCT)

    monkeypatch.setattr(httpx.Client, "get", fake_get)
    HttpInventoryClient(BASE).get_product("p1")
    assert seen == ["0", "1", "2"]


def test_decrement_not_retried_after_timeout(monkeypatch):
    """The request may have been applied, so it must not be sent twice."""
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(httpx.Client, "post", fake_post)
    with pytest.raises(UpstreamError):
        HttpInventoryClient(BASE).decrement_stock("p1", 1)
    assert calls["n"] == 1


def test_decrement_retried_when_connection_refused(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("refused")
        return R(200, {"id": "p1", "stock": 3})

    monkeypatch.setattr(httpx.Client, "post", fake_post)
    HttpInventoryClient(BASE).decrement_stock("p1", 1)
    assert calls["n"] == 2


@pytest.mark.parametrize(
    "status_code, idempotent, expected",
    [
        (500, True, True),
        (503, True, True),
        (500, False, False),
        (502, False, True),
        (504, False, True),
        (400, True, False),
    ],
)
def test_should_retry_statuses(status_code, idempotent, expected):
    assert _should_retry(R(status_code), None, idempotent) is expected


def test_request_id_is_forwarded(monkeypatch):
    seen = {}

    def fake_get(self, url, headers=None, **kwargs):
        seen.update(headers)
        return R(200, PRODUCT)

    monkeypatch.setattr(httpx.Client, "get", fake_get)
    token = REQUEST_ID_CTX.set("req-123")
    try:
        HttpInventoryClient(BASE).get_product("p1")
    finally:
        REQUEST_ID_CTX.reset(token)
    assert seen["X-Request-ID"] == "req-123"


def test_circuit_opens_and_blocks_calls(monkeypatch):
    cb = CircuitBreaker("inventory", fail_threshold=2, reset_timeout=60)
    monkeypatch.setattr("apps.orders.http_adapters._inventory_cb", cb)
    calls = {"n": 0}

    def fake_get(self, url, headers=None, **kwargs):
        calls["n"] += 1
        return R(500)

    monkeypatch.setattr(httpx.Client, "get", fake_get)
    client = HttpInventoryClient(BASE)
    for _ in range(2):
        with pytest.raises(UpstreamError):
            client.get_product("p1")
    assert cb.state == "OPEN"

    before = calls["n"]
    with pytest.raises(CircuitOpenError):
        client.get_product("p1")
    assert calls["n"] == before


def test_half_open_allows_one_trial_call():
    cb = CircuitBreaker("inventory", fail_threshold=1, reset_timeout=0)
    cb.on_failure()
    # reset_timeout of 0 moves straight to HALF_OPEN
    assert cb.state == "HALF_OPEN"
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(CircuitOpenError):
        cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"


def test_failed_trial_call_reopens():
    cb = CircuitBreaker("inventory", fail_threshold=3, reset_timeout=60)
    for _ in range(3):
        cb.on_failure()
    cb._opened_at -= 61
    assert cb.state == "HALF_OPEN"
    cb.before_call()
    cb.on_failure()
    assert cb.state == "OPEN"


def test_circuit_states_reports_inventory():
    assert circuit_states() == {"inventory": "CLOSED"}


def test_keyed_decrement_is_retried_after_timeout(monkeypatch):
    """With a key the service dedups, so a timed-out decrement can be resent."""
    sent = []

    def fake_post(self, url, json=None, headers=None, **kwargs):
        sent.append(json)
        if len(sent) == 1:
            raise httpx.ReadTimeout("slow")
        return R(200, {"id": "p1", "stock": 3, "applied": False})

    monkeypatch.setattr(httpx.Client, "post", fake_post)
    HttpInventoryClient(BASE).decrement_stock("p1", 1, key="order-1:p1")
    assert sent == [{"quantity": 1, "key": "order-1:p1"}] * 2
