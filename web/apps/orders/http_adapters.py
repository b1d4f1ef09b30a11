"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements the inventory port over HTTP using ``httpx``. It
adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- A circuit breaker for the inventory service to avoid hammering an
    unhealthy dependency, with HALF_OPEN probing after a timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.

Transport failures, exhausted retries and an open circuit all surface as
``UpstreamError`` so the views can answer with a retry-later message.
"""

import logging
import threading
import time
from decimal import Decimal
from typing import Callable, Dict, Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .domain import InventoryPort, ProductSnapshot
from .exceptions import CircuitOpenError, UpstreamError

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe
                is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"{self.name} circuit is open")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise CircuitOpenError(f"{self.name} circuit is probing")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


_inventory_cb = CircuitBreaker(
    "inventory",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


def circuit_states() -> Dict[str, str]:
    """Current state of every breaker, keyed by downstream name."""
    return {_inventory_cb.name: _inventory_cb.state}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    Args:
        extra: Optional dict of additional headers to include.

    Returns:
        dict: Final headers dictionary for the outgoing request.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds, max_sleep)."""
    return (
        max(1, int(getattr(settings, "HTTP_RETRY_MAX", 3))),
        float(getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15)),
        float(getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception], idempotent: bool = True) -> bool:
    """Retries are attempted only on transport exceptions or HTTP 5xx.

    Non-idempotent calls are retried only when the request cannot have
    been applied: a refused connection or a gateway-level 502/503/504.
    """
    if exc is not None:
        return idempotent or isinstance(exc, httpx.ConnectError)
    if resp is None:
        return False
    if idempotent:
        return 500 <= resp.status_code < 600
    return resp.status_code in (502, 503, 504)


def _call_with_retries(
    cb: CircuitBreaker,
    send: Callable[[httpx.Client, dict], httpx.Response],
    timeout: float,
    business_statuses=(200,),
    idempotent: bool = True,
) -> httpx.Response:
    """Run ``send`` under the breaker, retrying transport errors and 5xx.

    Responses whose status is in ``business_statuses`` count as circuit
    successes and are returned to the caller for mapping.

    Raises:
        CircuitOpenError: The breaker rejected the call.
        UpstreamError: Retries were exhausted or a non-retriable status
            came back.
    """
    max_retries, backoff, cap = _retry_policy()
    tries = 0

    state = cb.before_call()
    headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = send(client, headers)
                    if resp.status_code in business_statuses:
                        cb.on_success()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)

                if tries >= max_retries or not _should_retry(resp, exc, idempotent):
                    cb.on_failure()
                    detail = repr(exc) if exc else f"HTTP {resp.status_code}"
                    logger.error(
                        "upstream call failed",
                        extra={"circuit": cb.name, "tries": tries, "error": detail},
                    )
                    raise UpstreamError(f"{cb.name} service unavailable: {detail}") from exc

                sleep_s = backoff * (2 ** (tries - 1))
                time.sleep(min(sleep_s, cap))
    finally:
        cb.on_finish()


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(InventoryPort):
    """HTTP client for the inventory service with retry and circuit breaker."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        """Fetch live price and stock.

        Business mappings:
        - 200 → ``ProductSnapshot``
        - 404 → ``None`` (unknown product), not counted as a circuit failure
        """
        url = f"{self.base_url}/products/{product_id}"
        resp = _call_with_retries(
            _inventory_cb,
            lambda client, headers: client.get(url, headers=headers),
            self.timeout,
            business_statuses=(200, 404),
        )
        if resp.status_code == 404:
            return None
        data = resp.json()
        return ProductSnapshot(
            id=str(data["id"]),
            name=data["name"],
            price=Decimal(str(data["price"])),
            discount_percent=int(data.get("discount_percent") or 0),
            stock=int(data.get("stock") or 0),
        )

    def decrement_stock(self, product_id: str, quantity: int, key: Optional[str] = None) -> None:
        """Ask the inventory service to lower stock, floored at zero.

        The service applies the change as one atomic ``UPDATE`` and commits
        it at once. With a ``key`` it applies each key at most once, so the
        call can be retried like a read; without one only failures that
        never reached the service are retried. A 404 is logged and
        otherwise ignored: the product vanished after the order snapshot
        was taken.
        """
        url = f"{self.base_url}/products/{product_id}/decrement"
        body = {"quantity": quantity}
        if key:
            body["key"] = key
        resp = _call_with_retries(
            _inventory_cb,
            lambda client, headers: client.post(url, json=body, headers=headers),
            self.timeout,
            business_statuses=(200, 404),
            idempotent=bool(key),
        )
        if resp.status_code == 404:
            logger.warning("stock decrement for unknown product", extra={"product_id": product_id})
