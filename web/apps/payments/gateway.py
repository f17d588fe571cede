"""HTTP client for the payment gateway's intention API.

Creating a payment "intention" registers the amount, currency, billing data
and callback URLs for an order with the gateway and returns what the browser
needs to pay: a hosted payment URL and/or a ``client_secret`` for the
embedded checkout.

The client is built on ``httpx`` and adds:

- Request correlation: ``X-Request-ID`` from the ContextVar populated by
  ``gateway.middleware.RequestIdMiddleware``.
- A circuit breaker so an unhealthy gateway is not hammered, with a single
  HALF_OPEN trial call after the reset timeout.
- Retries with exponential backoff on transport errors and 5xx responses.

Every failure is reported as ``ExternalServiceError``.
"""

import logging
import threading
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional
from urllib.parse import quote

import httpx
from django.conf import settings

from apps.orders.errors import ExternalServiceError
from gateway.middleware import REQUEST_ID_CTX

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Thread-safe CLOSED/OPEN/HALF_OPEN breaker.

    - CLOSED → OPEN once ``fail_threshold`` consecutive failures are seen.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN lets one trial call through; success closes, failure re-opens.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Return the state for this call or raise when calls are not allowed.

        Raises:
            ExternalServiceError: If the circuit is OPEN or a HALF_OPEN trial call
                is already running.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise ExternalServiceError(f"{self.name} circuit is open", code="CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._trial_in_flight:
                    raise ExternalServiceError(f"{self.name} circuit trial call in flight", code="CIRCUIT_OPEN")
                self._trial_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
            self._trial_in_flight = False

    def reset(self):
        self.on_success()


gateway_circuit = CircuitBreaker(
    "payment-gateway",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Intention:
    payment_url: Optional[str]
    iframe_url: Optional[str]
    client_secret: Optional[str]
    unified_checkout_url: Optional[str]
    gateway_order_id: Optional[str]

    def as_dict(self) -> dict:
        return {
            "payment_url": self.payment_url or self.iframe_url,
            "iframe_url": self.iframe_url,
            "client_secret": self.client_secret,
            "unified_checkout_url": self.unified_checkout_url,
            "gateway_order_id": self.gateway_order_id,
            "status": "pending",
        }


# ---------------- Gateway client ---------------- #

class PaymobClient:
    """Creates payment intentions with retries and a circuit breaker."""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        circuit: CircuitBreaker | None = None,
    ):
        self.base_url = (base_url or settings.PAYMOB_BASE_URL).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.PAYMOB_SECRET_KEY
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.circuit = circuit or gateway_circuit

    def build_payload(self, order, billing: dict, payment_methods: Optional[List] = None) -> dict:
        amount = to_cents(order.total)
        name = (billing.get("name") or "").strip()
        first, _, last = name.partition(" ")
        callback_base = (settings.APP_PUBLIC_URL or "http://localhost:8000").rstrip("/")
        methods = payment_methods or [settings.PAYMOB_INTEGRATION_ID]
        return {
            "amount": amount,
            "currency": order.currency,
            "payment_methods": methods,
            "items": [
                {"name": "Order Items", "amount": amount, "description": f"Order {order.pk}", "quantity": 1}
            ],
            "billing_data": {
                "first_name": first or name,
                "last_name": last or "User",
                "email": billing.get("email"),
                "phone_number": billing.get("phone"),
                "country": "N/A",
                "apartment": "N/A",
                "street": "N/A",
                "building": "N/A",
                "city": "N/A",
                "floor": "N/A",
                "state": "N/A",
            },
            "special_reference": order.pk,
            "expiration": settings.PAYMOB_INTENTION_EXPIRATION,
            "single_payment_attempt": True,
            "notification_url": f"{callback_base}/api/paymob/webhooks/processed",
            "redirection_url": f"{callback_base}/api/paymob/webhooks/redirect",
        }

    def create_intention(self, order, billing: dict, payment_methods: Optional[List] = None) -> Intention:
        """Register a payment intention for ``order``.

        Args:
            order: Order being paid; its id becomes the gateway
                ``special_reference`` (merchant order id).
            billing: ``name``, ``email`` and ``phone`` of the payer.
            payment_methods: Integration ids; defaults to the configured one.

        Returns:
            Intention with the URLs/secret the browser needs.

        Raises:
            ExternalServiceError: Missing credentials, circuit open, transport
                errors after retries, non-2xx responses, or a response with
                neither a redirect URL nor a ``client_secret``.
        """
        if not self.secret_key:
            raise ExternalServiceError("Payment gateway credentials are not configured", code="GATEWAY_NOT_CONFIGURED")

        payload = self.build_payload(order, billing, payment_methods)
        resp = self._post("/v1/intention/", payload)

        if resp.status_code in (400, 401):
            logger.warning(
                "gateway rejected intention",
                extra={"order_id": order.pk, "status": resp.status_code},
            )
            raise ExternalServiceError(
                "Payment gateway rejected the request", code="GATEWAY_REJECTED"
            )
        if resp.status_code >= 300:
            raise ExternalServiceError("Payment service unavailable, try again later.")

        try:
            data = resp.json()
        except ValueError:
            raise ExternalServiceError("Payment gateway returned an unreadable response", code="GATEWAY_BAD_RESPONSE") from None
        return self._to_intention(order, data)

    def _to_intention(self, order, data: dict) -> Intention:
        payment_url = data.get("payment_link") or data.get("payment_url") or data.get("redirect_url")
        client_secret = data.get("client_secret")
        if not payment_url and not client_secret:
            raise ExternalServiceError(
                "Payment initiation did not return a redirect URL or client_secret",
                code="GATEWAY_BAD_RESPONSE",
            )
        iframe_url = data.get("iframe_url")
        if not iframe_url and client_secret and settings.PAYMOB_IFRAME_ID:
            iframe_url = (
                f"{self.base_url}/acceptance/iframes/{settings.PAYMOB_IFRAME_ID}"
                f"?client_secret={quote(client_secret, safe='')}"
            )
        unified = None
        if client_secret and settings.PAYMOB_PUBLIC_KEY:
            unified = (
                f"{self.base_url}/unifiedcheckout/?publicKey={quote(settings.PAYMOB_PUBLIC_KEY, safe='')}"
                f"&clientSecret={quote(client_secret, safe='')}"
            )
        gateway_order_id = data.get("intention_order_id") or data.get("order_id") or data.get("id")
        return Intention(
            payment_url=payment_url,
            iframe_url=iframe_url,
            client_secret=client_secret,
            unified_checkout_url=unified,
            gateway_order_id=str(gateway_order_id) if gateway_order_id else None,
        )

    def _post(self, path: str, payload: dict) -> httpx.Response:
        state = self.circuit.before_call()
        try:
            return self._send(path, payload, state)
        except ExternalServiceError:
            raise
        except Exception:
            # anything outside the retry loop still counts against the circuit
            self.circuit.on_failure()
            raise

    def _send(self, path: str, payload: dict, state: str) -> httpx.Response:
        max_retries = getattr(settings, "HTTP_RETRY_MAX", 3)
        backoff = getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15)
        cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
        tries = 0
        headers = _request_headers(
            {"Authorization": f"Token {self.secret_key}", "X-Circuit-State": state, "X-Retry-Count": "0"}
        )

        with httpx.Client(timeout=self.timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.post(f"{self.base_url}{path}", json=payload, headers=headers)
                    if not _should_retry(resp, None):
                        self.circuit.on_success()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)
                if tries >= max_retries:
                    self.circuit.on_failure()
                    logger.error(
                        "payment gateway unavailable",
                        extra={"path": path, "tries": tries, "status": getattr(resp, "status_code", None)},
                    )
                    raise ExternalServiceError("Payment service unavailable, try again later.") from exc

                time.sleep(min(backoff * (2 ** (tries - 1)), cap))
