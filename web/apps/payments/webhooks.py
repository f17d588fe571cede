"""Payment webhook reconciler.

Two gateway callbacks carry the same transaction data:

* The **processed** callback is server-to-server and authoritative. After
  signature verification it sets the order's payment status, order status and
  gateway transaction id to absolute values in one transaction, so a
  duplicated or retried delivery converges on the same final state.
* The **redirect** callback travels through the customer's browser and can be
  replayed, blocked or delayed. It is only used to pick the page the browser
  lands on and never writes anything.

The two callbacks are signed over different field lists (``order.id`` versus
a bare ``order``); both lists are kept exactly as the gateway documents them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from apps.orders.cancellation import CancellationProcessor
from apps.orders.domain import (
    SETTLED_PAYMENT_STATUSES,
    OrderStatus,
    PaymentOutcome,
    check_transition,
    derive_outcome,
)
from apps.orders.errors import NotFoundError, UnmappedOutcomeError, ValidationError
from apps.orders.repository import OrderRepository, atomic

from .schemas import parse_processed_payload
from .signature import PROCESSED_FIELDS, REDIRECT_FIELDS, SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """What a processed callback did to the order.

    ``applied`` is False when the callback was an exact replay of state the
    order already holds.
    """

    order_id: str
    outcome: PaymentOutcome
    transaction_id: Optional[str]
    applied: bool


@dataclass(frozen=True)
class RedirectTarget:
    """Page the browser should be sent to after the gateway redirect."""

    status: str
    order_id: Optional[str] = None

    @property
    def path(self) -> str:
        if self.order_id and self.status == "failed":
            return f"/orders/{self.order_id}?payment=failed"
        if self.order_id and self.status == "success":
            return f"/orders/{self.order_id}"
        return f"/payment/result?status={self.status}"


class PaymentReconciler:
    """Applies gateway payment outcomes to orders.

    Args:
        orders: Repository for the order aggregate.
        processor: Cancellation processor, used to restore stock when a failed
            payment cancels an order and to notify after commit.
        verifier: HMAC verifier holding the gateway secret.
    """

    def __init__(self, orders: OrderRepository, processor: CancellationProcessor, verifier: SignatureVerifier):
        self.orders = orders
        self.processor = processor
        self.verifier = verifier

    def reconcile_processed(self, payload: Any, signature: Optional[str] = None) -> ReconcileResult:
        """Verify and apply a processed (server-to-server) callback.

        Args:
            payload: Decoded JSON body, either callback shape.
            signature: HMAC from the query string, used when the body has none.

        Returns:
            ReconcileResult describing the applied outcome. A callback that differs from
            the stored state of an order whose payment already settled
            (SUCCESS or REFUNDED) is logged and returned with
            ``applied=False``.

        Raises:
            ValidationError: Unknown payload shape or no order reference.
            SignatureError: Missing or invalid HMAC.
            UnmappedOutcomeError: ``success`` and ``pending`` both true.
            NotFoundError: No order matches the merchant or gateway id.
            ConflictError: The order is terminal, or the outcome would move
                it backwards.
        """
        callback = parse_processed_payload(payload, signature)
        self.verifier.verify(PROCESSED_FIELDS, callback.data, callback.signature)

        outcome = derive_outcome(callback.success, callback.pending)
        if not callback.order_lookup:
            raise ValidationError("Callback carries no order reference", code="ORDER_REFERENCE_MISSING")

        with atomic():
            order = self.orders.find_for_update(*callback.order_lookup)
            if order is None:
                raise NotFoundError(
                    f"No order matches {', '.join(callback.order_lookup)}", code="ORDER_NOT_FOUND"
                )

            trnx_id = callback.transaction_id if callback.transaction_id is not None else order.trnx_id
            current = (order.status, order.payment_status, order.trnx_id)
            target = (outcome.order_status.value, outcome.payment_status.value, trnx_id)
            if current == target:
                logger.info(
                    "payment callback replay ignored",
                    extra={"order_id": order.pk, "transaction_id": trnx_id},
                )
                return ReconcileResult(order.pk, outcome, trnx_id, applied=False)

            if order.payment_status in {s.value for s in SETTLED_PAYMENT_STATUSES}:
                logger.warning(
                    "payment callback for settled order ignored",
                    extra={
                        "order_id": order.pk,
                        "payment_status": order.payment_status,
                        "callback_payment_status": outcome.payment_status.value,
                        "transaction_id": callback.transaction_id,
                    },
                )
                return ReconcileResult(order.pk, outcome, order.trnx_id, applied=False)

            check_transition(order.status, outcome.order_status)
            if outcome.order_status is OrderStatus.CANCELLED:
                self.processor.restore_order_stock(order)

            comment = f"Payment {outcome.payment_status.value.lower()} - Updated by payment webhook"
            self.orders.transition(
                order,
                outcome.order_status,
                comment,
                payment_status=outcome.payment_status,
                trnx_id=callback.transaction_id,
            )
            if outcome.order_status is not OrderStatus.PENDING:
                self.processor.notify_after_commit(order, outcome.order_status, comment)

        logger.info(
            "payment callback applied",
            extra={
                "order_id": order.pk,
                "shape": callback.shape,
                "payment_status": outcome.payment_status.value,
                "order_status": outcome.order_status.value,
            },
        )
        return ReconcileResult(order.pk, outcome, trnx_id, applied=True)

    def reconcile_redirect(self, query: Mapping[str, str]) -> RedirectTarget:
        """Pick the browser destination for a redirect callback. Never writes.

        A redirect without any signature is a known failure shape from the
        gateway: it is routed to the order page with a failure flag when an
        order id is present, to the generic failure page otherwise.
        """
        params = dict(query)
        signature = params.pop("hmac", None)
        merchant_id = params.get("merchant_order_id") or params.get("order.merchant_order_id") or None

        if not signature:
            order_id = merchant_id or params.get("order_id") or None
            logger.warning("redirect without signature", extra={"order_id": order_id})
            return RedirectTarget("failed", order_id)

        if not self.verifier.is_valid(REDIRECT_FIELDS, params, signature):
            logger.warning("redirect signature rejected")
            return RedirectTarget("failed")

        success = params.get("success") == "true"
        pending = params.get("pending") == "true"
        try:
            label = derive_outcome(success, pending).label
        except UnmappedOutcomeError:
            logger.error(
                "redirect reported success and pending together",
                extra={"order_id": merchant_id, "transaction_id": params.get("id")},
            )
            label = "pending"
        return RedirectTarget(label, merchant_id)
