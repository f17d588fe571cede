"""Domain types, state machine and ports for the order lifecycle.

This module holds the order and payment status enumerations, the rules that
decide which status transitions are legal, the mapping from a gateway's
``(success, pending)`` pair to a payment outcome, small immutable DTOs used
between the layers, and the protocols (ports) the services depend on. It does
no I/O.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from .errors import ConflictError, UnmappedOutcomeError


# ---- Enums ----
class OrderStatus(str, Enum):
    """Customer-visible order status.

    Happy path is PENDING → PROCESSING → SHIPPED → DELIVERED. CANCELLED can be
    reached from any non-terminal state. DELIVERED and CANCELLED are terminal.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Financial status of an order as reported by the payment gateway."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
SETTLED_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.REFUNDED})

_FORWARD = [OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED]


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def check_transition(current, target) -> None:
    """Validate a status change against the order state machine.

    A non-terminal order may stay where it is (absolute re-set), move forward
    along the happy path, or be cancelled. Nothing may leave a terminal state
    and nothing may move backwards.

    Args:
        current: Status the order has now.
        target: Status the caller wants to write.

    Raises:
        ConflictError: With code ``ORDER_TERMINAL`` when ``current`` is
            terminal, or ``INVALID_TRANSITION`` for a backward move.
    """
    current, target = OrderStatus(current), OrderStatus(target)
    if current in TERMINAL_STATUSES:
        raise ConflictError(
            f"Order is {current.value} and can no longer change status",
            code="ORDER_TERMINAL",
        )
    if target is OrderStatus.CANCELLED or target is current:
        return
    if _FORWARD.index(target) < _FORWARD.index(current):
        raise ConflictError(
            f"Cannot move order from {current.value} back to {target.value}",
            code="INVALID_TRANSITION",
        )


# ---- Payment outcome ----
@dataclass(frozen=True)
class PaymentOutcome:
    """Target statuses derived from a gateway callback."""

    payment_status: PaymentStatus
    order_status: OrderStatus

    @property
    def label(self) -> str:
        """Short outcome name used for browser routing (success/pending/failed)."""
        return {
            PaymentStatus.SUCCESS: "success",
            PaymentStatus.PENDING: "pending",
        }.get(self.payment_status, "failed")


_OUTCOMES = {
    (True, False): PaymentOutcome(PaymentStatus.SUCCESS, OrderStatus.PROCESSING),
    (False, True): PaymentOutcome(PaymentStatus.PENDING, OrderStatus.PENDING),
    (False, False): PaymentOutcome(PaymentStatus.FAILED, OrderStatus.CANCELLED),
}


def derive_outcome(success: bool, pending: bool) -> PaymentOutcome:
    """Map the gateway's ``(success, pending)`` flags to statuses.

    Raises:
        UnmappedOutcomeError: For ``(True, True)``, which has no agreed
            business meaning yet and must not be silently defaulted.
    """
    try:
        return _OUTCOMES[(bool(success), bool(pending))]
    except KeyError:
        raise UnmappedOutcomeError(
            "Gateway reported success=true and pending=true; outcome is undefined"
        ) from None


# ---- DTOs ----
@dataclass(frozen=True)
class CancelLine:
    """One admin cancellation request line.

    ``quantity_to_cancel == 0`` is the legacy sentinel for "everything that
    is left on this line".
    """

    item_id: str
    quantity_to_cancel: int = 0


@dataclass(frozen=True)
class CancellationSummary:
    processed_items: int
    total_cancelled_quantity: int
    removed_item_ids: tuple = ()
    order_status: Optional[OrderStatus] = None


@dataclass(frozen=True)
class CancelledOrder:
    order_id: str
    status: OrderStatus
    restored_quantity: int


# ---- Ports (DIP) ----
class StockLedgerPort(Protocol):
    """Restores previously reserved stock for a line item reference."""

    def restore(self, reference, quantity: int) -> List:
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Best-effort customer notification about an order status change."""

    def status_changed(self, order, status: OrderStatus, comment: Optional[str] = None) -> None:
        raise NotImplementedError()
