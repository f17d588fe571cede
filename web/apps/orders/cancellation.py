"""Cancellation processor: full-order and line-item cancellation.

Every public method runs in a single database transaction. Stock is given
back through the inventory ledger, order rows are changed through the
``OrderRepository`` and a history entry is appended, so either all of it
commits or none of it does. The order row is always locked before its item
rows, the same order the webhook reconciler uses, so concurrent cancellations
and payment callbacks serialise instead of deadlocking.
"""

import logging
from typing import Iterable, Optional

from django.db import transaction

from apps.inventory.ledger import StockReference

from .domain import (
    CancelledOrder,
    CancelLine,
    CancellationSummary,
    NotifierPort,
    OrderStatus,
    StockLedgerPort,
    check_transition,
    is_terminal,
)
from .errors import AuthError, ConflictError, NotFoundError, ValidationError
from .repository import OrderRepository, atomic

logger = logging.getLogger(__name__)

CUSTOMER_CANCEL_COMMENT = "Order cancelled by customer - stock restored"
BULK_STATUS_COMMENT = "Bulk status update"


def _parse_status(status) -> Optional[OrderStatus]:
    if status is None or status == "":
        return None
    try:
        return OrderStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {status}", code="INVALID_STATUS") from None


class CancellationProcessor:
    """Validates and executes order and line-item cancellations.

    Args:
        ledger: Port used to restore reserved stock.
        orders: Repository for the order aggregate.
        notifier: Optional best-effort notifier called after commit.
    """

    def __init__(self, ledger: StockLedgerPort, orders: OrderRepository, notifier: Optional[NotifierPort] = None):
        self.ledger = ledger
        self.orders = orders
        self.notifier = notifier

    # ---- Customer ----
    def cancel_order(self, order_id: str, requester_id) -> CancelledOrder:
        """Cancel a pending order on behalf of its owner and restore its stock.

        Raises:
            AuthError: If no requester is given.
            NotFoundError: If the order does not exist or is not the requester's.
            ConflictError: If the order is not PENDING.
        """
        if requester_id is None:
            raise AuthError("A signed-in customer is required to cancel an order", code="REQUESTER_REQUIRED")
        with atomic():
            order = self.orders.get_for_update(order_id, owner_id=requester_id)
            if order.status != OrderStatus.PENDING.value:
                raise ConflictError(
                    f"Cannot cancel order with status {order.status}. Only pending orders can be cancelled.",
                    code="ORDER_NOT_CANCELLABLE",
                )
            restored = self.restore_order_stock(order)
            self.orders.transition(order, OrderStatus.CANCELLED, CUSTOMER_CANCEL_COMMENT)
            self.notify_after_commit(order, OrderStatus.CANCELLED, CUSTOMER_CANCEL_COMMENT)

        logger.info("order cancelled by customer", extra={"order_id": order_id, "restored": restored})
        return CancelledOrder(order_id=order.pk, status=OrderStatus.CANCELLED, restored_quantity=restored)

    # ---- Admin ----
    def cancel_items(
        self,
        order_id: str,
        lines: Iterable[CancelLine],
        comment: Optional[str] = None,
        status=None,
    ) -> CancellationSummary:
        """Cancel whole lines or part of their quantity.

        Each line restores exactly the cancelled quantity to the counter the
        item was reserved from. A line whose whole remainder is cancelled is
        deleted; otherwise its quantity is decremented in place. One history
        entry summarises the batch. The header status only changes when
        ``status`` is given, even if the batch removes the last line.

        Args:
            order_id: Order the lines must belong to.
            lines: ``CancelLine`` values; ``quantity_to_cancel == 0`` means
                the full remaining quantity.
            comment: Optional admin note appended to the history entry.
            status: Optional status to move the order to in the same
                transaction.

        Returns:
            CancellationSummary with the processed line count and quantity.

        Raises:
            ValidationError: Empty batch, negative quantity, duplicate item.
            NotFoundError: Unknown order, or an item not on this order.
            ConflictError: Terminal order, quantity above what remains, or a
                status change the state machine forbids.
        """
        lines = list(lines)
        self._validate_lines(lines)
        target = _parse_status(status)

        with atomic():
            order = self.orders.get_for_update(order_id)
            if is_terminal(order.status):
                raise ConflictError(
                    f"Order is {order.status} and can no longer be modified", code="ORDER_TERMINAL"
                )
            if target is not None:
                check_transition(order.status, target)

            items = self.orders.items_for_update(order, [line.item_id for line in lines])
            plan = []
            for line in lines:
                item = items.get(line.item_id)
                if item is None:
                    raise NotFoundError(
                        f"Item {line.item_id} does not belong to order {order.pk}", code="ITEM_NOT_FOUND"
                    )
                qty = line.quantity_to_cancel or item.quantity
                if qty > item.quantity:
                    raise ConflictError(
                        f"Cannot cancel {qty} of item {item.pk}; only {item.quantity} remaining",
                        code="ITEM_QUANTITY_EXCEEDED",
                    )
                plan.append((item, qty))

            removed = []
            total = 0
            for item, qty in plan:
                item_id = item.pk
                self.ledger.restore(StockReference.for_item(item), qty)
                if self.orders.remove_quantity(item, qty):
                    removed.append(item_id)
                total += qty

            note = f"{total} item(s) cancelled from {len(plan)} line(s)"
            if comment:
                note = f"{note}: {comment}"

            if target is None:
                self.orders.append_note(order, note)
            else:
                if target is OrderStatus.CANCELLED:
                    self.restore_order_stock(order)
                self.orders.transition(order, target, note)
                self.notify_after_commit(order, target, note)

        logger.info(
            "order items cancelled",
            extra={"order_id": order_id, "lines": len(plan), "quantity": total, "removed": removed},
        )
        return CancellationSummary(
            processed_items=len(plan),
            total_cancelled_quantity=total,
            removed_item_ids=tuple(removed),
            order_status=OrderStatus(order.status),
        )

    def update_status(self, order_id: str, status, comment: Optional[str] = None):
        """Move an order to ``status`` (admin action); cancelling restores stock.

        Raises:
            ValidationError: Unknown status value.
            NotFoundError: Unknown order.
            ConflictError: Transition forbidden by the state machine.
        """
        target = _parse_status(status)
        if target is None:
            raise ValidationError("A target status is required", code="INVALID_STATUS")

        with atomic():
            order = self.orders.get_for_update(order_id)
            check_transition(order.status, target)
            if target is OrderStatus.CANCELLED:
                self.restore_order_stock(order)
            entry = self.orders.transition(order, target, comment)
            self.notify_after_commit(order, target, comment)
        return order, entry

    def update_status_bulk(self, order_ids: Iterable[str], status, comment: Optional[str] = None):
        """Move several orders to ``status`` in one transaction.

        Orders are locked in id order. If any order is missing or refuses the
        transition the whole batch is rolled back and nothing is notified.

        Returns:
            The updated orders, in id order.
        """
        target = _parse_status(status)
        if target is None:
            raise ValidationError("A target status is required", code="INVALID_STATUS")
        ids = sorted({str(oid) for oid in order_ids if oid})
        if not ids:
            raise ValidationError("No orders selected", code="NO_ORDERS")
        comment = comment or BULK_STATUS_COMMENT

        updated = []
        with atomic():
            for order_id in ids:
                order = self.orders.get_for_update(order_id)
                check_transition(order.status, target)
                if target is OrderStatus.CANCELLED:
                    self.restore_order_stock(order)
                self.orders.transition(order, target, comment)
                self.notify_after_commit(order, target, comment)
                updated.append(order)

        logger.info("bulk status update", extra={"status": target.value, "count": len(updated)})
        return updated

    # ---- Shared ----
    def restore_order_stock(self, order) -> int:
        """Restore the remaining quantity of every line of ``order``.

        Must be called inside the caller's transaction with the order locked.
        """
        restored = 0
        for item in self.orders.items_for_update(order).values():
            self.ledger.restore(StockReference.for_item(item), item.quantity)
            restored += item.quantity
        return restored

    def _validate_lines(self, lines) -> None:
        if not lines:
            raise ValidationError("No items selected for cancellation", code="NO_ITEMS")
        seen = set()
        for line in lines:
            if line.quantity_to_cancel < 0:
                raise ValidationError(
                    f"Cancel quantity for item {line.item_id} cannot be negative", code="NEGATIVE_QUANTITY"
                )
            if line.item_id in seen:
                raise ValidationError(f"Item {line.item_id} listed more than once", code="DUPLICATE_ITEM")
            seen.add(line.item_id)

    def notify_after_commit(self, order, status: OrderStatus, comment: Optional[str]) -> None:
        if self.notifier is None:
            return
        transaction.on_commit(lambda: self.notifier.status_changed(order, status, comment))
