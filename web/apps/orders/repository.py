"""Repository layer for the order aggregate.

``OrderRepository`` is the only code that writes order headers, line items
and status history. It keeps a thin interface so services do not touch the
ORM directly, and it enforces the aggregate's invariants:

- ``OrderModel.status`` is only changed together with a new
  ``StatusUpdateModel`` row carrying the same status.
- Line item quantities only go down through ``remove_quantity``, which
  deletes the row instead of leaving it at zero.

Methods assume the caller has opened ``transaction.atomic()``; the
``*_for_update`` readers take row locks that are only meaningful inside it.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

from django.db import DatabaseError, transaction
from django.db.models import F

from .domain import OrderStatus, PaymentStatus, check_transition
from .errors import NotFoundError, PersistenceError
from .models import OrderItemModel, OrderModel, StatusUpdateModel

logger = logging.getLogger(__name__)


@contextmanager
def atomic():
    """``transaction.atomic()`` that reports database failures as PersistenceError.

    The block is rolled back by Django before the error is translated, so no
    state is ever half-applied.
    """
    try:
        with transaction.atomic():
            yield
    except DatabaseError as exc:
        logger.exception("transaction rolled back")
        raise PersistenceError("The operation could not be saved and was rolled back") from exc


class OrderRepository:
    """Persistence for orders, items and status history using Django ORM."""

    # ---- Reads ----
    def get(self, order_id: str) -> OrderModel:
        try:
            return OrderModel.objects.get(pk=order_id)
        except OrderModel.DoesNotExist:
            raise NotFoundError(f"Order {order_id} not found", code="ORDER_NOT_FOUND") from None

    def get_for_update(self, order_id: str, owner_id=None) -> OrderModel:
        """Load and lock an order row.

        Args:
            order_id: Merchant order id.
            owner_id: When given, the order must belong to this user; an
                order owned by someone else is reported as not found.

        Raises:
            NotFoundError: If no matching order exists.
        """
        qs = OrderModel.objects.select_for_update().filter(pk=order_id)
        if owner_id is not None:
            qs = qs.filter(user_id=owner_id)
        order = qs.first()
        if order is None:
            raise NotFoundError(
                f"Order {order_id} not found or does not belong to you", code="ORDER_NOT_FOUND"
            )
        return order

    def find_for_update(self, *order_ids: Optional[str]) -> Optional[OrderModel]:
        """Lock the first order matching any of the ids, by merchant then gateway id."""
        for oid in order_ids:
            if not oid:
                continue
            order = OrderModel.objects.select_for_update().filter(pk=oid).first()
            if order is None:
                order = OrderModel.objects.select_for_update().filter(gateway_order_id=oid).first()
            if order is not None:
                return order
        return None

    def items_for_update(self, order: OrderModel, item_ids: Iterable[str] = None) -> Dict[str, OrderItemModel]:
        qs = OrderItemModel.objects.select_for_update().filter(order=order)
        if item_ids is not None:
            qs = qs.filter(pk__in=list(item_ids))
        return {item.pk: item for item in qs.order_by("id")}

    def history(self, order_id: str) -> List[StatusUpdateModel]:
        return list(StatusUpdateModel.objects.filter(order_id=order_id).order_by("created_at", "id"))

    def latest_status(self, order_id: str) -> Optional[str]:
        entry = StatusUpdateModel.objects.filter(order_id=order_id).order_by("-created_at", "-id").first()
        return entry.status if entry else None

    # ---- Writes ----
    def transition(
        self,
        order: OrderModel,
        status: OrderStatus,
        comment: Optional[str] = None,
        *,
        payment_status: Optional[PaymentStatus] = None,
        trnx_id: Optional[str] = None,
    ) -> StatusUpdateModel:
        """Write a new status on the header and append the matching history row.

        Optional payment fields are set to absolute values in the same
        ``UPDATE`` so replaying the call converges on the same row state.

        Raises:
            ConflictError: If the state machine forbids the transition.
        """
        status = OrderStatus(status)
        check_transition(order.status, status)

        order.status = status.value
        fields = ["status", "updated_at"]
        if payment_status is not None:
            order.payment_status = PaymentStatus(payment_status).value
            fields.append("payment_status")
        if trnx_id is not None:
            order.trnx_id = trnx_id
            fields.append("trnx_id")
        order.save(update_fields=fields)

        entry = StatusUpdateModel.objects.create(order=order, status=status.value, comment=comment)
        logger.info(
            "order status written",
            extra={"order_id": order.pk, "status": status.value, "payment_status": order.payment_status},
        )
        return entry

    def append_note(self, order: OrderModel, comment: str) -> StatusUpdateModel:
        """Append a history entry that repeats the current status (no transition)."""
        return StatusUpdateModel.objects.create(order=order, status=order.status, comment=comment)

    def remove_quantity(self, item: OrderItemModel, quantity: int) -> bool:
        """Take ``quantity`` units off a line item.

        Returns:
            True when the line was emptied and its row deleted.
        """
        if quantity >= item.quantity:
            item.delete()
            return True
        OrderItemModel.objects.filter(pk=item.pk).update(
            quantity=F("quantity") - quantity,
            cancelled_quantity=F("cancelled_quantity") + quantity,
        )
        return False
