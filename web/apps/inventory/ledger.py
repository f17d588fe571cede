"""Inventory ledger: resolve a stock reference and restore reserved units.

The ledger never reads a counter and writes it back. Every movement is a
single ``UPDATE ... SET counter = counter + n`` issued through ``F()``
expressions, so concurrent restorations of the same counter cannot lose
updates. Only the *identity* of the row to increment is resolved in Python.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from django.db import transaction
from django.db.models import F

from apps.orders.errors import NotFoundError, ValidationError

from .models import Product, ProductStorage, ProductStorageUnit, ProductVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockReference:
    """Identifies which counter(s) a line item reserved stock from.

    Attributes:
        product_id: Product the stock belongs to.
        storage_id: Capacity tier, for storage-based products.
        unit_id: Exact storage unit, when known.
        color: Colour of a variant or of a storage unit.
    """

    product_id: int
    storage_id: Optional[int] = None
    unit_id: Optional[int] = None
    color: Optional[str] = None

    @classmethod
    def for_item(cls, item) -> "StockReference":
        return cls(
            product_id=item.product_id,
            storage_id=item.storage_id,
            unit_id=item.unit_id,
            color=item.color or None,
        )


@dataclass(frozen=True)
class CounterMovement:
    """One counter incremented by the ledger (``kind`` is unit/variant/product)."""

    kind: str
    pk: int
    quantity: int


def _increment(model, pk: int, field: str, quantity: int) -> int:
    return model.objects.filter(pk=pk).update(**{field: F(field) + quantity})


class InventoryLedger:
    """Restores previously reserved stock for the three stocking topologies."""

    def restore(self, reference: StockReference, quantity: int) -> List[CounterMovement]:
        """Give ``quantity`` units back to the counter(s) behind ``reference``.

        Resolution order:

        1. ``storage_id`` set: the exact ``unit_id`` if it belongs to that
           storage, else the unit matching ``color``, else the storage's
           first unit.
        2. ``color`` set without storage: the matching variant *and* the
           product counter.
        3. Otherwise the product counter alone.

        Args:
            reference: Where the stock was reserved from.
            quantity: Units to give back; ``0`` is a no-op.

        Returns:
            The counters that were incremented.

        Raises:
            ValidationError: If ``quantity`` is negative.
            NotFoundError: If the product or storage option does not exist,
                or the storage has no units to receive the stock.
        """
        if quantity < 0:
            raise ValidationError("Restored quantity cannot be negative", code="NEGATIVE_QUANTITY")
        if quantity == 0:
            return []

        with transaction.atomic():
            if reference.storage_id is not None:
                unit_id = self._resolve_unit(reference)
                _increment(ProductStorageUnit, unit_id, "stock", quantity)
                movements = [CounterMovement("unit", unit_id, quantity)]
            else:
                movements = self._restore_product(reference, quantity)

        logger.info(
            "stock restored",
            extra={
                "product_id": reference.product_id,
                "quantity": quantity,
                "counters": [f"{m.kind}:{m.pk}" for m in movements],
            },
        )
        return movements

    def _resolve_unit(self, reference: StockReference) -> int:
        storage = (
            ProductStorage.objects.filter(pk=reference.storage_id, product_id=reference.product_id)
            .only("id")
            .first()
        )
        if storage is None:
            raise NotFoundError(
                f"Storage option {reference.storage_id} not found for product {reference.product_id}",
                code="STORAGE_NOT_FOUND",
            )
        units = list(storage.units.order_by("id").values_list("id", "color"))
        if not units:
            raise NotFoundError(
                f"Storage option {storage.pk} has no units to restore stock to",
                code="STORAGE_UNIT_NOT_FOUND",
            )

        if reference.unit_id is not None:
            if any(uid == reference.unit_id for uid, _ in units):
                return reference.unit_id
            logger.warning(
                "unit not found in storage, resolving by colour",
                extra={"storage_id": storage.pk, "unit_id": reference.unit_id},
            )

        if reference.color:
            for uid, color in units:
                if color == reference.color:
                    return uid
            logger.warning(
                "no unit matches colour, falling back to first unit",
                extra={"storage_id": storage.pk, "color": reference.color},
            )

        return units[0][0]

    def _restore_product(self, reference: StockReference, quantity: int) -> List[CounterMovement]:
        if not Product.objects.filter(pk=reference.product_id).exists():
            raise NotFoundError(f"Product {reference.product_id} not found", code="PRODUCT_NOT_FOUND")

        movements: List[CounterMovement] = []
        if reference.color:
            variant_id = (
                ProductVariant.objects.filter(product_id=reference.product_id, color=reference.color)
                .order_by("id")
                .values_list("id", flat=True)
                .first()
            )
            if variant_id is None:
                logger.warning(
                    "no variant matches colour, restoring product stock only",
                    extra={"product_id": reference.product_id, "color": reference.color},
                )
            else:
                _increment(ProductVariant, variant_id, "quantity", quantity)
                movements.append(CounterMovement("variant", variant_id, quantity))

        _increment(Product, reference.product_id, "stock", quantity)
        movements.append(CounterMovement("product", reference.product_id, quantity))
        return movements
