"""Stock counters for the three product stocking topologies.

Only the fields the ledger needs are modelled here; the rest of the catalog
(descriptions, images, taxonomy) lives elsewhere.

- Simple product: ``Product.stock``.
- Colour-variant product: ``Product.stock`` plus one ``ProductVariant`` per
  colour; both counters move together.
- Storage-based product: ``ProductStorage`` options, each holding
  ``ProductStorageUnit`` rows (colour + stock). A storage option has no
  counter of its own.
"""

from decimal import Decimal

from django.db import models
from django.db.models import Sum


class Product(models.Model):
    name = models.CharField(max_length=200)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    stock = models.IntegerField(default=0)

    class Meta:
        db_table = "products"

    def __str__(self):
        return self.name


class ProductVariant(models.Model):
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="variants")
    color = models.CharField(max_length=64)
    quantity = models.IntegerField(default=0)

    class Meta:
        db_table = "product_variants"
        ordering = ["id"]


class ProductStorage(models.Model):
    """A capacity tier (e.g. ``256GB``) of a storage-based product."""

    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="storages")
    size = models.CharField(max_length=64)
    price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    position = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "product_storages"
        ordering = ["position", "id"]

    @property
    def available_stock(self) -> int:
        return self.units.aggregate(total=Sum("stock"))["total"] or 0


class ProductStorageUnit(models.Model):
    storage = models.ForeignKey(ProductStorage, on_delete=models.CASCADE, related_name="units")
    color = models.CharField(max_length=64)
    stock = models.IntegerField(default=0)

    class Meta:
        db_table = "product_storage_units"
        ordering = ["id"]
