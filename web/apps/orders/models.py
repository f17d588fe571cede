import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models

from apps.inventory.models import Product, ProductStorage, ProductStorageUnit

from .domain import OrderStatus, PaymentStatus


def new_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:12].upper()}"


def new_item_id() -> str:
    return uuid.uuid4().hex


class OrderModel(models.Model):
    # Merchant order id, also sent to the gateway as ``special_reference``
    id = models.CharField(primary_key=True, max_length=64, default=new_order_id, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="orders"
    )

    status = models.CharField(
        max_length=16,
        choices=[(s.value, s.value) for s in OrderStatus],
        default=OrderStatus.PENDING.value,
        db_index=True,
    )
    payment_status = models.CharField(
        max_length=16,
        choices=[(s.value, s.value) for s in PaymentStatus],
        default=PaymentStatus.PENDING.value,
    )
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="EGP")
    trnx_id = models.CharField(max_length=64, null=True, blank=True)
    gateway_order_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)

    shipping_name = models.CharField(max_length=200, blank=True, default="")
    shipping_email = models.EmailField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.id} ({self.status}/{self.payment_status})"

    @property
    def contact_email(self) -> str:
        if self.shipping_email:
            return self.shipping_email
        return getattr(self.user, "email", "") or ""


class OrderItemModel(models.Model):
    id = models.CharField(primary_key=True, max_length=64, default=new_item_id, editable=False)
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="+")

    quantity = models.PositiveIntegerField()
    # Set once at checkout; quantity + cancelled_quantity always equals it
    original_quantity = models.PositiveIntegerField(null=True, blank=True)
    cancelled_quantity = models.PositiveIntegerField(default=0)
    # Snapshot of the unit price at order time
    price = models.DecimalField(max_digits=12, decimal_places=2)

    color = models.CharField(max_length=64, null=True, blank=True)
    storage = models.ForeignKey(ProductStorage, null=True, blank=True, on_delete=models.SET_NULL, related_name="+")
    unit = models.ForeignKey(ProductStorageUnit, null=True, blank=True, on_delete=models.SET_NULL, related_name="+")

    class Meta:
        db_table = "order_items"
        ordering = ["id"]

    def save(self, *args, **kwargs):
        if self.original_quantity is None:
            self.original_quantity = self.quantity + self.cancelled_quantity
        super().save(*args, **kwargs)


class StatusUpdateModel(models.Model):
    """Append-only order status history; the latest row is the order's status."""

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="status_history")
    status = models.CharField(max_length=16, choices=[(s.value, s.value) for s in OrderStatus])
    comment = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_status_updates"
        ordering = ["created_at", "id"]


class IdempotencyKey(models.Model):
    key = models.CharField(primary_key=True, max_length=200)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
