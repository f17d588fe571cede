from decimal import Decimal

import pytest
from django.core.cache import cache

from apps.inventory.models import Product, ProductStorage, ProductStorageUnit, ProductVariant
from apps.orders.models import OrderItemModel, OrderModel, StatusUpdateModel
from apps.payments.gateway import gateway_circuit
from apps.payments.signature import SignatureVerifier

HMAC_SECRET = "test-hmac-secret"


@pytest.fixture(autouse=True)
def gateway_settings(settings):
    settings.PAYMOB_HMAC_SECRET = HMAC_SECRET
    settings.PAYMOB_HMAC_DIGEST = "sha256"
    settings.PAYMOB_SECRET_KEY = "sk_test_123"
    settings.PAYMOB_PUBLIC_KEY = "pk_test_123"
    settings.PAYMOB_BASE_URL = "https://gateway.test"
    settings.PAYMOB_INTEGRATION_ID = 4242
    settings.APP_PUBLIC_URL = "https://shop.example"
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    gateway_circuit.reset()
    cache.clear()
    yield
    gateway_circuit.reset()


@pytest.fixture
def customer(django_user_model):
    return django_user_model.objects.create_user(username="alice", email="alice@example.com", password="pw")


@pytest.fixture
def other_customer(django_user_model):
    return django_user_model.objects.create_user(username="bob", email="bob@example.com", password="pw")


@pytest.fixture
def simple_product(db):
    return Product.objects.create(name="Charger", price=Decimal("15.00"), stock=10)


@pytest.fixture
def variant_product(db):
    product = Product.objects.create(name="Case", price=Decimal("9.99"), stock=20)
    ProductVariant.objects.create(product=product, color="red", quantity=8)
    ProductVariant.objects.create(product=product, color="blue", quantity=12)
    return product


@pytest.fixture
def storage_product(db):
    """Phone with two capacity tiers; the 128GB tier has black and white units."""
    product = Product.objects.create(name="Phone", price=Decimal("499.00"), stock=0)
    small = ProductStorage.objects.create(product=product, size="128GB", position=0)
    ProductStorageUnit.objects.create(storage=small, color="black", stock=10)
    ProductStorageUnit.objects.create(storage=small, color="white", stock=4)
    large = ProductStorage.objects.create(product=product, size="256GB", position=1)
    ProductStorageUnit.objects.create(storage=large, color="black", stock=2)
    return product


@pytest.fixture
def make_order(db):
    """Create an order with items and an initial history entry for its status."""

    def _make(items, user=None, status="PENDING", payment_status="PENDING", order_id=None, **fields):
        kwargs = dict(user=user, status=status, payment_status=payment_status, **fields)
        if order_id:
            kwargs["id"] = order_id
        order = OrderModel.objects.create(**kwargs)
        total = Decimal("0.00")
        for line in items:
            product = line["product"]
            price = line.get("price", product.price)
            OrderItemModel.objects.create(
                order=order,
                product=product,
                quantity=line["quantity"],
                price=price,
                color=line.get("color"),
                storage=line.get("storage"),
                unit=line.get("unit"),
            )
            total += price * line["quantity"]
        order.total = total
        order.save(update_fields=["total"])
        StatusUpdateModel.objects.create(order=order, status=status, comment="Order placed")
        return order

    return _make


@pytest.fixture
def signer():
    """Verifier holding the test secret, used to sign callback payloads."""
    return SignatureVerifier(HMAC_SECRET, "sha256")
