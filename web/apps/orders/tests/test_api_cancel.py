import pytest
from django.test import Client

from apps.inventory.models import Product, ProductStorageUnit
from apps.orders.models import IdempotencyKey, OrderItemModel, OrderModel

CUSTOMER_CANCEL_URL = "/api/user/orders/{}/cancel/"
CANCEL_ITEMS_URL = "/api/orders/{}/cancel-items/"


@pytest.fixture
def phone_order(make_order, storage_product, customer):
    storage = storage_product.storages.get(size="128GB")
    unit = storage.units.get(color="black")
    return make_order(
        [{"product": storage_product, "quantity": 5, "storage": storage, "unit": unit, "color": "black"}],
        user=customer,
        order_id="ORD-1",
    )


# ---- Customer ----
@pytest.mark.django_db
def test_customer_cancels_pending_order(client, customer, make_order, simple_product):
    order = make_order([{"product": simple_product, "quantity": 3}], user=customer)
    client.force_login(customer)

    r = client.post(CUSTOMER_CANCEL_URL.format(order.pk), content_type="application/json")
    assert r.status_code == 200
    body = r.json()
    assert body["message"] == "Order cancelled successfully"
    assert body["order"] == {"id": order.pk, "status": "CANCELLED", "restoredQuantity": 3}
    assert Product.objects.get(pk=simple_product.pk).stock == 13


@pytest.mark.django_db
def test_customer_cancel_requires_login(client, customer, make_order, simple_product):
    order = make_order([{"product": simple_product, "quantity": 1}], user=customer)
    r = client.post(CUSTOMER_CANCEL_URL.format(order.pk), content_type="application/json")
    assert r.status_code == 403
    assert OrderModel.objects.get(pk=order.pk).status == "PENDING"


@pytest.mark.django_db
def test_customer_cancel_enforces_csrf(customer, make_order, simple_product):
    order = make_order([{"product": simple_product, "quantity": 1}], user=customer)
    csrf_client = Client(enforce_csrf_checks=True)
    csrf_client.force_login(customer)

    r = csrf_client.post(CUSTOMER_CANCEL_URL.format(order.pk), content_type="application/json")
    assert r.status_code == 403
    assert "CSRF" in r.json()["detail"]
    assert OrderModel.objects.get(pk=order.pk).status == "PENDING"


@pytest.mark.django_db
def test_customer_cancel_of_other_users_order_is_404(client, customer, other_customer, make_order, simple_product):
    order = make_order([{"product": simple_product, "quantity": 1}], user=customer)
    client.force_login(other_customer)
    r = client.post(CUSTOMER_CANCEL_URL.format(order.pk), content_type="application/json")
    assert r.status_code == 404
    assert r.json()["detail"] == "ORDER_NOT_FOUND"


@pytest.mark.django_db
def test_customer_cancel_shipped_order_is_409(client, customer, make_order, simple_product):
    order = make_order([{"product": simple_product, "quantity": 1}], user=customer, status="SHIPPED")
    client.force_login(customer)
    r = client.post(CUSTOMER_CANCEL_URL.format(order.pk), content_type="application/json")
    assert r.status_code == 409
    assert r.json()["detail"] == "ORDER_NOT_CANCELLABLE"


# ---- Admin ----
@pytest.mark.django_db
def test_admin_partial_cancel(admin_client, phone_order):
    item = phone_order.items.get()
    payload = {"items": [{"itemId": item.pk, "quantityToCancel": 2}], "comment": "damaged box"}

    r = admin_client.post(CANCEL_ITEMS_URL.format("ORD-1"), data=payload, content_type="application/json")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["processedItems"] == 1
    assert body["totalCancelledQuantity"] == 2
    assert body["removedItemIds"] == []
    assert body["orderStatus"] == "PENDING"
    assert OrderItemModel.objects.get(pk=item.pk).quantity == 3
    assert ProductStorageUnit.objects.get(pk=item.unit_id).stock == 12


@pytest.mark.django_db
def test_admin_endpoint_rejects_customers(client, customer, phone_order):
    item = phone_order.items.get()
    client.force_login(customer)
    r = client.post(
        CANCEL_ITEMS_URL.format("ORD-1"),
        data={"items": [{"itemId": item.pk}]},
        content_type="application/json",
    )
    assert r.status_code == 403
    assert OrderItemModel.objects.get(pk=item.pk).quantity == 5


@pytest.mark.django_db
def test_legacy_item_ids_body_cancels_whole_lines(admin_client, phone_order):
    item = phone_order.items.get()
    r = admin_client.post(
        CANCEL_ITEMS_URL.format("ORD-1"), data={"itemIds": [item.pk]}, content_type="application/json"
    )
    assert r.status_code == 200
    assert r.json()["removedItemIds"] == [item.pk]
    assert r.json()["orderStatus"] == "PENDING"
    assert OrderModel.objects.get(pk="ORD-1").status == "PENDING"
    assert ProductStorageUnit.objects.get(pk=item.unit_id).stock == 15


@pytest.mark.django_db
def test_exceeding_quantity_is_409(admin_client, phone_order):
    item = phone_order.items.get()
    r = admin_client.post(
        CANCEL_ITEMS_URL.format("ORD-1"),
        data={"items": [{"itemId": item.pk, "quantityToCancel": 9}]},
        content_type="application/json",
    )
    assert r.status_code == 409
    assert r.json()["detail"] == "ITEM_QUANTITY_EXCEEDED"
    assert OrderItemModel.objects.get(pk=item.pk).quantity == 5


@pytest.mark.django_db
@pytest.mark.parametrize(
    "payload",
    [
        {"items": []},
        {"items": [{"itemId": "x", "quantityToCancel": -1}]},
        {"comment": "nothing selected"},
    ],
)
def test_malformed_bodies_are_400(admin_client, phone_order, payload):
    r = admin_client.post(CANCEL_ITEMS_URL.format("ORD-1"), data=payload, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"


@pytest.mark.django_db
def test_idempotent_retry_replays_first_response(admin_client, phone_order):
    item = phone_order.items.get()
    payload = {"items": [{"itemId": item.pk, "quantityToCancel": 1}]}
    headers = {"HTTP_IDEMPOTENCY_KEY": "cancel-ord-1-a"}

    r1 = admin_client.post(CANCEL_ITEMS_URL.format("ORD-1"), data=payload, content_type="application/json", **headers)
    r2 = admin_client.post(CANCEL_ITEMS_URL.format("ORD-1"), data=payload, content_type="application/json", **headers)

    assert r1.status_code == r2.status_code == 200
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    # stock restored once, not twice
    assert ProductStorageUnit.objects.get(pk=item.unit_id).stock == 11
    assert OrderItemModel.objects.get(pk=item.pk).quantity == 4


@pytest.mark.django_db
def test_idempotency_key_reused_for_other_body_is_409(admin_client, phone_order):
    item = phone_order.items.get()
    headers = {"HTTP_IDEMPOTENCY_KEY": "cancel-ord-1-b"}
    admin_client.post(
        CANCEL_ITEMS_URL.format("ORD-1"),
        data={"items": [{"itemId": item.pk, "quantityToCancel": 1}]},
        content_type="application/json",
        **headers,
    )
    r = admin_client.post(
        CANCEL_ITEMS_URL.format("ORD-1"),
        data={"items": [{"itemId": item.pk, "quantityToCancel": 2}]},
        content_type="application/json",
        **headers,
    )
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_idempotent_replay_preserves_409(admin_client, phone_order):
    item = phone_order.items.get()
    payload = {"items": [{"itemId": item.pk, "quantityToCancel": 99}]}
    headers = {"HTTP_IDEMPOTENCY_KEY": "cancel-ord-1-c"}

    r1 = admin_client.post(CANCEL_ITEMS_URL.format("ORD-1"), data=payload, content_type="application/json", **headers)
    r2 = admin_client.post(CANCEL_ITEMS_URL.format("ORD-1"), data=payload, content_type="application/json", **headers)
    assert r1.status_code == r2.status_code == 409
    assert r2.json()["detail"] == "ITEM_QUANTITY_EXCEEDED"
    assert IdempotencyKey.objects.get(pk="cancel-ord-1-c").response_status == 409
