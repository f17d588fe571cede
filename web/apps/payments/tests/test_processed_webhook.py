"""API tests for the authoritative server-to-server payment callback."""

import pytest

from apps.inventory.models import Product
from apps.orders.models import OrderModel, StatusUpdateModel
from apps.payments.signature import PROCESSED_FIELDS

URL = "/api/paymob/webhooks/processed"


def transaction(success=True, pending=False, tx_id=9001, merchant_order_id="ORD-1", gateway_order_id=555):
    return {
        "amount_cents": 3000,
        "created_at": "2024-05-01T10:00:00",
        "currency": "EGP",
        "error_occured": False,
        "has_parent_transaction": False,
        "id": tx_id,
        "integration_id": 4242,
        "is_3d_secure": True,
        "is_auth": False,
        "is_capture": False,
        "is_refunded": False,
        "is_standalone_payment": True,
        "is_voided": False,
        "order": {"id": gateway_order_id, "merchant_order_id": merchant_order_id},
        "owner": 1,
        "pending": pending,
        "source_data": {"pan": "2346", "sub_type": "MasterCard", "type": "card"},
        "success": success,
    }


def intention_body(signer, tx, special_reference="ORD-1"):
    return {
        "hmac": signer.compute(PROCESSED_FIELDS, tx),
        "transaction": tx,
        "intention": {"special_reference": special_reference},
    }


@pytest.fixture
def order(make_order, simple_product, customer):
    return make_order([{"product": simple_product, "quantity": 2}], user=customer, order_id="ORD-1")


def _post(client, body, **query):
    url = URL
    if query:
        url += "?" + "&".join(f"{k}={v}" for k, v in query.items())
    return client.post(url, data=body, content_type="application/json")


@pytest.mark.django_db
def test_success_marks_order_paid_and_processing(client, signer, order):
    r = _post(client, intention_body(signer, transaction()))
    assert r.status_code == 200
    assert r.json() == {"ok": True, "applied": True}

    order.refresh_from_db()
    assert (order.status, order.payment_status, order.trnx_id) == ("PROCESSING", "SUCCESS", "9001")
    last = StatusUpdateModel.objects.filter(order=order).order_by("-id").first()
    assert last.status == "PROCESSING"
    assert last.comment == "Payment success - Updated by payment webhook"


@pytest.mark.django_db
def test_duplicate_delivery_converges(client, signer, order):
    body = intention_body(signer, transaction())
    _post(client, body)
    snapshot = OrderModel.objects.values("status", "payment_status", "trnx_id").get(pk="ORD-1")
    history = StatusUpdateModel.objects.filter(order=order).count()

    r = _post(client, body)
    assert r.status_code == 200
    assert r.json()["applied"] is False
    assert OrderModel.objects.values("status", "payment_status", "trnx_id").get(pk="ORD-1") == snapshot
    assert StatusUpdateModel.objects.filter(order=order).count() == history


@pytest.mark.django_db
def test_integration_shape_with_query_hmac(client, signer, order):
    tx = transaction()
    body = {"type": "TRANSACTION", "obj": tx}
    r = _post(client, body, hmac=signer.compute(PROCESSED_FIELDS, tx))
    assert r.status_code == 200
    order.refresh_from_db()
    assert order.payment_status == "SUCCESS"


@pytest.mark.django_db
def test_lookup_falls_back_to_gateway_order_id(client, signer, make_order, simple_product):
    order = make_order([{"product": simple_product, "quantity": 1}], gateway_order_id="555")
    tx = transaction(merchant_order_id=None)
    r = _post(client, {"type": "TRANSACTION", "obj": tx}, hmac=signer.compute(PROCESSED_FIELDS, tx))
    assert r.status_code == 200
    order.refresh_from_db()
    assert order.status == "PROCESSING"


@pytest.mark.django_db
def test_pending_keeps_order_pending(client, signer, order):
    r = _post(client, intention_body(signer, transaction(success=False, pending=True)))
    assert r.status_code == 200
    order.refresh_from_db()
    assert (order.status, order.payment_status) == ("PENDING", "PENDING")
    assert order.trnx_id == "9001"


@pytest.mark.django_db
def test_failure_cancels_and_restores_stock(client, signer, order, simple_product):
    r = _post(client, intention_body(signer, transaction(success=False, pending=False)))
    assert r.status_code == 200
    order.refresh_from_db()
    assert (order.status, order.payment_status) == ("CANCELLED", "FAILED")
    assert Product.objects.get(pk=simple_product.pk).stock == 12

    # a retried failure notification must not restore stock again
    _post(client, intention_body(signer, transaction(success=False, pending=False)))
    assert Product.objects.get(pk=simple_product.pk).stock == 12


@pytest.mark.django_db
def test_success_and_pending_together_is_409(client, signer, order):
    r = _post(client, intention_body(signer, transaction(success=True, pending=True)))
    assert r.status_code == 409
    assert r.json()["detail"] == "UNMAPPED_PAYMENT_OUTCOME"
    order.refresh_from_db()
    assert (order.status, order.payment_status) == ("PENDING", "PENDING")


@pytest.mark.django_db
def test_tampered_body_is_rejected_without_changes(client, signer, order):
    body = intention_body(signer, transaction())
    body["transaction"]["amount_cents"] = 1
    r = _post(client, body)
    assert r.status_code == 400
    assert r.json() == {"detail": "INVALID_SIGNATURE", "error": "Invalid signature"}
    order.refresh_from_db()
    assert order.payment_status == "PENDING"


@pytest.mark.django_db
def test_missing_hmac_is_rejected(client, order):
    r = _post(client, {"transaction": transaction(), "intention": {"special_reference": "ORD-1"}})
    assert r.status_code == 400
    assert r.json()["detail"] == "MISSING_SIGNATURE"


@pytest.mark.django_db
def test_unconfigured_secret_fails_closed(client, settings, signer, order):
    settings.PAYMOB_HMAC_SECRET = ""
    r = _post(client, intention_body(signer, transaction()))
    assert r.status_code == 400
    order.refresh_from_db()
    assert order.payment_status == "PENDING"


@pytest.mark.django_db
def test_unknown_shape_is_400(client):
    r = _post(client, {"hello": "world"})
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_CALLBACK"


@pytest.mark.django_db
def test_unknown_order_is_404(client, signer):
    r = _post(client, intention_body(signer, transaction(merchant_order_id="ORD-404", gateway_order_id=1), "ORD-404"))
    assert r.status_code == 404


@pytest.mark.django_db
def test_terminal_order_conflicts_on_different_outcome(client, signer, order):
    _post(client, intention_body(signer, transaction(success=False)))
    r = _post(client, intention_body(signer, transaction(success=True, tx_id=9002)))
    assert r.status_code == 409
    assert r.json()["detail"] == "ORDER_TERMINAL"
    order.refresh_from_db()
    assert (order.status, order.payment_status, order.trnx_id) == ("CANCELLED", "FAILED", "9001")


@pytest.mark.django_db
def test_success_notifies_customer(client, signer, order, django_capture_on_commit_callbacks):
    from django.core import mail

    with django_capture_on_commit_callbacks(execute=True):
        _post(client, intention_body(signer, transaction()))
    assert len(mail.outbox) == 1
    assert mail.outbox[0].subject == "Your order ORD-1 is being processed"


@pytest.mark.django_db
def test_late_failure_after_success_is_ignored(client, signer, order, simple_product):
    _post(client, intention_body(signer, transaction(success=True, tx_id=101)))
    history = StatusUpdateModel.objects.filter(order=order).count()

    r = _post(client, intention_body(signer, transaction(success=False, tx_id=100)))
    assert r.status_code == 200
    assert r.json() == {"ok": True, "applied": False}
    order.refresh_from_db()
    assert (order.status, order.payment_status, order.trnx_id) == ("PROCESSING", "SUCCESS", "101")
    assert Product.objects.get(pk=simple_product.pk).stock == 10
    assert StatusUpdateModel.objects.filter(order=order).count() == history


@pytest.mark.django_db
def test_late_pending_after_success_is_ignored(client, signer, order):
    _post(client, intention_body(signer, transaction(success=True, tx_id=101)))

    r = _post(client, intention_body(signer, transaction(success=False, pending=True, tx_id=101)))
    assert r.status_code == 200
    assert r.json()["applied"] is False
    order.refresh_from_db()
    assert (order.status, order.payment_status, order.trnx_id) == ("PROCESSING", "SUCCESS", "101")


@pytest.mark.django_db
def test_success_replayed_after_shipping_is_ignored(client, signer, make_order, simple_product):
    make_order(
        [{"product": simple_product, "quantity": 1}],
        status="SHIPPED",
        payment_status="SUCCESS",
        order_id="ORD-1",
        trnx_id="101",
    )
    r = _post(client, intention_body(signer, transaction(success=True, tx_id=101)))
    assert r.status_code == 200
    assert r.json()["applied"] is False
    assert OrderModel.objects.get(pk="ORD-1").status == "SHIPPED"
