"""Factories that wire the fulfillment services with their collaborators.

Views never build services themselves; they call these functions, which
construct the ledger, repository, notifier, verifier and gateway client from
settings and inject them. Tests patch these symbols to swap in fakes.
"""

from django.conf import settings

from apps.inventory.ledger import InventoryLedger
from apps.payments.gateway import PaymobClient
from apps.payments.signature import SignatureVerifier
from apps.payments.webhooks import PaymentReconciler

from .cancellation import CancellationProcessor
from .notifications import OrderNotifier
from .repository import OrderRepository


def get_cancellation_processor() -> CancellationProcessor:
    return CancellationProcessor(
        ledger=InventoryLedger(),
        orders=OrderRepository(),
        notifier=OrderNotifier(),
    )


def get_payment_reconciler() -> PaymentReconciler:
    return PaymentReconciler(
        orders=OrderRepository(),
        processor=get_cancellation_processor(),
        verifier=SignatureVerifier(settings.PAYMOB_HMAC_SECRET, settings.PAYMOB_HMAC_DIGEST),
    )


def get_gateway_client() -> PaymobClient:
    return PaymobClient()
