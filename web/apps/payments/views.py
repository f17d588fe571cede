"""HTTP endpoints for the payment gateway.

- ``POST webhooks/processed``: authoritative server-to-server callback. No
  session or CSRF; the HMAC is the only credential.
- ``GET webhooks/redirect``: browser redirect after payment; answers with a
  302 to the right storefront page and changes nothing.
- ``POST intentions/``: customer starts paying one of their pending orders.
"""

import logging

from django.conf import settings
from django.http import HttpResponseRedirect
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.orders import providers
from apps.orders.domain import OrderStatus, PaymentStatus
from apps.orders.errors import ConflictError, NotFoundError
from apps.orders.models import OrderModel

from .schemas import CreateIntentionDTO

logger = logging.getLogger(__name__)


class ProcessedWebhookView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "webhooks"

    def post(self, request):
        result = providers.get_payment_reconciler().reconcile_processed(
            request.data, signature=request.query_params.get("hmac")
        )
        return Response({"ok": True, "applied": result.applied}, status=status.HTTP_200_OK)


class RedirectWebhookView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        target = providers.get_payment_reconciler().reconcile_redirect(request.query_params.dict())
        origin = settings.APP_PUBLIC_URL.rstrip("/") if settings.APP_PUBLIC_URL else request.build_absolute_uri("/").rstrip("/")
        logger.info("payment redirect routed", extra={"status": target.status, "order_id": target.order_id})
        return HttpResponseRedirect(f"{origin}{target.path}")


class PaymentIntentionView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        dto = CreateIntentionDTO.model_validate(request.data)
        order = OrderModel.objects.filter(pk=dto.order_id, user=request.user).first()
        if order is None:
            raise NotFoundError(f"Order {dto.order_id} not found", code="ORDER_NOT_FOUND")
        if order.status != OrderStatus.PENDING.value or order.payment_status == PaymentStatus.SUCCESS.value:
            raise ConflictError("Only unpaid pending orders can be paid", code="ORDER_NOT_PAYABLE")

        intention = providers.get_gateway_client().create_intention(
            order, dto.billing_data.model_dump(), dto.payment_methods
        )
        if intention.gateway_order_id:
            OrderModel.objects.filter(pk=order.pk).update(gateway_order_id=intention.gateway_order_id)
        logger.info("payment intention created", extra={"order_id": order.pk})
        return Response({**intention.as_dict(), "order_id": order.pk}, status=status.HTTP_200_OK)
