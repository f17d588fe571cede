"""HTTP views for order cancellation, status changes and order detail.

Views are kept small: they validate the body with a pydantic DTO, obtain a
service from ``providers`` and translate the result into JSON. Errors raised
by the services are not caught here (apart from idempotency bookkeeping);
DRF hands them to ``apps.orders.errors.exception_handler``.

Authentication is DRF's ``SessionAuthentication``, which enforces Django's
CSRF check for browser sessions. Customer endpoints need a logged-in user;
admin endpoints need ``is_staff``.
"""

import logging

from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .errors import NotFoundError, OrderError, error_body
from .idempotency import discard, finalize, get_or_create_idempotent
from .models import OrderModel
from .schemas import (
    BulkStatusDTO,
    CancelItemsDTO,
    CancellationSummaryOut,
    OrderItemReadDTO,
    OrderReadDTO,
    StatusUpdateReadDTO,
    UpdateStatusDTO,
)

logger = logging.getLogger(__name__)


def serialize_order(order: OrderModel) -> dict:
    dto = OrderReadDTO(
        id=order.pk,
        status=order.status,
        payment_status=order.payment_status,
        total=order.total,
        currency=order.currency,
        transaction_id=order.trnx_id,
        items=[OrderItemReadDTO.model_validate(i) for i in order.items.all()],
        status_history=[StatusUpdateReadDTO.model_validate(s) for s in order.status_history.all()],
    )
    return dto.model_dump(mode="json")


class CustomerCancelOrderView(APIView):
    """Customer self-cancel of a PENDING order; restores all reserved stock."""

    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "order_cancel"

    def post(self, request, order_id: str):
        result = providers.get_cancellation_processor().cancel_order(order_id, request.user.pk)
        return Response(
            {
                "message": "Order cancelled successfully",
                "order": {
                    "id": result.order_id,
                    "status": result.status.value,
                    "restoredQuantity": result.restored_quantity,
                },
            },
            status=status.HTTP_200_OK,
        )


class AdminCancelItemsView(APIView):
    """Admin cancellation of whole lines or line quantities.

    Supports the ``Idempotency-Key`` header: a retry with the same key and
    body replays the first response (``Idempotent-Replay: true``); reusing the
    key for another body returns 409 ``IDEMPOTENCY_CONFLICT``.
    """

    permission_classes = [IsAdminUser]

    def post(self, request, order_id: str):
        dto = CancelItemsDTO.model_validate(request.data)

        idem_key = request.headers.get("Idempotency-Key")
        rec = None
        if idem_key:
            existing, rec = get_or_create_idempotent(idem_key, f"cancel-items:{order_id}", request.data)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            summary = providers.get_cancellation_processor().cancel_items(
                order_id, dto.to_lines(), comment=dto.comment, status=dto.status
            )
        except OrderError as exc:
            if rec:
                if exc.http_status < 500:
                    finalize(rec, exc.http_status, error_body(exc))
                else:
                    discard(rec)
            raise
        except Exception:
            if rec:
                discard(rec)
            raise

        body = {
            "success": True,
            "message": f"{summary.total_cancelled_quantity} item(s) cancelled successfully",
            **CancellationSummaryOut(
                processed_items=summary.processed_items,
                total_cancelled_quantity=summary.total_cancelled_quantity,
                removed_item_ids=list(summary.removed_item_ids),
                order_status=summary.order_status,
            ).model_dump(mode="json", by_alias=True),
        }
        if rec:
            finalize(rec, status.HTTP_200_OK, body, order_id=order_id)
        return Response(body, status=status.HTTP_200_OK)


class AdminOrderStatusView(APIView):
    """Admin status change; follows the order state machine."""

    permission_classes = [IsAdminUser]

    def post(self, request, order_id: str):
        dto = UpdateStatusDTO.model_validate(request.data)
        order, _ = providers.get_cancellation_processor().update_status(order_id, dto.status, dto.comment)
        return Response(serialize_order(order), status=status.HTTP_200_OK)


class AdminBulkStatusView(APIView):
    """Admin status change for many orders at once; all or nothing."""

    permission_classes = [IsAdminUser]

    def post(self, request):
        dto = BulkStatusDTO.model_validate(request.data)
        orders = providers.get_cancellation_processor().update_status_bulk(dto.order_ids, dto.status, dto.comment)
        return Response(
            {
                "message": f"{len(orders)} order(s) updated to {dto.status.value}",
                "updatedCount": len(orders),
                "orderIds": [o.pk for o in orders],
                "status": dto.status.value,
            },
            status=status.HTTP_200_OK,
        )


class OrderDetailView(APIView):
    """Order header, items and status history for its owner or staff."""

    permission_classes = [IsAuthenticated]

    def get(self, request, order_id: str):
        qs = OrderModel.objects.prefetch_related("items", "status_history")
        if not request.user.is_staff:
            qs = qs.filter(user=request.user)
        order = qs.filter(pk=order_id).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
        return Response(serialize_order(order), status=status.HTTP_200_OK)
