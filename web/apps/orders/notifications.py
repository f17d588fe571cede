"""Best-effort customer emails about order status changes.

Delivery failures are logged and swallowed: an email that cannot be sent must
never fail the cancellation or payment update that triggered it.
"""

import logging
from typing import Optional

from django.conf import settings
from django.core.mail import send_mail

from .domain import OrderStatus

logger = logging.getLogger(__name__)

SUBJECTS = {
    OrderStatus.PROCESSING: "Your order {id} is being processed",
    OrderStatus.SHIPPED: "Your order {id} has shipped",
    OrderStatus.DELIVERED: "Your order {id} has been delivered",
    OrderStatus.CANCELLED: "Your order {id} has been cancelled",
}


class OrderNotifier:
    def status_changed(self, order, status: OrderStatus, comment: Optional[str] = None) -> None:
        if not getattr(settings, "ORDER_EMAILS_ENABLED", True):
            return
        recipient = order.contact_email
        if not recipient:
            logger.info("no recipient for order email", extra={"order_id": order.pk})
            return

        status = OrderStatus(status)
        subject = SUBJECTS.get(status, "Update on your order {id}").format(id=order.pk)
        greeting = f"Hello {order.shipping_name}," if order.shipping_name else "Hello,"
        lines = [greeting, "", f"The status of order {order.pk} is now {status.value.lower()}."]
        if comment:
            lines.append(comment)
        try:
            send_mail(
                subject,
                "\n".join(lines),
                settings.DEFAULT_FROM_EMAIL,
                [recipient],
                fail_silently=False,
            )
        except Exception:
            logger.exception("order status email failed", extra={"order_id": order.pk, "status": status.value})
            return
        logger.info("order status email sent", extra={"order_id": order.pk, "status": status.value})
