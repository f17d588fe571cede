"""Request-scoped middleware: correlation ids, access logging and body limits.

``RequestIdMiddleware`` gives every request an identifier, either the one the
caller sent in ``X-Request-ID`` or a fresh UUID4. The id is exposed on
``request.request_id``, stored in ``REQUEST_ID_CTX`` for code that has no
request object (log filters, outbound HTTP clients) and echoed back in the
response header. Once the response is ready a single structured access-log
line is emitted.

``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies before they
reach a view, answering ``413 PAYLOAD_TOO_LARGE``.
"""

import contextvars
import logging
import time
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

logger = logging.getLogger("apps.access")


class RequestIdMiddleware(MiddlewareMixin):
    """Assign, propagate and log a per-request correlation id."""

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._started_at = time.monotonic()
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        started = getattr(request, "_started_at", None)
        elapsed_ms = round((time.monotonic() - started) * 1000, 2) if started else None
        logger.info(
            "request handled",
            extra={
                "path": request.path,
                "method": request.method,
                "status": response.status_code,
                "elapsed_ms": elapsed_ms,
            },
        )
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Refuse API request bodies larger than ``settings.API_MAX_BYTES``."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        limit = getattr(settings, "API_MAX_BYTES", 1024 * 1024)
        if clen and clen.isdigit() and int(clen) > limit:
            logger.warning("payload too large", extra={"path": request.path, "content_length": int(clen)})
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
