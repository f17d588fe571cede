"""Error taxonomy for the fulfillment core and its HTTP translation.

Domain code raises the typed errors below; none of them knows about HTTP.
``exception_handler`` is registered as DRF's ``EXCEPTION_HANDLER`` and is the
single place where an error kind becomes a status code and JSON body.
"""

import logging

import pydantic
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


class OrderError(Exception):
    """Base class for every failure the core reports to its callers.

    Attributes:
        code: Stable machine-readable code (e.g. ``"ITEM_QUANTITY_EXCEEDED"``).
        message: Human readable explanation, safe to show to API clients.
    """

    default_code = "ORDER_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "", code: str | None = None):
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)


class ValidationError(OrderError):
    default_code = "VALIDATION_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST


class ConflictError(OrderError):
    default_code = "CONFLICT"
    http_status = status.HTTP_409_CONFLICT


class UnmappedOutcomeError(ConflictError):
    """The gateway reported a (success, pending) pair with no agreed meaning."""

    default_code = "UNMAPPED_PAYMENT_OUTCOME"


class NotFoundError(OrderError):
    default_code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class AuthError(OrderError):
    default_code = "FORBIDDEN"
    http_status = status.HTTP_403_FORBIDDEN


class SignatureError(OrderError):
    """Missing or invalid HMAC. The message never says which part failed."""

    default_code = "INVALID_SIGNATURE"
    http_status = status.HTTP_400_BAD_REQUEST


class ExternalServiceError(OrderError):
    default_code = "UPSTREAM_UNAVAILABLE"
    http_status = status.HTTP_502_BAD_GATEWAY


class PersistenceError(OrderError):
    default_code = "PERSISTENCE_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: OrderError) -> dict:
    return {"detail": exc.code, "error": exc.message}


def exception_handler(exc, context):
    """DRF exception handler mapping core errors onto HTTP responses.

    ``OrderError`` subclasses use their ``http_status``; pydantic validation
    failures become ``400 VALIDATION_ERROR``; everything else is delegated to
    DRF's default handler (authentication, permission, throttling, 404).
    """
    if isinstance(exc, OrderError):
        view = context.get("view")
        level = logging.ERROR if exc.http_status >= 500 or isinstance(exc, UnmappedOutcomeError) else logging.WARNING
        logger.log(
            level,
            "request failed",
            extra={"code": exc.code, "view": type(view).__name__ if view else None},
        )
        return Response(error_body(exc), status=exc.http_status)

    if isinstance(exc, pydantic.ValidationError):
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        return Response(
            {"detail": "VALIDATION_ERROR", "error": "Invalid request payload", "errors": errors},
            status=status.HTTP_400_BAD_REQUEST,
        )

    return drf_exception_handler(exc, context)
