"""Pydantic schemas for payment gateway callbacks and intentions.

The processed callback arrives in one of two shapes carrying equivalent
transaction data:

- Unified intention: ``{"hmac": ..., "transaction": {...}, "intention": {...}}``
- Integration callback: ``{"type": "TRANSACTION", "obj": {...}}`` with the
  HMAC in the ``hmac`` query parameter.

``parse_processed_payload`` decides the shape from the key that is present,
validates it and returns one canonical ``ProcessedCallback``; payloads that
match neither shape are rejected before any business logic runs.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from apps.orders.errors import ValidationError

GatewayId = Union[int, str]


class GatewayOrderRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[GatewayId] = None
    merchant_order_id: Optional[str] = None


class GatewayTransaction(BaseModel):
    """The subset of a gateway transaction the reconciler reads.

    Unknown fields are kept; the HMAC is always computed over the raw mapping.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[GatewayId] = None
    success: bool = False
    pending: bool = False
    order: Optional[Union[GatewayOrderRef, GatewayId]] = None

    @property
    def gateway_order_id(self) -> Optional[str]:
        if isinstance(self.order, GatewayOrderRef):
            return str(self.order.id) if self.order.id is not None else None
        return str(self.order) if self.order is not None else None

    @property
    def merchant_order_id(self) -> Optional[str]:
        if isinstance(self.order, GatewayOrderRef):
            return self.order.merchant_order_id or None
        return None


class IntentionRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    special_reference: Optional[str] = None


class IntentionCallback(BaseModel):
    model_config = ConfigDict(extra="allow")

    hmac: Optional[str] = None
    transaction: Dict[str, Any]
    intention: Optional[IntentionRef] = None


class IntegrationCallback(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    hmac: Optional[str] = None
    obj: Dict[str, Any]
    payment_key_claims: Optional[Dict[str, Any]] = None


class ProcessedCallback(BaseModel):
    """Canonical processed-callback data, whatever shape it arrived in."""

    model_config = ConfigDict(frozen=True)

    shape: Literal["intention", "integration"]
    data: Dict[str, Any]
    signature: Optional[str] = None
    success: bool
    pending: bool
    transaction_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    merchant_order_id: Optional[str] = None

    @property
    def order_lookup(self) -> List[str]:
        return [oid for oid in (self.merchant_order_id, self.gateway_order_id) if oid]


def _claims_merchant_id(claims: Optional[Dict[str, Any]]) -> Optional[str]:
    extra = (claims or {}).get("extra") or {}
    value = extra.get("merchant_order_id") if isinstance(extra, dict) else None
    return str(value) if value else None


def parse_processed_payload(payload: Any, query_signature: Optional[str] = None) -> ProcessedCallback:
    """Validate a processed callback body into a ``ProcessedCallback``.

    Args:
        payload: Decoded JSON body.
        query_signature: ``hmac`` query parameter, used when the body has none.

    Raises:
        ValidationError: If the body matches neither callback shape.
        pydantic.ValidationError: If the matching shape has invalid fields.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object", code="INVALID_CALLBACK")

    if isinstance(payload.get("transaction"), dict):
        envelope = IntentionCallback.model_validate(payload)
        shape, data = "intention", envelope.transaction
        merchant_id = envelope.intention.special_reference if envelope.intention else None
        merchant_id = merchant_id or _claims_merchant_id(payload.get("payment_key_claims"))
    elif isinstance(payload.get("obj"), dict):
        envelope = IntegrationCallback.model_validate(payload)
        shape, data = "integration", envelope.obj
        merchant_id = _claims_merchant_id(envelope.payment_key_claims)
    else:
        raise ValidationError("Missing transaction data", code="INVALID_CALLBACK")

    tx = GatewayTransaction.model_validate(data)
    return ProcessedCallback(
        shape=shape,
        data=data,
        signature=envelope.hmac or query_signature or None,
        success=tx.success,
        pending=tx.pending,
        transaction_id=str(tx.id) if tx.id is not None else None,
        gateway_order_id=tx.gateway_order_id,
        merchant_order_id=merchant_id or tx.merchant_order_id,
    )


# ---- Payment intentions ----
class BillingDataIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    phone: str = Field(min_length=3, max_length=32)


class CreateIntentionDTO(BaseModel):
    """Request body for creating a gateway payment intention for an order."""

    order_id: str = Field(alias="orderId", min_length=1, max_length=64)
    billing_data: BillingDataIn = Field(alias="billingData")
    payment_methods: Optional[List[Union[int, str]]] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("order_id")
    @classmethod
    def strip_order_id(cls, v: str) -> str:
        return v.strip()
