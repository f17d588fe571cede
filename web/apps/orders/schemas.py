"""Pydantic schemas for the orders API.

Request bodies use the storefront's camelCase field names (``itemId``,
``quantityToCancel``); Python code works with the snake_case attributes.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .domain import CancelLine, OrderStatus, PaymentStatus


class CancelItemIn(BaseModel):
    """One line of an admin cancellation.

    Attributes:
        item_id: Order item identifier.
        quantity_to_cancel: Units to cancel; ``0`` cancels everything left on
            the line. Negative values are rejected.
    """

    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(alias="itemId", min_length=1, max_length=64)
    quantity_to_cancel: int = Field(default=0, alias="quantityToCancel", ge=0)

    def to_line(self) -> CancelLine:
        return CancelLine(item_id=self.item_id, quantity_to_cancel=self.quantity_to_cancel)


class CancelItemsDTO(BaseModel):
    """Body of ``POST /api/orders/<id>/cancel-items/``.

    Older admin clients send ``{"itemIds": [...]}`` to cancel whole lines; that
    shape is accepted and turned into full-quantity lines.
    """

    model_config = ConfigDict(populate_by_name=True)

    items: List[CancelItemIn] = Field(min_length=1)
    comment: Optional[str] = Field(default=None, max_length=1000)
    status: Optional[OrderStatus] = None

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_item_ids(cls, data):
        if isinstance(data, dict) and "items" not in data and isinstance(data.get("itemIds"), list):
            data = dict(data)
            data["items"] = [{"itemId": item_id, "quantityToCancel": 0} for item_id in data.pop("itemIds")]
        return data

    @field_validator("comment")
    @classmethod
    def blank_comment_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def to_lines(self) -> List[CancelLine]:
        return [item.to_line() for item in self.items]


class UpdateStatusDTO(BaseModel):
    status: OrderStatus
    comment: Optional[str] = Field(default=None, max_length=1000)


class BulkStatusDTO(BaseModel):
    """Body of ``POST /api/orders/bulk-status/``."""

    model_config = ConfigDict(populate_by_name=True)

    order_ids: List[str] = Field(alias="orderIds", min_length=1, max_length=500)
    status: OrderStatus
    comment: Optional[str] = Field(default=None, max_length=1000)


class CancellationSummaryOut(BaseModel):
    processed_items: int = Field(serialization_alias="processedItems")
    total_cancelled_quantity: int = Field(serialization_alias="totalCancelledQuantity")
    removed_item_ids: List[str] = Field(default_factory=list, serialization_alias="removedItemIds")
    order_status: Optional[OrderStatus] = Field(default=None, serialization_alias="orderStatus")


class OrderItemReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: int
    quantity: int
    original_quantity: Optional[int] = None
    cancelled_quantity: int = 0
    price: Decimal
    color: Optional[str] = None
    storage_id: Optional[int] = None
    unit_id: Optional[int] = None


class StatusUpdateReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    comment: Optional[str] = None
    created_at: datetime


class OrderReadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: OrderStatus
    payment_status: PaymentStatus
    total: Decimal
    currency: str
    transaction_id: Optional[str] = None
    items: List[OrderItemReadDTO] = Field(default_factory=list)
    status_history: List[StatusUpdateReadDTO] = Field(default_factory=list)
