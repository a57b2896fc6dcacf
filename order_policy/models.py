"""Data contracts for orders, customer requests and policy decisions."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PREPARING = "PREPARING"
    READY = "READY"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class DecisionStatus(str, Enum):
    AUTO_APPROVED = "AUTO_APPROVED"
    REJECTED = "REJECTED"
    PENDING = "PENDING"


class CancellationReason(str, Enum):
    CUSTOMER_CHANGED_MIND = "CUSTOMER_CHANGED_MIND"
    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    DELIVERY_TOO_LONG = "DELIVERY_TOO_LONG"
    PRICE_ISSUES = "PRICE_ISSUES"
    RESTAURANT_CLOSED = "RESTAURANT_CLOSED"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    OTHER = "OTHER"


class RefundReason(str, Enum):
    DAMAGED_PRODUCT = "DAMAGED_PRODUCT"
    WRONG_PRODUCT = "WRONG_PRODUCT"
    PRODUCT_NOT_AS_DESCRIBED = "PRODUCT_NOT_AS_DESCRIBED"
    MISSING_ITEMS = "MISSING_ITEMS"
    LATE_DELIVERY = "LATE_DELIVERY"
    QUALITY_ISSUES = "QUALITY_ISSUES"
    OTHER = "OTHER"


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OrderItem(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1)
    category_id: str | None = None
    unit_price: Decimal = Field(..., ge=0)
    quantity: int = Field(1, ge=1)


class OrderSnapshot(BaseModel):
    """Read-only view of an order at the moment a request is evaluated."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1)
    business_id: str = Field(..., min_length=1)
    status: OrderStatus
    created_at: datetime
    actual_delivered_at: datetime | None = None
    total_price: Decimal = Field(..., ge=0)
    items: tuple[OrderItem, ...] = ()

    @field_validator("created_at", "actual_delivered_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def find_item(self, item_id: str) -> OrderItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class CancellationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    order_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    notes: str | None = None


class RefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    order_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    requested_amount: Decimal = Field(..., gt=0, decimal_places=2, description="Amount the customer asks to be refunded.")
    item_ids: list[str] = Field(default_factory=list)
    notes: str | None = None


class Decision(BaseModel):
    """Outcome of a single policy evaluation.

    ``fee`` is populated by the cancellation path, ``approved_amount`` by the
    refund path. ``rule`` names the policy rule that produced the outcome so
    the audit trail can be filtered without parsing ``message``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    auto_processed: bool
    status: DecisionStatus
    fee: Decimal | None = Field(None, ge=0)
    approved_amount: Decimal | None = Field(None, ge=0)
    message: str
    rule: str

    @model_validator(mode="after")
    def check_auto_approval_is_auto_processed(self) -> "Decision":
        if self.status is DecisionStatus.AUTO_APPROVED and not self.auto_processed:
            raise ValueError("AUTO_APPROVED decisions must be auto_processed")
        return self
