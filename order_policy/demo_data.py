"""Shared demo data builders for the HTTP adapter and the scenario harness.

The demo policy uses the camelCase shape that business clients submit, so
seeding also exercises the policy validator.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from order_policy.db import SQLiteStore
from order_policy.models import OrderItem, OrderSnapshot, OrderStatus
from order_policy.policy import Policy

DEMO_BUSINESS_ID = "B-BURGER-HOUSE"
DEMO_NO_POLICY_BUSINESS_ID = "B-CORNER-CAFE"


def build_demo_policy_payload() -> dict[str, Any]:
    """Standard time-based policy: 10-minute auto-approve, 7-day refund limit."""
    return {
        "name": "Standard Time-Based Policy",
        "description": "Free cancellation within 30 minutes, then gradual fees",
        "autoApproveTimeline": 10,
        "timeLimit": 7,
        "isActive": True,
        "cancellationFees": [
            {"minMinutes": 0, "maxMinutes": 30, "feePercentage": 0, "description": "Free cancellation within 30 minutes"},
            {"minMinutes": 30, "maxMinutes": 60, "feePercentage": 10, "description": "10% fee between 30-60 minutes"},
            {"minMinutes": 60, "maxMinutes": None, "feePercentage": 20, "description": "20% fee after 60 minutes"},
        ],
        "orderStatusRules": {
            "PENDING": {"allowCancellation": True, "cancellationFeePercentage": 0},
            "PROCESSING": {"allowCancellation": True, "cancellationFeePercentage": 10},
            "PREPARING": {"allowCancellation": True, "cancellationFeePercentage": 20},
            "READY": {"allowCancellation": False, "cancellationFeePercentage": None},
            "IN_TRANSIT": {"allowCancellation": False, "cancellationFeePercentage": None},
            "DELIVERED": {"allowCancellation": False, "cancellationFeePercentage": None},
        },
        "productRules": {
            "food": {"refundable": True, "refundTimeLimit": 1},
            "drinks": {"refundable": True, "refundTimeLimit": 2},
            "electronics": {"refundable": True, "refundTimeLimit": 14},
            "clothing": {"refundable": True, "refundTimeLimit": 30},
            "perishable": {"refundable": False},
        },
    }


def _items() -> tuple[OrderItem, ...]:
    return (
        OrderItem(id="item-burger", category_id="food", unit_price=Decimal("50.00"), quantity=1),
        OrderItem(id="item-cola", category_id="drinks", unit_price=Decimal("10.00"), quantity=2),
        OrderItem(id="item-salad", category_id="perishable", unit_price=Decimal("30.00"), quantity=1),
    )


def build_demo_orders(now: datetime) -> list[OrderSnapshot]:
    """Return orders covering every branch of both evaluators, relative to ``now``."""

    def order(order_id: str, status: OrderStatus, age: timedelta, **overrides: Any) -> OrderSnapshot:
        fields: dict[str, Any] = {
            "id": order_id,
            "business_id": DEMO_BUSINESS_ID,
            "status": status,
            "created_at": now - age,
            "total_price": Decimal("100.00"),
            "items": _items(),
        }
        fields.update(overrides)
        return OrderSnapshot(**fields)

    return [
        order("ORD-FRESH", OrderStatus.PROCESSING, timedelta(minutes=5)),
        order("ORD-PENDING-20M", OrderStatus.PENDING, timedelta(minutes=20)),
        order("ORD-PROCESSING-45M", OrderStatus.PROCESSING, timedelta(minutes=45)),
        order("ORD-READY-45M", OrderStatus.READY, timedelta(minutes=45)),
        order("ORD-PENDING-90M", OrderStatus.PENDING, timedelta(minutes=90)),
        order(
            "ORD-DELIVERED-TODAY",
            OrderStatus.DELIVERED,
            timedelta(hours=2),
            actual_delivered_at=now - timedelta(hours=1),
        ),
        order(
            "ORD-DELIVERED-10D",
            OrderStatus.DELIVERED,
            timedelta(days=10, hours=1),
            actual_delivered_at=now - timedelta(days=10),
        ),
        order(
            "ORD-OTHER-BUSINESS",
            OrderStatus.PENDING,
            timedelta(minutes=40),
            business_id=DEMO_NO_POLICY_BUSINESS_ID,
        ),
    ]


def seed_demo_data(store: SQLiteStore, now: datetime) -> Policy | None:
    """Load the demo policy and orders unless the business already has a policy."""
    for demo_order in build_demo_orders(now):
        if store.get_order(demo_order.id) is None:
            store.upsert_order(demo_order)
    if store.list_policies(DEMO_BUSINESS_ID):
        return store.get_active_policy(DEMO_BUSINESS_ID)
    return store.create_policy(DEMO_BUSINESS_ID, build_demo_policy_payload())
