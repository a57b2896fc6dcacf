"""Boundary helper that turns an auto-approved cancellation into a status write."""

from __future__ import annotations

import logging

from order_policy.errors import StaleOrderError
from order_policy.models import Decision, DecisionStatus, OrderSnapshot, OrderStatus
from order_policy.repositories import OrderRepository

logger = logging.getLogger(__name__)


def apply_cancellation_decision(order: OrderSnapshot, decision: Decision, orders: OrderRepository) -> OrderStatus:
    """Cancel ``order`` when ``decision`` is AUTO_APPROVED and return the resulting status.

    The write is conditional on the status the decision was computed against.
    If another writer changed it first, :class:`StaleOrderError` is raised and
    the caller must re-fetch and re-evaluate.
    """
    if decision.status is not DecisionStatus.AUTO_APPROVED:
        return order.status

    if not orders.compare_and_set_status(order.id, expected=order.status, new=OrderStatus.CANCELLED):
        logger.warning(
            "cancellation_write_lost_race",
            extra={"extra": {"order_id": order.id, "expected_status": order.status.value}},
        )
        raise StaleOrderError(order.id, order.status.value)

    logger.info(
        "order_cancelled",
        extra={"extra": {"order_id": order.id, "previous_status": order.status.value, "rule": decision.rule}},
    )
    return OrderStatus.CANCELLED
