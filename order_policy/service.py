"""Request orchestration: load, evaluate, apply, persist.

This is the only layer that talks to both the repositories and the
evaluators. It owns the retry loop that re-evaluates a cancellation when the
order status changes between evaluation and the conditional write.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from order_policy.applier import apply_cancellation_decision
from order_policy.engine import DEFAULT_CONFIG, Clock, EngineConfig, evaluate_cancellation, evaluate_refund, utc_now
from order_policy.errors import DuplicateRequestError, OrderNotFound, RequestRejected, StaleOrderError
from order_policy.models import (
    CancellationRequest,
    Decision,
    DecisionStatus,
    OrderSnapshot,
    OrderStatus,
    RefundRequest,
)
from order_policy.money import quantize_money
from order_policy.policy import Policy, dump_policy
from order_policy.repositories import OrderRepository, PolicyRepository, RequestRepository

logger = logging.getLogger(__name__)


class CancellationOutcome(BaseModel):
    request_id: str
    order_id: str
    order_status: OrderStatus
    decision: Decision
    attempts: int


class RefundOutcome(BaseModel):
    request_id: str
    order_id: str
    order_status: OrderStatus
    decision: Decision


def _audit_snapshot(
    *,
    order: OrderSnapshot,
    policy: Policy | None,
    decision: Decision,
    evaluated_at: datetime,
    request: dict[str, Any],
) -> dict[str, Any]:
    return {
        "evaluated_at": evaluated_at.isoformat(),
        "request": request,
        "order": order.model_dump(mode="json"),
        "policy": dump_policy(policy) if policy is not None else None,
        "decision": decision.model_dump(mode="json"),
    }


class PolicyService:
    """Handles customer cancellation and refund requests end to end."""

    def __init__(
        self,
        *,
        policies: PolicyRepository,
        orders: OrderRepository,
        requests: RequestRepository,
        clock: Clock = utc_now,
        config: EngineConfig = DEFAULT_CONFIG,
        max_cancellation_attempts: int = 3,
    ) -> None:
        if max_cancellation_attempts < 1:
            raise ValueError("max_cancellation_attempts must be >= 1")
        self._policies = policies
        self._orders = orders
        self._requests = requests
        self._clock = clock
        self._config = config
        self._max_cancellation_attempts = max_cancellation_attempts

    def _load_order(self, order_id: str) -> OrderSnapshot:
        order = self._orders.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def request_cancellation(self, request: CancellationRequest) -> CancellationOutcome:
        """Evaluate a cancellation request and cancel the order when auto-approved.

        Raises:
            OrderNotFound: The order does not exist.
            RequestRejected: The order is already cancelled.
            DuplicateRequestError: An open cancellation request already exists.
        """
        order = self._load_order(request.order_id)
        if order.status is OrderStatus.CANCELLED:
            raise RequestRejected(f"Order {order.id} is already cancelled")
        if self._requests.has_open_cancellation_request(order.id):
            raise DuplicateRequestError(order.id, "cancellation")

        attempts = 0
        while True:
            attempts += 1
            now = self._clock()
            policy = self._policies.get_active_policy(order.business_id)
            decision = evaluate_cancellation(order, policy, request.reason, clock=lambda: now, config=self._config)
            try:
                order_status = apply_cancellation_decision(order, decision, self._orders)
                break
            except StaleOrderError:
                refreshed = self._load_order(order.id)
                if attempts >= self._max_cancellation_attempts or refreshed.status is OrderStatus.CANCELLED:
                    decision = Decision(
                        auto_processed=False,
                        status=DecisionStatus.PENDING,
                        message=(
                            f"order status changed during evaluation "
                            f"({order.status.value} -> {refreshed.status.value}); manual review required"
                        ),
                        rule="concurrent_update",
                    )
                    order, order_status = refreshed, refreshed.status
                    break
                logger.warning(
                    "cancellation_reevaluated_after_status_change",
                    extra={
                        "extra": {
                            "order_id": order.id,
                            "previous_status": order.status.value,
                            "current_status": refreshed.status.value,
                            "attempt": attempts,
                        }
                    },
                )
                order = refreshed

        request_id = self._requests.save_cancellation_request(
            order=order,
            reason=request.reason,
            notes=request.notes,
            decision=decision,
        )
        self._requests.save_evaluation_audit(
            order_id=order.id,
            request_type="cancellation",
            policy_id=policy.id if policy is not None else None,
            snapshot={
                **_audit_snapshot(
                    order=order,
                    policy=policy,
                    decision=decision,
                    evaluated_at=now,
                    request=request.model_dump(mode="json"),
                ),
                "attempts": attempts,
                "request_id": request_id,
            },
        )
        return CancellationOutcome(
            request_id=request_id,
            order_id=order.id,
            order_status=order_status,
            decision=decision,
            attempts=attempts,
        )

    def request_refund(self, request: RefundRequest) -> RefundOutcome:
        """Evaluate and record a refund request. The order itself is never mutated.

        Raises:
            OrderNotFound: The order does not exist.
            RequestRejected: The order is not delivered or the amount exceeds its total.
            DuplicateRequestError: An open refund request already exists.
        """
        order = self._load_order(request.order_id)
        if order.status is not OrderStatus.DELIVERED:
            raise RequestRejected("Only delivered orders can be refunded")
        if request.requested_amount > order.total_price:
            raise RequestRejected("Refund amount cannot exceed order total")
        if self._requests.has_open_refund_request(order.id):
            raise DuplicateRequestError(order.id, "refund")

        requested_amount = quantize_money(request.requested_amount)
        now = self._clock()
        policy = self._policies.get_active_policy(order.business_id)
        decision = evaluate_refund(
            order,
            policy,
            request.reason,
            requested_amount,
            request.item_ids,
            clock=lambda: now,
            config=self._config,
        )

        request_id = self._requests.save_refund_request(
            order=order,
            reason=request.reason,
            notes=request.notes,
            requested_amount=requested_amount,
            item_ids=list(request.item_ids),
            decision=decision,
        )
        self._requests.save_evaluation_audit(
            order_id=order.id,
            request_type="refund",
            policy_id=policy.id if policy is not None else None,
            snapshot={
                **_audit_snapshot(
                    order=order,
                    policy=policy,
                    decision=decision,
                    evaluated_at=now,
                    request=request.model_dump(mode="json"),
                ),
                "request_id": request_id,
            },
        )
        return RefundOutcome(request_id=request_id, order_id=order.id, order_status=order.status, decision=decision)
