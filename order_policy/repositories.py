"""Collaborator protocols consumed by the policy service.

The evaluators never touch these; only the service and the decision applier
do, which keeps evaluation testable without a database.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

from order_policy.models import Decision, OrderSnapshot, OrderStatus
from order_policy.policy import Policy


class PolicyRepository(Protocol):
    def get_active_policy(self, business_id: str) -> Policy | None: ...


class OrderRepository(Protocol):
    def get_order(self, order_id: str) -> OrderSnapshot | None: ...

    def compare_and_set_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> bool:
        """Set ``new`` only if the stored status still equals ``expected``."""
        ...


class RequestRepository(Protocol):
    def has_open_cancellation_request(self, order_id: str) -> bool: ...

    def has_open_refund_request(self, order_id: str) -> bool: ...

    def save_cancellation_request(
        self,
        *,
        order: OrderSnapshot,
        reason: str,
        notes: str | None,
        decision: Decision,
    ) -> str: ...

    def save_refund_request(
        self,
        *,
        order: OrderSnapshot,
        reason: str,
        notes: str | None,
        requested_amount: Decimal,
        item_ids: list[str],
        decision: Decision,
    ) -> str: ...

    def save_evaluation_audit(
        self,
        *,
        order_id: str,
        request_type: str,
        policy_id: str | None,
        snapshot: dict[str, Any],
    ) -> None: ...
