"""Exceptions raised around (never inside) policy evaluation."""

from __future__ import annotations


class PolicyEngineError(RuntimeError):
    """Base class for request-handling failures at the evaluation boundary."""


class OrderNotFound(PolicyEngineError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class StaleOrderError(PolicyEngineError):
    """The order status changed between evaluation and the conditional write."""

    def __init__(self, order_id: str, expected_status: str) -> None:
        super().__init__(f"Order {order_id} is no longer in status {expected_status}")
        self.order_id = order_id
        self.expected_status = expected_status


class DuplicateRequestError(PolicyEngineError):
    def __init__(self, order_id: str, request_type: str) -> None:
        super().__init__(f"A {request_type} request already exists for order {order_id}")
        self.order_id = order_id
        self.request_type = request_type


class RequestRejected(PolicyEngineError):
    """A request failed a precondition checked before evaluation."""
