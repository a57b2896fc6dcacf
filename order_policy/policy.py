"""Typed business policy model and its load-time validator.

Policies are stored with their rule sets as JSON columns. They are parsed and
validated exactly once, when loaded, so the evaluators only ever see either a
well-formed :class:`Policy` or ``None``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from order_policy.models import OrderStatus

logger = logging.getLogger(__name__)

_JSON_RULE_FIELDS = ("cancellation_fees", "order_status_rules", "product_rules")


class PolicyMalformed(ValueError):
    """Raised when a stored policy does not have the expected shape."""


class _RuleModel(BaseModel):
    # Stored blobs written by older clients use camelCase keys.
    model_config = ConfigDict(extra="forbid", frozen=True, alias_generator=to_camel, populate_by_name=True)


class CancellationFeeWindow(_RuleModel):
    min_minutes: int = Field(..., ge=0)
    max_minutes: int | None = Field(None, ge=0)
    fee_percentage: Decimal = Field(..., ge=0, le=100)
    description: str = ""

    @model_validator(mode="after")
    def check_bounds(self) -> "CancellationFeeWindow":
        if self.max_minutes is not None and self.max_minutes < self.min_minutes:
            raise ValueError(
                f"fee window max_minutes ({self.max_minutes}) is below min_minutes ({self.min_minutes})"
            )
        return self

    def contains(self, minutes: int) -> bool:
        if minutes < self.min_minutes:
            return False
        return self.max_minutes is None or minutes <= self.max_minutes


class OrderStatusRule(_RuleModel):
    allow_cancellation: bool = True
    cancellation_fee_percentage: Decimal | None = Field(None, ge=0, le=100)


class ProductRule(_RuleModel):
    refundable: bool = True
    refund_time_limit: int | None = Field(None, ge=0, description="Days after delivery.")


class Policy(BaseModel):
    """Active cancellation/refund policy of a single business."""

    model_config = ConfigDict(extra="ignore", frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = ""
    business_id: str = Field(..., min_length=1)
    name: str = "Default policy"
    description: str | None = None
    is_active: bool = True
    auto_approve_timeline: int | None = Field(None, ge=0)
    time_limit: int | None = Field(None, ge=0)
    cancellation_fees: tuple[CancellationFeeWindow, ...] = ()
    order_status_rules: dict[OrderStatus, OrderStatusRule] = Field(default_factory=dict)
    product_rules: dict[str, ProductRule] = Field(default_factory=dict)

    @field_validator("cancellation_fees", "order_status_rules", "product_rules", mode="before")
    @classmethod
    def default_empty_rule_sets(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {} if info.field_name != "cancellation_fees" else ()
        if info.field_name == "cancellation_fees" and not isinstance(value, (list, tuple)):
            raise ValueError("cancellation_fees must be a list of fee windows")
        if info.field_name != "cancellation_fees" and not isinstance(value, Mapping):
            raise ValueError(f"{info.field_name} must be a mapping")
        return value

    @model_validator(mode="after")
    def check_fee_windows_ascending(self) -> "Policy":
        windows = self.cancellation_fees
        for index, (previous, current) in enumerate(zip(windows, windows[1:]), start=1):
            if previous.max_minutes is None:
                raise ValueError("only the last cancellation fee window may be open-ended")
            if current.min_minutes < previous.max_minutes:
                raise ValueError(
                    f"cancellation fee window {index} starts at {current.min_minutes} minutes, "
                    f"overlapping the previous window ending at {previous.max_minutes}"
                )
        return self


def _decode_rule_columns(raw: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    for field in _JSON_RULE_FIELDS:
        for key in (field, to_camel(field)):
            value = data.get(key)
            if isinstance(value, (str, bytes)):
                try:
                    data[key] = json.loads(value)
                except json.JSONDecodeError as exc:
                    raise PolicyMalformed(f"{key} is not valid JSON: {exc}") from exc
    return data


def validate_policy(raw: Mapping[str, Any]) -> Policy:
    """Parse a stored policy, raising :class:`PolicyMalformed` on any shape error."""
    if not isinstance(raw, Mapping):
        raise PolicyMalformed(f"policy must be a mapping, got {type(raw).__name__}")
    data = _decode_rule_columns(raw)
    try:
        return Policy.model_validate(data)
    except ValidationError as exc:
        raise PolicyMalformed(str(exc)) from exc


def load_policy(raw: Mapping[str, Any] | None) -> Policy | None:
    """Fail-safe loader: malformed policies are logged and treated as absent."""
    if raw is None:
        return None
    try:
        return validate_policy(raw)
    except PolicyMalformed as exc:
        policy_id = raw.get("id") if isinstance(raw, Mapping) else None
        logger.warning(
            "policy_rejected_as_malformed",
            extra={"extra": {"policy_id": policy_id, "error": str(exc)}},
        )
        return None


def dump_policy(policy: Policy) -> dict[str, Any]:
    """Serialize a policy into the store representation (snake_case keys)."""
    return policy.model_dump(mode="json")
