"""Policy evaluation engine for cancellation and refund requests.

Both evaluators are pure: they read the order snapshot, the policy and the
injected clock, and return an immutable :class:`Decision`. They never raise
for well-formed inputs. Any unexpected failure is converted into a PENDING
decision so an error can never auto-approve a request.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from order_policy.models import Decision, DecisionStatus, OrderSnapshot, RefundReason, ensure_utc
from order_policy.money import amount_for, as_amount
from order_policy.policy import Policy

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_SECONDS_PER_MINUTE = 60
_SECONDS_PER_DAY = 86_400


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EngineConfig:
    refund_auto_approve_reasons: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {
                RefundReason.DAMAGED_PRODUCT.value,
                RefundReason.MISSING_ITEMS.value,
                RefundReason.WRONG_PRODUCT.value,
            }
        )
    )
    # Compared against the raw requested amount, whatever the currency.
    refund_auto_approve_limit: Decimal = Decimal("100")


DEFAULT_CONFIG = EngineConfig()


def _elapsed(now: datetime, since: datetime, unit_seconds: int) -> int:
    seconds = (ensure_utc(now) - ensure_utc(since)).total_seconds()
    # Clock skew can put timestamps slightly in the future.
    return max(0, int(seconds // unit_seconds))


def _format_pct(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _with_notes(message: str, notes: Sequence[str]) -> str:
    if not notes:
        return message
    return f"{message}; " + "; ".join(notes)


def _pending(message: str, rule: str, **amounts: Decimal) -> Decision:
    return Decision(auto_processed=False, status=DecisionStatus.PENDING, message=message, rule=rule, **amounts)


def _rejected(message: str, rule: str) -> Decision:
    return Decision(auto_processed=True, status=DecisionStatus.REJECTED, message=message, rule=rule)


def _approved(message: str, rule: str, **amounts: Decimal) -> Decision:
    return Decision(auto_processed=True, status=DecisionStatus.AUTO_APPROVED, message=message, rule=rule, **amounts)


def _no_policy() -> Decision:
    return _pending("no policy configured", "no_policy")


def _evaluation_error() -> Decision:
    return _pending("policy evaluation error", "evaluation_error")


def _has_active_policy(policy: Policy | None) -> bool:
    return policy is not None and policy.is_active


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def _evaluate_cancellation(order: OrderSnapshot, policy: Policy | None, now: datetime) -> Decision:
    if not _has_active_policy(policy):
        return _no_policy()

    minutes = _elapsed(now, order.created_at, _SECONDS_PER_MINUTE)

    # Runs before the status rules on purpose: a young order is cancellable
    # even in a status that forbids cancellation.
    # Zero means the timeline is not configured.
    timeline = policy.auto_approve_timeline
    if timeline and minutes <= timeline:
        return _approved(
            f"auto-approved: order created {minutes} minutes ago, within the {timeline}-minute auto-approve timeline",
            "auto_approve_timeline",
            fee=Decimal("0.00"),
        )

    status_rule = policy.order_status_rules.get(order.status)
    if status_rule is not None:
        if not status_rule.allow_cancellation:
            return _rejected(
                f"cancellation is not allowed for orders in {order.status.value} status",
                "order_status_rule",
            )
        pct = status_rule.cancellation_fee_percentage
        if pct is not None and pct > 0:
            fee = amount_for(order.total_price, pct)
            return _pending(
                f"cancellation fee of {_format_pct(pct)}% ({fee}) for {order.status.value} orders requires manual review",
                "order_status_rule",
                fee=fee,
            )

    for window in policy.cancellation_fees:
        if not window.contains(minutes):
            continue
        label = window.description or f"{window.min_minutes}+ minutes"
        if window.fee_percentage > 0:
            fee = amount_for(order.total_price, window.fee_percentage)
            return _pending(
                f"time-based cancellation fee of {_format_pct(window.fee_percentage)}% ({fee}) "
                f"after {minutes} minutes ({label}) requires manual review",
                "cancellation_fee_window",
                fee=fee,
            )
        return _approved(
            f"free cancellation after {minutes} minutes ({label})",
            "cancellation_fee_window",
            fee=Decimal("0.00"),
        )

    return _pending("no policy rule matched; manual review required", "no_rule_matched")


def evaluate_cancellation(
    order: OrderSnapshot | None,
    policy: Policy | None,
    reason: str,
    *,
    clock: Clock = utc_now,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Decision:
    """Decide whether a cancellation request is auto-approved, rejected or pending.

    Precedence: missing policy, auto-approve timeline, order status rule, time
    window fee schedule, then the PENDING default. ``config`` is accepted for
    symmetry with :func:`evaluate_refund`; no cancellation rule reads it today.
    """
    del config
    if order is None:
        return _pending("order not found", "order_not_found")

    try:
        decision = _evaluate_cancellation(order, policy, clock())
    except Exception:
        logger.exception(
            "cancellation_evaluation_failed",
            extra={"extra": {"order_id": order.id, "reason": reason}},
        )
        return _evaluation_error()

    logger.info(
        "cancellation_evaluated",
        extra={
            "extra": {
                "order_id": order.id,
                "business_id": order.business_id,
                "reason": reason,
                "status": decision.status.value,
                "rule": decision.rule,
            }
        },
    )
    return decision


# ---------------------------------------------------------------------------
# Refund
# ---------------------------------------------------------------------------


def _check_product_rules(
    order: OrderSnapshot,
    policy: Policy,
    item_ids: Sequence[str],
    days_since_delivery: int | None,
) -> Decision | None:
    items = []
    for item_id in item_ids:
        item = order.find_item(item_id)
        if item is None:
            return _pending(f"item {item_id} is not part of order {order.id}; manual review required", "unknown_item")
        items.append(item)

    # One non-refundable item rejects the whole request.
    for item in items:
        category = item.category_id
        rule = policy.product_rules.get(category) if category else None
        if rule is None:
            return _rejected(f"item {item.id} has no refund rule for category {category}", "product_rule")
        if not rule.refundable:
            return _rejected(f"item {item.id} in category {category} is not refundable", "product_rule")
        limit = rule.refund_time_limit
        if limit and days_since_delivery is not None and days_since_delivery > limit:
            return _rejected(
                f"refund window for category {category} expired "
                f"({days_since_delivery} days since delivery, limit: {limit} days)",
                "product_rule",
            )
    return None


def _evaluate_refund(
    order: OrderSnapshot,
    policy: Policy | None,
    reason: str,
    requested_amount: Decimal,
    item_ids: Sequence[str],
    now: datetime,
    config: EngineConfig,
) -> Decision:
    if not _has_active_policy(policy):
        return _no_policy()

    # Not rounded: the fast-path limit applies to the amount as requested.
    amount = as_amount(requested_amount)
    if amount < 0:
        return _pending("requested refund amount is negative; manual review required", "invalid_request")

    notes: list[str] = []
    days_since_delivery: int | None = None
    if order.actual_delivered_at is not None:
        days_since_delivery = _elapsed(now, order.actual_delivered_at, _SECONDS_PER_DAY)

    if days_since_delivery is not None and policy.time_limit:
        if days_since_delivery > policy.time_limit:
            return _rejected(
                f"refund request expired ({days_since_delivery} days since delivery, limit: {policy.time_limit} days)",
                "time_limit",
            )
        timeline = policy.auto_approve_timeline
        if timeline and days_since_delivery <= timeline:
            # Recorded only. Evaluation continues to the item and reason checks.
            notes.append(f"within {timeline}-day auto-approve timeline ({days_since_delivery} days since delivery)")

    if item_ids and policy.product_rules:
        item_decision = _check_product_rules(order, policy, item_ids, days_since_delivery)
        if item_decision is not None:
            return item_decision.model_copy(update={"message": _with_notes(item_decision.message, notes)})

    if reason in config.refund_auto_approve_reasons and amount <= config.refund_auto_approve_limit:
        return _approved(
            _with_notes(f"auto-approved: low amount ({amount}) with qualifying reason {reason}", notes),
            "reason_fast_path",
            approved_amount=amount,
        )

    return _pending(_with_notes("manual review required", notes), "no_rule_matched")


def evaluate_refund(
    order: OrderSnapshot | None,
    policy: Policy | None,
    reason: str,
    requested_amount: Decimal,
    item_ids: Sequence[str] = (),
    *,
    clock: Clock = utc_now,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Decision:
    """Decide whether a refund request is auto-approved, rejected or pending."""
    if order is None:
        return _pending("order not found", "order_not_found")

    try:
        decision = _evaluate_refund(order, policy, reason, requested_amount, item_ids, clock(), config)
    except Exception:
        logger.exception(
            "refund_evaluation_failed",
            extra={"extra": {"order_id": order.id, "reason": reason}},
        )
        return _evaluation_error()

    logger.info(
        "refund_evaluated",
        extra={
            "extra": {
                "order_id": order.id,
                "business_id": order.business_id,
                "reason": reason,
                "status": decision.status.value,
                "rule": decision.rule,
            }
        },
    )
    return decision
