from datetime import datetime, timedelta, timezone
from decimal import Decimal

from order_policy.engine import evaluate_cancellation
from order_policy.models import DecisionStatus, OrderSnapshot, OrderStatus
from order_policy.policy import validate_policy

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _clock() -> datetime:
    return NOW


def _order(status: OrderStatus = OrderStatus.PROCESSING, age: timedelta = timedelta(minutes=45), total: str = "100.00") -> OrderSnapshot:
    return OrderSnapshot(
        id="ORD-1",
        business_id="B-1",
        status=status,
        created_at=NOW - age,
        total_price=Decimal(total),
    )


def _policy(**overrides):
    raw = {
        "id": "P-1",
        "business_id": "B-1",
        "autoApproveTimeline": 10,
        "cancellationFees": [
            {"minMinutes": 0, "maxMinutes": 30, "feePercentage": 0, "description": "free window"},
            {"minMinutes": 30, "maxMinutes": 60, "feePercentage": 10},
            {"minMinutes": 60, "maxMinutes": None, "feePercentage": 20},
        ],
        "orderStatusRules": {},
    }
    raw.update(overrides)
    return validate_policy(raw)


def test_no_policy_is_always_pending() -> None:
    decision = evaluate_cancellation(_order(), None, "CUSTOMER_CHANGED_MIND", clock=_clock)
    assert decision.status is DecisionStatus.PENDING
    assert decision.auto_processed is False
    assert decision.message == "no policy configured"


def test_inactive_policy_counts_as_no_policy() -> None:
    decision = evaluate_cancellation(_order(), _policy(isActive=False), "OTHER", clock=_clock)
    assert decision.status is DecisionStatus.PENDING
    assert decision.rule == "no_policy"


def test_missing_order_snapshot_is_pending() -> None:
    decision = evaluate_cancellation(None, _policy(), "OTHER", clock=_clock)
    assert decision.status is DecisionStatus.PENDING
    assert decision.auto_processed is False


def test_auto_approve_timeline_wins_over_status_rule() -> None:
    policy = _policy(orderStatusRules={"PROCESSING": {"allowCancellation": False}})
    order = _order(OrderStatus.PROCESSING, age=timedelta(minutes=5))

    decision = evaluate_cancellation(order, policy, "CUSTOMER_CHANGED_MIND", clock=_clock)

    assert decision.status is DecisionStatus.AUTO_APPROVED
    assert decision.auto_processed is True
    assert decision.fee == Decimal("0")
    assert decision.rule == "auto_approve_timeline"


def test_auto_approve_timeline_boundary_uses_whole_minutes() -> None:
    policy = _policy(orderStatusRules={"PROCESSING": {"allowCancellation": False}})
    on_boundary = _order(age=timedelta(minutes=10, seconds=59))
    past_boundary = _order(age=timedelta(minutes=11))

    assert evaluate_cancellation(on_boundary, policy, "OTHER", clock=_clock).status is DecisionStatus.AUTO_APPROVED
    assert evaluate_cancellation(past_boundary, policy, "OTHER", clock=_clock).status is DecisionStatus.REJECTED


def test_disallowed_status_outside_window_is_rejected() -> None:
    policy = _policy(orderStatusRules={"PROCESSING": {"allowCancellation": False}})

    decision = evaluate_cancellation(_order(), policy, "CUSTOMER_CHANGED_MIND", clock=_clock)

    assert decision.status is DecisionStatus.REJECTED
    assert decision.auto_processed is True
    assert "PROCESSING" in decision.message
    assert decision.fee is None


def test_status_fee_forces_manual_review() -> None:
    policy = _policy(orderStatusRules={"PROCESSING": {"allowCancellation": True, "cancellationFeePercentage": 20}})

    decision = evaluate_cancellation(_order(total="100.00"), policy, "OTHER", clock=_clock)

    assert decision.status is DecisionStatus.PENDING
    assert decision.auto_processed is False
    assert decision.fee == Decimal("20.00")
    assert decision.rule == "order_status_rule"


def test_status_rule_without_fee_falls_through_to_time_windows() -> None:
    policy = _policy(orderStatusRules={"PROCESSING": {"allowCancellation": True, "cancellationFeePercentage": 0}})

    decision = evaluate_cancellation(_order(age=timedelta(minutes=45)), policy, "OTHER", clock=_clock)

    assert decision.status is DecisionStatus.PENDING
    assert decision.fee == Decimal("10.00")
    assert decision.rule == "cancellation_fee_window"


def test_free_time_window_without_status_rule_is_auto_approved() -> None:
    decision = evaluate_cancellation(_order(age=timedelta(minutes=20)), _policy(), "OTHER", clock=_clock)
    assert decision.status is DecisionStatus.AUTO_APPROVED
    assert decision.auto_processed is True
    assert decision.fee == Decimal("0")
    assert "free window" in decision.message


def test_first_matching_window_wins_on_shared_boundary() -> None:
    decision = evaluate_cancellation(_order(age=timedelta(minutes=30)), _policy(), "OTHER", clock=_clock)
    assert decision.status is DecisionStatus.AUTO_APPROVED


def test_open_ended_window_applies_to_old_orders() -> None:
    decision = evaluate_cancellation(_order(age=timedelta(days=2), total="99.99"), _policy(), "OTHER", clock=_clock)
    assert decision.status is DecisionStatus.PENDING
    assert decision.fee == Decimal("20.00")


def test_fee_is_rounded_to_the_cent() -> None:
    policy = _policy(orderStatusRules={"PROCESSING": {"allowCancellation": True, "cancellationFeePercentage": 33}})
    decision = evaluate_cancellation(_order(total="99.99"), policy, "OTHER", clock=_clock)
    assert decision.fee == Decimal("33.00")


def test_no_matching_rule_defaults_to_pending() -> None:
    policy = _policy(
        autoApproveTimeline=None,
        cancellationFees=[{"minMinutes": 60, "maxMinutes": None, "feePercentage": 0}],
    )
    decision = evaluate_cancellation(_order(age=timedelta(minutes=45)), policy, "OTHER", clock=_clock)
    assert decision.status is DecisionStatus.PENDING
    assert decision.auto_processed is False
    assert decision.rule == "no_rule_matched"


def test_order_created_in_the_future_counts_as_just_created() -> None:
    decision = evaluate_cancellation(_order(age=timedelta(minutes=-3)), _policy(), "OTHER", clock=_clock)
    assert decision.status is DecisionStatus.AUTO_APPROVED


def test_repeated_evaluation_is_identical() -> None:
    policy = _policy(orderStatusRules={"PROCESSING": {"allowCancellation": True, "cancellationFeePercentage": 15}})
    first = evaluate_cancellation(_order(), policy, "OTHER", clock=_clock)
    second = evaluate_cancellation(_order(), policy, "OTHER", clock=_clock)
    assert first == second
    assert first.model_dump_json() == second.model_dump_json()


def test_unexpected_failure_never_auto_approves() -> None:
    def broken_clock() -> datetime:
        raise RuntimeError("clock unavailable")

    decision = evaluate_cancellation(_order(age=timedelta(minutes=1)), _policy(), "OTHER", clock=broken_clock)

    assert decision.status is DecisionStatus.PENDING
    assert decision.auto_processed is False
    assert decision.message == "policy evaluation error"


def test_zero_auto_approve_timeline_counts_as_not_configured() -> None:
    policy = _policy(autoApproveTimeline=0, orderStatusRules={"PROCESSING": {"allowCancellation": False}})

    decision = evaluate_cancellation(_order(age=timedelta(seconds=30)), policy, "OTHER", clock=_clock)

    assert decision.status is DecisionStatus.REJECTED
    assert decision.rule == "order_status_rule"
