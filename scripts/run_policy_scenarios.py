"""Manual scenario harness for the cancellation and refund evaluators.

Evaluates every demo order against the demo policy with a fixed clock and
prints one line per decision, followed by an outcome summary.
"""

from __future__ import annotations

import json
import sys
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from order_policy.demo_data import build_demo_orders, build_demo_policy_payload
from order_policy.engine import evaluate_cancellation, evaluate_refund
from order_policy.models import OrderStatus
from order_policy.policy import validate_policy

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

REFUND_SCENARIOS = [
    ("DAMAGED_PRODUCT", Decimal("40.00"), ["item-burger"]),
    ("DAMAGED_PRODUCT", Decimal("150.00"), []),
    ("QUALITY_ISSUES", Decimal("20.00"), ["item-cola"]),
    ("WRONG_PRODUCT", Decimal("30.00"), ["item-burger", "item-salad"]),
]


def main() -> None:
    policy = validate_policy({**build_demo_policy_payload(), "business_id": "B-BURGER-HOUSE", "id": "demo"})
    outcomes: Counter[str] = Counter()

    print("Cancellation decisions")
    for order in build_demo_orders(NOW):
        if order.status is OrderStatus.DELIVERED:
            continue
        active = policy if order.business_id == policy.business_id else None
        decision = evaluate_cancellation(order, active, "CUSTOMER_CHANGED_MIND", clock=lambda: NOW)
        outcomes[f"cancel:{decision.status.value}"] += 1
        print(
            f"order_id={order.id} | status={order.status.value} | "
            f"decision={decision.status.value} | fee={decision.fee} | rule={decision.rule}"
        )

    print("\nRefund decisions")
    for order in build_demo_orders(NOW):
        if order.status is not OrderStatus.DELIVERED:
            continue
        for reason, amount, item_ids in REFUND_SCENARIOS:
            decision = evaluate_refund(order, policy, reason, amount, item_ids, clock=lambda: NOW)
            outcomes[f"refund:{decision.status.value}"] += 1
            print(
                f"order_id={order.id} | reason={reason} | amount={amount} | items={','.join(item_ids) or '-'} | "
                f"decision={decision.status.value} | approved={decision.approved_amount} | rule={decision.rule}"
            )

    print("\nOutcome Summary")
    print(json.dumps(dict(outcomes), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
