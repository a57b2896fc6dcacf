import logging
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from order_policy.demo_data import DEMO_BUSINESS_ID, DEMO_NO_POLICY_BUSINESS_ID
from order_policy.server import JsonLogFormatter, create_app
from order_policy.settings import Settings

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _client(tmp_path, **settings) -> TestClient:
    app = create_app(Settings(db_path=tmp_path / "api.db", **settings), clock=lambda: NOW)
    return TestClient(app)


def test_health_endpoint(tmp_path) -> None:
    response = _client(tmp_path).get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "X-Process-Time-Ms" in response.headers


def test_cancel_flow(tmp_path) -> None:
    client = _client(tmp_path)

    approved = client.post("/orders/ORD-FRESH/cancel", json={"reason": "CUSTOMER_CHANGED_MIND"})
    assert approved.status_code == 200
    body = approved.json()
    assert body["decision"]["status"] == "AUTO_APPROVED"
    assert body["decision"]["auto_processed"] is True
    assert body["order_status"] == "CANCELLED"

    already_cancelled = client.post("/orders/ORD-FRESH/cancel", json={"reason": "OTHER"})
    assert already_cancelled.status_code == 400

    with_fee = client.post("/orders/ORD-PROCESSING-45M/cancel", json={"reason": "DELIVERY_TOO_LONG"})
    assert with_fee.status_code == 200
    assert with_fee.json()["decision"]["status"] == "PENDING"
    assert with_fee.json()["decision"]["fee"] == "10.00"
    assert with_fee.json()["order_status"] == "PROCESSING"

    duplicate = client.post("/orders/ORD-PROCESSING-45M/cancel", json={"reason": "OTHER"})
    assert duplicate.status_code == 409

    rejected = client.post("/orders/ORD-READY-45M/cancel", json={"reason": "OTHER"})
    assert rejected.json()["decision"]["status"] == "REJECTED"


def test_cancel_error_responses(tmp_path) -> None:
    client = _client(tmp_path)
    assert client.post("/orders/ORD-MISSING/cancel", json={"reason": "OTHER"}).status_code == 404
    assert client.post("/orders/ORD-FRESH/cancel", json={"reason": "BORED"}).status_code == 422


def test_refund_flow(tmp_path) -> None:
    client = _client(tmp_path)

    approved = client.post(
        "/orders/ORD-DELIVERED-TODAY/refund",
        json={"reason": "DAMAGED_PRODUCT", "requested_amount": "40.00", "item_ids": ["item-burger"]},
    )
    assert approved.status_code == 200
    assert approved.json()["decision"]["status"] == "AUTO_APPROVED"
    assert approved.json()["decision"]["approved_amount"] == "40.00"
    assert approved.json()["order_status"] == "DELIVERED"

    expired = client.post(
        "/orders/ORD-DELIVERED-10D/refund",
        json={"reason": "MISSING_ITEMS", "requested_amount": "5.00"},
    )
    assert expired.json()["decision"]["status"] == "REJECTED"

    not_delivered = client.post(
        "/orders/ORD-PENDING-20M/refund",
        json={"reason": "MISSING_ITEMS", "requested_amount": "5.00"},
    )
    assert not_delivered.status_code == 400

    zero_amount = client.post(
        "/orders/ORD-DELIVERED-TODAY/refund",
        json={"reason": "MISSING_ITEMS", "requested_amount": "0"},
    )
    assert zero_amount.status_code == 422


def test_non_refundable_item_is_rejected_over_http(tmp_path) -> None:
    response = _client(tmp_path).post(
        "/orders/ORD-DELIVERED-TODAY/refund",
        json={"reason": "WRONG_PRODUCT", "requested_amount": "30.00", "item_ids": ["item-burger", "item-salad"]},
    )
    assert response.status_code == 200
    assert response.json()["decision"]["status"] == "REJECTED"
    assert "item-salad" in response.json()["decision"]["message"]


def test_policy_management_flow(tmp_path) -> None:
    client = _client(tmp_path)

    listed = client.get(f"/businesses/{DEMO_BUSINESS_ID}/policies")
    assert listed.status_code == 200
    assert len(listed.json()["policies"]) == 1

    malformed = client.post(
        f"/businesses/{DEMO_NO_POLICY_BUSINESS_ID}/policies",
        json={"cancellationFees": [{"minMinutes": 0, "maxMinutes": 30, "feePercentage": 150}]},
    )
    assert malformed.status_code == 422

    created = client.post(
        f"/businesses/{DEMO_NO_POLICY_BUSINESS_ID}/policies",
        json={
            "name": "Always free",
            "businessId": "B-SOMEONE-ELSE",
            "cancellationFees": [{"minMinutes": 0, "maxMinutes": None, "feePercentage": 0}],
        },
    )
    assert created.status_code == 201
    policy = created.json()["policy"]
    assert policy["business_id"] == DEMO_NO_POLICY_BUSINESS_ID
    assert policy["is_active"] is True

    cancelled = client.post("/orders/ORD-OTHER-BUSINESS/cancel", json={"reason": "OTHER"})
    assert cancelled.json()["decision"]["status"] == "AUTO_APPROVED"

    assert client.post(f"/policies/{policy['id']}/activate").status_code == 200
    assert client.post("/policies/P-UNKNOWN/activate").status_code == 404


def test_audit_trail_endpoint(tmp_path) -> None:
    client = _client(tmp_path)
    client.post("/orders/ORD-PENDING-90M/cancel", json={"reason": "PRICE_ISSUES"})

    audit = client.get("/audit/ORD-PENDING-90M")
    assert audit.status_code == 200
    entries = audit.json()["entries"]
    assert len(entries) == 1
    assert entries[0]["request_type"] == "cancellation"
    assert entries[0]["snapshot"]["decision"]["status"] == "PENDING"
    assert entries[0]["snapshot"]["policy"]["business_id"] == DEMO_BUSINESS_ID


def test_rate_limit_rejects_excess_requests(tmp_path) -> None:
    client = _client(tmp_path, rate_limit_requests=2)
    assert client.get("/health").status_code == 200
    assert client.get("/health").status_code == 200
    assert client.get("/health").status_code == 429


def test_refund_amount_finer_than_a_cent_is_rejected(tmp_path) -> None:
    response = _client(tmp_path).post(
        "/orders/ORD-DELIVERED-TODAY/refund",
        json={"reason": "DAMAGED_PRODUCT", "requested_amount": "100.004"},
    )
    assert response.status_code == 422


def test_unhandled_error_is_logged_with_traceback(tmp_path, monkeypatch, caplog) -> None:
    app = create_app(Settings(db_path=tmp_path / "api.db"), clock=lambda: NOW)

    def explode(request):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(app.state.service, "request_cancellation", explode)
    client = TestClient(app, raise_server_exceptions=False)

    with caplog.at_level(logging.ERROR, logger="order_policy.api"):
        response = client.post("/orders/ORD-FRESH/cancel", json={"reason": "OTHER"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Internal server error"
    records = [record for record in caplog.records if record.getMessage().startswith("unhandled_exception")]
    assert records
    assert records[0].exc_info is not None
    assert "store unavailable" in JsonLogFormatter().format(records[0])
