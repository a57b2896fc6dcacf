"""SQLite-backed repositories for policies, orders and request records."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from order_policy.errors import DuplicateRequestError
from order_policy.models import Decision, DecisionStatus, OrderSnapshot, OrderStatus
from order_policy.policy import Policy, dump_policy, load_policy, validate_policy

_OPEN_REQUEST_STATUSES = (DecisionStatus.PENDING.value, DecisionStatus.AUTO_APPROVED.value)

_POLICY_COLUMNS = """
    id, business_id, name, description, is_active, auto_approve_timeline, time_limit,
    cancellation_fees, order_status_rules, product_rules, created_at, updated_at
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money_text(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


class SQLiteStore:
    """Implements the policy, order and request repositories on one SQLite file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self.initialize()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS policies (
                    id TEXT PRIMARY KEY,
                    business_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    is_active BOOLEAN NOT NULL DEFAULT 0,
                    auto_approve_timeline INTEGER,
                    time_limit INTEGER,
                    cancellation_fees TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(cancellation_fees)),
                    order_status_rules TEXT NOT NULL DEFAULT '{}' CHECK (json_valid(order_status_rules)),
                    product_rules TEXT NOT NULL DEFAULT '{}' CHECK (json_valid(product_rules)),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_policies_one_active_per_business
                ON policies (business_id) WHERE is_active = 1
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    business_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    actual_delivered_at TEXT,
                    total_price TEXT NOT NULL,
                    items TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(items)),
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cancellation_requests (
                    id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    business_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    notes TEXT,
                    status TEXT NOT NULL,
                    auto_processed BOOLEAN NOT NULL,
                    cancellation_fee TEXT,
                    message TEXT NOT NULL,
                    rule TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refund_requests (
                    id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    business_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    notes TEXT,
                    requested_amount TEXT NOT NULL,
                    approved_amount TEXT,
                    item_ids TEXT NOT NULL CHECK (json_valid(item_ids)),
                    status TEXT NOT NULL,
                    auto_processed BOOLEAN NOT NULL,
                    message TEXT NOT NULL,
                    rule TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS evaluation_audit_trail (
                    id INTEGER PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    request_type TEXT NOT NULL,
                    policy_id TEXT,
                    full_snapshot_json TEXT NOT NULL CHECK (json_valid(full_snapshot_json)),
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_cancellation_requests_order_status
                ON cancellation_requests (order_id, status)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_refund_requests_order_status
                ON refund_requests (order_id, status)
                """
            )
            for table in ("cancellation_requests", "refund_requests"):
                conn.execute(
                    f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_{table}_one_open_per_order
                    ON {table} (order_id) WHERE status IN ('PENDING', 'AUTO_APPROVED')
                    """
                )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_evaluation_audit_trail_order_created_at
                ON evaluation_audit_trail (order_id, created_at DESC)
                """
            )

    # -- policies -----------------------------------------------------------

    def create_policy(self, business_id: str, payload: Mapping[str, Any]) -> Policy:
        """Validate and store a policy. Activating it deactivates the business's others.

        Raises:
            PolicyMalformed: If the payload does not describe a valid policy.
        """
        fields = {key: value for key, value in payload.items() if key not in {"id", "business_id", "businessId"}}
        policy = validate_policy({**fields, "id": str(uuid.uuid4()), "business_id": business_id})
        stored = dump_policy(policy)
        now = _now_iso()
        with self._connection() as conn:
            if policy.is_active:
                conn.execute("UPDATE policies SET is_active = 0 WHERE business_id = ?", (business_id,))
            conn.execute(
                f"INSERT INTO policies ({_POLICY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    policy.id,
                    business_id,
                    policy.name,
                    policy.description,
                    int(policy.is_active),
                    policy.auto_approve_timeline,
                    policy.time_limit,
                    json.dumps(stored["cancellation_fees"], sort_keys=True),
                    json.dumps(stored["order_status_rules"], sort_keys=True),
                    json.dumps(stored["product_rules"], sort_keys=True),
                    now,
                    now,
                ),
            )
        return policy

    def activate_policy(self, policy_id: str) -> bool:
        """Activate a policy by id and deactivate the other policies of its business."""
        with self._connection() as conn:
            row = conn.execute("SELECT business_id FROM policies WHERE id = ? LIMIT 1", (policy_id,)).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE policies SET is_active = 0, updated_at = ? WHERE business_id = ?",
                (_now_iso(), row["business_id"]),
            )
            conn.execute("UPDATE policies SET is_active = 1, updated_at = ? WHERE id = ?", (_now_iso(), policy_id))
        return True

    def list_policies(self, business_id: str) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_POLICY_COLUMNS} FROM policies WHERE business_id = ? ORDER BY updated_at DESC",
                (business_id,),
            ).fetchall()
        return [self._policy_row_to_payload(row) for row in rows]

    def get_active_policy(self, business_id: str) -> Policy | None:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_POLICY_COLUMNS} FROM policies WHERE business_id = ? AND is_active = 1 LIMIT 1",
                (business_id,),
            ).fetchone()
        if row is None:
            return None
        return load_policy(dict(row))

    @staticmethod
    def _policy_row_to_payload(row: sqlite3.Row) -> dict[str, Any]:
        payload = dict(row)
        payload["is_active"] = bool(payload["is_active"])
        for column in ("cancellation_fees", "order_status_rules", "product_rules"):
            payload[column] = json.loads(payload[column])
        return payload

    # -- orders -------------------------------------------------------------

    def upsert_order(self, order: OrderSnapshot) -> None:
        data = order.model_dump(mode="json")
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO orders (id, business_id, status, created_at, actual_delivered_at, total_price, items, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    business_id = excluded.business_id,
                    status = excluded.status,
                    created_at = excluded.created_at,
                    actual_delivered_at = excluded.actual_delivered_at,
                    total_price = excluded.total_price,
                    items = excluded.items,
                    updated_at = excluded.updated_at
                """,
                (
                    order.id,
                    order.business_id,
                    order.status.value,
                    data["created_at"],
                    data["actual_delivered_at"],
                    str(order.total_price),
                    json.dumps(data["items"], sort_keys=True),
                    _now_iso(),
                ),
            )

    def get_order(self, order_id: str) -> OrderSnapshot | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT id, business_id, status, created_at, actual_delivered_at, total_price, items
                FROM orders
                WHERE id = ?
                LIMIT 1
                """,
                (order_id,),
            ).fetchone()
        if row is None:
            return None
        payload = dict(row)
        payload["items"] = json.loads(payload["items"])
        return OrderSnapshot.model_validate(payload)

    def compare_and_set_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE orders SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new.value, _now_iso(), order_id, expected.value),
            )
        return cursor.rowcount == 1

    # -- requests -----------------------------------------------------------

    def _has_open_request(self, table: str, order_id: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT 1 FROM {table} WHERE order_id = ? AND status IN (?, ?) LIMIT 1",
                (order_id, *_OPEN_REQUEST_STATUSES),
            ).fetchone()
        return row is not None

    def has_open_cancellation_request(self, order_id: str) -> bool:
        return self._has_open_request("cancellation_requests", order_id)

    def has_open_refund_request(self, order_id: str) -> bool:
        return self._has_open_request("refund_requests", order_id)

    def _insert_request(self, request_type: str, order_id: str, sql: str, params: tuple[Any, ...]) -> None:
        # Concurrent requests that both passed the open-request check collide on the partial unique index.
        try:
            with self._connection() as conn:
                conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" not in str(exc):
                raise
            raise DuplicateRequestError(order_id, request_type) from exc

    def save_cancellation_request(
        self,
        *,
        order: OrderSnapshot,
        reason: str,
        notes: str | None,
        decision: Decision,
    ) -> str:
        request_id = str(uuid.uuid4())
        self._insert_request(
            "cancellation",
            order.id,
            """
            INSERT INTO cancellation_requests (
                id, order_id, business_id, reason, notes, status, auto_processed,
                cancellation_fee, message, rule, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request_id,
                order.id,
                order.business_id,
                reason,
                notes,
                decision.status.value,
                int(decision.auto_processed),
                _money_text(decision.fee),
                decision.message,
                decision.rule,
                _now_iso(),
            ),
        )
        return request_id

    def save_refund_request(
        self,
        *,
        order: OrderSnapshot,
        reason: str,
        notes: str | None,
        requested_amount: Decimal,
        item_ids: list[str],
        decision: Decision,
    ) -> str:
        request_id = str(uuid.uuid4())
        self._insert_request(
            "refund",
            order.id,
            """
            INSERT INTO refund_requests (
                id, order_id, business_id, reason, notes, requested_amount, approved_amount,
                item_ids, status, auto_processed, message, rule, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request_id,
                order.id,
                order.business_id,
                reason,
                notes,
                str(requested_amount),
                _money_text(decision.approved_amount),
                json.dumps(list(item_ids)),
                decision.status.value,
                int(decision.auto_processed),
                decision.message,
                decision.rule,
                _now_iso(),
            ),
        )
        return request_id

    def list_cancellation_requests(self, order_id: str) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM cancellation_requests WHERE order_id = ? ORDER BY created_at",
                (order_id,),
            ).fetchall()
        return [{**dict(row), "auto_processed": bool(row["auto_processed"])} for row in rows]

    def list_refund_requests(self, order_id: str) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM refund_requests WHERE order_id = ? ORDER BY created_at",
                (order_id,),
            ).fetchall()
        return [
            {**dict(row), "auto_processed": bool(row["auto_processed"]), "item_ids": json.loads(row["item_ids"])}
            for row in rows
        ]

    # -- audit --------------------------------------------------------------

    def save_evaluation_audit(
        self,
        *,
        order_id: str,
        request_type: str,
        policy_id: str | None,
        snapshot: dict[str, Any],
    ) -> None:
        """Persist the full evaluation context for later review."""
        snapshot_json = json.dumps(snapshot, sort_keys=True, default=str)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO evaluation_audit_trail (order_id, request_type, policy_id, full_snapshot_json, created_at)
                SELECT ?, ?, ?, ?, ?
                WHERE json_valid(?)
                """,
                (order_id, request_type, policy_id, snapshot_json, _now_iso(), snapshot_json),
            )

    def get_evaluation_audit(self, order_id: str) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT order_id, request_type, policy_id, full_snapshot_json, created_at
                FROM evaluation_audit_trail
                WHERE order_id = ?
                ORDER BY id
                """,
                (order_id,),
            ).fetchall()
        return [
            {
                "order_id": row["order_id"],
                "request_type": row["request_type"],
                "policy_id": row["policy_id"],
                "snapshot": json.loads(row["full_snapshot_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
