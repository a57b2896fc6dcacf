"""FastAPI adapter exposing cancellation, refund and policy endpoints.

Run with ``uvicorn --factory order_policy.server:create_app``.
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict, deque
from decimal import Decimal
from typing import Any, Deque

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from order_policy.db import SQLiteStore
from order_policy.demo_data import seed_demo_data
from order_policy.engine import Clock, utc_now
from order_policy.errors import DuplicateRequestError, OrderNotFound, RequestRejected
from order_policy.models import CancellationReason, CancellationRequest, RefundReason, RefundRequest
from order_policy.policy import PolicyMalformed, dump_policy
from order_policy.service import CancellationOutcome, PolicyService, RefundOutcome
from order_policy.settings import Settings, load_settings


class JsonLogFormatter(logging.Formatter):
    """Simple JSON log formatter for structured production logs."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


logger = logging.getLogger("order_policy.api")


def configure_logging(level: str) -> None:
    package_logger = logging.getLogger("order_policy")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonLogFormatter())
        package_logger.addHandler(handler)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))


class ErrorResponse(BaseModel):
    detail: str


class CancelOrderBody(BaseModel):
    reason: CancellationReason
    notes: str | None = None


class RefundOrderBody(BaseModel):
    reason: RefundReason
    requested_amount: Decimal = Field(..., gt=0, decimal_places=2)
    item_ids: list[str] = Field(default_factory=list)
    notes: str | None = None


def create_app(settings: Settings | None = None, *, clock: Clock = utc_now) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    store = SQLiteStore(settings.db_path)
    if settings.seed_demo_data:
        seed_demo_data(store, clock())
    service = PolicyService(
        policies=store,
        orders=store,
        requests=store,
        clock=clock,
        max_cancellation_attempts=settings.max_cancellation_attempts,
    )
    request_history: defaultdict[str, Deque[float]] = defaultdict(
        lambda: deque(maxlen=settings.rate_limit_requests)
    )

    app = FastAPI(title="Order Policy Engine API")
    app.state.store = store
    app.state.service = service

    @app.middleware("http")
    async def rate_limit_and_timing(request: Request, call_next):
        start = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        now = time.time()

        history = request_history[client_ip]
        while history and now - history[0] > settings.rate_limit_window_seconds:
            history.popleft()
        if len(history) >= settings.rate_limit_requests:
            return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})
        history.append(now)

        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time-Ms"] = str(elapsed_ms)
        logger.info(
            f"request_completed {request.method} {request.url.path}",
            extra={"extra": {"path": request.url.path, "method": request.method, "status_code": response.status_code, "elapsed_ms": elapsed_ms}},
        )
        return response

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception):
        logger.error(
            f"unhandled_exception: {exc}",
            exc_info=exc,
            extra={"extra": {"path": request.url.path, "method": request.method}},
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/health", tags=["System"])
    def health() -> dict:
        """Healthcheck endpoint."""
        return {"status": "ok"}

    @app.post(
        "/orders/{order_id}/cancel",
        response_model=CancellationOutcome,
        tags=["Requests"],
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    )
    def cancel_order(
        order_id: str,
        payload: CancelOrderBody = Body(..., example={"reason": "CUSTOMER_CHANGED_MIND", "notes": "Ordered by mistake"}),
    ) -> CancellationOutcome:
        """Evaluate a cancellation request; auto-approved requests cancel the order."""
        try:
            return service.request_cancellation(
                CancellationRequest(order_id=order_id, reason=payload.reason.value, notes=payload.notes)
            )
        except OrderNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except DuplicateRequestError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except RequestRejected as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post(
        "/orders/{order_id}/refund",
        response_model=RefundOutcome,
        tags=["Requests"],
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    )
    def refund_order(
        order_id: str,
        payload: RefundOrderBody = Body(
            ...,
            example={"reason": "DAMAGED_PRODUCT", "requested_amount": "40.00", "item_ids": ["item-burger"]},
        ),
    ) -> RefundOutcome:
        """Evaluate a refund request and record it; refunds never change order status."""
        try:
            return service.request_refund(
                RefundRequest(
                    order_id=order_id,
                    reason=payload.reason.value,
                    requested_amount=payload.requested_amount,
                    item_ids=payload.item_ids,
                    notes=payload.notes,
                )
            )
        except OrderNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except DuplicateRequestError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except RequestRejected as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/businesses/{business_id}/policies", tags=["Policies"])
    def list_policies(business_id: str) -> dict[str, Any]:
        return {"policies": store.list_policies(business_id)}

    @app.post(
        "/businesses/{business_id}/policies",
        status_code=201,
        tags=["Policies"],
        responses={422: {"model": ErrorResponse}},
    )
    def create_policy(business_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            policy = store.create_policy(business_id, payload)
        except PolicyMalformed as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"policy": dump_policy(policy)}

    @app.post("/policies/{policy_id}/activate", tags=["Policies"], responses={404: {"model": ErrorResponse}})
    def activate_policy(policy_id: str) -> dict[str, Any]:
        if not store.activate_policy(policy_id):
            raise HTTPException(status_code=404, detail="Policy not found")
        return {"policy_id": policy_id, "is_active": True}

    @app.get("/audit/{order_id}", tags=["Audit"])
    def evaluation_audit(order_id: str) -> dict[str, Any]:
        return {"order_id": order_id, "entries": store.get_evaluation_audit(order_id)}

    return app
