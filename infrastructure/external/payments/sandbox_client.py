"""
In-process sandbox gateway for development and tests.

Outcomes are deterministic: every operation succeeds unless an outcome is
scripted with ``script()`` or a default is changed with ``configure()``.

Outcomes:
    success    provider accepts the call
    decline    provider rejects the call (definitive)
    retryable  transient fault, e.g. a timeout
    raise      the adapter itself blows up
"""
from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict, deque
from typing import Any, Optional

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayProcessRequest,
    GatewayProcessResult,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from infrastructure.external.payments.base import BasePaymentClient

OUTCOMES = frozenset({"success", "decline", "retryable", "raise"})


class SandboxGatewayError(RuntimeError):
    pass


class SandboxGateway(BasePaymentClient):
    provider = "sandbox"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._defaults = {"initiate": "success", "process": "success", "refund": "success"}
        self._scripted: dict[str, deque[str]] = defaultdict(deque)
        self.latency: float = 0.0
        self.calls: list[tuple[str, Any]] = []

    def configure(self, *, latency: Optional[float] = None, **defaults: str) -> "SandboxGateway":
        for operation, outcome in defaults.items():
            self._check(operation, outcome)
            self._defaults[operation] = outcome
        if latency is not None:
            self.latency = latency
        return self

    def script(self, operation: str, *outcomes: str) -> "SandboxGateway":
        """Queue one-shot outcomes consumed before falling back to the default."""
        for outcome in outcomes:
            self._check(operation, outcome)
        self._scripted[operation].extend(outcomes)
        return self

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _check(self, operation: str, outcome: str) -> None:
        if operation not in self._defaults:
            raise ValueError(f"Unknown sandbox operation: {operation}")
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown sandbox outcome: {outcome}")

    async def _next(self, operation: str, req: Any) -> str:
        self.calls.append((operation, req))
        if self.latency:
            await asyncio.sleep(self.latency)
        queue = self._scripted[operation]
        outcome = queue.popleft() if queue else self._defaults[operation]
        if outcome == "raise":
            raise SandboxGatewayError(f"sandbox {operation} crashed")
        return outcome

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        outcome = await self._next("initiate", req)
        if outcome == "decline":
            return GatewayInitiateResult(success=False, error="Sandbox declined the payment")
        if outcome == "retryable":
            return GatewayInitiateResult(success=False, error="Sandbox timeout", retryable=True)
        return GatewayInitiateResult(
            success=True,
            transaction_id=f"sbx_txn_{req.payment_id}",
            gateway_transaction_id=f"sbx_{uuid.uuid4().hex[:12]}",
            redirect_url=f"/sandbox/checkout/{req.payment_id}",
        )

    async def process(self, req: GatewayProcessRequest) -> GatewayProcessResult:
        outcome = await self._next("process", req)
        if req.callback_verified and req.callback_data.get("event_type") == "payment.failed":
            outcome = "decline"
        response = {"status": "completed" if outcome == "success" else "failed", "outcome": outcome}
        if outcome == "decline":
            return GatewayProcessResult(
                success=False,
                gateway_transaction_id=req.gateway_transaction_id,
                gateway_response=response,
                error="Sandbox declined the payment",
            )
        if outcome == "retryable":
            return GatewayProcessResult(
                success=False,
                gateway_transaction_id=req.gateway_transaction_id,
                gateway_response=response,
                error="Sandbox timeout",
                retryable=True,
            )
        return GatewayProcessResult(
            success=True,
            gateway_transaction_id=req.gateway_transaction_id or f"sbx_{uuid.uuid4().hex[:12]}",
            gateway_response=response,
        )

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        outcome = await self._next("refund", req)
        if outcome == "success":
            return GatewayRefundResult(
                success=True,
                gateway_refund_id=f"sbx_re_{req.refund_id}",
                gateway_response={"status": "completed"},
            )
        return GatewayRefundResult(
            success=False,
            error="Sandbox refused the refund" if outcome == "decline" else "Sandbox timeout",
            retryable=outcome == "retryable",
            gateway_response={"status": "failed", "outcome": outcome},
        )
