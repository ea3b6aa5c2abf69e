"""
Bank transfer gateway.

No provider call happens at initiation: the buyer receives a transfer
reference and the bank instructions, and the payment settles once the bank
reconciliation callback confirms the transfer. Refunds are paid out manually.
"""
from __future__ import annotations

import time
import uuid
from urllib.parse import urlencode

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayProcessRequest,
    GatewayProcessResult,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from infrastructure.external.payments.base import BasePaymentClient, json_amount


class BankTransferClient(BasePaymentClient):
    provider = "bank_transfer"

    @staticmethod
    def make_reference(order_id: str) -> str:
        return f"ORDER-{order_id}-{int(time.time() * 1000)}"

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        reference = self.make_reference(req.order_id)
        query = {
            "reference": reference,
            "amount": json_amount(req.amount),
            "currency": req.currency,
            **self.config.bank_details,
        }
        base = self.config.redirect_base_url or "/payment/bank-transfer"
        self._log("bank_transfer_reference_issued", order_id=req.order_id, reference=reference)
        return GatewayInitiateResult(
            success=True,
            transaction_id=reference,
            gateway_transaction_id=reference,
            redirect_url=f"{base}?{urlencode(query)}",
        )

    async def process(self, req: GatewayProcessRequest) -> GatewayProcessResult:
        data = req.callback_data
        if not req.callback_verified or not data:
            return GatewayProcessResult(
                success=False,
                gateway_transaction_id=req.gateway_transaction_id,
                error="Awaiting bank transfer confirmation",
                retryable=True,
            )
        result = self._process_result(
            {**data, "status": str(data.get("status", "")).lower()},
            req.gateway_transaction_id,
        )
        reported = data.get("reference")
        if result.success and reported and reported != req.gateway_transaction_id:
            return GatewayProcessResult(
                success=False,
                gateway_transaction_id=req.gateway_transaction_id,
                gateway_response=data,
                error="Transfer reference does not match the payment",
            )
        return result

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        refund_ref = f"REFUND-{uuid.uuid4().hex[:16].upper()}"
        self._log("bank_transfer_refund_queued", payment_id=req.payment_id, refund_ref=refund_ref)
        return GatewayRefundResult(
            success=True,
            gateway_refund_id=refund_ref,
            gateway_response={"status": "queued_for_payout", "amount": json_amount(req.amount)},
        )
