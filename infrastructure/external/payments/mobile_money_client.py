"""
Mobile money wallet adapter.

The wallet owner confirms on their phone, so ``initiate`` only registers the
request (optionally returning a QR code) and the outcome arrives through the
status endpoint or a webhook.
"""
from __future__ import annotations

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayProcessRequest,
    GatewayProcessResult,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from infrastructure.external.payments.base import BasePaymentClient, json_amount
from infrastructure.external.payments.exceptions import ProviderCallError


class MobileMoneyClient(BasePaymentClient):
    provider = "mobile_money"

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        phone = req.customer.get("phone")
        if not phone:
            return GatewayInitiateResult(success=False, error="Customer phone number is required for mobile money")

        try:
            body = await self._post(
                "/payments/initiate",
                {
                    "amount": json_amount(req.amount),
                    "currency": req.currency,
                    "phoneNumber": phone,
                    "description": f"Payment for order {req.order_id}",
                    "reference": str(req.payment_id),
                },
            )
        except ProviderCallError as exc:
            return self._failed(GatewayInitiateResult, exc)

        return GatewayInitiateResult(
            success=True,
            transaction_id=body.get("transactionId"),
            gateway_transaction_id=body.get("gatewayTransactionId"),
            qr_code=body.get("qrCode"),
        )

    async def process(self, req: GatewayProcessRequest) -> GatewayProcessResult:
        reference = req.transaction_id or req.gateway_transaction_id
        if not reference:
            return GatewayProcessResult(success=False, error="Payment has no provider transaction id")
        try:
            body = await self._post(f"/payments/{reference}/status")
        except ProviderCallError as exc:
            return self._failed(GatewayProcessResult, exc)
        return self._process_result(body, req.gateway_transaction_id)

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        try:
            body = await self._post(
                "/refunds/initiate",
                {
                    "originalTransactionId": req.gateway_transaction_id or req.transaction_id,
                    "amount": json_amount(req.amount),
                    "reason": req.reason,
                    "reference": req.idempotency_key,
                },
            )
        except ProviderCallError as exc:
            return self._failed(GatewayRefundResult, exc)
        return GatewayRefundResult(
            success=True,
            gateway_refund_id=body.get("gatewayRefundId") or body.get("refundId"),
            gateway_response=body,
        )
