"""
Card acquirer adapter over the provider REST API.

Requests carry the Bearer API key and an ``X-Merchant-ID`` header. The card
page is hosted by the provider; ``initiate`` returns its redirect URL.
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


class CardPaymentClient(BasePaymentClient):
    provider = "card"

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        if self.config.merchant_id:
            headers["X-Merchant-ID"] = self.config.merchant_id
        return headers

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        payload = {
            "amount": json_amount(req.amount),
            "currency": req.currency,
            "orderId": req.order_id,
            "customer": {
                "name": req.customer.get("name"),
                "email": req.customer.get("email"),
            },
            "metadata": {**req.metadata, "paymentId": req.payment_id},
        }
        try:
            body = await self._post("/payments/initiate", payload)
        except ProviderCallError as exc:
            return self._failed(GatewayInitiateResult, exc)

        self._log("payment_provider_initiated", order_id=req.order_id, transaction_id=body.get("transactionId"))
        return GatewayInitiateResult(
            success=True,
            transaction_id=body.get("transactionId"),
            gateway_transaction_id=body.get("gatewayTransactionId"),
            redirect_url=body.get("redirectUrl"),
        )

    async def process(self, req: GatewayProcessRequest) -> GatewayProcessResult:
        reference = req.transaction_id or req.gateway_transaction_id
        if not reference:
            return GatewayProcessResult(success=False, error="Payment has no provider transaction id")
        try:
            body = await self._post(
                f"/payments/{reference}/status",
                {"paymentId": req.payment_id, "callbackData": req.callback_data},
            )
        except ProviderCallError as exc:
            return self._failed(GatewayProcessResult, exc)
        return self._process_result(body, req.gateway_transaction_id)

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        payload = {
            "originalTransactionId": req.gateway_transaction_id or req.transaction_id,
            "amount": json_amount(req.amount),
            "currency": req.currency,
            "reason": req.reason,
            "notes": req.notes,
            "idempotencyKey": req.idempotency_key,
        }
        try:
            body = await self._post("/refunds/initiate", payload)
        except ProviderCallError as exc:
            return self._failed(GatewayRefundResult, exc)
        return GatewayRefundResult(
            success=True,
            gateway_refund_id=body.get("gatewayRefundId") or body.get("refundId"),
            gateway_response=body,
        )
