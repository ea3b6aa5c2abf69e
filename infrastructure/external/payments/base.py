"""
Base payment client implementing shared concerns: http, retry, logging, mapping,
webhook signature verification.

Concrete providers should subclass and implement provider-specific logic.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional
from decimal import Decimal

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import GatewayConfig, PaymentSettings
from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayProcessRequest,
    GatewayProcessResult,
    GatewayRefundRequest,
    GatewayRefundResult,
    WebhookEvent,
)
from domain.payment.exceptions import WebhookSignatureException
from infrastructure.external.payments.exceptions import ProviderCallError
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)

# 连接阶段失败时请求尚未发出，重试不会造成重复扣款
_CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def _header(headers: dict[str, Any], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def json_amount(amount: Decimal) -> str:
    """金额以字符串下发，避免浮点误差"""
    return format(amount, "f")


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        config: GatewayConfig,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        webhook: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.gateway_id = config.id
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._webhook_cfg = webhook or {
            "tolerance_seconds": 300,
            "signature_header": "X-Signature",
            "timestamp_header": "X-Timestamp",
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls,
        config: GatewayConfig,
        settings: PaymentSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "BasePaymentClient":
        return cls(
            config,
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
            webhook=settings.webhook.model_dump(),
            transport=transport,
        )

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    def _default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url or "",
                timeout=self.timeouts,
                headers=self._default_headers(),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(_CONNECT_ERRORS),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _post(self, path: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """POST JSON and return the decoded body; failures become ProviderCallError."""
        try:
            response = await self._retry(lambda: self.client.post(path, json=payload))
        except httpx.TimeoutException as exc:
            raise ProviderCallError(f"{self.provider} gateway timeout", retryable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderCallError(f"{self.provider} gateway unreachable: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            message = self._error_message(response)
            self._log(
                "payment_provider_http_error",
                path=path,
                status_code=response.status_code,
                retryable=retryable,
            )
            raise ProviderCallError(message, retryable=retryable, status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderCallError(f"{self.provider} gateway returned invalid JSON", retryable=True) from exc

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in ("error", "message", "detail"):
                if body.get(key):
                    return str(body[key])
        return f"{self.provider} gateway error: HTTP {response.status_code} {response.reason_phrase}"

    # Default implementations raise to force override where needed
    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        raise NotImplementedError

    async def process(self, req: GatewayProcessRequest) -> GatewayProcessResult:
        raise NotImplementedError

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        raise NotImplementedError

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        """校验 HMAC-SHA256 签名（``{timestamp}.{body}``）并解析事件"""
        signature = self.verify_signature(headers, body)
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise WebhookSignatureException(self.gateway_id, "Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
            raise WebhookSignatureException(self.gateway_id, "Webhook body is missing id or type")

        data = payload.get("data") or {}
        transaction_id = (
            data.get("transaction_id")
            or data.get("transactionId")
            or data.get("gateway_transaction_id")
            or data.get("reference")
        )
        return WebhookEvent(
            id=str(payload["id"]),
            type=str(payload["type"]),
            gateway_id=self.gateway_id,
            transaction_id=str(transaction_id) if transaction_id else None,
            data=data,
            signature=signature,
            raw_headers=dict(headers),
            raw_body=body,
        )

    def verify_signature(self, headers: dict[str, Any], body: bytes) -> str:
        secret = self.config.webhook_secret
        if not secret:
            raise WebhookSignatureException(self.gateway_id, "Webhook secret is not configured")
        signature = _header(headers, self._webhook_cfg["signature_header"])
        timestamp = _header(headers, self._webhook_cfg["timestamp_header"])
        if not signature or not timestamp:
            raise WebhookSignatureException(self.gateway_id, "Missing webhook signature headers")
        try:
            sent_at = int(timestamp)
        except ValueError as exc:
            raise WebhookSignatureException(self.gateway_id, "Invalid webhook timestamp") from exc
        if abs(time.time() - sent_at) > int(self._webhook_cfg["tolerance_seconds"]):
            raise WebhookSignatureException(self.gateway_id, "Webhook timestamp outside tolerance")

        expected = sign_webhook(secret, timestamp, body)
        if not hmac.compare_digest(expected, signature):
            raise WebhookSignatureException(self.gateway_id, "Webhook signature mismatch")
        return signature

    # Helpers
    def _map_status(self, provider_status: str) -> str:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status, "pending")

    def _process_result(self, body: dict[str, Any], fallback_ref: Optional[str]) -> GatewayProcessResult:
        """把网关状态查询结果映射为处理结果；仍在处理中视为可重试失败"""
        outcome = self._map_status(str(body.get("status", "")))
        reference = body.get("gatewayTransactionId") or body.get("gateway_transaction_id") or fallback_ref
        if outcome == "completed":
            return GatewayProcessResult(success=True, gateway_transaction_id=reference, gateway_response=body)
        if outcome == "failed":
            return GatewayProcessResult(
                success=False,
                gateway_transaction_id=reference,
                gateway_response=body,
                error=str(body.get("failureReason") or body.get("message") or "Payment declined by provider"),
            )
        return GatewayProcessResult(
            success=False,
            gateway_transaction_id=reference,
            gateway_response=body,
            error="Payment is still pending at the provider",
            retryable=True,
        )

    def _failed(self, result_type, exc: ProviderCallError):
        self._log("payment_provider_call_failed", error=exc.message, retryable=exc.retryable)
        response = {"status_code": exc.status_code} if exc.status_code else {}
        if result_type is GatewayInitiateResult:
            return GatewayInitiateResult(success=False, error=exc.message, retryable=exc.retryable)
        return result_type(success=False, error=exc.message, retryable=exc.retryable, gateway_response=response)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            gateway_id=self.gateway_id,
            **kwargs,
        )


def sign_webhook(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
