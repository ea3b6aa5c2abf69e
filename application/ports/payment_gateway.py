"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters
(card, mobile money, bank transfer, sandbox). Adapters report provider
rejections and transport faults as unsuccessful results instead of raising.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayProcessRequest,
    GatewayProcessResult,
    GatewayRefundRequest,
    GatewayRefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Implementations should be async and side-effect free beyond IO.
    """

    gateway_id: str
    provider: str

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult: ...

    async def process(self, req: GatewayProcessRequest) -> GatewayProcessResult: ...

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult: ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...

    async def aclose(self) -> None: ...
