"""
Gateway registry: gateway id -> PaymentGateway adapter.

Populated once at process start by the composition root; read-only afterwards.
"""
from __future__ import annotations

from typing import Iterable, Optional

from application.dtos.payments import GatewayDescriptor
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.payment.exceptions import GatewayNotFoundException


logger = get_logger(__name__)


class GatewayRegistry:
    def __init__(self) -> None:
        self._gateways: dict[str, PaymentGateway] = {}
        self._descriptors: dict[str, GatewayDescriptor] = {}

    def register(
        self,
        gateway: PaymentGateway,
        *,
        name: Optional[str] = None,
        supported_currencies: Iterable[str] = (),
    ) -> None:
        if not isinstance(gateway, PaymentGateway):
            raise TypeError(f"{type(gateway).__name__} does not implement PaymentGateway")
        gateway_id = gateway.gateway_id
        if gateway_id in self._gateways:
            raise ValueError(f"gateway '{gateway_id}' already registered")
        self._gateways[gateway_id] = gateway
        self._descriptors[gateway_id] = GatewayDescriptor(
            id=gateway_id,
            name=name or gateway_id,
            provider=gateway.provider,
            supported_currencies=sorted({c.upper() for c in supported_currencies}),
        )
        logger.info("payment_gateway_registered", gateway_id=gateway_id, provider=gateway.provider)

    def get(self, gateway_id: str) -> PaymentGateway:
        try:
            return self._gateways[gateway_id]
        except KeyError:
            raise GatewayNotFoundException(gateway_id) from None

    def describe(self, gateway_id: str) -> GatewayDescriptor:
        try:
            return self._descriptors[gateway_id]
        except KeyError:
            raise GatewayNotFoundException(gateway_id) from None

    def descriptors(self, currency: Optional[str] = None) -> list[GatewayDescriptor]:
        items = list(self._descriptors.values())
        if currency:
            items = [d for d in items if d.supports(currency)]
        return items

    def __contains__(self, gateway_id: object) -> bool:
        return gateway_id in self._gateways

    def __len__(self) -> int:
        return len(self._gateways)

    async def aclose(self) -> None:
        for gateway_id, gateway in self._gateways.items():
            try:
                await gateway.aclose()
            except Exception as exc:  # noqa: BLE001
                logger.warning("payment_gateway_close_failed", gateway_id=gateway_id, error=str(exc))
