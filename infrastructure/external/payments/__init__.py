"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

import httpx

from application.services.gateway_registry import GatewayRegistry
from core.logging_config import get_logger
from core.settings import GatewayConfig, PaymentSettings, payment_settings
from .base import BasePaymentClient
from .bank_transfer_client import BankTransferClient
from .card_client import CardPaymentClient
from .mobile_money_client import MobileMoneyClient
from .sandbox_client import SandboxGateway


logger = get_logger(__name__)

PROVIDERS: dict[str, type[BasePaymentClient]] = {
    "card": CardPaymentClient,
    "mobile_money": MobileMoneyClient,
    "bank_transfer": BankTransferClient,
    "sandbox": SandboxGateway,
}


def get_payment_gateway(
    config: GatewayConfig,
    settings: Optional[PaymentSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BasePaymentClient:
    name = config.provider.lower()
    client_cls = PROVIDERS.get(name)
    if client_cls is None:
        raise ValueError(f"Unsupported payment provider: {name}")
    return client_cls.from_settings(config, settings or payment_settings, transport=transport)


def build_gateway_registry(settings: Optional[PaymentSettings] = None) -> GatewayRegistry:
    """按配置构建网关注册表；未知 provider 记录告警后跳过"""
    settings = settings or payment_settings
    registry = GatewayRegistry()
    for config in settings.gateways:
        if not config.enabled:
            continue
        try:
            gateway = get_payment_gateway(config, settings)
        except ValueError:
            logger.warning("payment_gateway_unknown_provider", gateway_id=config.id, provider=config.provider)
            continue
        registry.register(gateway, name=config.name, supported_currencies=config.supported_currencies)

    if settings.sandbox_enabled and "sandbox" not in registry:
        sandbox = SandboxGateway.from_settings(GatewayConfig(id="sandbox", provider="sandbox", name="Sandbox"), settings)
        registry.register(sandbox, name="Sandbox")
    return registry


__all__ = [
    "BankTransferClient",
    "CardPaymentClient",
    "MobileMoneyClient",
    "SandboxGateway",
    "build_gateway_registry",
    "get_payment_gateway",
]
