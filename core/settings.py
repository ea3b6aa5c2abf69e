"""
Payment-related settings using pydantic-settings v2 with nested env keys.

All keys live under the ``PAYMENT__`` prefix, e.g. ``PAYMENT__TIMEOUTS__READ=5``
or ``PAYMENT__GATEWAYS='[{"id": "card-main", "provider": "card", ...}]'``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    # Transport-level retries inside a single gateway call (connection setup only)
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    signature_header: str = "X-Signature"
    timestamp_header: str = "X-Timestamp"
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class GatewayConfig(BaseModel):
    """One gateway registry entry."""

    id: str
    provider: str  # card | mobile_money | bank_transfer | sandbox
    name: Optional[str] = None
    enabled: bool = True
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    merchant_id: Optional[str] = None
    webhook_secret: Optional[str] = None
    supported_currencies: list[str] = Field(default_factory=list)
    # bank_transfer only
    bank_details: dict[str, str] = Field(default_factory=dict)
    redirect_base_url: Optional[str] = None

    @field_validator("supported_currencies")
    @classmethod
    def _upper(cls, v: list[str]) -> list[str]:
        return [c.upper() for c in v]


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    gateways: list[GatewayConfig] = Field(default_factory=list)
    # Registers an in-process sandbox gateway (development only)
    sandbox_enabled: bool = False
    confirmed_order_status: str = "confirmed"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
