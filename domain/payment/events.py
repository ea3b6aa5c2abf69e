"""
Payment domain events.

Dataclass events record payment lifecycle facts; application services emit them
after the unit of work commits. Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    payment_id: int
    order_id: str
    gateway_id: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass
class PaymentInitiated(PaymentEvent):
    transaction_id: Optional[str] = None


@dataclass
class PaymentCompleted(PaymentEvent):
    gateway_transaction_id: Optional[str] = None
    amount: str = ""


@dataclass
class PaymentFailed(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class PaymentRefunded(PaymentEvent):
    """支付已全额退款"""
    amount: str = ""


@dataclass
class RefundCompleted(PaymentEvent):
    refund_id: int = 0
    amount: str = ""


@dataclass
class RefundFailed(PaymentEvent):
    refund_id: int = 0
    reason: Optional[str] = None
