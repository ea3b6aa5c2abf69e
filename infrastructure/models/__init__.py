"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel, PaymentMethodModel
from .payment import (
    PaymentModel,
    RefundModel,
    PaymentTransactionModel,
    PaymentWebhookModel,
)

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "PaymentMethodModel",
    "PaymentModel",
    "RefundModel",
    "PaymentTransactionModel",
    "PaymentWebhookModel",
]
