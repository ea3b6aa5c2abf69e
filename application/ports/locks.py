"""
Lock port: per-key mutual exclusion for payment critical sections.
"""
from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


@runtime_checkable
class LockProvider(Protocol):
    """Serializes work on a key (an order or a payment) across concurrent requests.

    ``lock`` raises ``LockTimeoutException`` when the key cannot be acquired in time.
    """

    def lock(self, key: str) -> AsyncContextManager[None]: ...


def order_lock_key(order_id: str) -> str:
    return f"payment:order:{order_id}"


def payment_lock_key(payment_id: int) -> str:
    return f"payment:{payment_id}"
