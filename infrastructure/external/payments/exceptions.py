"""
Provider call failures raised inside adapters.

They never leave the adapter: ``BasePaymentClient`` turns them into failed
gateway results carrying ``retryable``.
"""
from __future__ import annotations

from typing import Optional


class ProviderCallError(Exception):
    """HTTP 层失败，携带是否可重试"""

    def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.status_code = status_code
