"""
Shared business codes used across layers (Domain/Core/API).

This package exposes BusinessCode at `shared.codes` and keeps
provider-facing codes under `shared.codes.payment_codes`.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    """Unified business status codes (single source of truth)."""

    # Success
    SUCCESS = 0

    # Parameter errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_MISSING = 10001
    PARAM_TYPE_ERROR = 10002
    PARAM_VALIDATION_ERROR = 10003
    INVALID_AMOUNT = 10004

    # Business errors (2xxxx)
    BUSINESS_ERROR = 20000
    TOKEN_INVALID = 20004
    TOKEN_EXPIRED = 20005
    NOT_FOUND = 20006  # Generic resource not found

    # Payment lifecycle (201xx)
    PAYMENT_NOT_FOUND = 20100
    ORDER_NOT_FOUND = 20101
    PAYMENT_METHOD_NOT_FOUND = 20102
    GATEWAY_NOT_FOUND = 20103
    GATEWAY_UNAVAILABLE = 20104
    PAYMENT_ALREADY_EXISTS = 20110
    PAYMENT_ALREADY_COMPLETED = 20111
    PAYMENT_INVALID_STATE = 20112
    PAYMENT_NOT_REFUNDABLE = 20113
    REFUND_EXCEEDS_BALANCE = 20114
    PAYMENT_CONCURRENT_UPDATE = 20115
    LOCK_TIMEOUT = 20116
    GATEWAY_REJECTED = 20120
    WEBHOOK_SIGNATURE_INVALID = 20121

    # Authorization errors (3xxxx)
    PERMISSION_ERROR = 30000
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # System errors (4xxxx)
    SYSTEM_ERROR = 40000
    DATABASE_ERROR = 40001
    NETWORK_ERROR = 40002
    SERVICE_UNAVAILABLE = 40003

    # Rate limiting (5xxxx)
    RATE_LIMIT_ERROR = 50000
    TOO_MANY_REQUESTS = 50001


# Codes that describe a conflict with the current state of a resource
CONFLICT_CODES = frozenset(
    {
        BusinessCode.PAYMENT_ALREADY_EXISTS,
        BusinessCode.PAYMENT_ALREADY_COMPLETED,
        BusinessCode.PAYMENT_INVALID_STATE,
        BusinessCode.PAYMENT_NOT_REFUNDABLE,
        BusinessCode.REFUND_EXCEEDS_BALANCE,
        BusinessCode.PAYMENT_CONCURRENT_UPDATE,
        BusinessCode.LOCK_TIMEOUT,
    }
)


__all__ = ["BusinessCode", "CONFLICT_CODES"]
