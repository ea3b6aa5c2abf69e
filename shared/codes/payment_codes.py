"""
Provider status mapping per gateway provider.
"""
from __future__ import annotations


# Provider status -> outcome ("completed" / "failed" / "pending")
PROVIDER_STATUS_TO_INTERNAL = {
    "card": {
        "authorized": "pending",
        "pending": "pending",
        "processing": "pending",
        "captured": "completed",
        "succeeded": "completed",
        "completed": "completed",
        "declined": "failed",
        "failed": "failed",
        "canceled": "failed",
        "cancelled": "failed",
    },
    "mobile_money": {
        "PENDING": "pending",
        "INITIATED": "pending",
        "SUCCESS": "completed",
        "SUCCESSFUL": "completed",
        "COMPLETED": "completed",
        "FAILED": "failed",
        "REJECTED": "failed",
        "EXPIRED": "failed",
        "CANCELLED": "failed",
    },
    "bank_transfer": {
        "awaiting_transfer": "pending",
        "received": "pending",
        "confirmed": "completed",
        "completed": "completed",
        "returned": "failed",
        "rejected": "failed",
    },
    "sandbox": {
        "completed": "completed",
        "succeeded": "completed",
        "failed": "failed",
        "pending": "pending",
    },
}
