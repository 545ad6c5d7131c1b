"""
Shared business codes used across layers (Domain/Core/API).

`BusinessCode` covers generic request/system outcomes; payment-specific codes
live in `shared.codes.payment_codes` (6xxxx range).
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    """Unified business status codes (single source of truth)."""

    # Success
    SUCCESS = 0

    # Parameter errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # Business errors (2xxxx)
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006
    CONFLICT = 20007

    # Authorization errors (3xxxx)
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # System errors (4xxxx)
    SYSTEM_ERROR = 40000
    DATABASE_ERROR = 40001
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode"]
