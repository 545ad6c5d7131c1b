"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    PROVIDER_REJECTED = 60005

    # Payment record errors (61xxx)
    PAYMENT_NOT_FOUND = 61000
    INVALID_TRANSITION = 61001
    REFERENCE_CONFLICT = 61002
    CONCURRENT_UPDATE = 61003
    SETTLEMENT_FAILED = 61004
    INSUFFICIENT_BALANCE = 61005


# Provider→normalized status mapping; anything missing maps to "unknown"
PROVIDER_STATUS_TO_INTERNAL = {
    "cinetpay": {
        # Result codes
        "00": "accepted",
        "600": "refused",
        "627": "refused",
        "623": "pending",
        "629": "pending",
        "662": "pending",
        # Textual statuses returned by /payment/check
        "ACCEPTED": "accepted",
        "SUCCES": "accepted",
        "SUCCESS": "accepted",
        "REFUSED": "refused",
        "CANCELLED": "refused",
        "CANCELED": "refused",
        "PAYMENT_FAILED": "refused",
        "TRANSACTION_CANCEL": "refused",
        "PENDING": "pending",
        "WAITING_FOR_CUSTOMER": "pending",
        "WAITING_CUSTOMER_PAYMENT": "pending",
        "WAITING_CUSTOMER_TO_VALIDATE": "pending",
        "WAITING_CUSTOMER_OTP_CODE": "pending",
    },
}

# Initiation result codes the provider uses for an accepted checkout session
PROVIDER_INITIATION_SUCCESS = {
    "cinetpay": {"201", "00"},
}

# Operator labels reported in provider callbacks → internal operator values
PROVIDER_OPERATOR_CODES = {
    "cinetpay": {
        "OM": "orange",
        "OMCI": "orange",
        "ORANGE": "orange",
        "ORANGE_MONEY": "orange",
        "MOMO": "mtn",
        "MTNCI": "mtn",
        "MTN": "mtn",
        "MTN_MONEY": "mtn",
        "FLOOZ": "moov",
        "MOOV": "moov",
        "MOOV_MONEY": "moov",
        "WAVE": "wave",
        "WAVECI": "wave",
    },
}
