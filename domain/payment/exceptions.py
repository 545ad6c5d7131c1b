"""
Payment exceptions mapped to unified BusinessException variants.

Validation problems reuse DomainValidationException; everything else carries a
PaymentCode so the API layer can map it to an HTTP status.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException, DomainValidationException
from shared.codes.payment_codes import PaymentCode


class InvalidTransitionError(BusinessException):
    """Rejected by the transition table. Non-fatal for the caller."""

    def __init__(self, from_status: str, to_status: str, *, reference: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            code=PaymentCode.INVALID_TRANSITION,
            message=f"Transition {from_status} -> {to_status} is not allowed",
            error_type="InvalidTransitionError",
            details={"from": from_status, "to": to_status, "reference": reference},
            field="status",
        )


class PaymentNotFoundException(BusinessException):
    def __init__(self, identifier: str | int):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {identifier}",
            error_type="PaymentNotFound",
            details={"identifier": str(identifier)},
        )


class PaymentReferenceConflict(BusinessException):
    """A generated transaction reference already exists. Safe to retry creation."""

    def __init__(self, reference: str):
        super().__init__(
            code=PaymentCode.REFERENCE_CONFLICT,
            message=f"Transaction reference {reference} already exists",
            error_type="PaymentReferenceConflict",
            details={"reference": reference, "retryable": True},
        )


class ConcurrentUpdateError(BusinessException):
    def __init__(self, reference: str, *, reason: str = "stale version"):
        super().__init__(
            code=PaymentCode.CONCURRENT_UPDATE,
            message=f"Payment {reference} was modified concurrently ({reason})",
            error_type="ConcurrentUpdateError",
            details={"reference": reference, "reason": reason, "retryable": True},
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )


class GatewayError(BusinessException):
    """Network or provider-side failure on an outbound call. Payment state is unchanged."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
        code: int = PaymentCode.PROVIDER_ERROR,
        error_type: str = "GatewayError",
    ):
        self.provider = provider
        self.provider_code = provider_code
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
        )


class GatewayTimeoutError(GatewayError):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(
            message,
            provider=provider,
            details=details,
            code=PaymentCode.TIMEOUT,
            error_type="GatewayTimeoutError",
        )


class GatewayRejectedError(GatewayError):
    """The provider answered with a recognized failure code; the payment is FAILED."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            provider=provider,
            provider_code=provider_code,
            details=details,
            code=PaymentCode.PROVIDER_REJECTED,
            error_type="GatewayRejectedError",
        )


class SettlementError(BusinessException):
    """A wallet/ledger collaborator could not settle a commission."""

    def __init__(self, message: str, *, reference: str, details: Optional[dict] = None):
        full_details = {"reference": reference}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SETTLEMENT_FAILED,
            message=message,
            error_type="SettlementError",
            details=full_details,
        )


class InsufficientBalanceError(BusinessException):
    """The driver's prepaid balance cannot cover the commission of a cash trip."""

    def __init__(self, account_id: str, balance, required):
        super().__init__(
            code=PaymentCode.INSUFFICIENT_BALANCE,
            message=f"Balance {balance} of {account_id} does not cover {required}",
            error_type="InsufficientBalanceError",
            details={"account_id": account_id, "balance": str(balance), "required": str(required)},
            field="method",
        )


__all__ = [
    "DomainValidationException",
    "InvalidTransitionError",
    "PaymentNotFoundException",
    "PaymentReferenceConflict",
    "ConcurrentUpdateError",
    "PaymentSignatureError",
    "GatewayError",
    "GatewayTimeoutError",
    "GatewayRejectedError",
    "SettlementError",
    "InsufficientBalanceError",
]
