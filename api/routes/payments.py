"""
Payments API routes.

Thin HTTP layer over PaymentApplicationService: the gateway webhook, creation by
the reservation/account flows, initiation, polling, cash confirmation, retry,
refunds, the reconciliation listing and the read-only reports (allowed methods,
commission statistics, user history, integrity check).
"""
from __future__ import annotations

import ipaddress
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import get_payment_service
from application.dtos.payments import (
    CreateRecharge,
    CreateTripPayment,
    InitiateMobilePayment,
    RefundPayment,
)
from application.services.payment_service import PaymentApplicationService
from core.logging_config import get_logger
from core.response import acknowledgement, success_response
from core.settings import payment_settings
from domain.payment.exceptions import DomainValidationException, PaymentNotFoundException


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: str | None, allowlist: list[str]) -> bool:
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


@router.post("/webhooks/cinetpay", summary="CinetPay notification")
async def cinetpay_webhook(
    request: Request,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    """
    Acknowledge with code 0 every outcome the engine has settled, so the gateway
    stops retrying.

    Errors raised by the service go through the exception handlers: 401 for a bad
    signature, 409 when the record lock is not acquired, 503 when the database is
    down. The last two make CinetPay deliver the notification again.
    """
    remote_ip = request.client.host if request.client else None
    if not _ip_allowed(remote_ip, payment_settings.webhook.ip_allowlist):
        logger.warning("webhook_ip_not_allowed", remote_ip=remote_ip)
        return acknowledgement("ignored", "Source not allowed")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    try:
        result = await service.handle_webhook(headers, raw_body)
    except PaymentNotFoundException as exc:
        logger.warning("webhook_unknown_reference", error=exc.message)
        return acknowledgement("ignored", "Unknown transaction")
    except DomainValidationException as exc:
        logger.warning("webhook_malformed", error=exc.message)
        return acknowledgement("ignored", "Malformed notification")

    return success_response(data=result.model_dump(mode="json"), message="Notification received")


@router.post("/trips", summary="Create trip payment")
async def create_trip_payment(
    payload: CreateTripPayment,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    summary = await service.create_trip_payment(payload)
    return success_response(data=summary.model_dump(mode="json"), message="Payment created")


@router.post("/recharges", summary="Create account recharge")
async def create_recharge(
    payload: CreateRecharge,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    summary = await service.create_recharge(payload)
    return success_response(data=summary.model_dump(mode="json"), message="Recharge created")


@router.get("/reconciliation/pending", summary="Payments awaiting reconciliation")
async def list_pending_for_reconciliation(
    limit: int = Query(default=100, ge=1, le=1000),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    items = await service.list_pending_for_reconciliation(limit)
    return success_response(data=[item.model_dump(mode="json") for item in items])


@router.get("/methods", summary="Payment methods allowed for a trip")
async def allowed_methods(
    payee_id: str = Query(min_length=1),
    amount: Decimal = Query(gt=0),
    reservation_id: Optional[str] = Query(default=None),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    eligibility = await service.allowed_methods(payee_id, amount, reservation_id)
    return success_response(data=eligibility.model_dump(mode="json"))


@router.get("/commissions/stats", summary="Commission statistics for a period")
async def commission_stats(
    start: datetime,
    end: datetime,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    stats = await service.commission_stats(start, end)
    return success_response(data=stats.model_dump(mode="json"))


@router.get("/users/{user_id}", summary="Payment history of a user")
async def list_user_payments(
    user_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    history = await service.list_user_payments(user_id, page, limit)
    return success_response(data=history.model_dump(mode="json"))


@router.post("/{reference}/initiate", summary="Start mobile-money checkout")
async def initiate_payment(
    reference: str,
    payload: InitiateMobilePayment,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    initiation = await service.initiate(reference, payload)
    return success_response(data=initiation.model_dump(mode="json"), message="Payment initiated")


@router.post("/{reference}/poll", summary="Poll gateway status")
async def poll_payment(
    reference: str,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.poll(reference)
    return success_response(data=result.model_dump(mode="json"))


@router.post("/{reference}/cash-confirmation", summary="Confirm cash payment")
async def confirm_cash_payment(
    reference: str,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    summary = await service.confirm_cash_payment(reference)
    return success_response(data=summary.model_dump(mode="json"), message="Cash payment confirmed")


@router.post("/{reference}/retry", summary="Retry a failed payment")
async def retry_payment(
    reference: str,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    summary = await service.retry_failed(reference)
    return success_response(data=summary.model_dump(mode="json"), message="Payment reset to pending")


@router.get("/{payment_id}", summary="Payment summary")
async def get_payment(
    payment_id: int,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    summary = await service.get_payment_summary(payment_id)
    return success_response(data=summary.model_dump(mode="json"))


@router.post("/{payment_id}/refund", summary="Refund a payment")
async def refund_payment(
    payment_id: int,
    payload: RefundPayment,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    summary = await service.request_refund(payment_id, payload)
    return success_response(data=summary.model_dump(mode="json"), message="Payment refunded")


@router.get("/{payment_id}/integrity", summary="Verify the amount breakdown of a payment")
async def verify_payment_integrity(
    payment_id: int,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    report = await service.verify_integrity(payment_id)
    return success_response(data=report.model_dump(mode="json"))
