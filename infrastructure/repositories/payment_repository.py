"""
Payment repository implementation - data access through SQLAlchemy
"""
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import (
    AuditEntry,
    CollectionMode,
    CollectionStatus,
    CommissionRecord,
    ErrorEntry,
    GatewayStatus,
    MobileMoneyRecord,
    MobileOperator,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
    to_decimal,
)
from domain.payment.exceptions import ConcurrentUpdateError, PaymentReferenceConflict
from domain.payment.repository import CommissionTotals, PaymentRepository
from infrastructure.models.payment import PaymentModel


logger = get_logger(__name__)


# --- JSON sub-record serialization -------------------------------------------

def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _plain(details: dict) -> dict:
    """Make log details JSON-safe (Decimal and datetime become strings)"""
    return json.loads(json.dumps(details, default=str))


def _commission_to_json(record: CommissionRecord) -> dict[str, Any]:
    return {
        "rate": str(record.rate),
        "amount": str(record.amount),
        "collection_mode": record.collection_mode.value,
        "collection_status": record.collection_status.value,
        "base_rate": str(record.base_rate) if record.base_rate is not None else None,
        "adjustments": dict(record.adjustments),
        "attempts": record.attempts,
        "next_attempt_at": _dt(record.next_attempt_at),
        "collected_at": _dt(record.collected_at),
        "last_error": record.last_error,
        "manual_review": record.manual_review,
    }


def _commission_from_json(data: dict[str, Any]) -> CommissionRecord:
    return CommissionRecord(
        rate=data["rate"],
        amount=data["amount"],
        collection_mode=CollectionMode(data["collection_mode"]),
        collection_status=CollectionStatus(data.get("collection_status", "pending")),
        base_rate=data.get("base_rate"),
        adjustments=dict(data.get("adjustments") or {}),
        attempts=int(data.get("attempts", 0)),
        next_attempt_at=_parse_dt(data.get("next_attempt_at")),
        collected_at=_parse_dt(data.get("collected_at")),
        last_error=data.get("last_error"),
        manual_review=bool(data.get("manual_review", False)),
    )


def _mobile_money_to_json(record: Optional[MobileMoneyRecord]) -> Optional[dict[str, Any]]:
    if record is None:
        return None
    return {
        "operator": record.operator.value,
        "customer_phone": record.customer_phone,
        "gateway_token": record.gateway_token,
        "payment_url": record.payment_url,
        "gateway_transaction_id": record.gateway_transaction_id,
        "gateway_status": record.gateway_status.value,
        "transaction_at": _dt(record.transaction_at),
    }


def _mobile_money_from_json(data: Optional[dict[str, Any]]) -> Optional[MobileMoneyRecord]:
    if not data:
        return None
    return MobileMoneyRecord(
        operator=MobileOperator(data["operator"]),
        customer_phone=data.get("customer_phone"),
        gateway_token=data.get("gateway_token"),
        payment_url=data.get("payment_url"),
        gateway_transaction_id=data.get("gateway_transaction_id"),
        gateway_status=GatewayStatus(data.get("gateway_status", "pending")),
        transaction_at=_parse_dt(data.get("transaction_at")),
    )


def _refund_to_json(record: Optional[RefundRecord]) -> Optional[dict[str, Any]]:
    if record is None:
        return None
    return {
        "refunded_amount": str(record.refunded_amount),
        "fee": str(record.fee),
        "cause": record.cause,
        "refunded_at": _dt(record.refunded_at),
        "hours_before_departure": record.hours_before_departure,
    }


def _refund_from_json(data: Optional[dict[str, Any]]) -> Optional[RefundRecord]:
    if not data:
        return None
    return RefundRecord(
        refunded_amount=data["refunded_amount"],
        fee=data["fee"],
        cause=data["cause"],
        refunded_at=_parse_dt(data["refunded_at"]),
        hours_before_departure=data.get("hours_before_departure"),
    )


class SQLAlchemyPaymentRepository(PaymentRepository):
    """SQLAlchemy implementation of the payment repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """Convert a database model into a domain entity"""
        return Payment(
            id=model.id,
            transaction_reference=model.transaction_reference,
            payer_id=model.payer_id,
            payee_id=model.payee_id,
            reservation_id=model.reservation_id,
            total_amount=model.total_amount,
            driver_amount=model.driver_amount,
            platform_commission=model.platform_commission,
            transaction_fee=model.transaction_fee,
            currency=model.currency,
            method=PaymentMethod(model.method),
            status=PaymentStatus(model.status),
            commission=_commission_from_json(model.commission),
            mobile_money=_mobile_money_from_json(model.mobile_money),
            refund=_refund_from_json(model.refund),
            initiated_at=model.initiated_at,
            processed_at=model.processed_at,
            completed_at=model.completed_at,
            updated_at=model.updated_at,
            receipt_number=model.receipt_number,
            receipt_url=model.receipt_url,
            logs=[
                AuditEntry(timestamp=_parse_dt(e["timestamp"]), action=e["action"], details=e.get("details") or {})
                for e in (model.logs or [])
            ],
            errors=[
                ErrorEntry(
                    timestamp=_parse_dt(e["timestamp"]),
                    code=e["code"],
                    message=e["message"],
                    context=e.get("context") or {},
                )
                for e in (model.errors or [])
            ],
            version=model.version,
        )

    def _apply(self, model: PaymentModel, entity: Payment) -> PaymentModel:
        """Copy the mutable fields of the entity onto the model"""
        model.transaction_reference = entity.transaction_reference
        model.reservation_id = entity.reservation_id
        model.kind = entity.kind.value
        model.payer_id = entity.payer_id
        model.payee_id = entity.payee_id
        model.total_amount = entity.total_amount
        model.driver_amount = entity.driver_amount
        model.platform_commission = entity.platform_commission
        model.transaction_fee = entity.transaction_fee
        model.currency = entity.currency
        model.method = entity.method.value
        model.status = entity.status.value
        model.commission = _commission_to_json(entity.commission)
        model.mobile_money = _mobile_money_to_json(entity.mobile_money)
        model.refund = _refund_to_json(entity.refund)
        model.logs = [
            {"timestamp": _dt(e.timestamp), "action": e.action, "details": _plain(e.details)}
            for e in entity.logs
        ]
        model.errors = [
            {"timestamp": _dt(e.timestamp), "code": e.code, "message": e.message, "context": _plain(e.context)}
            for e in entity.errors
        ]
        model.commission_status = entity.commission.collection_status.value
        model.commission_next_attempt_at = entity.commission.next_attempt_at
        model.commission_manual_review = entity.commission.manual_review
        model.receipt_number = entity.receipt_number
        model.receipt_url = entity.receipt_url
        model.initiated_at = entity.initiated_at
        model.processed_at = entity.processed_at
        model.completed_at = entity.completed_at
        model.updated_at = entity.updated_at or entity.initiated_at
        return model

    async def create(self, payment: Payment) -> Payment:
        """Create a payment record"""
        db_payment = self._apply(PaymentModel(version=0), payment)
        self.session.add(db_payment)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # the enclosing UoW rolls back
            if "transaction_reference" in str(e).lower():
                logger.warning("payment_reference_conflict", reference=payment.transaction_reference)
                raise PaymentReferenceConflict(payment.transaction_reference) from e
            raise
        await self.session.refresh(db_payment)
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """Get a payment by ID"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        """Get a payment by transaction reference"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.transaction_reference == reference)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_reference_for_update(self, reference: str) -> Optional[Payment]:
        """Row-locking read (SQLite ignores FOR UPDATE)"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.transaction_reference == reference)
            .with_for_update()
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def exists_by_reference(self, reference: str) -> bool:
        result = await self.session.execute(
            select(func.count(PaymentModel.id)).where(PaymentModel.transaction_reference == reference)
        )
        return result.scalar_one() > 0

    async def find_active_for_reservation(self, reservation_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.reservation_id == reservation_id,
                PaymentModel.status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value, PaymentStatus.COMPLETE.value]
                ),
            )
            .order_by(PaymentModel.id.desc())
            .limit(1)
        )
        db_payment = result.scalars().first()
        return self._to_entity(db_payment) if db_payment else None

    async def update(self, payment: Payment) -> Payment:
        """Update a payment (optimistic lock: versions must match)"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment.id).with_for_update()
        )
        db_payment = result.scalar_one_or_none()

        if not db_payment:
            raise ConcurrentUpdateError(payment.transaction_reference, reason="record disappeared")
        if db_payment.version != payment.version:
            logger.warning(
                "payment_version_conflict",
                reference=payment.transaction_reference,
                expected=payment.version,
                found=db_payment.version,
            )
            raise ConcurrentUpdateError(
                payment.transaction_reference,
                reason=f"version {payment.version} is stale (stored {db_payment.version})",
            )

        self._apply(db_payment, payment)
        db_payment.version = payment.version + 1
        await self.session.flush()
        await self.session.refresh(db_payment)

        logger.debug(
            "payment_updated",
            payment_id=db_payment.id,
            reference=db_payment.transaction_reference,
            status=db_payment.status,
            version=db_payment.version,
        )
        return self._to_entity(db_payment)

    async def list_stale_pending(self, initiated_before: datetime, limit: int = 100) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.PENDING.value,
                PaymentModel.method != PaymentMethod.CASH.value,
                PaymentModel.initiated_at < initiated_before,
            )
            .order_by(PaymentModel.initiated_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_commission_candidates(
        self,
        *,
        pending_before: datetime,
        due_at: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.COMPLETE.value,
                PaymentModel.commission_manual_review.is_(False),
                or_(
                    and_(
                        PaymentModel.commission_status == CollectionStatus.FAILED.value,
                        or_(
                            PaymentModel.commission_next_attempt_at.is_(None),
                            PaymentModel.commission_next_attempt_at <= due_at,
                        ),
                    ),
                    and_(
                        PaymentModel.commission_status == CollectionStatus.PENDING.value,
                        PaymentModel.completed_at <= pending_before,
                    ),
                ),
            )
            .order_by(PaymentModel.completed_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_by_status(self, statuses: Sequence[PaymentStatus], limit: int = 100) -> List[Payment]:
        """List payments by status"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.status.in_([s.value for s in statuses]))
            .order_by(PaymentModel.initiated_at.desc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_unsettled(self, limit: int = 100) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                or_(
                    PaymentModel.status.in_([PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]),
                    and_(
                        PaymentModel.status == PaymentStatus.COMPLETE.value,
                        PaymentModel.commission_status != CollectionStatus.COLLECTED.value,
                    ),
                )
            )
            .order_by(PaymentModel.initiated_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def daily_mobile_money_usage(self, payer_id: str, since: datetime) -> Tuple[Decimal, int]:
        result = await self.session.execute(
            select(func.coalesce(func.sum(PaymentModel.total_amount), 0), func.count(PaymentModel.id)).where(
                PaymentModel.method != PaymentMethod.CASH.value,
                PaymentModel.payer_id == payer_id,
                PaymentModel.initiated_at >= since,
                PaymentModel.status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value, PaymentStatus.COMPLETE.value]
                ),
            )
        )
        total, count = result.one()
        return to_decimal(total), int(count)

    async def commission_totals(self, start: datetime, end: datetime) -> List[CommissionTotals]:
        result = await self.session.execute(
            select(
                PaymentModel.method,
                PaymentModel.commission_status,
                func.count(PaymentModel.id),
                func.coalesce(func.sum(PaymentModel.total_amount), 0),
                func.coalesce(func.sum(PaymentModel.platform_commission), 0),
            )
            .where(
                PaymentModel.status == PaymentStatus.COMPLETE.value,
                PaymentModel.completed_at >= start,
                PaymentModel.completed_at <= end,
            )
            .group_by(PaymentModel.method, PaymentModel.commission_status)
            .order_by(PaymentModel.method, PaymentModel.commission_status)
        )
        return [
            CommissionTotals(
                method=method,
                collection_status=collection_status,
                count=int(count),
                total_amount=to_decimal(total),
                commission_amount=to_decimal(commission),
            )
            for method, collection_status, count, total, commission in result.all()
        ]

    async def list_for_party(self, user_id: str, *, limit: int = 20, offset: int = 0) -> Tuple[List[Payment], int]:
        """History of one user as payer or payee"""
        party = or_(PaymentModel.payer_id == user_id, PaymentModel.payee_id == user_id)
        total = (await self.session.execute(select(func.count(PaymentModel.id)).where(party))).scalar_one()
        result = await self.session.execute(
            select(PaymentModel)
            .where(party)
            .order_by(PaymentModel.initiated_at.desc(), PaymentModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [self._to_entity(p) for p in result.scalars().all()], int(total)
