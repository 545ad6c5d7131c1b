"""
Payment table: SQLAlchemy ORM model
An infrastructure detail, not the domain model
"""
from sqlalchemy import (
    Boolean, Column, Integer, String, Numeric, DateTime, JSON, Index
)
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    Payment row

    Maps the table only, no business logic.
    The rules live in domain.payment.entity.Payment.
    Sub-records (commission/mobile_money/refund/logs/errors) are stored as JSON;
    the commission fields used by reconciliation queries are duplicated as plain columns.
    """
    __tablename__ = "payments"

    # primary key
    id = Column(Integer, primary_key=True, index=True)

    # transaction reference (globally unique)
    transaction_reference = Column(String(64), unique=True, nullable=False, comment="transaction reference PAY_<ms>_<hex>")
    reservation_id = Column(String(100), nullable=True, index=True, comment="trip reservation id, empty for recharges")
    kind = Column(String(20), nullable=False, comment="trip/recharge")

    # parties
    payer_id = Column(String(100), nullable=False, index=True, comment="payer")
    payee_id = Column(String(100), nullable=False, index=True, comment="driver receiving the money (the user for recharges)")

    # amounts (Numeric keeps them exact)
    total_amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="total amount")
    driver_amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="driver share")
    platform_commission = Column(Numeric(precision=15, scale=2), nullable=False, comment="platform commission")
    transaction_fee = Column(Numeric(precision=15, scale=2), nullable=False, comment="channel fee")
    currency = Column(String(3), nullable=False, default="XOF", comment="ISO 4217 currency code")

    method = Column(String(30), nullable=False, comment="cash/wave/orange_money/mtn_money/moov_money")
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="payment status: pending/processing/complete/failed/refunded"
    )

    # sub-records
    commission = Column(JSON, nullable=False, comment="commission sub-record")
    mobile_money = Column(JSON, nullable=True, comment="mobile money sub-record")
    refund = Column(JSON, nullable=True, comment="refund sub-record")
    logs = Column(JSON, nullable=False, default=list, comment="audit log (append only)")
    errors = Column(JSON, nullable=False, default=list, comment="error log (append only)")

    # commission columns for the reconciliation sweep
    commission_status = Column(String(20), nullable=False, default="pending", index=True)
    commission_next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    commission_manual_review = Column(Boolean, nullable=False, default=False)

    # receipt
    receipt_number = Column(String(64), unique=True, nullable=True, comment="receipt number REC_<ms>_<hex>")
    receipt_url = Column(String(500), nullable=True)

    # timestamps
    initiated_at = Column(DateTime(timezone=True), nullable=False, index=True, comment="created at")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="first entered processing")
    completed_at = Column(DateTime(timezone=True), nullable=True, comment="completed at")
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="updated at"
    )

    # optimistic lock version
    version = Column(Integer, nullable=False, default=0)

    # indexes
    __table_args__ = (
        Index("ix_payments_status_initiated", "status", "initiated_at"),
        Index("ix_payments_commission_due", "status", "commission_status", "commission_next_attempt_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, reference='{self.transaction_reference}', "
            f"amount={self.total_amount}, status='{self.status}')>"
        )
