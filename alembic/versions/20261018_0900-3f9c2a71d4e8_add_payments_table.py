"""add_payments_table

Revision ID: 3f9c2a71d4e8
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f9c2a71d4e8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('transaction_reference', sa.String(length=64), nullable=False, comment='transaction reference PAY_<ms>_<hex>'),
        sa.Column('reservation_id', sa.String(length=100), nullable=True, comment='trip reservation id, empty for recharges'),
        sa.Column('kind', sa.String(length=20), nullable=False, comment='trip/recharge'),
        sa.Column('payer_id', sa.String(length=100), nullable=False, comment='payer'),
        sa.Column('payee_id', sa.String(length=100), nullable=False, comment='driver receiving the money (the user for recharges)'),
        sa.Column('total_amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='total amount'),
        sa.Column('driver_amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='driver share'),
        sa.Column('platform_commission', sa.Numeric(precision=15, scale=2), nullable=False, comment='platform commission'),
        sa.Column('transaction_fee', sa.Numeric(precision=15, scale=2), nullable=False, comment='channel fee'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='ISO 4217 currency code'),
        sa.Column('method', sa.String(length=30), nullable=False, comment='cash/wave/orange_money/mtn_money/moov_money'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='payment status: pending/processing/complete/failed/refunded'),
        sa.Column('commission', sa.JSON(), nullable=False, comment='commission sub-record'),
        sa.Column('mobile_money', sa.JSON(), nullable=True, comment='mobile money sub-record'),
        sa.Column('refund', sa.JSON(), nullable=True, comment='refund sub-record'),
        sa.Column('logs', sa.JSON(), nullable=False, comment='audit log (append only)'),
        sa.Column('errors', sa.JSON(), nullable=False, comment='error log (append only)'),
        sa.Column('commission_status', sa.String(length=20), nullable=False),
        sa.Column('commission_next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('commission_manual_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('receipt_number', sa.String(length=64), nullable=True, comment='receipt number REC_<ms>_<hex>'),
        sa.Column('receipt_url', sa.String(length=500), nullable=True),
        sa.Column('initiated_at', sa.DateTime(timezone=True), nullable=False, comment='created at'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='first entered processing'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True, comment='completed at'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='updated at'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_reference'),
        sa.UniqueConstraint('receipt_number'),
    )

    # Create indexes
    op.create_index('ix_payments_id', 'payments', ['id'], unique=False)
    op.create_index('ix_payments_reservation_id', 'payments', ['reservation_id'], unique=False)
    op.create_index('ix_payments_payer_id', 'payments', ['payer_id'], unique=False)
    op.create_index('ix_payments_payee_id', 'payments', ['payee_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_commission_status', 'payments', ['commission_status'], unique=False)
    op.create_index('ix_payments_initiated_at', 'payments', ['initiated_at'], unique=False)
    op.create_index('ix_payments_status_initiated', 'payments', ['status', 'initiated_at'], unique=False)
    op.create_index(
        'ix_payments_commission_due',
        'payments',
        ['status', 'commission_status', 'commission_next_attempt_at'],
        unique=False,
    )


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_payments_commission_due', table_name='payments')
    op.drop_index('ix_payments_status_initiated', table_name='payments')
    op.drop_index('ix_payments_initiated_at', table_name='payments')
    op.drop_index('ix_payments_commission_status', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_payee_id', table_name='payments')
    op.drop_index('ix_payments_payer_id', table_name='payments')
    op.drop_index('ix_payments_reservation_id', table_name='payments')
    op.drop_index('ix_payments_id', table_name='payments')

    # Drop table
    op.drop_table('payments')
