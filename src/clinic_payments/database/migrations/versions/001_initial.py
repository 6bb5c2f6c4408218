"""Initial migration - create appointments, payments, and payment_sync_audit tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create appointments table
    op.create_table(
        'appointments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='unpaid'),
        sa.Column('patient_name', sa.String(255), nullable=True),
        sa.Column('patient_email', sa.String(255), nullable=True),
        sa.Column('dentist_name', sa.String(255), nullable=True),
        sa.Column('dentist_email', sa.String(255), nullable=True),
        sa.Column('service_name', sa.String(255), nullable=True),
        sa.Column('service_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('appointment_time', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_appointments_payment_status', 'appointments', ['payment_status'])
    op.create_index('ix_appointments_status', 'appointments', ['status'])

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('appointment_id', sa.Integer(), sa.ForeignKey('appointments.id'), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='PHP'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payments_appointment_id', 'payments', ['appointment_id'])
    op.create_index('ix_payments_gateway_payment_id', 'payments', ['gateway_payment_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    # At most one completed payment per appointment
    op.create_index(
        'uq_payments_completed_appointment',
        'payments',
        ['appointment_id'],
        unique=True,
        sqlite_where=sa.text("status = 'completed'"),
        postgresql_where=sa.text("status = 'completed'"),
    )

    # Create payment_sync_audit table
    op.create_table(
        'payment_sync_audit',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('appointment_id', sa.Integer(), nullable=False),
        sa.Column('payment_id', sa.String(36), nullable=True),
        sa.Column('fix_method', sa.String(50), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=True),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payment_sync_audit_appointment_id', 'payment_sync_audit', ['appointment_id'])
    op.create_index('ix_payment_sync_audit_created_at', 'payment_sync_audit', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_payment_sync_audit_created_at', table_name='payment_sync_audit')
    op.drop_index('ix_payment_sync_audit_appointment_id', table_name='payment_sync_audit')

    op.drop_index('uq_payments_completed_appointment', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_gateway_payment_id', table_name='payments')
    op.drop_index('ix_payments_appointment_id', table_name='payments')

    op.drop_index('ix_appointments_status', table_name='appointments')
    op.drop_index('ix_appointments_payment_status', table_name='appointments')

    # Drop tables
    op.drop_table('payment_sync_audit')
    op.drop_table('payments')
    op.drop_table('appointments')
