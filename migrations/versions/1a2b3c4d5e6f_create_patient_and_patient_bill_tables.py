"""Create patient and patient_bill tables

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None

insurance_plan_type = sa.Enum('Premium', 'Standard', 'Basic', name='insurance_plan_type')


def upgrade():
    op.create_table('patient',
        sa.Column('id', sa.Integer(), nullable=False, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('age', sa.Integer(), nullable=False),
        sa.Column('insurance_plan_type', insurance_plan_type, nullable=False),
    )
    op.create_index(op.f('ix_patient_id'), 'patient', ['id'], unique=False)

    # Append-only ledger; the service never updates or deletes rows
    op.create_table('patient_bill',
        sa.Column('bill_id', sa.Integer(), nullable=False, primary_key=True, autoincrement=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patient.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visit_date', sa.Date(), nullable=False),
        sa.Column('bill_amount', sa.Numeric(precision=10, scale=2), nullable=False),
    )
    op.create_index(op.f('ix_patient_bill_bill_id'), 'patient_bill', ['bill_id'], unique=False)
    op.create_index(op.f('ix_patient_bill_patient_id'), 'patient_bill', ['patient_id'], unique=False)

    # Seed reference patients
    patient_table = sa.Table('patient', sa.MetaData(),
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=100)),
        sa.Column('age', sa.Integer()),
        sa.Column('insurance_plan_type', sa.String()),
    )
    op.bulk_insert(patient_table, [
        {'name': 'Ahmed Al-Rashid', 'age': 45, 'insurance_plan_type': 'Premium'},
        {'name': 'Fatima Al-Balushi', 'age': 32, 'insurance_plan_type': 'Standard'},
        {'name': 'Mohammed Al-Habsi', 'age': 28, 'insurance_plan_type': 'Basic'},
        {'name': 'Aisha Al-Lawati', 'age': 55, 'insurance_plan_type': 'Premium'},
        {'name': 'Khalid Al-Siyabi', 'age': 40, 'insurance_plan_type': 'Standard'},
    ])


def downgrade():
    op.drop_index(op.f('ix_patient_bill_patient_id'), table_name='patient_bill')
    op.drop_index(op.f('ix_patient_bill_bill_id'), table_name='patient_bill')
    op.drop_table('patient_bill')
    op.drop_index(op.f('ix_patient_id'), table_name='patient')
    op.drop_table('patient')
    insurance_plan_type.drop(op.get_bind(), checkfirst=True)
