"""initial schema
Revision ID: 001_initial_schema
Revises: 
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('user_accounts',
        sa.Column('id', sa.String(length=128), primary_key=True),
        sa.Column('email', sa.String(length=255)),
        sa.Column('payment_customer_id', sa.String(length=255)),
        sa.Column('payment_subscription_id', sa.String(length=255)),
        sa.Column('unlocked_cycles', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscription_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('legacy_profile', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('unlocked_cycles >= 0', name='ck_unlocked_cycles_non_negative')
    )
    op.create_index('ix_user_accounts_email', 'user_accounts', ['email'])
    op.create_index('ix_user_accounts_payment_customer_id', 'user_accounts', ['payment_customer_id'])

    op.create_table('cycle_days',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cycle', sa.Integer(), nullable=False),
        sa.Column('day', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('workout', sa.JSON()),
        sa.Column('meals', sa.JSON()),
        sa.Column('tips', sa.JSON()),
        sa.UniqueConstraint('cycle', 'day', name='uq_cycle_days_cycle_day')
    )

def downgrade():
    op.drop_table('cycle_days')
    op.drop_index('ix_user_accounts_payment_customer_id', table_name='user_accounts')
    op.drop_index('ix_user_accounts_email', table_name='user_accounts')
    op.drop_table('user_accounts')
