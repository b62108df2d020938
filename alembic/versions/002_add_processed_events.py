"""Add processed events table for webhook idempotency

Revision ID: 002_add_processed_events
Revises: 001_initial_schema
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '002_add_processed_events'
down_revision = '001_initial_schema'
branch_labels = None
depends_on = None

def upgrade() -> None:
    # One row per Stripe event id; its existence is the dedup marker
    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )

    op.create_index('ix_processed_events_type', 'processed_events', ['event_type'])

def downgrade() -> None:
    op.drop_index('ix_processed_events_type', 'processed_events')
    op.drop_table('processed_events')
