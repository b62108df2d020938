"""Add habit checklist and weekly goals

Revision ID: 003_add_habits_and_goals
Revises: 002_add_processed_events
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = '003_add_habits_and_goals'
down_revision = '002_add_processed_events'
branch_labels = None
depends_on = None

HABIT_COLUMNS = ('water', 'workout', 'steps', 'protein', 'sleep', 'all_done')

def upgrade() -> None:
    op.create_table(
        'habit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(128), sa.ForeignKey('user_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        *[sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false()) for name in HABIT_COLUMNS],
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'day', name='uq_habit_logs_user_day'),
    )
    op.create_index('ix_habit_logs_user_all_done', 'habit_logs', ['user_id', 'all_done'])

    op.create_table(
        'weekly_goals',
        sa.Column('user_id', sa.String(128), sa.ForeignKey('user_accounts.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('week_start', sa.Date(), nullable=False),
        sa.Column('goal_days', sa.Integer(), nullable=False),
        sa.Column('goal_water_liters', sa.Float(), nullable=False),
        sa.Column('goal_workouts', sa.Integer(), nullable=False),
        sa.Column('done_days', sa.JSON(), nullable=False),
        sa.Column('done_workouts', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

def downgrade() -> None:
    op.drop_table('weekly_goals')
    op.drop_index('ix_habit_logs_user_all_done', 'habit_logs')
    op.drop_table('habit_logs')
