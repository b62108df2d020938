from typing import Any, Dict

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint,
)
from sqlalchemy.sql import false, func

from .db import Base


class UserAccount(Base):
    __tablename__ = "user_accounts"

    id = Column(String(128), primary_key=True)
    email = Column(String(255), index=True)
    payment_customer_id = Column(String(255), index=True)
    payment_subscription_id = Column(String(255))

    unlocked_cycles = Column(Integer, nullable=False, default=0, server_default="0")
    subscription_active = Column(Boolean, nullable=False, default=False, server_default=false())

    # Entitlement fields written by earlier schema generations
    legacy_profile = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("unlocked_cycles >= 0", name="ck_unlocked_cycles_non_negative"),
    )

    def to_profile(self) -> Dict[str, Any]:
        """Flatten the row into the loosely typed shape the resolver reads."""
        profile: Dict[str, Any] = dict(self.legacy_profile or {})
        profile["unlockedCycles"] = self.unlocked_cycles
        profile["createdAt"] = self.created_at
        return profile


class ProcessedEvent(Base):
    """Stripe webhook events that passed the idempotency gate."""
    __tablename__ = "processed_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_processed_events_type", "event_type"),
    )


class CycleDay(Base):
    __tablename__ = "cycle_days"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle = Column(Integer, nullable=False)
    day = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False)
    workout = Column(JSON)
    meals = Column(JSON)
    tips = Column(JSON)

    __table_args__ = (
        UniqueConstraint("cycle", "day", name="uq_cycle_days_cycle_day"),
    )


class HabitLog(Base):
    """One day of the habit checklist."""
    __tablename__ = "habit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), ForeignKey("user_accounts.id", ondelete="CASCADE"), nullable=False)
    day = Column(Date, nullable=False)

    water = Column(Boolean, nullable=False, default=False, server_default=false())
    workout = Column(Boolean, nullable=False, default=False, server_default=false())
    steps = Column(Boolean, nullable=False, default=False, server_default=false())
    protein = Column(Boolean, nullable=False, default=False, server_default=false())
    sleep = Column(Boolean, nullable=False, default=False, server_default=false())
    all_done = Column(Boolean, nullable=False, default=False, server_default=false())

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "day", name="uq_habit_logs_user_day"),
        Index("ix_habit_logs_user_all_done", "user_id", "all_done"),
    )


class WeeklyGoal(Base):
    """The user's current weekly targets and check-ins; one row per user."""
    __tablename__ = "weekly_goals"

    user_id = Column(String(128), ForeignKey("user_accounts.id", ondelete="CASCADE"), primary_key=True)
    week_start = Column(Date, nullable=False)

    goal_days = Column(Integer, nullable=False, default=5)
    goal_water_liters = Column(Float, nullable=False, default=2.0)
    goal_workouts = Column(Integer, nullable=False, default=4)

    done_days = Column(JSON, nullable=False, default=list)
    done_workouts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
