from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Any, Dict, List, Optional

class CheckoutRequest(BaseModel):
    email: Optional[EmailStr] = None

class CheckoutResponse(BaseModel):
    url: str
    session_id: Optional[str] = None

class ProfileIn(BaseModel):
    email: Optional[EmailStr] = None

class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    unlocked_cycles: int
    subscription_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class EntitlementOut(BaseModel):
    user_id: str
    unlocked_cycles: int
    is_active: bool
    subscription_active: bool = False
    program_day: Optional[int] = None

class EventStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    processed_at: Optional[datetime] = None

class CycleDayOut(BaseModel):
    cycle: int
    day: int
    title: str
    locked: bool
    workout: Optional[List[str]] = None
    meals: Optional[Dict[str, Any]] = None
    tips: Optional[List[str]] = None

class HabitUpdate(BaseModel):
    water: Optional[bool] = None
    workout: Optional[bool] = None
    steps: Optional[bool] = None
    protein: Optional[bool] = None
    sleep: Optional[bool] = None

class HabitDayOut(BaseModel):
    date: date
    items: Dict[str, bool]
    done: int
    total: int
    pct: int
    all_done: bool

class StreaksOut(BaseModel):
    current_streak: int
    best_streak: int

class GoalsIn(BaseModel):
    # Out-of-range numbers are clamped, not rejected
    week_start: Optional[date] = None
    goal_days: Optional[int] = None
    goal_water_liters: Optional[float] = Field(default=None, allow_inf_nan=False)
    goal_workouts: Optional[int] = None
    done_days: Optional[List[str]] = None
    done_workouts: Optional[int] = None

class GoalsOut(BaseModel):
    week_start: date
    goal_days: int
    goal_water_liters: float
    goal_workouts: int
    done_days: List[str]
    done_workouts: int

class WeekSummaryOut(BaseModel):
    week_start: date
    goal_days: int
    goal_workouts: int
    goal_water_liters: float
    done_in_week: int
    done_workouts: int
    pct_days: int
    pct_workouts: int
    pct_avg: int

class ProgressOut(BaseModel):
    current_streak: int
    best_streak: int
    done_7: int
    pct_7: int
    done_30: int
    pct_30: int
    today_done: bool
    week: WeekSummaryOut
