"""Weekly goals and the progress summary built from goals and habits."""
from datetime import date, timedelta
from numbers import Real
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging
import math

from sqlalchemy.orm import Session

from ..db import commit
from ..models import WeeklyGoal
from .accounts import get_or_create_account, utcnow
from .habits import BEST_STREAK_WINDOW, completed_days, count_completed, current_streak, best_streak

logger = logging.getLogger(__name__)

GOAL_DAYS_RANGE = (1, 7)
WATER_LITERS_RANGE = (0.5, 10.0)
GOAL_WORKOUTS_RANGE = (0, 14)
DONE_WORKOUTS_RANGE = (0, 50)
PERCENT_CAP = 999

DEFAULT_GOALS = {"goal_days": 5, "goal_water_liters": 2.0, "goal_workouts": 4}


def clamp(value, low, high):
    return max(low, min(high, value))


def _number(value: Any, default):
    if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
        return default
    return value


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


def parse_done_days(values: Optional[Iterable[Any]]) -> List[str]:
    """Keep valid ``YYYY-MM-DD`` strings, deduplicated and sorted."""
    days = set()
    for value in values or []:
        if not isinstance(value, str):
            continue
        try:
            days.add(date.fromisoformat(value.strip()).isoformat())
        except ValueError:
            continue
    return sorted(days)


def goals_view(goal: Optional[WeeklyGoal], today: date) -> Dict[str, Any]:
    """Current targets with every number clamped; defaults when nothing was saved."""
    if goal is None:
        return {
            "week_start": week_start(today),
            **DEFAULT_GOALS,
            "done_days": [],
            "done_workouts": 0,
        }
    return {
        "week_start": week_start(goal.week_start),
        "goal_days": int(clamp(_number(goal.goal_days, DEFAULT_GOALS["goal_days"]), *GOAL_DAYS_RANGE)),
        "goal_water_liters": float(clamp(_number(goal.goal_water_liters, DEFAULT_GOALS["goal_water_liters"]), *WATER_LITERS_RANGE)),
        "goal_workouts": int(clamp(_number(goal.goal_workouts, DEFAULT_GOALS["goal_workouts"]), *GOAL_WORKOUTS_RANGE)),
        "done_days": parse_done_days(goal.done_days),
        "done_workouts": int(clamp(_number(goal.done_workouts, 0), *DONE_WORKOUTS_RANGE)),
    }


def save_goals(db: Session, user_id: str, changes: Mapping[str, Any], today: date) -> WeeklyGoal:
    """Merge-style write: only the fields present in ``changes`` are replaced, each clamped to its range."""
    get_or_create_account(db, user_id)
    goal = db.get(WeeklyGoal, user_id)
    if goal is None:
        goal = WeeklyGoal(user_id=user_id, week_start=week_start(today), done_days=[], done_workouts=0,
                          created_at=utcnow(), **DEFAULT_GOALS)
        db.add(goal)

    if changes.get("week_start") is not None:
        goal.week_start = week_start(changes["week_start"])
    if changes.get("goal_days") is not None:
        goal.goal_days = int(clamp(changes["goal_days"], *GOAL_DAYS_RANGE))
    if changes.get("goal_water_liters") is not None:
        goal.goal_water_liters = float(clamp(changes["goal_water_liters"], *WATER_LITERS_RANGE))
    if changes.get("goal_workouts") is not None:
        goal.goal_workouts = int(clamp(changes["goal_workouts"], *GOAL_WORKOUTS_RANGE))
    if changes.get("done_days") is not None:
        goal.done_days = parse_done_days(changes["done_days"])
    if changes.get("done_workouts") is not None:
        goal.done_workouts = int(clamp(changes["done_workouts"], *DONE_WORKOUTS_RANGE))
    goal.updated_at = utcnow()

    commit(db, "save_goals")
    db.refresh(goal)
    logger.info(f"Saved weekly goals for {user_id} (week of {goal.week_start.isoformat()})")
    return goal


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _percent(done: int, target: int) -> int:
    return clamp(round_half_up(done / target * 100), 0, PERCENT_CAP) if target > 0 else 0


def weekly_summary(view: Mapping[str, Any]) -> Dict[str, Any]:
    """Check-ins against the targets of the goal week. Day check-ins outside that week are ignored."""
    start = view["week_start"]
    end = start + timedelta(days=6)
    done_in_week = sum(1 for day in view["done_days"] if start.isoformat() <= day <= end.isoformat())

    pct_days = _percent(done_in_week, view["goal_days"])
    pct_workouts = _percent(view["done_workouts"], view["goal_workouts"])
    return {
        "week_start": start,
        "goal_days": view["goal_days"],
        "goal_workouts": view["goal_workouts"],
        "goal_water_liters": view["goal_water_liters"],
        "done_in_week": done_in_week,
        "done_workouts": view["done_workouts"],
        "pct_days": pct_days,
        "pct_workouts": pct_workouts,
        "pct_avg": round_half_up((min(pct_days, 100) + min(pct_workouts, 100)) / 2),
    }


def progress_summary(db: Session, user_id: str, today: date) -> Dict[str, Any]:
    done = completed_days(db, user_id, today - timedelta(days=BEST_STREAK_WINDOW - 1))
    done_7 = count_completed(done, today, 7)
    done_30 = count_completed(done, today, 30)
    return {
        "current_streak": current_streak(done, today),
        "best_streak": best_streak(done, today),
        "done_7": done_7,
        "pct_7": round_half_up(done_7 / 7 * 100),
        "done_30": done_30,
        "pct_30": round_half_up(done_30 / 30 * 100),
        "today_done": today in done,
        "week": weekly_summary(goals_view(db.get(WeeklyGoal, user_id), today)),
    }
