"""Daily habit checklist and the streaks derived from it."""
from datetime import date, timedelta
from typing import Any, Dict, Iterable, Mapping, Optional, Set
import logging

from sqlalchemy.orm import Session

from ..db import commit
from ..exceptions import InputValidationError
from ..models import HabitLog
from .accounts import get_or_create_account, utcnow

logger = logging.getLogger(__name__)

HABIT_KEYS = ("water", "workout", "steps", "protein", "sleep")

CURRENT_STREAK_WINDOW = 60
BEST_STREAK_WINDOW = 180


def default_items() -> Dict[str, bool]:
    return {key: False for key in HABIT_KEYS}


def habit_progress(items: Mapping[str, Any]) -> Dict[str, Any]:
    total = len(HABIT_KEYS)
    done = sum(1 for key in HABIT_KEYS if items.get(key) is True)
    return {"done": done, "total": total, "pct": round(done / total * 100), "all_done": done == total}


def items_of(log: Optional[HabitLog]) -> Dict[str, bool]:
    if log is None:
        return default_items()
    return {key: bool(getattr(log, key)) for key in HABIT_KEYS}


def serialize_habit_day(day: date, log: Optional[HabitLog]) -> Dict[str, Any]:
    items = items_of(log)
    return {"date": day, "items": items, **habit_progress(items)}


def get_habit_log(db: Session, user_id: str, day: date) -> Optional[HabitLog]:
    return db.query(HabitLog).filter(HabitLog.user_id == user_id, HabitLog.day == day).first()


def record_habits(db: Session, user_id: str, day: date, updates: Mapping[str, Optional[bool]], today: date) -> HabitLog:
    """Merge ``updates`` into the day's checklist. Keys left out or ``None`` keep their value."""
    if day > today:
        raise InputValidationError("date", "cannot check habits for a future day")

    get_or_create_account(db, user_id)
    log = get_habit_log(db, user_id, day)
    if log is None:
        now = utcnow()
        log = HabitLog(user_id=user_id, day=day, created_at=now, **default_items())
        db.add(log)

    for key in HABIT_KEYS:
        value = updates.get(key)
        if value is not None:
            setattr(log, key, bool(value))
    log.all_done = habit_progress(items_of(log))["all_done"]
    log.updated_at = utcnow()

    commit(db, "record_habits")
    db.refresh(log)
    logger.info(f"Recorded habits for {user_id} on {day.isoformat()} (all done: {log.all_done})")
    return log


def completed_days(db: Session, user_id: str, since: date) -> Set[date]:
    rows = (
        db.query(HabitLog.day)
        .filter(HabitLog.user_id == user_id, HabitLog.all_done.is_(True), HabitLog.day >= since)
        .all()
    )
    return {row.day for row in rows}


def current_streak(done: Iterable[date], today: date, window: int = CURRENT_STREAK_WINDOW) -> int:
    """Consecutive completed days ending today. An unfinished today means 0."""
    done = set(done)
    streak = 0
    cursor = today
    while streak < window and cursor in done:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def best_streak(done: Iterable[date], today: date, window: int = BEST_STREAK_WINDOW) -> int:
    """Longest run of completed days within the last ``window`` days, today included."""
    done = set(done)
    best = run = 0
    for offset in range(window):
        if today - timedelta(days=offset) in done:
            run += 1
            best = max(best, run)
        else:
            run = 0
    return best


def count_completed(done: Iterable[date], today: date, days: int) -> int:
    start = today - timedelta(days=days - 1)
    return sum(1 for day in set(done) if start <= day <= today)


def streaks(db: Session, user_id: str, today: date) -> Dict[str, int]:
    done = completed_days(db, user_id, today - timedelta(days=BEST_STREAK_WINDOW - 1))
    return {"current_streak": current_streak(done, today), "best_streak": best_streak(done, today)}
