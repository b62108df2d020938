from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Identity, get_current_identity
from ..db import get_db
from ..exceptions import EntitlementRequiredError
from ..models import WeeklyGoal
from ..schemas import GoalsIn, GoalsOut, HabitDayOut, HabitUpdate, ProgressOut, StreaksOut
from ..services.accounts import utcnow
from ..services.entitlement import load_entitlement
from ..services.goals import goals_view, progress_summary, save_goals
from ..services.habits import get_habit_log, record_habits, serialize_habit_day, streaks

router = APIRouter()


def require_member(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Identity:
    """Members-only routes: same resolver as content gating, any active entitlement passes."""
    if not load_entitlement(db, identity.user_id).is_active:
        raise EntitlementRequiredError("habit tracking")
    return identity


def _today() -> date:
    return utcnow().date()


@router.get('/habits/streaks', response_model=StreaksOut)
def habit_streaks(identity: Identity = Depends(require_member), db: Session = Depends(get_db)):
    return streaks(db, identity.user_id, _today())


@router.get('/habits/{day}', response_model=HabitDayOut)
def habit_day(day: date, identity: Identity = Depends(require_member), db: Session = Depends(get_db)):
    return serialize_habit_day(day, get_habit_log(db, identity.user_id, day))


@router.put('/habits/{day}', response_model=HabitDayOut)
def update_habit_day(
    day: date,
    payload: HabitUpdate,
    identity: Identity = Depends(require_member),
    db: Session = Depends(get_db),
):
    log = record_habits(db, identity.user_id, day, payload.model_dump(exclude_none=True), _today())
    return serialize_habit_day(day, log)


@router.get('/goals', response_model=GoalsOut)
def current_goals(identity: Identity = Depends(require_member), db: Session = Depends(get_db)):
    return goals_view(db.get(WeeklyGoal, identity.user_id), _today())


@router.put('/goals', response_model=GoalsOut)
def update_goals(payload: GoalsIn, identity: Identity = Depends(require_member), db: Session = Depends(get_db)):
    today = _today()
    goal = save_goals(db, identity.user_id, payload.model_dump(exclude_none=True), today)
    return goals_view(goal, today)


@router.get('/progress', response_model=ProgressOut)
def progress(identity: Identity = Depends(require_member), db: Session = Depends(get_db)):
    return progress_summary(db, identity.user_id, _today())
