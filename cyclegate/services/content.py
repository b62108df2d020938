from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import ContentLockedError, NotFoundError
from ..models import CycleDay
from .entitlement import Entitlement

FREE_CYCLE = 1


@dataclass(frozen=True)
class ContentPolicy:
    free_days: int = 7
    days_per_cycle: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContentPolicy":
        return cls(free_days=settings.free_days, days_per_cycle=settings.days_per_cycle)

    def check_range(self, cycle: int, day: Optional[int] = None) -> None:
        if cycle < 1:
            raise NotFoundError("cycle", cycle)
        if day is not None and not 1 <= day <= self.days_per_cycle:
            raise NotFoundError("day", day)

    def is_unlocked(self, entitlement: Entitlement, cycle: int, day: int) -> bool:
        if entitlement.is_active and cycle <= entitlement.unlocked_cycles:
            return True
        return cycle == FREE_CYCLE and day <= self.free_days


def program_day(created_at: Optional[datetime], days_per_cycle: int = 30, now: Optional[datetime] = None) -> Optional[int]:
    """Day of the program the user is on; day 1 is the UTC calendar day of sign-up."""
    if created_at is None:
        return None
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    elapsed = (now.astimezone(timezone.utc).date() - created_at.astimezone(timezone.utc).date()).days + 1
    return min(days_per_cycle, max(1, elapsed))


def serialize_day(row: CycleDay, locked: bool) -> Dict[str, Any]:
    body: Dict[str, Any] = {"cycle": row.cycle, "day": row.day, "title": row.title, "locked": locked}
    if not locked:
        body.update(workout=row.workout or [], meals=row.meals or {}, tips=row.tips or [])
    return body


def list_days(db: Session, policy: ContentPolicy, entitlement: Entitlement, cycle: int) -> List[Dict[str, Any]]:
    policy.check_range(cycle)
    rows = (
        db.query(CycleDay)
        .filter(CycleDay.cycle == cycle, CycleDay.day <= policy.days_per_cycle)
        .order_by(CycleDay.day)
        .all()
    )
    return [serialize_day(row, not policy.is_unlocked(entitlement, cycle, row.day)) for row in rows]


def get_day(db: Session, policy: ContentPolicy, entitlement: Entitlement, cycle: int, day: int) -> CycleDay:
    policy.check_range(cycle, day)
    if not policy.is_unlocked(entitlement, cycle, day):
        raise ContentLockedError(cycle, day, entitlement.unlocked_cycles)

    row = db.query(CycleDay).filter(CycleDay.cycle == cycle, CycleDay.day == day).first()
    if row is None:
        raise NotFoundError("day", f"c{cycle:02d}_d{day:02d}")
    return row
