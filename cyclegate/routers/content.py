from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional

from ..auth import Identity, get_optional_identity
from ..config import Settings, get_app_settings
from ..db import get_db
from ..schemas import CycleDayOut
from ..services.content import ContentPolicy, get_day, list_days, serialize_day
from ..services.entitlement import load_entitlement

router = APIRouter()

@router.get('/cycles/{cycle}/days', response_model=List[CycleDayOut])
def cycle_days(
    cycle: int,
    identity: Optional[Identity] = Depends(get_optional_identity),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    entitlement = load_entitlement(db, identity.user_id if identity else None)
    return list_days(db, ContentPolicy.from_settings(settings), entitlement, cycle)

@router.get('/cycles/{cycle}/days/{day}', response_model=CycleDayOut)
def cycle_day(
    cycle: int,
    day: int,
    identity: Optional[Identity] = Depends(get_optional_identity),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    entitlement = load_entitlement(db, identity.user_id if identity else None)
    row = get_day(db, ContentPolicy.from_settings(settings), entitlement, cycle, day)
    return serialize_day(row, locked=False)
