from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from ..auth import Identity, get_current_identity
from ..config import Settings, get_app_settings
from ..db import get_db
from ..schemas import AccountOut, EntitlementOut, ProfileIn
from ..services.accounts import provision_profile
from ..services.content import program_day
from ..services.entitlement import entitlement_for, read_account

router = APIRouter()

@router.post('/profile', response_model=AccountOut)
def upsert_profile(
    payload: Optional[ProfileIn] = None,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    email = (payload.email if payload and payload.email else None) or identity.email
    return provision_profile(db, identity.user_id, email)

@router.get('/entitlement', response_model=EntitlementOut)
def entitlement(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    account = read_account(db, identity.user_id)
    resolved = entitlement_for(account)
    return EntitlementOut(
        user_id=identity.user_id,
        unlocked_cycles=resolved.unlocked_cycles,
        is_active=resolved.is_active,
        subscription_active=bool(account.subscription_active) if account else False,
        program_day=program_day(account.created_at, settings.days_per_cycle) if account else None,
    )
