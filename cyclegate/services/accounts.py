from datetime import datetime, timezone
from typing import Optional, Tuple
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import commit
from ..models import UserAccount
from .entitlement import EXPIRY_KEYS, LEGACY_FLAGS

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not isinstance(email, str):
        return None
    email = email.strip().lower()
    return email or None


def find_by_customer_id(db: Session, customer_id: str) -> Optional[UserAccount]:
    return db.query(UserAccount).filter(UserAccount.payment_customer_id == customer_id).first()


def find_by_email(db: Session, email: str) -> Optional[UserAccount]:
    return db.query(UserAccount).filter(UserAccount.email == normalize_email(email)).first()


def get_or_create_account(db: Session, user_id: str, email: Optional[str] = None) -> Tuple[UserAccount, bool]:
    """Return ``(account, created)``. ``created_at`` is only set on creation."""
    account = db.get(UserAccount, user_id)
    if account is not None:
        return account, False

    now = utcnow()
    account = UserAccount(
        id=user_id,
        email=normalize_email(email),
        unlocked_cycles=0,
        subscription_active=False,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(account)
    except IntegrityError:
        # Another writer created it first
        account = db.get(UserAccount, user_id)
        return account, False

    logger.info(f"Created account {user_id}")
    return account, True


def provision_profile(db: Session, user_id: str, email: Optional[str]) -> UserAccount:
    """Merge-style write of the identity fields this service does not own.

    Entitlement fields are never touched here.
    """
    account, created = get_or_create_account(db, user_id, email)
    if not created:
        normalized = normalize_email(email)
        if normalized:
            account.email = normalized
        account.updated_at = utcnow()
    commit(db, "provision_profile")
    db.refresh(account)
    return account


def link_payment_ids(
    account: UserAccount,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    email: Optional[str] = None,
    overwrite_subscription: bool = False,
) -> None:
    if customer_id and not account.payment_customer_id:
        account.payment_customer_id = customer_id
    if subscription_id and (overwrite_subscription or not account.payment_subscription_id):
        account.payment_subscription_id = subscription_id
    normalized = normalize_email(email)
    if normalized and not account.email:
        account.email = normalized
    account.updated_at = utcnow()


def grant_cycle(db: Session, user_id: str) -> None:
    """Add one unlocked cycle with an SQL-side increment."""
    db.flush()
    db.execute(
        update(UserAccount)
        .where(UserAccount.id == user_id)
        .values(
            unlocked_cycles=UserAccount.unlocked_cycles + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session="fetch")
    )


def clear_active(account: UserAccount) -> None:
    """Drop the billing-active signals. Unlocked cycles are kept."""
    account.subscription_active = False

    if account.legacy_profile:
        legacy = dict(account.legacy_profile)
        for flag in LEGACY_FLAGS:
            if flag in legacy:
                legacy[flag] = False
        if "subscriptionStatus" in legacy:
            legacy["subscriptionStatus"] = "canceled"
        for key in EXPIRY_KEYS:
            legacy.pop(key, None)
        account.legacy_profile = legacy

    account.updated_at = utcnow()
