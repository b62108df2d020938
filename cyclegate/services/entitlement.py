"""Entitlement resolution for user profiles.

Profiles accumulated fields from several schema generations. The current one
stores ``unlockedCycles``; earlier ones stored boolean VIP flags, a
subscription status string or an expiry value. Everything that gates content
goes through :func:`resolve_entitlement` so the fallbacks live in one place.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Mapping, Optional
import logging
import math

from sqlalchemy.orm import Session

from ..models import UserAccount

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing", "paid"})
LEGACY_FLAGS = ("vipActive", "isVip", "vip", "vip_enabled")
EXPIRY_KEYS = ("vipUntil", "vip_until", "vipExpiresAt", "vip_expires_at")


@dataclass(frozen=True)
class Entitlement:
    unlocked_cycles: int
    is_active: bool


NOT_ENTITLED = Entitlement(unlocked_cycles=0, is_active=False)
LEGACY_ENTITLEMENT = Entitlement(unlocked_cycles=1, is_active=True)


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def _datetime_millis(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp() * 1000


def expiry_millis(value: Any) -> Optional[float]:
    """Normalize an expiry value to milliseconds since the epoch.

    Accepts ``{"seconds": n}`` timestamp objects, epoch milliseconds,
    ``datetime`` instances and ISO date strings. Anything else is ``None``.
    """
    try:
        if value is None:
            return None
        if isinstance(value, Mapping):
            seconds = _finite_number(value.get("seconds"))
            return seconds * 1000 if seconds is not None else None
        if isinstance(value, datetime):
            return _datetime_millis(value)
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            return _datetime_millis(datetime.fromisoformat(text))
        return _finite_number(value)
    except (ValueError, TypeError, OverflowError, OSError):
        return None


def _legacy_active(profile: Mapping[str, Any], now_ms: float) -> bool:
    if any(profile.get(flag) is True for flag in LEGACY_FLAGS):
        return True

    status = profile.get("subscriptionStatus")
    if isinstance(status, str) and status.strip().lower() in ACTIVE_STATUSES:
        return True

    until = None
    for key in EXPIRY_KEYS:
        if profile.get(key) is not None:
            until = profile.get(key)
            break
    until_ms = expiry_millis(until)
    return until_ms is not None and until_ms > now_ms


def resolve_entitlement(profile: Any, now: Optional[datetime] = None) -> Entitlement:
    """Compute unlocked cycles and whether the profile is currently entitled.

    A positive ``unlockedCycles`` wins outright. Otherwise any legacy signal
    (VIP flag, active status, future expiry) counts as exactly one cycle.
    Malformed fields never raise; they simply do not contribute.
    """
    if not isinstance(profile, Mapping):
        return NOT_ENTITLED

    direct = _finite_number(profile.get("unlockedCycles"))
    if direct is not None and direct > 0:
        return Entitlement(unlocked_cycles=max(int(direct), 1), is_active=True)

    now_ms = _datetime_millis(now) if now is not None else datetime.now(timezone.utc).timestamp() * 1000
    try:
        legacy = _legacy_active(profile, now_ms)
    except Exception:
        logger.warning("Unreadable legacy entitlement fields, treating as absent", exc_info=True)
        legacy = False

    return LEGACY_ENTITLEMENT if legacy else NOT_ENTITLED


def read_account(db: Session, user_id: Optional[str]) -> Optional[UserAccount]:
    """Fetch the account for gating. A failed read is logged and treated as no account."""
    if not user_id:
        return None
    try:
        return db.get(UserAccount, user_id)
    except Exception as e:
        logger.error(f"Failed to read profile {user_id}, denying access: {e}")
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.error(f"Rollback after failed profile read also failed: {rollback_error}")
        return None


def entitlement_for(account: Optional[UserAccount], now: Optional[datetime] = None) -> Entitlement:
    if account is None:
        return NOT_ENTITLED
    return resolve_entitlement(account.to_profile(), now=now)


def load_entitlement(db: Session, user_id: Optional[str], now: Optional[datetime] = None) -> Entitlement:
    """Read ``user_id``'s account and resolve it, failing closed."""
    return entitlement_for(read_account(db, user_id), now=now)
