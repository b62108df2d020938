from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header, Request

from .config import Settings
from .exceptions import AuthenticationError, InvalidTokenError, TokenExpiredError


@dataclass(frozen=True)
class Identity:
    """The caller as asserted by the identity provider."""
    user_id: str
    email: Optional[str] = None


def create_access_token(sub: str, settings: Settings, email: Optional[str] = None, expires_minutes: int = 60) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Identity:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError()
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(str(e))

    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise InvalidTokenError("missing subject")
    email = payload.get("email")
    return Identity(user_id=sub.strip(), email=email if isinstance(email, str) else None)


def get_current_identity(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    return decode_access_token(authorization[7:].strip(), request.app.state.settings)


def get_optional_identity(request: Request, authorization: Optional[str] = Header(None)) -> Optional[Identity]:
    """Like :func:`get_current_identity` but anonymous callers get ``None``."""
    if not authorization:
        return None
    return get_current_identity(request, authorization)
