"""Bearer session tokens for WishTune accounts.

Anonymous visitors never hold a token: their songs are scoped by the
``visitor_id`` they send, so a token whose subject uses the anonymous owner
prefix is refused outright.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from services.identity import is_anonymous_owner


SESSION_TOKEN_TYPE = "wishtune_session"


class SessionTokenError(ValueError):
    """Raised when a bearer token cannot identify an account."""


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str]
    expires_at: int


def _expiry(issued_at: datetime, expires_hours: Optional[int]) -> datetime:
    hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    return issued_at + timedelta(hours=max(hours, 1))


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session for ``user_id``; returns the token and its expiry epoch."""
    if not user_id or is_anonymous_owner(user_id):
        raise SessionTokenError("Sessions are only issued to account holders.")

    issued_at = datetime.now(timezone.utc)
    expires_at = int(_expiry(issued_at, expires_hours).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> SessionClaims:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise SessionTokenError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise SessionTokenError("Invalid session token type.")

    user_id = str(payload.get("sub", "")).strip()
    if not user_id:
        raise SessionTokenError("Session token missing subject.")
    if is_anonymous_owner(user_id):
        raise SessionTokenError("Session token subject is reserved.")

    return SessionClaims(
        user_id=user_id,
        email=str(payload.get("email") or "").strip() or None,
        expires_at=int(payload.get("exp") or 0),
    )
