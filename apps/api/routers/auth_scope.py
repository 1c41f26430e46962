"""Authentication dependencies for API user scoping."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.identity import AuthenticatedCaller
from services.session_token import SessionTokenError, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None

    def as_caller(self) -> AuthenticatedCaller:
        return AuthenticatedCaller(user_id=self.user_id, email=self.email)


def _context_from_credentials(credentials: Optional[HTTPAuthorizationCredentials]) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise SessionTokenError("Missing Bearer session token.")
    claims = decode_session_token(credentials.credentials)
    return AuthContext(user_id=claims.user_id, email=claims.email)


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    try:
        auth = _context_from_credentials(credentials)
    except SessionTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    request.state.user_id = auth.user_id
    return auth


async def get_optional_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Resolve the session if one is usable; anonymous callers get None."""
    if credentials is None:
        return None
    try:
        auth = _context_from_credentials(credentials)
    except SessionTokenError as exc:
        logger.info("Treating request as anonymous: %s", exc)
        return None
    request.state.user_id = auth.user_id
    return auth
