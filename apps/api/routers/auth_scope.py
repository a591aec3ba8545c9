"""Authentication dependencies: bearer sessions for users, a shared key for admin calls."""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.errors import UnauthenticatedError
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    uid: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the calling identity from its Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise UnauthenticatedError("You must be logged in.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise UnauthenticatedError(str(exc)) from exc

    return AuthContext(
        uid=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Gate admin, identity-hook and backfill endpoints."""
    expected = (settings.ADMIN_API_KEY or "").strip()
    supplied = (x_admin_key or "").strip()
    if not expected or not supplied or not hmac.compare_digest(supplied, expected):
        raise UnauthenticatedError("Admin key required.")
