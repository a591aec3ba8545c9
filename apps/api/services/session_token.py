"""Session token helpers: signed bearer tokens carrying the ledger uid."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"


def create_session_token(
    uid: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token whose subject is the identity's opaque uid.

    Sign-in lives in the external identity service, which issues these tokens
    with the shared ``JWT_SECRET``. This helper mints the same claims for
    trusted internal callers and test clients.
    """
    issued_at = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = issued_at + timedelta(hours=ttl_hours)
    claims: Dict[str, Any] = {
        "sub": uid,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Validate signature, expiry and token type. Raises ValueError on any failure."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(claims.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(claims.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    return claims
