"""
Billing session tokens.

The web app exchanges its sign-in for one of these via ``POST /auth/session``.
The token names the billing account (``sub``) and carries the email the
payment processor needs at checkout, scoped to this API by ``aud``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "typix_session"
SESSION_AUDIENCE = "typix-billing"


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: int


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str]
    issued_at: datetime
    expires_at: datetime


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> IssuedSession:
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((now + timedelta(hours=ttl_hours)).timestamp())

    claims: Dict[str, Any] = {
        "sub": user_id,
        "aud": SESSION_AUDIENCE,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    email = (email or "").strip()
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return IssuedSession(token=token, expires_at=expires_at)


def decode_session_token(token: str) -> SessionClaims:
    """Validate signature, expiry, audience and type; raises ValueError otherwise."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_AUDIENCE,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    user_id = str(payload.get("sub", "")).strip()
    if not user_id:
        raise ValueError("Session token missing subject.")

    email = str(payload.get("email") or "").strip()
    return SessionClaims(
        user_id=user_id,
        email=email or None,
        issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
