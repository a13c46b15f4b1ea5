"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import ErrorKind, ServiceError
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the caller from the Bearer session token; the email claim may be absent."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email)


async def get_checkout_auth_context(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Checkout is created against the customer email, so the token must carry one."""
    if not auth.email:
        raise ServiceError(ErrorKind.UNAUTHORIZED, "Session token has no email claim; sign in again to check out")
    return auth
