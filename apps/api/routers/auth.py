"""
Authentication router: session sync from the web app and current user profile.
"""

import hmac
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import increment_credits, user_ledger_lock
from services.session_token import create_session_token

router = APIRouter()
logger = logging.getLogger(__name__)


class SyncSessionRequest(BaseModel):
    email: str = Field(min_length=3)
    name: Optional[str] = None
    user_id: Optional[str] = None


class SyncSessionResponse(BaseModel):
    user_id: str
    email: str
    created: bool
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None


def _check_sync_secret(supplied: Optional[str]) -> None:
    expected = settings.AUTH_SYNC_SECRET
    if not expected:
        return
    if not supplied or not hmac.compare_digest(expected, supplied):
        raise HTTPException(status_code=401, detail="Invalid session sync secret.")


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return CurrentUserResponse(user_id=user.id, email=user.email, name=user.name)


@router.post("/session", response_model=SyncSessionResponse)
async def sync_session(
    request: SyncSessionRequest,
    x_auth_sync_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """
    Upsert the signed-in web user and issue an API session token.

    New users receive the registration bonus when one is configured.
    """
    _check_sync_secret(x_auth_sync_secret)
    email = request.email.strip()

    user: Optional[User] = None
    if request.user_id:
        result = await db.execute(select(User).where(User.id == request.user_id))
        user = result.scalar_one_or_none()
    if not user:
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

    created = user is None
    if user is None:
        user = User(id=request.user_id or str(uuid.uuid4()), email=email, name=request.name)
        db.add(user)
        await db.flush()
    else:
        user.email = email
        if request.name:
            user.name = request.name

    bonus = max(int(settings.REGISTRATION_BONUS_CREDITS), 0)
    if created and bonus:
        async with user_ledger_lock(user.id):
            await increment_credits(user.id, bonus, "registration", db, reason="Registration bonus")
    await db.commit()

    if created:
        logger.info("user_registered user=%s bonus=%s", user.id, bonus)

    session = create_session_token(user.id, user.email)
    return SyncSessionResponse(
        user_id=user.id,
        email=user.email,
        created=created,
        session_token=session.token,
        session_expires_at=session.expires_at,
    )
