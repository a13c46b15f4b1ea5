"""Credit ledger: balance row plus append-only history."""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_history import CreditHistory
from models.credits import UserCredits
from services.errors import ErrorKind, ServiceError


logger = logging.getLogger(__name__)

_user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

_LAST_STAMP_KEY = "credit_history_last_stamp"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _next_history_stamp(db: AsyncSession) -> datetime:
    """Strictly increasing per session, so rows written together keep their order."""
    stamp = _utcnow()
    last = db.info.get(_LAST_STAMP_KEY)
    if last is not None and stamp <= last:
        stamp = last + timedelta(microseconds=1)
    db.info[_LAST_STAMP_KEY] = stamp
    return stamp


@asynccontextmanager
async def user_ledger_lock(user_id: str) -> AsyncIterator[None]:
    """Serialize balance read-modify-write sequences for one user in this process."""
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    async with lock:
        yield


async def get_or_init_user_credits(
    user_id: str,
    db: AsyncSession,
    *,
    for_update: bool = False,
) -> UserCredits:
    query = select(UserCredits).where(UserCredits.user_id == user_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    credits = result.scalar_one_or_none()
    if credits is not None:
        return credits

    credits = UserCredits(
        id=str(uuid.uuid4()),
        user_id=user_id,
        total_credits=0,
        used_credits=0,
        remaining_credits=0,
    )
    db.add(credits)
    await db.flush()
    return credits


def _append_history(
    db: AsyncSession,
    *,
    user_id: str,
    source: str,
    before: int,
    after: int,
    order_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    generation_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> CreditHistory:
    entry = CreditHistory(
        id=str(uuid.uuid4()),
        user_id=user_id,
        source=source,
        change_amount=after - before,
        before_credits=before,
        after_credits=after,
        order_id=order_id,
        subscription_id=subscription_id,
        generation_id=generation_id,
        reason=reason,
        created_at=_next_history_stamp(db),
    )
    db.add(entry)
    return entry


async def increment_credits(
    user_id: str,
    amount: int,
    source: str,
    db: AsyncSession,
    *,
    order_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> CreditHistory:
    """Add ``amount`` (any sign) to the total and remaining balance."""
    credits = await get_or_init_user_credits(user_id, db, for_update=True)
    before = int(credits.remaining_credits or 0)
    after = before + int(amount)
    credits.total_credits = int(credits.total_credits or 0) + int(amount)
    credits.remaining_credits = after
    entry = _append_history(
        db,
        user_id=user_id,
        source=source,
        before=before,
        after=after,
        order_id=order_id,
        subscription_id=subscription_id,
        reason=reason,
    )
    await db.flush()
    return entry


async def add_period_credits(
    user_id: str,
    amount: int,
    db: AsyncSession,
    *,
    subscription_id: Optional[str] = None,
) -> CreditHistory:
    """Grant one sub-period of a non-renewing plan on top of the current balance."""
    return await increment_credits(
        user_id,
        amount,
        "order",
        db,
        subscription_id=subscription_id,
        reason="Period credits grant",
    )


async def consume_credits(
    user_id: str,
    amount: int,
    db: AsyncSession,
    *,
    generation_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> CreditHistory:
    debit = int(amount)
    if debit <= 0:
        raise ServiceError(ErrorKind.INVALID_PARAMETER, "amount must be greater than 0")

    credits = await get_or_init_user_credits(user_id, db, for_update=True)
    before = int(credits.remaining_credits or 0)
    if before < debit:
        raise ServiceError(
            ErrorKind.INSUFFICIENT_CREDITS,
            f"Insufficient credits. Required: {debit}, available: {before}.",
        )

    after = before - debit
    credits.used_credits = int(credits.used_credits or 0) + debit
    credits.remaining_credits = after
    entry = _append_history(
        db,
        user_id=user_id,
        source="generation",
        before=before,
        after=after,
        generation_id=generation_id,
        reason=reason or "Generation",
    )
    await db.flush()
    return entry


async def expire_credits(
    user_id: str,
    db: AsyncSession,
    *,
    subscription_id: Optional[str] = None,
) -> Optional[CreditHistory]:
    """Zero the balance; history is only written when something was left."""
    credits = await get_or_init_user_credits(user_id, db, for_update=True)
    before = int(credits.remaining_credits or 0)
    credits.total_credits = 0
    credits.used_credits = 0
    credits.remaining_credits = 0

    entry = None
    if before > 0:
        entry = _append_history(
            db,
            user_id=user_id,
            source="order",
            before=before,
            after=0,
            subscription_id=subscription_id,
            reason="Credits expired",
        )
    await db.flush()
    return entry


async def expire_and_add_credits(
    user_id: str,
    amount: int,
    db: AsyncSession,
    *,
    order_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
) -> List[CreditHistory]:
    """Discard the unused balance and start the new period at exactly ``amount``."""
    credits = await get_or_init_user_credits(user_id, db, for_update=True)
    before = int(credits.remaining_credits or 0)
    grant = int(amount)

    entries: List[CreditHistory] = []
    if before > 0:
        entries.append(
            _append_history(
                db,
                user_id=user_id,
                source="order",
                before=before,
                after=0,
                order_id=order_id,
                subscription_id=subscription_id,
                reason="Credits expired at renewal",
            )
        )

    credits.total_credits = grant
    credits.used_credits = 0
    credits.remaining_credits = grant
    entries.append(
        _append_history(
            db,
            user_id=user_id,
            source="order",
            before=0,
            after=grant,
            order_id=order_id,
            subscription_id=subscription_id,
            reason="Subscription period credits",
        )
    )
    await db.flush()
    return entries


async def list_credit_history(user_id: str, db: AsyncSession, limit: Optional[int] = None) -> List[CreditHistory]:
    query = (
        select(CreditHistory)
        .where(CreditHistory.user_id == user_id)
        .order_by(CreditHistory.created_at.desc())
    )
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
