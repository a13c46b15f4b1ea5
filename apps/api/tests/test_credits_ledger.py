from datetime import datetime, timezone

import pytest
from sqlalchemy.future import select

from conftest import TEST_USER_ID
from models.credit_history import CreditHistory
from services import credits as credits_service
from services.credits import (
    consume_credits,
    expire_and_add_credits,
    expire_credits,
    get_or_init_user_credits,
    increment_credits,
    list_credit_history,
)
from services.errors import ErrorKind, ServiceError


async def _history(db):
    result = await db.execute(select(CreditHistory).where(CreditHistory.user_id == TEST_USER_ID))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_balance_row_is_created_on_first_access(db_session):
    credits = await get_or_init_user_credits(TEST_USER_ID, db_session)
    again = await get_or_init_user_credits(TEST_USER_ID, db_session)

    assert credits.id == again.id
    assert (credits.total_credits, credits.used_credits, credits.remaining_credits) == (0, 0, 0)


@pytest.mark.asyncio
async def test_increment_updates_total_and_remaining_with_history(db_session):
    await increment_credits(TEST_USER_ID, 100, "order", db_session, reason="One-time purchase")
    entry = await increment_credits(TEST_USER_ID, 25, "gift", db_session)
    await db_session.commit()

    credits = await get_or_init_user_credits(TEST_USER_ID, db_session)
    assert credits.total_credits == 125
    assert credits.remaining_credits == 125
    assert entry.before_credits == 100
    assert entry.after_credits == 125
    assert entry.change_amount == 25
    assert entry.source == "gift"


@pytest.mark.asyncio
async def test_consume_moves_credits_from_remaining_to_used(db_session):
    await increment_credits(TEST_USER_ID, 150, "order", db_session)
    entry = await consume_credits(TEST_USER_ID, 40, db_session, generation_id="gen_1")
    await db_session.commit()

    credits = await get_or_init_user_credits(TEST_USER_ID, db_session)
    assert credits.total_credits == 150
    assert credits.used_credits == 40
    assert credits.remaining_credits == 110
    assert entry.change_amount == -40
    assert entry.source == "generation"
    assert entry.generation_id == "gen_1"


@pytest.mark.asyncio
async def test_consume_more_than_remaining_is_rejected_without_writes(db_session):
    await increment_credits(TEST_USER_ID, 5, "order", db_session)
    await db_session.commit()

    with pytest.raises(ServiceError) as exc_info:
        await consume_credits(TEST_USER_ID, 6, db_session)
    assert exc_info.value.kind is ErrorKind.INSUFFICIENT_CREDITS

    with pytest.raises(ServiceError) as exc_info:
        await consume_credits(TEST_USER_ID, 0, db_session)
    assert exc_info.value.kind is ErrorKind.INVALID_PARAMETER

    assert len(await _history(db_session)) == 1


@pytest.mark.asyncio
async def test_expire_zeroes_balance_and_logs_only_when_non_zero(db_session):
    assert await expire_credits(TEST_USER_ID, db_session) is None
    assert await _history(db_session) == []

    await increment_credits(TEST_USER_ID, 30, "order", db_session)
    entry = await expire_credits(TEST_USER_ID, db_session)
    await db_session.commit()

    credits = await get_or_init_user_credits(TEST_USER_ID, db_session)
    assert (credits.total_credits, credits.used_credits, credits.remaining_credits) == (0, 0, 0)
    assert entry.change_amount == -30
    assert entry.after_credits == 0


@pytest.mark.asyncio
async def test_expire_and_add_resets_to_exact_grant(db_session):
    await increment_credits(TEST_USER_ID, 150, "order", db_session)
    await consume_credits(TEST_USER_ID, 110, db_session)

    entries = await expire_and_add_credits(TEST_USER_ID, 150, db_session, order_id=None)
    await db_session.commit()

    credits = await get_or_init_user_credits(TEST_USER_ID, db_session)
    assert credits.total_credits == 150
    assert credits.used_credits == 0
    assert credits.remaining_credits == 150
    assert [(e.before_credits, e.after_credits, e.change_amount) for e in entries] == [
        (40, 0, -40),
        (0, 150, 150),
    ]


@pytest.mark.asyncio
async def test_expire_and_add_from_empty_balance_writes_single_row(db_session):
    entries = await expire_and_add_credits(TEST_USER_ID, 500, db_session)
    assert len(entries) == 1
    assert entries[0].change_amount == 500


@pytest.mark.asyncio
async def test_history_rows_are_consistent(db_session):
    await increment_credits(TEST_USER_ID, 150, "order", db_session)
    await consume_credits(TEST_USER_ID, 15, db_session)
    await expire_and_add_credits(TEST_USER_ID, 150, db_session)
    await db_session.commit()

    entries = await list_credit_history(TEST_USER_ID, db_session)
    assert len(entries) == 4
    for entry in entries:
        assert entry.change_amount == entry.after_credits - entry.before_credits
    assert len(await list_credit_history(TEST_USER_ID, db_session, limit=2)) == 2


@pytest.mark.asyncio
async def test_history_keeps_write_order_when_clock_does_not_advance(db_session, monkeypatch):
    frozen = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(credits_service, "_utcnow", lambda: frozen)

    await increment_credits(TEST_USER_ID, 150, "order", db_session)
    await consume_credits(TEST_USER_ID, 110, db_session)
    await expire_and_add_credits(TEST_USER_ID, 150, db_session)
    await db_session.commit()

    entries = await list_credit_history(TEST_USER_ID, db_session)
    assert [entry.change_amount for entry in entries] == [150, -40, -110, 150]
    assert [entry.reason for entry in entries[:2]] == ["Subscription period credits", "Credits expired at renewal"]
