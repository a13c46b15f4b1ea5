from datetime import datetime, timezone

import pytest
from sqlalchemy.future import select

from conftest import TEST_USER_ID, checkout_event, sign
from models.credit_history import CreditHistory
from models.credits import UserCredits
from models.subscription import Subscription
from services.errors import ErrorKind, ServiceError
from services.periods import ensure_utc
from services.subscription import get_usage, handle_webhook, lazy_reset_if_needed, spend_credits


UTC = timezone.utc


async def _purchase(session_maker, plan_id, now, checkout_id="ch_1"):
    payload = checkout_event(plan_id, checkout_id=checkout_id, transaction_id=f"tran_{checkout_id}")
    async with session_maker() as session:
        return await handle_webhook(payload, sign(payload), session, now=now)


async def _remaining(session):
    result = await session.execute(select(UserCredits).where(UserCredits.user_id == TEST_USER_ID))
    return result.scalar_one().remaining_credits


async def _subscription(session, tier):
    result = await session.execute(
        select(Subscription).where(Subscription.user_id == TEST_USER_ID, Subscription.tier == tier)
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_one_time_plan_grants_next_month_once(session_maker):
    await _purchase(session_maker, "basic_one_time_quarter", datetime(2024, 1, 15, tzinfo=UTC))

    async with session_maker() as session:
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 2, 16, tzinfo=UTC)) is True
        assert await _remaining(session) == 300

    async with session_maker() as session:
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 2, 16, tzinfo=UTC)) is False
        assert await _remaining(session) == 300
        subscription = await _subscription(session, "basic")
        assert ensure_utc(subscription.current_period_start) == datetime(2024, 2, 15, tzinfo=UTC)
        assert ensure_utc(subscription.current_period_end) == datetime(2024, 3, 15, tzinfo=UTC)

        grants = (
            await session.execute(select(CreditHistory).where(CreditHistory.reason == "Period credits grant"))
        ).scalars().all()
        assert [(g.before_credits, g.after_credits) for g in grants] == [(150, 300)]


@pytest.mark.asyncio
async def test_rollover_before_period_end_is_a_no_op(session_maker):
    await _purchase(session_maker, "basic_one_time_quarter", datetime(2024, 1, 15, tzinfo=UTC))

    async with session_maker() as session:
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 2, 15, tzinfo=UTC)) is False
        assert await _remaining(session) == 150


@pytest.mark.asyncio
async def test_window_end_expires_subscription_and_balance(session_maker):
    await _purchase(session_maker, "basic_one_time_quarter", datetime(2024, 1, 15, tzinfo=UTC))

    async with session_maker() as session:
        await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 3, 20, tzinfo=UTC))
        assert await _remaining(session) == 450

    async with session_maker() as session:
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 4, 16, tzinfo=UTC)) is True
        subscription = await _subscription(session, "basic")
        assert subscription.status == "expired"
        credits = (await session.execute(select(UserCredits))).scalar_one()
        assert (credits.total_credits, credits.used_credits, credits.remaining_credits) == (0, 0, 0)

        expired = (
            await session.execute(select(CreditHistory).where(CreditHistory.reason == "Credits expired"))
        ).scalar_one()
        assert expired.change_amount == -450

    async with session_maker() as session:
        usage = await get_usage(TEST_USER_ID, session, now=datetime(2024, 4, 17, tzinfo=UTC))
        assert usage["remaining_credits"] == 0
        assert usage["tier"] is None


@pytest.mark.asyncio
async def test_month_end_anchor_catches_up_without_drift(session_maker):
    await _purchase(session_maker, "basic_one_time_year", datetime(2024, 1, 31, tzinfo=UTC))

    async with session_maker() as session:
        subscription = await _subscription(session, "basic")
        assert ensure_utc(subscription.current_period_end) == datetime(2024, 2, 29, tzinfo=UTC)
        assert ensure_utc(subscription.end_date) == datetime(2025, 1, 31, tzinfo=UTC)

    async with session_maker() as session:
        await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 4, 1, tzinfo=UTC))
        assert await _remaining(session) == 450
        subscription = await _subscription(session, "basic")
        assert ensure_utc(subscription.current_period_start) == datetime(2024, 3, 31, tzinfo=UTC)
        assert ensure_utc(subscription.current_period_end) == datetime(2024, 4, 30, tzinfo=UTC)


@pytest.mark.asyncio
async def test_renewing_subscription_is_not_rolled_over_lazily(session_maker):
    await _purchase(session_maker, "basic_subscription_month", datetime(2024, 1, 1, tzinfo=UTC))

    async with session_maker() as session:
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 3, 1, tzinfo=UTC)) is False
        assert await _remaining(session) == 150
        assert (await _subscription(session, "basic")).status == "active"


@pytest.mark.asyncio
async def test_expiring_one_time_plan_keeps_balance_backed_by_another_subscription(session_maker):
    start = datetime(2024, 1, 1, tzinfo=UTC)
    await _purchase(session_maker, "advanced_subscription_month", start, checkout_id="ch_adv")
    await _purchase(session_maker, "basic_one_time_month", start, checkout_id="ch_basic")

    async with session_maker() as session:
        assert await _remaining(session) == 650
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 2, 5, tzinfo=UTC)) is True

    async with session_maker() as session:
        assert (await _subscription(session, "basic")).status == "expired"
        assert (await _subscription(session, "advanced")).status == "active"
        assert await _remaining(session) == 650


@pytest.mark.asyncio
async def test_usage_reports_active_window_after_rollover(session_maker):
    await _purchase(session_maker, "advanced_one_time_quarter", datetime(2024, 1, 15, tzinfo=UTC))

    async with session_maker() as session:
        usage = await get_usage(TEST_USER_ID, session, now=datetime(2024, 2, 20, tzinfo=UTC))

    assert usage["total_credits"] == 1000
    assert usage["remaining_credits"] == 1000
    assert usage["tier"] == "advanced"
    assert usage["billing_interval"] == "quarter"
    assert usage["auto_renew"] is False
    assert usage["current_period_start"].startswith("2024-02-15")
    assert usage["current_period_end"].startswith("2024-03-15")


@pytest.mark.asyncio
async def test_spend_applies_due_rollover_first(session_maker):
    await _purchase(session_maker, "basic_one_time_quarter", datetime(2024, 1, 15, tzinfo=UTC))

    async with session_maker() as session:
        with pytest.raises(ServiceError) as exc_info:
            await spend_credits(TEST_USER_ID, 200, session, now=datetime(2024, 2, 1, tzinfo=UTC))
        assert exc_info.value.kind is ErrorKind.INSUFFICIENT_CREDITS

    async with session_maker() as session:
        result = await spend_credits(
            TEST_USER_ID,
            200,
            session,
            generation_id="gen_42",
            now=datetime(2024, 2, 16, tzinfo=UTC),
        )
    assert result == {"charged": 200, "remaining_credits": 100}


@pytest.mark.asyncio
async def test_stacked_one_time_purchase_is_not_granted_twice(session_maker):
    await _purchase(session_maker, "basic_one_time_month", datetime(2024, 1, 1, tzinfo=UTC), checkout_id="ch_1")
    await _purchase(session_maker, "basic_one_time_month", datetime(2024, 1, 15, tzinfo=UTC), checkout_id="ch_2")

    async with session_maker() as session:
        assert await _remaining(session) == 300
        subscription = await _subscription(session, "basic")
        assert ensure_utc(subscription.current_period_end) == datetime(2024, 3, 1, tzinfo=UTC)
        assert ensure_utc(subscription.end_date) == datetime(2024, 3, 1, tzinfo=UTC)

    async with session_maker() as session:
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 2, 10, tzinfo=UTC)) is False
        assert await _remaining(session) == 300


@pytest.mark.asyncio
async def test_stacked_quarter_drips_only_the_unpaid_months(session_maker):
    await _purchase(session_maker, "basic_one_time_quarter", datetime(2024, 1, 1, tzinfo=UTC), checkout_id="ch_1")
    await _purchase(session_maker, "basic_one_time_quarter", datetime(2024, 2, 10, tzinfo=UTC), checkout_id="ch_2")

    async with session_maker() as session:
        # Jan + Feb drip + second purchase
        assert await _remaining(session) == 450
        subscription = await _subscription(session, "basic")
        assert ensure_utc(subscription.current_period_end) == datetime(2024, 4, 1, tzinfo=UTC)
        assert ensure_utc(subscription.end_date) == datetime(2024, 7, 1, tzinfo=UTC)

    async with session_maker() as session:
        await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 6, 15, tzinfo=UTC))
        assert await _remaining(session) == 900


@pytest.mark.asyncio
async def test_purchase_after_lapsed_window_restarts_instead_of_extending(session_maker):
    await _purchase(session_maker, "basic_one_time_month", datetime(2024, 1, 1, tzinfo=UTC), checkout_id="ch_1")
    await _purchase(session_maker, "basic_one_time_month", datetime(2024, 6, 1, tzinfo=UTC), checkout_id="ch_2")

    async with session_maker() as session:
        assert await lazy_reset_if_needed(TEST_USER_ID, session, now=datetime(2024, 6, 2, tzinfo=UTC)) is False
        assert await _remaining(session) == 150
        subscription = await _subscription(session, "basic")
        assert subscription.status == "active"
        assert ensure_utc(subscription.start_date) == datetime(2024, 6, 1, tzinfo=UTC)
        assert ensure_utc(subscription.end_date) == datetime(2024, 7, 1, tzinfo=UTC)

        grants = (
            await session.execute(select(CreditHistory).where(CreditHistory.reason == "Period credits grant"))
        ).scalars().all()
        assert grants == []
