"""Subscription service: checkout, webhook reconciliation, lazy rollover, usage reads."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.order import Order
from models.subscription import Subscription
from models.user import User
from services.catalog import PlanInfo, find_plan, find_product
from services.credits import (
    add_period_credits,
    consume_credits,
    expire_and_add_credits,
    expire_credits,
    get_or_init_user_credits,
    increment_credits,
    list_credit_history,
    user_ledger_lock,
)
from services.creem import CreemClient, CreemError, get_creem_client, verify_signature
from services.errors import ErrorKind, ServiceError
from services.periods import (
    CREDIT_PERIOD_INTERVAL,
    calc_period_end,
    ensure_utc,
    next_credit_boundary,
)


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _ref_id(value: Any) -> Optional[str]:
    """Creem expands some references into objects and leaves others as bare ids."""
    if isinstance(value, dict):
        value = value.get("id")
    text = str(value or "").strip()
    return text or None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable period date from webhook: %r", value)
        return None
    return ensure_utc(parsed)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


# ==================== Checkout ====================

async def create_checkout(
    plan_id: str,
    *,
    user_id: str,
    user_email: Optional[str],
    client: Optional[CreemClient] = None,
) -> Dict[str, str]:
    """Create a hosted checkout session. Orders are only written once the webhook arrives."""
    if not user_email:
        raise ServiceError(ErrorKind.UNAUTHORIZED, "User email is required for creating checkout")

    if client is None:
        try:
            client = get_creem_client()
        except ValueError as exc:
            raise ServiceError(ErrorKind.ERROR, str(exc)) from exc

    try:
        data = await client.create_checkout(
            product_id=plan_id,
            customer_email=user_email,
            success_url=f"{settings.APP_URL.rstrip('/')}/subscription/plan",
            metadata={"user_id": user_id},
        )
    except CreemError as exc:
        raise ServiceError(ErrorKind.ERROR, str(exc)) from exc

    logger.info("checkout_created user=%s plan=%s", user_id, plan_id)
    return {"checkout_url": str(data["checkout_url"])}


# ==================== Webhook reconciliation ====================

async def _find_duplicate_order(
    db: AsyncSession,
    *,
    transaction_id: Optional[str],
    checkout_session_id: Optional[str],
) -> Optional[Order]:
    if transaction_id:
        condition = Order.external_transaction_id == transaction_id
    elif checkout_session_id:
        condition = Order.checkout_session_id == checkout_session_id
    else:
        return None
    result = await db.execute(select(Order).where(condition, Order.status == "paid").limit(1))
    return result.scalar_one_or_none()


async def _get_subscription_for_tier(db: AsyncSession, user_id: str, tier: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id, Subscription.tier == tier).limit(1)
    )
    return result.scalar_one_or_none()


async def _apply_renewing_purchase(
    db: AsyncSession,
    *,
    user_id: str,
    plan: PlanInfo,
    order: Order,
    period_start: datetime,
    period_end: datetime,
) -> Subscription:
    subscription = await _get_subscription_for_tier(db, user_id, plan.tier)

    if subscription is not None and subscription.status == "active" and subscription.auto_renew:
        subscription.order_id = order.id
        subscription.interval = plan.interval
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.next_billing_date = period_end
        logger.info("subscription_renewed user=%s tier=%s period_end=%s", user_id, plan.tier, period_end.isoformat())
    elif subscription is not None:
        subscription.order_id = order.id
        subscription.interval = plan.interval
        subscription.status = "active"
        subscription.start_date = period_start
        subscription.end_date = None
        subscription.next_billing_date = period_end
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.auto_renew = True
        subscription.cancel_at_period_end = False
        logger.info("subscription_reactivated user=%s tier=%s", user_id, plan.tier)
    else:
        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            order_id=order.id,
            tier=plan.tier,
            interval=plan.interval,
            status="active",
            start_date=period_start,
            end_date=None,
            next_billing_date=period_end,
            current_period_start=period_start,
            current_period_end=period_end,
            auto_renew=True,
            cancel_at_period_end=False,
        )
        db.add(subscription)
        logger.info("subscription_created user=%s tier=%s", user_id, plan.tier)

    await db.flush()
    return subscription


async def _apply_one_time_purchase(
    db: AsyncSession,
    *,
    user_id: str,
    plan: PlanInfo,
    order: Order,
    now: datetime,
    window_end: datetime,
) -> Subscription:
    first_period_end = min(calc_period_end(now, CREDIT_PERIOD_INTERVAL), window_end)
    subscription = await _get_subscription_for_tier(db, user_id, plan.tier)

    if subscription is not None and subscription.status == "active" and not subscription.auto_renew:
        # Stack onto the running window instead of restarting it. The grant
        # paid now covers one extra sub-period, so the drip skips it.
        current_end = ensure_utc(subscription.end_date) or now
        subscription.end_date = calc_period_end(max(current_end, now), plan.interval)
        subscription.current_period_end = min(
            next_credit_boundary(
                ensure_utc(subscription.start_date),
                ensure_utc(subscription.current_period_end),
            ),
            subscription.end_date,
        )
        subscription.order_id = order.id
        logger.info(
            "one_time_extended user=%s tier=%s end_date=%s",
            user_id,
            plan.tier,
            subscription.end_date.isoformat(),
        )
    elif subscription is not None and subscription.status == "active":
        logger.warning(
            "one_time purchase for tier=%s while a renewing subscription is active user=%s; "
            "granting credits without changing the subscription window",
            plan.tier,
            user_id,
        )
    elif subscription is not None:
        subscription.order_id = order.id
        subscription.interval = plan.interval
        subscription.status = "active"
        subscription.start_date = now
        subscription.end_date = window_end
        subscription.next_billing_date = None
        subscription.current_period_start = now
        subscription.current_period_end = first_period_end
        subscription.auto_renew = False
        subscription.cancel_at_period_end = False
    else:
        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            order_id=order.id,
            tier=plan.tier,
            interval=plan.interval,
            status="active",
            start_date=now,
            end_date=window_end,
            next_billing_date=None,
            current_period_start=now,
            current_period_end=first_period_end,
            auto_renew=False,
            cancel_at_period_end=False,
        )
        db.add(subscription)

    await db.flush()
    return subscription


async def handle_webhook(
    payload: str,
    signature: Optional[str],
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Apply a Creem ``checkout.completed`` event.

    Verification happens before any read or write; only events of other
    types are acknowledged without a signature check.
    """
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ServiceError(ErrorKind.INVALID_PARAMETER, "Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise ServiceError(ErrorKind.INVALID_PARAMETER, "Webhook payload must be a JSON object")

    event_type = event.get("eventType")
    if event_type != CHECKOUT_COMPLETED:
        logger.info("webhook_ignored event_type=%s", event_type)
        return {"status": "ignored", "event_type": event_type}

    if not settings.CREEM_API_KEY or not settings.CREEM_WEBHOOK_SECRET:
        logger.error("Creem webhook received but CREEM_API_KEY or CREEM_WEBHOOK_SECRET is not configured")
        raise ServiceError(ErrorKind.ERROR, "Creem API key or webhook secret is not configured")

    if not verify_signature(payload, signature, settings.CREEM_WEBHOOK_SECRET):
        logger.warning("webhook_rejected reason=invalid_signature event_id=%s", event.get("id"))
        raise ServiceError(ErrorKind.INVALID_PARAMETER, "Invalid webhook signature")

    checkout = _as_dict(event.get("object"))
    customer = _as_dict(checkout.get("customer"))
    order_info = _as_dict(checkout.get("order"))
    subscription_info = _as_dict(checkout.get("subscription"))

    customer_email = str(customer.get("email") or "").strip() or None
    product_id = _ref_id(checkout.get("product"))
    checkout_session_id = _ref_id(checkout.get("id"))
    external_order_id = _ref_id(order_info.get("id"))
    transaction_id = _ref_id(order_info.get("transaction"))
    amount_paid = order_info.get("amount_paid")
    currency = str(order_info.get("currency") or "").strip() or "USD"
    order_type = order_info.get("type")

    if not customer_email or not product_id:
        raise ServiceError(ErrorKind.INVALID_PARAMETER, "Missing email or productId in webhook payload")

    user_result = await db.execute(select(User).where(User.email == customer_email).limit(1))
    user = user_result.scalar_one_or_none()
    if user is None:
        raise ServiceError(ErrorKind.ERROR, "User not found for webhook email")

    plan = find_plan(product_id)
    if plan is None:
        raise ServiceError(ErrorKind.INVALID_PARAMETER, f"Unknown productId: {product_id}")

    async with user_ledger_lock(user.id):
        if settings.WEBHOOK_DEDUP_ENABLED:
            duplicate = await _find_duplicate_order(
                db,
                transaction_id=transaction_id,
                checkout_session_id=checkout_session_id,
            )
            if duplicate is not None:
                logger.info(
                    "webhook_duplicate user=%s order=%s transaction=%s checkout=%s",
                    user.id,
                    duplicate.id,
                    transaction_id,
                    checkout_session_id,
                )
                return {"status": "duplicate", "order_id": duplicate.id}

        current = ensure_utc(now) or _utcnow()
        # Settle elapsed sub-periods first so a lapsed window is expired
        # and restarted rather than extended.
        await _rollover_subscriptions(user.id, db, current)
        period_end = calc_period_end(current, plan.interval)

        final_price = plan.price
        if amount_paid is not None:
            try:
                # Creem reports minor units
                final_price = float(amount_paid) / 100
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric amount_paid=%r", amount_paid)

        order = Order(
            id=str(uuid.uuid4()),
            user_id=user.id,
            plan_id=plan.id,
            tier=plan.tier,
            charge_type=plan.charge_type,
            interval=plan.interval,
            status="paid",
            original_price=plan.list_price,
            final_price=final_price,
            currency=currency,
            payment_method="creem",
            external_order_id=external_order_id,
            external_transaction_id=transaction_id,
            checkout_session_id=checkout_session_id,
            order_date=current,
            paid_date=current,
            credits_amount=plan.credits,
        )
        db.add(order)
        await db.flush()

        if order_type == "recurring" or plan.charge_type == "subscription":
            period_start = _parse_datetime(subscription_info.get("current_period_start_date")) or current
            reported_end = _parse_datetime(subscription_info.get("current_period_end_date")) or period_end
            subscription = await _apply_renewing_purchase(
                db,
                user_id=user.id,
                plan=plan,
                order=order,
                period_start=period_start,
                period_end=reported_end,
            )
            await expire_and_add_credits(
                user.id,
                plan.credits,
                db,
                order_id=order.id,
                subscription_id=subscription.id,
            )
        else:
            subscription = await _apply_one_time_purchase(
                db,
                user_id=user.id,
                plan=plan,
                order=order,
                now=current,
                window_end=period_end,
            )
            await increment_credits(
                user.id,
                plan.credits,
                "order",
                db,
                order_id=order.id,
                subscription_id=subscription.id,
                reason="One-time purchase",
            )

        await db.commit()

    logger.info(
        "webhook_processed user=%s plan=%s order=%s charge_type=%s",
        user.id,
        plan.id,
        order.id,
        plan.charge_type,
    )
    return {"status": "processed", "order_id": order.id}


# ==================== Lazy period rollover ====================

async def _active_subscriptions(db: AsyncSession, user_id: str) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "active")
        .order_by(Subscription.current_period_end.asc())
    )
    return list(result.scalars().all())


async def _expire_subscription(
    db: AsyncSession,
    subscription: Subscription,
    active: List[Subscription],
) -> None:
    subscription.status = "expired"
    still_backed = any(other.id != subscription.id and other.status == "active" for other in active)
    if still_backed:
        logger.info(
            "subscription_expired user=%s tier=%s credits_kept=true",
            subscription.user_id,
            subscription.tier,
        )
        await db.flush()
        return
    await expire_credits(subscription.user_id, db, subscription_id=subscription.id)
    logger.info("subscription_expired user=%s tier=%s", subscription.user_id, subscription.tier)


async def _rollover_subscriptions(user_id: str, db: AsyncSession, now: datetime) -> bool:
    active = await _active_subscriptions(db, user_id)
    changed = False

    for subscription in active:
        period_end = ensure_utc(subscription.current_period_end)
        if now <= period_end:
            continue
        if subscription.auto_renew:
            # Renewing periods are advanced by the processor webhook only;
            # granting here would double count once the renewal arrives.
            continue

        changed = True
        end_date = ensure_utc(subscription.end_date)
        anchor = ensure_utc(subscription.start_date)
        product = find_product(subscription.tier)
        grant = product.credits if product else 0

        while now > period_end:
            if end_date is not None and now > end_date:
                await _expire_subscription(db, subscription, active)
                break

            next_start = period_end
            next_end = next_credit_boundary(anchor, next_start)
            if end_date is not None:
                next_end = min(next_end, end_date)
            subscription.current_period_start = next_start
            subscription.current_period_end = next_end
            if grant:
                await add_period_credits(user_id, grant, db, subscription_id=subscription.id)
            logger.info(
                "period_rolled_over user=%s tier=%s period_end=%s",
                user_id,
                subscription.tier,
                next_end.isoformat(),
            )
            period_end = next_end

    if changed:
        await db.flush()
    return changed


async def lazy_reset_if_needed(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> bool:
    """Roll elapsed non-renewing periods forward. Returns True when anything changed."""
    current = ensure_utc(now) or _utcnow()
    async with user_ledger_lock(user_id):
        changed = await _rollover_subscriptions(user_id, db, current)
        if changed:
            await db.commit()
    return changed


# ==================== Reads and spend ====================

async def get_usage(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    await lazy_reset_if_needed(user_id, db, now=now)
    credits = await get_or_init_user_credits(user_id, db)

    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "active")
        .order_by(Subscription.start_date.desc())
        .limit(1)
    )
    subscription = result.scalar_one_or_none()
    await db.commit()

    return {
        "total_credits": credits.total_credits,
        "used_credits": credits.used_credits,
        "remaining_credits": credits.remaining_credits,
        "current_period_start": _isoformat(subscription.current_period_start) if subscription else None,
        "current_period_end": _isoformat(subscription.current_period_end) if subscription else None,
        "tier": subscription.tier if subscription else None,
        "billing_interval": subscription.interval if subscription else None,
        "auto_renew": subscription.auto_renew if subscription else None,
    }


async def get_usage_history(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    entries = await list_credit_history(user_id, db)
    return [
        {
            "id": entry.id,
            "source": entry.source,
            "change_amount": entry.change_amount,
            "before_credits": entry.before_credits,
            "after_credits": entry.after_credits,
            "order_id": entry.order_id,
            "subscription_id": entry.subscription_id,
            "generation_id": entry.generation_id,
            "reason": entry.reason,
            "created_at": _isoformat(entry.created_at),
        }
        for entry in entries
    ]


async def get_order_history(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
    )
    return [
        {
            "id": order.id,
            "plan_id": order.plan_id,
            "tier": order.tier,
            "charge_type": order.charge_type,
            "interval": order.interval,
            "status": order.status,
            "original_price": order.original_price,
            "final_price": order.final_price,
            "currency": order.currency,
            "payment_method": order.payment_method,
            "credits_amount": order.credits_amount,
            "order_date": _isoformat(order.order_date),
            "paid_date": _isoformat(order.paid_date),
        }
        for order in result.scalars().all()
    ]


async def spend_credits(
    user_id: str,
    amount: int,
    db: AsyncSession,
    *,
    generation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Charge a generation against the balance after applying any due rollover."""
    current = ensure_utc(now) or _utcnow()
    async with user_ledger_lock(user_id):
        await _rollover_subscriptions(user_id, db, current)
        entry = await consume_credits(user_id, amount, db, generation_id=generation_id)
        await db.commit()
    return {"charged": -entry.change_amount, "remaining_credits": entry.after_credits}
