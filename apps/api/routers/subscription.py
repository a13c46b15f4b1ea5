"""Subscription router: plans, checkout, usage and order history."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_checkout_auth_context
from routers.rate_limit import rate_limit
from services.catalog import get_catalog
from services.subscription import (
    create_checkout,
    get_order_history,
    get_usage,
    get_usage_history,
    spend_credits,
)

router = APIRouter()


# ==================== Pydantic Models ====================

class CreateCheckoutRequest(BaseModel):
    id: str = Field(min_length=1, description="Plan id from the product catalog")


class CreateCheckoutResponse(BaseModel):
    checkout_url: str


class UsageResponse(BaseModel):
    total_credits: int
    used_credits: int
    remaining_credits: int
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    tier: Optional[str] = None
    billing_interval: Optional[str] = None
    auto_renew: Optional[bool] = None


class ConsumeCreditsRequest(BaseModel):
    amount: int = Field(default=1, ge=1, le=10000)
    generation_id: Optional[str] = None


# ==================== Endpoints ====================

@router.get("/plans")
async def list_plans() -> Dict[str, Any]:
    return get_catalog().to_dict()


@router.post("/checkout", response_model=CreateCheckoutResponse)
async def create_checkout_session(
    request: CreateCheckoutRequest,
    _rate_limit: None = Depends(rate_limit("subscription_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_checkout_auth_context),
):
    return await create_checkout(request.id, user_id=auth.user_id, user_email=auth.email)


@router.get("/usage", response_model=UsageResponse)
async def usage_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current balance and active subscription window (applies any due rollover first)."""
    return await get_usage(auth.user_id, db)


@router.get("/usage/history")
async def usage_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await get_usage_history(auth.user_id, db)


@router.get("/orders")
async def order_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await get_order_history(auth.user_id, db)


@router.post("/consume")
async def consume(
    request: ConsumeCreditsRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await spend_credits(auth.user_id, request.amount, db, generation_id=request.generation_id)
