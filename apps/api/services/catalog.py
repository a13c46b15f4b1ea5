"""Product catalog: tiers, their credit grants, and the purchasable plans."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from config import settings


logger = logging.getLogger(__name__)

Tier = Literal["basic", "advanced", "professional"]
ChargeType = Literal["one_time", "subscription"]

TIERS: Tuple[str, ...] = ("basic", "advanced", "professional")
CHARGE_TYPES: Tuple[str, ...] = ("one_time", "subscription")
INTERVALS: Tuple[str, ...] = ("month", "quarter", "year")


@dataclass(frozen=True)
class Plan:
    id: str
    charge_type: ChargeType
    interval: str
    list_price: float
    price: float


@dataclass(frozen=True)
class Product:
    tier: Tier
    description: str
    credits: int
    plans: Tuple[Plan, ...]


@dataclass(frozen=True)
class PlanInfo:
    """A plan flattened together with the terms of its tier."""

    id: str
    tier: Tier
    description: str
    credits: int
    charge_type: ChargeType
    interval: str
    list_price: float
    price: float


@dataclass(frozen=True)
class Catalog:
    version: str
    products: Tuple[Product, ...]

    def find_plan(self, plan_id: str) -> Optional[PlanInfo]:
        for product in self.products:
            for plan in product.plans:
                if plan.id == plan_id:
                    return PlanInfo(
                        id=plan.id,
                        tier=product.tier,
                        description=product.description,
                        credits=product.credits,
                        charge_type=plan.charge_type,
                        interval=plan.interval,
                        list_price=plan.list_price,
                        price=plan.price,
                    )
        return None

    def find_product(self, tier: str) -> Optional[Product]:
        for product in self.products:
            if product.tier == tier:
                return product
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "products": [
                {
                    "tier": product.tier,
                    "description": product.description,
                    "credits": product.credits,
                    "plans": [asdict(plan) for plan in product.plans],
                }
                for product in self.products
            ],
        }


def _tier_plans(tier: str, monthly_price: float) -> Tuple[Plan, ...]:
    # quarter: 3 months at -10%, year: 12 months at -20%
    pricing = {
        "month": (monthly_price, monthly_price),
        "quarter": (monthly_price * 3, round(monthly_price * 3 * 0.9, 2)),
        "year": (monthly_price * 12, round(monthly_price * 12 * 0.8, 2)),
    }
    plans: List[Plan] = []
    for charge_type in CHARGE_TYPES:
        for interval in INTERVALS:
            list_price, price = pricing[interval]
            plans.append(
                Plan(
                    id=f"{tier}_{charge_type}_{interval}",
                    charge_type=charge_type,  # type: ignore[arg-type]
                    interval=interval,
                    list_price=list_price,
                    price=price,
                )
            )
    return tuple(plans)


DEFAULT_CATALOG = Catalog(
    version="2025-01",
    products=(
        Product(
            tier="basic",
            description="Basic tier with the core generation features",
            credits=150,
            plans=_tier_plans("basic", 10),
        ),
        Product(
            tier="advanced",
            description="Advanced tier with the advanced generation features",
            credits=500,
            plans=_tier_plans("advanced", 30),
        ),
        Product(
            tier="professional",
            description="Professional tier with every generation feature",
            credits=1500,
            plans=_tier_plans("professional", 80),
        ),
    ),
)


def _validate(catalog: Catalog) -> Catalog:
    seen: Dict[str, str] = {}
    for product in catalog.products:
        if product.tier not in TIERS:
            raise ValueError(f"Unknown tier in catalog: {product.tier}")
        if product.credits < 0:
            raise ValueError(f"Tier {product.tier} has a negative credit grant")
        for plan in product.plans:
            if plan.id in seen:
                raise ValueError(f"Duplicate plan id {plan.id} in tiers {seen[plan.id]} and {product.tier}")
            if plan.charge_type not in CHARGE_TYPES:
                raise ValueError(f"Plan {plan.id} has unknown charge type {plan.charge_type}")
            if plan.interval not in INTERVALS:
                raise ValueError(f"Plan {plan.id} has unknown interval {plan.interval}")
            seen[plan.id] = product.tier
    return catalog


def parse_catalog(data: Dict[str, Any]) -> Catalog:
    """Build a catalog from its JSON representation."""
    products = tuple(
        Product(
            tier=str(item["tier"]),  # type: ignore[arg-type]
            description=str(item.get("description") or ""),
            credits=int(item["credits"]),
            plans=tuple(
                Plan(
                    id=str(plan["id"]),
                    charge_type=str(plan["charge_type"]),  # type: ignore[arg-type]
                    interval=str(plan["interval"]),
                    list_price=float(plan.get("list_price", plan["price"])),
                    price=float(plan["price"]),
                )
                for plan in item.get("plans", [])
            ),
        )
        for item in data.get("products", [])
    )
    return _validate(Catalog(version=str(data.get("version") or "unversioned"), products=products))


def load_catalog(path: Optional[str] = None) -> Catalog:
    """Load the catalog from ``path`` when given, else the built-in default."""
    if not path:
        return _validate(DEFAULT_CATALOG)
    catalog = parse_catalog(json.loads(Path(path).read_text(encoding="utf-8")))
    logger.info("Loaded product catalog version=%s from %s", catalog.version, path)
    return catalog


@lru_cache(maxsize=1)
def get_catalog() -> Catalog:
    return load_catalog(settings.PRODUCT_CATALOG_PATH)


def find_plan(plan_id: str) -> Optional[PlanInfo]:
    return get_catalog().find_plan(plan_id)


def find_product(tier: str) -> Optional[Product]:
    return get_catalog().find_product(tier)
