"""Static catalog definitions for subscription plans."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional

from .models import BillingCycle, PlanKey


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan, its price points and usage limits."""

    key: PlanKey
    display_name: str
    rank: int
    monthly_amount: Decimal
    yearly_amount: Decimal
    included_credits: int = 0
    limits: Mapping[str, int] = field(default_factory=dict)
    is_trial: bool = False
    price_refs: Mapping[BillingCycle, str] = field(default_factory=dict)

    def amount_for(self, cycle: BillingCycle) -> Decimal:
        return self.yearly_amount if cycle == BillingCycle.YEARLY else self.monthly_amount

    def price_ref_for(self, cycle: BillingCycle) -> Optional[str]:
        return self.price_refs.get(cycle)


TRIAL_LENGTH_DAYS = 14

PLAN_CATALOG: Dict[PlanKey, PlanDefinition] = {
    PlanKey.TRIAL: PlanDefinition(
        key=PlanKey.TRIAL,
        display_name="Trial",
        rank=0,
        monthly_amount=Decimal("0"),
        yearly_amount=Decimal("0"),
        included_credits=5_000,
        limits={"users": 5, "projects": 3, "api_calls": 10_000, "storage_gb": 5},
        is_trial=True,
    ),
    PlanKey.FREE: PlanDefinition(
        key=PlanKey.FREE,
        display_name="Free",
        rank=0,
        monthly_amount=Decimal("0"),
        yearly_amount=Decimal("0"),
        limits={"users": 1, "projects": 1, "api_calls": 1_000, "storage_gb": 1},
    ),
    PlanKey.STARTER: PlanDefinition(
        key=PlanKey.STARTER,
        display_name="Starter",
        rank=1,
        monthly_amount=Decimal("29.00"),
        yearly_amount=Decimal("290.00"),
        included_credits=10_000,
        limits={"users": 5, "projects": 10, "api_calls": 50_000, "storage_gb": 10},
        price_refs={
            BillingCycle.MONTHLY: "price_starter_monthly",
            BillingCycle.YEARLY: "price_starter_yearly",
        },
    ),
    PlanKey.PROFESSIONAL: PlanDefinition(
        key=PlanKey.PROFESSIONAL,
        display_name="Professional",
        rank=2,
        monthly_amount=Decimal("99.00"),
        yearly_amount=Decimal("990.00"),
        included_credits=50_000,
        limits={"users": 25, "projects": 50, "api_calls": 250_000, "storage_gb": 100},
        price_refs={
            BillingCycle.MONTHLY: "price_professional_monthly",
            BillingCycle.YEARLY: "price_professional_yearly",
        },
    ),
    PlanKey.ENTERPRISE: PlanDefinition(
        key=PlanKey.ENTERPRISE,
        display_name="Enterprise",
        rank=3,
        monthly_amount=Decimal("499.00"),
        yearly_amount=Decimal("4990.00"),
        included_credits=250_000,
        limits={"users": 500, "projects": 1_000, "api_calls": 2_000_000, "storage_gb": 1_000},
        price_refs={
            BillingCycle.MONTHLY: "price_enterprise_monthly",
            BillingCycle.YEARLY: "price_enterprise_yearly",
        },
    ),
}


def get_plan_definition(plan_key: PlanKey) -> PlanDefinition:
    try:
        return PLAN_CATALOG[plan_key]
    except KeyError as exc:  # pragma: no cover - enum guarantees coverage
        raise KeyError(f"Unknown plan key: {plan_key}") from exc


def plan_for_price(price_ref: Optional[str]) -> Optional[PlanDefinition]:
    """Resolve a processor price id back to the catalog plan and cycle."""

    if not price_ref:
        return None
    for definition in PLAN_CATALOG.values():
        if price_ref in definition.price_refs.values():
            return definition
    return None


def cycle_for_price(price_ref: Optional[str]) -> Optional[BillingCycle]:
    if not price_ref:
        return None
    for definition in PLAN_CATALOG.values():
        for cycle, ref in definition.price_refs.items():
            if ref == price_ref:
                return cycle
    return None


def is_downgrade(current: PlanKey, target: PlanKey) -> bool:
    return get_plan_definition(target).rank < get_plan_definition(current).rank


__all__ = [
    "PLAN_CATALOG",
    "PlanDefinition",
    "TRIAL_LENGTH_DAYS",
    "cycle_for_price",
    "get_plan_definition",
    "is_downgrade",
    "plan_for_price",
]
