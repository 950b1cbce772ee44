"""Subscription plan matrix for marketplace vendors."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from vendor_billing.errors import UnknownPlanError


class PlanId(str, Enum):
    FREE = "free"
    ECONOMY = "economy"
    FIRST_CLASS = "first_class"


UNLIMITED_PRODUCTS: Final[int] = -1


@dataclass(frozen=True)
class PlanDefinition:
    id: PlanId
    title: str
    rank: int
    monthly_price: int
    product_limit: int
    commission_rate_percent: int
    home_visibility: bool
    free_ads_per_cycle: int

    @property
    def is_paid(self) -> bool:
        return self.monthly_price > 0


# Prices are whole NGN; commission drives every settlement split.
PLAN_CATALOG: Final[dict[PlanId, PlanDefinition]] = {
    PlanId.FREE: PlanDefinition(
        id=PlanId.FREE,
        title="Free Plan",
        rank=0,
        monthly_price=0,
        product_limit=20,
        commission_rate_percent=15,
        home_visibility=False,
        free_ads_per_cycle=0,
    ),
    PlanId.ECONOMY: PlanDefinition(
        id=PlanId.ECONOMY,
        title="Economy Plan",
        rank=1,
        monthly_price=7000,
        product_limit=50,
        commission_rate_percent=9,
        home_visibility=False,
        free_ads_per_cycle=0,
    ),
    PlanId.FIRST_CLASS: PlanDefinition(
        id=PlanId.FIRST_CLASS,
        title="First Class Plan",
        rank=2,
        monthly_price=15000,
        product_limit=UNLIMITED_PRODUCTS,
        commission_rate_percent=5,
        home_visibility=True,
        free_ads_per_cycle=1,
    ),
}


def parse_plan_id(raw: PlanId | str | None) -> PlanId:
    """Exact plan id (`free`, `economy`, `first_class`) as a PlanId, else UnknownPlanError."""
    if isinstance(raw, PlanId):
        return raw
    try:
        return PlanId(raw)
    except ValueError:
        raise UnknownPlanError(raw) from None


def get_plan(plan_id: PlanId | str) -> PlanDefinition:
    return PLAN_CATALOG[parse_plan_id(plan_id)]


def list_plans() -> list[PlanDefinition]:
    return sorted(PLAN_CATALOG.values(), key=lambda plan: plan.rank)


def is_paid_plan(plan_id: PlanId | str) -> bool:
    return get_plan(plan_id).is_paid
