"""Vendor billing entrypoints: plans, subscription lifecycle, shipping and settlement."""

from vendor_billing.checkout import CheckoutService, build_checkout_quote, group_line_items
from vendor_billing.memory_store import MemoryBillingStore
from vendor_billing.plans import PLAN_CATALOG, PlanDefinition, PlanId, get_plan, list_plans
from vendor_billing.repository import BillingRepository, BillingStore
from vendor_billing.settlement import SettlementEngine, compute_split, recompute_split, summarize_revenue
from vendor_billing.shipping import calculate_group_shipping, calculate_order_shipping
from vendor_billing.subscription import (
    SubscriptionLifecycle,
    can_add_product,
    can_change_plan,
    days_remaining,
    effective_commission_rate,
    is_effectively_suspended,
)

__all__ = [
    "BillingRepository",
    "BillingStore",
    "CheckoutService",
    "MemoryBillingStore",
    "PLAN_CATALOG",
    "PlanDefinition",
    "PlanId",
    "SettlementEngine",
    "SubscriptionLifecycle",
    "build_checkout_quote",
    "calculate_group_shipping",
    "calculate_order_shipping",
    "can_add_product",
    "can_change_plan",
    "compute_split",
    "days_remaining",
    "effective_commission_rate",
    "get_plan",
    "group_line_items",
    "is_effectively_suspended",
    "list_plans",
    "recompute_split",
    "summarize_revenue",
]
