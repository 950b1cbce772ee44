"""Billing domain models used by the vendor_billing package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from vendor_billing.plans import PlanId


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_utc(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw_value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso_or_none(value: datetime | None) -> str | None:
    # Fixed precision keeps stored timestamps comparable as strings.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds") if value else None


class ShippingType(str, Enum):
    ONE_TIME = "one_time"
    PER_PRODUCT = "per_product"


class DistanceTier(str, Enum):
    LOCAL = "local"
    MID = "mid"
    FAR = "far"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    ORDER_PAYMENT = "order_payment"
    COMMISSION = "commission"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    UNAPPLIED = "unapplied"


@dataclass(slots=True)
class VendorSubscriptionState:
    vendor_id: str
    active_plan_id: PlanId = PlanId.FREE
    cycle_start: datetime | None = None
    cycle_end: datetime | None = None
    is_suspended: bool = False
    product_limit: int = 20
    commission_rate: int = 15
    has_home_visibility: bool = False
    free_ads_remaining: int = 0
    user_id: str | None = None
    store_name: str | None = None
    gift_plan: PlanId | None = None
    gift_commission_rate: int | None = None
    gift_plan_expires_at: datetime | None = None
    pending_purchase_reference: str | None = None
    pending_purchase_started_at: datetime | None = None
    revision: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class OrderLineItem:
    product_id: str
    vendor_id: str
    quantity: int
    unit_price: int
    shipping_fee_local: int = 0
    shipping_fee_mid: int = 0
    shipping_fee_far: int = 0
    shipping_type: ShippingType | str = ShippingType.ONE_TIME

    @property
    def line_total(self) -> int:
        return int(self.unit_price) * int(self.quantity)


@dataclass(slots=True)
class VendorOrderGroup:
    vendor_id: str
    line_items: list[OrderLineItem]
    distance_tier: DistanceTier
    computed_shipping: int = 0

    @property
    def subtotal(self) -> int:
        return sum(item.line_total for item in self.line_items)


@dataclass(slots=True)
class Transaction:
    type: TransactionType
    amount: int
    reference: str
    user_id: str | None = None
    vendor_id: str | None = None
    order_id: str | None = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_method: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    id: int | None = None
