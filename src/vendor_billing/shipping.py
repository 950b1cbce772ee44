"""Shipping charges for vendor order groups.

Each product declares three fees, one per delivery distance tier, and a
shipping type:

* ``one_time``: the fee is charged once per vendor shipment. When several
  one-time items share a shipment, the highest fee among them is charged.
* ``per_product``: the fee is multiplied by the ordered quantity.

A vendor group mixing both types pays the one-time maximum plus the summed
per-product fees. An order pays the sum over its vendor groups.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from vendor_billing.errors import (
    InvalidDistanceTierError,
    InvalidLineItemError,
    InvalidShippingTypeError,
)
from vendor_billing.models import DistanceTier, OrderLineItem, ShippingType, VendorOrderGroup

# Delivery-method names used by the storefront checkout.
DELIVERY_METHOD_ALIASES: dict[str, DistanceTier] = {
    "on_campus": DistanceTier.LOCAL,
    "0km_2km": DistanceTier.LOCAL,
    "2km_5km": DistanceTier.MID,
    "over_5km": DistanceTier.FAR,
}


def parse_shipping_type(raw: ShippingType | str | None) -> ShippingType:
    if isinstance(raw, ShippingType):
        return raw
    try:
        return ShippingType(raw)
    except ValueError:
        raise InvalidShippingTypeError(raw) from None


def parse_distance_tier(raw: DistanceTier | str | None) -> DistanceTier:
    if isinstance(raw, DistanceTier):
        return raw
    alias = DELIVERY_METHOD_ALIASES.get(raw) if isinstance(raw, str) else None
    if alias is not None:
        return alias
    try:
        return DistanceTier(raw)
    except ValueError:
        raise InvalidDistanceTierError(raw) from None


def validate_line_item(item: OrderLineItem) -> None:
    if int(item.quantity) <= 0:
        raise InvalidLineItemError(f"Quantity must be positive for product {item.product_id}")
    if int(item.unit_price) < 0:
        raise InvalidLineItemError(f"Unit price must be non-negative for product {item.product_id}")
    for fee in (item.shipping_fee_local, item.shipping_fee_mid, item.shipping_fee_far):
        if int(fee) < 0:
            raise InvalidLineItemError(f"Shipping fees must be non-negative for product {item.product_id}")
    parse_shipping_type(item.shipping_type)


def select_fee(item: OrderLineItem, tier: DistanceTier | str) -> int:
    """Fee column for the delivery distance tier."""
    resolved = parse_distance_tier(tier)
    if resolved is DistanceTier.LOCAL:
        return int(item.shipping_fee_local)
    if resolved is DistanceTier.MID:
        return int(item.shipping_fee_mid)
    return int(item.shipping_fee_far)


def calculate_group_shipping(items: Sequence[OrderLineItem], tier: DistanceTier | str) -> int:
    """Shipping owed for one vendor's items delivered at one distance tier."""
    if not items:
        raise InvalidLineItemError("A vendor group needs at least one line item")
    resolved = parse_distance_tier(tier)

    one_time_max = 0
    per_product_total = 0
    for item in items:
        validate_line_item(item)
        fee = select_fee(item, resolved)
        if parse_shipping_type(item.shipping_type) is ShippingType.ONE_TIME:
            one_time_max = max(one_time_max, fee)
        else:
            per_product_total += fee * int(item.quantity)
    return one_time_max + per_product_total


def price_group(group: VendorOrderGroup) -> VendorOrderGroup:
    group.computed_shipping = calculate_group_shipping(group.line_items, group.distance_tier)
    return group


def calculate_order_shipping(groups: Iterable[VendorOrderGroup]) -> int:
    """Total order shipping; prices every group in place."""
    total = 0
    for group in groups:
        total += price_group(group).computed_shipping
    return total
