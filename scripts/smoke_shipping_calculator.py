#!/usr/bin/env python3
"""
Smoke test for shipping charges:
- one_time items charge the highest single fee once per vendor shipment
- per_product items charge fee x quantity at the selected distance tier
- mixed groups add both parts; an order adds its vendor groups
- unknown shipping types / tiers and malformed items are rejected

Run:
  python3 scripts/smoke_shipping_calculator.py
"""

from __future__ import annotations

import sys
from pathlib import Path


def _resolve_repo_root() -> Path:
    candidates: list[Path] = []
    try:
        candidates.append(Path(__file__).resolve().parents[1])
    except Exception:
        pass
    candidates.append(Path.cwd())
    for root in candidates:
        if (root / "pyproject.toml").exists() and (root / "src").exists():
            return root
    raise FileNotFoundError("Cannot locate repo root with pyproject.toml and src/")


REPO_ROOT = _resolve_repo_root()


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _expect(exc_type: type[BaseException], fn, msg: str) -> None:
    try:
        fn()
    except exc_type:
        return
    raise AssertionError(msg)


def _run_checks() -> None:
    from vendor_billing.errors import (  # noqa: WPS433
        InvalidDistanceTierError,
        InvalidLineItemError,
        InvalidShippingTypeError,
    )
    from vendor_billing.models import DistanceTier, OrderLineItem, VendorOrderGroup  # noqa: WPS433
    from vendor_billing.shipping import (  # noqa: WPS433
        calculate_group_shipping,
        calculate_order_shipping,
        parse_distance_tier,
    )

    def item(product_id: str, vendor_id: str, qty: int, shipping_type: str, local=0, mid=0, far=0):
        return OrderLineItem(
            product_id=product_id,
            vendor_id=vendor_id,
            quantity=qty,
            unit_price=1000,
            shipping_fee_local=local,
            shipping_fee_mid=mid,
            shipping_fee_far=far,
            shipping_type=shipping_type,
        )

    # one_time fee is charged once regardless of quantity.
    one_time = item("p-1", "v-a", 3, "one_time", local=500, mid=700, far=900)
    _assert(calculate_group_shipping([one_time], DistanceTier.LOCAL) == 500, "one_time fee multiplied by quantity")

    # per_product uses the tier column times quantity.
    per_product = item("p-2", "v-a", 3, "per_product", local=200, mid=300, far=400)
    _assert(calculate_group_shipping([per_product], "mid") == 900, "per_product mid-tier fee x qty mismatch")

    # Two vendors: A local one_time 0, B far per_product 1000 x 2.
    group_a = VendorOrderGroup("v-a", [item("p-3", "v-a", 1, "one_time")], DistanceTier.LOCAL)
    group_b = VendorOrderGroup("v-b", [item("p-4", "v-b", 2, "per_product", far=1000)], DistanceTier.FAR)
    total = calculate_order_shipping([group_a, group_b])
    _assert(total == 2000, f"two-vendor shipping mismatch: {total}")
    _assert(group_a.computed_shipping == 0 and group_b.computed_shipping == 2000, "groups not priced in place")

    # Several one_time items share one shipment: max fee only.
    shared = [
        item("p-5", "v-c", 1, "one_time", local=300),
        item("p-6", "v-c", 4, "one_time", local=800),
        item("p-7", "v-c", 2, "one_time", local=500),
    ]
    _assert(calculate_group_shipping(shared, "local") == 800, "one_time group must charge the max fee")

    # Mixed group: max one_time + sum of per_product.
    mixed = shared + [item("p-8", "v-c", 2, "per_product", local=150), item("p-9", "v-c", 1, "per_product", local=50)]
    _assert(calculate_group_shipping(mixed, "local") == 800 + 300 + 50, "mixed group shipping mismatch")

    all_zero = [item("p-10", "v-d", 5, "per_product"), item("p-11", "v-d", 1, "one_time")]
    _assert(calculate_group_shipping(all_zero, "far") == 0, "all-zero fees must ship free")

    # Storefront delivery-method names map onto tiers.
    _assert(parse_distance_tier("on_campus") is DistanceTier.LOCAL, "on_campus alias")
    _assert(parse_distance_tier("2km_5km") is DistanceTier.MID, "2km_5km alias")
    _assert(parse_distance_tier("over_5km") is DistanceTier.FAR, "over_5km alias")

    _expect(
        InvalidShippingTypeError,
        lambda: calculate_group_shipping([item("p-12", "v-e", 1, "bulk", local=100)], "local"),
        "unknown shipping type defaulted",
    )
    for near_miss in ("ONE_TIME", " per_product", "Per_Product"):
        _expect(
            InvalidShippingTypeError,
            lambda near_miss=near_miss: calculate_group_shipping([item("p-14", "v-e", 1, near_miss, local=100)], "local"),
            f"shipping type {near_miss!r} accepted",
        )
    _expect(InvalidDistanceTierError, lambda: parse_distance_tier("LOCAL"), "upper-case tier accepted")
    _expect(
        InvalidDistanceTierError,
        lambda: calculate_group_shipping([one_time], "orbit"),
        "unknown distance tier accepted",
    )
    _expect(InvalidLineItemError, lambda: calculate_group_shipping([], "local"), "empty group accepted")
    _expect(
        InvalidLineItemError,
        lambda: calculate_group_shipping([item("p-13", "v-e", 0, "one_time")], "local"),
        "zero quantity accepted",
    )
    _expect(
        InvalidLineItemError,
        lambda: calculate_group_shipping([item("p-14", "v-e", 1, "per_product", local=-5)], "local"),
        "negative fee accepted",
    )


def main() -> None:
    # Make project importable.
    sys.path.insert(0, str(REPO_ROOT / "src"))
    _run_checks()
    print("OK: shipping calculator smoke test passed.")


if __name__ == "__main__":
    main()
