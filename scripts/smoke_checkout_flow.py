#!/usr/bin/env python3
"""
Smoke test for multi-vendor checkout:
- cart is split into per-vendor groups in first-seen order
- quote totals = subtotal + shipping + 2.5% service charge (half up) per vendor
- each group captures the vendor's plan and effective commission rate
- suspended or expired vendors cannot be checked out
- pay_all settles successful groups and keeps going past a failed one
- retry_group re-charges a failed group under a fresh reference
- commission applies to goods only; the service charge goes to the platform and
  shipping passes through to the vendor

Run:
  python3 scripts/smoke_checkout_flow.py
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
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
NOW = datetime(2026, 7, 1, 9, 0, tzinfo=timezone.utc)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks() -> None:
    from vendor_billing.checkout import (  # noqa: WPS433
        CheckoutService,
        GroupPaymentFailure,
        build_checkout_quote,
        group_line_items,
        service_charge,
    )
    from vendor_billing.errors import (  # noqa: WPS433
        InvalidLineItemError,
        VendorNotFoundError,
        VendorSuspendedError,
    )
    from vendor_billing.memory_store import MemoryBillingStore  # noqa: WPS433
    from vendor_billing.models import OrderLineItem, TransactionType  # noqa: WPS433
    from vendor_billing.payments import MockPaymentGateway, PaymentOutcome, PaymentStatus  # noqa: WPS433
    from vendor_billing.plans import PlanId  # noqa: WPS433
    from vendor_billing.settlement import SettlementEngine, compute_split, recompute_split  # noqa: WPS433
    from vendor_billing.subscription import SubscriptionLifecycle  # noqa: WPS433

    _assert(service_charge(13000) == 325, "service charge on 13000")
    _assert(service_charge(100) == 3, "service charge must round 2.5 up")
    _assert(service_charge(20) == 1, "service charge must round 0.5 up")
    _assert(service_charge(0) == 0, "service charge on empty subtotal")

    # Free vendor: 10000 goods, 2000 local shipping, 250 service charge.
    free_split = compute_split(12250, 15, service_charge=250, shipping=2000)
    _assert(free_split.commission_amount == 1500, f"commission must apply to goods only: {free_split}")
    _assert(
        (free_split.platform_commission, free_split.vendor_payout) == (1750, 10500),
        f"service charge to platform, shipping to vendor: {free_split}",
    )

    store = MemoryBillingStore()
    lifecycle = SubscriptionLifecycle(store, currency="NGN")
    settlement = SettlementEngine(store)
    checkout = CheckoutService(settlement, currency="NGN")

    await lifecycle.register_vendor("v-a", store_name="Dorm Deli")
    await lifecycle.activate_plan(
        "v-a",
        "economy",
        PaymentOutcome(provider="mock", status=PaymentStatus.SUCCEEDED, reference="SUB_va", amount=7000),
        NOW - timedelta(days=3),
    )
    await lifecycle.grant_gift_plan("v-a", "first_class", days=10, commission_rate=3, now=NOW - timedelta(days=1))
    await lifecycle.register_vendor("v-b", store_name="Print Hub")
    await lifecycle.register_vendor("v-c", store_name="Closed Shop")
    suspended = await store.get_vendor("v-c")
    suspended.is_suspended = True
    await store.commit_vendor_update(suspended, expected_revision=suspended.revision)

    items = [
        OrderLineItem("p-3", "v-b", 1, 10000, shipping_fee_far=1500, shipping_type="one_time"),
        OrderLineItem("p-1", "v-a", 2, 5000, shipping_fee_local=500, shipping_type="one_time"),
        OrderLineItem("p-2", "v-a", 1, 3000, shipping_fee_local=200, shipping_type="per_product"),
    ]
    tiers = {"v-a": "on_campus", "v-b": "over_5km"}

    groups = group_line_items(items, tiers)
    _assert([g.vendor_id for g in groups] == ["v-b", "v-a"], f"group order mismatch: {groups}")

    vendors = {vendor_id: await store.get_vendor(vendor_id) for vendor_id in ("v-a", "v-b", "v-c")}
    quote = build_checkout_quote(items, tiers, vendors, NOW)
    _assert(quote.session_id.startswith("CHECKOUT_"), f"session id format: {quote.session_id}")
    by_vendor = {vq.vendor_id: vq for vq in quote.vendors}

    va = by_vendor["v-a"]
    _assert((va.subtotal, va.shipping, va.service_charge, va.total) == (13000, 700, 325, 14025), f"v-a quote: {va}")
    _assert(va.subscription_plan is PlanId.ECONOMY and va.commission_rate == 3, f"v-a captured plan/rate: {va}")
    vb = by_vendor["v-b"]
    _assert((vb.subtotal, vb.shipping, vb.service_charge, vb.total) == (10000, 1500, 250, 11750), f"v-b quote: {vb}")
    _assert(vb.subscription_plan is PlanId.FREE and vb.commission_rate == 15, f"v-b captured plan/rate: {vb}")
    _assert(quote.total == 14025 + 11750, f"quote total: {quote.total}")
    _assert(vb.reference.startswith(f"{quote.session_id}_V0_"), f"v-b reference: {vb.reference}")
    _assert(va.reference.startswith(f"{quote.session_id}_V1_"), f"v-a reference: {va.reference}")

    blocked = items + [OrderLineItem("p-9", "v-c", 1, 100)]
    try:
        build_checkout_quote(blocked, {**tiers, "v-c": "local"}, vendors, NOW)
    except VendorSuspendedError:
        pass
    else:
        raise AssertionError("suspended vendor accepted at checkout")

    # Gift plans do not lift an expired cycle.
    try:
        build_checkout_quote(items, tiers, vendors, NOW + timedelta(days=40))
    except VendorSuspendedError:
        pass
    else:
        raise AssertionError("expired vendor accepted at checkout")

    try:
        build_checkout_quote(items, {"v-a": "local"}, vendors, NOW)
    except InvalidLineItemError as exc:
        _assert("v-b" in str(exc), f"missing tier error must name the vendor: {exc}")
    else:
        raise AssertionError("missing distance tier accepted")

    try:
        build_checkout_quote(items, tiers, {"v-a": vendors["v-a"]}, NOW)
    except VendorNotFoundError:
        pass
    else:
        raise AssertionError("unknown vendor accepted")

    # v-b first (fails), v-a second (succeeds).
    gateway = MockPaymentGateway([PaymentStatus.FAILED, PaymentStatus.SUCCEEDED])
    report = await checkout.pay_all(quote, gateway, "buyer@example.com", user_id="u-1")
    _assert(not report.complete, "report must flag the failed group")
    _assert([r.transaction.vendor_id for r in report.paid] == ["v-a"], f"paid groups: {report.paid}")
    _assert([f.vendor_id for f in report.failed] == ["v-b"], f"failed groups: {report.failed}")
    _assert([c["amount"] for c in gateway.charges] == [11750, 14025], f"charged amounts: {gateway.charges}")
    _assert(gateway.charges[1]["metadata"]["kind"] == "order_payment", f"charge metadata: {gateway.charges[1]}")

    paid_tx = await store.get_transaction(va.reference)
    _assert(paid_tx is not None and paid_tx.type is TransactionType.ORDER_PAYMENT, f"v-a tx: {paid_tx}")
    _assert(paid_tx.amount == 14025 and paid_tx.metadata["commission_rate"] == 3, f"v-a tx metadata: {paid_tx}")
    _assert(paid_tx.metadata["commission_amount"] == 390, f"v-a commission on goods: {paid_tx.metadata}")
    _assert(paid_tx.metadata["service_charge"] == 325, f"v-a service charge: {paid_tx.metadata}")
    _assert(paid_tx.metadata["platform_commission"] == 715, f"v-a platform take: {paid_tx.metadata}")
    _assert(paid_tx.metadata["vendor_payout"] == 13310, f"v-a payout: {paid_tx.metadata}")
    _assert(recompute_split(paid_tx) == report.paid[0].split, "stored metadata does not reproduce the split")
    _assert(await store.get_transaction(vb.reference) is None, "failed group recorded a transaction")

    failed_reference = vb.reference
    retry = await checkout.retry_group(quote, "v-b", MockPaymentGateway(), "buyer@example.com", user_id="u-1")
    _assert(not isinstance(retry, GroupPaymentFailure), f"retry failed: {retry}")
    _assert(retry.transaction.reference != failed_reference, "retry reused the failed reference")
    _assert(retry.transaction.reference.startswith(f"{quote.session_id}_V0_"), f"retry reference: {retry.transaction.reference}")
    _assert(retry.split.commission_amount == 1500, f"v-b commission on goods: {retry.split}")
    _assert(
        retry.split.platform_commission == 1750 and retry.split.vendor_payout == 10000,
        f"v-b split: {retry.split}",
    )

    report_totals = await settlement.revenue_report()
    _assert(report_totals.commission_revenue == 390 + 1500, f"commission revenue: {report_totals}")
    _assert(report_totals.service_charge_revenue == 325 + 250, f"service charge revenue: {report_totals}")
    _assert(report_totals.vendor_payouts == 13310 + 10000, f"vendor payouts: {report_totals}")
    _assert(report_totals.platform_revenue == 7000 + 1890 + 575, f"platform revenue: {report_totals}")

    try:
        await checkout.retry_group(quote, "v-zzz", MockPaymentGateway(), "buyer@example.com")
    except VendorNotFoundError:
        pass
    else:
        raise AssertionError("retry for unknown vendor group accepted")


def main() -> None:
    os.environ.setdefault("PAYMENT_CURRENCY", "NGN")

    # Make project importable.
    sys.path.insert(0, str(REPO_ROOT / "src"))

    asyncio.run(_run_checks())
    print("OK: checkout flow smoke test passed.")


if __name__ == "__main__":
    main()
