#!/usr/bin/env python3
"""
Smoke test for the vendor subscription lifecycle (SQLite store):
- free -> economy with a successful charge starts a 31-day cycle and copies plan fields
- re-selecting the active plan raises AlreadyOnPlanError
- paid plans without a covering successful payment leave state untouched
- paid -> free is blocked until the cycle ends
- replayed payment references are absorbed as duplicates
- purchase_plan charges through the gateway and never charges for a rejected change
- an expired cycle reads 0 days remaining and gates the vendor as suspended

Run:
  python3 scripts/smoke_subscription_lifecycle.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
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
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _expect(exc_type: type[BaseException], coro, msg: str) -> BaseException:
    try:
        await coro
    except exc_type as exc:
        return exc
    raise AssertionError(msg)


def _paid(reference: str, amount: int, status: str = "succeeded"):
    from vendor_billing.payments import PaymentOutcome, PaymentStatus  # noqa: WPS433

    return PaymentOutcome(provider="mock", status=PaymentStatus(status), reference=reference, amount=amount)


async def _run_checks(db_path: Path) -> None:
    # Import only after env is set, because config reads env on import.
    from database import init_db  # noqa: WPS433
    from vendor_billing.errors import (  # noqa: WPS433
        AlreadyOnPlanError,
        DowngradeNotAllowedError,
        PaymentRequiredError,
        VendorNotFoundError,
    )
    from vendor_billing.models import TransactionType  # noqa: WPS433
    from vendor_billing.payments import MockPaymentGateway, PaymentStatus  # noqa: WPS433
    from vendor_billing.plans import UNLIMITED_PRODUCTS, PlanId  # noqa: WPS433
    from vendor_billing.repository import BillingRepository  # noqa: WPS433
    from vendor_billing.subscription import (  # noqa: WPS433
        CYCLE_DAYS,
        SubscriptionLifecycle,
        can_add_product,
        days_remaining,
        is_effectively_suspended,
    )

    await init_db(str(db_path))
    repo = BillingRepository(str(db_path))
    lifecycle = SubscriptionLifecycle(repo, currency="NGN")

    state = await lifecycle.register_vendor("v-1", user_id="u-1", store_name="Campus Kicks")
    _assert(state.active_plan_id is PlanId.FREE, f"new vendor not on free: {state}")
    _assert(state.cycle_end is None, f"new vendor already has a cycle: {state}")
    _assert(state.product_limit == 20 and state.commission_rate == 15, f"free plan fields missing: {state}")
    again = await lifecycle.register_vendor("v-1", user_id="u-other")
    _assert(again.revision == 0 and again.user_id == "u-1", f"register_vendor not idempotent: {again}")

    # Paid plan without a covering successful payment: no state change.
    await _expect(PaymentRequiredError, lifecycle.activate_plan("v-1", "economy", now=NOW), "economy without payment")
    await _expect(
        PaymentRequiredError,
        lifecycle.activate_plan("v-1", "economy", _paid("SUB_failed", 7000, "failed"), NOW),
        "economy with failed payment",
    )
    await _expect(
        PaymentRequiredError,
        lifecycle.activate_plan("v-1", "economy", _paid("SUB_short", 5000), NOW),
        "economy with short payment",
    )
    untouched = await repo.get_vendor("v-1")
    _assert(untouched.revision == 0 and untouched.active_plan_id is PlanId.FREE, f"rejected payment mutated state: {untouched}")
    _assert(await repo.get_transaction("SUB_short") is None, "rejected payment recorded a transaction")

    # free -> economy.
    result = await lifecycle.activate_plan("v-1", "economy", _paid("SUB_eco_1", 7000), NOW)
    _assert(not result.duplicate, "first activation flagged duplicate")
    _assert(result.previous_plan_id is PlanId.FREE, f"previous plan mismatch: {result.previous_plan_id}")
    stored = await repo.get_vendor("v-1")
    _assert(stored.active_plan_id is PlanId.ECONOMY, f"plan not activated: {stored}")
    _assert(stored.cycle_start == NOW, f"cycle_start mismatch: {stored.cycle_start}")
    _assert(stored.cycle_end == NOW + timedelta(days=CYCLE_DAYS), f"cycle_end mismatch: {stored.cycle_end}")
    _assert(stored.commission_rate == 9 and stored.product_limit == 50, f"economy fields mismatch: {stored}")
    _assert(not stored.is_suspended and stored.revision == 1, f"unexpected flags after activation: {stored}")
    _assert(days_remaining(stored.cycle_end, NOW) == 31, "fresh cycle must read 31 days")
    tx = await repo.get_transaction("SUB_eco_1")
    _assert(tx is not None and tx.type is TransactionType.SUBSCRIPTION, f"subscription tx missing: {tx}")
    _assert(tx.amount == 7000 and tx.vendor_id == "v-1" and tx.user_id == "u-1", f"subscription tx mismatch: {tx}")

    await _expect(
        AlreadyOnPlanError,
        lifecycle.activate_plan("v-1", "economy", _paid("SUB_eco_2", 7000), NOW),
        "second economy activation accepted",
    )
    _assert(await repo.get_transaction("SUB_eco_2") is None, "rejected activation recorded a transaction")

    replay = await lifecycle.apply_subscription_callback(_paid("SUB_eco_1", 7000), "v-1", "economy", NOW)
    _assert(replay.duplicate, "replayed reference not flagged duplicate")
    _assert((await repo.get_vendor("v-1")).revision == 1, "replayed reference changed state")

    # Downgrade invariant.
    await _expect(
        DowngradeNotAllowedError,
        lifecycle.activate_plan("v-1", "free", now=NOW + timedelta(days=1)),
        "economy -> free allowed mid-cycle",
    )

    # paid <-> paid is always allowed.
    upgrade_at = NOW + timedelta(days=2)
    await lifecycle.activate_plan("v-1", PlanId.FIRST_CLASS, _paid("SUB_fc_1", 15000), upgrade_at)
    upgraded = await repo.get_vendor("v-1")
    _assert(upgraded.active_plan_id is PlanId.FIRST_CLASS, f"upgrade failed: {upgraded}")
    _assert(upgraded.product_limit == UNLIMITED_PRODUCTS and upgraded.commission_rate == 5, f"first_class fields: {upgraded}")
    _assert(upgraded.has_home_visibility and upgraded.free_ads_remaining == 1, f"first_class perks: {upgraded}")

    await _expect(
        DowngradeNotAllowedError,
        lifecycle.activate_plan("v-1", "free", now=upgraded.cycle_end - timedelta(seconds=1)),
        "first_class -> free allowed before cycle end",
    )
    after_end = upgraded.cycle_end + timedelta(seconds=1)
    downgraded = await lifecycle.activate_plan("v-1", "free", now=after_end)
    _assert(downgraded.transaction is None, "free activation recorded a payment")
    final = await repo.get_vendor("v-1")
    _assert(final.active_plan_id is PlanId.FREE and final.commission_rate == 15, f"downgrade fields: {final}")
    _assert(final.cycle_end == after_end + timedelta(days=CYCLE_DAYS), f"downgrade cycle mismatch: {final}")

    subs = await repo.list_transactions(transaction_type=TransactionType.SUBSCRIPTION, vendor_id="v-1")
    _assert(sorted(t.reference for t in subs) == ["SUB_eco_1", "SUB_fc_1"], f"subscription txs: {subs}")
    actions = [entry["action"] for entry in await repo.list_audit_log("v-1")]
    _assert(actions == ["vendor_registered", "plan_activated", "plan_activated", "plan_activated"], f"audit: {actions}")

    await _expect(VendorNotFoundError, lifecycle.activate_plan("missing", "free", now=NOW), "unknown vendor accepted")

    # NoSubscription vendors may pick any plan.
    await lifecycle.register_vendor("v-2")
    await lifecycle.activate_plan("v-2", "first_class", _paid("SUB_v2", 15000), NOW)
    _assert((await repo.get_vendor("v-2")).active_plan_id is PlanId.FIRST_CLASS, "no-cycle vendor blocked from paid plan")
    await lifecycle.register_vendor("v-3")
    await lifecycle.activate_plan("v-3", "free", now=NOW)
    _assert((await repo.get_vendor("v-3")).cycle_end == NOW + timedelta(days=CYCLE_DAYS), "free cycle not started")

    # purchase_plan through the gateway.
    await lifecycle.register_vendor("v-4", user_id="u-4")
    cancelled = MockPaymentGateway([PaymentStatus.CANCELLED])
    await _expect(
        PaymentRequiredError,
        lifecycle.purchase_plan("v-4", "economy", cancelled, "vendor4@example.com"),
        "cancelled charge activated a plan",
    )
    _assert(len(cancelled.charges) == 1, f"cancelled gateway charges: {cancelled.charges}")
    _assert((await repo.get_vendor("v-4")).active_plan_id is PlanId.FREE, "cancelled charge changed plan")

    gateway = MockPaymentGateway()
    bought = await lifecycle.purchase_plan("v-4", "economy", gateway, "vendor4@example.com", user_id="u-4")
    _assert(bought.state.active_plan_id is PlanId.ECONOMY, f"purchase did not activate: {bought}")
    charge = gateway.charges[0]
    _assert(charge["amount"] == 7000 and charge["currency"] == "NGN", f"charge amount mismatch: {charge}")
    _assert(charge["reference"].startswith("SUB_"), f"reference prefix mismatch: {charge}")
    _assert(charge["metadata"]["kind"] == "subscription", f"charge metadata: {charge}")
    _assert(await repo.get_transaction(charge["reference"]) is not None, "purchase transaction missing")

    await _expect(
        AlreadyOnPlanError,
        lifecycle.purchase_plan("v-4", "economy", gateway, "vendor4@example.com"),
        "repeat purchase accepted",
    )
    _assert(len(gateway.charges) == 1, "gateway charged for a rejected plan change")

    # Expiry: cycle ended yesterday, stored flag still false.
    await lifecycle.register_vendor("v-5")
    await lifecycle.activate_plan("v-5", "economy", _paid("SUB_v5", 7000), NOW - timedelta(days=CYCLE_DAYS + 1))
    expired = await repo.get_vendor("v-5")
    _assert(not expired.is_suspended, "stored suspension flag set without reconcile")
    _assert(days_remaining(expired.cycle_end, NOW) == 0, "expired cycle days_remaining != 0")
    _assert(is_effectively_suspended(expired, NOW), "expired vendor not gated as suspended")
    _assert(not can_add_product(expired, 0, NOW), "expired vendor may add products")
    status = await lifecycle.describe_subscription("v-5", NOW)
    _assert(status["days_remaining"] == 0 and status["is_suspended"] is True, f"status mismatch: {status}")
    # Expired paid vendors may fall back to free.
    await lifecycle.activate_plan("v-5", "free", now=NOW)


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="billing-smoke-subscription-lifecycle-"))
    try:
        db_path = tmpdir / "billing.db"
        os.environ["DB_PATH"] = str(db_path)
        os.environ["PAYMENT_PROVIDER"] = "mock"

        # Make project importable.
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: subscription lifecycle smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
