#!/usr/bin/env python3
"""
Smoke test for optimistic concurrency on plan activation:
- a single concurrent write between read and commit is retried once and succeeds
- persistent interference raises ConcurrentModificationError without recording payment
- two concurrent paid activations on SQLite both land, one after the other
- concurrent purchases of the same vendor charge once; the loser is refused before paying
- a charge that succeeds after the plan changed underneath is kept as unapplied
- an unsettled charge keeps the purchase claim until confirmed or expired

Run:
  python3 scripts/smoke_subscription_concurrency.py
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
NOW = datetime(2026, 5, 10, 8, 30, tzinfo=timezone.utc)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from dataclasses import replace  # noqa: WPS433

    from database import init_db  # noqa: WPS433
    from vendor_billing.errors import (  # noqa: WPS433
        ConcurrentModificationError,
        PaymentRequiredError,
        PurchaseInProgressError,
    )
    from vendor_billing.memory_store import MemoryBillingStore  # noqa: WPS433
    from vendor_billing.models import TransactionStatus, TransactionType  # noqa: WPS433
    from vendor_billing.payments import MockPaymentGateway, PaymentOutcome, PaymentStatus  # noqa: WPS433
    from vendor_billing.payments.base import VERIFICATION_TIMEOUT_REASON  # noqa: WPS433
    from vendor_billing.plans import PlanId  # noqa: WPS433
    from vendor_billing.repository import BillingRepository  # noqa: WPS433
    from vendor_billing.subscription import PURCHASE_CLAIM_TTL, SubscriptionLifecycle  # noqa: WPS433

    class InterferingStore(MemoryBillingStore):
        """Bumps the stored revision right before each of the first `interference` commits."""

        def __init__(self, interference: int) -> None:
            super().__init__()
            self.interference = interference
            self.commit_calls = 0

        async def commit_vendor_update(self, state, *, expected_revision, **kwargs):
            self.commit_calls += 1
            if self.interference > 0:
                self.interference -= 1
                current = self._vendors[state.vendor_id]
                self._vendors[state.vendor_id] = replace(current, revision=current.revision + 1)
            return await super().commit_vendor_update(state, expected_revision=expected_revision, **kwargs)

    def _paid(reference: str, amount: int) -> PaymentOutcome:
        return PaymentOutcome(provider="mock", status=PaymentStatus.SUCCEEDED, reference=reference, amount=amount)

    once = InterferingStore(interference=1)
    lifecycle = SubscriptionLifecycle(once, currency="NGN")
    await lifecycle.register_vendor("v-1")
    result = await lifecycle.activate_plan("v-1", "economy", _paid("SUB_retry", 7000), NOW)
    _assert(once.commit_calls == 2, f"expected one retry, commit calls={once.commit_calls}")
    _assert(result.state.active_plan_id is PlanId.ECONOMY, f"retry did not activate: {result.state}")
    _assert(await once.get_transaction("SUB_retry") is not None, "retry lost the subscription transaction")

    always = InterferingStore(interference=10)
    lifecycle = SubscriptionLifecycle(always, currency="NGN")
    await lifecycle.register_vendor("v-2")
    try:
        await lifecycle.activate_plan("v-2", "economy", _paid("SUB_conflict", 7000), NOW)
    except ConcurrentModificationError:
        pass
    else:
        raise AssertionError("persistent interference did not raise ConcurrentModificationError")
    _assert(always.commit_calls == 2, f"activation must give up after one retry, calls={always.commit_calls}")
    _assert(await always.get_transaction("SUB_conflict") is None, "conflicted activation recorded a payment")
    _assert((await always.get_vendor("v-2")).active_plan_id is PlanId.FREE, "conflicted activation changed plan")

    await init_db(str(db_path))
    repo = BillingRepository(str(db_path))
    lifecycle = SubscriptionLifecycle(repo, currency="NGN")
    await lifecycle.register_vendor("v-3")
    await asyncio.gather(
        lifecycle.activate_plan("v-3", "economy", _paid("SUB_race_a", 7000), NOW),
        lifecycle.activate_plan("v-3", "first_class", _paid("SUB_race_b", 15000), NOW),
    )
    stored = await repo.get_vendor("v-3")
    _assert(stored.revision == 2, f"both activations must commit exactly once: {stored}")
    _assert(stored.active_plan_id in (PlanId.ECONOMY, PlanId.FIRST_CLASS), f"unexpected plan: {stored}")
    txs = await repo.list_transactions(transaction_type=TransactionType.SUBSCRIPTION, vendor_id="v-3")
    _assert(sorted(tx.reference for tx in txs) == ["SUB_race_a", "SUB_race_b"], f"race transactions: {txs}")

    # Double-clicked purchase: both calls start before either charge settles.
    store = MemoryBillingStore()
    lifecycle = SubscriptionLifecycle(store, currency="NGN")
    await lifecycle.register_vendor("v-4", user_id="u-4")
    slow = MockPaymentGateway(delay_sec=0.05)
    results = await asyncio.gather(
        lifecycle.purchase_plan("v-4", "economy", slow, "vendor4@example.com", now=NOW),
        lifecycle.purchase_plan("v-4", "economy", slow, "vendor4@example.com", now=NOW),
        return_exceptions=True,
    )
    activated = [r for r in results if not isinstance(r, BaseException)]
    refused = [r for r in results if isinstance(r, BaseException)]
    _assert(len(activated) == 1 and activated[0].applied, f"exactly one purchase must activate: {results}")
    _assert(len(refused) == 1 and isinstance(refused[0], PurchaseInProgressError), f"second purchase: {refused}")
    _assert(len(slow.charges) == 1, f"vendor charged {len(slow.charges)} times: {slow.charges}")
    txs = await store.list_transactions(transaction_type=TransactionType.SUBSCRIPTION, vendor_id="v-4")
    _assert(len(txs) == len(slow.charges), f"charges {slow.charges} vs transactions {txs}")
    v4 = await store.get_vendor("v-4")
    _assert(v4.active_plan_id is PlanId.ECONOMY and v4.pending_purchase_reference is None, f"claim not cleared: {v4}")

    # Same race on SQLite, where reads and writes interleave.
    await _sqlite_purchase_race(repo)

    # Plan changes underneath a charge in flight: the money is kept, flagged unapplied.
    class SideChannelGateway(MockPaymentGateway):
        async def initiate_charge(self, **kwargs):
            await lifecycle.activate_plan("v-5", "economy", _paid("SUB_side", 7000), NOW)
            return await super().initiate_charge(**kwargs)

    await lifecycle.register_vendor("v-5")
    side = SideChannelGateway()
    held = await lifecycle.purchase_plan("v-5", "economy", side, "vendor5@example.com", now=NOW)
    _assert(not held.applied and not held.duplicate, f"refused change reported as applied: {held}")
    held_tx = await store.get_transaction(side.charges[0]["reference"])
    _assert(held_tx is not None and held_tx.status is TransactionStatus.UNAPPLIED, f"succeeded charge dropped: {held_tx}")
    _assert(held_tx.amount == 7000, f"held amount: {held_tx}")
    _assert((await store.get_vendor("v-5")).pending_purchase_reference is None, "claim kept after unapplied charge")
    actions = [entry["action"] for entry in await store.list_audit_log("v-5")]
    _assert("subscription_payment_unapplied" in actions, f"unapplied charge not audited: {actions}")

    # Verification timed out: the claim stays until the webhook confirms the charge.
    class UnsettledGateway:
        provider_name = "mock"

        def __init__(self) -> None:
            self.references: list[str] = []

        async def initiate_charge(self, *, amount, currency, reference, email, metadata):
            self.references.append(reference)
            return PaymentOutcome(
                provider=self.provider_name,
                status=PaymentStatus.CANCELLED,
                reference=reference,
                amount=amount,
                currency=currency,
                raw={"reason": VERIFICATION_TIMEOUT_REASON},
            )

    await lifecycle.register_vendor("v-6")
    unsettled = UnsettledGateway()
    try:
        await lifecycle.purchase_plan("v-6", "first_class", unsettled, "vendor6@example.com", now=NOW)
    except PaymentRequiredError:
        pass
    else:
        raise AssertionError("unsettled charge activated the plan")
    pending = await store.get_vendor("v-6")
    _assert(pending.pending_purchase_reference == unsettled.references[0], f"claim released too early: {pending}")
    try:
        await lifecycle.purchase_plan("v-6", "first_class", MockPaymentGateway(), "vendor6@example.com", now=NOW)
    except PurchaseInProgressError:
        pass
    else:
        raise AssertionError("second purchase allowed while the first charge is unsettled")
    late = await lifecycle.apply_subscription_callback(_paid(unsettled.references[0], 15000), "v-6", "first_class", NOW)
    _assert(late.applied and late.state.active_plan_id is PlanId.FIRST_CLASS, f"late confirmation: {late}")
    _assert(late.state.pending_purchase_reference is None, f"confirmation did not clear claim: {late.state}")

    # Abandoned claims expire.
    await lifecycle.register_vendor("v-7")
    stale = await store.get_vendor("v-7")
    stale.pending_purchase_reference = "SUB_abandoned"
    stale.pending_purchase_started_at = NOW - PURCHASE_CLAIM_TTL - timedelta(minutes=1)
    await store.commit_vendor_update(stale, expected_revision=stale.revision)
    revived = await lifecycle.purchase_plan("v-7", "economy", MockPaymentGateway(), "vendor7@example.com", now=NOW)
    _assert(revived.applied and revived.state.active_plan_id is PlanId.ECONOMY, f"expired claim blocked purchase: {revived}")


async def _sqlite_purchase_race(repo) -> None:
    from vendor_billing.errors import BusinessRuleViolation  # noqa: WPS433
    from vendor_billing.models import TransactionType  # noqa: WPS433
    from vendor_billing.payments import MockPaymentGateway  # noqa: WPS433
    from vendor_billing.subscription import SubscriptionLifecycle  # noqa: WPS433

    lifecycle = SubscriptionLifecycle(repo, currency="NGN")
    await lifecycle.register_vendor("v-8")
    slow = MockPaymentGateway(delay_sec=0.2)
    results = await asyncio.gather(
        lifecycle.purchase_plan("v-8", "economy", slow, "vendor8@example.com", now=NOW),
        lifecycle.purchase_plan("v-8", "economy", slow, "vendor8@example.com", now=NOW),
        return_exceptions=True,
    )
    activated = [r for r in results if not isinstance(r, BaseException)]
    refused = [r for r in results if isinstance(r, BaseException)]
    _assert(len(activated) == 1, f"exactly one SQLite purchase must activate: {results}")
    _assert(len(refused) == 1 and isinstance(refused[0], BusinessRuleViolation), f"SQLite loser: {refused}")
    _assert(len(slow.charges) == 1, f"SQLite vendor charged {len(slow.charges)} times")
    txs = await repo.list_transactions(transaction_type=TransactionType.SUBSCRIPTION, vendor_id="v-8")
    _assert(len(txs) == 1, f"SQLite purchase transactions: {txs}")
    stored = await repo.get_vendor("v-8")
    _assert(stored.pending_purchase_reference is None, f"SQLite claim not cleared: {stored}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="billing-smoke-subscription-concurrency-"))
    try:
        db_path = tmpdir / "billing.db"
        os.environ["DB_PATH"] = str(db_path)

        # Make project importable.
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: subscription concurrency smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
