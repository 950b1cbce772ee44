#!/usr/bin/env python3
"""
Smoke test for order settlement:
- commission + payout always equals gross; commission rounds half up
- negative amounts / out-of-range rates are rejected
- the same payment reference is recorded once (SQLite UNIQUE), replays report duplicate
- stored order payments keep the plan and rate captured at payment time
- revenue summary separates subscription revenue, commission and payouts

Run:
  python3 scripts/smoke_settlement_split.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
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


async def _run_checks(db_path: Path) -> None:
    import aiosqlite  # noqa: WPS433

    from database import init_db  # noqa: WPS433
    from vendor_billing.errors import (  # noqa: WPS433
        InvalidCommissionRateError,
        NegativeAmountError,
        PaymentRequiredError,
    )
    from vendor_billing.models import TransactionType  # noqa: WPS433
    from vendor_billing.payments import PaymentOutcome, PaymentStatus  # noqa: WPS433
    from vendor_billing.repository import BillingRepository  # noqa: WPS433
    from vendor_billing.settlement import (  # noqa: WPS433
        SettlementEngine,
        compute_split,
        recompute_split,
    )
    from vendor_billing.subscription import SubscriptionLifecycle  # noqa: WPS433

    for gross in range(0, 2001, 7):
        for rate in range(0, 101):
            split = compute_split(gross, rate)
            _assert(
                split.platform_commission + split.vendor_payout == gross,
                f"split drift for gross={gross} rate={rate}: {split}",
            )
            _assert(0 <= split.platform_commission <= gross, f"commission out of range: {split}")

    cases = [(10, 15, 2), (50, 9, 5), (333, 5, 17), (7000, 9, 630), (0, 15, 0), (999, 0, 0), (999, 100, 999)]
    for gross, rate, commission in cases:
        split = compute_split(gross, rate)
        _assert(split.platform_commission == commission, f"rounding mismatch for {gross}@{rate}%: {split}")

    for bad_gross, bad_rate, exc_type in ((-1, 5, NegativeAmountError), (100, 101, InvalidCommissionRateError), (100, -1, InvalidCommissionRateError)):
        try:
            compute_split(bad_gross, bad_rate)
        except exc_type:
            pass
        else:
            raise AssertionError(f"compute_split accepted gross={bad_gross} rate={bad_rate}")

    await init_db(str(db_path))
    repo = BillingRepository(str(db_path))
    engine = SettlementEngine(repo)

    outcome = PaymentOutcome(provider="paystack", status=PaymentStatus.SUCCEEDED, reference="ORD_1", amount=12000)
    first = await engine.record_order_payment(
        outcome=outcome,
        vendor_id="v-1",
        user_id="u-9",
        subscription_plan="economy",
        order_id="o-1",
        metadata={"session_id": "CHECKOUT_1"},
    )
    _assert(not first.duplicate, "first order payment flagged duplicate")
    _assert(first.split.platform_commission == 1080 and first.split.vendor_payout == 10920, f"split: {first.split}")

    replay = await engine.record_order_payment(
        outcome=outcome,
        vendor_id="v-1",
        user_id="u-9",
        subscription_plan="first_class",
        order_id="o-1",
    )
    _assert(replay.duplicate, "replayed order payment not flagged duplicate")
    _assert(replay.split == first.split, f"replay must report the stored split: {replay.split}")

    async with aiosqlite.connect(str(db_path)) as db:
        async with db.execute("SELECT COUNT(*) FROM platform_transactions WHERE reference = 'ORD_1'") as cur:
            row = await cur.fetchone()
    _assert(int(row[0]) == 1, f"reference recorded {row[0]} times")

    stored = await repo.get_transaction("ORD_1")
    _assert(stored.type is TransactionType.ORDER_PAYMENT and stored.amount == 12000, f"stored tx: {stored}")
    _assert(stored.metadata["subscription_plan"] == "economy", f"captured plan lost: {stored.metadata}")
    _assert(stored.metadata["commission_rate"] == 9, f"captured rate lost: {stored.metadata}")
    _assert(stored.metadata["session_id"] == "CHECKOUT_1", f"caller metadata lost: {stored.metadata}")
    _assert(recompute_split(stored) == first.split, "recompute_split disagrees with recorded split")

    # Explicit rate wins over the plan's catalog rate.
    gifted = await engine.record_order_payment(
        outcome=PaymentOutcome(provider="mock", status=PaymentStatus.SUCCEEDED, reference="ORD_2", amount=4000),
        vendor_id="v-2",
        user_id=None,
        subscription_plan="free",
        commission_rate_percent=3,
    )
    _assert(gifted.split.platform_commission == 120, f"custom rate ignored: {gifted.split}")

    for status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        try:
            await engine.record_order_payment(
                outcome=PaymentOutcome(provider="mock", status=status, reference=f"ORD_{status.value}", amount=500),
                vendor_id="v-1",
                user_id=None,
                subscription_plan="free",
            )
        except PaymentRequiredError:
            pass
        else:
            raise AssertionError(f"{status.value} payment was settled")
    _assert(await repo.get_transaction("ORD_failed") is None, "failed payment recorded")

    try:
        await engine.record_order_payment(
            outcome=PaymentOutcome(provider="mock", status=PaymentStatus.SUCCEEDED, reference="ORD_short", amount=500),
            vendor_id="v-1",
            user_id=None,
            subscription_plan="free",
            gross_amount=800,
        )
    except PaymentRequiredError:
        pass
    else:
        raise AssertionError("underpaid order was settled")

    # Subscription revenue is platform revenue in full.
    lifecycle = SubscriptionLifecycle(repo, currency="NGN")
    await lifecycle.register_vendor("v-1")
    await lifecycle.activate_plan(
        "v-1",
        "economy",
        PaymentOutcome(provider="mock", status=PaymentStatus.SUCCEEDED, reference="SUB_1", amount=7000),
    )
    sub_tx = await repo.get_transaction("SUB_1")
    _assert(recompute_split(sub_tx) is None, "subscription transactions must not carry a split")

    summary = await engine.revenue_report()
    _assert(summary.transaction_count == 3, f"summary count: {summary}")
    _assert(summary.gross_volume == 12000 + 4000 + 7000, f"gross volume: {summary}")
    _assert(summary.subscription_revenue == 7000, f"subscription revenue: {summary}")
    _assert(summary.commission_revenue == 1080 + 120, f"commission revenue: {summary}")
    _assert(summary.vendor_payouts == 10920 + 3880, f"vendor payouts: {summary}")
    _assert(summary.platform_revenue == 7000 + 1200, f"platform revenue: {summary}")

    vendor_summary = await engine.revenue_report(vendor_id="v-2")
    _assert(vendor_summary.transaction_count == 1 and vendor_summary.vendor_payouts == 3880, f"vendor summary: {vendor_summary}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="billing-smoke-settlement-"))
    try:
        db_path = tmpdir / "billing.db"
        os.environ["DB_PATH"] = str(db_path)

        # Make project importable.
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: settlement split smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
