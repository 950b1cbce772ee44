#!/usr/bin/env python3
"""
Smoke test for suspension write-back:
- days_remaining rounds partial days up and never goes negative
- reconcile_suspensions flags only vendors whose cycle has ended, in batches
- each suspension leaves an audit entry; a second pass changes nothing
- reactivating a suspended vendor clears the flag
- the maintenance loop performs a reconcile pass on start

Run:
  python3 scripts/smoke_suspension_reconcile.py
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
NOW = datetime(2026, 9, 15, 18, 0, tzinfo=timezone.utc)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from database import init_db  # noqa: WPS433
    from vendor_billing.maintenance import suspension_maintenance_loop  # noqa: WPS433
    from vendor_billing.models import utc_now  # noqa: WPS433
    from vendor_billing.payments import PaymentOutcome, PaymentStatus  # noqa: WPS433
    from vendor_billing.repository import BillingRepository  # noqa: WPS433
    from vendor_billing.subscription import (  # noqa: WPS433
        CYCLE_DAYS,
        SubscriptionLifecycle,
        can_add_product,
        days_remaining,
    )

    _assert(days_remaining(NOW + timedelta(days=31), NOW) == 31, "full cycle")
    _assert(days_remaining(NOW + timedelta(days=2, hours=1), NOW) == 3, "partial day must round up")
    _assert(days_remaining(NOW + timedelta(seconds=1), NOW) == 1, "last second counts as a day")
    _assert(days_remaining(NOW, NOW) == 0, "cycle end instant")
    _assert(days_remaining(NOW - timedelta(days=1), NOW) == 0, "past cycle must read 0")
    _assert(days_remaining(None, NOW) == 0, "no cycle must read 0")

    await init_db(str(db_path))
    repo = BillingRepository(str(db_path))
    lifecycle = SubscriptionLifecycle(repo, currency="NGN")

    def _paid(reference: str, amount: int) -> PaymentOutcome:
        return PaymentOutcome(provider="mock", status=PaymentStatus.SUCCEEDED, reference=reference, amount=amount)

    # v-01..v-05 expired, v-06..v-07 active, v-08 never subscribed.
    for idx in range(1, 9):
        await lifecycle.register_vendor(f"v-0{idx}")
    for idx in range(1, 6):
        await lifecycle.activate_plan(f"v-0{idx}", "economy", _paid(f"SUB_old_{idx}", 7000), NOW - timedelta(days=CYCLE_DAYS + idx))
    for idx in (6, 7):
        await lifecycle.activate_plan(f"v-0{idx}", "first_class", _paid(f"SUB_new_{idx}", 15000), NOW - timedelta(days=2))

    before = await repo.get_vendor("v-06")
    _assert(can_add_product(before, 10_000, NOW), "unlimited plan must always allow products")

    stats = await lifecycle.reconcile_suspensions(NOW, batch_size=2)
    _assert(stats["scanned"] == 5 and stats["suspended"] == 5, f"reconcile stats: {stats}")
    _assert(stats["conflicts"] == 0, f"unexpected conflicts: {stats}")
    for idx in range(1, 6):
        state = await repo.get_vendor(f"v-0{idx}")
        _assert(state.is_suspended, f"expired vendor not suspended: {state}")
        actions = [entry["action"] for entry in await repo.list_audit_log(state.vendor_id)]
        _assert(actions[-1] == "subscription_expired_suspended", f"audit missing for {state.vendor_id}: {actions}")
    for vendor_id in ("v-06", "v-07", "v-08"):
        _assert(not (await repo.get_vendor(vendor_id)).is_suspended, f"{vendor_id} suspended unexpectedly")

    second = await lifecycle.reconcile_suspensions(NOW, batch_size=2)
    _assert(second["total_changed"] == 0 and second["scanned"] == 0, f"second pass changed rows: {second}")

    capped = await lifecycle.reconcile_suspensions(NOW + timedelta(days=40), max_rows=1)
    _assert(capped["scanned"] == 1 and capped["suspended"] == 1, f"max_rows not honoured: {capped}")

    # Reactivation lifts the suspension.
    await lifecycle.activate_plan("v-01", "economy", _paid("SUB_back_1", 7000), NOW)
    revived = await repo.get_vendor("v-01")
    _assert(not revived.is_suspended and days_remaining(revived.cycle_end, NOW) == 31, f"reactivation: {revived}")
    _assert(can_add_product(revived, 49, NOW) and not can_add_product(revived, 50, NOW), "economy product limit gate")

    # Maintenance loop: first pass runs immediately.
    await lifecycle.register_vendor("v-09")
    await lifecycle.activate_plan("v-09", "economy", _paid("SUB_loop", 7000), utc_now() - timedelta(days=CYCLE_DAYS + 1))
    task = asyncio.create_task(suspension_maintenance_loop(lifecycle, interval_sec=60))
    try:
        for _ in range(100):
            if (await repo.get_vendor("v-09")).is_suspended:
                break
            await asyncio.sleep(0.05)
        _assert((await repo.get_vendor("v-09")).is_suspended, "maintenance loop did not suspend expired vendor")
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="billing-smoke-suspension-reconcile-"))
    try:
        db_path = tmpdir / "billing.db"
        os.environ["DB_PATH"] = str(db_path)
        os.environ["MAINTENANCE_ENABLED"] = "1"

        # Make project importable.
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: suspension reconcile smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
