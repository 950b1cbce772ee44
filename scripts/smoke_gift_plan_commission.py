#!/usr/bin/env python3
"""
Smoke test for admin-granted gift plans:
- an active gift plan overrides the commission rate (custom rate or gift plan's catalog rate)
- the override ends when the gift expires
- gift grants are validated and audited; they do not change the paid plan itself

Run:
  python3 scripts/smoke_gift_plan_commission.py
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
NOW = datetime(2026, 4, 20, 10, 0, tzinfo=timezone.utc)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from database import init_db  # noqa: WPS433
    from vendor_billing.errors import (  # noqa: WPS433
        InvalidCommissionRateError,
        UnknownPlanError,
        ValidationError,
        VendorNotFoundError,
    )
    from vendor_billing.plans import PlanId  # noqa: WPS433
    from vendor_billing.repository import BillingRepository  # noqa: WPS433
    from vendor_billing.subscription import SubscriptionLifecycle, effective_commission_rate  # noqa: WPS433

    await init_db(str(db_path))
    repo = BillingRepository(str(db_path))
    lifecycle = SubscriptionLifecycle(repo, currency="NGN")
    await lifecycle.register_vendor("v-1")
    await lifecycle.register_vendor("v-2")

    plain = await repo.get_vendor("v-1")
    _assert(effective_commission_rate(plain, NOW) == 15, "free vendor must pay 15%")

    granted = await lifecycle.grant_gift_plan("v-1", "first_class", days=14, now=NOW)
    _assert(granted.gift_plan is PlanId.FIRST_CLASS, f"gift plan not stored: {granted}")
    stored = await repo.get_vendor("v-1")
    _assert(stored.active_plan_id is PlanId.FREE, "gift grant must not change the active plan")
    _assert(stored.gift_plan_expires_at == NOW + timedelta(days=14), f"gift expiry: {stored.gift_plan_expires_at}")
    _assert(effective_commission_rate(stored, NOW) == 5, "gift plan catalog rate not applied")
    _assert(effective_commission_rate(stored, NOW + timedelta(days=14)) == 15, "gift must end at expiry")

    await lifecycle.grant_gift_plan("v-2", "economy", days=7, commission_rate=2, now=NOW)
    custom = await repo.get_vendor("v-2")
    _assert(effective_commission_rate(custom, NOW + timedelta(days=6)) == 2, "custom gift rate not applied")
    _assert(effective_commission_rate(custom, NOW + timedelta(days=8)) == 15, "custom gift outlived expiry")
    status = await lifecycle.describe_subscription("v-2", NOW)
    _assert(status["commission_rate"] == 2 and status["gift_plan"] == "economy", f"status: {status}")

    actions = [entry["action"] for entry in await repo.list_audit_log("v-2")]
    _assert("gift_plan_granted" in actions, f"gift grant not audited: {actions}")

    for kwargs, exc_type in (
        ({"plan_id": "economy", "days": 0}, ValidationError),
        ({"plan_id": "economy", "days": 5, "commission_rate": 101}, InvalidCommissionRateError),
        ({"plan_id": "platinum", "days": 5}, UnknownPlanError),
    ):
        try:
            await lifecycle.grant_gift_plan("v-1", now=NOW, **kwargs)
        except exc_type:
            pass
        else:
            raise AssertionError(f"invalid gift grant accepted: {kwargs}")

    try:
        await lifecycle.grant_gift_plan("ghost", "economy", days=3, now=NOW)
    except VendorNotFoundError:
        pass
    else:
        raise AssertionError("gift granted to unknown vendor")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="billing-smoke-gift-plan-"))
    try:
        db_path = tmpdir / "billing.db"
        os.environ["DB_PATH"] = str(db_path)

        # Make project importable.
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: gift plan commission smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
