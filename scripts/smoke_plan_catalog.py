#!/usr/bin/env python3
"""
Smoke test for the plan catalog:
- fixed price / limit / commission table for free, economy, first_class
- unknown plan ids raise UnknownPlanError (strings are normalized first)
- list_plans returns plans in rank order

Run:
  python3 scripts/smoke_plan_catalog.py
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


def _run_checks() -> None:
    from vendor_billing.errors import UnknownPlanError, ValidationError  # noqa: WPS433
    from vendor_billing.plans import (  # noqa: WPS433
        PLAN_CATALOG,
        UNLIMITED_PRODUCTS,
        PlanId,
        get_plan,
        is_paid_plan,
        list_plans,
        parse_plan_id,
    )

    expected = {
        PlanId.FREE: (0, 20, 15, False, 0),
        PlanId.ECONOMY: (7000, 50, 9, False, 0),
        PlanId.FIRST_CLASS: (15000, UNLIMITED_PRODUCTS, 5, True, 1),
    }
    _assert(set(PLAN_CATALOG) == set(expected), f"catalog ids mismatch: {sorted(PLAN_CATALOG)}")
    for plan_id, (price, limit, rate, home, ads) in expected.items():
        plan = get_plan(plan_id)
        _assert(plan.id is plan_id, f"id mismatch for {plan_id}: {plan}")
        _assert(plan.monthly_price == price, f"price mismatch for {plan_id}: {plan.monthly_price}")
        _assert(plan.product_limit == limit, f"limit mismatch for {plan_id}: {plan.product_limit}")
        _assert(plan.commission_rate_percent == rate, f"rate mismatch for {plan_id}: {plan.commission_rate_percent}")
        _assert(plan.home_visibility is home, f"home visibility mismatch for {plan_id}")
        _assert(plan.free_ads_per_cycle == ads, f"free ads mismatch for {plan_id}")
        _assert(get_plan(plan_id.value) == plan, f"string lookup mismatch for {plan_id}")

    _assert(parse_plan_id("economy") is PlanId.ECONOMY, "exact plan id not parsed")
    _assert(not is_paid_plan("free"), "free plan reported as paid")
    _assert(is_paid_plan(PlanId.ECONOMY) and is_paid_plan("first_class"), "paid plans reported as free")

    for bad in ("gold", "", None, "first-class", "ECONOMY", " economy ", "Free"):
        try:
            get_plan(bad)  # type: ignore[arg-type]
        except UnknownPlanError as exc:
            _assert(isinstance(exc, ValidationError), "UnknownPlanError must be a ValidationError")
        else:
            raise AssertionError(f"unknown plan accepted: {bad!r}")

    ranks = [plan.id for plan in list_plans()]
    _assert(ranks == [PlanId.FREE, PlanId.ECONOMY, PlanId.FIRST_CLASS], f"rank order mismatch: {ranks}")


def main() -> None:
    # Make project importable.
    sys.path.insert(0, str(REPO_ROOT / "src"))
    _run_checks()
    print("OK: plan catalog smoke test passed.")


if __name__ == "__main__":
    main()
