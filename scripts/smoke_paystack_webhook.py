#!/usr/bin/env python3
"""
Smoke test for the billing HTTP API:
- webhook requests with a missing or wrong x-paystack-signature are rejected (401)
- signed charge.success for a subscription activates the plan; a replay returns duplicate
- signed charge.success for an order payment records the split once
- a confirmed charge whose plan change is refused is acknowledged and held as unapplied
- malformed metadata maps to 400, other events are ignored
- subscription status and plan purchase endpoints

Run:
  python3 scripts/smoke_paystack_webhook.py
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
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
SECRET = "sk_test_smoke_webhook"


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def _charge_event(reference: str, amount_naira: int, metadata, *, event: str = "charge.success") -> bytes:
    payload = {
        "event": event,
        "data": {
            "reference": reference,
            "status": "success",
            "amount": amount_naira * 100,
            "currency": "NGN",
            "metadata": metadata,
        },
    }
    return json.dumps(payload).encode("utf-8")


async def _run_checks(db_path: Path) -> None:
    from aiohttp.test_utils import TestClient, TestServer  # noqa: WPS433

    from api_server import create_api_app  # noqa: WPS433
    from database import init_db  # noqa: WPS433
    from vendor_billing.payments import MockPaymentGateway, PaymentStatus  # noqa: WPS433
    from vendor_billing.models import TransactionStatus  # noqa: WPS433
    from vendor_billing.plans import PlanId  # noqa: WPS433
    from vendor_billing.repository import BillingRepository  # noqa: WPS433
    from vendor_billing.settlement import SettlementEngine  # noqa: WPS433
    from vendor_billing.subscription import SubscriptionLifecycle  # noqa: WPS433

    await init_db(str(db_path))
    repo = BillingRepository(str(db_path))
    lifecycle = SubscriptionLifecycle(repo, currency="NGN")
    settlement = SettlementEngine(repo)
    gateway = MockPaymentGateway([PaymentStatus.CANCELLED])
    await lifecycle.register_vendor("v-1", user_id="u-1")
    await lifecycle.register_vendor("v-2", user_id="u-2")

    app = create_api_app(lifecycle, settlement, gateway, paystack_secret=SECRET)
    async with TestClient(TestServer(app)) as client:

        async def post_event(body: bytes, signature: str | None = None):
            headers = {"Content-Type": "application/json"}
            if signature is not None:
                headers["x-paystack-signature"] = signature
            resp = await client.post("/api/v1/paystack/webhook", data=body, headers=headers)
            return resp.status, await resp.json()

        health = await client.get("/api/v1/health")
        _assert(health.status == 200, f"health status: {health.status}")

        sub_body = _charge_event("SUB_hook_1", 7000, {"kind": "subscription", "vendor_id": "v-1", "plan_id": "economy"})
        status, payload = await post_event(sub_body)
        _assert(status == 401, f"unsigned webhook accepted: {status} {payload}")
        status, payload = await post_event(sub_body, _sign(sub_body, "sk_wrong"))
        _assert(status == 401, f"wrongly signed webhook accepted: {status} {payload}")
        _assert((await repo.get_vendor("v-1")).active_plan_id is PlanId.FREE, "rejected webhook changed state")

        status, payload = await post_event(sub_body, _sign(sub_body))
        _assert(status == 200 and payload["duplicate"] is False, f"subscription webhook: {status} {payload}")
        _assert(payload["plan_id"] == "economy", f"subscription webhook plan: {payload}")
        stored = await repo.get_vendor("v-1")
        _assert(stored.active_plan_id is PlanId.ECONOMY, f"webhook did not activate: {stored}")

        status, payload = await post_event(sub_body, _sign(sub_body))
        _assert(status == 200 and payload["duplicate"] is True, f"replayed webhook: {status} {payload}")
        _assert((await repo.get_vendor("v-1")).revision == stored.revision, "replay changed vendor state")

        # Second economy payment for an active economy vendor.
        again = _charge_event("SUB_hook_2", 7000, {"kind": "subscription", "vendor_id": "v-1", "plan_id": "economy"})
        status, payload = await post_event(again, _sign(again))
        _assert(status == 200 and payload["status"] == "unapplied", f"already-on-plan webhook: {status} {payload}")
        _assert(payload["applied"] is False and payload["plan_id"] == "economy", f"unapplied payload: {payload}")
        held = await repo.get_transaction("SUB_hook_2")
        _assert(held is not None and held.status is TransactionStatus.UNAPPLIED, f"held charge: {held}")
        _assert(held.amount == 7000 and "unapplied_reason" in held.metadata, f"held charge metadata: {held}")
        _assert((await repo.get_vendor("v-1")).revision == stored.revision, "refused change touched vendor state")
        status, payload = await post_event(again, _sign(again))
        _assert(status == 200 and payload["duplicate"] is True, f"unapplied replay: {status} {payload}")
        _assert(payload["applied"] is False, f"unapplied replay must stay unapplied: {payload}")
        revenue = await settlement.revenue_report(vendor_id="v-1")
        _assert(revenue.subscription_revenue == 7000, f"unapplied charge counted as revenue: {revenue}")

        unknown_plan = _charge_event("SUB_hook_3", 7000, {"kind": "subscription", "vendor_id": "v-1", "plan_id": "gold"})
        status, payload = await post_event(unknown_plan, _sign(unknown_plan))
        _assert(status == 400, f"unknown plan webhook: {status} {payload}")

        missing_vendor = _charge_event("SUB_hook_4", 7000, {"kind": "subscription", "plan_id": "economy"})
        status, payload = await post_event(missing_vendor, _sign(missing_vendor))
        _assert(status == 400, f"metadata without vendor: {status} {payload}")

        # Metadata may arrive JSON-encoded.
        order_meta = json.dumps(
            {"kind": "order_payment", "vendor_id": "v-2", "user_id": "u-9", "subscription_plan": "free", "commission_rate": 15}
        )
        order_body = _charge_event("CHECKOUT_1_V0_1", 2000, order_meta)
        status, payload = await post_event(order_body, _sign(order_body))
        _assert(status == 200 and payload["duplicate"] is False, f"order webhook: {status} {payload}")
        _assert(payload["platform_commission"] == 300 and payload["vendor_payout"] == 1700, f"order split: {payload}")
        status, payload = await post_event(order_body, _sign(order_body))
        _assert(status == 200 and payload["duplicate"] is True, f"order replay: {status} {payload}")
        orders = await repo.list_transactions(vendor_id="v-2")
        _assert(len(orders) == 1, f"order recorded {len(orders)} times")

        checkout_meta = {
            "kind": "order_payment",
            "vendor_id": "v-2",
            "subscription_plan": "free",
            "commission_rate": 15,
            "subtotal": 10000,
            "shipping": 2000,
            "service_charge": 250,
        }
        checkout_body = _charge_event("CHECKOUT_2_V0_2", 12250, checkout_meta)
        status, payload = await post_event(checkout_body, _sign(checkout_body))
        _assert(status == 200, f"checkout order webhook: {status} {payload}")
        _assert(
            payload["platform_commission"] == 1750 and payload["vendor_payout"] == 10500,
            f"service charge and shipping split: {payload}",
        )

        other = _charge_event("SUB_hook_5", 7000, {"kind": "subscription"}, event="transfer.success")
        status, payload = await post_event(other, _sign(other))
        _assert(status == 200 and payload["status"] == "ignored", f"non-charge event: {status} {payload}")

        bad_json = b"{not json"
        status, payload = await post_event(bad_json, _sign(bad_json))
        _assert(status == 400, f"invalid JSON: {status} {payload}")

        resp = await client.get("/api/v1/vendors/v-1/subscription")
        body = await resp.json()
        _assert(resp.status == 200, f"status endpoint: {resp.status}")
        sub = body["subscription"]
        _assert(sub["plan_id"] == "economy" and sub["commission_rate"] == 9, f"status payload: {sub}")
        _assert(sub["days_remaining"] in (30, 31) and sub["is_suspended"] is False, f"status cycle: {sub}")

        resp = await client.get("/api/v1/vendors/nobody/subscription")
        _assert(resp.status == 404, f"unknown vendor status: {resp.status}")

        purchase = {"plan_id": "first_class", "email": "vendor2@example.com"}
        resp = await client.post("/api/v1/vendors/v-2/subscription", json=purchase)
        _assert(resp.status == 402, f"cancelled purchase: {resp.status} {await resp.text()}")
        resp = await client.post("/api/v1/vendors/v-2/subscription", json=purchase)
        body = await resp.json()
        _assert(resp.status == 200 and body["plan_id"] == "first_class", f"purchase: {resp.status} {body}")
        _assert(str(body["reference"]).startswith("SUB_"), f"purchase reference: {body}")
        _assert(len(gateway.charges) == 2, f"gateway charges: {gateway.charges}")

        resp = await client.post("/api/v1/vendors/v-2/subscription", json={"plan_id": "free"})
        _assert(resp.status == 400, f"purchase without email: {resp.status}")
        resp = await client.post("/api/v1/vendors/v-2/subscription", json={"plan_id": "free", "email": "x@example.com"})
        _assert(resp.status == 409, f"downgrade purchase: {resp.status}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="billing-smoke-paystack-webhook-"))
    try:
        db_path = tmpdir / "billing.db"
        os.environ["DB_PATH"] = str(db_path)
        os.environ["PAYSTACK_SECRET_KEY"] = SECRET

        # Make project importable.
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: paystack webhook smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
