#!/usr/bin/env python3
"""
Smoke test for the Paystack REST gateway against a local fake Paystack API:
- initialize sends kobo amounts with the bearer secret and surfaces the checkout URL
- verification is polled until a terminal status (success / failed / abandoned)
- no terminal status within the attempt budget resolves to cancelled
- HTTP errors raise PaystackError; webhook signatures are HMAC-SHA512 of the raw body

Run:
  python3 scripts/smoke_paystack_gateway.py
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import os
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
SECRET = "sk_test_smoke_gateway"


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _fake_paystack_app(verify_script: dict[str, list[str]], initialized: dict[str, dict]):
    from aiohttp import web  # noqa: WPS433

    def _authorized(request: web.Request) -> bool:
        return request.headers.get("Authorization") == f"Bearer {SECRET}"

    async def initialize(request: web.Request) -> web.Response:
        if not _authorized(request):
            return web.json_response({"status": False, "message": "Invalid key"}, status=401)
        body = await request.json()
        initialized[body["reference"]] = body
        return web.json_response(
            {
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{body['reference']}",
                    "access_code": f"ac_{body['reference']}",
                    "reference": body["reference"],
                },
            }
        )

    async def verify(request: web.Request) -> web.Response:
        reference = request.match_info["reference"]
        script = verify_script.get(reference) or ["ongoing"]
        status = script.pop(0) if len(script) > 1 else script[0]
        return web.json_response(
            {
                "status": True,
                "message": "Verification successful",
                "data": {
                    "reference": reference,
                    "status": status,
                    "amount": initialized[reference]["amount"],
                    "currency": initialized[reference]["currency"],
                },
            }
        )

    app = web.Application()
    app.router.add_post("/transaction/initialize", initialize)
    app.router.add_get("/transaction/verify/{reference}", verify)
    return app


async def _run_checks() -> None:
    from aiohttp.test_utils import TestServer  # noqa: WPS433

    from vendor_billing.payments import (  # noqa: WPS433
        PaymentStatus,
        PaystackError,
        PaystackGateway,
        outcome_from_transaction,
        verify_webhook_signature,
    )
    from vendor_billing.payments.paystack import from_kobo, to_kobo  # noqa: WPS433

    _assert(to_kobo(7000) == 700000 and from_kobo("1500000") == 15000, "kobo conversion mismatch")
    _assert(from_kobo(None) == 0 and from_kobo("bad") == 0, "malformed kobo must read 0")

    body = b'{"event":"charge.success"}'
    signature = hmac.new(SECRET.encode("utf-8"), body, hashlib.sha512).hexdigest()
    _assert(verify_webhook_signature(secret=SECRET, body=body, signature=signature), "valid signature rejected")
    _assert(not verify_webhook_signature(secret=SECRET, body=body + b" ", signature=signature), "tampered body accepted")
    _assert(not verify_webhook_signature(secret="", body=body, signature=signature), "empty secret accepted")
    _assert(outcome_from_transaction({"status": "ongoing", "reference": "x"}) is None, "pending status treated as terminal")
    reversed_outcome = outcome_from_transaction({"status": "reversed", "reference": "x", "amount": 100})
    _assert(reversed_outcome.status is PaymentStatus.FAILED, f"reversed mapping: {reversed_outcome}")

    verify_script = {
        "SUB_ok": ["ongoing", "ongoing", "success"],
        "SUB_abandoned": ["abandoned"],
        "SUB_failed": ["failed"],
        "SUB_stuck": ["ongoing"],
    }
    initialized: dict[str, dict] = {}
    intents = []

    async def _record_intent(intent) -> None:
        intents.append(intent)

    async with TestServer(_fake_paystack_app(verify_script, initialized)) as server:
        base_url = f"http://{server.host}:{server.port}"
        gateway = PaystackGateway(
            SECRET,
            base_url=base_url,
            verify_attempts=4,
            verify_delay_sec=0.01,
            on_intent=_record_intent,
        )

        ok = await gateway.initiate_charge(
            amount=7000,
            currency="NGN",
            reference="SUB_ok",
            email="vendor@example.com",
            metadata={"kind": "subscription", "vendor_id": "v-1", "plan_id": "economy"},
        )
        _assert(ok.status is PaymentStatus.SUCCEEDED and ok.amount == 7000, f"success outcome: {ok}")
        _assert(initialized["SUB_ok"]["amount"] == 700000, f"initialize amount not in kobo: {initialized['SUB_ok']}")
        _assert(initialized["SUB_ok"]["metadata"]["kind"] == "subscription", "metadata not forwarded")
        _assert(intents and intents[0].authorization_url.endswith("/SUB_ok"), f"intent callback: {intents}")

        abandoned = await gateway.initiate_charge(
            amount=500, currency="NGN", reference="SUB_abandoned", email="a@example.com", metadata={}
        )
        _assert(abandoned.status is PaymentStatus.CANCELLED, f"abandoned outcome: {abandoned}")

        failed = await gateway.initiate_charge(
            amount=500, currency="NGN", reference="SUB_failed", email="a@example.com", metadata={}
        )
        _assert(failed.status is PaymentStatus.FAILED, f"failed outcome: {failed}")

        stuck = await gateway.initiate_charge(
            amount=500, currency="NGN", reference="SUB_stuck", email="a@example.com", metadata={}
        )
        _assert(stuck.status is PaymentStatus.CANCELLED, f"stuck outcome: {stuck}")
        _assert(stuck.raw.get("reason") == "verification_timeout", f"stuck reason: {stuck.raw}")

        wrong_key = PaystackGateway("sk_wrong", base_url=base_url, verify_attempts=1, verify_delay_sec=0)
        try:
            await wrong_key.initiate_charge(
                amount=500, currency="NGN", reference="SUB_denied", email="a@example.com", metadata={}
            )
        except PaystackError as exc:
            _assert(exc.http_status == 401, f"PaystackError status: {exc.http_status}")
        else:
            raise AssertionError("unauthorized initialize did not raise")

    try:
        PaystackGateway("")
    except ValueError:
        pass
    else:
        raise AssertionError("gateway accepted an empty secret key")


def main() -> None:
    os.environ.setdefault("PAYMENT_PROVIDER", "paystack")

    # Make project importable.
    sys.path.insert(0, str(REPO_ROOT / "src"))

    asyncio.run(_run_checks())
    print("OK: paystack gateway smoke test passed.")


if __name__ == "__main__":
    main()
