"""
API server for payment gateway callbacks and vendor subscription status.

Endpoints:
    POST /api/v1/paystack/webhook                  (x-paystack-signature required)
    GET  /api/v1/vendors/{vendor_id}/subscription
    POST /api/v1/vendors/{vendor_id}/subscription   {"plan_id": "...", "email": "..."}
    GET  /api/v1/health

Webhook body (charge.success):
{
    "event": "charge.success",
    "data": {
        "reference": "SUB_1700000000000_ab12cd34",
        "status": "success",
        "amount": 700000,
        "currency": "NGN",
        "metadata": {"kind": "subscription", "vendor_id": "v-1", "plan_id": "economy"}
    }
}

Response: {"status": "ok", "applied": true, "duplicate": false, ...}
("status": "unapplied" when the charge is kept but the plan change was refused)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from config import CFG
from vendor_billing.errors import (
    BusinessRuleViolation,
    ConcurrencyError,
    PaymentRequiredError,
    ValidationError,
    VendorNotFoundError,
)
from vendor_billing.models import iso_or_none
from vendor_billing.payments.base import PaymentGateway
from vendor_billing.payments.paystack import outcome_from_transaction, verify_webhook_signature
from vendor_billing.settlement import SettlementEngine
from vendor_billing.subscription import SubscriptionLifecycle


logger = logging.getLogger(__name__)

LIFECYCLE_KEY = web.AppKey("lifecycle", SubscriptionLifecycle)
SETTLEMENT_KEY = web.AppKey("settlement", SettlementEngine)
PAYSTACK_SECRET_KEY = web.AppKey("paystack_secret", str)
GATEWAY_KEY = web.AppKey("gateway", PaymentGateway)

SIGNATURE_HEADER = "x-paystack-signature"


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=status)


def _extract_metadata(data: dict[str, Any]) -> dict[str, Any]:
    """Paystack echoes metadata either as an object or as a JSON string."""
    raw = data.get("metadata")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return raw if isinstance(raw, dict) else {}


async def _handle_subscription_charge(request: web.Request, outcome, metadata: dict[str, Any]) -> web.Response:
    vendor_id = str(metadata.get("vendor_id") or "").strip()
    plan_id = str(metadata.get("plan_id") or "")
    if not vendor_id or not plan_id:
        return _error("metadata.vendor_id and metadata.plan_id are required", 400)

    result = await request.app[LIFECYCLE_KEY].apply_subscription_callback(outcome, vendor_id, plan_id)
    # Refused plan changes are still acknowledged; the charge is held as unapplied.
    return web.json_response(
        {
            "status": "ok" if result.applied else "unapplied",
            "applied": result.applied,
            "duplicate": result.duplicate,
            "vendor_id": result.state.vendor_id,
            "plan_id": result.state.active_plan_id.value,
            "cycle_end": iso_or_none(result.state.cycle_end),
        }
    )


async def _handle_order_charge(request: web.Request, outcome, metadata: dict[str, Any]) -> web.Response:
    vendor_id = str(metadata.get("vendor_id") or "").strip()
    if not vendor_id:
        return _error("metadata.vendor_id is required", 400)

    commission_rate = metadata.get("commission_rate")
    result = await request.app[SETTLEMENT_KEY].record_order_payment(
        outcome=outcome,
        vendor_id=vendor_id,
        user_id=metadata.get("user_id"),
        subscription_plan=metadata.get("subscription_plan") or "free",
        commission_rate_percent=None if commission_rate is None else int(commission_rate),
        service_charge=int(metadata.get("service_charge") or 0),
        shipping=int(metadata.get("shipping") or 0),
        order_id=metadata.get("order_id"),
        metadata=metadata,
    )
    payload: dict[str, Any] = {
        "status": "ok",
        "duplicate": result.duplicate,
        "reference": result.transaction.reference,
    }
    if result.split is not None:
        payload["platform_commission"] = result.split.platform_commission
        payload["vendor_payout"] = result.split.vendor_payout
    return web.json_response(payload)


async def paystack_webhook_handler(request: web.Request) -> web.Response:
    """Paystack event receiver; only signed charge.success events change state."""
    body = await request.read()
    signature = str(request.headers.get(SIGNATURE_HEADER) or "")
    if not verify_webhook_signature(secret=request.app[PAYSTACK_SECRET_KEY], body=body, signature=signature):
        logger.warning("Rejected Paystack webhook with invalid signature from %s", request.remote)
        return _error("Invalid signature", 401)

    try:
        payload = json.loads(body)
    except ValueError:
        return _error("Invalid JSON", 400)
    if not isinstance(payload, dict):
        return _error("Invalid JSON", 400)

    event = str(payload.get("event") or "")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    if event != "charge.success":
        logger.info("Ignoring Paystack event %s", event or "<empty>")
        return web.json_response({"status": "ignored", "event": event})

    outcome = outcome_from_transaction(data)
    if outcome is None or not outcome.succeeded or not outcome.reference:
        return web.json_response({"status": "ignored", "event": event})

    metadata = _extract_metadata(data)
    kind = str(metadata.get("kind") or "").strip().lower()
    try:
        if kind == "subscription":
            return await _handle_subscription_charge(request, outcome, metadata)
        if kind == "order_payment":
            return await _handle_order_charge(request, outcome, metadata)
    except ValidationError as exc:
        logger.warning("Webhook rejected: reference=%s error=%s", outcome.reference, exc)
        return _error(str(exc), 400)
    except (BusinessRuleViolation, ConcurrencyError) as exc:
        logger.warning("Webhook conflict: reference=%s error=%s", outcome.reference, exc)
        return _error(str(exc), 409)

    logger.info("Ignoring charge.success with unknown kind=%r reference=%s", kind, outcome.reference)
    return web.json_response({"status": "ignored", "event": event})


async def vendor_subscription_handler(request: web.Request) -> web.Response:
    vendor_id = request.match_info["vendor_id"]
    try:
        status = await request.app[LIFECYCLE_KEY].describe_subscription(vendor_id)
    except VendorNotFoundError:
        return _error(f"Vendor {vendor_id} not found", 404)
    return web.json_response({"status": "ok", "subscription": status})


async def vendor_purchase_handler(request: web.Request) -> web.Response:
    """Charge and activate a plan for the vendor through the configured gateway."""
    gateway = request.app.get(GATEWAY_KEY)
    if gateway is None:
        return _error("Payment gateway not configured", 503)
    try:
        data = await request.json()
    except ValueError:
        return _error("Invalid JSON", 400)
    if not isinstance(data, dict):
        return _error("Invalid JSON", 400)
    email = str(data.get("email") or "").strip()
    if not email:
        return _error("email is required", 400)

    vendor_id = request.match_info["vendor_id"]
    try:
        result = await request.app[LIFECYCLE_KEY].purchase_plan(
            vendor_id,
            data.get("plan_id"),
            gateway,
            email,
            user_id=data.get("user_id"),
        )
    except VendorNotFoundError:
        return _error(f"Vendor {vendor_id} not found", 404)
    except ValidationError as exc:
        return _error(str(exc), 400)
    except PaymentRequiredError as exc:
        return _error(str(exc), 402)
    except (BusinessRuleViolation, ConcurrencyError) as exc:
        return _error(str(exc), 409)
    return web.json_response(
        {
            "status": "ok" if result.applied else "unapplied",
            "applied": result.applied,
            "plan_id": result.state.active_plan_id.value,
            "cycle_end": iso_or_none(result.state.cycle_end),
            "reference": result.transaction.reference if result.transaction else None,
        }
    )


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "vendor-billing-api",
    })


def create_api_app(
    lifecycle: SubscriptionLifecycle,
    settlement: SettlementEngine,
    gateway: PaymentGateway | None = None,
    *,
    paystack_secret: str | None = None,
) -> web.Application:
    """Build the aiohttp application around the billing services."""
    app = web.Application()
    app[LIFECYCLE_KEY] = lifecycle
    app[SETTLEMENT_KEY] = settlement
    app[PAYSTACK_SECRET_KEY] = CFG.paystack_secret_key if paystack_secret is None else paystack_secret
    if gateway is not None:
        app[GATEWAY_KEY] = gateway

    app.router.add_post("/api/v1/paystack/webhook", paystack_webhook_handler)
    app.router.add_get("/api/v1/vendors/{vendor_id}/subscription", vendor_subscription_handler)
    app.router.add_post("/api/v1/vendors/{vendor_id}/subscription", vendor_purchase_handler)
    app.router.add_get("/api/v1/health", health_handler)
    app.router.add_get("/", health_handler)
    return app


async def start_api_server(app: web.Application) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, CFG.api_host, CFG.api_port)
    await site.start()

    logger.info("API server started on %s:%s", CFG.api_host, CFG.api_port)
    return runner


async def stop_api_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("API server stopped")
