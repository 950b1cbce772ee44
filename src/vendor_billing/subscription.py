"""Vendor subscription lifecycle.

States: NoSubscription -> Active(plan) -> Expired -> Active(new plan), and
Suspended -> Active(...). Expiry is derived from ``cycle_end`` and the server
clock; the stored ``is_suspended`` flag is written back by the periodic
reconcile but never trusted as the only signal.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from config import CFG
from vendor_billing.errors import (
    AlreadyOnPlanError,
    BusinessRuleViolation,
    ConcurrentModificationError,
    DowngradeNotAllowedError,
    DuplicateReferenceError,
    InvalidCommissionRateError,
    PaymentRequiredError,
    PurchaseInProgressError,
    ValidationError,
    VendorNotFoundError,
)
from vendor_billing.models import (
    Transaction,
    TransactionStatus,
    VendorSubscriptionState,
    iso_or_none,
    utc_now,
)
from vendor_billing.payments.base import PaymentGateway, PaymentOutcome, generate_reference
from vendor_billing.plans import UNLIMITED_PRODUCTS, PlanDefinition, PlanId, get_plan
from vendor_billing.repository import BillingStore
from vendor_billing.settlement import subscription_transaction


logger = logging.getLogger(__name__)

CYCLE_DAYS = 31
CAS_ATTEMPTS = 2
SUSPENSION_RECONCILE_BATCH_SIZE = 50
SUBSCRIPTION_REFERENCE_PREFIX = "SUB"
PURCHASE_CLAIM_TTL = timedelta(minutes=15)


def days_remaining(cycle_end: datetime | None, now: datetime) -> int:
    """Whole days left in the cycle, rounded up; 0 once the cycle has ended."""
    if cycle_end is None:
        return 0
    delta = cycle_end - now
    if delta <= timedelta(0):
        return 0
    return math.ceil(delta / timedelta(days=1))


def is_cycle_expired(state: VendorSubscriptionState, now: datetime) -> bool:
    return state.cycle_end is not None and days_remaining(state.cycle_end, now) == 0


def is_effectively_suspended(state: VendorSubscriptionState, now: datetime) -> bool:
    return bool(state.is_suspended) or is_cycle_expired(state, now)


def effective_commission_rate(state: VendorSubscriptionState, now: datetime) -> int:
    """Commission percent for new order payments, honouring an unexpired gift plan."""
    if state.gift_plan is not None and state.gift_plan_expires_at is not None and now < state.gift_plan_expires_at:
        if state.gift_commission_rate is not None:
            return int(state.gift_commission_rate)
        return get_plan(state.gift_plan).commission_rate_percent
    return int(state.commission_rate)


def has_open_purchase(state: VendorSubscriptionState, now: datetime) -> bool:
    """A paid purchase is being charged for this vendor and has not timed out."""
    if state.pending_purchase_reference is None or state.pending_purchase_started_at is None:
        return False
    return now - state.pending_purchase_started_at < PURCHASE_CLAIM_TTL


def can_add_product(state: VendorSubscriptionState, current_count: int, now: datetime) -> bool:
    if is_effectively_suspended(state, now):
        return False
    if int(state.product_limit) == UNLIMITED_PRODUCTS:
        return True
    return int(current_count) < int(state.product_limit)


@dataclass(frozen=True)
class PlanChangeDecision:
    allowed: bool
    target: PlanDefinition
    current_plan_id: PlanId
    reason: str = ""
    violation: type[BusinessRuleViolation] | None = None

    @property
    def requires_payment(self) -> bool:
        return self.target.is_paid

    @property
    def amount_due(self) -> int:
        return self.target.monthly_price

    def raise_if_denied(self) -> None:
        if not self.allowed and self.violation is not None:
            raise self.violation(self.reason)


def can_change_plan(
    state: VendorSubscriptionState,
    plan_id: PlanId | str,
    now: datetime,
) -> PlanChangeDecision:
    target = get_plan(plan_id)
    current = get_plan(state.active_plan_id)
    has_cycle = state.cycle_end is not None
    # NoSubscription, expired and suspended vendors may pick any plan.
    locked_in = has_cycle and not is_effectively_suspended(state, now)

    if locked_in and target.id is current.id:
        return PlanChangeDecision(
            allowed=False,
            target=target,
            current_plan_id=current.id,
            reason=f"Vendor {state.vendor_id} is already on the {target.title}",
            violation=AlreadyOnPlanError,
        )
    if locked_in and current.is_paid and not target.is_paid:
        return PlanChangeDecision(
            allowed=False,
            target=target,
            current_plan_id=current.id,
            reason=(
                f"Vendor {state.vendor_id} cannot move from {current.title} to {target.title} "
                f"before the cycle ends ({days_remaining(state.cycle_end, now)} days remaining)"
            ),
            violation=DowngradeNotAllowedError,
        )
    return PlanChangeDecision(allowed=True, target=target, current_plan_id=current.id)


def apply_plan(state: VendorSubscriptionState, plan: PlanDefinition, now: datetime) -> None:
    state.active_plan_id = plan.id
    state.cycle_start = now
    state.cycle_end = now + timedelta(days=CYCLE_DAYS)
    state.is_suspended = False
    state.product_limit = plan.product_limit
    state.commission_rate = plan.commission_rate_percent
    state.has_home_visibility = plan.home_visibility
    state.free_ads_remaining = plan.free_ads_per_cycle
    state.pending_purchase_reference = None
    state.pending_purchase_started_at = None


@dataclass(frozen=True)
class ActivationResult:
    state: VendorSubscriptionState
    plan: PlanDefinition
    previous_plan_id: PlanId
    transaction: Transaction | None = None
    duplicate: bool = False
    applied: bool = True


class SubscriptionLifecycle:
    def __init__(self, store: BillingStore, *, currency: str | None = None) -> None:
        self.store = store
        self.currency = currency or CFG.payment_currency

    async def _require_vendor(self, vendor_id: str) -> VendorSubscriptionState:
        state = await self.store.get_vendor(str(vendor_id))
        if state is None:
            raise VendorNotFoundError(str(vendor_id))
        return state

    async def register_vendor(
        self,
        vendor_id: str,
        *,
        user_id: str | None = None,
        store_name: str | None = None,
    ) -> VendorSubscriptionState:
        """Create the free-plan state for a newly approved vendor; no-op when it exists."""
        existing = await self.store.get_vendor(str(vendor_id))
        if existing is not None:
            return existing
        free = get_plan(PlanId.FREE)
        state = await self.store.create_vendor(
            VendorSubscriptionState(
                vendor_id=str(vendor_id),
                active_plan_id=free.id,
                product_limit=free.product_limit,
                commission_rate=free.commission_rate_percent,
                has_home_visibility=free.home_visibility,
                free_ads_remaining=free.free_ads_per_cycle,
                user_id=user_id,
                store_name=store_name,
            )
        )
        await self.store.write_audit_log(state.vendor_id, "vendor_registered", {"plan_id": free.id.value})
        logger.info("Vendor registered on free plan: vendor=%s", state.vendor_id)
        return state

    async def _duplicate_result(
        self,
        vendor_id: str,
        plan: PlanDefinition,
        reference: str,
    ) -> ActivationResult | None:
        existing = await self.store.get_transaction(reference)
        if existing is None:
            return None
        state = await self._require_vendor(vendor_id)
        logger.info("Duplicate subscription callback ignored: vendor=%s reference=%s", vendor_id, reference)
        return ActivationResult(
            state=state,
            plan=plan,
            previous_plan_id=state.active_plan_id,
            transaction=existing,
            duplicate=True,
            applied=existing.status is not TransactionStatus.UNAPPLIED,
        )

    async def _claim_purchase(
        self,
        vendor_id: str,
        plan: PlanDefinition,
        reference: str,
        now: datetime,
    ) -> VendorSubscriptionState:
        """Mark the vendor as being charged for `plan` before any money moves."""
        for attempt in range(CAS_ATTEMPTS):
            state = await self._require_vendor(vendor_id)
            can_change_plan(state, plan.id, now).raise_if_denied()
            if has_open_purchase(state, now):
                raise PurchaseInProgressError(
                    f"Vendor {state.vendor_id} already has a plan purchase in progress "
                    f"({state.pending_purchase_reference})"
                )
            expected_revision = state.revision
            state.pending_purchase_reference = reference
            state.pending_purchase_started_at = now
            committed = await self.store.commit_vendor_update(
                state,
                expected_revision=expected_revision,
                audit_action="plan_purchase_started",
                audit_payload={"plan_id": plan.id.value, "reference": reference},
            )
            if committed:
                return state
            logger.warning(
                "Vendor %s changed while claiming a purchase (attempt %s/%s)",
                vendor_id,
                attempt + 1,
                CAS_ATTEMPTS,
            )

        raise ConcurrentModificationError(f"Vendor {vendor_id} was modified concurrently; purchase not started")

    async def _release_claim(self, vendor_id: str, reference: str) -> None:
        for _ in range(CAS_ATTEMPTS):
            state = await self.store.get_vendor(str(vendor_id))
            if state is None or state.pending_purchase_reference != reference:
                return
            expected_revision = state.revision
            state.pending_purchase_reference = None
            state.pending_purchase_started_at = None
            if await self.store.commit_vendor_update(state, expected_revision=expected_revision):
                return
        logger.warning("Purchase claim %s on vendor %s left to expire", reference, vendor_id)

    async def _record_unapplied(
        self,
        vendor_id: str,
        plan: PlanDefinition,
        payment: PaymentOutcome,
        reason: str,
        user_id: str | None,
    ) -> ActivationResult:
        """Keep a succeeded charge on the ledger even though the plan change was refused."""
        state = await self._require_vendor(vendor_id)
        transaction = subscription_transaction(
            outcome=payment,
            plan=plan,
            vendor_id=state.vendor_id,
            user_id=user_id or state.user_id,
            status=TransactionStatus.UNAPPLIED,
            note=reason,
        )
        try:
            await self.store.insert_transaction(transaction)
        except DuplicateReferenceError:
            duplicate = await self._duplicate_result(vendor_id, plan, payment.reference)
            if duplicate is None:
                raise
            return duplicate
        await self.store.write_audit_log(
            state.vendor_id,
            "subscription_payment_unapplied",
            {"plan_id": plan.id.value, "reference": payment.reference, "amount": int(payment.amount), "reason": reason},
        )
        logger.warning(
            "Subscription payment held without activation: vendor=%s plan=%s reference=%s reason=%s",
            state.vendor_id,
            plan.id.value,
            payment.reference,
            reason,
        )
        return ActivationResult(
            state=state,
            plan=plan,
            previous_plan_id=state.active_plan_id,
            transaction=transaction,
            applied=False,
        )

    async def _settle_payment(
        self,
        vendor_id: str,
        plan: PlanDefinition,
        payment: PaymentOutcome,
        now: datetime | None,
        user_id: str | None,
    ) -> ActivationResult:
        try:
            return await self.activate_plan(vendor_id, plan.id, payment=payment, now=now, user_id=user_id)
        except BusinessRuleViolation as exc:
            if not payment.succeeded:
                raise
            return await self._record_unapplied(vendor_id, plan, payment, str(exc), user_id)

    async def activate_plan(
        self,
        vendor_id: str,
        plan_id: PlanId | str,
        payment: PaymentOutcome | None = None,
        now: datetime | None = None,
        *,
        user_id: str | None = None,
    ) -> ActivationResult:
        """Switch the vendor to `plan_id` and start a fresh 31-day cycle.

        Paid plans need a succeeded payment covering the monthly price; its
        subscription transaction is stored in the same write as the new
        state. A payment reference that is already recorded resolves as a
        duplicate without touching state.
        """
        plan = get_plan(plan_id)
        now = now or utc_now()

        for attempt in range(CAS_ATTEMPTS):
            if payment is not None:
                duplicate = await self._duplicate_result(vendor_id, plan, payment.reference)
                if duplicate is not None:
                    return duplicate

            state = await self._require_vendor(vendor_id)
            previous_plan_id = state.active_plan_id
            can_change_plan(state, plan.id, now).raise_if_denied()

            transaction = None
            if plan.is_paid:
                if payment is None or not payment.succeeded:
                    raise PaymentRequiredError(f"{plan.title} requires a successful payment of {plan.monthly_price}")
                if int(payment.amount) < plan.monthly_price:
                    raise PaymentRequiredError(
                        f"Payment {payment.reference} covers {payment.amount}, "
                        f"{plan.title} costs {plan.monthly_price}"
                    )
                transaction = subscription_transaction(
                    outcome=payment,
                    plan=plan,
                    vendor_id=state.vendor_id,
                    user_id=user_id or state.user_id,
                )

            expected_revision = state.revision
            apply_plan(state, plan, now)
            try:
                committed = await self.store.commit_vendor_update(
                    state,
                    expected_revision=expected_revision,
                    transaction=transaction,
                    audit_action="plan_activated",
                    audit_payload={
                        "previous_plan_id": previous_plan_id.value,
                        "plan_id": plan.id.value,
                        "cycle_end": iso_or_none(state.cycle_end),
                        "reference": payment.reference if payment is not None else None,
                    },
                )
            except DuplicateReferenceError:
                duplicate = await self._duplicate_result(vendor_id, plan, payment.reference)
                if duplicate is None:
                    raise
                return duplicate

            if committed:
                logger.info(
                    "Plan activated: vendor=%s %s->%s cycle_end=%s",
                    state.vendor_id,
                    previous_plan_id.value,
                    plan.id.value,
                    iso_or_none(state.cycle_end),
                )
                return ActivationResult(
                    state=state,
                    plan=plan,
                    previous_plan_id=previous_plan_id,
                    transaction=transaction,
                )
            logger.warning(
                "Vendor %s changed during plan activation (attempt %s/%s)",
                vendor_id,
                attempt + 1,
                CAS_ATTEMPTS,
            )

        raise ConcurrentModificationError(f"Vendor {vendor_id} was modified concurrently; activation abandoned")

    async def purchase_plan(
        self,
        vendor_id: str,
        plan_id: PlanId | str,
        gateway: PaymentGateway,
        email: str,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> ActivationResult:
        """Charge the monthly price through `gateway` and activate on success.

        The vendor is claimed before the charge, so a second purchase started
        while one is in flight fails with PurchaseInProgressError instead of
        charging twice. A charge that succeeds but can no longer be applied is
        stored as an unapplied transaction (``applied=False``).
        """
        plan = get_plan(plan_id)
        if not plan.is_paid:
            state = await self._require_vendor(vendor_id)
            can_change_plan(state, plan.id, now or utc_now()).raise_if_denied()
            return await self.activate_plan(vendor_id, plan.id, now=now, user_id=user_id)

        reference = generate_reference(SUBSCRIPTION_REFERENCE_PREFIX)
        state = await self._claim_purchase(vendor_id, plan, reference, now or utc_now())
        try:
            outcome = await gateway.initiate_charge(
                amount=plan.monthly_price,
                currency=self.currency,
                reference=reference,
                email=email,
                metadata={
                    "kind": "subscription",
                    "vendor_id": state.vendor_id,
                    "plan_id": plan.id.value,
                    "user_id": user_id or state.user_id,
                },
            )
        except Exception:
            await self._release_claim(state.vendor_id, reference)
            raise

        if not outcome.succeeded:
            logger.info(
                "Subscription charge not completed: vendor=%s plan=%s reference=%s status=%s",
                state.vendor_id,
                plan.id.value,
                reference,
                outcome.status.value,
            )
            # An unsettled charge may still be confirmed by webhook; keep the claim until it expires.
            if not outcome.unsettled:
                await self._release_claim(state.vendor_id, reference)
            raise PaymentRequiredError(f"Payment {reference} for {plan.title} was {outcome.status.value}")

        result = await self._settle_payment(state.vendor_id, plan, outcome, now, user_id)
        if not result.applied:
            await self._release_claim(state.vendor_id, reference)
        return result

    async def apply_subscription_callback(
        self,
        outcome: PaymentOutcome,
        vendor_id: str,
        plan_id: PlanId | str,
        now: datetime | None = None,
    ) -> ActivationResult:
        """Gateway-confirmed subscription payment.

        Replays are reported as duplicates. A confirmed charge whose plan
        change is refused is kept as an unapplied transaction rather than
        rejected, so the gateway stops redelivering it.
        """
        return await self._settle_payment(str(vendor_id), get_plan(plan_id), outcome, now, None)

    async def grant_gift_plan(
        self,
        vendor_id: str,
        plan_id: PlanId | str,
        days: int,
        commission_rate: int | None = None,
        now: datetime | None = None,
    ) -> VendorSubscriptionState:
        plan = get_plan(plan_id)
        if int(days) <= 0:
            raise ValidationError(f"Gift plan duration must be positive, got {days!r}")
        if commission_rate is not None and not 0 <= int(commission_rate) <= 100:
            raise InvalidCommissionRateError(f"Commission rate must be within 0..100, got {commission_rate!r}")
        now = now or utc_now()

        for attempt in range(CAS_ATTEMPTS):
            state = await self._require_vendor(vendor_id)
            expected_revision = state.revision
            state.gift_plan = plan.id
            state.gift_commission_rate = None if commission_rate is None else int(commission_rate)
            state.gift_plan_expires_at = now + timedelta(days=int(days))
            committed = await self.store.commit_vendor_update(
                state,
                expected_revision=expected_revision,
                audit_action="gift_plan_granted",
                audit_payload={
                    "plan_id": plan.id.value,
                    "commission_rate": state.gift_commission_rate,
                    "expires_at": iso_or_none(state.gift_plan_expires_at),
                },
            )
            if committed:
                logger.info("Gift plan granted: vendor=%s plan=%s days=%s", state.vendor_id, plan.id.value, days)
                return state
            logger.warning("Vendor %s changed during gift grant (attempt %s/%s)", vendor_id, attempt + 1, CAS_ATTEMPTS)

        raise ConcurrentModificationError(f"Vendor {vendor_id} was modified concurrently; gift grant abandoned")

    async def describe_subscription(self, vendor_id: str, now: datetime | None = None) -> dict[str, Any]:
        state = await self._require_vendor(vendor_id)
        now = now or utc_now()
        plan = get_plan(state.active_plan_id)
        return {
            "vendor_id": state.vendor_id,
            "plan_id": plan.id.value,
            "plan_title": plan.title,
            "cycle_start": iso_or_none(state.cycle_start),
            "cycle_end": iso_or_none(state.cycle_end),
            "days_remaining": days_remaining(state.cycle_end, now),
            "is_suspended": is_effectively_suspended(state, now),
            "product_limit": state.product_limit,
            "commission_rate": effective_commission_rate(state, now),
            "has_home_visibility": state.has_home_visibility,
            "free_ads_remaining": state.free_ads_remaining,
            "gift_plan": state.gift_plan.value if state.gift_plan else None,
            "gift_plan_expires_at": iso_or_none(state.gift_plan_expires_at),
        }

    async def reconcile_suspensions(
        self,
        now: datetime | None = None,
        *,
        batch_size: int = SUSPENSION_RECONCILE_BATCH_SIZE,
        max_rows: int | None = None,
    ) -> dict[str, int]:
        """Write `is_suspended` back for vendors whose cycle has ended."""
        now = now or utc_now()
        safe_batch_size = max(1, min(int(batch_size), 200))
        row_cap = None if max_rows is None else max(1, int(max_rows))

        scanned = 0
        suspended = 0
        conflicts = 0
        cursor_vendor_id = ""

        while True:
            if row_cap is not None and scanned >= row_cap:
                break
            fetch_limit = safe_batch_size if row_cap is None else min(safe_batch_size, row_cap - scanned)
            rows = await self.store.list_vendors_for_reconcile(
                now=now,
                limit=fetch_limit,
                after_vendor_id=cursor_vendor_id,
            )
            if not rows:
                break

            for state in rows:
                cursor_vendor_id = max(cursor_vendor_id, state.vendor_id)
                scanned += 1
                if state.is_suspended or not is_cycle_expired(state, now):
                    continue

                expected_revision = state.revision
                state.is_suspended = True
                committed = await self.store.commit_vendor_update(
                    state,
                    expected_revision=expected_revision,
                    audit_action="subscription_expired_suspended",
                    audit_payload={
                        "plan_id": state.active_plan_id.value,
                        "cycle_end": iso_or_none(state.cycle_end),
                    },
                )
                if committed:
                    suspended += 1
                else:
                    # Picked up again on the next pass if still expired.
                    conflicts += 1

            if len(rows) < fetch_limit:
                break

        return {
            "scanned": scanned,
            "suspended": suspended,
            "conflicts": conflicts,
            "total_changed": suspended,
        }
