"""Multi-vendor checkout: per-vendor quotes and sequential per-vendor payment."""

from __future__ import annotations

import logging
import secrets
import string
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from config import CFG
from vendor_billing.errors import (
    BillingError,
    InvalidLineItemError,
    VendorNotFoundError,
    VendorSuspendedError,
)
from vendor_billing.models import (
    DistanceTier,
    OrderLineItem,
    VendorOrderGroup,
    VendorSubscriptionState,
    utc_now,
)
from vendor_billing.payments.base import PaymentGateway, PaymentOutcome
from vendor_billing.plans import PlanId
from vendor_billing.settlement import SettlementEngine, SettlementResult, round_half_up_div
from vendor_billing.shipping import parse_distance_tier, price_group, validate_line_item
from vendor_billing.subscription import effective_commission_rate, is_effectively_suspended


logger = logging.getLogger(__name__)

SERVICE_CHARGE_PER_MILLE = 25
CHECKOUT_SESSION_PREFIX = "CHECKOUT"
_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def service_charge(subtotal: int) -> int:
    """2.5% of the goods subtotal, rounded half up."""
    return round_half_up_div(int(subtotal) * SERVICE_CHARGE_PER_MILLE, 1000)


def generate_session_id() -> str:
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"{CHECKOUT_SESSION_PREFIX}_{int(time.time() * 1000)}_{suffix}"


def vendor_reference(session_id: str, vendor_index: int) -> str:
    return f"{session_id}_V{int(vendor_index)}_{int(time.time() * 1000)}"


@dataclass(slots=True)
class VendorQuote:
    group: VendorOrderGroup
    subtotal: int
    shipping: int
    service_charge: int
    subscription_plan: PlanId
    commission_rate: int
    reference: str
    store_name: str | None = None

    @property
    def vendor_id(self) -> str:
        return self.group.vendor_id

    @property
    def total(self) -> int:
        return self.subtotal + self.shipping + self.service_charge


@dataclass(slots=True)
class CheckoutQuote:
    session_id: str
    vendors: list[VendorQuote]

    @property
    def subtotal(self) -> int:
        return sum(quote.subtotal for quote in self.vendors)

    @property
    def shipping(self) -> int:
        return sum(quote.shipping for quote in self.vendors)

    @property
    def service_charge(self) -> int:
        return sum(quote.service_charge for quote in self.vendors)

    @property
    def total(self) -> int:
        return sum(quote.total for quote in self.vendors)


@dataclass(slots=True)
class GroupPaymentFailure:
    vendor_id: str
    reference: str
    reason: str
    outcome: PaymentOutcome | None = None


@dataclass(slots=True)
class CheckoutReport:
    session_id: str
    paid: list[SettlementResult] = field(default_factory=list)
    failed: list[GroupPaymentFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


def group_line_items(
    items: Sequence[OrderLineItem],
    distance_tiers: Mapping[str, DistanceTier | str],
) -> list[VendorOrderGroup]:
    """Split a cart into priced per-vendor groups, in first-seen vendor order."""
    if not items:
        raise InvalidLineItemError("Checkout needs at least one line item")

    groups: dict[str, VendorOrderGroup] = {}
    for item in items:
        validate_line_item(item)
        group = groups.get(item.vendor_id)
        if group is None:
            if item.vendor_id not in distance_tiers:
                raise InvalidLineItemError(f"No distance tier given for vendor {item.vendor_id}")
            group = VendorOrderGroup(
                vendor_id=item.vendor_id,
                line_items=[],
                distance_tier=parse_distance_tier(distance_tiers[item.vendor_id]),
            )
            groups[item.vendor_id] = group
        group.line_items.append(item)

    return [price_group(group) for group in groups.values()]


def build_checkout_quote(
    items: Sequence[OrderLineItem],
    distance_tiers: Mapping[str, DistanceTier | str],
    vendors: Mapping[str, VendorSubscriptionState],
    now: datetime | None = None,
    *,
    session_id: str | None = None,
) -> CheckoutQuote:
    """Quote every vendor group, capturing each vendor's plan and commission rate."""
    now = now or utc_now()
    session_id = session_id or generate_session_id()
    quotes: list[VendorQuote] = []
    for index, group in enumerate(group_line_items(items, distance_tiers)):
        state = vendors.get(group.vendor_id)
        if state is None:
            raise VendorNotFoundError(group.vendor_id)
        if is_effectively_suspended(state, now):
            raise VendorSuspendedError(f"Vendor {group.vendor_id} is suspended and cannot take orders")
        subtotal = group.subtotal
        quotes.append(
            VendorQuote(
                group=group,
                subtotal=subtotal,
                shipping=group.computed_shipping,
                service_charge=service_charge(subtotal),
                subscription_plan=state.active_plan_id,
                commission_rate=effective_commission_rate(state, now),
                reference=vendor_reference(session_id, index),
                store_name=state.store_name,
            )
        )
    return CheckoutQuote(session_id=session_id, vendors=quotes)


class CheckoutService:
    def __init__(self, settlement: SettlementEngine, *, currency: str | None = None) -> None:
        self.settlement = settlement
        self.currency = currency or CFG.payment_currency

    async def _charge_group(
        self,
        quote: CheckoutQuote,
        vendor_quote: VendorQuote,
        gateway: PaymentGateway,
        email: str,
        user_id: str | None,
    ) -> SettlementResult | GroupPaymentFailure:
        metadata = {
            "kind": "order_payment",
            "session_id": quote.session_id,
            "vendor_id": vendor_quote.vendor_id,
            "vendor_name": vendor_quote.store_name,
            "user_id": user_id,
            "subscription_plan": vendor_quote.subscription_plan.value,
            "commission_rate": vendor_quote.commission_rate,
            "subtotal": vendor_quote.subtotal,
            "shipping": vendor_quote.shipping,
            "service_charge": vendor_quote.service_charge,
            "items_count": len(vendor_quote.group.line_items),
        }
        outcome = await gateway.initiate_charge(
            amount=vendor_quote.total,
            currency=self.currency,
            reference=vendor_quote.reference,
            email=email,
            metadata=metadata,
        )
        if not outcome.succeeded:
            logger.info(
                "Vendor group payment not completed: session=%s vendor=%s reference=%s status=%s",
                quote.session_id,
                vendor_quote.vendor_id,
                vendor_quote.reference,
                outcome.status.value,
            )
            return GroupPaymentFailure(
                vendor_id=vendor_quote.vendor_id,
                reference=vendor_quote.reference,
                reason=outcome.status.value,
                outcome=outcome,
            )
        try:
            return await self.settlement.record_order_payment(
                outcome=outcome,
                vendor_id=vendor_quote.vendor_id,
                user_id=user_id,
                subscription_plan=vendor_quote.subscription_plan,
                commission_rate_percent=vendor_quote.commission_rate,
                gross_amount=vendor_quote.total,
                service_charge=vendor_quote.service_charge,
                shipping=vendor_quote.shipping,
                metadata=metadata,
                description=(
                    f"Order payment - {len(vendor_quote.group.line_items)} item(s) "
                    f"from {vendor_quote.store_name or vendor_quote.vendor_id}"
                ),
            )
        except BillingError as exc:
            logger.warning("Vendor group settlement rejected: reference=%s error=%s", vendor_quote.reference, exc)
            return GroupPaymentFailure(
                vendor_id=vendor_quote.vendor_id,
                reference=vendor_quote.reference,
                reason=str(exc),
                outcome=outcome,
            )

    async def pay_all(
        self,
        quote: CheckoutQuote,
        gateway: PaymentGateway,
        email: str,
        user_id: str | None = None,
    ) -> CheckoutReport:
        """Charge each vendor group in order; a failed group does not stop the rest."""
        report = CheckoutReport(session_id=quote.session_id)
        for vendor_quote in quote.vendors:
            result = await self._charge_group(quote, vendor_quote, gateway, email, user_id)
            if isinstance(result, GroupPaymentFailure):
                report.failed.append(result)
            else:
                report.paid.append(result)
        logger.info(
            "Checkout finished: session=%s paid=%s failed=%s",
            quote.session_id,
            len(report.paid),
            len(report.failed),
        )
        return report

    async def retry_group(
        self,
        quote: CheckoutQuote,
        vendor_id: str,
        gateway: PaymentGateway,
        email: str,
        user_id: str | None = None,
    ) -> SettlementResult | GroupPaymentFailure:
        """Re-charge one vendor group under a fresh reference."""
        for index, vendor_quote in enumerate(quote.vendors):
            if vendor_quote.vendor_id == vendor_id:
                # Millisecond stamps can repeat on a fast retry.
                vendor_quote.reference = f"{vendor_reference(quote.session_id, index)}_R{secrets.token_hex(2)}"
                return await self._charge_group(quote, vendor_quote, gateway, email, user_id)
        raise VendorNotFoundError(vendor_id)
