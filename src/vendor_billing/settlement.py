"""Commission / payout split and idempotent transaction recording."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from vendor_billing.errors import (
    DuplicateReferenceError,
    InvalidCommissionRateError,
    NegativeAmountError,
    PaymentRequiredError,
)
from vendor_billing.models import Transaction, TransactionStatus, TransactionType
from vendor_billing.payments.base import PaymentOutcome
from vendor_billing.plans import PlanDefinition, PlanId, get_plan
from vendor_billing.repository import BillingStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementSplit:
    gross_amount: int
    commission_rate_percent: int
    platform_commission: int
    vendor_payout: int
    commission_amount: int = 0
    service_charge: int = 0
    shipping: int = 0


@dataclass(frozen=True)
class SettlementResult:
    transaction: Transaction
    split: SettlementSplit | None
    duplicate: bool = False


@dataclass(frozen=True)
class RevenueSummary:
    transaction_count: int
    gross_volume: int
    subscription_revenue: int
    commission_revenue: int
    vendor_payouts: int
    service_charge_revenue: int = 0

    @property
    def platform_revenue(self) -> int:
        return self.subscription_revenue + self.commission_revenue + self.service_charge_revenue


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounding halves away from zero, for non-negative operands."""
    return (2 * numerator + denominator) // (2 * denominator)


def compute_split(
    gross_amount: int,
    commission_rate_percent: int,
    *,
    service_charge: int = 0,
    shipping: int = 0,
) -> SettlementSplit:
    """Split a charged amount between platform and vendor.

    The rate applies to the goods portion only (gross minus service charge
    and shipping). The service charge is kept by the platform in full and
    shipping passes through to the vendor. With neither present this is
    plain ``gross * rate / 100``.
    """
    gross = int(gross_amount)
    rate = int(commission_rate_percent)
    service = int(service_charge)
    delivery = int(shipping)
    if gross < 0:
        raise NegativeAmountError(gross_amount)
    if service < 0:
        raise NegativeAmountError(service_charge)
    if delivery < 0:
        raise NegativeAmountError(shipping)
    if not 0 <= rate <= 100:
        raise InvalidCommissionRateError(f"Commission rate must be within 0..100, got {commission_rate_percent!r}")
    goods = gross - service - delivery
    if goods < 0:
        raise NegativeAmountError(goods)
    commission = round_half_up_div(goods * rate, 100)
    platform_take = commission + service
    # Payout by subtraction: the two parts always add up to gross.
    return SettlementSplit(
        gross_amount=gross,
        commission_rate_percent=rate,
        platform_commission=platform_take,
        vendor_payout=gross - platform_take,
        commission_amount=commission,
        service_charge=service,
        shipping=delivery,
    )


def resolve_commission_rate(metadata: dict[str, Any]) -> int:
    """Rate captured at payment time; falls back to the captured plan's catalog rate."""
    captured = metadata.get("commission_rate")
    if captured is not None:
        return int(captured)
    return get_plan(metadata.get("subscription_plan") or PlanId.FREE).commission_rate_percent


def recompute_split(transaction: Transaction) -> SettlementSplit | None:
    """Rebuild an order payment's split from its own metadata; None for other types."""
    if transaction.type is not TransactionType.ORDER_PAYMENT:
        return None
    metadata = transaction.metadata
    return compute_split(
        transaction.amount,
        resolve_commission_rate(metadata),
        service_charge=int(metadata.get("service_charge") or 0),
        shipping=int(metadata.get("shipping") or 0),
    )


def summarize_revenue(transactions: Iterable[Transaction]) -> RevenueSummary:
    count = gross = subscriptions = commissions = service_charges = payouts = 0
    for tx in transactions:
        if tx.status is not TransactionStatus.COMPLETED:
            continue
        count += 1
        gross += int(tx.amount)
        if tx.type is TransactionType.SUBSCRIPTION:
            subscriptions += int(tx.amount)
        elif tx.type is TransactionType.ORDER_PAYMENT:
            split = recompute_split(tx)
            commissions += split.commission_amount
            service_charges += split.service_charge
            payouts += split.vendor_payout
        else:
            commissions += int(tx.amount)
    return RevenueSummary(
        transaction_count=count,
        gross_volume=gross,
        subscription_revenue=subscriptions,
        commission_revenue=commissions,
        vendor_payouts=payouts,
        service_charge_revenue=service_charges,
    )


def subscription_transaction(
    *,
    outcome: PaymentOutcome,
    plan: PlanDefinition,
    vendor_id: str,
    user_id: str | None,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    note: str | None = None,
) -> Transaction:
    """Subscription payments are platform revenue in full; no split is recorded.

    An ``UNAPPLIED`` status marks money taken for a plan change that was then
    refused; it stays out of revenue totals until settled by hand.
    """
    metadata: dict[str, Any] = {"plan_id": plan.id.value, "currency": outcome.currency}
    if note:
        metadata["unapplied_reason"] = note
    return Transaction(
        type=TransactionType.SUBSCRIPTION,
        amount=int(outcome.amount),
        reference=outcome.reference,
        vendor_id=vendor_id,
        user_id=user_id,
        status=status,
        payment_method=outcome.provider,
        description=f"{plan.title} subscription payment",
        metadata=metadata,
    )


class SettlementEngine:
    def __init__(self, store: BillingStore) -> None:
        self.store = store

    async def record_order_payment(
        self,
        *,
        outcome: PaymentOutcome,
        vendor_id: str,
        user_id: str | None,
        subscription_plan: PlanId | str,
        commission_rate_percent: int | None = None,
        gross_amount: int | None = None,
        service_charge: int = 0,
        shipping: int = 0,
        order_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        description: str | None = None,
    ) -> SettlementResult:
        """Record a successful order payment once per gateway reference."""
        if not outcome.succeeded:
            raise PaymentRequiredError(f"Payment {outcome.reference} did not succeed ({outcome.status.value})")
        gross = int(outcome.amount if gross_amount is None else gross_amount)
        if int(outcome.amount) < gross:
            raise PaymentRequiredError(
                f"Payment {outcome.reference} covers {outcome.amount}, order requires {gross}"
            )

        plan = get_plan(subscription_plan)
        rate = plan.commission_rate_percent if commission_rate_percent is None else int(commission_rate_percent)
        split = compute_split(gross, rate, service_charge=service_charge, shipping=shipping)

        tx_metadata: dict[str, Any] = dict(metadata or {})
        tx_metadata.update(
            {
                "subscription_plan": plan.id.value,
                "commission_rate": split.commission_rate_percent,
                "commission_amount": split.commission_amount,
                "service_charge": split.service_charge,
                "shipping": split.shipping,
                "platform_commission": split.platform_commission,
                "vendor_payout": split.vendor_payout,
                "currency": outcome.currency,
            }
        )
        transaction = Transaction(
            type=TransactionType.ORDER_PAYMENT,
            amount=gross,
            reference=outcome.reference,
            vendor_id=vendor_id,
            user_id=user_id,
            order_id=order_id,
            status=TransactionStatus.COMPLETED,
            payment_method=outcome.provider,
            description=description or f"Order payment for vendor {vendor_id}",
            metadata=tx_metadata,
        )
        try:
            await self.store.insert_transaction(transaction)
        except DuplicateReferenceError:
            existing = await self.store.get_transaction(outcome.reference)
            if existing is None:
                raise
            logger.info("Duplicate order payment callback ignored: reference=%s", outcome.reference)
            return SettlementResult(transaction=existing, split=recompute_split(existing), duplicate=True)

        logger.info(
            "Order payment settled: reference=%s vendor=%s gross=%s commission=%s payout=%s",
            outcome.reference,
            vendor_id,
            split.gross_amount,
            split.platform_commission,
            split.vendor_payout,
        )
        return SettlementResult(transaction=transaction, split=split)

    async def revenue_report(self, *, vendor_id: str | None = None, limit: int = 5000) -> RevenueSummary:
        transactions = await self.store.list_transactions(vendor_id=vendor_id, limit=limit)
        return summarize_revenue(transactions)
