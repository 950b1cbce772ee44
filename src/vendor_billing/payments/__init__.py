"""Payment gateway abstractions for vendor billing."""

from .base import PaymentGateway, PaymentIntent, PaymentOutcome, PaymentStatus, generate_reference
from .mock import MockPaymentGateway
from .paystack import (
    KOBO_PER_NAIRA,
    PaystackError,
    PaystackGateway,
    outcome_from_transaction,
    verify_webhook_signature,
)

__all__ = [
    "PaymentGateway",
    "PaymentIntent",
    "PaymentOutcome",
    "PaymentStatus",
    "generate_reference",
    "MockPaymentGateway",
    "KOBO_PER_NAIRA",
    "PaystackError",
    "PaystackGateway",
    "outcome_from_transaction",
    "verify_webhook_signature",
]
