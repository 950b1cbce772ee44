"""Base contracts for payment gateways."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


VERIFICATION_TIMEOUT_REASON = "verification_timeout"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentIntent:
    """Checkout session opened at the gateway, before the customer pays."""

    provider: str
    reference: str
    amount: int
    currency: str
    authorization_url: str | None = None
    access_code: str | None = None


@dataclass(frozen=True)
class PaymentOutcome:
    """Terminal result of a charge as reported by the gateway."""

    provider: str
    status: PaymentStatus
    reference: str
    amount: int
    currency: str = "NGN"
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is PaymentStatus.SUCCEEDED

    @property
    def unsettled(self) -> bool:
        """Gave up waiting for the gateway; the charge may still complete later."""
        return self.status is PaymentStatus.CANCELLED and self.raw.get("reason") == VERIFICATION_TIMEOUT_REASON


class PaymentGateway(Protocol):
    """Gateway interface used by subscription and checkout flows."""

    provider_name: str

    async def initiate_charge(
        self,
        *,
        amount: int,
        currency: str,
        reference: str,
        email: str,
        metadata: dict[str, Any],
    ) -> PaymentOutcome:
        """Charge `amount` and resolve to succeeded, cancelled or failed."""


def generate_reference(prefix: str) -> str:
    """Opaque, practically unique gateway reference such as SUB_1700000000000_ab12cd34."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
