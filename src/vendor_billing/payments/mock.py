"""Mock payment gateway for local runs and smoke tests."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable
from typing import Any

from .base import PaymentOutcome, PaymentStatus


class MockPaymentGateway:
    provider_name = "mock"

    def __init__(
        self,
        results: Iterable[PaymentStatus | str] = (),
        *,
        default: PaymentStatus | str = PaymentStatus.SUCCEEDED,
        delay_sec: float = 0.0,
    ) -> None:
        self._delay_sec = max(0.0, float(delay_sec))
        self._scripted = deque(PaymentStatus(result) for result in results)
        self._default = PaymentStatus(default)
        self.charges: list[dict[str, Any]] = []

    async def initiate_charge(
        self,
        *,
        amount: int,
        currency: str,
        reference: str,
        email: str,
        metadata: dict[str, Any],
    ) -> PaymentOutcome:
        status = self._scripted.popleft() if self._scripted else self._default
        if self._delay_sec:
            await asyncio.sleep(self._delay_sec)
        self.charges.append(
            {
                "amount": int(amount),
                "currency": currency,
                "reference": reference,
                "email": email,
                "metadata": dict(metadata),
                "status": status.value,
            }
        )
        return PaymentOutcome(
            provider=self.provider_name,
            status=status,
            reference=reference,
            amount=int(amount),
            currency=currency,
            raw={"result": status.value},
        )
