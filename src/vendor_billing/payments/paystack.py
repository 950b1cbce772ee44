"""Paystack REST gateway and webhook signature helpers."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from .base import VERIFICATION_TIMEOUT_REASON, PaymentIntent, PaymentOutcome, PaymentStatus


logger = logging.getLogger(__name__)

PAYSTACK_API_BASE = "https://api.paystack.co"
KOBO_PER_NAIRA = 100
REQUEST_TIMEOUT_SEC = 20

# Paystack transaction statuses that end a charge attempt.
_TERMINAL_STATUS_MAP = {
    "success": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "reversed": PaymentStatus.FAILED,
    "abandoned": PaymentStatus.CANCELLED,
}


class PaystackError(RuntimeError):
    def __init__(self, message: str, *, http_status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.body = body


def to_kobo(amount: int) -> int:
    return int(amount) * KOBO_PER_NAIRA


def from_kobo(amount_kobo: int | str | None) -> int:
    try:
        return int(amount_kobo or 0) // KOBO_PER_NAIRA
    except (TypeError, ValueError):
        return 0


def verify_webhook_signature(*, secret: str, body: bytes, signature: str) -> bool:
    """Paystack signs the raw request body with HMAC-SHA512 of the secret key."""
    if not secret or not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(digest, signature.strip())


def outcome_from_transaction(data: dict[str, Any]) -> PaymentOutcome | None:
    """Map a Paystack transaction object to an outcome; None while still pending."""
    status = _TERMINAL_STATUS_MAP.get(str(data.get("status") or "").strip().lower())
    if status is None:
        return None
    return PaymentOutcome(
        provider=PaystackGateway.provider_name,
        status=status,
        reference=str(data.get("reference") or ""),
        amount=from_kobo(data.get("amount")),
        currency=str(data.get("currency") or "NGN").upper(),
        raw=data,
    )


class PaystackGateway:
    provider_name = "paystack"

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = PAYSTACK_API_BASE,
        verify_attempts: int = 10,
        verify_delay_sec: float = 1.2,
        session: aiohttp.ClientSession | None = None,
        on_intent: Callable[[PaymentIntent], Awaitable[None]] | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("Paystack secret key is required")
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._verify_attempts = max(1, int(verify_attempts))
        self._verify_delay_sec = max(0.0, float(verify_delay_sec))
        self._session = session
        self._on_intent = on_intent

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if self._session is not None:
            return await self._send(self._session, method, url, headers, payload)
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SEC)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return await self._send(session, method, url, headers, payload)

    @staticmethod
    async def _send(
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any] | None,
    ) -> dict[str, Any]:
        async with session.request(method, url, json=payload, headers=headers) as resp:
            text = await resp.text()
            if resp.status not in (200, 201):
                raise PaystackError(f"Paystack {method} {url} failed", http_status=resp.status, body=text)
            body = await resp.json(content_type=None)
        if not isinstance(body, dict) or not body.get("status"):
            raise PaystackError(f"Paystack {method} {url} rejected", http_status=resp.status, body=text)
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount: int,
        reference: str,
        currency: str,
        metadata: dict[str, Any],
    ) -> PaymentIntent:
        data = await self._request(
            "POST",
            "/transaction/initialize",
            {
                "email": email,
                "amount": to_kobo(amount),
                "currency": currency,
                "reference": reference,
                "metadata": metadata,
            },
        )
        return PaymentIntent(
            provider=self.provider_name,
            reference=str(data.get("reference") or reference),
            amount=int(amount),
            currency=currency,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    async def verify_transaction(self, reference: str) -> PaymentOutcome | None:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        return outcome_from_transaction(data)

    async def initiate_charge(
        self,
        *,
        amount: int,
        currency: str,
        reference: str,
        email: str,
        metadata: dict[str, Any],
    ) -> PaymentOutcome:
        """Open a checkout and poll verification until a terminal status or the attempt budget runs out."""
        intent = await self.initialize_transaction(
            email=email,
            amount=amount,
            reference=reference,
            currency=currency,
            metadata=metadata,
        )
        logger.info("Paystack checkout opened: reference=%s url=%s", intent.reference, intent.authorization_url)
        if self._on_intent is not None:
            await self._on_intent(intent)

        for attempt in range(self._verify_attempts):
            await asyncio.sleep(self._verify_delay_sec * (1.0 + attempt * 0.35))
            outcome = await self.verify_transaction(intent.reference)
            if outcome is not None:
                return outcome

        logger.warning("Paystack charge %s did not settle after %s checks", intent.reference, self._verify_attempts)
        return PaymentOutcome(
            provider=self.provider_name,
            status=PaymentStatus.CANCELLED,
            reference=intent.reference,
            amount=int(amount),
            currency=currency,
            raw={"reason": VERIFICATION_TIMEOUT_REASON},
        )
