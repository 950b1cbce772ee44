"""In-memory billing store with the same contract as BillingRepository."""

from __future__ import annotations

import copy
from dataclasses import replace
from datetime import datetime
from typing import Any

from vendor_billing.errors import DuplicateReferenceError
from vendor_billing.models import Transaction, TransactionType, VendorSubscriptionState, utc_now


class MemoryBillingStore:
    """Dict-backed store for tests and single-process tooling.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self._vendors: dict[str, VendorSubscriptionState] = {}
        self._transactions: dict[str, Transaction] = {}
        self._audit: list[dict[str, Any]] = []
        self._next_transaction_id = 1

    async def get_vendor(self, vendor_id: str) -> VendorSubscriptionState | None:
        state = self._vendors.get(str(vendor_id))
        return replace(state) if state else None

    async def create_vendor(self, state: VendorSubscriptionState) -> VendorSubscriptionState:
        if state.vendor_id not in self._vendors:
            now = utc_now()
            self._vendors[state.vendor_id] = replace(state, revision=0, created_at=now, updated_at=now)
        return replace(self._vendors[state.vendor_id])

    async def commit_vendor_update(
        self,
        state: VendorSubscriptionState,
        *,
        expected_revision: int,
        transaction: Transaction | None = None,
        audit_action: str | None = None,
        audit_payload: dict[str, Any] | None = None,
    ) -> bool:
        current = self._vendors.get(state.vendor_id)
        if current is None or current.revision != int(expected_revision):
            return False
        if transaction is not None:
            self._store_transaction(transaction)
        state.revision = int(expected_revision) + 1
        state.updated_at = utc_now()
        self._vendors[state.vendor_id] = replace(state)
        if audit_action:
            self._append_audit(state.vendor_id, audit_action, audit_payload)
        return True

    def _store_transaction(self, transaction: Transaction) -> None:
        if transaction.reference in self._transactions:
            raise DuplicateReferenceError(transaction.reference)
        transaction.id = self._next_transaction_id
        transaction.created_at = transaction.created_at or utc_now()
        self._next_transaction_id += 1
        self._transactions[transaction.reference] = copy.deepcopy(transaction)

    def _append_audit(self, vendor_id: str, action: str, payload: dict[str, Any] | None) -> None:
        self._audit.append(
            {
                "id": len(self._audit) + 1,
                "vendor_id": vendor_id,
                "action": action,
                "payload": dict(payload or {}),
                "created_at": utc_now().isoformat(),
            }
        )

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        self._store_transaction(transaction)
        return transaction

    async def get_transaction(self, reference: str) -> Transaction | None:
        stored = self._transactions.get(str(reference))
        return copy.deepcopy(stored) if stored else None

    async def list_transactions(
        self,
        *,
        transaction_type: TransactionType | None = None,
        vendor_id: str | None = None,
        limit: int = 500,
    ) -> list[Transaction]:
        rows = [
            tx
            for tx in self._transactions.values()
            if (transaction_type is None or tx.type is transaction_type)
            and (vendor_id is None or tx.vendor_id == vendor_id)
        ]
        rows.sort(key=lambda tx: int(tx.id or 0), reverse=True)
        return [copy.deepcopy(tx) for tx in rows[: max(1, int(limit))]]

    async def list_vendors_for_reconcile(
        self,
        *,
        now: datetime,
        limit: int,
        after_vendor_id: str = "",
    ) -> list[VendorSubscriptionState]:
        due = [
            replace(state)
            for vendor_id, state in sorted(self._vendors.items())
            if vendor_id > after_vendor_id
            and not state.is_suspended
            and state.cycle_end is not None
            and state.cycle_end <= now
        ]
        return due[: max(1, int(limit))]

    async def write_audit_log(self, vendor_id: str, action: str, payload: dict[str, Any] | None = None) -> None:
        self._append_audit(vendor_id, action, payload)

    async def list_audit_log(self, vendor_id: str) -> list[dict[str, Any]]:
        return [dict(entry) for entry in self._audit if entry["vendor_id"] == vendor_id]
