"""Persistence port for vendor billing and its SQLite implementation."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Protocol

import aiosqlite

from database import execute_write_with_retry, open_db, run_in_transaction
from vendor_billing.errors import DuplicateReferenceError
from vendor_billing.models import (
    Transaction,
    TransactionStatus,
    TransactionType,
    VendorSubscriptionState,
    iso_or_none,
    parse_iso_utc,
    utc_now,
)
from vendor_billing.plans import parse_plan_id

VENDOR_COLUMNS = """id, user_id, store_name, subscription_plan, subscription_start_date,
       subscription_end_date, is_suspended, product_limit, commission_rate,
       has_home_visibility, free_ads_remaining, gift_plan, gift_commission_rate,
       gift_plan_expires_at, pending_purchase_reference, pending_purchase_started_at,
       revision, created_at, updated_at"""

TRANSACTION_COLUMNS = """id, transaction_type, amount, vendor_id, user_id, order_id, reference,
       payment_method, description, metadata_json, status, created_at"""


def _to_json(data: dict[str, Any] | None) -> str:
    return json.dumps(data or {}, ensure_ascii=False, separators=(",", ":"), default=str)


class _RevisionMismatch(Exception):
    """Internal signal to roll back a conditional vendor write."""


class BillingStore(Protocol):
    """Data-store port used by every billing component."""

    async def get_vendor(self, vendor_id: str) -> VendorSubscriptionState | None:
        """Return current vendor state or None."""

    async def create_vendor(self, state: VendorSubscriptionState) -> VendorSubscriptionState:
        """Insert the vendor if absent and return the stored state."""

    async def commit_vendor_update(
        self,
        state: VendorSubscriptionState,
        *,
        expected_revision: int,
        transaction: Transaction | None = None,
        audit_action: str | None = None,
        audit_payload: dict[str, Any] | None = None,
    ) -> bool:
        """Atomically write `state` (and `transaction`) only if the stored revision still matches.

        Returns False on revision mismatch. Raises DuplicateReferenceError when
        `transaction.reference` is already recorded; nothing is written then.
        """

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Persist a transaction; raises DuplicateReferenceError on a known reference."""

    async def get_transaction(self, reference: str) -> Transaction | None:
        """Return the transaction recorded for a gateway reference."""

    async def list_transactions(
        self,
        *,
        transaction_type: TransactionType | None = None,
        vendor_id: str | None = None,
        limit: int = 500,
    ) -> list[Transaction]:
        """Return recent transactions, newest first."""

    async def list_vendors_for_reconcile(
        self,
        *,
        now: datetime,
        limit: int,
        after_vendor_id: str = "",
    ) -> list[VendorSubscriptionState]:
        """Return unsuspended vendors whose cycle ended at or before `now`, ordered by id."""

    async def write_audit_log(self, vendor_id: str, action: str, payload: dict[str, Any] | None = None) -> None:
        """Append a vendor audit entry."""

    async def list_audit_log(self, vendor_id: str) -> list[dict[str, Any]]:
        """Return audit entries for a vendor, oldest first."""


def _row_to_state(row: aiosqlite.Row) -> VendorSubscriptionState:
    gift_plan_raw = row["gift_plan"]
    return VendorSubscriptionState(
        vendor_id=str(row["id"]),
        user_id=row["user_id"],
        store_name=row["store_name"],
        active_plan_id=parse_plan_id(row["subscription_plan"]),
        cycle_start=parse_iso_utc(row["subscription_start_date"]),
        cycle_end=parse_iso_utc(row["subscription_end_date"]),
        is_suspended=bool(row["is_suspended"]),
        product_limit=int(row["product_limit"]),
        commission_rate=int(row["commission_rate"]),
        has_home_visibility=bool(row["has_home_visibility"]),
        free_ads_remaining=int(row["free_ads_remaining"]),
        gift_plan=parse_plan_id(gift_plan_raw) if gift_plan_raw else None,
        gift_commission_rate=None if row["gift_commission_rate"] is None else int(row["gift_commission_rate"]),
        gift_plan_expires_at=parse_iso_utc(row["gift_plan_expires_at"]),
        pending_purchase_reference=row["pending_purchase_reference"],
        pending_purchase_started_at=parse_iso_utc(row["pending_purchase_started_at"]),
        revision=int(row["revision"]),
        created_at=parse_iso_utc(row["created_at"]),
        updated_at=parse_iso_utc(row["updated_at"]),
    )


def _row_to_transaction(row: aiosqlite.Row) -> Transaction:
    try:
        metadata = json.loads(row["metadata_json"] or "{}")
    except json.JSONDecodeError:
        metadata = {}
    return Transaction(
        id=int(row["id"]),
        type=TransactionType(row["transaction_type"]),
        amount=int(row["amount"]),
        vendor_id=row["vendor_id"],
        user_id=row["user_id"],
        order_id=row["order_id"],
        reference=str(row["reference"]),
        payment_method=row["payment_method"],
        description=row["description"],
        metadata=metadata if isinstance(metadata, dict) else {},
        status=TransactionStatus(row["status"]),
        created_at=parse_iso_utc(row["created_at"]),
    )


async def _insert_transaction_row(db: aiosqlite.Connection, transaction: Transaction) -> int:
    created_at = transaction.created_at or utc_now()
    cursor = await db.execute(
        """INSERT INTO platform_transactions(
               transaction_type, amount, vendor_id, user_id, order_id, reference,
               payment_method, description, metadata_json, status, created_at
           ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(reference) DO NOTHING""",
        (
            transaction.type.value,
            int(transaction.amount),
            transaction.vendor_id,
            transaction.user_id,
            transaction.order_id,
            transaction.reference,
            transaction.payment_method,
            transaction.description,
            _to_json(transaction.metadata),
            transaction.status.value,
            iso_or_none(created_at),
        ),
    )
    if not cursor.rowcount:
        raise DuplicateReferenceError(transaction.reference)
    transaction.id = int(cursor.lastrowid)
    transaction.created_at = created_at
    return transaction.id


async def _insert_audit_row(
    db: aiosqlite.Connection,
    vendor_id: str,
    action: str,
    payload: dict[str, Any] | None,
) -> None:
    await db.execute(
        """INSERT INTO vendor_audit_log(vendor_id, action, payload_json, created_at)
           VALUES(?, ?, ?, ?)""",
        (vendor_id, action, _to_json(payload), iso_or_none(utc_now())),
    )


class BillingRepository:
    """SQLite-backed billing store."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def get_vendor(self, vendor_id: str) -> VendorSubscriptionState | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"SELECT {VENDOR_COLUMNS} FROM vendors WHERE id = ?",
                (str(vendor_id),),
            ) as cur:
                row = await cur.fetchone()
                return _row_to_state(row) if row else None

    async def create_vendor(self, state: VendorSubscriptionState) -> VendorSubscriptionState:
        now_iso = iso_or_none(utc_now())
        async with open_db(self.db_path) as db:
            await execute_write_with_retry(
                db,
                """INSERT INTO vendors(
                       id, user_id, store_name, subscription_plan, subscription_start_date,
                       subscription_end_date, is_suspended, product_limit, commission_rate,
                       has_home_visibility, free_ads_remaining, revision, created_at, updated_at
                   ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                   ON CONFLICT(id) DO NOTHING""",
                (
                    state.vendor_id,
                    state.user_id,
                    state.store_name,
                    state.active_plan_id.value,
                    iso_or_none(state.cycle_start),
                    iso_or_none(state.cycle_end),
                    int(state.is_suspended),
                    int(state.product_limit),
                    int(state.commission_rate),
                    int(state.has_home_visibility),
                    int(state.free_ads_remaining),
                    now_iso,
                    now_iso,
                ),
            )
        stored = await self.get_vendor(state.vendor_id)
        if stored is None:
            raise RuntimeError("Failed to read vendor after insert")
        return stored

    async def commit_vendor_update(
        self,
        state: VendorSubscriptionState,
        *,
        expected_revision: int,
        transaction: Transaction | None = None,
        audit_action: str | None = None,
        audit_payload: dict[str, Any] | None = None,
    ) -> bool:
        async def _work(db: aiosqlite.Connection) -> None:
            if transaction is not None:
                await _insert_transaction_row(db, transaction)
            cursor = await db.execute(
                """UPDATE vendors
                      SET subscription_plan = ?,
                          subscription_start_date = ?,
                          subscription_end_date = ?,
                          is_suspended = ?,
                          product_limit = ?,
                          commission_rate = ?,
                          has_home_visibility = ?,
                          free_ads_remaining = ?,
                          gift_plan = ?,
                          gift_commission_rate = ?,
                          gift_plan_expires_at = ?,
                          pending_purchase_reference = ?,
                          pending_purchase_started_at = ?,
                          revision = ?,
                          updated_at = ?
                    WHERE id = ?
                      AND revision = ?""",
                (
                    state.active_plan_id.value,
                    iso_or_none(state.cycle_start),
                    iso_or_none(state.cycle_end),
                    int(state.is_suspended),
                    int(state.product_limit),
                    int(state.commission_rate),
                    int(state.has_home_visibility),
                    int(state.free_ads_remaining),
                    state.gift_plan.value if state.gift_plan else None,
                    state.gift_commission_rate,
                    iso_or_none(state.gift_plan_expires_at),
                    state.pending_purchase_reference,
                    iso_or_none(state.pending_purchase_started_at),
                    int(expected_revision) + 1,
                    iso_or_none(utc_now()),
                    state.vendor_id,
                    int(expected_revision),
                ),
            )
            if not cursor.rowcount:
                raise _RevisionMismatch()
            if audit_action:
                await _insert_audit_row(db, state.vendor_id, audit_action, audit_payload)

        async with open_db(self.db_path) as db:
            try:
                await run_in_transaction(db, _work)
            except _RevisionMismatch:
                if transaction is not None:
                    transaction.id = None
                return False
        state.revision = int(expected_revision) + 1
        return True

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        async with open_db(self.db_path) as db:
            await run_in_transaction(db, lambda conn: _insert_transaction_row(conn, transaction))
        return transaction

    async def get_transaction(self, reference: str) -> Transaction | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"SELECT {TRANSACTION_COLUMNS} FROM platform_transactions WHERE reference = ?",
                (str(reference),),
            ) as cur:
                row = await cur.fetchone()
                return _row_to_transaction(row) if row else None

    async def list_transactions(
        self,
        *,
        transaction_type: TransactionType | None = None,
        vendor_id: str | None = None,
        limit: int = 500,
    ) -> list[Transaction]:
        clauses: list[str] = []
        params: list[Any] = []
        if transaction_type is not None:
            clauses.append("transaction_type = ?")
            params.append(transaction_type.value)
        if vendor_id is not None:
            clauses.append("vendor_id = ?")
            params.append(str(vendor_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(int(limit), 5000)))
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"""SELECT {TRANSACTION_COLUMNS}
                      FROM platform_transactions
                      {where}
                     ORDER BY created_at DESC, id DESC
                     LIMIT ?""",
                params,
            ) as cur:
                rows = await cur.fetchall()
                return [_row_to_transaction(row) for row in rows]

    async def list_vendors_for_reconcile(
        self,
        *,
        now: datetime,
        limit: int,
        after_vendor_id: str = "",
    ) -> list[VendorSubscriptionState]:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"""SELECT {VENDOR_COLUMNS}
                      FROM vendors
                     WHERE is_suspended = 0
                       AND subscription_end_date IS NOT NULL
                       AND subscription_end_date <= ?
                       AND id > ?
                     ORDER BY id
                     LIMIT ?""",
                (iso_or_none(now), str(after_vendor_id), max(1, int(limit))),
            ) as cur:
                rows = await cur.fetchall()
                return [_row_to_state(row) for row in rows]

    async def write_audit_log(self, vendor_id: str, action: str, payload: dict[str, Any] | None = None) -> None:
        async with open_db(self.db_path) as db:
            await run_in_transaction(db, lambda conn: _insert_audit_row(conn, vendor_id, action, payload))

    async def list_audit_log(self, vendor_id: str) -> list[dict[str, Any]]:
        async with open_db(self.db_path) as db:
            async with db.execute(
                """SELECT id, vendor_id, action, payload_json, created_at
                     FROM vendor_audit_log
                    WHERE vendor_id = ?
                    ORDER BY id""",
                (str(vendor_id),),
            ) as cur:
                rows = await cur.fetchall()
        entries: list[dict[str, Any]] = []
        for row in rows:
            entry = dict(row)
            entry["payload"] = json.loads(entry.pop("payload_json") or "{}")
            entries.append(entry)
        return entries
