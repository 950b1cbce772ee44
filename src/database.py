"""SQLite schema and connection helpers shared by the billing store."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import aiosqlite

from config import DB_PATH

SQLITE_BUSY_TIMEOUT_MS = 5000
WRITE_RETRY_ATTEMPTS = 3
WRITE_RETRY_BASE_DELAY_SEC = 0.05

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """Apply SQLite settings for several processes sharing one database file."""
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")


@asynccontextmanager
async def open_db(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with row access by column name and pragmas applied."""
    async with aiosqlite.connect(db_path or DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await apply_sqlite_pragmas(db)
        yield db


def is_sqlite_locked_error(exc: BaseException) -> bool:
    if not isinstance(exc, aiosqlite.OperationalError):
        return False
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message


async def execute_write_with_retry(
    db: aiosqlite.Connection,
    query: str,
    params: Sequence[Any] = (),
) -> aiosqlite.Cursor:
    """Execute and commit a single write with a short retry on lock contention."""
    for attempt in range(WRITE_RETRY_ATTEMPTS):
        try:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor
        except aiosqlite.OperationalError as error:
            if not is_sqlite_locked_error(error) or attempt >= WRITE_RETRY_ATTEMPTS - 1:
                raise
            backoff = WRITE_RETRY_BASE_DELAY_SEC * (2**attempt)
            logger.warning("SQLite write locked, retrying in %.2fs (attempt %s)", backoff, attempt + 1)
            await asyncio.sleep(backoff)
    raise RuntimeError("Unexpected retry loop state")


async def run_in_transaction(
    db: aiosqlite.Connection,
    work: Callable[[aiosqlite.Connection], Awaitable[T]],
) -> T:
    """Run `work` inside BEGIN IMMEDIATE ... COMMIT, retrying on lock contention.

    Any exception raised by `work` rolls the transaction back and propagates.
    """
    for attempt in range(WRITE_RETRY_ATTEMPTS):
        try:
            await db.execute("BEGIN IMMEDIATE")
        except aiosqlite.OperationalError as error:
            if not is_sqlite_locked_error(error) or attempt >= WRITE_RETRY_ATTEMPTS - 1:
                raise
            await asyncio.sleep(WRITE_RETRY_BASE_DELAY_SEC * (2**attempt))
            continue
        try:
            result = await work(db)
        except BaseException:
            await db.rollback()
            raise
        await db.commit()
        return result
    raise RuntimeError("Unexpected retry loop state")


async def init_db(db_path: str | None = None) -> None:
    """Create billing tables and indexes if they do not exist yet."""
    async with open_db(db_path) as db:
        await db.execute(
            """CREATE TABLE IF NOT EXISTS vendors (
                id TEXT PRIMARY KEY,
                user_id TEXT DEFAULT NULL,
                store_name TEXT DEFAULT NULL,
                subscription_plan TEXT NOT NULL DEFAULT 'free',
                subscription_start_date TEXT DEFAULT NULL,
                subscription_end_date TEXT DEFAULT NULL,
                is_suspended INTEGER NOT NULL DEFAULT 0,
                product_limit INTEGER NOT NULL DEFAULT 20,
                commission_rate INTEGER NOT NULL DEFAULT 15,
                has_home_visibility INTEGER NOT NULL DEFAULT 0,
                free_ads_remaining INTEGER NOT NULL DEFAULT 0,
                gift_plan TEXT DEFAULT NULL,
                gift_commission_rate INTEGER DEFAULT NULL,
                gift_plan_expires_at TEXT DEFAULT NULL,
                pending_purchase_reference TEXT DEFAULT NULL,
                pending_purchase_started_at TEXT DEFAULT NULL,
                revision INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )"""
        )
        await db.execute(
            """CREATE TABLE IF NOT EXISTS platform_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_type TEXT NOT NULL,
                amount INTEGER NOT NULL,
                vendor_id TEXT DEFAULT NULL,
                user_id TEXT DEFAULT NULL,
                order_id TEXT DEFAULT NULL,
                reference TEXT NOT NULL UNIQUE,
                payment_method TEXT DEFAULT NULL,
                description TEXT DEFAULT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL
            )"""
        )
        await db.execute(
            """CREATE TABLE IF NOT EXISTS vendor_audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                vendor_id TEXT NOT NULL,
                action TEXT NOT NULL,
                payload_json TEXT DEFAULT NULL,
                created_at TEXT NOT NULL
            )"""
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_vendors_suspended_end ON vendors (is_suspended, subscription_end_date)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_transactions_type_created ON platform_transactions (transaction_type, created_at)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_transactions_vendor_created ON platform_transactions (vendor_id, created_at)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_vendor_audit_vendor_created ON vendor_audit_log (vendor_id, created_at)"
        )
        await db.commit()
    logger.info("Billing schema ready at %s", db_path or DB_PATH)
