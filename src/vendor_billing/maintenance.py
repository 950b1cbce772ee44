"""Background maintenance tasks for vendor billing."""

from __future__ import annotations

import asyncio
import logging

from config import CFG, is_maintenance_enabled
from vendor_billing.subscription import SubscriptionLifecycle


logger = logging.getLogger(__name__)

MIN_RECONCILE_INTERVAL_SEC = 30


async def suspension_maintenance_loop(
    lifecycle: SubscriptionLifecycle,
    *,
    interval_sec: int | None = None,
) -> None:
    """Periodically write back suspension for vendors whose cycle has ended."""
    if not is_maintenance_enabled():
        logger.info("Vendor suspension maintenance disabled (MAINTENANCE_ENABLED=0).")
        return

    configured = CFG.suspension_reconcile_interval_sec if interval_sec is None else interval_sec
    sleep_for = max(MIN_RECONCILE_INTERVAL_SEC, int(configured))

    while True:
        try:
            stats = await lifecycle.reconcile_suspensions()
            if int(stats.get("total_changed") or 0) > 0 or int(stats.get("conflicts") or 0) > 0:
                logger.info(
                    "Vendor suspensions reconciled: scanned=%s suspended=%s conflicts=%s",
                    stats.get("scanned"),
                    stats.get("suspended"),
                    stats.get("conflicts"),
                )
        except Exception:
            logger.exception("Vendor suspension maintenance loop failed")
        await asyncio.sleep(sleep_for)
