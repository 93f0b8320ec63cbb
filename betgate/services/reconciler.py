from __future__ import annotations

import asyncio
import logging

from betgate.db.idempotency import IdempotencyRepository
from betgate.services.betting import BettingService, PendingReport

logger = logging.getLogger(__name__)


async def run_reconciler(
    betting: BettingService,
    idempotency: IdempotencyRepository,
    interval_sec: int,
    ttl_hours: int,
    sleep=asyncio.sleep,
) -> None:
    while True:
        try:
            await reconcile_once(betting, idempotency, ttl_hours)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Pending bet reconciliation failed")

        await sleep(max(5, interval_sec))


async def reconcile_once(
    betting: BettingService,
    idempotency: IdempotencyRepository,
    ttl_hours: int,
) -> PendingReport:
    report = await betting.process_all_pending_bets()
    if report.processed_count:
        logger.info(
            "Pending bets: %s processed, %s settled, %s failed",
            report.processed_count, report.successful_count, report.failed_count,
        )

    purged = await idempotency.purge_expired(ttl_hours)
    if purged:
        logger.info("Purged %s expired idempotency keys", purged)
    return report
