from __future__ import annotations

from fastapi import APIRouter, Depends

from betgate.api.deps import get_container, require_admin
from betgate.api.schemas import AppStatsOut, PendingReportOut
from betgate.container import Container
from betgate.services.auth import TokenPayload

router = APIRouter()


@router.get("/stats", response_model=AppStatsOut, summary="Application totals")
async def app_stats(
    _: TokenPayload = Depends(require_admin),
    container: Container = Depends(get_container),
) -> AppStatsOut:
    return AppStatsOut(
        users=await container.users.count_users(),
        bets=await container.bets.count_bets(),
        transactions=await container.ledger.count_transactions(),
        idempotency_keys=await container.idempotency.count(),
    )


@router.post("/bets/process-pending", response_model=PendingReportOut, summary="Settle every pending bet")
async def process_pending(
    _: TokenPayload = Depends(require_admin),
    container: Container = Depends(get_container),
) -> PendingReportOut:
    report = await container.betting.process_all_pending_bets()
    return PendingReportOut(
        processed_count=report.processed_count,
        successful_count=report.successful_count,
        failed_count=report.failed_count,
        details=report.details,
    )
