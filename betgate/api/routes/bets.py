from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from betgate.api.deps import current_user, get_betting_service
from betgate.api.schemas import (
    BetOut,
    BetsPage,
    BetStatsOut,
    Pagination,
    PlaceBetRequest,
    PlacedBetOut,
    RecommendedBetOut,
)
from betgate.services.auth import TokenPayload
from betgate.services.balance import check_pagination
from betgate.services.betting import BetResult, BettingService
from betgate.utils import page_count

router = APIRouter()


def _bet_out(result: BetResult) -> BetOut:
    return BetOut(
        id=result.bet_id,
        external_bet_id=result.external_bet_id,
        amount=result.amount,
        status=result.status,
        win_amount=result.win_amount,
        source=result.source,
        created_at=result.created_at,
        completed_at=result.completed_at,
    )


@router.post(
    "",
    response_model=PlacedBetOut,
    status_code=status.HTTP_201_CREATED,
    summary="Place a bet",
)
async def place_bet(
    body: PlaceBetRequest,
    user: TokenPayload = Depends(current_user),
    service: BettingService = Depends(get_betting_service),
) -> PlacedBetOut:
    result = await service.place_bet(user.user_id, body.amount)
    return PlacedBetOut(
        id=result.bet_id,
        external_bet_id=result.external_bet_id,
        amount=result.amount,
        status=result.status,
        win_amount=result.win_amount,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
        source=result.source,
        created_at=result.created_at,
        completed_at=result.completed_at,
    )


@router.get("", response_model=BetsPage, summary="List own bets")
async def list_bets(
    page: int = Query(1),
    limit: int = Query(10),
    user: TokenPayload = Depends(current_user),
    service: BettingService = Depends(get_betting_service),
) -> BetsPage:
    check_pagination(page, limit)
    items, total = await service.list_bets(user.user_id, page=page, limit=limit)
    return BetsPage(
        bets=[_bet_out(item) for item in items],
        pagination=Pagination(total=total, page=page, limit=limit, pages=page_count(total, limit)),
    )


@router.get("/recommended", response_model=RecommendedBetOut, summary="Recommended bet amount")
async def recommended_bet(
    user: TokenPayload = Depends(current_user),
    service: BettingService = Depends(get_betting_service),
) -> RecommendedBetOut:
    result = await service.get_recommended_bet(user.user_id)
    return RecommendedBetOut(recommended_amount=result.recommended_amount, source=result.source)


@router.get("/stats", response_model=BetStatsOut, summary="Own betting statistics")
async def bet_stats(
    user: TokenPayload = Depends(current_user),
    service: BettingService = Depends(get_betting_service),
) -> BetStatsOut:
    stats = await service.get_user_stats(user.user_id)
    return BetStatsOut(
        total_bets=stats.total_bets,
        total_wagered=stats.total_wagered,
        total_won=stats.total_won,
        net_profit=stats.net_profit,
        win_rate=stats.win_rate,
        pending_bets=stats.pending_bets,
        largest_win=stats.largest_win,
        largest_loss=stats.largest_loss,
    )


@router.get("/result/{bet_id}", response_model=BetOut, summary="Settle or read a bet result")
async def bet_result(
    bet_id: int,
    user: TokenPayload = Depends(current_user),
    service: BettingService = Depends(get_betting_service),
) -> BetOut:
    return _bet_out(await service.get_bet_result(user.user_id, bet_id))


@router.get("/{bet_id}", response_model=BetOut, summary="Own bet by id")
async def get_bet(
    bet_id: int,
    user: TokenPayload = Depends(current_user),
    service: BettingService = Depends(get_betting_service),
) -> BetOut:
    return _bet_out(await service.get_bet(user.user_id, bet_id))
