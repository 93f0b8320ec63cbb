from __future__ import annotations

from fastapi import APIRouter, Depends

from betgate.api.deps import current_user, get_balance_service
from betgate.api.schemas import (
    BalanceOut,
    ConsistencyOut,
    FundsRequest,
    HistoryOut,
    HistoryPointOut,
    InitializeBalanceRequest,
    SyncOut,
    TotalsOut,
    TransactionOut,
)
from betgate.services.auth import TokenPayload
from betgate.services.balance import BalanceService, BalanceView, TransactionView

router = APIRouter()


def _balance_out(view: BalanceView) -> BalanceOut:
    return BalanceOut(
        balance=view.balance,
        external_balance=view.external_balance,
        last_updated=view.last_updated,
        is_synced=view.is_synced,
        difference=view.difference,
    )


def transaction_out(view: TransactionView) -> TransactionOut:
    return TransactionOut(
        id=view.id,
        type=view.type,
        amount=view.amount,
        balance_before=view.balance_before,
        balance_after=view.balance_after,
        description=view.description,
        bet_id=view.bet_id,
        created_at=view.created_at,
    )


@router.get("", response_model=BalanceOut, summary="Current balance")
async def get_balance(
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> BalanceOut:
    return _balance_out(await service.get_current_balance(user.user_id))


@router.post("/initialize", response_model=BalanceOut, status_code=201, summary="Create the balance")
async def initialize_balance(
    body: InitializeBalanceRequest,
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> BalanceOut:
    return _balance_out(await service.initialize_balance(user.user_id, body.amount))


@router.post("/deposit", response_model=TransactionOut, summary="Add funds locally")
async def deposit(
    body: FundsRequest,
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> TransactionOut:
    return transaction_out(await service.add_funds(user.user_id, body.amount, body.description))


@router.post("/withdraw", response_model=TransactionOut, summary="Withdraw funds locally")
async def withdraw(
    body: FundsRequest,
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> TransactionOut:
    return transaction_out(await service.withdraw_funds(user.user_id, body.amount, body.description))


@router.post("/sync", response_model=SyncOut, summary="Compare with the upstream balance")
async def sync_balance(
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> SyncOut:
    report = await service.sync_with_external_api(user.user_id)
    return SyncOut(
        internal_balance=report.internal_balance,
        external_balance=report.external_balance,
        was_synced=report.was_synced,
        difference=report.difference,
        sync_timestamp=report.sync_timestamp,
    )


@router.get("/history", response_model=HistoryOut, summary="Balance after each transaction")
async def balance_history(
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> HistoryOut:
    history = await service.get_balance_history(user.user_id)
    totals = history.totals
    return HistoryOut(
        history=[
            HistoryPointOut(
                transaction_id=p.transaction_id,
                type=p.type,
                amount=p.amount,
                balance=p.balance,
                created_at=p.created_at,
            )
            for p in history.points
        ],
        totals=TotalsOut(
            deposits=totals.deposits,
            withdrawals=totals.withdrawals,
            bets=totals.bets,
            wins=totals.wins,
            implied_balance=totals.implied_balance,
        ),
    )


@router.get("/consistency", response_model=ConsistencyOut, summary="Ledger consistency report")
async def balance_consistency(
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> ConsistencyOut:
    report = await service.check_balance_consistency(user.user_id)
    return ConsistencyOut(
        user_id=report.user_id,
        local_balance=report.local_balance,
        external_balance=report.external_balance,
        calculated_balance=report.calculated_balance,
        is_consistent=report.is_consistent,
        issues=report.issues,
    )
