from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from betgate.api.deps import current_user, get_balance_service
from betgate.api.routes.balance import transaction_out
from betgate.api.schemas import Pagination, TransactionsPage
from betgate.services.auth import TokenPayload
from betgate.services.balance import BalanceService
from betgate.utils import page_count

router = APIRouter()


@router.get("", response_model=TransactionsPage, summary="Own transactions, newest first")
async def list_transactions(
    page: int = Query(1),
    limit: int = Query(10),
    user: TokenPayload = Depends(current_user),
    service: BalanceService = Depends(get_balance_service),
) -> TransactionsPage:
    items, total = await service.get_transactions(user.user_id, page=page, limit=limit)
    return TransactionsPage(
        transactions=[transaction_out(item) for item in items],
        pagination=Pagination(total=total, page=page, limit=limit, pages=page_count(total, limit)),
    )
