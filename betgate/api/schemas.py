from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, Field, PlainSerializer

# Amounts travel as JSON numbers.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class LoginRequest(BaseModel):
    username: str


class UserOut(BaseModel):
    id: int
    username: str
    email: str | None = None
    last_login: datetime | None = None
    is_admin: bool = False


class LoginResponse(BaseModel):
    token: str
    expires_in: int
    user: UserOut


class PlaceBetRequest(BaseModel):
    amount: Decimal


class PlacedBetOut(BaseModel):
    id: int
    external_bet_id: str
    amount: Money
    status: str
    win_amount: Money | None = None
    balance_before: Money
    balance_after: Money
    source: str
    created_at: datetime
    completed_at: datetime | None = None


class BetOut(BaseModel):
    id: int
    external_bet_id: str
    amount: Money
    status: str
    win_amount: Money | None = None
    source: str
    created_at: datetime
    completed_at: datetime | None = None


class BetsPage(BaseModel):
    bets: list[BetOut]
    pagination: Pagination


class RecommendedBetOut(BaseModel):
    recommended_amount: int
    source: str


class BetStatsOut(BaseModel):
    total_bets: int
    total_wagered: Money
    total_won: Money
    net_profit: Money
    win_rate: float
    pending_bets: int
    largest_win: Money
    largest_loss: Money


class BalanceOut(BaseModel):
    balance: Money
    external_balance: Money | None = None
    last_updated: datetime
    is_synced: bool
    difference: Money | None = None


class InitializeBalanceRequest(BaseModel):
    amount: Decimal = Field(default=Decimal("1000"))


class FundsRequest(BaseModel):
    amount: Decimal
    description: str | None = Field(default=None, max_length=255)


class TransactionOut(BaseModel):
    id: int
    type: str
    amount: Money
    balance_before: Money
    balance_after: Money
    description: str
    bet_id: int | None = None
    created_at: datetime


class TransactionsPage(BaseModel):
    transactions: list[TransactionOut]
    pagination: Pagination


class SyncOut(BaseModel):
    internal_balance: Money
    external_balance: Money
    was_synced: bool
    difference: Money
    sync_timestamp: datetime


class HistoryPointOut(BaseModel):
    transaction_id: int
    type: str
    amount: Money
    balance: Money
    created_at: datetime


class TotalsOut(BaseModel):
    deposits: Money
    withdrawals: Money
    bets: Money
    wins: Money
    implied_balance: Money


class HistoryOut(BaseModel):
    history: list[HistoryPointOut]
    totals: TotalsOut


class ConsistencyOut(BaseModel):
    user_id: int
    local_balance: Money | None = None
    external_balance: Money | None = None
    calculated_balance: Money
    is_consistent: bool
    issues: list[dict[str, Any]]


class PendingReportOut(BaseModel):
    processed_count: int
    successful_count: int
    failed_count: int
    details: list[dict[str, Any]]


class AppStatsOut(BaseModel):
    users: int
    bets: int
    transactions: int
    idempotency_keys: int


class UpstreamHealthOut(BaseModel):
    status: str
    status_code: int
    duration_ms: int
    error: str | None = None


class HealthOut(BaseModel):
    status: str
    timestamp: datetime
    upstream: UpstreamHealthOut
