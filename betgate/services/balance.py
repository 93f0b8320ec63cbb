from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from betgate.db.ledger import LedgerRepository, TransactionTotals
from betgate.db.models import Transaction, TransactionType
from betgate.errors import BalanceError, ErrorCode, ServiceError
from betgate.services.credentials import CredentialResolver
from betgate.services.external_api import ExternalApiClient
from betgate.services.locks import UserLocks
from betgate.utils import SYNC_TOLERANCE, is_synced, now_utc, parse_amount, q_money

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50

TRANSACTION_LABELS = {
    TransactionType.BET.value: "bet_place",
    TransactionType.WIN.value: "bet_win",
    TransactionType.DEPOSIT.value: "deposit",
    TransactionType.WITHDRAWAL.value: "withdrawal",
}

DEFAULT_DESCRIPTIONS = {
    TransactionType.BET.value: "Bet placed",
    TransactionType.WIN.value: "Bet won",
    TransactionType.DEPOSIT.value: "Deposit",
    TransactionType.WITHDRAWAL.value: "Withdrawal",
}


@dataclass(slots=True)
class BalanceView:
    balance: Decimal
    external_balance: Decimal | None
    last_updated: datetime
    is_synced: bool
    difference: Decimal | None


@dataclass(slots=True)
class SyncReport:
    internal_balance: Decimal
    external_balance: Decimal
    was_synced: bool
    difference: Decimal
    sync_timestamp: datetime


@dataclass(slots=True)
class TransactionView:
    id: int
    type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    bet_id: int | None
    created_at: datetime


@dataclass(slots=True)
class HistoryPoint:
    transaction_id: int
    type: str
    amount: Decimal
    balance: Decimal
    created_at: datetime


@dataclass(slots=True)
class BalanceHistory:
    points: list[HistoryPoint]
    totals: TransactionTotals


@dataclass(slots=True)
class ConsistencyReport:
    user_id: int
    local_balance: Decimal | None
    external_balance: Decimal | None
    calculated_balance: Decimal
    is_consistent: bool
    issues: list[dict[str, Any]] = field(default_factory=list)


def transaction_view(transaction: Transaction) -> TransactionView:
    return TransactionView(
        id=transaction.id,
        type=TRANSACTION_LABELS.get(transaction.type, transaction.type.lower()),
        amount=q_money(transaction.signed_amount),
        balance_before=q_money(transaction.balance_before),
        balance_after=q_money(transaction.balance_after),
        description=transaction.description or DEFAULT_DESCRIPTIONS.get(transaction.type, ""),
        bet_id=transaction.bet_id,
        created_at=transaction.created_at,
    )


def check_pagination(page: int, limit: int, max_limit: int = MAX_PAGE_SIZE) -> None:
    if page < 1:
        raise ServiceError(ErrorCode.VALIDATION_ERROR, "Page must be greater than 0", {"page": page})
    if limit < 1 or limit > max_limit:
        raise ServiceError(
            ErrorCode.VALIDATION_ERROR,
            f"Limit must be between 1 and {max_limit}",
            {"limit": limit},
        )


class BalanceService:
    def __init__(
        self,
        *,
        ledger: LedgerRepository,
        client: ExternalApiClient,
        credentials: CredentialResolver,
        locks: UserLocks,
    ) -> None:
        self._ledger = ledger
        self._client = client
        self._credentials = credentials
        self._locks = locks

    async def get_current_balance(self, user_id: int) -> BalanceView:
        local = await self._ledger.get_balance(user_id)
        creds = await self._credentials.resolve(user_id)
        if creds is None:
            if local is None:
                raise ServiceError(ErrorCode.BALANCE_NOT_FOUND, "Balance not found for user")
            return BalanceView(
                balance=q_money(local.balance),
                external_balance=None,
                last_updated=local.last_checked_at or now_utc(),
                is_synced=False,
                difference=None,
            )

        auth = await self._client.authenticate(creds)
        if not auth.success:
            logger.warning("Balance check: upstream authentication failed: %s", auth.error_message)

        external: Decimal | None = None
        result = await self._client.get_balance(creds)
        if result.success:
            external = parse_amount((result.data or {}).get("balance"))
        if external is None:
            logger.warning("Balance check for user %s: upstream balance unavailable", user_id)
        else:
            external = q_money(external)

        if local is None:
            if external is None:
                raise ServiceError(ErrorCode.BALANCE_NOT_FOUND, "Balance not found for user")
            # Seeded from upstream, so the first snapshot is in sync.
            await self._ledger.create_balance(
                user_id=user_id,
                amount=external,
                external_balance=external,
                description="Balance imported from external API",
            )
            local_amount = external
        else:
            local_amount = q_money(local.balance)
            if external is not None:
                await self._ledger.record_external_balance(user_id=user_id, external_balance=external)

        if external is None:
            return BalanceView(
                balance=local_amount,
                external_balance=None,
                last_updated=now_utc(),
                is_synced=False,
                difference=None,
            )

        return BalanceView(
            balance=external,
            external_balance=external,
            last_updated=now_utc(),
            is_synced=is_synced(local_amount, external),
            difference=local_amount - external,
        )

    async def initialize_balance(self, user_id: int, amount: Decimal) -> BalanceView:
        amount = q_money(amount)
        if amount < 0:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, "Initial balance cannot be negative")

        async with self._locks.for_user(user_id):
            if await self._ledger.get_balance(user_id) is not None:
                raise ServiceError(ErrorCode.VALIDATION_ERROR, "Balance already exists for user")

            external: Decimal | None = None
            creds = await self._credentials.resolve(user_id)
            if creds is not None:
                auth = await self._client.authenticate(creds)
                if not auth.success:
                    raise ServiceError(
                        ErrorCode.AUTHENTICATION_FAILED,
                        "Failed to authenticate with external API",
                        {"external_error": auth.error_message},
                    )
                result = await self._client.set_balance(creds, amount)
                if not result.success:
                    raise ServiceError(
                        ErrorCode.BALANCE_SYNC_ERROR,
                        "Failed to set balance in external API",
                        {"external_error": result.error_message},
                    )
                external = parse_amount((result.data or {}).get("balance"))
                external = q_money(external) if external is not None else amount

            balance = await self._ledger.create_balance(
                user_id=user_id,
                amount=amount,
                external_balance=external,
            )
            if balance is None:
                raise ServiceError(ErrorCode.VALIDATION_ERROR, "Balance already exists for user")

        logger.info("Balance of user %s initialized with %s", user_id, amount)
        return BalanceView(
            balance=amount,
            external_balance=external,
            last_updated=balance.last_checked_at or now_utc(),
            is_synced=external is not None and is_synced(amount, external),
            difference=amount - external if external is not None else None,
        )

    async def add_funds(self, user_id: int, amount: Decimal, description: str | None = None) -> TransactionView:
        return await self._adjust(user_id, amount, description, withdraw=False)

    async def withdraw_funds(self, user_id: int, amount: Decimal, description: str | None = None) -> TransactionView:
        return await self._adjust(user_id, amount, description, withdraw=True)

    async def _adjust(
        self,
        user_id: int,
        amount: Decimal,
        description: str | None,
        *,
        withdraw: bool,
    ) -> TransactionView:
        amount = q_money(amount)
        if amount <= 0:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, "Amount must be greater than zero")

        kind = TransactionType.WITHDRAWAL if withdraw else TransactionType.DEPOSIT
        text = description or DEFAULT_DESCRIPTIONS[kind.value]
        async with self._locks.for_user(user_id):
            try:
                if withdraw:
                    entry = await self._ledger.withdraw(user_id=user_id, amount=amount, description=text)
                else:
                    entry = await self._ledger.deposit(user_id=user_id, amount=amount, description=text)
            except BalanceError as exc:
                raise ServiceError(
                    ErrorCode.INSUFFICIENT_BALANCE,
                    "Insufficient balance",
                    {"amount": str(amount)},
                ) from exc

        if entry is None:
            raise ServiceError(ErrorCode.BALANCE_NOT_FOUND, "Balance not found for user")

        logger.info(
            "%s for user %s: %s, balance %s -> %s",
            kind.value, user_id, amount, entry.transaction.balance_before, entry.transaction.balance_after,
        )
        return transaction_view(entry.transaction)

    async def sync_with_external_api(self, user_id: int) -> SyncReport:
        creds = await self._credentials.require(user_id)
        local = await self._ledger.get_balance(user_id)
        if local is None:
            raise ServiceError(ErrorCode.BALANCE_NOT_FOUND, "Balance not found for user")

        result = await self._client.get_balance(creds)
        external = parse_amount((result.data or {}).get("balance")) if result.success else None
        if external is None:
            raise ServiceError(
                ErrorCode.EXTERNAL_API_ERROR,
                "Failed to get balance from external API",
                {"external_error": result.error_message},
            )

        external = q_money(external)
        internal = q_money(local.balance)
        await self._ledger.record_external_balance(user_id=user_id, external_balance=external)
        difference = internal - external
        if not is_synced(internal, external):
            logger.warning("Balance drift for user %s: local %s, upstream %s", user_id, internal, external)

        return SyncReport(
            internal_balance=internal,
            external_balance=external,
            was_synced=is_synced(internal, external),
            difference=difference,
            sync_timestamp=now_utc(),
        )

    async def get_balance_history(self, user_id: int) -> BalanceHistory:
        transactions = await self._ledger.list_history(user_id)
        totals = await self._ledger.get_totals(user_id)
        points = [
            HistoryPoint(
                transaction_id=t.id,
                type=TRANSACTION_LABELS.get(t.type, t.type.lower()),
                amount=q_money(t.signed_amount),
                balance=q_money(t.balance_after),
                created_at=t.created_at,
            )
            for t in transactions
        ]
        return BalanceHistory(points=points, totals=totals)

    async def get_transactions(
        self,
        user_id: int,
        *,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[TransactionView], int]:
        check_pagination(page, limit)
        items, total = await self._ledger.list_transactions(user_id=user_id, page=page, limit=limit)
        return [transaction_view(t) for t in items], total

    async def check_balance_consistency(self, user_id: int) -> ConsistencyReport:
        local = await self._ledger.get_balance(user_id)
        totals = await self._ledger.get_totals(user_id)
        calculated = totals.implied_balance

        local_amount = q_money(local.balance) if local else None
        external = q_money(local.external_balance) if local and local.external_balance is not None else None

        issues: list[dict[str, Any]] = []
        if local_amount is None:
            issues.append(
                {
                    "type": "missing_balance",
                    "message": "No local balance record",
                    "suggestion": "Initialize the balance",
                }
            )
        elif abs(local_amount - calculated) >= SYNC_TOLERANCE:
            issues.append(
                {
                    "type": "transaction_mismatch",
                    "message": f"Local balance {local_amount} differs from transaction total {calculated}",
                    "difference": str(local_amount - calculated),
                    "suggestion": "Review transactions for missing or duplicated entries",
                }
            )
        if local_amount is not None and external is not None and not is_synced(local_amount, external):
            issues.append(
                {
                    "type": "external_mismatch",
                    "message": f"Local balance {local_amount} differs from last upstream balance {external}",
                    "difference": str(local_amount - external),
                    "suggestion": "Run a balance sync with the external API",
                }
            )

        return ConsistencyReport(
            user_id=user_id,
            local_balance=local_amount,
            external_balance=external,
            calculated_balance=calculated,
            is_consistent=not issues,
            issues=issues,
        )
