from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from betgate.db.models import Balance, Transaction, TransactionType
from betgate.errors import BalanceError
from betgate.utils import now_utc, q_money


@dataclass(slots=True)
class LedgerEntry:
    transaction: Transaction
    balance: Balance


@dataclass(slots=True)
class TransactionTotals:
    deposits: Decimal
    withdrawals: Decimal
    bets: Decimal
    wins: Decimal

    @property
    def implied_balance(self) -> Decimal:
        return q_money(self.deposits + self.withdrawals + self.bets + self.wins)


async def lock_balance(session: AsyncSession, user_id: int) -> Balance | None:
    # FOR UPDATE is a no-op on SQLite; the service-level user lock covers it there.
    result = await session.execute(
        select(Balance).where(Balance.user_id == user_id).with_for_update()
    )
    return result.scalar_one_or_none()


def append_transaction(
    session: AsyncSession,
    *,
    user_id: int,
    kind: TransactionType,
    amount: Decimal,
    balance_before: Decimal,
    description: str,
    bet_id: int | None = None,
) -> Transaction:
    amount = q_money(amount)
    if amount < 0:
        raise ValueError("Transaction amount is stored as a magnitude")
    balance_before = q_money(balance_before)
    if kind in (TransactionType.BET, TransactionType.WITHDRAWAL):
        balance_after = balance_before - amount
    else:
        balance_after = balance_before + amount

    transaction = Transaction(
        user_id=user_id,
        bet_id=bet_id,
        type=kind.value,
        amount=amount,
        balance_before=balance_before,
        balance_after=q_money(balance_after),
        description=description,
    )
    session.add(transaction)
    return transaction


class LedgerRepository:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def get_balance(self, user_id: int) -> Balance | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Balance).where(Balance.user_id == user_id))
            return result.scalar_one_or_none()

    async def create_balance(
        self,
        *,
        user_id: int,
        amount: Decimal,
        external_balance: Decimal | None = None,
        description: str = "Initial balance",
    ) -> Balance | None:
        """Create the balance row; returns None when one already exists."""
        amount = q_money(amount)
        if amount < 0:
            raise BalanceError("Balance cannot be negative")

        async with self._session_factory() as session:
            async with session.begin():
                if await lock_balance(session, user_id) is not None:
                    return None

                balance = Balance(
                    user_id=user_id,
                    balance=amount,
                    external_balance=q_money(external_balance) if external_balance is not None else None,
                    last_checked_at=now_utc(),
                )
                session.add(balance)
                if amount > 0:
                    append_transaction(
                        session,
                        user_id=user_id,
                        kind=TransactionType.DEPOSIT,
                        amount=amount,
                        balance_before=Decimal("0"),
                        description=description,
                    )
                return balance

    async def deposit(self, *, user_id: int, amount: Decimal, description: str) -> LedgerEntry | None:
        return await self._adjust(
            user_id=user_id,
            kind=TransactionType.DEPOSIT,
            amount=amount,
            description=description,
        )

    async def withdraw(self, *, user_id: int, amount: Decimal, description: str) -> LedgerEntry | None:
        return await self._adjust(
            user_id=user_id,
            kind=TransactionType.WITHDRAWAL,
            amount=amount,
            description=description,
        )

    async def _adjust(
        self,
        *,
        user_id: int,
        kind: TransactionType,
        amount: Decimal,
        description: str,
    ) -> LedgerEntry | None:
        amount = q_money(amount)
        if amount <= 0:
            raise ValueError("Amount must be greater than zero")

        async with self._session_factory() as session:
            async with session.begin():
                balance = await lock_balance(session, user_id)
                if balance is None:
                    return None

                before = q_money(balance.balance)
                if kind == TransactionType.WITHDRAWAL and before < amount:
                    raise BalanceError("Insufficient balance")

                transaction = append_transaction(
                    session,
                    user_id=user_id,
                    kind=kind,
                    amount=amount,
                    balance_before=before,
                    description=description,
                )
                balance.balance = transaction.balance_after
                await session.flush()
                return LedgerEntry(transaction=transaction, balance=balance)

    async def record_external_balance(self, *, user_id: int, external_balance: Decimal) -> Balance | None:
        async with self._session_factory() as session:
            async with session.begin():
                balance = await lock_balance(session, user_id)
                if balance is None:
                    return None
                balance.external_balance = q_money(external_balance)
                balance.last_checked_at = now_utc()
                return balance

    async def list_transactions(
        self,
        *,
        user_id: int,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Transaction], int]:
        async with self._session_factory() as session:
            total_q = await session.execute(
                select(func.count(Transaction.id)).where(Transaction.user_id == user_id)
            )
            result = await session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            return list(result.scalars()), int(total_q.scalar_one())

    async def list_history(self, user_id: int, limit: int = 100) -> list[Transaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.id.desc())
                .limit(limit)
            )
            return list(reversed(list(result.scalars())))

    async def list_bet_transactions(self, bet_id: int) -> list[Transaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction)
                .where(Transaction.bet_id == bet_id)
                .order_by(Transaction.id.asc())
            )
            return list(result.scalars())

    async def get_totals(self, user_id: int) -> TransactionTotals:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction.type, func.coalesce(func.sum(Transaction.amount), 0))
                .where(Transaction.user_id == user_id)
                .group_by(Transaction.type)
            )
            sums = {kind: q_money(total) for kind, total in result.all()}

        zero = Decimal("0.00")
        return TransactionTotals(
            deposits=sums.get(TransactionType.DEPOSIT.value, zero),
            withdrawals=zero - sums.get(TransactionType.WITHDRAWAL.value, zero),
            bets=zero - sums.get(TransactionType.BET.value, zero),
            wins=sums.get(TransactionType.WIN.value, zero),
        )

    async def count_transactions(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(Transaction.id)))
            return int(result.scalar_one())
