from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from betgate.db.ledger import append_transaction, lock_balance
from betgate.db.models import Balance, Bet, BetSource, BetStatus, Transaction, TransactionType
from betgate.errors import NotFoundError
from betgate.utils import fmt_money, now_utc, q_money


@dataclass(slots=True)
class PlacedBet:
    bet: Bet
    transactions: list[Transaction]
    balance: Balance


@dataclass(slots=True)
class SettledBet:
    bet: Bet
    balance: Balance | None
    changed: bool


@dataclass(slots=True)
class BetStats:
    total_bets: int
    total_wagered: Decimal
    total_won: Decimal
    win_rate: float
    pending_bets: int
    largest_win: Decimal
    largest_loss: Decimal

    @property
    def net_profit(self) -> Decimal:
        return self.total_won - self.total_wagered


class BetRepository:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def record_placed_bet(
        self,
        *,
        user_id: int,
        external_bet_id: str,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        win_amount: Decimal | None,
        external_balance: Decimal | None = None,
        source: BetSource = BetSource.UPSTREAM,
    ) -> PlacedBet:
        """Persist a bet the upstream already accepted, in one transaction.

        ``win_amount=None`` means the outcome is still unknown: the bet stays
        PENDING with only its BET transaction. The local balance is set to
        ``balance_after`` whatever the transaction arithmetic says.
        """
        amount = q_money(amount)
        balance_before = q_money(balance_before)
        balance_after = q_money(balance_after)

        async with self._session_factory() as session:
            async with session.begin():
                balance = await lock_balance(session, user_id)
                if balance is None:
                    balance = Balance(user_id=user_id, balance=balance_before)
                    session.add(balance)

                bet = Bet(
                    user_id=user_id,
                    external_bet_id=external_bet_id,
                    amount=amount,
                    status=BetStatus.PENDING.value,
                    source=source.value,
                )
                session.add(bet)
                await session.flush()

                transactions = [
                    append_transaction(
                        session,
                        user_id=user_id,
                        bet_id=bet.id,
                        kind=TransactionType.BET,
                        amount=amount,
                        balance_before=balance_before,
                        description=f"Bet placed: {fmt_money(amount)}",
                    )
                ]

                if win_amount is not None:
                    win_amount = q_money(win_amount)
                    bet.status = BetStatus.COMPLETED.value
                    bet.win_amount = win_amount
                    bet.completed_at = now_utc()
                    if win_amount > 0:
                        transactions.append(
                            append_transaction(
                                session,
                                user_id=user_id,
                                bet_id=bet.id,
                                kind=TransactionType.WIN,
                                amount=win_amount,
                                balance_before=transactions[0].balance_after,
                                description=f"Bet won: {fmt_money(win_amount)}",
                            )
                        )

                balance.balance = balance_after
                if external_balance is not None:
                    balance.external_balance = q_money(external_balance)
                    balance.last_checked_at = now_utc()

                await session.flush()
                return PlacedBet(bet=bet, transactions=transactions, balance=balance)

    async def settle_bet(
        self,
        *,
        bet_id: int,
        win_amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
    ) -> SettledBet:
        """Complete a PENDING bet; a bet already settled is returned untouched."""
        win_amount = q_money(win_amount)

        async with self._session_factory() as session:
            async with session.begin():
                bet = await session.get(Bet, bet_id)
                if not bet:
                    raise NotFoundError("Bet not found")

                if bet.status != BetStatus.PENDING.value:
                    return SettledBet(bet=bet, balance=None, changed=False)

                balance = await lock_balance(session, bet.user_id)
                if balance is None:
                    balance = Balance(user_id=bet.user_id, balance=q_money(balance_before))
                    session.add(balance)

                bet.status = BetStatus.COMPLETED.value
                bet.win_amount = win_amount
                bet.completed_at = now_utc()

                if win_amount > 0:
                    append_transaction(
                        session,
                        user_id=bet.user_id,
                        bet_id=bet.id,
                        kind=TransactionType.WIN,
                        amount=win_amount,
                        balance_before=balance_before,
                        description=f"Bet won: {fmt_money(win_amount)}",
                    )

                balance.balance = q_money(balance_after)
                balance.external_balance = q_money(balance_after)
                balance.last_checked_at = now_utc()

                await session.flush()
                return SettledBet(bet=bet, balance=balance, changed=True)

    async def get_bet(self, bet_id: int) -> Bet | None:
        async with self._session_factory() as session:
            return await session.get(Bet, bet_id)

    async def list_by_user(
        self,
        *,
        user_id: int,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Bet], int]:
        async with self._session_factory() as session:
            total_q = await session.execute(
                select(func.count(Bet.id)).where(Bet.user_id == user_id)
            )
            result = await session.execute(
                select(Bet)
                .where(Bet.user_id == user_id)
                .order_by(Bet.created_at.desc(), Bet.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            return list(result.scalars()), int(total_q.scalar_one())

    async def find_pending(self, *, user_id: int | None = None, limit: int = 100) -> list[Bet]:
        async with self._session_factory() as session:
            query = select(Bet).where(Bet.status == BetStatus.PENDING.value)
            if user_id is not None:
                query = query.where(Bet.user_id == user_id)
            result = await session.execute(query.order_by(Bet.id.asc()).limit(limit))
            return list(result.scalars())

    async def get_user_stats(self, user_id: int) -> BetStats:
        completed = Bet.status == BetStatus.COMPLETED.value
        won = completed & (Bet.win_amount > 0)
        lost = completed & (func.coalesce(Bet.win_amount, 0) == 0)

        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(Bet.id),
                    func.coalesce(func.sum(Bet.amount), 0),
                    func.coalesce(func.sum(case((won, Bet.win_amount), else_=0)), 0),
                    func.count(case((completed, Bet.id))),
                    func.count(case((won, Bet.id))),
                    func.count(case((Bet.status == BetStatus.PENDING.value, Bet.id))),
                    func.coalesce(func.max(case((won, Bet.win_amount))), 0),
                    func.coalesce(func.max(case((lost, Bet.amount))), 0),
                ).where(Bet.user_id == user_id)
            )
            (
                total_bets,
                total_wagered,
                total_won,
                completed_bets,
                winning_bets,
                pending_bets,
                largest_win,
                largest_loss,
            ) = result.one()

        win_rate = round(winning_bets / completed_bets * 100, 2) if completed_bets else 0.0
        return BetStats(
            total_bets=int(total_bets),
            total_wagered=q_money(total_wagered),
            total_won=q_money(total_won),
            win_rate=win_rate,
            pending_bets=int(pending_bets),
            largest_win=q_money(largest_win),
            largest_loss=q_money(largest_loss),
        )

    async def count_bets(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(Bet.id)))
            return int(result.scalar_one())
