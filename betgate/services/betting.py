from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from betgate.db.bets import BetRepository, BetStats, PlacedBet
from betgate.db.ledger import LedgerRepository
from betgate.db.models import Bet, BetSource, BetStatus
from betgate.errors import ErrorCode, NotFoundError, ServiceError
from betgate.services.credentials import CredentialResolver
from betgate.services.external_api import (
    MAX_BET,
    MIN_BET,
    ApiResult,
    ExternalApiClient,
    UpstreamCredentials,
    is_valid_bet_amount,
)
from betgate.services.fallback import FallbackPolicy, StrictPolicy
from betgate.services.locks import UserLocks
from betgate.utils import as_utc, parse_amount, q_money

logger = logging.getLogger(__name__)

RECOMMENDED_SHARE = Decimal("0.25")


@dataclass(slots=True)
class PlaceBetResult:
    bet_id: int
    external_bet_id: str
    amount: Decimal
    status: str
    win_amount: Decimal | None
    balance_before: Decimal
    balance_after: Decimal
    source: str
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class BetResult:
    bet_id: int
    external_bet_id: str
    amount: Decimal
    status: str
    win_amount: Decimal | None
    source: str
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class Recommendation:
    recommended_amount: int
    source: str


@dataclass(slots=True)
class PendingReport:
    processed_count: int = 0
    successful_count: int = 0
    failed_count: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)


def fallback_recommendation(balance: Decimal) -> int:
    share = (q_money(balance) * RECOMMENDED_SHARE).to_integral_value(rounding=ROUND_FLOOR)
    return max(MIN_BET, min(MAX_BET, int(share)))


def bet_result(bet: Bet) -> BetResult:
    return BetResult(
        bet_id=bet.id,
        external_bet_id=bet.external_bet_id,
        amount=q_money(bet.amount),
        status=bet.status,
        win_amount=q_money(bet.win_amount) if bet.win_amount is not None else None,
        source=bet.source,
        created_at=as_utc(bet.created_at),
        completed_at=as_utc(bet.completed_at) if bet.completed_at else None,
    )


class BettingService:
    def __init__(
        self,
        *,
        bets: BetRepository,
        ledger: LedgerRepository,
        client: ExternalApiClient,
        credentials: CredentialResolver,
        locks: UserLocks,
        policy: FallbackPolicy | None = None,
        default_stake: int = 1000,
    ) -> None:
        self._bets = bets
        self._ledger = ledger
        self._client = client
        self._credentials = credentials
        self._locks = locks
        self._policy = policy or StrictPolicy()
        self._default_stake = default_stake

    @property
    def policy(self) -> FallbackPolicy:
        return self._policy

    async def place_bet(self, user_id: int, amount: Any) -> PlaceBetResult:
        if not is_valid_bet_amount(amount):
            raise ServiceError(
                ErrorCode.INVALID_BET_AMOUNT,
                f"Bet amount must be an integer between {MIN_BET} and {MAX_BET}",
                {"amount": str(amount)},
            )
        stake = Decimal(int(amount))

        creds = await self._credentials.require(user_id)

        async with self._locks.for_user(user_id):
            logger.info("Placing bet: user=%s amount=%s", user_id, stake)

            auth = await self._client.authenticate(creds)
            if not auth.success:
                if self._can_simulate(auth):
                    return await self._place_simulated(user_id, stake)
                raise ServiceError(
                    ErrorCode.AUTHENTICATION_FAILED,
                    "Failed to authenticate with external API",
                    {"external_error": auth.error_message},
                )

            balance_res = await self._client.get_balance(creds)
            if not balance_res.success and self._can_simulate(balance_res):
                return await self._place_simulated(user_id, stake)
            balance_before = self._require_balance(balance_res)

            if balance_before == 0:
                logger.info("Upstream balance of user %s is empty, setting %s", user_id, self._default_stake)
                set_res = await self._client.set_balance(creds, self._default_stake)
                balance_before = self._require_balance(set_res, default=Decimal(self._default_stake))

            if balance_before < stake:
                raise ServiceError(
                    ErrorCode.INSUFFICIENT_BALANCE,
                    "Insufficient balance",
                    {"balance": str(balance_before), "amount": str(stake)},
                )

            # Once the placement request is sent the upstream bet may exist;
            # the local record must be written even if the caller goes away.
            completion = asyncio.ensure_future(self._place_upstream(creds, user_id, stake, balance_before))
            try:
                return await asyncio.shield(completion)
            except asyncio.CancelledError:
                logger.warning("Bet of user %s: caller cancelled, finishing local record", user_id)
                await asyncio.wait({completion})
                raise

    async def _place_upstream(
        self,
        creds: UpstreamCredentials,
        user_id: int,
        stake: Decimal,
        balance_before: Decimal,
    ) -> PlaceBetResult:
        placed = await self._client.place_bet(creds, int(stake))
        if not placed.success:
            if self._can_simulate(placed):
                return await self._place_simulated(user_id, stake)
            code = ErrorCode.EXTERNAL_API_UNAVAILABLE if placed.unavailable else ErrorCode.EXTERNAL_API_ERROR
            raise ServiceError(code, "Failed to place bet", {"external_error": placed.error_message})

        external_bet_id = str((placed.data or {}).get("bet_id") or "").strip()
        if not external_bet_id:
            logger.error(
                "Upstream accepted a bet of user %s without a bet id, reconciliation required: %s",
                user_id, placed.data,
            )
            raise ServiceError(ErrorCode.EXTERNAL_API_ERROR, "Upstream did not return a bet id")

        return await self._complete_upstream_bet(creds, user_id, external_bet_id, stake, balance_before)

    async def _complete_upstream_bet(
        self,
        creds: UpstreamCredentials,
        user_id: int,
        external_bet_id: str,
        stake: Decimal,
        balance_before: Decimal,
    ) -> PlaceBetResult:
        win_amount: Decimal | None = None
        win_res = await self._client.get_win_result(creds, external_bet_id)
        if win_res.success:
            win_amount = parse_amount((win_res.data or {}).get("win", 0))
        if win_amount is None:
            logger.error(
                "Bet %s accepted upstream but its result is unavailable, reconciliation required",
                external_bet_id,
            )

        expected = q_money(balance_before - stake + (win_amount or 0))
        external_balance: Decimal | None = None
        final_res = await self._client.get_balance(creds)
        if final_res.success:
            external_balance = parse_amount((final_res.data or {}).get("balance"))

        if external_balance is None:
            logger.warning(
                "Bet %s: final upstream balance unavailable, using computed %s",
                external_bet_id, expected,
            )
            balance_after = expected
        else:
            balance_after = q_money(external_balance)
            if balance_after != expected:
                logger.warning(
                    "Bet %s: upstream balance %s differs from expected %s",
                    external_bet_id, balance_after, expected,
                )

        try:
            placed = await self._bets.record_placed_bet(
                user_id=user_id,
                external_bet_id=external_bet_id,
                amount=stake,
                balance_before=balance_before,
                balance_after=balance_after,
                win_amount=win_amount,
                external_balance=external_balance,
                source=BetSource.UPSTREAM,
            )
        except Exception as exc:
            logger.error(
                "Bet %s accepted upstream but not recorded locally, reconciliation required",
                external_bet_id,
                exc_info=True,
            )
            raise ServiceError(
                ErrorCode.INTERNAL_ERROR,
                "Bet was placed but could not be recorded",
                {"external_bet_id": external_bet_id},
            ) from exc

        logger.info(
            "Bet %s placed: user=%s amount=%s win=%s balance %s -> %s",
            external_bet_id, user_id, stake, win_amount, balance_before, balance_after,
        )
        return self._placed_result(placed, balance_before)

    def _can_simulate(self, result: ApiResult) -> bool:
        return result.unavailable and self._policy.simulates

    async def _place_simulated(self, user_id: int, stake: Decimal) -> PlaceBetResult:
        balance = await self._ledger.get_balance(user_id)
        if balance is None:
            raise ServiceError(ErrorCode.BALANCE_NOT_FOUND, "Balance not found for user")

        balance_before = q_money(balance.balance)
        if balance_before < stake:
            raise ServiceError(
                ErrorCode.INSUFFICIENT_BALANCE,
                "Insufficient balance",
                {"balance": str(balance_before), "amount": str(stake)},
            )

        win_amount = self._policy.simulate_win(stake)
        balance_after = q_money(balance_before - stake + win_amount)
        logger.warning(
            "Upstream unavailable, bet of user %s simulated locally (simulated): amount=%s win=%s",
            user_id, stake, win_amount,
        )
        placed = await self._bets.record_placed_bet(
            user_id=user_id,
            external_bet_id=self._policy.new_bet_id(),
            amount=stake,
            balance_before=balance_before,
            balance_after=balance_after,
            win_amount=win_amount,
            source=BetSource.SIMULATED,
        )
        return self._placed_result(placed, balance_before)

    @staticmethod
    def _placed_result(placed: PlacedBet, balance_before: Decimal) -> PlaceBetResult:
        bet = placed.bet
        return PlaceBetResult(
            bet_id=bet.id,
            external_bet_id=bet.external_bet_id,
            amount=q_money(bet.amount),
            status=bet.status,
            win_amount=bet.win_amount,
            balance_before=q_money(balance_before),
            balance_after=q_money(placed.balance.balance),
            source=bet.source,
            created_at=as_utc(bet.created_at),
            completed_at=as_utc(bet.completed_at) if bet.completed_at else None,
        )

    @staticmethod
    def _require_balance(result: ApiResult, default: Decimal | None = None) -> Decimal:
        if not result.success:
            raise ServiceError(
                ErrorCode.BALANCE_SYNC_ERROR,
                "Failed to read balance from external API",
                {"external_error": result.error_message},
            )
        value = parse_amount((result.data or {}).get("balance"))
        if value is None:
            if default is not None:
                return q_money(default)
            raise ServiceError(ErrorCode.BALANCE_SYNC_ERROR, "External API returned an invalid balance")
        return q_money(value)

    async def get_bet_result(self, user_id: int, bet_id: int) -> BetResult:
        bet = await self._owned_bet(user_id, bet_id)
        if bet.status != BetStatus.PENDING.value:
            return bet_result(bet)

        creds = await self._credentials.require(user_id)
        async with self._locks.for_user(user_id):
            bet = await self._owned_bet(user_id, bet_id)
            if bet.status != BetStatus.PENDING.value:
                return bet_result(bet)
            return await self._settle(creds, bet)

    async def _settle(self, creds: UpstreamCredentials, bet: Bet) -> BetResult:
        pre = await self._client.get_balance(creds)
        pre_balance = parse_amount((pre.data or {}).get("balance")) if pre.success else None
        if pre_balance is None:
            raise ServiceError(
                ErrorCode.EXTERNAL_API_ERROR,
                "Failed to read balance before settlement",
                {"bet_id": bet.id, "external_error": pre.error_message},
            )

        win_res = await self._client.get_win_result(creds, bet.external_bet_id)
        win_amount = parse_amount((win_res.data or {}).get("win", 0)) if win_res.success else None
        if win_amount is None:
            raise ServiceError(
                ErrorCode.EXTERNAL_API_ERROR,
                "Failed to get bet result from external API",
                {"bet_id": bet.id, "external_error": win_res.error_message},
            )

        post = await self._client.get_balance(creds)
        post_balance = parse_amount((post.data or {}).get("balance")) if post.success else None
        if post_balance is None:
            raise ServiceError(
                ErrorCode.EXTERNAL_API_ERROR,
                "Failed to read balance after settlement",
                {"bet_id": bet.id, "external_error": post.error_message},
            )

        try:
            settled = await self._bets.settle_bet(
                bet_id=bet.id,
                win_amount=win_amount,
                balance_before=pre_balance,
                balance_after=post_balance,
            )
        except NotFoundError as exc:
            raise ServiceError(ErrorCode.BET_NOT_FOUND, "Bet not found") from exc

        if settled.changed:
            logger.info(
                "Bet %s settled: win=%s balance %s -> %s",
                bet.external_bet_id, win_amount, pre_balance, post_balance,
            )
        return bet_result(settled.bet)

    async def _owned_bet(self, user_id: int, bet_id: int) -> Bet:
        bet = await self._bets.get_bet(bet_id)
        if bet is None or bet.user_id != user_id:
            raise ServiceError(ErrorCode.BET_NOT_FOUND, "Bet not found", {"bet_id": bet_id})
        return bet

    async def get_bet(self, user_id: int, bet_id: int) -> BetResult:
        return bet_result(await self._owned_bet(user_id, bet_id))

    async def list_bets(self, user_id: int, *, page: int = 1, limit: int = 10) -> tuple[list[BetResult], int]:
        bets, total = await self._bets.list_by_user(user_id=user_id, page=page, limit=limit)
        return [bet_result(bet) for bet in bets], total

    async def get_user_stats(self, user_id: int) -> BetStats:
        return await self._bets.get_user_stats(user_id)

    async def get_recommended_bet(self, user_id: int) -> Recommendation:
        creds = await self._credentials.resolve(user_id)
        if creds is not None:
            auth = await self._client.authenticate(creds)
            if auth.success:
                result = await self._client.get_recommended_bet(creds)
                if result.success:
                    value = parse_amount((result.data or {}).get("bet"))
                    if value is not None and is_valid_bet_amount(value):
                        return Recommendation(recommended_amount=int(value), source="upstream")
                    logger.warning("Upstream recommended an invalid bet: %s", result.data)
                else:
                    logger.warning("Recommended bet unavailable upstream: %s", result.error_message)
            else:
                logger.warning("Recommended bet: upstream authentication failed: %s", auth.error_message)

        balance = await self._ledger.get_balance(user_id)
        local = q_money(balance.balance) if balance else Decimal("0")
        amount = fallback_recommendation(local)
        logger.info("Recommended bet for user %s from local fallback: %s", user_id, amount)
        return Recommendation(recommended_amount=amount, source="fallback")

    async def process_all_pending_bets(self) -> PendingReport:
        report = PendingReport()
        for bet in await self._bets.find_pending():
            report.processed_count += 1
            try:
                result = await self.get_bet_result(bet.user_id, bet.id)
            except ServiceError as exc:
                report.failed_count += 1
                report.details.append(
                    {
                        "bet_id": bet.id,
                        "external_bet_id": bet.external_bet_id,
                        "status": "failed",
                        "error": exc.message,
                    }
                )
                logger.warning("Pending bet %s not settled: %s", bet.external_bet_id, exc.message)
                continue

            report.successful_count += 1
            report.details.append(
                {
                    "bet_id": result.bet_id,
                    "external_bet_id": result.external_bet_id,
                    "status": result.status,
                    "win_amount": str(result.win_amount) if result.win_amount is not None else None,
                }
            )
        return report
