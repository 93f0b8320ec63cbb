from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from betgate.db.bets import BetRepository
from betgate.db.idempotency import AcquireOutcome, IdempotencyRepository
from betgate.db.models import BetStatus, IdempotencyRecord
from betgate.errors import BalanceError, NotFoundError
from betgate.utils import now_utc


async def test_create_balance_only_once(container, user1_id: int) -> None:
    assert await container.ledger.create_balance(user_id=user1_id, amount=Decimal("5")) is None
    assert (await container.ledger.get_balance(user1_id)).balance == Decimal("100")


async def test_negative_balance_cannot_be_created(container) -> None:
    with pytest.raises(BalanceError):
        await container.ledger.create_balance(user_id=999, amount=Decimal("-1"))


async def test_adjust_missing_balance_returns_none(container) -> None:
    assert await container.ledger.deposit(user_id=999, amount=Decimal("1"), description="x") is None


async def test_settle_bet_is_applied_once(container, user1_id: int) -> None:
    bets: BetRepository = container.bets
    placed = await bets.record_placed_bet(
        user_id=user1_id,
        external_bet_id="ext-77",
        amount=Decimal("2"),
        balance_before=Decimal("100"),
        balance_after=Decimal("98"),
        win_amount=None,
    )
    assert placed.bet.status == BetStatus.PENDING.value
    assert len(placed.transactions) == 1

    first = await bets.settle_bet(
        bet_id=placed.bet.id,
        win_amount=Decimal("4"),
        balance_before=Decimal("98"),
        balance_after=Decimal("102"),
    )
    second = await bets.settle_bet(
        bet_id=placed.bet.id,
        win_amount=Decimal("4"),
        balance_before=Decimal("98"),
        balance_after=Decimal("102"),
    )

    assert first.changed
    assert not second.changed
    assert len(await container.ledger.list_bet_transactions(placed.bet.id)) == 2
    assert (await container.ledger.get_balance(user1_id)).balance == Decimal("102")


async def test_settle_unknown_bet(container) -> None:
    with pytest.raises(NotFoundError):
        await container.bets.settle_bet(
            bet_id=12345,
            win_amount=Decimal("0"),
            balance_before=Decimal("0"),
            balance_after=Decimal("0"),
        )


async def test_bets_are_listed_newest_first(container, user1_id: int) -> None:
    for n in range(3):
        await container.bets.record_placed_bet(
            user_id=user1_id,
            external_bet_id=f"ext-{n}",
            amount=Decimal("1"),
            balance_before=Decimal("100") - n,
            balance_after=Decimal("99") - n,
            win_amount=Decimal("0"),
        )

    items, total = await container.bets.list_by_user(user_id=user1_id, page=1, limit=2)

    assert total == 3
    assert [bet.external_bet_id for bet in items] == ["ext-2", "ext-1"]


async def test_idempotency_states(container, user1_id: int) -> None:
    repo: IdempotencyRepository = container.idempotency
    args = {"user_id": user1_id, "key": "k-1", "endpoint": "POST /api/bets", "request_hash": "h1"}

    assert (await repo.acquire(**args)).outcome == AcquireOutcome.ACQUIRED
    assert (await repo.acquire(**args)).outcome == AcquireOutcome.IN_PROGRESS
    assert (await repo.acquire(**{**args, "request_hash": "h2"})).outcome == AcquireOutcome.MISMATCH

    await repo.resolve(user_id=user1_id, key="k-1", status_code=201, response_body='{"ok":true}', content_type="application/json")

    replay = await repo.acquire(**args)
    assert replay.outcome == AcquireOutcome.REPLAY
    assert replay.record.status_code == 201
    assert replay.record.response_body == '{"ok":true}'
    assert (await repo.acquire(**{**args, "endpoint": "POST /api/balance/deposit"})).outcome == AcquireOutcome.MISMATCH


async def test_idempotency_keys_are_scoped_per_user(container, user1_id: int) -> None:
    admin = await container.users.get_by_username("admin")
    args = {"key": "shared", "endpoint": "POST /api/bets", "request_hash": "h"}

    assert (await container.idempotency.acquire(user_id=user1_id, **args)).outcome == AcquireOutcome.ACQUIRED
    assert (await container.idempotency.acquire(user_id=admin.id, **args)).outcome == AcquireOutcome.ACQUIRED


async def test_released_key_can_be_acquired_again(container, user1_id: int) -> None:
    args = {"user_id": user1_id, "key": "k-2", "endpoint": "POST /api/bets", "request_hash": "h"}
    await container.idempotency.acquire(**args)
    await container.idempotency.release(user_id=user1_id, key="k-2")

    assert (await container.idempotency.acquire(**args)).outcome == AcquireOutcome.ACQUIRED


async def test_stale_lock_is_taken_over(container, user1_id: int) -> None:
    args = {"user_id": user1_id, "key": "k-3", "endpoint": "POST /api/bets", "request_hash": "h"}
    await container.idempotency.acquire(**args)
    async with container.session_factory() as session:
        async with session.begin():
            await session.execute(
                update(IdempotencyRecord)
                .where(IdempotencyRecord.key == "k-3")
                .values(locked_at=now_utc() - timedelta(minutes=5))
            )

    assert (await container.idempotency.acquire(**args)).outcome == AcquireOutcome.ACQUIRED
    assert (await container.idempotency.acquire(**args)).outcome == AcquireOutcome.IN_PROGRESS


async def test_purge_expired_keys(container, user1_id: int) -> None:
    for key in ("old", "new"):
        await container.idempotency.acquire(user_id=user1_id, key=key, endpoint="POST /api/bets", request_hash=key)
    async with container.session_factory() as session:
        async with session.begin():
            await session.execute(
                update(IdempotencyRecord)
                .where(IdempotencyRecord.key == "old")
                .values(created_at=now_utc() - timedelta(hours=48))
            )

    assert await container.idempotency.purge_expired(24) == 1
    assert await container.idempotency.count() == 1
    assert await container.idempotency.get(user_id=user1_id, key="new") is not None
