from __future__ import annotations

from decimal import Decimal

import pytest

from betgate.db.models import BetStatus
from betgate.services import reconciler
from betgate.services.reconciler import reconcile_once, run_reconciler

from conftest import FakeUpstream


class StopLoop(Exception):
    pass


async def test_reconcile_once_settles_pending_bets(container, user1_id: int, upstream: FakeUpstream) -> None:
    upstream.fail("POST", "/win", 400)
    upstream.wins.append(Decimal("4"))
    placed = await container.betting.place_bet(user1_id, 2)

    report = await reconcile_once(container.betting, container.idempotency, ttl_hours=24)

    assert (report.processed_count, report.successful_count, report.failed_count) == (1, 1, 0)
    bet = await container.bets.get_bet(placed.bet_id)
    assert bet.status == BetStatus.COMPLETED.value
    assert bet.win_amount == Decimal("4")


async def test_reconcile_once_reports_failures(container, user1_id: int, upstream: FakeUpstream) -> None:
    upstream.fail("POST", "/win", 400, times=2)
    await container.betting.place_bet(user1_id, 2)

    report = await reconcile_once(container.betting, container.idempotency, ttl_hours=24)

    assert (report.processed_count, report.successful_count, report.failed_count) == (1, 0, 1)
    assert report.details[0]["status"] == "failed"
    assert len(await container.bets.find_pending()) == 1


async def test_reconciler_loop_survives_errors(container, monkeypatch) -> None:
    calls: list[int] = []
    sleeps: list[float] = []

    async def flaky(betting, idempotency, ttl_hours):
        calls.append(ttl_hours)
        if len(calls) == 1:
            raise RuntimeError("database locked")

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        if len(sleeps) >= 2:
            raise StopLoop

    monkeypatch.setattr(reconciler, "reconcile_once", flaky)

    with pytest.raises(StopLoop):
        await run_reconciler(
            container.betting, container.idempotency, interval_sec=1, ttl_hours=24, sleep=fake_sleep
        )

    assert calls == [24, 24]
    assert sleeps == [5, 5]
