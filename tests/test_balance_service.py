from __future__ import annotations

from decimal import Decimal

import pytest

from betgate.errors import ErrorCode, ServiceError

from conftest import USER1_EXTERNAL_ID, FakeUpstream

USER2_EXTERNAL_ID = "8"
USER2_SECRET = "user-two-secret-key-0002"


async def _provision_user2(container, upstream: FakeUpstream) -> int:
    upstream.secrets[USER2_EXTERNAL_ID] = USER2_SECRET
    result = await container.users.provision(
        username="user2",
        email="user2@example.com",
        external_user_id=USER2_EXTERNAL_ID,
        encrypted_secret=container.cipher.encrypt(USER2_SECRET),
    )
    return result.user.id


async def test_current_balance_in_sync(container, user1_id: int) -> None:
    view = await container.balance.get_current_balance(user1_id)

    assert view.balance == Decimal("100")
    assert view.external_balance == Decimal("100")
    assert view.is_synced
    assert view.difference == Decimal("0")


async def test_current_balance_reports_drift_and_records_upstream(
    container, user1_id: int, upstream: FakeUpstream
) -> None:
    upstream.balances[USER1_EXTERNAL_ID] = Decimal("120.50")

    view = await container.balance.get_current_balance(user1_id)

    assert view.balance == Decimal("120.50")
    assert not view.is_synced
    assert view.difference == Decimal("-20.50")
    stored = await container.ledger.get_balance(user1_id)
    assert stored.balance == Decimal("100")
    assert stored.external_balance == Decimal("120.50")


async def test_current_balance_falls_back_to_local_when_upstream_is_down(
    container, user1_id: int, upstream: FakeUpstream
) -> None:
    upstream.fail("POST", "/balance", 500, times=3)

    view = await container.balance.get_current_balance(user1_id)

    assert view.balance == Decimal("100")
    assert view.external_balance is None
    assert not view.is_synced


async def test_current_balance_imports_missing_local_row(container, upstream: FakeUpstream) -> None:
    user_id = await _provision_user2(container, upstream)
    upstream.balances[USER2_EXTERNAL_ID] = Decimal("42")

    view = await container.balance.get_current_balance(user_id)

    assert view.balance == Decimal("42")
    assert view.is_synced
    assert (await container.ledger.get_balance(user_id)).balance == Decimal("42")


async def test_initialize_balance_sets_upstream_and_local(container, upstream: FakeUpstream) -> None:
    user_id = await _provision_user2(container, upstream)

    view = await container.balance.initialize_balance(user_id, Decimal("50"))

    assert view.balance == Decimal("50")
    assert view.external_balance == Decimal("50")
    assert view.is_synced
    assert upstream.balances[USER2_EXTERNAL_ID] == Decimal("50")
    transactions, total = await container.balance.get_transactions(user_id)
    assert total == 1
    assert transactions[0].type == "deposit"


async def test_initialize_balance_rejects_existing_row(container, user1_id: int, upstream: FakeUpstream) -> None:
    with pytest.raises(ServiceError) as exc:
        await container.balance.initialize_balance(user1_id, Decimal("10"))

    assert exc.value.code == ErrorCode.VALIDATION_ERROR
    assert upstream.calls == []


async def test_deposit_and_withdraw(container, user1_id: int) -> None:
    deposit = await container.balance.add_funds(user1_id, Decimal("25"))
    withdrawal = await container.balance.withdraw_funds(user1_id, Decimal("5"), "cash out")

    assert (deposit.type, deposit.amount, deposit.balance_after) == ("deposit", Decimal("25"), Decimal("125"))
    assert deposit.description == "Deposit"
    assert (withdrawal.type, withdrawal.amount, withdrawal.balance_after) == (
        "withdrawal",
        Decimal("-5"),
        Decimal("120"),
    )
    assert withdrawal.description == "cash out"


async def test_withdraw_more_than_balance_is_rejected(container, user1_id: int) -> None:
    with pytest.raises(ServiceError) as exc:
        await container.balance.withdraw_funds(user1_id, Decimal("100.01"))

    assert exc.value.code == ErrorCode.INSUFFICIENT_BALANCE
    assert (await container.ledger.get_balance(user1_id)).balance == Decimal("100")


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-3")])
async def test_non_positive_adjustment_is_rejected(container, user1_id: int, amount: Decimal) -> None:
    with pytest.raises(ServiceError) as exc:
        await container.balance.add_funds(user1_id, amount)

    assert exc.value.code == ErrorCode.VALIDATION_ERROR


async def test_sync_reports_difference_without_changing_local(
    container, user1_id: int, upstream: FakeUpstream
) -> None:
    upstream.balances[USER1_EXTERNAL_ID] = Decimal("90")

    report = await container.balance.sync_with_external_api(user1_id)

    assert report.internal_balance == Decimal("100")
    assert report.external_balance == Decimal("90")
    assert not report.was_synced
    assert report.difference == Decimal("10")
    assert (await container.ledger.get_balance(user1_id)).balance == Decimal("100")


async def test_transactions_are_signed_and_labelled(container, user1_id: int, upstream: FakeUpstream) -> None:
    upstream.wins.append(Decimal("6"))
    await container.betting.place_bet(user1_id, 3)

    transactions, total = await container.balance.get_transactions(user1_id, page=1, limit=10)

    assert total == 3
    by_type = {t.type: t.amount for t in transactions}
    assert by_type == {"deposit": Decimal("100"), "bet_place": Decimal("-3"), "bet_win": Decimal("6")}


@pytest.mark.parametrize(("page", "limit"), [(0, 10), (1, 0), (1, 51)])
async def test_transactions_pagination_is_validated(container, user1_id: int, page: int, limit: int) -> None:
    with pytest.raises(ServiceError) as exc:
        await container.balance.get_transactions(user1_id, page=page, limit=limit)

    assert exc.value.code == ErrorCode.VALIDATION_ERROR


async def test_balance_history_totals(container, user1_id: int) -> None:
    await container.balance.add_funds(user1_id, Decimal("10"))
    await container.balance.withdraw_funds(user1_id, Decimal("4"))

    history = await container.balance.get_balance_history(user1_id)

    assert [p.balance for p in history.points] == [Decimal("100"), Decimal("110"), Decimal("106")]
    assert history.totals.deposits == Decimal("110")
    assert history.totals.withdrawals == Decimal("-4")
    assert history.totals.implied_balance == Decimal("106")


async def test_consistency_check_is_read_only(container, user1_id: int, upstream: FakeUpstream) -> None:
    upstream.balances[USER1_EXTERNAL_ID] = Decimal("80")
    await container.balance.sync_with_external_api(user1_id)
    calls = len(upstream.calls)

    report = await container.balance.check_balance_consistency(user1_id)

    assert len(upstream.calls) == calls
    assert not report.is_consistent
    assert report.calculated_balance == Decimal("100")
    assert [issue["type"] for issue in report.issues] == ["external_mismatch"]
    assert (await container.ledger.get_balance(user1_id)).balance == Decimal("100")


async def test_consistency_check_without_balance(container, upstream: FakeUpstream) -> None:
    user_id = await _provision_user2(container, upstream)

    report = await container.balance.check_balance_consistency(user_id)

    assert report.local_balance is None
    assert [issue["type"] for issue in report.issues] == ["missing_balance"]
