from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from betgate.crypto import body_hash
from betgate.main import create_app

from conftest import FakeUpstream

BET_BODY = b'{"amount":3}'
JSON = {"content-type": "application/json"}


@pytest.fixture
def app_container(settings, make_container):
    return make_container(settings)


@pytest.fixture
async def client(settings, app_container):
    app = create_app(settings, container=app_container)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://betgate.test") as client:
            yield client


async def _login(client: httpx.AsyncClient, username: str = "user1") -> dict[str, str]:
    response = await client.post("/api/auth/login", json={"username": username})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


async def test_health_reports_upstream(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["upstream"]["status"] == "ok"


async def test_login_and_me(client: httpx.AsyncClient) -> None:
    response = await client.post("/api/auth/login", json={"username": "user1"})
    body = response.json()

    assert response.status_code == 200
    assert body["user"]["username"] == "user1"
    assert body["user"]["is_admin"] is False
    assert body["expires_in"] == 24 * 60 * 60

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["username"] == "user1"
    assert me.json()["last_login"] is not None


async def test_refresh_issues_a_working_token(client: httpx.AsyncClient) -> None:
    headers = await _login(client, "admin")

    response = await client.post("/api/auth/refresh", headers=headers)

    assert response.status_code == 200
    assert response.json()["user"]["is_admin"] is True
    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {response.json()['token']}"})
    assert me.json()["username"] == "admin"


async def test_unknown_user_cannot_log_in(client: httpx.AsyncClient) -> None:
    response = await client.post("/api/auth/login", json={"username": "nobody"})

    assert response.status_code == 404
    assert response.json()["code"] == "USER_NOT_FOUND"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer not-a-token"}])
async def test_protected_routes_require_a_valid_token(client: httpx.AsyncClient, headers) -> None:
    response = await client.get("/api/balance", headers=headers)

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


async def test_place_bet_and_read_result(client: httpx.AsyncClient, upstream: FakeUpstream) -> None:
    headers = await _login(client)
    upstream.wins.append(Decimal("6"))

    response = await client.post("/api/bets", json={"amount": 3}, headers=headers)

    assert response.status_code == 201
    bet = response.json()
    assert bet["status"] == "COMPLETED"
    assert bet["win_amount"] == 6
    assert bet["balance_after"] == 103

    result = await client.get(f"/api/bets/result/{bet['id']}", headers=headers)
    assert result.status_code == 200
    assert result.json()["win_amount"] == 6

    listing = await client.get("/api/bets", params={"limit": 5}, headers=headers)
    assert listing.json()["pagination"] == {"total": 1, "page": 1, "limit": 5, "pages": 1}

    missing = await client.get("/api/bets/999", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["code"] == "BET_NOT_FOUND"


@pytest.mark.parametrize("amount", [2.5, 7, 0])
async def test_invalid_bet_amount(client: httpx.AsyncClient, upstream: FakeUpstream, amount) -> None:
    headers = await _login(client)

    response = await client.post("/api/bets", json={"amount": amount}, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_BET_AMOUNT"
    assert upstream.count("POST", "/bet") == 0


async def test_malformed_body_is_a_validation_error(client: httpx.AsyncClient) -> None:
    headers = await _login(client)

    response = await client.post("/api/bets", json={"amount": "lots"}, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


async def test_idempotent_bet_is_replayed(
    client: httpx.AsyncClient, app_container, upstream: FakeUpstream
) -> None:
    headers = {**await _login(client), **JSON, "Idempotency-Key": "bet-1"}

    first = await client.post("/api/bets", content=BET_BODY, headers=headers)
    second = await client.post("/api/bets", content=BET_BODY, headers=headers)

    assert first.status_code == second.status_code == 201
    assert first.json() == second.json()
    assert "idempotent-replayed" not in first.headers
    assert second.headers["idempotent-replayed"] == "true"
    assert upstream.count("POST", "/bet") == 1
    assert await app_container.bets.count_bets() == 1


async def test_idempotency_key_reused_for_other_payload(client: httpx.AsyncClient) -> None:
    headers = {**await _login(client), **JSON, "Idempotency-Key": "bet-2"}
    await client.post("/api/bets", content=BET_BODY, headers=headers)

    response = await client.post("/api/bets", content=b'{"amount":4}', headers=headers)

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


async def test_idempotency_key_in_progress(
    client: httpx.AsyncClient, app_container, upstream: FakeUpstream
) -> None:
    headers = {**await _login(client), **JSON, "Idempotency-Key": "bet-3"}
    user = await app_container.users.get_by_username("user1")
    await app_container.idempotency.acquire(
        user_id=user.id,
        key="bet-3",
        endpoint="POST /api/bets",
        request_hash=body_hash(BET_BODY),
    )

    response = await client.post("/api/bets", content=BET_BODY, headers=headers)

    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"
    assert upstream.count("POST", "/bet") == 0


async def test_failed_request_is_cached_too(client: httpx.AsyncClient, upstream: FakeUpstream) -> None:
    headers = {**await _login(client), **JSON, "Idempotency-Key": "bet-4"}
    upstream.fail("POST", "/bet", 400)

    first = await client.post("/api/bets", content=BET_BODY, headers=headers)
    second = await client.post("/api/bets", content=BET_BODY, headers=headers)

    assert first.status_code == second.status_code == 502
    assert second.headers["idempotent-replayed"] == "true"
    assert upstream.count("POST", "/bet") == 1


async def test_overlong_idempotency_key(client: httpx.AsyncClient) -> None:
    headers = {**await _login(client), **JSON, "Idempotency-Key": "k" * 256}

    response = await client.post("/api/bets", content=BET_BODY, headers=headers)

    assert response.status_code == 400


async def test_balance_deposit_and_transactions(client: httpx.AsyncClient) -> None:
    headers = await _login(client)

    balance = await client.get("/api/balance", headers=headers)
    assert balance.status_code == 200
    assert balance.json()["balance"] == 100

    deposit = await client.post("/api/balance/deposit", json={"amount": 10}, headers=headers)
    assert deposit.status_code == 200
    assert deposit.json()["balance_after"] == 110

    transactions = await client.get("/api/transactions", headers=headers)
    body = transactions.json()
    assert body["pagination"]["total"] == 2
    assert [t["type"] for t in body["transactions"]] == ["deposit", "deposit"]


@pytest.mark.parametrize("params", [{"limit": 51}, {"page": 0}])
async def test_transactions_pagination_limits(client: httpx.AsyncClient, params) -> None:
    headers = await _login(client)

    response = await client.get("/api/transactions", params=params, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


async def test_withdraw_insufficient(client: httpx.AsyncClient) -> None:
    headers = await _login(client)

    response = await client.post("/api/balance/withdraw", json={"amount": 500}, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "INSUFFICIENT_BALANCE"


async def test_admin_routes(client: httpx.AsyncClient) -> None:
    user_headers = await _login(client)
    admin_headers = await _login(client, "admin")

    forbidden = await client.get("/api/admin/stats", headers=user_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "FORBIDDEN"

    stats = await client.get("/api/admin/stats", headers=admin_headers)
    assert stats.status_code == 200
    assert stats.json()["users"] == 2

    pending = await client.post("/api/admin/bets/process-pending", headers=admin_headers)
    assert pending.status_code == 200
    assert pending.json()["processed_count"] == 0
