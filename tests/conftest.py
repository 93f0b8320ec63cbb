from __future__ import annotations

import hashlib
import hmac
import json
import random
from collections import defaultdict, deque
from decimal import Decimal
from typing import Any, Callable

import httpx
import pytest

from betgate.config import Settings
from betgate.container import Container

USER1_EXTERNAL_ID = "7"
USER1_SECRET = "user-one-secret-key-0001"
ADMIN_EXTERNAL_ID = "9"
ADMIN_SECRET = "admin-secret-key-000009"


def _num(value: Decimal) -> int | float:
    return int(value) if value == value.to_integral_value() else float(value)


class FakeUpstream:
    """In-process stand-in for the upstream betting API."""

    def __init__(self, secrets: dict[str, str]) -> None:
        self.secrets = dict(secrets)
        self.balances: dict[str, Decimal] = defaultdict(lambda: Decimal("100"))
        self.recommended: Any = 3
        self.wins: deque[Decimal] = deque()
        self.bets: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.requests: list[httpx.Request] = []
        self._failures: dict[tuple[str, str], deque] = defaultdict(deque)
        # Callbacks run after a call has been answered, keyed by (method, path).
        self.after: dict[tuple[str, str], Callable[[], Any]] = {}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def fail(self, method: str, path: str, outcome: int | str, times: int = 1) -> None:
        for _ in range(times):
            self._failures[(method, path)].append(outcome)

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        key = (request.method, path)
        self.calls.append(key)
        self.requests.append(request)

        response = self._respond(request, path, key)
        hook = self.after.get(key)
        if hook is not None:
            hook()
        return response

    def _respond(self, request: httpx.Request, path: str, key: tuple[str, str]) -> httpx.Response:
        queue = self._failures.get(key)
        if queue:
            outcome = queue.popleft()
            if outcome == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            if outcome == "network":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(outcome, json={"error": "Injected", "message": f"Injected {outcome}"})

        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})

        user_id = request.headers.get("user-id", "")
        secret = self.secrets.get(user_id)
        raw = request.content or b"{}"
        expected = hmac.new(secret.encode(), raw, hashlib.sha512).hexdigest() if secret else None
        if expected is None or request.headers.get("x-signature") != expected:
            return httpx.Response(401, json={"error": "Unauthorized", "message": "Invalid signature"})

        body = json.loads(request.content) if request.content else {}

        if key == ("POST", "/auth"):
            return httpx.Response(200, json={"message": "ok", "user_id": user_id, "username": f"ext{user_id}"})

        if key == ("POST", "/balance"):
            if "balance" in body:
                self.balances[user_id] = Decimal(str(body["balance"]))
                return httpx.Response(200, json={"balance": _num(self.balances[user_id]), "message": "set"})
            return httpx.Response(200, json={"balance": _num(self.balances[user_id])})

        if key == ("GET", "/bet"):
            return httpx.Response(200, json={"bet": self.recommended})

        if key == ("POST", "/bet"):
            amount = Decimal(str(body.get("bet")))
            if amount > self.balances[user_id]:
                return httpx.Response(400, json={"error": "Bad Request", "message": "Not enough funds"})
            self.balances[user_id] -= amount
            bet_id = f"ext-{len(self.bets) + 1}"
            self.bets[bet_id] = {"user_id": user_id, "amount": amount, "win": None}
            return httpx.Response(200, json={"bet_id": bet_id, "message": "accepted"})

        if key == ("POST", "/win"):
            bet = self.bets.get(body.get("bet_id"))
            if bet is None:
                return httpx.Response(404, json={"error": "Not Found", "message": "Unknown bet"})
            if bet["win"] is None:
                bet["win"] = self.wins.popleft() if self.wins else Decimal("0")
                self.balances[bet["user_id"]] += bet["win"]
            return httpx.Response(200, json={"win": _num(bet["win"]), "message": "result"})

        return httpx.Response(404, json={"error": "Not Found", "message": path})


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream({USER1_EXTERNAL_ID: USER1_SECRET, ADMIN_EXTERNAL_ID: ADMIN_SECRET})


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        EXTERNAL_API_URL="http://upstream.test/api",
        EXTERNAL_API_MAX_RETRIES=3,
        EXTERNAL_API_RETRY_DELAY_MS=1000,
        ENCRYPTION_KEY="11" * 32,
        ENCRYPTION_IV="22" * 16,
        JWT_SECRET="test-jwt-secret",
        ADMIN_USERNAMES="admin",
        BET_FALLBACK_POLICY="strict",
        INITIAL_LOCAL_BALANCE=100,
        PENDING_BETS_POLL_INTERVAL_SEC=0,
        TEST_USER_1_ID=USER1_EXTERNAL_ID,
        TEST_USER_1_SECRET=USER1_SECRET,
        ADMIN_USER_ID=ADMIN_EXTERNAL_ID,
        ADMIN_USER_SECRET=ADMIN_SECRET,
    )


@pytest.fixture
def make_container(upstream: FakeUpstream, sleeps: SleepRecorder):
    def _make(settings: Settings) -> Container:
        container = Container.build(
            settings,
            transport=upstream.transport,
            sleep=sleeps,
            rng=random.Random(7),
        )
        return container

    return _make


@pytest.fixture
async def container(settings: Settings, make_container) -> Container:
    container = make_container(settings)
    await container.start()
    try:
        yield container
    finally:
        await container.close()


@pytest.fixture
async def user1_id(container: Container) -> int:
    user = await container.users.get_by_username("user1")
    assert user is not None
    return user.id
