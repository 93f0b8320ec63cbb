from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from betgate.config import Settings
from betgate.crypto import SecretCipher
from betgate.db.api_logs import ApiLogRepository
from betgate.db.bets import BetRepository
from betgate.db.idempotency import IdempotencyRepository
from betgate.db.ledger import LedgerRepository
from betgate.db.session import create_engine_and_sessionmaker, init_db
from betgate.db.users import UserRepository
from betgate.services.auth import AuthService
from betgate.services.balance import BalanceService
from betgate.services.betting import BettingService
from betgate.services.credentials import CredentialResolver
from betgate.services.external_api import ExternalApiClient
from betgate.services.fallback import build_fallback_policy
from betgate.services.locks import UserLocks
from betgate.services.provisioning import Provisioner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Container:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    cipher: SecretCipher
    users: UserRepository
    ledger: LedgerRepository
    bets: BetRepository
    idempotency: IdempotencyRepository
    api_logs: ApiLogRepository
    client: ExternalApiClient
    credentials: CredentialResolver
    locks: UserLocks
    betting: BettingService
    balance: BalanceService
    auth: AuthService
    provisioner: Provisioner

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Any = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> "Container":
        engine, session_factory = create_engine_and_sessionmaker(settings)
        cipher = SecretCipher(settings.encryption_key, settings.encryption_iv)

        users = UserRepository(session_factory)
        ledger = LedgerRepository(session_factory)
        bets = BetRepository(session_factory)
        idempotency = IdempotencyRepository(session_factory, settings.idempotency_lock_timeout_sec)
        api_logs = ApiLogRepository(session_factory)

        client = ExternalApiClient.from_settings(
            settings,
            transport=transport,
            audit=api_logs,
            sleep=sleep,
        )
        credentials = CredentialResolver(users, cipher)
        locks = UserLocks()
        policy = build_fallback_policy(settings.bet_fallback_policy, rng)

        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            cipher=cipher,
            users=users,
            ledger=ledger,
            bets=bets,
            idempotency=idempotency,
            api_logs=api_logs,
            client=client,
            credentials=credentials,
            locks=locks,
            betting=BettingService(
                bets=bets,
                ledger=ledger,
                client=client,
                credentials=credentials,
                locks=locks,
                policy=policy,
                default_stake=settings.default_upstream_stake,
            ),
            balance=BalanceService(
                ledger=ledger,
                client=client,
                credentials=credentials,
                locks=locks,
            ),
            auth=AuthService(
                users,
                secret=settings.jwt_secret,
                expires_minutes=settings.jwt_expires_minutes,
                admin_usernames=settings.admin_usernames,
            ),
            provisioner=Provisioner(users, ledger, cipher, settings.initial_local_balance),
        )

    async def start(self) -> None:
        await init_db(self.engine)
        logger.info("Bet fallback policy: %s", self.betting.policy.name)
        if self.settings.seed_on_startup:
            summary = await self.provisioner.seed(self.settings.seed_accounts)
            logger.info(
                "Seed users: %s created, %s rotated, %s unchanged, %s skipped",
                summary.created, summary.rotated, summary.unchanged, summary.skipped,
            )

    async def close(self) -> None:
        await self.client.close()
        await self.engine.dispose()
