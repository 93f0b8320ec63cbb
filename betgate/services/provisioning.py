from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from betgate.config import SeedAccount
from betgate.crypto import SecretCipher
from betgate.db.ledger import LedgerRepository
from betgate.db.users import UserRepository

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 16
EXTERNAL_ID_RANGE = range(1, 31)


@dataclass(slots=True)
class SeedSummary:
    created: int = 0
    rotated: int = 0
    unchanged: int = 0
    skipped: int = 0


def validate_seed_account(account: SeedAccount) -> str | None:
    """Reason the account cannot be provisioned, or None."""
    try:
        external_id = int(account.external_user_id)
    except ValueError:
        return "external user id is not a number"
    if external_id not in EXTERNAL_ID_RANGE:
        return "external user id must be between 1 and 30"
    if len(account.secret_key) < MIN_SECRET_LENGTH:
        return f"secret key must be at least {MIN_SECRET_LENGTH} characters"
    return None


class Provisioner:
    def __init__(
        self,
        users: UserRepository,
        ledger: LedgerRepository,
        cipher: SecretCipher,
        initial_balance: int,
    ) -> None:
        self._users = users
        self._ledger = ledger
        self._cipher = cipher
        self._initial_balance = Decimal(initial_balance)

    async def seed(self, accounts: Iterable[SeedAccount]) -> SeedSummary:
        summary = SeedSummary()
        for account in accounts:
            problem = validate_seed_account(account)
            if problem:
                logger.warning("Skipping seed user %s: %s", account.username, problem)
                summary.skipped += 1
                continue

            result = await self._users.provision(
                username=account.username,
                email=account.email,
                external_user_id=account.external_user_id,
                encrypted_secret=self._cipher.encrypt(account.secret_key),
            )

            if await self._ledger.get_balance(result.user.id) is None:
                await self._ledger.create_balance(
                    user_id=result.user.id,
                    amount=self._initial_balance,
                    description="Initial balance",
                )

            if result.user_created:
                summary.created += 1
                logger.info("Seeded user %s (external id %s)", account.username, account.external_user_id)
            elif result.account_rotated:
                summary.rotated += 1
                logger.info("Rotated external account of user %s", account.username)
            else:
                summary.unchanged += 1

        return summary
