from __future__ import annotations

import logging

from betgate.crypto import SecretCipher
from betgate.db.users import UserRepository
from betgate.errors import ErrorCode, ServiceError
from betgate.services.external_api import UpstreamCredentials

logger = logging.getLogger(__name__)


class CredentialResolver:
    def __init__(self, users: UserRepository, cipher: SecretCipher) -> None:
        self._users = users
        self._cipher = cipher

    async def resolve(self, user_id: int) -> UpstreamCredentials | None:
        account = await self._users.get_active_account(user_id)
        if account is None:
            return None

        try:
            secret = self._cipher.decrypt(account.external_secret_key)
        except ValueError as exc:
            logger.error("Stored secret of account %s cannot be decrypted", account.id)
            raise ServiceError(
                ErrorCode.INTERNAL_ERROR,
                "External account credentials are unreadable",
            ) from exc

        return UpstreamCredentials(
            external_user_id=account.external_user_id,
            secret_key=secret,
            user_id=user_id,
        )

    async def require(self, user_id: int) -> UpstreamCredentials:
        creds = await self.resolve(user_id)
        if creds is None:
            raise ServiceError(ErrorCode.NOT_FOUND, "External account not found for user")
        return creds
