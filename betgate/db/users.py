from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from betgate.db.models import ExternalAccount, User
from betgate.errors import NotFoundError
from betgate.utils import now_utc


@dataclass(slots=True)
class ProvisionResult:
    user: User
    account: ExternalAccount
    user_created: bool
    account_rotated: bool


class UserRepository:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def get_user(self, user_id: int) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def get_by_username(self, username: str) -> User | None:
        clean = (username or "").strip().lower()
        if not clean:
            return None
        async with self._session_factory() as session:
            result = await session.execute(
                select(User).where(func.lower(User.username) == clean).limit(1)
            )
            return result.scalar_one_or_none()

    async def touch_last_login(self, user_id: int) -> User:
        async with self._session_factory() as session:
            async with session.begin():
                user = await session.get(User, user_id)
                if not user:
                    raise NotFoundError("User not found")
                user.last_login = now_utc()
                return user

    async def get_active_account(self, user_id: int) -> ExternalAccount | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExternalAccount)
                .where(
                    ExternalAccount.user_id == user_id,
                    ExternalAccount.is_active.is_(True),
                )
                .order_by(ExternalAccount.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def provision(
        self,
        *,
        username: str,
        email: str | None,
        external_user_id: str,
        encrypted_secret: str,
    ) -> ProvisionResult:
        """Create or refresh a user together with its active upstream account.

        A credential change deactivates the previous account instead of
        deleting it.
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(User).where(User.username == username).limit(1)
                )
                user = result.scalar_one_or_none()
                user_created = user is None
                if user is None:
                    user = User(username=username, email=email)
                    session.add(user)
                    await session.flush()
                elif email and user.email != email:
                    user.email = email

                result = await session.execute(
                    select(ExternalAccount)
                    .where(
                        ExternalAccount.user_id == user.id,
                        ExternalAccount.is_active.is_(True),
                    )
                    .order_by(ExternalAccount.id.desc())
                )
                active = list(result.scalars())
                current = active[0] if active else None
                if (
                    current is not None
                    and len(active) == 1
                    and current.external_user_id == external_user_id
                    and current.external_secret_key == encrypted_secret
                ):
                    return ProvisionResult(
                        user=user,
                        account=current,
                        user_created=user_created,
                        account_rotated=False,
                    )

                if active:
                    await session.execute(
                        update(ExternalAccount)
                        .where(ExternalAccount.id.in_([a.id for a in active]))
                        .values(is_active=False)
                    )

                account = ExternalAccount(
                    user_id=user.id,
                    external_user_id=external_user_id,
                    external_secret_key=encrypted_secret,
                    is_active=True,
                )
                session.add(account)
                await session.flush()
                return ProvisionResult(
                    user=user,
                    account=account,
                    user_created=user_created,
                    account_rotated=bool(active),
                )

    async def count_users(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(User.id)))
            return int(result.scalar_one())
