from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Set

import jwt

from betgate.db.models import User
from betgate.db.users import UserRepository
from betgate.errors import ErrorCode, ServiceError
from betgate.utils import now_utc

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
JWT_ALGORITHM = "HS256"


@dataclass(slots=True)
class TokenPayload:
    user_id: int
    username: str
    is_admin: bool


@dataclass(slots=True)
class LoginResult:
    token: str
    expires_in: int
    user: User


class AuthService:
    def __init__(
        self,
        users: UserRepository,
        *,
        secret: str,
        expires_minutes: int,
        admin_usernames: Set[str],
    ) -> None:
        self._users = users
        self._secret = secret
        self._ttl = timedelta(minutes=expires_minutes)
        self._admins = {name.lower() for name in admin_usernames}

    @property
    def token_ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def is_admin(self, username: str) -> bool:
        return username.lower() in self._admins

    async def login(self, username: str) -> LoginResult:
        clean = (username or "").strip()
        if not USERNAME_RE.match(clean):
            raise ServiceError(
                ErrorCode.VALIDATION_ERROR,
                "Username must be 3-20 characters of letters, digits or underscore",
                {"username": clean},
            )

        user = await self._users.get_by_username(clean)
        if user is None:
            raise ServiceError(ErrorCode.USER_NOT_FOUND, "User not found", {"username": clean})

        user = await self._users.touch_last_login(user.id)
        logger.info("User %s logged in", user.username)
        return LoginResult(
            token=self.issue_token(user),
            expires_in=self.token_ttl_seconds,
            user=user,
        )

    def issue_token(self, user: User) -> str:
        issued = now_utc()
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "iat": issued,
            "exp": issued + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def decode_token(self, token: str) -> TokenPayload:
        if not token:
            raise ServiceError(ErrorCode.UNAUTHORIZED, "Token is required")
        try:
            payload = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
            user_id = int(payload["sub"])
            username = str(payload["username"])
        except jwt.ExpiredSignatureError as exc:
            raise ServiceError(ErrorCode.UNAUTHORIZED, "Token expired") from exc
        except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
            raise ServiceError(ErrorCode.UNAUTHORIZED, "Invalid token") from exc
        return TokenPayload(user_id=user_id, username=username, is_admin=self.is_admin(username))

    async def verify_token(self, token: str) -> TokenPayload:
        payload = self.decode_token(token)
        if await self._users.get_user(payload.user_id) is None:
            raise ServiceError(ErrorCode.UNAUTHORIZED, "User no longer exists")
        return payload

    async def get_current_user(self, user_id: int) -> User:
        user = await self._users.get_user(user_id)
        if user is None:
            raise ServiceError(ErrorCode.USER_NOT_FOUND, "User not found")
        return user
