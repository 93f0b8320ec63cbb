from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from betgate.container import Container
from betgate.errors import ErrorCode, ServiceError
from betgate.services.auth import AuthService, TokenPayload
from betgate.services.balance import BalanceService
from betgate.services.betting import BettingService

bearer = HTTPBearer(auto_error=False)


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_auth_service(container: Container = Depends(get_container)) -> AuthService:
    return container.auth


def get_betting_service(container: Container = Depends(get_container)) -> BettingService:
    return container.betting


def get_balance_service(container: Container = Depends(get_container)) -> BalanceService:
    return container.balance


async def current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    auth: AuthService = Depends(get_auth_service),
) -> TokenPayload:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ServiceError(ErrorCode.UNAUTHORIZED, "Authorization token is required")
    return await auth.verify_token(credentials.credentials)


async def require_admin(user: TokenPayload = Depends(current_user)) -> TokenPayload:
    if not user.is_admin:
        raise ServiceError(ErrorCode.FORBIDDEN, "Admin access required")
    return user
