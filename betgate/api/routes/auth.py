from __future__ import annotations

from fastapi import APIRouter, Depends

from betgate.api.deps import current_user, get_auth_service
from betgate.api.schemas import LoginRequest, LoginResponse, UserOut
from betgate.db.models import User
from betgate.services.auth import AuthService, LoginResult, TokenPayload

router = APIRouter()


def _user_out(user: User, auth: AuthService) -> UserOut:
    return UserOut(
        id=user.id,
        username=user.username,
        email=user.email,
        last_login=user.last_login,
        is_admin=auth.is_admin(user.username),
    )


def _login_out(result: LoginResult, auth: AuthService) -> LoginResponse:
    return LoginResponse(
        token=result.token,
        expires_in=result.expires_in,
        user=_user_out(result.user, auth),
    )


@router.post("/login", response_model=LoginResponse, summary="Log in as a provisioned user")
async def login(
    body: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    return _login_out(await auth.login(body.username), auth)


@router.get("/me", response_model=UserOut, summary="Current user")
async def me(
    user: TokenPayload = Depends(current_user),
    auth: AuthService = Depends(get_auth_service),
) -> UserOut:
    return _user_out(await auth.get_current_user(user.user_id), auth)


@router.post("/refresh", response_model=LoginResponse, summary="Issue a fresh token")
async def refresh(
    user: TokenPayload = Depends(current_user),
    auth: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    current = await auth.get_current_user(user.user_id)
    return LoginResponse(
        token=auth.issue_token(current),
        expires_in=auth.token_ttl_seconds,
        user=_user_out(current, auth),
    )
