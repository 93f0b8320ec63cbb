from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable

import httpx

from betgate.config import Settings
from betgate.crypto import canonical_json, create_signature
from betgate.errors import ErrorCode

logger = logging.getLogger(__name__)

MIN_BET = 1
MAX_BET = 5

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(slots=True)
class UpstreamCredentials:
    external_user_id: str
    secret_key: str = field(repr=False)
    # Internal user id, only used to attribute audit rows.
    user_id: int | None = None


@dataclass(slots=True)
class ApiError:
    code: ErrorCode
    message: str
    status_code: int


@dataclass(slots=True)
class ApiResult:
    success: bool
    status_code: int
    duration_ms: int
    data: dict[str, Any] | None = None
    error: ApiError | None = None

    @property
    def unavailable(self) -> bool:
        return self.error is not None and self.error.code == ErrorCode.EXTERNAL_API_UNAVAILABLE

    @property
    def error_message(self) -> str:
        return self.error.message if self.error else ""


def is_valid_bet_amount(amount: Any) -> bool:
    if isinstance(amount, bool):
        return False
    if isinstance(amount, Decimal):
        if amount != amount.to_integral_value():
            return False
        amount = int(amount)
    return isinstance(amount, int) and MIN_BET <= amount <= MAX_BET


class ExternalApiClient:
    """Signed client for the upstream betting API.

    Every public call returns an :class:`ApiResult`; nothing raises across
    this boundary. 4xx answers are returned at once, 5xx answers and
    transport failures are retried with a linear backoff.
    """

    def __init__(
        self,
        base_url: str,
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        default_timeout: float = 30.0,
        timeouts: dict[str, float] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        audit: Any | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._default_timeout = default_timeout
        self._timeouts = dict(timeouts or {})
        self._audit = audit
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=default_timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        audit: Any | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> "ExternalApiClient":
        return cls(
            settings.external_api_url,
            max_retries=settings.external_api_max_retries,
            retry_delay=settings.external_api_retry_delay_ms / 1000,
            default_timeout=settings.external_api_timeout_ms / 1000,
            timeouts=settings.operation_timeouts,
            transport=transport,
            audit=audit if settings.external_api_audit else None,
            sleep=sleep,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def authenticate(self, creds: UpstreamCredentials) -> ApiResult:
        return await self._request("POST", "/auth", operation="auth", creds=creds)

    async def get_balance(self, creds: UpstreamCredentials) -> ApiResult:
        return await self._request("POST", "/balance", operation="balance", creds=creds)

    async def set_balance(self, creds: UpstreamCredentials, amount: Decimal | int) -> ApiResult:
        return await self._request(
            "POST",
            "/balance",
            operation="balance",
            creds=creds,
            body={"balance": amount},
        )

    async def get_recommended_bet(self, creds: UpstreamCredentials) -> ApiResult:
        return await self._request("GET", "/bet", operation="bet", creds=creds)

    async def place_bet(self, creds: UpstreamCredentials, amount: int) -> ApiResult:
        if not is_valid_bet_amount(amount):
            return ApiResult(
                success=False,
                status_code=400,
                duration_ms=0,
                error=ApiError(
                    code=ErrorCode.INVALID_BET_AMOUNT,
                    message=f"Bet amount must be an integer between {MIN_BET} and {MAX_BET}",
                    status_code=400,
                ),
            )
        return await self._request(
            "POST",
            "/bet",
            operation="bet",
            creds=creds,
            body={"bet": int(amount)},
        )

    async def get_win_result(self, creds: UpstreamCredentials, bet_id: str) -> ApiResult:
        return await self._request(
            "POST",
            "/win",
            operation="win",
            creds=creds,
            body={"bet_id": bet_id},
        )

    async def health(self) -> ApiResult:
        return await self._request("GET", "/health", operation="health")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        creds: UpstreamCredentials | None = None,
        body: dict[str, Any] | None = None,
    ) -> ApiResult:
        timeout = self._timeouts.get(operation, self._default_timeout)
        headers = {"Content-Type": "application/json"}
        # Sent bytes are exactly the signed bytes.
        content = canonical_json(body) if body is not None else None
        if creds is not None:
            headers["user-id"] = creds.external_user_id
            headers["x-signature"] = create_signature(body, creds.secret_key)

        audit_body = json.loads(content) if content is not None else None
        user_id = creds.user_id if creds else None
        started = time.perf_counter()
        last_status = 503
        last_error = "External service is unavailable after multiple retries"

        for attempt in range(1, self._max_retries + 1):
            attempt_started = time.perf_counter()
            try:
                response = await self._client.request(
                    method,
                    path,
                    content=content,
                    headers=headers,
                    timeout=timeout,
                )
            except httpx.TimeoutException:
                last_error = f"Timed out after {timeout:g}s"
                last_status = 504
                logger.error(
                    "Upstream %s %s timed out (attempt %s/%s)",
                    method, path, attempt, self._max_retries,
                )
                await self._record(user_id, path, method, attempt, audit_body, None, 0, attempt_started, last_error)
            except httpx.HTTPError as exc:
                last_error = f"Network error: {exc.__class__.__name__}"
                last_status = 503
                logger.error(
                    "Upstream %s %s network error %s (attempt %s/%s)",
                    method, path, exc.__class__.__name__, attempt, self._max_retries,
                )
                await self._record(user_id, path, method, attempt, audit_body, None, 0, attempt_started, last_error)
            else:
                payload = _parse_payload(response)
                duration_ms = _elapsed_ms(attempt_started)
                await self._record(
                    user_id, path, method, attempt, audit_body,
                    _auditable(response), response.status_code, attempt_started, None,
                )

                if response.status_code < 400:
                    logger.info(
                        "Upstream %s %s -> %s in %sms body=%s response=%s",
                        method, path, response.status_code, duration_ms, audit_body, payload,
                    )
                    return ApiResult(
                        success=True,
                        status_code=response.status_code,
                        duration_ms=_elapsed_ms(started),
                        data=payload,
                    )

                message = _error_message(payload, response)
                if response.status_code < 500:
                    logger.warning(
                        "Upstream %s %s -> %s in %sms, not retried: %s",
                        method, path, response.status_code, duration_ms, message,
                    )
                    return ApiResult(
                        success=False,
                        status_code=response.status_code,
                        duration_ms=_elapsed_ms(started),
                        error=ApiError(
                            code=ErrorCode.EXTERNAL_API_ERROR,
                            message=message,
                            status_code=response.status_code,
                        ),
                    )

                last_status = response.status_code
                last_error = f"HTTP {response.status_code}: {message}"
                logger.warning(
                    "Upstream %s %s -> %s in %sms (attempt %s/%s)",
                    method, path, response.status_code, duration_ms, attempt, self._max_retries,
                )

            if attempt < self._max_retries:
                await self._sleep(self._retry_delay * attempt)

        logger.error(
            "Upstream %s %s failed after %s attempts: %s",
            method, path, self._max_retries, last_error,
        )
        return ApiResult(
            success=False,
            status_code=last_status,
            duration_ms=_elapsed_ms(started),
            error=ApiError(
                code=ErrorCode.EXTERNAL_API_UNAVAILABLE,
                message=last_error,
                status_code=last_status,
            ),
        )

    async def _record(
        self,
        user_id: int | None,
        path: str,
        method: str,
        attempt: int,
        request_body: Any,
        response_body: Any,
        status_code: int,
        started: float,
        error: str | None,
    ) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.add(
                user_id=user_id,
                endpoint=path,
                method=method,
                attempt=attempt,
                request_body=request_body,
                response_body=response_body,
                status_code=status_code,
                duration_ms=_elapsed_ms(started),
                error=error,
            )
        except Exception:
            logger.exception("Failed to write upstream audit row for %s %s", method, path)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _parse_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json(parse_float=Decimal)
    except ValueError:
        return {"raw": response.text[:250]}
    if isinstance(payload, dict):
        return payload
    return {"value": payload}


def _auditable(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text[:250]}


def _error_message(payload: dict[str, Any], response: httpx.Response) -> str:
    for key in ("message", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return f"Upstream HTTP {response.status_code}"
