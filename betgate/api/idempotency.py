from __future__ import annotations

import json
import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from betgate.crypto import body_hash
from betgate.db.idempotency import AcquireOutcome
from betgate.errors import ErrorCode, ServiceError

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotent-Replayed"
IDEMPOTENT_METHODS = {"POST", "PATCH"}
MAX_KEY_LENGTH = 255


def _json_error(status_code: int, code: ErrorCode, message: str) -> Response:
    return Response(
        content=json.dumps({"code": code.value, "message": message}),
        status_code=status_code,
        media_type="application/json",
    )


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """Replays the stored response of a repeated mutating request.

    - applies to POST/PATCH requests carrying an ``Idempotency-Key`` header
      from an authenticated caller; everything else passes through.
    - keys are scoped per user; the stored record remembers the endpoint and
      a hash of the body, and reusing a key for another request is rejected.
    - a key still being processed answers 409 until its lock goes stale.
    """

    def __init__(self, app, logger: logging.Logger | None = None) -> None:  # type: ignore[override]
        super().__init__(app)
        self._logger = logger or logging.getLogger(__name__)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        key = request.headers.get(IDEMPOTENCY_HEADER)
        if request.method not in IDEMPOTENT_METHODS or not key:
            return await call_next(request)

        container = request.app.state.container
        user_id = self._resolve_user_id(request, container.auth)
        if user_id is None:
            # The route itself rejects the missing token.
            return await call_next(request)

        if len(key) > MAX_KEY_LENGTH:
            return _json_error(
                400,
                ErrorCode.VALIDATION_ERROR,
                f"{IDEMPOTENCY_HEADER} must be at most {MAX_KEY_LENGTH} characters",
            )

        endpoint = f"{request.method} {request.url.path}"
        request_hash = body_hash(await request.body())
        repo = container.idempotency

        acquired = await repo.acquire(
            user_id=user_id,
            key=key,
            endpoint=endpoint,
            request_hash=request_hash,
        )

        if acquired.outcome == AcquireOutcome.REPLAY:
            record = acquired.record
            self._logger.info("Replaying stored response for key %s of user %s", key, user_id)
            return Response(
                content=record.response_body or "",
                status_code=record.status_code,
                media_type=record.content_type,
                headers={REPLAY_HEADER: "true"},
            )
        if acquired.outcome == AcquireOutcome.IN_PROGRESS:
            return _json_error(
                409,
                ErrorCode.CONFLICT,
                f"Request with this {IDEMPOTENCY_HEADER} is already being processed",
            )
        if acquired.outcome == AcquireOutcome.MISMATCH:
            return _json_error(
                422,
                ErrorCode.VALIDATION_ERROR,
                f"{IDEMPOTENCY_HEADER} was already used for a different request",
            )

        try:
            response = await call_next(request)
        except Exception:
            await repo.release(user_id=user_id, key=key)
            raise

        body = b"".join([chunk async for chunk in response.body_iterator])
        await repo.resolve(
            user_id=user_id,
            key=key,
            status_code=response.status_code,
            response_body=body.decode("utf-8", errors="replace"),
            content_type=response.headers.get("content-type"),
        )
        return Response(
            content=body,
            status_code=response.status_code,
            headers=dict(response.headers),
        )

    @staticmethod
    def _resolve_user_id(request: Request, auth) -> int | None:
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        try:
            return auth.decode_token(token.strip()).user_id
        except ServiceError:
            return None
