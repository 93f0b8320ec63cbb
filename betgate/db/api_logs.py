from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from betgate.db.models import ApiLog


class ApiLogRepository:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def add(
        self,
        *,
        user_id: int | None,
        endpoint: str,
        method: str,
        attempt: int,
        request_body: Any,
        response_body: Any,
        status_code: int,
        duration_ms: int,
        error: str | None = None,
    ) -> ApiLog:
        async with self._session_factory() as session:
            async with session.begin():
                entry = ApiLog(
                    user_id=user_id,
                    endpoint=endpoint,
                    method=method,
                    attempt=attempt,
                    request_body=request_body,
                    response_body=response_body,
                    status_code=status_code,
                    request_duration_ms=duration_ms,
                    error=error,
                )
                session.add(entry)
                return entry

    async def list_recent(self, *, user_id: int | None = None, limit: int = 50) -> list[ApiLog]:
        async with self._session_factory() as session:
            query = select(ApiLog)
            if user_id is not None:
                query = query.where(ApiLog.user_id == user_id)
            result = await session.execute(query.order_by(ApiLog.id.desc()).limit(limit))
            return list(result.scalars())
