from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from betgate.db.models import IdempotencyRecord
from betgate.utils import as_utc, now_utc


class AcquireOutcome(str, Enum):
    ACQUIRED = "acquired"
    REPLAY = "replay"
    IN_PROGRESS = "in_progress"
    MISMATCH = "mismatch"


@dataclass(slots=True)
class AcquireResult:
    outcome: AcquireOutcome
    record: IdempotencyRecord | None = None


class IdempotencyRepository:
    """Per-user idempotency keys: absent, locked, then resolved.

    The (user_id, key) primary key makes the first insert the only winner;
    an abandoned lock is taken over with a conditional UPDATE so two
    retries cannot both claim it.
    """

    def __init__(self, session_factory: async_sessionmaker, lock_timeout_sec: float = 5.0) -> None:
        self._session_factory = session_factory
        self._lock_timeout = timedelta(seconds=lock_timeout_sec)

    async def acquire(
        self,
        *,
        user_id: int,
        key: str,
        endpoint: str,
        request_hash: str,
    ) -> AcquireResult:
        now = now_utc()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        IdempotencyRecord(
                            user_id=user_id,
                            key=key,
                            endpoint=endpoint,
                            request_hash=request_hash,
                            created_at=now,
                            locked_at=now,
                        )
                    )
            return AcquireResult(AcquireOutcome.ACQUIRED)
        except IntegrityError:
            pass

        existing = await self.get(user_id=user_id, key=key)
        if existing is None:
            # Purged between the insert and the lookup.
            return await self.acquire(user_id=user_id, key=key, endpoint=endpoint, request_hash=request_hash)

        same_request = existing.endpoint == endpoint and existing.request_hash == request_hash
        if existing.status_code is not None:
            if not same_request:
                return AcquireResult(AcquireOutcome.MISMATCH, existing)
            return AcquireResult(AcquireOutcome.REPLAY, existing)

        cutoff = now - self._lock_timeout
        if as_utc(existing.locked_at) >= cutoff:
            if not same_request:
                return AcquireResult(AcquireOutcome.MISMATCH, existing)
            return AcquireResult(AcquireOutcome.IN_PROGRESS, existing)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(IdempotencyRecord)
                    .where(
                        IdempotencyRecord.user_id == user_id,
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.status_code.is_(None),
                        IdempotencyRecord.locked_at < cutoff,
                    )
                    .values(endpoint=endpoint, request_hash=request_hash, locked_at=now)
                )
        if result.rowcount == 1:
            return AcquireResult(AcquireOutcome.ACQUIRED)
        return AcquireResult(AcquireOutcome.IN_PROGRESS, existing)

    async def get(self, *, user_id: int, key: str) -> IdempotencyRecord | None:
        async with self._session_factory() as session:
            return await session.get(IdempotencyRecord, (user_id, key))

    async def resolve(
        self,
        *,
        user_id: int,
        key: str,
        status_code: int,
        response_body: str,
        content_type: str | None,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(IdempotencyRecord)
                    .where(IdempotencyRecord.user_id == user_id, IdempotencyRecord.key == key)
                    .values(
                        status_code=status_code,
                        response_body=response_body,
                        content_type=content_type,
                    )
                )

    async def release(self, *, user_id: int, key: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.user_id == user_id,
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.status_code.is_(None),
                    )
                )

    async def purge_expired(self, ttl_hours: int) -> int:
        cutoff = now_utc() - timedelta(hours=ttl_hours)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff)
                )
                return int(result.rowcount or 0)

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(IdempotencyRecord))
            return int(result.scalar_one())
