from __future__ import annotations

from fastapi import APIRouter, Depends

from betgate.api.deps import get_container
from betgate.api.schemas import HealthOut, UpstreamHealthOut
from betgate.container import Container
from betgate.utils import now_utc

router = APIRouter()


@router.get("/health", response_model=HealthOut, summary="Service and upstream health")
async def health(container: Container = Depends(get_container)) -> HealthOut:
    result = await container.client.health()
    return HealthOut(
        status="ok",
        timestamp=now_utc(),
        upstream=UpstreamHealthOut(
            status="ok" if result.success else "unavailable",
            status_code=result.status_code,
            duration_ms=result.duration_ms,
            error=result.error_message or None,
        ),
    )
