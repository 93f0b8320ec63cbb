from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from betgate.api.errors import register_exception_handlers
from betgate.api.idempotency import IdempotencyMiddleware
from betgate.api.router import api_router
from betgate.config import Settings, get_settings
from betgate.container import Container
from betgate.services.reconciler import run_reconciler

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    container: Container | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container or Container.build(settings, transport=transport)
        await app.state.container.start()

        reconciler_task: asyncio.Task | None = None
        if settings.pending_bets_poll_interval_sec > 0:
            reconciler_task = asyncio.create_task(
                run_reconciler(
                    app.state.container.betting,
                    app.state.container.idempotency,
                    settings.pending_bets_poll_interval_sec,
                    settings.idempotency_ttl_hours,
                ),
                name="pending-bet-reconciler",
            )

        try:
            yield
        finally:
            if reconciler_task is not None:
                reconciler_task.cancel()
                try:
                    await reconciler_task
                except asyncio.CancelledError:
                    pass
            await app.state.container.close()

    app = FastAPI(
        title="Betgate",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(IdempotencyMiddleware)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "3000"))
    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("Server stopped by user.")
