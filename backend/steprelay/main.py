"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from steprelay.config import settings
from steprelay.db.engine import engine
from steprelay.db.models import Base
from steprelay.runtime import deferred

# Routers
from steprelay.api.chained import router as chained_router
from steprelay.api.events import router as events_router
from steprelay.api.ping import router as ping_router
from steprelay.api.runs import router as runs_router
from steprelay.api.sequential import router as sequential_router

from steprelay.utils.logger import setup_logger
setup_logger(log_format=settings.LOG_FORMAT, log_level="DEBUG" if settings.DEBUG else "INFO")
logger = logging.getLogger("steprelay.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.RUN_STORE_BACKEND == "sql":
        async with engine.begin() as conn:
            if settings.is_sqlite:
                await conn.run_sync(Base.metadata.create_all)
            # else: for PostgreSQL, run `alembic upgrade head` before starting the server
    logger.info(
        "StepRelay ready (store=%s, steps=%d, sync steps=%s)",
        settings.RUN_STORE_BACKEND, settings.TOTAL_STEPS, settings.CHAINED_SYNC_STEPS,
    )
    try:
        yield
    finally:
        cancelled = await deferred.drain(settings.DEFERRED_DRAIN_TIMEOUT_SECONDS)
        if cancelled:
            logger.warning("Shutdown interrupted %d deferred action(s)", cancelled)
        await engine.dispose()


app = FastAPI(
    title="StepRelay",
    description="Multi-step runs under a per-invocation execution budget",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(chained_router, prefix="/api/chained", tags=["chained"])
app.include_router(sequential_router, prefix="/api", tags=["sequential"])
app.include_router(runs_router, prefix="/api/runs", tags=["runs"])
app.include_router(events_router, prefix="/api", tags=["events"])
app.include_router(ping_router, prefix="/api", tags=["ping"])


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
async def prometheus_metrics():
    """Prometheus-compatible text exposition of in-process metrics.

    Example line: ``steprelay_step_execution_total{outcome="complete",scenario="chained"} 42``
    """
    from steprelay.utils.metrics import to_prometheus_text
    return to_prometheus_text()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("steprelay.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
