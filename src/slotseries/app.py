"""FastAPI application exposing the recurring series endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .router import router as api_router
from .service import get_recurrence_service
from .utils import configure_logging, logger

configure_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Run the background expansion sweep when the deployment enables it."""
    service = get_recurrence_service()
    if not service.settings.run_scheduler:
        logger.debug("Background expansion scheduler disabled")
        yield
        return

    await service.scheduler.start()
    try:
        yield
    finally:
        await service.scheduler.stop()


app = FastAPI(
    title="Slot Series API",
    version="1.0.0",
    description=(
        "HTTP API for recurring series of time-slot records: creation, "
        "versioning, per-occurrence exceptions, and horizon maintenance."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    """Simple readiness probe."""
    return {"status": "ok"}
