"""Main FastAPI application entry point."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from variation_batch import __version__
from variation_batch.api.routes import router
from variation_batch.core.config import settings
from variation_batch.core.database import async_session_factory, close_database
from variation_batch.services import batch_processor

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the batch worker on startup and stop it on shutdown."""
    logger.info("Starting Variation Batch", version=__version__)

    stop_event = asyncio.Event()
    worker: asyncio.Task[None] | None = None
    if settings.worker_enabled:
        worker = asyncio.create_task(
            batch_processor.run_worker(async_session_factory, stop_event)
        )
        logger.info(
            "Batch worker started",
            poll_interval_seconds=settings.worker_poll_interval_seconds,
            pacing_mode=settings.batch_pacing_mode,
        )

    yield

    stop_event.set()
    if worker is not None:
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
    await close_database()
    logger.info("Variation Batch shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="Resumable batch generation of image variations",
    lifespan=lifespan,
)

app.include_router(router)


def run() -> None:
    """Serve the application with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
